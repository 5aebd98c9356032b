from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import normalize_email

PAID_STATUSES = ("paid", "no_payment_required")


class PaymentType(str, Enum):
    LIFETIME_PURCHASE = "lifetime_purchase"
    LIMITED_PASS = "limited_pass"
    BALANCE_UPGRADE = "balance_upgrade"


class ReconciliationStatus(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    SKIPPED = "skipped"


class CheckoutSession(BaseModel):
    """The gateway's view of a checkout session, reduced to what reconciliation reads."""

    id: str
    customer_email: Optional[str] = None
    amount_total: Optional[int] = Field(default=None, description="Amount paid in minor units")
    currency: str = "usd"
    metadata: dict[str, str] = Field(default_factory=dict)
    payment_status: Optional[str] = None
    status: Optional[str] = None
    url: Optional[str] = None
    price_ids: list[str] = Field(default_factory=list, description="Price ids of the line items, when expanded")

    @property
    def has_mode_metadata(self) -> bool:
        return bool(self.metadata.get("payment_type") or self.metadata.get("product_type"))

    @property
    def is_paid(self) -> bool:
        # A completed session can still be awaiting a delayed payment method.
        return self.payment_status in PAID_STATUSES

    @property
    def amount_usd(self) -> Decimal:
        if self.amount_total is None:
            return Decimal("0")
        return (Decimal(self.amount_total) / 100).quantize(Decimal("0.01"))

    @property
    def email(self) -> str:
        return normalize_email(self.metadata.get("user_email") or self.customer_email)


class PaymentEvent(BaseModel):
    id: str
    type: str
    session: Optional[CheckoutSession] = None


class CreateCheckoutRequest(BaseModel):
    email: str
    product_type: str = Field(default="access_pass", description="lifetime_purchase, limited_pass, balance_upgrade or a legacy product key")
    tier: Optional[str] = None
    partner: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, description="Limited pass price in USD")
    price_id: Optional[str] = None
    legal_accept: Optional[bool] = None
    age_confirmed: bool = False
    dob: Optional[str] = None
    origin: Optional[str] = None
    return_to: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"email": "a@x.com", "product_type": "lifetime_purchase", "tier": "basic"}
    })


class CheckoutSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    url: Optional[str] = None
    amount_usd: Optional[Decimal] = None


class SessionStatusResponse(BaseModel):
    success: bool = True
    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None
    amount_total: Decimal
    currency: str


class ReconciliationResult(BaseModel):
    status: ReconciliationStatus
    email: str
    mode: str
    session_id: Optional[str] = None
    event_id: Optional[str] = None
    delta: int = 0
    reason: Optional[str] = None
    balance: Optional[int] = None
    message: str


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_id: str
