from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class GateStartRequest(BaseModel):
    email: str
    origin: str = Field(..., description="Partner the user is entering from")
    return_to: Optional[str] = None
    legal_accept: bool = False


class GateStartResponse(BaseModel):
    success: bool = True
    need_payment: bool
    redirect_url: Optional[str] = None
    awarded: bool = False
    credits: int = 0
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None


class GateCompleteRequest(BaseModel):
    session_id: Optional[str] = None
    email: Optional[str] = None
    origin: Optional[str] = None
    return_to: Optional[str] = None


class GateCompleteResponse(BaseModel):
    success: bool = True
    redirect_url: str
    awarded: bool = False
    credits: int = 0
    reconciliation: Optional[str] = Field(default=None, description="Reconciliation status when a session was completed")


class PartnerReward(BaseModel):
    awarded: bool
    credits: int = 0


class BridgeLoginRequest(BaseModel):
    email: str
    source_brand: Optional[str] = None


class BridgeCheckoutRequest(BaseModel):
    email: str
    source_brand: Optional[str] = None
    amount_cents: int = 0
    credits_delta: int = 0
    stripe_session_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    unlock: bool = False


class BridgeAccessRequest(BaseModel):
    email: str
    product_type: str


class BridgeResponse(BaseModel):
    success: bool = True
    email: str
    source: Optional[str] = None
    idempotent: bool = False
    credits_added: int = 0
    amount_usd: Optional[Decimal] = None
    unlock_applied: bool = False
    balance: Optional[int] = None
    message: Optional[str] = None
