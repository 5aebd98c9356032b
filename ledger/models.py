from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


PARTNERS = ("careduel", "talentkonnect", "ecoworldbuy", "powerofaum")

PROFILE_FIELDS = ("full_name", "phone", "dob", "address", "social_url")
KYC_FIELDS = ("id_front_url", "id_back_url", "selfie_url", "dob_doc_url")


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def access_flag(partner: str) -> str:
    return f"access_{partner}"


class MembershipTier(str, Enum):
    NONE = "none"
    DISCOUNT19 = "discount19"
    BASIC = "basic"
    PRO = "pro"
    ELITE = "elite"


class AccessMode(str, Enum):
    NONE = "none"
    LIMITED = "limited"
    LIFETIME = "lifetime"


class UserRecord(BaseModel):
    email: str
    total_credits: int = 0
    total_spent: Decimal = Decimal("0")
    membership_tier: MembershipTier = MembershipTier.NONE
    access_mode: AccessMode = AccessMode.NONE
    activity_multiplier: Decimal = Decimal("1")
    crowbar_access: bool = False
    full_access: bool = False
    access_careduel: bool = False
    access_talentkonnect: bool = False
    access_ecoworldbuy: bool = False
    access_powerofaum: bool = False
    limited_paid_amount: Decimal = Decimal("0")
    limited_partners: list[str] = Field(default_factory=list)
    upgrade_balance_amount: Optional[Decimal] = None
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    age_verified: bool = False
    kyc_status: Optional[str] = None
    profile_completed: bool = False
    auto_upgraded_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_brand: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, extra="ignore")


class LedgerEntry(BaseModel):
    id: str
    email: str
    delta: int
    reason: str
    origin_site: Optional[str] = None
    stripe_event_id: Optional[str] = None
    stripe_session_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    amount_usd: Optional[Decimal] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, extra="ignore")


class EarnCreditsRequest(BaseModel):
    email: str
    amount: int
    origin: str = Field(..., min_length=1, description="Site or feature the credits were earned on")
    idempotency_key: Optional[str] = Field(default=None, description="Caller key to suppress duplicate grants")


class SpendCreditsRequest(BaseModel):
    email: str
    amount: int = Field(..., description="Credits to spend; the sign is ignored")
    origin: Optional[str] = None
    idempotency_key: Optional[str] = None


class ApplyReferralRequest(BaseModel):
    referred_email: str
    referral_code: str

    model_config = ConfigDict(json_schema_extra={
        "example": {"referred_email": "new.user@example.com", "referral_code": "CWB-7KQ2MX"}
    })


class ReferralCodeRequest(BaseModel):
    email: str


class ProfileUpdateRequest(BaseModel):
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    dob: Optional[str] = None
    address: Optional[str] = None
    social_url: Optional[str] = None
    id_front_url: Optional[str] = None
    id_back_url: Optional[str] = None
    selfie_url: Optional[str] = None
    dob_doc_url: Optional[str] = None


class BalanceResponse(BaseModel):
    success: bool = True
    email: str
    balance: int


class CreditMovementResponse(BaseModel):
    success: bool = True
    email: str
    delta: int
    origin: str
    balance: int
    idempotent: bool = False
    message: str


class ReferralResponse(BaseModel):
    success: bool = True
    referrer_email: str
    referred_email: str
    bonus: int
    message: str


class ProfileUpdateResponse(BaseModel):
    success: bool = True
    user: UserRecord
    bonus_awarded: int = 0


class LedgerHistoryResponse(BaseModel):
    email: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int
