"""
Payment modes carried in checkout session metadata.

Metadata strings are resolved once into a closed set of variants; the
reconciliation engine dispatches on the variant type rather than on the
raw ``payment_type``/``product_type`` strings.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

import structlog

from ledger.errors import ValidationError
from ledger.models import PARTNERS, MembershipTier

from .models import PaymentType

logger = structlog.get_logger().bind(component="payment_modes")

LIFETIME_THRESHOLD = Decimal("49")
LIMITED_PASS_AMOUNTS = (Decimal("7"), Decimal("9"), Decimal("12"))
CROWBAR_LEGACY_CENTS = 3900
CROWBAR_LEGACY_CURRENCIES = ("usd", "gbp")


@dataclass(frozen=True)
class TierTerms:
    price_usd: Decimal
    credits: int
    activity_multiplier: Decimal = Decimal("1")


LIFETIME_TIERS = {
    MembershipTier.DISCOUNT19: TierTerms(Decimal("19"), 49),
    MembershipTier.BASIC: TierTerms(Decimal("49"), 49),
    MembershipTier.PRO: TierTerms(Decimal("99"), 49, Decimal("1.5")),
    MembershipTier.ELITE: TierTerms(Decimal("499"), 500),
}

# Flat products sold before tiered memberships existed.
LEGACY_CREDITS = {
    "access_pass": 49,
    "crowbar_master": 49,
    "talentkonnect": 7,
    "careduel": 3,
    "ecoworldbuy": 7,
    "powerofaum": 3,
}


@dataclass(frozen=True)
class LifetimePurchase:
    tier: MembershipTier


@dataclass(frozen=True)
class LimitedPass:
    partner: str
    amount: Decimal


@dataclass(frozen=True)
class BalanceUpgrade:
    pass


@dataclass(frozen=True)
class LegacyProduct:
    product: str


PaymentMode = Union[LifetimePurchase, LimitedPass, BalanceUpgrade, LegacyProduct]


def parse_tier(value: Optional[str]) -> Optional[MembershipTier]:
    try:
        tier = MembershipTier((value or "").strip().lower())
    except ValueError:
        return None
    return None if tier == MembershipTier.NONE else tier


def parse_amount(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def is_crowbar_legacy(amount_total: Optional[int], currency: str, price_ids=(),
                      crowbar_price_id: Optional[str] = None) -> bool:
    if crowbar_price_id and crowbar_price_id in price_ids:
        return True
    return amount_total == CROWBAR_LEGACY_CENTS and (currency or "").lower() in CROWBAR_LEGACY_CURRENCIES


def resolve_payment_mode(
    metadata: dict,
    amount_total: Optional[int] = None,
    currency: str = "",
    price_ids=(),
    crowbar_price_id: Optional[str] = None,
) -> PaymentMode:
    """Resolve a session's metadata into a payment mode.

    Raises ``ValidationError`` when a limited pass names an unknown partner
    or an amount outside the offered prices. An unresolvable lifetime tier
    falls back to ``basic``: the money has already been captured. Sessions
    with no product metadata are crowbar purchases when a line item uses the
    crowbar price or the amount is the legacy crowbar price.
    """
    payment_type = (metadata.get("payment_type") or "").strip().lower()
    product_type = (metadata.get("product_type") or "").strip().lower()
    kind = payment_type or product_type

    if kind == PaymentType.LIFETIME_PURCHASE.value:
        tier = parse_tier(metadata.get("tier"))
        if tier is None:
            logger.warning("unknown_tier_fallback", tier=metadata.get("tier"))
            tier = MembershipTier.BASIC
        return LifetimePurchase(tier)

    if kind == PaymentType.LIMITED_PASS.value:
        partner = (metadata.get("partner") or "").strip().lower()
        if partner not in PARTNERS:
            raise ValidationError(f"Unknown partner for limited pass: {partner or '<missing>'}", code="invalid_partner")
        amount = parse_amount(metadata.get("amount"))
        if amount is None and amount_total is not None:
            amount = parse_amount(Decimal(amount_total) / 100)
        if amount not in LIMITED_PASS_AMOUNTS:
            raise ValidationError(f"Invalid limited pass amount: {amount}", code="invalid_amount")
        return LimitedPass(partner, amount)

    if kind == PaymentType.BALANCE_UPGRADE.value:
        return BalanceUpgrade()

    if not product_type:
        if is_crowbar_legacy(amount_total, currency, price_ids, crowbar_price_id):
            return LegacyProduct("crowbar_master")
        return LegacyProduct("access_pass")
    return LegacyProduct(product_type)


def mode_name(mode: PaymentMode) -> str:
    if isinstance(mode, LifetimePurchase):
        return PaymentType.LIFETIME_PURCHASE.value
    if isinstance(mode, LimitedPass):
        return PaymentType.LIMITED_PASS.value
    if isinstance(mode, BalanceUpgrade):
        return PaymentType.BALANCE_UPGRADE.value
    if isinstance(mode, LegacyProduct):
        return mode.product
    raise TypeError(f"Unhandled payment mode: {mode!r}")


def reason_for(mode: PaymentMode) -> str:
    """Ledger reason tag for a mode."""
    if isinstance(mode, LifetimePurchase):
        return f"membership_purchase_{mode.tier.value}"
    if isinstance(mode, LimitedPass):
        return f"limited_pass_{mode.partner}"
    if isinstance(mode, BalanceUpgrade):
        return "balance_upgrade"
    if isinstance(mode, LegacyProduct):
        return f"product_purchase_{mode.product}"
    raise TypeError(f"Unhandled payment mode: {mode!r}")
