from decimal import Decimal
from typing import Optional

import structlog

from ledger.balances import BalanceMutators, cents
from ledger.errors import NotFoundError, ValidationError
from ledger.models import PARTNERS, AccessMode, MembershipTier, normalize_email

from .gateway import PaymentGateway
from .models import (
    CheckoutSessionResponse,
    CreateCheckoutRequest,
    PaymentType,
    SessionStatusResponse,
)
from .modes import LEGACY_CREDITS, LIFETIME_THRESHOLD, LIFETIME_TIERS, LIMITED_PASS_AMOUNTS, parse_tier

logger = structlog.get_logger().bind(component="checkout")


class CheckoutService:
    """Creates payment sessions whose metadata carries the purchase intent to the webhook."""

    def __init__(self, gateway: PaymentGateway, balances: BalanceMutators, settings):
        self.gateway = gateway
        self.balances = balances
        self.settings = settings

    def create_session(self, request: CreateCheckoutRequest) -> CheckoutSessionResponse:
        email = normalize_email(request.email)
        if not email or "@" not in email:
            raise ValidationError("Valid email is required")

        metadata = {"user_email": email}
        price_id = None
        amount_usd: Optional[Decimal] = None
        product_name = None
        product_type = (request.product_type or "access_pass").strip().lower()

        if product_type == PaymentType.LIFETIME_PURCHASE.value:
            tier = parse_tier(request.tier)
            if tier is None:
                raise ValidationError(f"Unknown membership tier: {request.tier}", code="invalid_tier")
            if tier == MembershipTier.DISCOUNT19:
                if not request.age_confirmed or not request.dob:
                    raise ValidationError("Age verification is required for this tier", code="age_verification_required")
                metadata["dob"] = request.dob
            amount_usd = LIFETIME_TIERS[tier].price_usd
            product_name = f"Crowbar {tier.value} membership"
            metadata.update(payment_type=product_type, tier=tier.value)

        elif product_type == PaymentType.LIMITED_PASS.value:
            partner = (request.partner or "").strip().lower()
            if partner not in PARTNERS:
                raise ValidationError(f"Unknown partner: {request.partner}", code="invalid_partner")
            if request.amount is None or cents(request.amount) not in LIMITED_PASS_AMOUNTS:
                raise ValidationError("Limited pass amount must be 7, 9 or 12 USD", code="invalid_amount")
            amount_usd = cents(request.amount)
            product_name = f"{partner} limited pass"
            metadata.update(payment_type=product_type, partner=partner, amount=str(amount_usd))

        elif product_type == PaymentType.BALANCE_UPGRADE.value:
            user = self.balances.get_user(email)
            paid = cents((user or {}).get("limited_paid_amount"))
            if not user or user.get("access_mode") != AccessMode.LIMITED.value or not Decimal("0") < paid < LIFETIME_THRESHOLD:
                raise ValidationError("Balance upgrade requires an active limited pass", code="not_limited")
            amount_usd = cents(LIFETIME_THRESHOLD - paid)
            product_name = "Crowbar lifetime upgrade"
            metadata.update(payment_type=product_type, expected_amount=str(amount_usd))

        elif product_type in LEGACY_CREDITS:
            price_id = request.price_id or self.settings.price_for(product_type)
            if not price_id:
                raise ValidationError("Missing Stripe price ID (env or body)", code="missing_price")
            metadata["product_type"] = product_type

        else:
            raise ValidationError(f"Unknown product type: {product_type}", code="invalid_product")

        if request.legal_accept is not None:
            metadata["legal_accept"] = "true" if request.legal_accept else "false"
        if request.origin:
            metadata["origin"] = request.origin
        if request.return_to:
            metadata["return_to"] = request.return_to

        frontend = self.settings.FRONTEND_URL.rstrip("/")
        session = self.gateway.create_session(
            email,
            metadata,
            success_url=request.success_url or f"{frontend}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=request.cancel_url or f"{frontend}/payment-cancel",
            price_id=price_id,
            amount_usd=amount_usd,
            product_name=product_name,
        )
        logger.info("checkout_session_created", email=email, session_id=session.id, product_type=product_type)
        return CheckoutSessionResponse(session_id=session.id, url=session.url, amount_usd=amount_usd)

    def session_status(self, session_id: str) -> SessionStatusResponse:
        if not session_id:
            raise ValidationError("session_id is required")
        session = self.gateway.retrieve_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", code="session_not_found")
        return SessionStatusResponse(
            id=session.id,
            status=session.status,
            payment_status=session.payment_status,
            customer_email=session.customer_email,
            amount_total=session.amount_usd,
            currency=session.currency,
        )
