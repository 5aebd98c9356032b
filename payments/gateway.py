"""
Payment session gateway.

``StripeGateway`` wraps the three Stripe calls the backend depends on:
creating a hosted checkout session, retrieving one, and verifying a signed
webhook payload. Stripe objects are converted into ``CheckoutSession`` /
``PaymentEvent`` models at this boundary.
"""

import time
from decimal import Decimal
from typing import Any, Optional, Protocol

import stripe
import structlog

from ledger.errors import UpstreamError, WebhookSignatureError

from .models import CheckoutSession, PaymentEvent

logger = structlog.get_logger().bind(component="gateway")


def _value(obj: Any, attr: str) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(attr)
    try:
        return obj[attr]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, attr, None)


def line_item_price_ids(obj: Any) -> list[str]:
    """Price ids from an expanded ``line_items`` list; empty when not expanded."""
    price_ids = []
    for item in _value(_value(obj, "line_items"), "data") or []:
        price_id = _value(_value(item, "price"), "id")
        if price_id:
            price_ids.append(price_id)
    return price_ids


def session_from_stripe(obj: Any) -> CheckoutSession:
    metadata = _value(obj, "metadata") or {}
    customer_details = _value(obj, "customer_details")
    amount_total = _value(obj, "amount_total")
    return CheckoutSession(
        id=_value(obj, "id"),
        customer_email=_value(customer_details, "email") or _value(obj, "customer_email"),
        amount_total=int(amount_total) if amount_total is not None else None,
        currency=(_value(obj, "currency") or "usd").lower(),
        metadata={str(k): str(v) for k, v in dict(metadata).items() if v is not None},
        payment_status=_value(obj, "payment_status"),
        status=_value(obj, "status"),
        url=_value(obj, "url"),
        price_ids=line_item_price_ids(obj),
    )


class PaymentGateway(Protocol):
    def create_session(
        self,
        email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        price_id: Optional[str] = None,
        amount_usd: Optional[Decimal] = None,
        product_name: Optional[str] = None,
    ) -> CheckoutSession: ...

    def retrieve_session(self, session_id: str) -> Optional[CheckoutSession]: ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent: ...


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, expiry_minutes: int = 30):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.expiry_minutes = expiry_minutes
        stripe.api_key = api_key

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        return cls(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET, settings.CHECKOUT_EXPIRY_MINUTES)

    def create_session(
        self,
        email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        price_id: Optional[str] = None,
        amount_usd: Optional[Decimal] = None,
        product_name: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a one-off payment session for either a configured price or an ad-hoc amount."""
        if price_id:
            line_item = {"price": price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": "usd",
                    "unit_amount": int((Decimal(amount_usd) * 100).to_integral_value()),
                    "product_data": {"name": product_name or "Crowbar purchase"},
                },
                "quantity": 1,
            }
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[line_item],
                customer_email=email,
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
                expires_at=int(time.time()) + self.expiry_minutes * 60,
            )
        except stripe.StripeError as e:
            logger.error("stripe_session_create_failed", email=email, error=str(e))
            raise UpstreamError(f"Stripe error: {e}")
        logger.info("stripe_session_created", email=email, session_id=_value(session, "id"))
        return session_from_stripe(session)

    def retrieve_session(self, session_id: str) -> Optional[CheckoutSession]:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["line_items"])
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise UpstreamError(f"Stripe error: {e}")
        except stripe.StripeError as e:
            logger.error("stripe_session_retrieve_failed", session_id=session_id, error=str(e))
            raise UpstreamError(f"Stripe error: {e}")
        return session_from_stripe(session)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        if not self.webhook_secret:
            logger.error("webhook_secret_missing")
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureError(f"Webhook Error: {e}")

        obj = event["data"]["object"]
        session = None
        if event["type"].startswith("checkout.session."):
            session = session_from_stripe(obj)
        return PaymentEvent(id=event["id"], type=event["type"], session=session)
