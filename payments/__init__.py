"""
Payments

Checkout session creation, webhook verification and the reconciliation
engine that turns paid sessions into ledger rows and user state.
"""

from .checkout import CheckoutService
from .gateway import PaymentGateway, StripeGateway
from .models import CheckoutSession, PaymentEvent, ReconciliationResult, ReconciliationStatus
from .modes import BalanceUpgrade, LegacyProduct, LifetimePurchase, LimitedPass, resolve_payment_mode
from .reconciliation import ReconciliationEngine
from .webhook import WebhookProcessor

__all__ = [
    "CheckoutService",
    "PaymentGateway",
    "StripeGateway",
    "CheckoutSession",
    "PaymentEvent",
    "ReconciliationResult",
    "ReconciliationStatus",
    "BalanceUpgrade",
    "LegacyProduct",
    "LifetimePurchase",
    "LimitedPass",
    "resolve_payment_mode",
    "ReconciliationEngine",
    "WebhookProcessor",
]
