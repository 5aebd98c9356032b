"""Wires storage, gateway and services together for the HTTP layer."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from config import Settings, settings as default_settings
from ledger.balances import BalanceMutators
from ledger.journal import Journal
from ledger.service import CreditsService
from ledger.storage import InMemoryStorage, Storage
from notifications.email import CreditEmailNotifier
from partners.bridge import BridgeService
from partners.gate import GateFlow
from payments.checkout import CheckoutService
from payments.gateway import PaymentGateway, StripeGateway
from payments.reconciliation import ReconciliationEngine
from payments.webhook import WebhookProcessor
from rules.eligibility import BonusRules
from rules.referrals import ReferralService

logger = structlog.get_logger().bind(component="container")


@dataclass
class Services:
    storage: Storage
    balances: BalanceMutators
    journal: Journal
    bonus_rules: BonusRules
    referrals: ReferralService
    credits: CreditsService
    engine: ReconciliationEngine
    checkout: CheckoutService
    webhook: WebhookProcessor
    gate: GateFlow
    bridge: BridgeService


def default_storage(settings: Settings) -> Storage:
    if settings.SUPABASE_URL and settings.SUPABASE_SERVICE_KEY:
        from ledger.supabase_storage import SupabaseStorage
        return SupabaseStorage.from_settings(settings)
    logger.warning("supabase_not_configured", fallback="in_memory")
    return InMemoryStorage()


def build_services(
    storage: Optional[Storage] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier=None,
    clock: Optional[Callable[[], datetime]] = None,
    settings: Optional[Settings] = None,
) -> Services:
    settings = settings or default_settings
    storage = storage if storage is not None else default_storage(settings)
    gateway = gateway or StripeGateway.from_settings(settings)
    if notifier is None:
        notifier = CreditEmailNotifier.from_settings(settings, storage)

    balances = BalanceMutators(storage, clock=clock)
    journal = Journal(storage)
    bonus_rules = BonusRules(balances, journal)
    referrals = ReferralService(storage, balances, bonus_rules)
    engine = ReconciliationEngine(balances, journal, bonus_rules, referrals, notifier=notifier,
                                  crowbar_price_id=settings.price_for("crowbar_master") or None)
    return Services(
        storage=storage,
        balances=balances,
        journal=journal,
        bonus_rules=bonus_rules,
        referrals=referrals,
        credits=CreditsService(balances, journal, bonus_rules),
        engine=engine,
        checkout=CheckoutService(gateway, balances, settings),
        webhook=WebhookProcessor(gateway, engine, journal),
        gate=GateFlow(balances, journal, engine, gateway, settings),
        bridge=BridgeService(balances, journal, bonus_rules, settings.BRIDGE_SHARED_SECRET),
    )
