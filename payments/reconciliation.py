"""
Reconciliation Engine

Turns a paid checkout session into ledger rows and user-state changes,
exactly once per session:

1. resolve the buyer's email and the payment mode from session metadata
2. short-circuit when the event or session has already been granted
3. plan the credit delta and the access changes for the mode
4. write the ledger row first, then the reporting history row
5. bump credits and spend, apply access changes
6. run the derived rules (auto-upgrade, referral code issuance)
7. send a best-effort credit email

Anything that fails before step 4 leaves no writes behind. After the ledger
insert nothing is rolled back; ``ledger.replay`` brings aggregates back in
line with the ledger.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

import structlog

from ledger.balances import BalanceMutators, cents, to_decimal
from ledger.errors import BalanceMismatchError, MissingIdentityError, ValidationError
from ledger.journal import Journal
from ledger.models import PARTNERS, AccessMode, MembershipTier, access_flag
from ledger.storage import UniqueViolation
from rules.eligibility import BonusRules
from rules.referrals import ReferralService

from .models import CheckoutSession, ReconciliationResult, ReconciliationStatus
from .modes import (
    LEGACY_CREDITS,
    LIFETIME_THRESHOLD,
    LIFETIME_TIERS,
    BalanceUpgrade,
    LegacyProduct,
    LifetimePurchase,
    LimitedPass,
    PaymentMode,
    mode_name,
    reason_for,
    resolve_payment_mode,
)

logger = structlog.get_logger().bind(component="reconciliation")


def all_partner_flags() -> dict:
    return {access_flag(p): True for p in PARTNERS}


def legal_accept_from(metadata: dict) -> bool:
    if "legal_accept" not in metadata:
        return True
    return str(metadata["legal_accept"]).strip().lower() == "true"


@dataclass
class GrantPlan:
    delta: int
    origin_site: str
    zero_delta_ok: bool = False
    legacy_spend: bool = False
    eligible_global_race: bool = False
    # Computed against the user row as it stands after the balance bumps.
    access_changes: Optional[Callable[[dict], dict]] = None


class ReconciliationEngine:
    def __init__(
        self,
        balances: BalanceMutators,
        journal: Journal,
        bonus_rules: BonusRules,
        referrals: ReferralService,
        notifier=None,
        crowbar_price_id: Optional[str] = None,
    ):
        self.balances = balances
        self.journal = journal
        self.bonus_rules = bonus_rules
        self.referrals = referrals
        self.notifier = notifier
        self.crowbar_price_id = crowbar_price_id

    def reconcile(self, session: CheckoutSession, source_event_id: Optional[str] = None) -> ReconciliationResult:
        email = session.email
        if not email:
            logger.error("session_missing_email", session_id=session.id)
            raise MissingIdentityError(f"No user email on session {session.id}")

        mode = resolve_payment_mode(session.metadata, session.amount_total, session.currency,
                                    session.price_ids, self.crowbar_price_id)
        reason = reason_for(mode)
        log = logger.bind(email=email, session_id=session.id, event_id=source_event_id, mode=mode_name(mode))

        if source_event_id and self.journal.event_processed(source_event_id):
            log.info("event_already_processed")
            return self._result(ReconciliationStatus.ALREADY_PROCESSED, email, mode, session, source_event_id,
                                message=f"Event {source_event_id} already processed")
        if session.id and self.journal.session_granted(session.id, reason):
            log.info("session_already_granted")
            return self._result(ReconciliationStatus.ALREADY_PROCESSED, email, mode, session, source_event_id,
                                message=f"Session {session.id} already processed")

        usd = session.amount_usd
        plan = self.plan(mode, email, usd)
        if plan.delta <= 0 and not plan.zero_delta_ok:
            log.warning("zero_credit_session_skipped", delta=plan.delta)
            return self._result(ReconciliationStatus.SKIPPED, email, mode, session, source_event_id,
                                message="No credits to grant for this product")

        now = self.balances.now()
        try:
            entry = self.journal.append(
                email, plan.delta, reason, created_at=now, origin_site=plan.origin_site,
                stripe_event_id=source_event_id, stripe_session_id=session.id,
                amount_usd=usd if usd > 0 else None,
            )
        except UniqueViolation:
            log.info("ledger_duplicate_rejected")
            return self._result(ReconciliationStatus.ALREADY_PROCESSED, email, mode, session, source_event_id,
                                message=f"Session {session.id} already processed")

        if plan.delta > 0:
            self.journal.record_history(
                email, plan.delta, plan.origin_site, created_at=now,
                legal_accept=legal_accept_from(session.metadata),
                eligible_global_race=plan.eligible_global_race,
                stripe_event_id=source_event_id, stripe_session_id=session.id,
            )

        self.balances.ensure_user(email)
        if plan.delta:
            self.balances.bump_credits(email, plan.delta)
        if usd > 0:
            self.balances.bump_spend(email, usd, recompute_full_access=plan.legacy_spend)
        changes = plan.access_changes(self.balances.get_user(email)) if plan.access_changes else {}
        if changes:
            self.balances.update_user(email, changes)

        upgrade = self.bonus_rules.auto_upgrade_if_eligible(email)
        self.referrals.ensure_code(email)

        balance = int(self.balances.get_user(email).get("total_credits") or 0)
        log.info("session_reconciled", delta=plan.delta, reason=reason, balance=balance,
                 auto_upgrade_bonus=upgrade["bonus"])
        self._notify(email, reason, plan, balance, now, usd, entry, source_event_id, session.id)
        return self._result(ReconciliationStatus.PROCESSED, email, mode, session, source_event_id,
                            delta=plan.delta, balance=balance,
                            message=f"Granted {plan.delta} credits to {email}")

    def plan(self, mode: PaymentMode, email: str, usd: Decimal) -> GrantPlan:
        """Work out the delta and access changes for ``mode``; performs no writes."""
        if isinstance(mode, LifetimePurchase):
            return self._plan_lifetime(mode)
        if isinstance(mode, LimitedPass):
            return self._plan_limited(mode, usd)
        if isinstance(mode, BalanceUpgrade):
            return self._plan_balance_upgrade(email, usd)
        if isinstance(mode, LegacyProduct):
            return self._plan_legacy(mode)
        raise TypeError(f"Unhandled payment mode: {mode!r}")

    def _plan_lifetime(self, mode: LifetimePurchase) -> GrantPlan:
        terms = LIFETIME_TIERS[mode.tier]

        def changes(user: dict) -> dict:
            result = {
                "membership_tier": mode.tier.value,
                "access_mode": AccessMode.LIFETIME.value,
                "crowbar_access": True,
                "activity_multiplier": terms.activity_multiplier,
                **all_partner_flags(),
            }
            if mode.tier == MembershipTier.DISCOUNT19:
                result["age_verified"] = True
            return result

        return GrantPlan(delta=terms.credits, origin_site=f"membership_{mode.tier.value}", access_changes=changes)

    def _plan_limited(self, mode: LimitedPass, usd: Decimal) -> GrantPlan:
        paid = usd if usd > 0 else mode.amount

        def changes(user: dict) -> dict:
            total = cents(to_decimal(user.get("limited_paid_amount")) + paid)
            partners = sorted(set(user.get("limited_partners") or []) | {mode.partner})
            result = {
                "limited_paid_amount": total,
                "limited_partners": partners,
                access_flag(mode.partner): True,
                "upgrade_balance_amount": max(LIFETIME_THRESHOLD - total, Decimal("0")),
            }
            if user.get("access_mode") != AccessMode.LIFETIME.value:
                result["access_mode"] = AccessMode.LIMITED.value
            return result

        return GrantPlan(delta=0, origin_site=f"limited_{mode.partner}", zero_delta_ok=True, access_changes=changes)

    def _plan_balance_upgrade(self, email: str, usd: Decimal) -> GrantPlan:
        user = self.balances.get_user(email)
        if not user or user.get("access_mode") != AccessMode.LIMITED.value:
            raise ValidationError("Balance upgrade requires an active limited pass", code="not_limited")
        paid = cents(user.get("limited_paid_amount"))
        if not Decimal("0") < paid < LIFETIME_THRESHOLD:
            raise ValidationError(f"No upgradeable limited balance for {email}", code="not_limited")
        expected = cents(LIFETIME_THRESHOLD - paid)
        if cents(usd) != expected:
            logger.warning("balance_upgrade_mismatch", email=email, expected=str(expected), paid=str(usd))
            raise BalanceMismatchError(f"Expected a payment of {expected} USD, received {cents(usd)} USD")

        previous = int(user.get("total_credits") or 0)

        def changes(user: dict) -> dict:
            result = {
                "access_mode": AccessMode.LIFETIME.value,
                "crowbar_access": True,
                "upgrade_balance_amount": Decimal("0"),
                **all_partner_flags(),
            }
            if user.get("membership_tier") in (None, MembershipTier.NONE.value):
                result["membership_tier"] = MembershipTier.BASIC.value
            return result

        return GrantPlan(
            delta=max(int(LIFETIME_THRESHOLD) - previous, 0),
            origin_site="balance_upgrade",
            zero_delta_ok=True,
            access_changes=changes,
        )

    def _plan_legacy(self, mode: LegacyProduct) -> GrantPlan:
        product = mode.product

        def changes(user: dict) -> dict:
            if product == "access_pass":
                return {"crowbar_access": True, "full_access": True, **all_partner_flags()}
            if product == "crowbar_master":
                return {"crowbar_access": True}
            if product in PARTNERS:
                return {access_flag(product): True}
            return {}

        return GrantPlan(
            delta=LEGACY_CREDITS.get(product, 0),
            origin_site=product,
            legacy_spend=True,
            eligible_global_race=product == "access_pass",
            access_changes=changes,
        )

    def _notify(self, email, reason, plan, balance, occurred_at, usd, entry, event_id, session_id) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify_credit_change(
                email, reason, plan.delta, balance, occurred_at,
                amount_usd=usd if usd > 0 else None, origin_site=plan.origin_site,
                ledger_id=entry.get("id"), stripe_event_id=event_id, stripe_session_id=session_id,
            )
        except Exception:
            logger.error("credit_email_failed", email=email, session_id=session_id, exc_info=True)

    @staticmethod
    def _result(status, email, mode, session, event_id, delta=0, balance=None, message="") -> ReconciliationResult:
        return ReconciliationResult(
            status=status,
            email=email,
            mode=mode_name(mode),
            session_id=session.id,
            event_id=event_id,
            delta=delta,
            reason=reason_for(mode),
            balance=balance,
            message=message,
        )
