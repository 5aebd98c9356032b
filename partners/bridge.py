"""
Partner bridge: lets a partner backend report logins and off-platform
checkouts. Calls are authenticated with a shared secret sent in the
``X-Bridge-Token`` header.
"""

import hmac
from decimal import Decimal
from typing import Optional

import structlog

from ledger.balances import BalanceMutators
from ledger.errors import UnauthorizedError, ValidationError
from ledger.journal import Journal
from ledger.models import PARTNERS, access_flag, normalize_email
from ledger.storage import UniqueViolation
from rules.eligibility import BonusRules

from .models import BridgeAccessRequest, BridgeCheckoutRequest, BridgeLoginRequest, BridgeResponse

logger = structlog.get_logger().bind(component="bridge")

SYNC_CHECKOUT_REASON = "bridge.sync_checkout"
UNLOCK_BRAND = "ecoworldbuy"

PRODUCT_FLAGS = {
    **{partner: access_flag(partner) for partner in PARTNERS},
    "crowbar_master": "crowbar_access",
}


class BridgeService:
    def __init__(self, balances: BalanceMutators, journal: Journal, bonus_rules: BonusRules,
                 shared_secret: Optional[str]):
        self.balances = balances
        self.journal = journal
        self.bonus_rules = bonus_rules
        self.shared_secret = shared_secret

    def authorize(self, token: Optional[str]) -> None:
        if not self.shared_secret or not hmac.compare_digest(token or "", self.shared_secret):
            raise UnauthorizedError("Unauthorized")

    def sync_login(self, request: BridgeLoginRequest) -> BridgeResponse:
        email = normalize_email(request.email)
        source = (request.source_brand or "").strip().lower()
        if not email or not source:
            raise ValidationError("email and source_brand are required")
        now = self.balances.now()
        self.balances.update_user(email, {"last_login_at": now, "last_login_brand": source})
        logger.info("bridge_login", email=email, source=source)
        return BridgeResponse(email=email, source=source)

    def sync_checkout(self, request: BridgeCheckoutRequest) -> BridgeResponse:
        email = normalize_email(request.email)
        source = (request.source_brand or "").strip().lower()
        if not email or not source:
            raise ValidationError("email and source_brand are required")
        if request.credits_delta <= 0 and not request.unlock:
            raise ValidationError("credits_delta must be > 0 unless unlock=true")

        session_id = request.stripe_session_id
        key = request.idempotency_key
        if session_id and self.journal.session_granted(session_id, SYNC_CHECKOUT_REASON):
            return self._replayed(email, source, "session already processed")
        if key and self.journal.key_used(key):
            return self._replayed(email, source, "idempotency_key already processed")

        self.balances.ensure_user(email)
        amount_usd = (Decimal(max(request.amount_cents, 0)) / 100).quantize(Decimal("0.01"))
        credits = max(request.credits_delta, 0)
        now = self.balances.now()
        # Unlock-only calls still write a zero-delta row so a replay finds it.
        try:
            self.journal.append(
                email, credits, SYNC_CHECKOUT_REASON, created_at=now, origin_site=source,
                stripe_session_id=session_id, idempotency_key=key,
                amount_usd=amount_usd if amount_usd > 0 else None,
            )
        except UniqueViolation:
            return self._replayed(email, source, "checkout already processed")
        if credits > 0 and session_id:
            self.journal.record_history(email, credits, source, created_at=now,
                                        legal_accept=True, stripe_session_id=session_id)

        unlock_applied = source == UNLOCK_BRAND and request.unlock
        if unlock_applied:
            self.balances.update_user(email, {access_flag(UNLOCK_BRAND): True})
        if credits > 0:
            self.balances.bump_credits(email, credits)
        if amount_usd > 0:
            self.balances.bump_spend(email, amount_usd)
        self.bonus_rules.auto_upgrade_if_eligible(email)

        balance = int(self.balances.get_user(email).get("total_credits") or 0)
        logger.info("bridge_checkout_synced", email=email, source=source, credits=credits,
                    amount_usd=str(amount_usd), unlock=unlock_applied)
        return BridgeResponse(
            email=email, source=source, credits_added=credits,
            amount_usd=amount_usd, unlock_applied=unlock_applied, balance=balance,
        )

    def sync_access(self, request: BridgeAccessRequest) -> BridgeResponse:
        email = normalize_email(request.email)
        product = (request.product_type or "").strip().lower()
        if not email:
            raise ValidationError("email is required")
        flag = PRODUCT_FLAGS.get(product)
        if flag is None:
            raise ValidationError(f"Unknown product type: {product}", code="invalid_product")
        self.balances.update_user(email, {flag: True})
        logger.info("bridge_access_granted", email=email, flag=flag)
        return BridgeResponse(email=email, source=product, message=f"{flag} enabled")

    def _replayed(self, email: str, source: str, message: str) -> BridgeResponse:
        user = self.balances.get_user(email) or {}
        return BridgeResponse(email=email, source=source, idempotent=True,
                              balance=int(user.get("total_credits") or 0), message=message)
