"""
Gate Flow

Two-phase partner unlock. ``start`` sends pass holders straight to the
partner (with the daily partner reward) and everyone else to checkout;
``complete`` reconciles the access-pass session and then does the same.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

import structlog

from ledger.balances import BalanceMutators
from ledger.errors import LegalAcceptanceRequired, NotFoundError, ValidationError
from ledger.journal import Journal
from ledger.models import normalize_email
from ledger.storage import UniqueViolation
from payments.gateway import PaymentGateway
from payments.reconciliation import ReconciliationEngine

from .models import (
    GateCompleteRequest,
    GateCompleteResponse,
    GateStartRequest,
    GateStartResponse,
    PartnerReward,
)

logger = structlog.get_logger().bind(component="gate")

ACCESS_PASS_ORIGIN = "access_pass"
PARTNER_REWARD_REASON = "action.rewarded"
PARTNER_REWARDS = {
    "talentkonnect": 7,
    "careduel": 3,
    "ecoworldbuy": 7,
}


def utc_day_bounds(moment: datetime) -> tuple[datetime, datetime]:
    moment = moment.astimezone(timezone.utc)
    start = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


class GateFlow:
    def __init__(
        self,
        balances: BalanceMutators,
        journal: Journal,
        engine: ReconciliationEngine,
        gateway: PaymentGateway,
        settings,
    ):
        self.balances = balances
        self.journal = journal
        self.engine = engine
        self.gateway = gateway
        self.settings = settings

    @property
    def partner_urls(self) -> dict:
        return self.settings.PARTNER_URLS

    def has_access_pass(self, email: str) -> bool:
        return bool(self.journal.history_rows(email, ACCESS_PASS_ORIGIN, legal_accept=True))

    def award_partner_once_per_day(self, email: str, partner: str) -> PartnerReward:
        """Grant the partner's entry reward unless it was already granted this UTC day."""
        email = normalize_email(email)
        credits = PARTNER_REWARDS.get(partner, 0)
        if credits <= 0:
            return PartnerReward(awarded=False)

        now = self.balances.now()
        day_start, day_end = utc_day_bounds(now)
        if self.journal.has_reason_between(email, PARTNER_REWARD_REASON, partner, day_start, day_end):
            logger.info("partner_reward_already_given", email=email, partner=partner)
            return PartnerReward(awarded=False)

        key = f"{PARTNER_REWARD_REASON}:{partner}:{email}:{day_start.date().isoformat()}"
        try:
            self.journal.append(email, credits, PARTNER_REWARD_REASON, created_at=now,
                                origin_site=partner, idempotency_key=key)
        except UniqueViolation:
            return PartnerReward(awarded=False)
        self.journal.record_history(email, credits, partner, created_at=now, legal_accept=True)
        self.balances.bump_credits(email, credits)
        logger.info("partner_reward_granted", email=email, partner=partner, credits=credits)
        return PartnerReward(awarded=True, credits=credits)

    def start(self, request: GateStartRequest) -> GateStartResponse:
        email = normalize_email(request.email)
        origin = (request.origin or "").strip().lower()
        if not email or not origin:
            raise ValidationError("email and origin are required", code="missing_params")
        if origin not in self.partner_urls:
            raise ValidationError("invalid origin", code="invalid_origin")

        if self.has_access_pass(email):
            reward = self.award_partner_once_per_day(email, origin)
            return GateStartResponse(
                need_payment=False, redirect_url=self.partner_urls[origin],
                awarded=reward.awarded, credits=reward.credits,
            )

        if not request.legal_accept:
            raise LegalAcceptanceRequired("legal_accept is required")

        price_id = self.settings.price_for(ACCESS_PASS_ORIGIN)
        if not price_id:
            raise ValidationError("Missing Stripe price ID for the access pass", code="missing_price")
        return_to = request.return_to or origin
        frontend = self.settings.FRONTEND_URL.rstrip("/")
        session = self.gateway.create_session(
            email,
            {
                "user_email": email,
                "product_type": ACCESS_PASS_ORIGIN,
                "legal_accept": "true",
                "origin": origin,
                "return_to": return_to,
            },
            success_url=(
                f"{frontend}/payment-success?session_id={{CHECKOUT_SESSION_ID}}"
                f"&origin={quote(origin)}&return_to={quote(return_to)}"
            ),
            cancel_url=f"{frontend}/payment-cancel?origin={quote(origin)}",
            price_id=price_id,
        )
        logger.info("gate_checkout_created", email=email, origin=origin, session_id=session.id)
        return GateStartResponse(need_payment=True, checkout_url=session.url, session_id=session.id)

    def complete(self, request: GateCompleteRequest) -> GateCompleteResponse:
        if request.session_id:
            return self._complete_session(request)
        email = normalize_email(request.email)
        origin = (request.origin or "").strip().lower()
        if email and origin:
            if not self.has_access_pass(email):
                raise ValidationError("No access pass found for this account", code="access_pass_required")
            reward = self.award_partner_once_per_day(email, origin)
            return GateCompleteResponse(
                redirect_url=self._redirect(request.return_to or origin),
                awarded=reward.awarded, credits=reward.credits,
            )
        raise ValidationError(
            "Provide session_id (after payment) OR email + origin (if pass already owned).",
            code="missing_params",
        )

    def _complete_session(self, request: GateCompleteRequest) -> GateCompleteResponse:
        session = self.gateway.retrieve_session(request.session_id)
        if session is None:
            raise NotFoundError(f"Session {request.session_id} not found", code="session_not_found")
        if not session.is_paid:
            raise ValidationError("Session is not paid", code="session_not_paid")

        result = self.engine.reconcile(session)
        origin = (request.origin or session.metadata.get("origin") or "").strip().lower()
        return_key = request.return_to or session.metadata.get("return_to") or origin

        reward = PartnerReward(awarded=False)
        if origin in self.partner_urls:
            reward = self.award_partner_once_per_day(result.email, origin)
        logger.info("gate_completed", email=result.email, session_id=session.id, origin=origin,
                    reconciliation=result.status.value, awarded=reward.awarded)
        return GateCompleteResponse(
            redirect_url=self._redirect(return_key, fallback=origin),
            awarded=reward.awarded,
            credits=reward.credits,
            reconciliation=result.status.value,
        )

    def _redirect(self, key: Optional[str], fallback: Optional[str] = None) -> str:
        return self.partner_urls.get(key or "") or self.partner_urls.get(fallback or "") or "/"
