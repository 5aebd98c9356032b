from typing import Optional

import structlog

from rules.eligibility import BonusRules

from .balances import BalanceMutators
from .errors import NotFoundError, ValidationError
from .journal import Journal
from .models import (
    KYC_FIELDS,
    PROFILE_FIELDS,
    BalanceResponse,
    CreditMovementResponse,
    EarnCreditsRequest,
    LedgerEntry,
    LedgerHistoryResponse,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    SpendCreditsRequest,
    UserRecord,
    normalize_email,
)
from .storage import UniqueViolation

logger = structlog.get_logger().bind(component="credits")


def _require_email(value: Optional[str]) -> str:
    email = normalize_email(value)
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    return email


class CreditsService:
    """Direct credit movements that do not come from a payment."""

    def __init__(self, balances: BalanceMutators, journal: Journal, bonus_rules: BonusRules):
        self.balances = balances
        self.journal = journal
        self.bonus_rules = bonus_rules

    def get_balance(self, email: str) -> BalanceResponse:
        email = _require_email(email)
        user = self.balances.get_user(email)
        return BalanceResponse(email=email, balance=int((user or {}).get("total_credits") or 0))

    def earn(self, request: EarnCreditsRequest) -> CreditMovementResponse:
        email = _require_email(request.email)
        if request.amount == 0:
            raise ValidationError("amount must be a non-zero integer")
        return self._move(email, request.amount, "api.earn", request.origin, request.idempotency_key,
                          f"Credits added successfully for {email}")

    def spend(self, request: SpendCreditsRequest) -> CreditMovementResponse:
        email = _require_email(request.email)
        if request.amount == 0:
            raise ValidationError("amount must be a non-zero integer")
        delta = -abs(request.amount)
        return self._move(email, delta, "api.spend", request.origin or "spend", request.idempotency_key,
                          f"Successfully spent {abs(delta)} credits for {email}")

    def _move(self, email: str, delta: int, reason: str, origin: str, idempotency_key: Optional[str],
              message: str) -> CreditMovementResponse:
        if idempotency_key and self.journal.key_used(idempotency_key):
            return self._replayed(email, delta, origin)
        now = self.balances.now()
        try:
            self.journal.append(email, delta, reason, created_at=now, origin_site=origin,
                                idempotency_key=idempotency_key)
        except UniqueViolation:
            return self._replayed(email, delta, origin)
        self.journal.record_history(email, delta, origin, created_at=now,
                                    eligible_global_race=origin == "access_pass")
        balance = self.balances.bump_credits(email, delta)
        logger.info("credits_moved", email=email, delta=delta, reason=reason, origin=origin)
        return CreditMovementResponse(email=email, delta=abs(delta), origin=origin, balance=balance, message=message)

    def _replayed(self, email: str, delta: int, origin: str) -> CreditMovementResponse:
        balance = self.get_balance(email).balance
        return CreditMovementResponse(
            email=email, delta=abs(delta), origin=origin, balance=balance, idempotent=True,
            message="Request already processed (idempotent return)",
        )

    def get_ledger_history(self, email: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        email = _require_email(email)
        entries = [LedgerEntry(**e) for e in self.journal.entries_for(email, limit=limit, offset=offset)]
        return LedgerHistoryResponse(
            email=email,
            entries=entries,
            total_count=len(self.journal.all_entries_for(email)),
            current_balance=self.get_balance(email).balance,
        )

    def get_user_access(self, email: str) -> UserRecord:
        email = _require_email(email)
        user = self.balances.get_user(email)
        if not user:
            raise NotFoundError("User not found", code="user_not_found")
        return UserRecord(**user)

    def update_profile(self, request: ProfileUpdateRequest) -> ProfileUpdateResponse:
        email = _require_email(request.email)
        changes = {
            name: getattr(request, name)
            for name in PROFILE_FIELDS + KYC_FIELDS
            if getattr(request, name) is not None
        }
        changes["kyc_status"] = "pending"
        user = self.balances.update_user(email, changes)
        bonus = self.bonus_rules.profile_bonus_if_complete(email, user)
        return ProfileUpdateResponse(user=UserRecord(**self.balances.get_user(email)), bonus_awarded=bonus)
