"""
Balance mutators shared by every component that touches a user's aggregates.

All read-modify-write updates go through compare-and-set: the update only
matches while the aggregate still holds the value that was read, and is
retried otherwise. The ledger stays the source of truth; see ``replay.py``.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import structlog

from .errors import UpstreamError
from .models import UserRecord, normalize_email
from .storage import USERS, Storage, UniqueViolation, first

logger = structlog.get_logger().bind(component="balances")

FULL_ACCESS_SPEND_THRESHOLD = Decimal("99")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def cents(value) -> Decimal:
    return to_decimal(value).quantize(Decimal("0.01"))


def new_user_row(email: str) -> dict:
    row = UserRecord(email=email).model_dump(mode="python")
    row["membership_tier"] = row["membership_tier"].value
    row["access_mode"] = row["access_mode"].value
    return row


class BalanceMutators:
    MAX_ATTEMPTS = 5

    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    def get_user(self, email: str) -> Optional[dict]:
        return first(self.storage.select(USERS, eq={"email": normalize_email(email)}, limit=1))

    def ensure_user(self, email: str) -> dict:
        """Return the user row for ``email``, creating it with default aggregates if absent."""
        email = normalize_email(email)
        existing = self.get_user(email)
        if existing:
            return existing
        try:
            return self.storage.insert(USERS, new_user_row(email))
        except UniqueViolation:
            # Lost the creation race; the winner's row is the one to use.
            return self.get_user(email)

    def update_user(self, email: str, changes: dict) -> dict:
        email = normalize_email(email)
        self.ensure_user(email)
        rows = self.storage.update(USERS, {"email": email}, {**changes, "updated_at": self.now()})
        return rows[0] if rows else self.get_user(email)

    def bump_credits(self, email: str, delta: int) -> int:
        email = normalize_email(email)
        row = self.ensure_user(email)
        for _ in range(self.MAX_ATTEMPTS):
            current = row.get("total_credits")
            new_total = int(current or 0) + int(delta or 0)
            updated = self.storage.update(
                USERS,
                {"email": email, "total_credits": current},
                {"total_credits": new_total, "updated_at": self.now()},
            )
            if updated:
                logger.info("credits_bumped", email=email, delta=delta, total_credits=new_total)
                return new_total
            row = self.get_user(email)
        raise UpstreamError(f"Could not update credits for {email} after {self.MAX_ATTEMPTS} attempts")

    def bump_spend(self, email: str, delta_usd, recompute_full_access: bool = False) -> Decimal:
        """Add ``delta_usd`` to total_spent.

        Legacy flat-product purchases also recompute ``full_access`` as
        ``total_spent >= 99``.
        """
        email = normalize_email(email)
        row = self.ensure_user(email)
        for _ in range(self.MAX_ATTEMPTS):
            current = row.get("total_spent")
            new_spent = cents(to_decimal(current) + to_decimal(delta_usd))
            changes = {"total_spent": new_spent, "updated_at": self.now()}
            if recompute_full_access:
                changes["full_access"] = new_spent >= FULL_ACCESS_SPEND_THRESHOLD
            updated = self.storage.update(USERS, {"email": email, "total_spent": current}, changes)
            if updated:
                logger.info("spend_bumped", email=email, delta_usd=str(delta_usd), total_spent=str(new_spent))
                return new_spent
            row = self.get_user(email)
        raise UpstreamError(f"Could not update spend for {email} after {self.MAX_ATTEMPTS} attempts")
