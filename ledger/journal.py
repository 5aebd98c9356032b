"""Append-only ledger writes and the lookups idempotency checks rely on."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import structlog

from .balances import to_decimal
from .models import normalize_email
from .storage import CREDITS_HISTORY, LEDGER, Storage, UniqueViolation

logger = structlog.get_logger().bind(component="journal")


class Journal:
    def __init__(self, storage: Storage):
        self.storage = storage

    def append(
        self,
        email: str,
        delta: int,
        reason: str,
        created_at: datetime,
        origin_site: Optional[str] = None,
        stripe_event_id: Optional[str] = None,
        stripe_session_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        amount_usd: Optional[Decimal] = None,
    ) -> dict:
        """Insert one ledger row. Raises ``UniqueViolation`` for a duplicate event."""
        row = self.storage.insert(LEDGER, {
            "id": str(uuid4()),
            "email": normalize_email(email),
            "delta": int(delta),
            "reason": reason,
            "origin_site": origin_site,
            "stripe_event_id": stripe_event_id,
            "stripe_session_id": stripe_session_id,
            "idempotency_key": idempotency_key,
            "amount_usd": amount_usd,
            "created_at": created_at,
        })
        logger.info("ledger_appended", email=row["email"], delta=delta, reason=reason,
                    session_id=stripe_session_id, event_id=stripe_event_id)
        return row

    def record_history(
        self,
        email: str,
        amount: int,
        origin_site: str,
        created_at: datetime,
        legal_accept: bool = False,
        eligible_global_race: bool = False,
        stripe_event_id: Optional[str] = None,
        stripe_session_id: Optional[str] = None,
    ) -> Optional[dict]:
        """Write the reporting-only credits history row; failures are logged, never raised."""
        try:
            return self.storage.insert(CREDITS_HISTORY, {
                "id": str(uuid4()),
                "email": normalize_email(email),
                "amount": int(amount),
                "origin_site": origin_site,
                "eligible_global_race": eligible_global_race,
                "legal_accept": legal_accept,
                "stripe_event_id": stripe_event_id,
                "stripe_session_id": stripe_session_id,
                "created_at": created_at,
            })
        except UniqueViolation:
            logger.info("history_row_exists", email=email, session_id=stripe_session_id)
        except Exception:
            logger.error("history_insert_failed", email=email, session_id=stripe_session_id, exc_info=True)
        return None

    def event_processed(self, stripe_event_id: str) -> bool:
        return bool(self.storage.select(LEDGER, eq={"stripe_event_id": stripe_event_id}, limit=1))

    def session_granted(self, stripe_session_id: str, reason: Optional[str] = None) -> bool:
        """True when the session already produced a paid row, or a row for ``reason``."""
        if self.storage.select(LEDGER, eq={"stripe_session_id": stripe_session_id}, gte={"delta": 1}, limit=1):
            return True
        if reason:
            return bool(self.storage.select(
                LEDGER, eq={"stripe_session_id": stripe_session_id, "reason": reason}, limit=1,
            ))
        return False

    def key_used(self, idempotency_key: str) -> bool:
        return bool(self.storage.select(LEDGER, eq={"idempotency_key": idempotency_key}, limit=1))

    def has_reason(self, email: str, reason: str) -> bool:
        return bool(self.storage.select(LEDGER, eq={"email": normalize_email(email), "reason": reason}, limit=1))

    def has_reason_between(self, email: str, reason: str, origin_site: str, start: datetime, end: datetime) -> bool:
        return bool(self.storage.select(
            LEDGER,
            eq={"email": normalize_email(email), "reason": reason, "origin_site": origin_site},
            gte={"created_at": start},
            lte={"created_at": end},
            limit=1,
        ))

    def rolling_spend(self, email: str, now: datetime, days: int = 30) -> Decimal:
        rows = self.storage.select(
            LEDGER,
            eq={"email": normalize_email(email)},
            gte={"created_at": now - timedelta(days=days)},
            lte={"created_at": now},
            not_null=["amount_usd"],
        )
        return sum((to_decimal(r["amount_usd"]) for r in rows), Decimal("0"))

    def entries_for(self, email: str, limit: int = 50, offset: int = 0) -> list[dict]:
        return self.storage.select(
            LEDGER, eq={"email": normalize_email(email)}, order_by="created_at", desc=True,
            limit=limit, offset=offset,
        )

    def all_entries_for(self, email: str) -> list[dict]:
        return self.storage.select(LEDGER, eq={"email": normalize_email(email)})

    def history_rows(self, email: str, origin_site: str, legal_accept: Optional[bool] = None) -> list[dict]:
        eq = {"email": normalize_email(email), "origin_site": origin_site}
        if legal_accept is not None:
            eq["legal_accept"] = legal_accept
        return self.storage.select(CREDITS_HISTORY, eq=eq)
