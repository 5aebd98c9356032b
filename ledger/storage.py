"""
Row store used by every service.

The store exposes select/insert/update/upsert over named tables and enforces
the uniqueness constraints idempotency relies on. ``InMemoryStorage`` is the
reference implementation; ``SupabaseStorage`` talks to the managed database
with the same contract.
"""

import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol
from uuid import uuid4


USERS = "users"
LEDGER = "credits_ledger"
CREDITS_HISTORY = "credits"
REFERRALS = "referrals"
EMAIL_LOG = "notification_email_log"


class UniqueViolation(Exception):
    """A write collided with a uniqueness constraint."""

    def __init__(self, table: str, constraint: str):
        super().__init__(f"duplicate key value violates unique constraint {constraint!r} on {table!r}")
        self.table = table
        self.constraint = constraint


@dataclass(frozen=True)
class UniqueConstraint:
    name: str
    columns: tuple
    where: Optional[Callable[[dict], bool]] = None

    def key(self, row: dict) -> Optional[tuple]:
        values = tuple(row.get(c) for c in self.columns)
        if any(v is None for v in values):
            return None
        if self.where and not self.where(row):
            return None
        return values


def _paid_row(row: dict) -> bool:
    return (row.get("delta") or 0) >= 1


SCHEMA: dict[str, list[UniqueConstraint]] = {
    USERS: [
        UniqueConstraint("users_email_key", ("email",)),
        UniqueConstraint("users_referral_code_key", ("referral_code",)),
    ],
    LEDGER: [
        UniqueConstraint("credits_ledger_event_key", ("stripe_event_id",)),
        UniqueConstraint("credits_ledger_paid_session_key", ("stripe_session_id",), where=_paid_row),
        UniqueConstraint("credits_ledger_session_reason_key", ("stripe_session_id", "reason")),
        UniqueConstraint("credits_ledger_idempotency_key", ("idempotency_key",)),
    ],
    CREDITS_HISTORY: [
        UniqueConstraint("credits_session_key", ("stripe_session_id",)),
    ],
    REFERRALS: [
        UniqueConstraint("referrals_referred_email_key", ("referred_email",)),
    ],
    EMAIL_LOG: [],
}


class Storage(Protocol):
    def select(
        self,
        table: str,
        eq: Optional[dict] = None,
        gte: Optional[dict] = None,
        lte: Optional[dict] = None,
        not_null: Optional[list] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[dict]: ...

    def insert(self, table: str, row: dict) -> dict: ...

    def update(self, table: str, eq: dict, changes: dict) -> list[dict]: ...

    def upsert(self, table: str, row: dict, on_conflict: str) -> dict: ...


def _matches(row: dict, eq: Optional[dict], gte: Optional[dict], lte: Optional[dict], not_null: Optional[list]) -> bool:
    for column, value in (eq or {}).items():
        if row.get(column) != value:
            return False
    for column, bound in (gte or {}).items():
        value = row.get(column)
        if value is None or value < bound:
            return False
    for column, bound in (lte or {}).items():
        value = row.get(column)
        if value is None or value > bound:
            return False
    for column in not_null or []:
        if row.get(column) is None:
            return False
    return True


class InMemoryStorage:
    def __init__(self, schema: Optional[dict[str, list[UniqueConstraint]]] = None):
        self.schema = schema or SCHEMA
        self.tables: dict[str, list[dict]] = {name: [] for name in self.schema}
        self._lock = threading.RLock()

    def select(
        self,
        table: str,
        eq: Optional[dict] = None,
        gte: Optional[dict] = None,
        lte: Optional[dict] = None,
        not_null: Optional[list] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[dict]:
        with self._lock:
            rows = [r for r in self._rows(table) if _matches(r, eq, gte, lte, not_null)]
            if order_by:
                rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=desc)
            rows = rows[offset:]
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def insert(self, table: str, row: dict) -> dict:
        with self._lock:
            record = copy.deepcopy(row)
            record.setdefault("id", str(uuid4()))
            record.setdefault("created_at", datetime.now(timezone.utc))
            self._check_unique(table, record)
            self._rows(table).append(record)
            return copy.deepcopy(record)

    def update(self, table: str, eq: dict, changes: dict) -> list[dict]:
        with self._lock:
            updated = []
            for row in self._rows(table):
                if not _matches(row, eq, None, None, None):
                    continue
                candidate = {**row, **copy.deepcopy(changes)}
                self._check_unique(table, candidate, ignore=row)
                row.update(copy.deepcopy(changes))
                updated.append(copy.deepcopy(row))
            return updated

    def upsert(self, table: str, row: dict, on_conflict: str) -> dict:
        with self._lock:
            existing = [r for r in self._rows(table) if r.get(on_conflict) == row.get(on_conflict)]
            if existing:
                changes = {k: v for k, v in row.items() if k != on_conflict}
                if changes:
                    return self.update(table, {on_conflict: row[on_conflict]}, changes)[0]
                return copy.deepcopy(existing[0])
            return self.insert(table, row)

    def _rows(self, table: str) -> list[dict]:
        if table not in self.tables:
            raise KeyError(f"Unknown table {table!r}")
        return self.tables[table]

    def _check_unique(self, table: str, candidate: dict, ignore: Optional[dict] = None) -> None:
        for constraint in self.schema.get(table, []):
            key = constraint.key(candidate)
            if key is None:
                continue
            for other in self._rows(table):
                if other is ignore:
                    continue
                if constraint.key(other) == key:
                    raise UniqueViolation(table, constraint.name)


def first(rows: list[dict]) -> Optional[dict[str, Any]]:
    return rows[0] if rows else None
