"""Storage adapter for the managed Postgres database (Supabase).

Uniqueness constraints live in ``schema.sql``; Postgres reports collisions
with SQLSTATE 23505, which is surfaced as ``UniqueViolation`` so callers can
treat it as an "already processed" signal.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from postgrest.exceptions import APIError
from supabase import Client, create_client

from .errors import UpstreamError
from .storage import UniqueViolation

logger = structlog.get_logger().bind(component="supabase_storage")

UNIQUE_VIOLATION = "23505"


def _encode(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _encode_row(row: dict) -> dict:
    return {k: _encode(v) for k, v in row.items()}


class SupabaseStorage:
    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_settings(cls, settings) -> "SupabaseStorage":
        return cls(create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY))

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
        query = self.client.table(table).select("*")
        query = self._filter(query, eq)
        for column, bound in (gte or {}).items():
            query = query.gte(column, _encode(bound))
        for column, bound in (lte or {}).items():
            query = query.lte(column, _encode(bound))
        for column in not_null or []:
            query = query.not_.is_(column, "null")
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        return self._execute(table, query).data or []

    def insert(self, table: str, row: dict) -> dict:
        query = self.client.table(table).insert(_encode_row(row))
        return self._execute(table, query).data[0]

    def update(self, table: str, eq: dict, changes: dict) -> list[dict]:
        query = self._filter(self.client.table(table).update(_encode_row(changes)), eq)
        return self._execute(table, query).data or []

    def upsert(self, table: str, row: dict, on_conflict: str) -> dict:
        query = self.client.table(table).upsert(_encode_row(row), on_conflict=on_conflict)
        return self._execute(table, query).data[0]

    @staticmethod
    def _filter(query, eq: Optional[dict]):
        for column, value in (eq or {}).items():
            query = query.is_(column, "null") if value is None else query.eq(column, _encode(value))
        return query

    @staticmethod
    def _execute(table: str, query):
        try:
            return query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise UniqueViolation(table, e.message or "unique") from e
            logger.error("store_call_failed", table=table, code=e.code, error=e.message)
            raise UpstreamError(f"Store call on {table} failed: {e.message}") from e
