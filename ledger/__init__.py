"""
Credits Ledger

This package provides:
- The row store contract and its in-memory and Supabase implementations
- Append-only ledger entries with idempotency constraints
- Balance mutators for the per-user aggregates
- Direct earn/spend movements and balance replay
"""

from .errors import LedgerServiceError
from .models import (
    AccessMode,
    LedgerEntry,
    MembershipTier,
    UserRecord,
    normalize_email,
)
from .storage import InMemoryStorage, UniqueViolation
from .balances import BalanceMutators
from .journal import Journal

__all__ = [
    "LedgerServiceError",
    "AccessMode",
    "LedgerEntry",
    "MembershipTier",
    "UserRecord",
    "normalize_email",
    "InMemoryStorage",
    "UniqueViolation",
    "BalanceMutators",
    "Journal",
]
