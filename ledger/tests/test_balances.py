"""
Unit Tests for the Balance Mutators

Tests cover:
1. Lazy user creation
2. Sequential credit and spend bumps
3. Full-access recomputation for legacy purchases
4. Compare-and-set retry under a concurrent write
"""

import pytest
from decimal import Decimal

from ledger.balances import BalanceMutators
from ledger.errors import UpstreamError
from ledger.storage import USERS, InMemoryStorage


class InterleavingStorage(InMemoryStorage):
    """Lets another writer bump the user between our read and our write, once."""

    def __init__(self, concurrent_delta: int):
        super().__init__()
        self.concurrent_delta = concurrent_delta
        self.interleaved = False

    def update(self, table, eq, changes):
        if table == USERS and "total_credits" in eq and not self.interleaved:
            self.interleaved = True
            row = self.select(USERS, eq={"email": eq["email"]})[0]
            super().update(USERS, {"email": eq["email"]},
                           {"total_credits": row["total_credits"] + self.concurrent_delta})
        return super().update(table, eq, changes)


class StuckStorage(InMemoryStorage):
    def update(self, table, eq, changes):
        if "total_credits" in eq:
            return []
        return super().update(table, eq, changes)


class TestEnsureUser:
    """Tests for ensure_user."""

    def test_creates_row_with_default_aggregates(self, storage):
        balances = BalanceMutators(storage)

        row = balances.ensure_user("  A@X.com ")

        assert row["email"] == "a@x.com"
        assert row["total_credits"] == 0
        assert row["total_spent"] == Decimal("0")
        assert row["membership_tier"] == "none"
        assert row["access_mode"] == "none"

    def test_is_idempotent(self, storage):
        balances = BalanceMutators(storage)

        balances.ensure_user("a@x.com")
        balances.bump_credits("a@x.com", 5)
        row = balances.ensure_user("a@x.com")

        assert row["total_credits"] == 5
        assert len(storage.select(USERS)) == 1


class TestBumpCredits:
    """Tests for bump_credits."""

    def test_sequential_bumps_add_up(self, storage):
        balances = BalanceMutators(storage)

        balances.bump_credits("a@x.com", 49)
        total = balances.bump_credits("a@x.com", -7)

        assert total == 42
        assert balances.get_user("a@x.com")["total_credits"] == 42

    def test_concurrent_write_is_not_lost(self):
        storage = InterleavingStorage(concurrent_delta=10)
        balances = BalanceMutators(storage)
        balances.ensure_user("a@x.com")

        total = balances.bump_credits("a@x.com", 49)

        assert total == 59
        assert balances.get_user("a@x.com")["total_credits"] == 59

    def test_gives_up_after_bounded_attempts(self):
        balances = BalanceMutators(StuckStorage())

        with pytest.raises(UpstreamError):
            balances.bump_credits("a@x.com", 1)

    def test_stamps_updated_at(self, storage, clock):
        balances = BalanceMutators(storage, clock=clock)

        balances.bump_credits("a@x.com", 1)

        assert balances.get_user("a@x.com")["updated_at"] == clock.moment


class TestBumpSpend:
    """Tests for bump_spend."""

    def test_accumulates_at_cent_precision(self, storage):
        balances = BalanceMutators(storage)

        balances.bump_spend("a@x.com", Decimal("7"))
        total = balances.bump_spend("a@x.com", Decimal("12.50"))

        assert total == Decimal("19.50")

    def test_legacy_recompute_sets_full_access_at_threshold(self, storage):
        balances = BalanceMutators(storage)

        balances.bump_spend("a@x.com", Decimal("49"), recompute_full_access=True)
        assert balances.get_user("a@x.com")["full_access"] is False

        balances.bump_spend("a@x.com", Decimal("50"), recompute_full_access=True)
        assert balances.get_user("a@x.com")["full_access"] is True

    def test_without_recompute_full_access_is_untouched(self, storage):
        balances = BalanceMutators(storage)

        balances.bump_spend("a@x.com", Decimal("120"))

        assert balances.get_user("a@x.com")["full_access"] is False
