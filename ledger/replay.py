"""
Balance replay: recompute ``total_credits`` from the ledger.

A failure after a ledger insert can leave a user's aggregate behind the
ledger. Running the replay corrects that drift.

    python -m ledger.replay user@example.com other@example.com
"""

import argparse
from typing import Iterable, Optional

import structlog

from .balances import BalanceMutators
from .journal import Journal
from .models import normalize_email
from .storage import USERS, Storage

logger = structlog.get_logger().bind(component="replay")


def ledger_total(journal: Journal, email: str) -> int:
    return sum(int(row["delta"]) for row in journal.all_entries_for(email))


def replay_balances(storage: Storage, emails: Optional[Iterable[str]] = None,
                    balances: Optional[BalanceMutators] = None) -> dict[str, dict]:
    """Set every user's total_credits to the sum of their ledger deltas.

    Returns the corrections made, keyed by email.
    """
    balances = balances or BalanceMutators(storage)
    journal = Journal(storage)
    if emails is None:
        emails = [row["email"] for row in storage.select(USERS)]

    corrections = {}
    for email in emails:
        email = normalize_email(email)
        user = balances.ensure_user(email)
        expected = ledger_total(journal, email)
        current = int(user.get("total_credits") or 0)
        if current == expected:
            continue
        balances.update_user(email, {"total_credits": expected})
        corrections[email] = {"before": current, "after": expected}
        logger.warning("balance_drift_corrected", email=email, before=current, after=expected)
    return corrections


def main(argv: Optional[list[str]] = None) -> None:
    from config import configure_logging, settings
    from .supabase_storage import SupabaseStorage

    parser = argparse.ArgumentParser(description="Recompute credit balances from the ledger")
    parser.add_argument("emails", nargs="*", help="Limit the replay to these users")
    args = parser.parse_args(argv)

    configure_logging()
    storage = SupabaseStorage.from_settings(settings)
    corrections = replay_balances(storage, args.emails or None)
    print(f"Corrected {len(corrections)} balance(s)")


if __name__ == "__main__":
    main()
