"""
Streak Ledger Reconciliation Script

Compares every user's streak fields with their streak_history and reports
drift. Read-only.

Usage:
    python -m scripts.reconcile_streaks
    python -m scripts.reconcile_streaks --user-id u_123
"""

import argparse
import logging
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db.mongo import db
from db.resolution_store import ResolutionStore
from services.ledger_reconciliation import LedgerReconciler


def run_reconciliation(user_id=None, limit=None) -> int:
    """Returns the number of users with drift."""
    reconciler = LedgerReconciler(ResolutionStore(db, use_transactions=False))

    if user_id:
        report = reconciler.reconcile_user(user_id)
        if report is None:
            print(f"User {user_id} not found")
            return 1
        reports = [report]
    else:
        reports = reconciler.reconcile_all(limit)

    drifted = [r for r in reports if not r.ok]
    for report in drifted:
        print(f"✗ {report.user_id} ({report.entries} entries)")
        for issue in report.issues:
            print(f"    - {issue}")

    print(f"\nChecked {len(reports)} users, {len(drifted)} with drift")
    return len(drifted)


def main():
    parser = argparse.ArgumentParser(description="Reconcile user streaks against streak_history")
    parser.add_argument("--user-id", help="Check a single user")
    parser.add_argument("--limit", type=int, help="Max users to check")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    drifted = run_reconciliation(user_id=args.user_id, limit=args.limit)
    sys.exit(1 if drifted else 0)


if __name__ == "__main__":
    main()
