"""
Ledger Reconciliation
=====================

Read-only consistency check of users against their streak_history.

Checks:
1. Entry timestamps strictly increase
2. Each entry starts where the previous one ended (old_streak chain)
3. change_amount == new_streak - old_streak
4. users.current_streak equals the latest entry's new_streak
5. users.longest_streak is at least every recorded streak
6. users.insurance_locked matches a replay of the user's resolutions
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from core.insurance_state_machine import ResolutionRecord, replay
from db.models import StreakChangeType, StreakHistoryEntry, User
from db.resolution_store import ResolutionStore

logger = logging.getLogger(__name__)

RESOLUTION_ENTRY_TYPES = (StreakChangeType.WIN, StreakChangeType.LOSS)


@dataclass
class ReconciliationReport:
    user_id: str
    entries: int = 0
    issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "entries": self.entries,
            "ok": self.ok,
            "issues": list(self.issues),
        }


def check_ledger(user: User, history: List[StreakHistoryEntry]) -> ReconciliationReport:
    """Pure check of one user's document against their ledger (oldest first)."""
    report = ReconciliationReport(user_id=user.user_id, entries=len(history))

    previous: Optional[StreakHistoryEntry] = None
    for entry in history:
        if entry.change_amount != entry.new_streak - entry.old_streak:
            report.issues.append(f"{entry.entry_id}: change_amount {entry.change_amount} "
                                 f"!= {entry.new_streak} - {entry.old_streak}")
        if previous is not None:
            if entry.at <= previous.at:
                report.issues.append(f"{entry.entry_id}: at {entry.at.isoformat()} not after "
                                     f"{previous.at.isoformat()}")
            if entry.old_streak != previous.new_streak:
                report.issues.append(f"{entry.entry_id}: old_streak {entry.old_streak} "
                                     f"!= previous new_streak {previous.new_streak}")
        previous = entry

    expected_streak = history[-1].new_streak if history else 0
    if user.current_streak != expected_streak:
        report.issues.append(f"current_streak {user.current_streak} != ledger {expected_streak}")

    peak = max((entry.new_streak for entry in history), default=0)
    if user.longest_streak < peak:
        report.issues.append(f"longest_streak {user.longest_streak} below recorded peak {peak}")

    records = [
        ResolutionRecord(
            parlay_id=entry.parlay_id or "",
            insured=bool(entry.details.get("insured", False)),
            won=entry.change_type == StreakChangeType.WIN,
            resolved_at=entry.at,
        )
        for entry in history
        if entry.change_type in RESOLUTION_ENTRY_TYPES
    ]
    replayed = replay(records)
    if replayed.locked != user.insurance_locked:
        report.issues.append(f"insurance_locked {user.insurance_locked} != replayed {replayed.locked}")

    return report


class LedgerReconciler:
    def __init__(self, store: ResolutionStore):
        self.store = store

    def reconcile_user(self, user_id: str) -> Optional[ReconciliationReport]:
        user = self.store.get_user(user_id)
        if user is None:
            return None
        report = check_ledger(user, self.store.get_history(user_id))
        if not report.ok:
            logger.error(f"Ledger drift for user {user_id}: {report.issues}")
        return report

    def reconcile_all(self, limit: Optional[int] = None) -> List[ReconciliationReport]:
        reports = []
        for user_id in self.store.list_user_ids(limit):
            report = self.reconcile_user(user_id)
            if report is not None:
                reports.append(report)
        return reports
