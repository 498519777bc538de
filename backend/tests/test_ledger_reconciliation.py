"""
Ledger reconciliation detects drift between users and streak_history
"""
from datetime import datetime, timedelta, timezone

from db.models import USERS, StreakChangeType, StreakHistoryEntry, User
from services.ledger_reconciliation import LedgerReconciler, check_ledger

T1 = datetime(2026, 1, 10, 20, 0, tzinfo=timezone.utc)


def _entry(entry_id, old, new, change_type=StreakChangeType.WIN, at=T1, parlay_id="p", **details):
    return StreakHistoryEntry(entry_id, "u1", parlay_id, old, new, new - old, change_type, at, details)


class TestCheckLedger:
    def test_consistent_ledger(self):
        history = [
            _entry("e1", 0, 2, at=T1),
            _entry("e2", 2, 2, StreakChangeType.LOSS, at=T1 + timedelta(seconds=1), insured=True),
            _entry("e3", 2, 2, StreakChangeType.INSURANCE_LOCK, at=T1 + timedelta(seconds=2)),
        ]
        user = User("u1", current_streak=2, longest_streak=2, insurance_locked=True)

        report = check_ledger(user, history)

        assert report.ok, report.issues
        assert report.entries == 3

    def test_empty_ledger_requires_zero_streak(self):
        assert check_ledger(User("u1"), []).ok
        assert not check_ledger(User("u1", current_streak=3, longest_streak=3), []).ok

    def test_current_streak_drift(self):
        report = check_ledger(User("u1", current_streak=5, longest_streak=5), [_entry("e1", 0, 2)])
        assert any("current_streak" in issue for issue in report.issues)

    def test_non_increasing_timestamps(self):
        history = [_entry("e1", 0, 1, at=T1), _entry("e2", 1, 2, at=T1)]
        report = check_ledger(User("u1", current_streak=2, longest_streak=2), history)
        assert any("not after" in issue for issue in report.issues)

    def test_broken_chain(self):
        history = [_entry("e1", 0, 1, at=T1), _entry("e2", 4, 5, at=T1 + timedelta(seconds=1))]
        report = check_ledger(User("u1", current_streak=5, longest_streak=5), history)
        assert any("old_streak" in issue for issue in report.issues)

    def test_longest_streak_below_peak(self):
        history = [_entry("e1", 0, 8, at=T1), _entry("e2", 8, 0, StreakChangeType.LOSS, at=T1 + timedelta(seconds=1))]
        report = check_ledger(User("u1", current_streak=0, longest_streak=3), history)
        assert any("longest_streak" in issue for issue in report.issues)

    def test_insurance_flag_drift(self):
        history = [_entry("e1", 0, 0, StreakChangeType.LOSS, at=T1, insured=True)]
        report = check_ledger(User("u1", insurance_locked=False), history)
        assert any("insurance_locked" in issue for issue in report.issues)


class TestReconciler:
    def test_clean_after_engine_resolutions(self, engine, store, seed):
        seed.user(current_streak=12, longest_streak=12)
        seed.parlay("A", outcomes=["loss"] * 4, insured=True, insurance_cost=3)
        seed.parlay("B", outcomes=["win"])
        engine.resolve("A")
        engine.resolve("B")

        report = LedgerReconciler(store).reconcile_user("u1")

        assert report.ok, report.issues
        assert report.entries == 4

    def test_detects_manual_edit(self, engine, store, seed, db):
        seed.user(current_streak=1)
        seed.parlay("A", outcomes=["win"])
        engine.resolve("A")
        db[USERS].update_one({"user_id": "u1"}, {"$set": {"current_streak": 50}})

        report = LedgerReconciler(store).reconcile_user("u1")

        assert not report.ok

    def test_reconcile_all(self, store, seed):
        seed.user("u1")
        seed.user("u2", current_streak=4, longest_streak=4)

        reports = LedgerReconciler(store).reconcile_all()

        assert [(r.user_id, r.ok) for r in reports] == [("u1", True), ("u2", False)]

    def test_unknown_user(self, store):
        assert LedgerReconciler(store).reconcile_user("ghost") is None
