"""
BUILDING -> LOCKED lock scan
"""
from datetime import timedelta

from conftest import T0
from db.models import PARLAYS
from services.auto_lock_scheduler import AutoLockScheduler


def _status(db, parlay_id):
    return db[PARLAYS].find_one({"parlay_id": parlay_id})["status"]


class TestLockScan:
    def test_locks_when_first_game_starts(self, store, config, seed, db):
        seed.parlay("p1", outcomes=["pending", "pending"], status="BUILDING")
        seed.game("p1_g0", T0)
        seed.game("p1_g1", T0 + timedelta(hours=2))

        locked = AutoLockScheduler(store, config).scan(now=T0)

        assert locked == ["p1"]
        doc = db[PARLAYS].find_one({"parlay_id": "p1"})
        assert doc["status"] == "LOCKED"
        assert doc["locked_at"] is not None

    def test_future_games_stay_building(self, store, config, seed, db):
        seed.parlay("p1", outcomes=["pending"], status="BUILDING")
        seed.game("p1_g0", T0 + timedelta(minutes=1))

        assert AutoLockScheduler(store, config).scan(now=T0) == []
        assert _status(db, "p1") == "BUILDING"

    def test_status_change_locks_before_start_time(self, store, config, seed, db):
        """A game marked in progress early still locks the parlay"""
        seed.parlay("p1", outcomes=["pending"], status="BUILDING")
        seed.game("p1_g0", T0 + timedelta(hours=1), status="in_progress")

        assert AutoLockScheduler(store, config).scan(now=T0) == ["p1"]

    def test_parlay_without_games_stays_building(self, store, config, seed, db):
        seed.parlay("p1", outcomes=["pending"], status="BUILDING")

        assert AutoLockScheduler(store, config).scan(now=T0) == []

    def test_locked_parlays_ignored(self, store, config, seed):
        seed.parlay("p1", outcomes=["pending"], status="LOCKED")
        seed.game("p1_g0", T0 - timedelta(hours=1))

        assert AutoLockScheduler(store, config).scan(now=T0) == []

    def test_uses_clock_when_now_omitted(self, store, config, seed):
        seed.parlay("p1", outcomes=["pending"], status="BUILDING")
        seed.game("p1_g0", T0)

        scheduler = AutoLockScheduler(store, config, clock=lambda: T0 + timedelta(seconds=1))

        assert scheduler.scan() == ["p1"]


class TestSingleParlay:
    def test_should_lock_parlay(self, store, config, seed):
        seed.parlay("p1", outcomes=["pending"], status="BUILDING")
        seed.game("p1_g0", T0)
        scheduler = AutoLockScheduler(store, config)

        assert not scheduler.should_lock_parlay("p1", T0 - timedelta(seconds=1))
        assert scheduler.should_lock_parlay("p1", T0)
        assert not scheduler.should_lock_parlay("missing", T0)

    def test_lock_parlay_is_conditional(self, store, config, seed):
        seed.parlay("p1", outcomes=["pending"], status="BUILDING")
        scheduler = AutoLockScheduler(store, config)

        assert scheduler.lock_parlay("p1", T0)
        assert not scheduler.lock_parlay("p1", T0 + timedelta(seconds=1))
        assert not scheduler.should_lock_parlay("p1", T0)


class TestPaging:
    def test_future_parlays_do_not_hide_started_ones(self, store, config, seed, db):
        from dataclasses import replace
        seed.parlay("a_future", outcomes=["pending"], status="BUILDING")
        seed.game("a_future_g0", T0 + timedelta(days=3))
        seed.parlay("b_future", outcomes=["pending"], status="BUILDING")
        seed.game("b_future_g0", T0 + timedelta(days=3))
        seed.parlay("c_started", outcomes=["pending"], status="BUILDING")
        seed.game("c_started_g0", T0 - timedelta(minutes=5))

        locked = AutoLockScheduler(store, replace(config, batch_size=1)).scan(now=T0)

        assert locked == ["c_started"]
        assert _status(db, "a_future") == "BUILDING"
        assert _status(db, "c_started") == "LOCKED"
