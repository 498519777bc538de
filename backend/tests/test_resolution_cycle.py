"""
End-to-end resolution cycle: scan -> order -> resolve
"""
from dataclasses import replace
from datetime import timedelta

from conftest import T0
from core.resolution_orderer import ResolutionOrderer
from db.models import PARLAYS, RESOLUTION_LOGS, STREAK_HISTORY, USERS
from services.resolution_cycle import ResolutionCycle
from services.resolution_scanner import ResolutionScanner


def _cycle(store, config, engine):
    return ResolutionCycle(store, ResolutionScanner(store, config), engine, ResolutionOrderer(workers=4))


class TestOrderingUnderConcurrency:
    def test_reverse_discovery_applies_earlier_parlay_first(self, store, config, engine, seed, db):
        """
        "p1" ends later but is discovered first (id order). Applying it first
        would leave insurance locked; the cycle must apply "p2" first.
        """
        seed.user(current_streak=12, longest_streak=12)
        seed.parlay("p1", outcomes=["win", "win"], last_leg_end_time=T0 + timedelta(hours=2))
        seed.parlay("p2", outcomes=["loss", "win", "win", "win"], insured=True, insurance_cost=3,
                    last_leg_end_time=T0)

        report = _cycle(store, config, engine).run()

        assert report.resolved == 2
        user = db[USERS].find_one({"user_id": "u1"})
        assert user["current_streak"] == 14
        assert user["insurance_locked"] is False
        order = [(e["parlay_id"], e["change_type"]) for e in db[STREAK_HISTORY].find().sort("at", 1)]
        assert order == [
            ("p2", "LOSS"),
            ("p2", "INSURANCE_LOCK"),
            ("p1", "WIN"),
            ("p1", "INSURANCE_UNLOCK"),
        ]

    def test_users_resolved_independently(self, store, config, engine, seed, db):
        seed.user("u1", current_streak=1)
        seed.user("u2", current_streak=3)
        seed.parlay("a", user_id="u1", outcomes=["win"])
        seed.parlay("b", user_id="u2", outcomes=["loss"])

        report = _cycle(store, config, engine).run()

        assert report.lanes == 2
        assert db[USERS].find_one({"user_id": "u1"})["current_streak"] == 2
        assert db[USERS].find_one({"user_id": "u2"})["current_streak"] == 0


class TestBlocking:
    def test_pending_earlier_parlay_withholds_later(self, store, config, engine, seed, db):
        seed.user(current_streak=4)
        seed.parlay("early", outcomes=["win", "pending"], last_leg_end_time=T0)
        seed.parlay("late", outcomes=["win"], last_leg_end_time=T0 + timedelta(hours=1))

        report = _cycle(store, config, engine).run()

        assert report.ready == 1
        assert report.withheld == 1
        assert report.resolved == 0
        assert db[PARLAYS].find_one({"parlay_id": "late"})["status"] == "LOCKED"

        seed.grade("early", ["win", "win"])
        report = _cycle(store, config, engine).run()

        assert report.resolved == 2
        assert db[USERS].find_one({"user_id": "u1"})["current_streak"] == 4 + 2 + 1

    def test_resolution_failed_blocks_until_remediated(self, store, config, engine, seed, db):
        seed.user(current_streak=4)
        seed.parlay("early", outcomes=["win"], status="RESOLUTION_FAILED", last_leg_end_time=T0)
        seed.parlay("late", outcomes=["win"], last_leg_end_time=T0 + timedelta(hours=1))

        report = _cycle(store, config, engine).run()
        assert report.withheld == 1
        assert report.resolved == 0

        assert engine.retry_failed("early").resolved
        report = _cycle(store, config, engine).run()

        assert report.resolved == 1
        assert db[USERS].find_one({"user_id": "u1"})["current_streak"] == 6

    def test_failure_mid_lane_stops_later_parlays(self, store, config, engine, seed, db):
        seed.user(current_streak=4)
        # declares 3 legs but only has 1: data error
        seed.parlay("bad", outcomes=["win"], leg_count=3, last_leg_end_time=T0)
        seed.parlay("good", outcomes=["win"], last_leg_end_time=T0 + timedelta(hours=1))

        report = _cycle(store, config, engine).run()

        assert report.failed == 1
        assert report.resolved == 0
        assert db[PARLAYS].find_one({"parlay_id": "good"})["status"] == "LOCKED"

    def test_malformed_earlier_parlay_blocks_and_is_quarantined(self, store, config, engine, seed, db, alerts):
        seed.user(current_streak=4)
        seed.parlay("early", outcomes=["win"], leg_count=9, last_leg_end_time=T0)
        seed.parlay("late", outcomes=["win"], last_leg_end_time=T0 + timedelta(hours=1))

        report = _cycle(store, config, engine).run()

        assert report.quarantined == 1
        assert report.withheld == 1
        assert report.resolved == 0
        early = db[PARLAYS].find_one({"parlay_id": "early"})
        assert early["status"] == "RESOLUTION_FAILED"
        assert early["failure_reason"].startswith("DATA_ERROR")
        assert db[PARLAYS].find_one({"parlay_id": "late"})["status"] == "LOCKED"
        alerts.send_alert.assert_called_once()

        report = _cycle(store, config, engine).run()

        assert report.quarantined == 0
        assert report.withheld == 1


class TestBatching:
    def test_ready_parlay_behind_pending_batch_resolves(self, store, config, engine, seed, db):
        seed.user("u1")
        seed.user("u2", current_streak=1)
        seed.parlay("a_pending", outcomes=["pending"])
        seed.parlay("b_ready", user_id="u2", outcomes=["win"])

        report = _cycle(store, replace(config, batch_size=1), engine).run()

        assert report.resolved == 1
        assert db[PARLAYS].find_one({"parlay_id": "b_ready"})["status"] == "WON"
        assert db[USERS].find_one({"user_id": "u2"})["current_streak"] == 2


class TestReporting:
    def test_cycle_logged(self, store, config, engine, seed, db):
        seed.user()
        seed.parlay("p1", outcomes=["win"])

        _cycle(store, config, engine).run()

        entry = db[RESOLUTION_LOGS].find_one({"module": "resolution_cycle"})
        assert entry["stage"] == "completed"
        assert entry["output"]["resolved"] == 1

    def test_idle_cycle(self, store, config, engine, db):
        report = _cycle(store, config, engine).run()
        assert report.to_dict()["ready"] == 0
        assert db[RESOLUTION_LOGS].count_documents({}) == 0

    def test_second_cycle_is_noop(self, store, config, engine, seed, db):
        seed.user(current_streak=1)
        seed.parlay("p1", outcomes=["win"])
        cycle = _cycle(store, config, engine)

        cycle.run()
        report = cycle.run()

        assert report.ready == 0
        assert db[STREAK_HISTORY].count_documents({}) == 1
