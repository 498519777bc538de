"""
Shared fixtures: an in-memory MongoDB (mongomock), a store without
transactions, a controllable clock and a document seeder.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import mongomock
import pytest

from config.engine_config import EngineConfig
from core.event_bus import InMemoryEventBus
from db.models import GAMES, LEGS, PARLAYS, USERS
from db.resolution_store import ResolutionStore
from services.notification_service import ResolutionNotifier
from services.resolution_engine import ResolutionEngine
from services.slack_notifier import SlackNotifier

T0 = datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    """Returns `start`, then advances by `step` on every call."""

    def __init__(self, start: datetime = T0 + timedelta(hours=6), step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class Seeder:
    def __init__(self, db):
        self.db = db

    def user(self, user_id: str = "u1", **fields):
        doc = {
            "user_id": user_id,
            "current_streak": 0,
            "longest_streak": 0,
            "insurance_locked": False,
            "ledger_version": 0,
        }
        doc.update(fields)
        self.db[USERS].insert_one(doc)
        return doc

    def game(self, game_id: str, start_time: datetime, status: str = "scheduled", end_time=None):
        doc = {"game_id": game_id, "start_time": start_time, "status": status, "end_time": end_time}
        self.db[GAMES].insert_one(doc)
        return doc

    def parlay(
        self,
        parlay_id: str,
        user_id: str = "u1",
        outcomes=("win",),
        status: str = "LOCKED",
        insured: bool = False,
        insurance_cost: int = 0,
        last_leg_end_time=T0,
        with_legs: bool = True,
        **fields
    ):
        doc = {
            "parlay_id": parlay_id,
            "user_id": user_id,
            "leg_count": len(outcomes),
            "status": status,
            "insured": insured,
            "insurance_cost": insurance_cost,
            "locked_at": T0 - timedelta(hours=3) if status != "BUILDING" else None,
            "resolved_at": None,
            "last_leg_end_time": last_leg_end_time,
        }
        doc.update(fields)
        self.db[PARLAYS].insert_one(doc)

        if with_legs:
            for index, outcome in enumerate(outcomes):
                self.db[LEGS].insert_one({
                    "leg_id": f"{parlay_id}_leg{index}",
                    "parlay_id": parlay_id,
                    "game_id": f"{parlay_id}_g{index}",
                    "outcome": outcome,
                })
        return doc

    def grade(self, parlay_id: str, outcomes):
        for index, outcome in enumerate(outcomes):
            self.db[LEGS].update_one(
                {"leg_id": f"{parlay_id}_leg{index}"},
                {"$set": {"outcome": outcome}}
            )


@pytest.fixture
def db():
    return mongomock.MongoClient()["streaks_test"]


@pytest.fixture
def store(db):
    return ResolutionStore(db, use_transactions=False)


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def config():
    return EngineConfig(
        max_attempts=3,
        backoff_base_seconds=0.5,
        backoff_max_seconds=2.0,
        workers=4,
        batch_size=100,
        use_transactions=False,
        slack_webhook_url="",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def alerts():
    return Mock(spec=SlackNotifier)


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def engine(store, config, bus, alerts, clock, sleep):
    return ResolutionEngine(
        store,
        config,
        notifier=ResolutionNotifier(bus),
        alerts=alerts,
        clock=clock,
        sleep=sleep,
    )
