"""
Admin remediation API
"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import T0
from core.event_bus import InMemoryEventBus
from db.models import PARLAYS
from routes.resolution_routes import router
from services.resolution_services import build_components, get_components


@pytest.fixture
def components(config, db):
    return build_components(config, db, InMemoryEventBus())


@pytest.fixture
def client(components):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_components] = lambda: components
    return TestClient(app)


class TestFailedParlays:
    def test_lists_failed(self, client, seed):
        seed.parlay("p1", outcomes=["win"], status="RESOLUTION_FAILED",
                    failure_reason="RETRY_EXHAUSTED: down", resolution_attempts=5, failed_at=T0)
        seed.parlay("p2", outcomes=["win"])

        response = client.get("/api/resolution/failed")

        assert response.status_code == 200
        body = response.json()
        assert [p["parlay_id"] for p in body] == ["p1"]
        assert body[0]["resolution_attempts"] == 5
        assert body[0]["failure_reason"].startswith("RETRY_EXHAUSTED")

    def test_retry_resolves(self, client, seed, db):
        seed.user(current_streak=3)
        seed.parlay("p1", outcomes=["win", "win"], status="RESOLUTION_FAILED", failed_at=T0)

        response = client.post("/api/resolution/failed/p1/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "RESOLVED"
        assert body["parlay_status"] == "WON"
        assert body["new_streak"] == 5

    def test_retry_unknown_is_404(self, client):
        assert client.post("/api/resolution/failed/nope/retry").status_code == 404

    def test_retry_not_failed_is_409(self, client, seed):
        seed.parlay("p1", outcomes=["win"])
        assert client.post("/api/resolution/failed/p1/retry").status_code == 409

    def test_retry_refused_while_user_lane_runs(self, client, components, seed, db):
        seed.user(current_streak=3)
        seed.parlay("p1", outcomes=["win"], status="RESOLUTION_FAILED", failed_at=T0)
        locks = components.cycle.orderer.locks
        assert locks.try_acquire("u1")

        response = client.post("/api/resolution/failed/p1/retry")

        assert response.status_code == 409
        assert db[PARLAYS].find_one({"parlay_id": "p1"})["status"] == "RESOLUTION_FAILED"
        locks.release("u1")
        assert client.post("/api/resolution/failed/p1/retry").status_code == 200
        assert locks.held() == set()

    def test_malformed_failed_parlay_listed(self, client, seed):
        seed.parlay("p1", outcomes=["win"], leg_count=9, status="RESOLUTION_FAILED",
                    failure_reason="DATA_ERROR: leg_count", failed_at=T0)

        body = client.get("/api/resolution/failed").json()

        assert [(p["parlay_id"], p["leg_count"]) for p in body] == [("p1", 9)]


class TestUserLedger:
    def test_streak_history(self, client, components, seed):
        seed.user(current_streak=1)
        seed.parlay("p1", outcomes=["win"])
        components.engine.resolve("p1")

        response = client.get("/api/resolution/users/u1/streak-history")

        assert response.status_code == 200
        entries = response.json()
        assert len(entries) == 1
        assert entries[0]["change_type"] == "WIN"
        assert entries[0]["new_streak"] == 2

    def test_reconcile(self, client, seed):
        seed.user(current_streak=4, longest_streak=4)

        response = client.get("/api/resolution/users/u1/reconcile")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is False
        assert body["entries"] == 0

    def test_reconcile_unknown_user(self, client):
        assert client.get("/api/resolution/users/ghost/reconcile").status_code == 404
