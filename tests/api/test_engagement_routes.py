import pytest
from fastapi.testclient import TestClient

from engagement.main import app
from engagement.api.routes import redis_client
from engagement.settings import settings
from engagement.store.models import GOODBYE_SENT, DORMANT
from engagement.utils.time import parse_timestamp_ms, MS_PER_HOUR

NOW = parse_timestamp_ms("2026-03-10T12:00:00Z")


@pytest.fixture
def client(r, monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", "")
    monkeypatch.setattr(settings, "ADMIN_RBAC_ENABLED", True)
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "admin-secret")
    app.dependency_overrides[redis_client] = lambda: r
    yield TestClient(app)
    app.dependency_overrides.clear()


ADMIN = {"x-admin-key": "admin-secret"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_first_activity_bootstraps_user(client):
    resp = client.post("/api/activity", json={"userId": "u1", "timestamp": NOW, "rawText": "oi"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["isFirstMessage"] is True
    assert body["state"] == "active"
    assert body["reply"] is None


def test_goodbye_reply_returns_rendered_ack(client, seed):
    seed("u1", GOODBYE_SENT, idle_days=15, entered_at=NOW - 3 * MS_PER_HOUR)
    resp = client.post("/api/activity", json={"userId": "u1", "timestamp": NOW, "rawText": "3", "locale": "en"})

    body = resp.json()
    assert body["state"] == DORMANT
    assert body["trigger"] == "goodbye_response_3"
    assert body["reply"].startswith("All good!")


def test_activity_requires_user_id(client):
    assert client.post("/api/activity", json={"rawText": "oi"}).status_code == 422


def test_api_key_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", "k1")
    assert client.post("/api/activity", json={"userId": "u1"}).status_code == 401
    assert client.post("/api/activity", json={"userId": "u1"}, headers={"x-api-key": "k1"}).status_code == 200


def test_opt_out_round_trip(client):
    client.post("/api/activity", json={"userId": "u1", "timestamp": NOW})
    resp = client.post("/api/users/u1/opt-out", json={"optOut": True})
    assert resp.json()["optOut"] is True

    snap = client.get("/admin/users/u1", headers=ADMIN).json()
    assert snap["profile"]["reengagementOptOut"] is True


def test_admin_requires_key(client):
    assert client.get("/admin/transition-stats").status_code == 403
    assert client.get("/admin/transition-stats", headers={"x-admin-key": "nope"}).status_code == 403


def test_admin_unknown_user_is_404(client):
    assert client.get("/admin/users/ghost", headers=ADMIN).status_code == 404


def test_admin_transitions_and_stats(client, seed):
    seed("u1", GOODBYE_SENT, idle_days=15, entered_at=NOW - 3 * MS_PER_HOUR)
    client.post("/api/activity", json={"userId": "u1", "timestamp": NOW, "rawText": "1"})

    hist = client.get("/admin/users/u1/transitions", headers=ADMIN).json()
    assert hist["total"] == 2
    assert [t["toState"] for t in hist["transitions"]] == ["active", "help_flow"]
    assert hist["transitions"][0]["metadata"]["from_help_flow"] is True

    snap = client.get("/admin/users/u1", headers=ADMIN).json()
    assert [m["messageType"] for m in snap["pendingMessages"]] == ["help_restart"]

    stats = client.get("/admin/transition-stats", headers=ADMIN).json()
    assert stats["transitions"]["goodbye_sent->help_flow"] == 1
    assert stats["transitions"]["help_flow->active"] == 1
    assert stats["triggers"]["goodbye_response_1"] == 1


def test_admin_metrics_snapshot(client, seed):
    seed("u1")
    out = client.get("/admin/metrics", headers=ADMIN).json()
    assert out["population"]["active"] == 1
    assert isinstance(out["delivery_success_rate"], (int, float))
    assert "p95_delivery_latency" in out
    assert set(out["last_jobs"]) == {"daily", "weekly"}


def test_transaction_activity_endpoint(client, r):
    resp = client.post("/api/users/u1/transaction-activity", json={"timestamp": NOW})
    assert resp.status_code == 200
    assert r.zscore("engagement:txn_activity", "u1") == NOW


def test_admin_recent_transitions_newest_first(client, seed):
    seed("u1", GOODBYE_SENT, idle_days=15, entered_at=NOW - 3 * MS_PER_HOUR)
    seed("u2", GOODBYE_SENT, idle_days=15, entered_at=NOW - 3 * MS_PER_HOUR)
    client.post("/api/activity", json={"userId": "u1", "timestamp": NOW, "rawText": "2"})
    client.post("/api/activity", json={"userId": "u2", "timestamp": NOW, "rawText": "3"})

    rows = client.get("/admin/transitions/recent", headers=ADMIN).json()["transitions"]
    assert [(t["userId"], t["toState"]) for t in rows] == [("u2", "dormant"), ("u1", "remind_later")]
