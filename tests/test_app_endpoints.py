import threading

import pytest
from fastapi.testclient import TestClient

import app
import db


@pytest.fixture
def client(temp_db, monkeypatch):
    for var in ("AUTOMATION_WEBHOOK_URL", "PROFILE_SYNC_URL", "BEHAVIOR_PERSIST"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("ENGINE_TICK_INTERVAL", "3600")
    with TestClient(app.app) as test_client:
        yield test_client


def _start(client, user_id="alice", session_id="s1"):
    response = client.post("/orchestration/start", json={"user_id": user_id, "session_id": session_id})
    assert response.status_code == 200, response.text
    return response.json()


def test_health_reports_sessions_and_drops(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["active_sessions"] == 0
    assert body["dropped_events"] == 0


def test_behavior_events_and_aggregate(client):
    accepted = client.post(
        "/behavior/events",
        json={"user_id": "alice", "component": "icp_analysis", "action_type": "export", "payload": {"type": "pdf"}},
    )
    assert accepted.json() == {"accepted": True, "dropped_total": 0}

    dropped = client.post("/behavior/events", json={"component": "icp_analysis", "action_type": "visit"})
    assert dropped.status_code == 200
    assert dropped.json() == {"accepted": False, "dropped_total": 1}

    aggregate = client.get("/behavior/aggregate/alice").json()
    assert aggregate["icp"]["exported_summary"] is True
    assert client.get("/behavior/aggregate/nobody").json()["overall"]["total_exports"] == 0


def test_start_validation_and_conflicts(client):
    assert _start(client) == {"session_id": "s1", "user_id": "alice", "active": True}
    assert client.post("/orchestration/start", json={"user_id": "alice", "session_id": "s1"}).status_code == 409
    assert client.post("/orchestration/start", json={"user_id": "", "session_id": "s2"}).status_code == 422
    assert client.post("/orchestration/start", json={"user_id": "  ", "session_id": "s2"}).status_code == 400
    assert client.get("/health").json()["active_sessions"] == 1


def test_unknown_session_is_404(client):
    assert client.get("/orchestration/missing/status").status_code == 404
    assert client.post("/orchestration/missing/stop").status_code == 404
    assert client.get("/orchestration/missing/report").status_code == 404
    assert client.get("/skills/missing/alice").status_code == 404


def test_session_analytics_endpoints(client):
    _start(client)

    friction = client.post(
        "/orchestration/s1/friction",
        json={"description": "Chart export hangs", "severity": "critical", "step": "export-crm"},
    )
    assert friction.status_code == 200
    assert friction.json()["id"] == "friction-1"
    assert client.post("/orchestration/s1/friction", json={"description": "x", "severity": "severe"}).status_code == 422
    assert client.post("/orchestration/s1/friction/friction-1/resolve").json() == {"status": "resolved", "id": "friction-1"}
    assert client.post("/orchestration/s1/friction/friction-9/resolve").status_code == 404

    assert client.post("/orchestration/s1/steps", json={"step": "icp-analysis", "action": "start"}).json() == {
        "status": "started",
        "step": "icp-analysis",
    }
    ended = client.post("/orchestration/s1/steps", json={"step": "icp-analysis", "action": "end"})
    assert ended.json()["step"] == "icp-analysis"
    assert client.post("/orchestration/s1/steps", json={"step": "icp-analysis", "action": "end"}).status_code == 409
    assert client.post("/orchestration/s1/steps", json={"step": "export-crm"}).status_code == 400
    completed = client.post("/orchestration/s1/steps", json={"step": "export-crm", "duration": 150})
    assert completed.json()["target"] == 120

    recognized = client.post("/orchestration/s1/value-recognition", json={"elapsed": 12})
    assert recognized.json() == {"value_recognition_time": 12.0, "target": 30.0, "achieved": True}

    assert client.post(
        "/orchestration/s1/exports", json={"tool": "icp_analysis", "format": "pdf", "success": True}
    ).json() == {"export_success_rate": 100.0}

    scan = client.post("/orchestration/s1/copy-scan", json={"text": "Claim your reward", "context": "banner"})
    assert scan.json() == {"flagged_terms": ["reward"], "credibility_score": 90.0}

    status = client.get("/orchestration/s1/status").json()
    assert status["state"] == "active"
    assert status["session_summary"]["metrics"]["friction_points"] == 2


def test_stop_returns_report_and_blocks_mutations(client):
    _start(client)
    report = client.post("/orchestration/s1/stop")
    assert report.status_code == 200
    body = report.json()
    assert body["tasks_dispatched"] == 0
    assert body["success"]["score"] == 0.5

    assert client.post("/orchestration/s1/stop").json() == body
    assert client.get("/orchestration/s1/report").json() == body
    assert db.get_session_report("s1")["session_id"] == "s1"
    assert client.get("/orchestration/s1/status").json()["state"] == "stopped"
    assert client.post("/orchestration/s1/exports", json={"tool": "t", "format": "pdf", "success": True}).status_code == 409

    restarted = client.post("/orchestration/start", json={"user_id": "bob", "session_id": "s1"})
    assert restarted.status_code == 200
    assert restarted.json()["user_id"] == "bob"


def test_feature_and_skill_views(client):
    _start(client)
    assert client.get("/features/s1/alice").status_code == 404

    sessions = client.app.state.sessions
    sessions.get("s1").tick()
    for _ in range(200):
        if sessions.syncer.deliveries:
            break
        threading.Event().wait(0.01)
    assert db.get_skill_profile("alice")["overall"] == 0

    features = client.get("/features/s1/alice").json()
    assert features["level"] == "foundation"
    assert features["ui_complexity"] == "simplified"
    assert "basic_tools" in features["features"]
    assert {m["feature"] for m in features["milestones"]} == set(features["features"])

    skills = client.get("/skills/s1/alice").json()
    assert skills["scores"]["overall"] == 0
    assert skills["level"] == "foundation"
    assert skills["trend"]["direction"] == "insufficient_data"
    assert skills["time_to_next_level"] is None
    assert client.get("/skills/s1/bob").status_code == 404
