"""Test cases for db operations."""

import pytest

import db


@pytest.mark.usefixtures("temp_db")
def test_behavior_events_are_listed_in_time_order():
    db.record_behavior_event("alice", "icp_analysis", "visit", None, 20.0, session_id="s1")
    db.record_behavior_event("alice", "cost_calculator", "export", {"type": "chart"}, 10.0)
    db.record_behavior_event("bob", "icp_analysis", "visit", {}, 5.0)

    events = db.list_behavior_events("alice")
    assert [e["action_type"] for e in events] == ["export", "visit"]
    assert events[0]["payload"] == {"type": "chart"}
    assert events[1]["session_id"] == "s1"
    assert events[1]["payload"] == {}


@pytest.mark.usefixtures("temp_db")
def test_skill_profile_upsert_overwrites():
    scores = {
        "customer_analysis": 20.0,
        "value_communication": 0.0,
        "executive_readiness": 15.0,
        "overall": 12.0,
        "last_assessment": 100.0,
    }
    db.upsert_skill_profile("alice", scores)
    db.upsert_skill_profile("alice", {**scores, "overall": 40.0, "last_assessment": 200.0})

    profile = db.get_skill_profile("alice")
    assert profile["overall"] == 40.0
    assert profile["last_assessment"] == 200.0
    assert profile["customer_analysis"] == 20.0
    assert db.get_skill_profile("nobody") is None


@pytest.mark.usefixtures("temp_db")
def test_session_report_round_trip_and_replace():
    db.save_session_report("s1", "alice", {"tasks_dispatched": 2, "success": {"score": 0.75}})
    db.save_session_report("s1", "alice", {"tasks_dispatched": 3, "success": {"score": 1.0}})

    stored = db.get_session_report("s1")
    assert stored == {"tasks_dispatched": 3, "success": {"score": 1.0}}
    assert db.get_session_report("missing") is None


@pytest.mark.usefixtures("temp_db")
def test_optimization_log_is_scoped_by_session():
    db.log_optimization("s1", "quality-1", "quality", "critical", "completed", {"recommendations": ["a"]})
    db.log_optimization("s1", "deal_value-2", "deal_value", "medium", "recovered")
    db.log_optimization("s2", "quality-1", "quality", "critical", "completed")

    rows = db.list_optimizations("s1")
    assert [r["dispatch_id"] for r in rows] == ["quality-1", "deal_value-2"]
    assert rows[0]["detail"] == {"recommendations": ["a"]}
    assert rows[1]["status"] == "recovered"
    assert rows[1]["detail"] == {}
