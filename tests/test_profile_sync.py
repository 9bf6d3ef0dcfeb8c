import threading

import pytest
import requests

import db
import profile_sync
from engines.skill_assessment import SkillScores
from profile_sync import ProfileSyncer

URL = "https://profiles.example.com/sync"


class OkResponse:
    status_code = 200

    def raise_for_status(self):
        return None


@pytest.mark.usefixtures("temp_db")
def test_failed_delivery_is_retried_next_cycle(monkeypatch):
    attempts = []

    def fake_post(url, json=None, timeout=None):
        attempts.append(json)
        if len(attempts) == 1:
            raise requests.ConnectionError("profile store down")
        return OkResponse()

    monkeypatch.setattr(profile_sync.requests, "post", fake_post)
    syncer = ProfileSyncer(URL)
    scores = SkillScores(20.0, 0.0, 15.0, 12.0, 100.0)

    assert syncer._deliver("alice", scores.to_dict(), (20.0, 0.0, 15.0, 12.0)) is False
    assert syncer.failures == 1
    assert syncer.is_synced("alice", scores) is False

    assert syncer._deliver("alice", scores.to_dict(), (20.0, 0.0, 15.0, 12.0)) is True
    assert syncer.is_synced("alice", scores) is True
    assert attempts[1] == {"user_id": "alice", "scores": scores.to_dict()}
    assert db.get_skill_profile("alice")["overall"] == 12.0


@pytest.mark.usefixtures("temp_db")
def test_sync_runs_in_background_and_skips_unchanged_scores(monkeypatch):
    delivered = threading.Event()

    def fake_post(url, json=None, timeout=None):
        delivered.set()
        return OkResponse()

    monkeypatch.setattr(profile_sync.requests, "post", fake_post)
    syncer = ProfileSyncer(URL)
    scores = SkillScores(40.0, 40.0, 40.0, 40.0, 200.0)

    assert syncer.sync_scores("bob", scores) is True
    assert delivered.wait(2.0)
    for _ in range(100):
        if syncer.is_synced("bob", scores):
            break
        threading.Event().wait(0.01)

    assert syncer.is_synced("bob", scores)
    assert syncer.deliveries == 1
    # only the timestamp changed
    assert syncer.sync_scores("bob", SkillScores(40.0, 40.0, 40.0, 40.0, 300.0)) is False


@pytest.mark.usefixtures("temp_db")
def test_local_only_sync_writes_profile_table():
    syncer = ProfileSyncer()
    assert syncer._deliver("carol", SkillScores(70.0, 70.0, 70.0, 70.0, 1.0).to_dict(), (70.0,) * 4) is True
    assert db.get_skill_profile("carol")["overall"] == 70.0
