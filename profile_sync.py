"""Fire-and-forget sync of skill scores to the profile store.

Scores are upserted into the local SQLite profile table and, when a profile
endpoint is configured, posted to it.  Delivery runs off the caller's path
(a task on the running event loop, or a daemon thread otherwise).  A failed
delivery is only logged; the next assessment cycle submits the scores again
because they are not marked as synced.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Mapping, Optional, Set

import requests

import db

logger = logging.getLogger(__name__)

SYNC_FIELDS = ("customer_analysis", "value_communication", "executive_readiness", "overall")


def _fingerprint(scores: Mapping[str, Any]) -> tuple:
    return tuple(float(scores[name]) for name in SYNC_FIELDS)


class ProfileSyncer:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        persist_local: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self.url = url
        self.persist_local = persist_local
        self.timeout = timeout
        self._lock = threading.Lock()
        self._synced: Dict[str, tuple] = {}
        self._in_flight: Set[str] = set()
        self.failures = 0
        self.deliveries = 0

    def sync_scores(self, user_id: str, scores: Any) -> bool:
        """Schedule delivery of ``scores``; returns False when nothing was scheduled."""

        payload = scores.to_dict() if hasattr(scores, "to_dict") else dict(scores)
        fingerprint = _fingerprint(payload)
        with self._lock:
            if user_id in self._in_flight or self._synced.get(user_id) == fingerprint:
                return False
            self._in_flight.add(user_id)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            loop.create_task(asyncio.to_thread(self._deliver, user_id, payload, fingerprint))
        else:
            threading.Thread(
                target=self._deliver, args=(user_id, payload, fingerprint), daemon=True
            ).start()
        return True

    def _deliver(self, user_id: str, payload: Dict[str, Any], fingerprint: tuple) -> bool:
        try:
            if self.persist_local:
                db.upsert_skill_profile(user_id, payload)
            if self.url:
                response = requests.post(
                    self.url,
                    json={"user_id": user_id, "scores": payload},
                    timeout=self.timeout,
                )
                response.raise_for_status()
        except Exception as exc:
            with self._lock:
                self.failures += 1
                self._in_flight.discard(user_id)
            logger.warning("Profile sync failed for %s; retrying next cycle: %s", user_id, exc)
            return False
        with self._lock:
            self.deliveries += 1
            self._synced[user_id] = fingerprint
            self._in_flight.discard(user_id)
        return True

    def is_synced(self, user_id: str, scores: Any) -> bool:
        payload = scores.to_dict() if hasattr(scores, "to_dict") else dict(scores)
        with self._lock:
            return self._synced.get(user_id) == _fingerprint(payload)
