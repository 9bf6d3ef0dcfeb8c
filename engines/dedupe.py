"""Dedupe set with cooldown expiry for optimization dispatch keys."""

import time
from threading import Lock
from typing import Callable, Dict, List, Optional


def dedupe_key(task_type: str, issue: str) -> str:
    return f"{task_type}:{issue}"


class CooldownSet:
    """Thread-safe set of keys that expire a fixed window after being claimed."""

    def __init__(self, cooldown: float = 30.0, clock: Callable[[], float] = time.monotonic):
        if cooldown <= 0:
            raise ValueError("cooldown must be positive")
        self.cooldown = cooldown
        self._clock = clock
        self._expires: Dict[str, float] = {}
        self._lock = Lock()

    def claim(self, key: str, now: Optional[float] = None) -> bool:
        """Claim ``key`` for the cooldown window; False when it is already held."""
        at = self._clock() if now is None else now
        with self._lock:
            self._purge(at)
            if key in self._expires:
                return False
            self._expires[key] = at + self.cooldown
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._expires.pop(key, None)

    def active(self, now: Optional[float] = None) -> List[str]:
        at = self._clock() if now is None else now
        with self._lock:
            self._purge(at)
            return sorted(self._expires)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._purge(self._clock())
            return key in self._expires

    def __len__(self) -> int:
        return len(self.active())

    def clear(self) -> None:
        with self._lock:
            self._expires.clear()

    def _purge(self, now: float) -> None:
        # Caller holds the lock.
        expired = [key for key, deadline in self._expires.items() if deadline <= now]
        for key in expired:
            del self._expires[key]
