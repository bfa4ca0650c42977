"""Sliding-window request limiter keyed by session or user identity."""

import threading
import time
from collections import deque
from typing import Callable


WINDOW_SECONDS = 60.0


class RateLimiter:
    """Allow at most ``per_minute`` requests per identity in any 60s window."""

    def __init__(self, per_minute: int = 30, clock: Callable[[], float] = time.monotonic):
        if per_minute < 1:
            raise ValueError("per_minute must be >= 1")
        self.per_minute = per_minute
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque] = {}

    def check(self, identity: str) -> bool:
        """Record a request and return whether it is within the limit."""
        now = self._clock()
        with self._lock:
            hits = self._prune(identity, now)
            if len(hits) >= self.per_minute:
                return False
            hits.append(now)
            return True

    def remaining(self, identity: str) -> int:
        with self._lock:
            hits = self._prune(identity, self._clock())
            return max(0, self.per_minute - len(hits))

    def retry_after(self, identity: str) -> float:
        """Seconds until the oldest request in the window expires."""
        now = self._clock()
        with self._lock:
            hits = self._prune(identity, now)
            if len(hits) < self.per_minute:
                return 0.0
            return max(0.0, hits[0] + WINDOW_SECONDS - now)

    def reset(self, identity: str | None = None) -> None:
        with self._lock:
            if identity is None:
                self._hits.clear()
            else:
                self._hits.pop(identity, None)

    def _prune(self, identity: str, now: float) -> deque:
        hits = self._hits.setdefault(identity, deque())
        while hits and now - hits[0] >= WINDOW_SECONDS:
            hits.popleft()
        return hits
