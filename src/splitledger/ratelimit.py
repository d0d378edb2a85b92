"""Sliding-window request counter, keyed by request source."""

import threading
import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """
    Allow at most `max_requests` per `window_seconds` for each key.

    Timestamps older than the window are dropped on every check, and a key
    with no timestamps left is forgotten. Keys that stop sending are swept
    once per window. The clock is injectable for tests.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _live_hits(self, key: str, now: float) -> deque[float] | None:
        """Prune a key's timestamps; drop the key if none are left."""
        hits = self._hits.get(key)
        if hits is None:
            return None
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if not hits:
            del self._hits[key]
            return None
        return hits

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._live_hits(key, now)

    def allow(self, key: str) -> bool:
        """Record a request for `key` and report whether it is within the limit."""
        now = self._clock()
        with self._lock:
            self._sweep(now)
            hits = self._live_hits(key, now)
            if hits is None:
                hits = self._hits[key] = deque()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def remaining(self, key: str) -> int:
        """Requests still allowed for `key` in the current window."""
        now = self._clock()
        with self._lock:
            hits = self._live_hits(key, now)
            return self.max_requests - (len(hits) if hits else 0)

    def tracked_keys(self) -> list[str]:
        """Keys currently holding timestamps."""
        with self._lock:
            return list(self._hits)

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or everything."""
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
