"""In-memory sliding window rate limiter for the API surface."""

from __future__ import annotations

import threading
import time
from collections import deque


class RateLimiter:
    """Sliding window rate limiter per client key (usually source IP).

    Default: 100 requests per 15 minutes per key.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 900.0,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = 0.0
        self._lock = threading.Lock()

    def check(self, client_key: str) -> bool:
        """Record a hit and return True if ``client_key`` is within its limit."""
        now = time.time()
        cutoff = now - self._window_seconds
        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now

            hits = self._hits.get(client_key) or deque()
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                self._hits[client_key] = hits
                return False
            hits.append(now)
            self._hits[client_key] = hits
            return True

    def retry_after(self, client_key: str) -> int:
        """Seconds until the oldest hit for ``client_key`` leaves the window."""
        with self._lock:
            hits = self._hits.get(client_key)
            if not hits:
                return 0
            return max(0, int(hits[0] + self._window_seconds - time.time()) + 1)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, cutoff: float) -> None:
        # Keys whose newest hit left the window hold no state worth keeping
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]
