"""In-memory idempotency store for forwarded message ids.

Presence of a key means "do not forward again before it expires". Absence
only means "not seen within the retained window": once the store grows past
``max_entries`` the oldest half is dropped, so a still-valid key can be
evicted early and reprocessed.
"""

from __future__ import annotations

import threading
import time

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_KEEP_ENTRIES = 500


class IdempotencyStore:
    """Bounded TTL map keyed by provider message id."""

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        keep_entries: int = DEFAULT_KEEP_ENTRIES,
    ) -> None:
        if not 0 < keep_entries <= max_entries:
            raise ValueError("keep_entries must be between 1 and max_entries")
        self._default_ttl_seconds = default_ttl_seconds
        self._max_entries = max_entries
        self._keep_entries = keep_entries
        # dict preserves insertion order, oldest first
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def is_duplicate(self, key: str) -> bool:
        """Return True if a non-expired record exists for ``key``."""
        if not key:
            return False
        with self._lock:
            self._sweep(time.time())
            return key in self._expiry

    def mark_processed(self, key: str, ttl_seconds: float | None = None) -> None:
        if not key:
            return
        if ttl_seconds is None:
            ttl_seconds = self._default_ttl_seconds
        with self._lock:
            now = time.time()
            self._sweep(now)
            # Re-marking makes the key the newest entry
            self._expiry.pop(key, None)
            self._expiry[key] = now + ttl_seconds
            if len(self._expiry) > self._max_entries:
                self._compact()

    def discard(self, key: str) -> bool:
        with self._lock:
            return self._expiry.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._expiry.clear()

    def close(self) -> None:
        """Nothing to release for the in-memory store."""

    def __len__(self) -> int:
        with self._lock:
            self._sweep(time.time())
            return len(self._expiry)

    def keys(self) -> list[str]:
        with self._lock:
            self._sweep(time.time())
            return list(self._expiry)

    def _sweep(self, now: float) -> None:
        expired = [k for k, expires_at in self._expiry.items() if expires_at <= now]
        for k in expired:
            del self._expiry[k]

    def _compact(self) -> None:
        newest = list(self._expiry.items())[-self._keep_entries:]
        self._expiry = dict(newest)
