"""Webhook target registry with administrative CRUD."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from src.models import WebhookTarget

logger = logging.getLogger(__name__)

DEFAULT_TARGET_KEY = "default"

_UPDATABLE_FIELDS = frozenset({"url", "name", "enabled"})


class WebhookRegistry:
    """Maps a workspace id or raw phone number to its callback target.

    Both key namespaces share one map. Every mutation replaces the stored
    record under the lock, so a concurrent ``lookup`` sees either the old
    record or the new one.
    """

    def __init__(self, default_key: str = DEFAULT_TARGET_KEY) -> None:
        self._default_key = default_key
        self._targets: dict[str, WebhookTarget] = {}
        self._lock = threading.Lock()

    @property
    def default_key(self) -> str:
        return self._default_key

    def load(self, targets: Iterable[WebhookTarget]) -> int:
        """Add startup targets; entries already present are overwritten, none removed."""
        count = 0
        with self._lock:
            for target in targets:
                self._targets[target.key] = target.model_copy()
                count += 1
        logger.info("webhooks_loaded count=%d", count)
        return count

    def lookup(self, key: str, *alternates: str) -> WebhookTarget | None:
        """Return the first enabled exact match, else the enabled default target."""
        with self._lock:
            for candidate in (key, *alternates):
                target = self._targets.get(candidate) if candidate else None
                if target is not None and target.enabled:
                    return target.model_copy()
            default = self._targets.get(self._default_key)
            if default is not None and default.enabled:
                return default.model_copy()
        return None

    def get(self, key: str) -> WebhookTarget | None:
        with self._lock:
            target = self._targets.get(key)
            return target.model_copy() if target is not None else None

    def snapshot(self) -> list[WebhookTarget]:
        with self._lock:
            return [t.model_copy() for t in self._targets.values()]

    def add(self, key: str, url: str, name: str | None = None) -> WebhookTarget:
        target = WebhookTarget(key=key, url=url, name=name or key, enabled=True)
        with self._lock:
            self._targets[key] = target
        logger.info("webhook_added key=%s name=%s", key, target.name)
        return target.model_copy()

    def update(self, key: str, /, **changes: Any) -> WebhookTarget | None:
        """Merge ``changes`` into an existing target; None if ``key`` is unknown."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported webhook fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._targets.get(key)
            if current is None:
                return None
            updated = WebhookTarget.model_validate({**current.model_dump(), **changes})
            self._targets[key] = updated
        logger.info("webhook_updated key=%s name=%s enabled=%s", key, updated.name, updated.enabled)
        return updated.model_copy()

    def remove(self, key: str) -> bool:
        with self._lock:
            removed = self._targets.pop(key, None) is not None
        if removed:
            logger.info("webhook_removed key=%s", key)
        return removed

    def close(self) -> None:
        """Nothing to release for the in-memory registry."""

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)
