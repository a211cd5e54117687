"""Receiving number to workspace resolution."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from src.models import WorkspaceConfig
from src.routing.phone import strip_channel_prefix

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_ID = "1"
DEFAULT_WORKSPACE_NAME = "Default"


class ConfigurationError(Exception):
    """Raised when the workspace table cannot route deterministically."""

    pass


class WorkspaceResolver:
    """Maps a receiving phone number to the workspace that owns it.

    Numbers that exist in the provider account but were never enrolled as a
    tenant resolve to the default workspace instead of failing, so traffic
    keeps flowing while a tenant is being onboarded.
    """

    def __init__(self, workspaces: Iterable[WorkspaceConfig]) -> None:
        self._by_id: dict[str, WorkspaceConfig] = {}
        self._by_number: dict[str, WorkspaceConfig] = {}
        for ws in workspaces:
            if ws.id in self._by_id:
                raise ConfigurationError(f"Duplicate workspace id: {ws.id}")
            self._by_id[ws.id] = ws
            if not ws.receiving_number:
                continue
            number = strip_channel_prefix(ws.receiving_number)
            owner = self._by_number.get(number)
            if owner is not None:
                raise ConfigurationError(
                    f"Receiving number {number} is claimed by workspaces "
                    f"{owner.id} and {ws.id}"
                )
            self._by_number[number] = ws

        # Unmatched numbers always report as "1"/"Default", even when a tenant
        # is configured under id "1"
        self._default = WorkspaceConfig(
            id=DEFAULT_WORKSPACE_ID, display_name=DEFAULT_WORKSPACE_NAME,
        )

    @property
    def default(self) -> WorkspaceConfig:
        return self._default

    @property
    def workspaces(self) -> list[WorkspaceConfig]:
        return list(self._by_id.values())

    def get(self, workspace_id: str | None) -> WorkspaceConfig | None:
        if workspace_id is None:
            return None
        return self._by_id.get(str(workspace_id))

    def resolve(self, receiving_number: str) -> WorkspaceConfig:
        """Return the workspace owning ``receiving_number``, else the default."""
        number = strip_channel_prefix(receiving_number or "")
        ws = self._by_number.get(number)
        if ws is not None:
            return ws
        logger.info(
            "workspace_unresolved number=%s fallback=%s", number, self._default.id,
        )
        return self._default
