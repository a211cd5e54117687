"""Outbound sender identity resolution.

Priority, first match wins:
1. Explicit override number from the request. Sent ``from`` that exact
   number; a messaging pool would pick its own sender and defeat the override.
2. Workspace messaging pool.
3. Workspace dedicated number.
4. Process default pool, then process default number.
"""

from __future__ import annotations

import logging

from src.models import SenderIdentity, SenderSource
from src.routing.phone import normalize_e164
from src.routing.workspaces import WorkspaceResolver

logger = logging.getLogger(__name__)


class SenderUnresolvedError(Exception):
    """Raised when no sender number or pool is configured for a reply."""

    def __init__(self, workspace_id: str | None) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"No outbound sender configured for workspace {workspace_id!r}")


class SenderIdentityResolver:
    """Picks the provider-facing sender for outbound replies."""

    def __init__(
        self,
        workspaces: WorkspaceResolver,
        default_number: str | None = None,
        default_pool_id: str | None = None,
    ) -> None:
        self._workspaces = workspaces
        self._default_number = normalize_e164(default_number) if default_number else None
        self._default_pool_id = default_pool_id or None

    def resolve(
        self,
        workspace_id: str | None = None,
        override_number: str | None = None,
    ) -> SenderIdentity:
        if override_number and override_number.strip():
            identity = SenderIdentity(
                from_number=normalize_e164(override_number),
                source=SenderSource.OVERRIDE,
            )
            logger.info(
                "sender_override workspace=%s from=%s", workspace_id, identity.from_number,
            )
            return identity

        workspace = self._workspaces.get(workspace_id)
        if workspace is not None:
            if workspace.outbound_sender_pool_id:
                return SenderIdentity(
                    messaging_service_sid=workspace.outbound_sender_pool_id,
                    source=SenderSource.WORKSPACE_POOL,
                )
            dedicated = workspace.sender_override_number or workspace.receiving_number
            if dedicated:
                return SenderIdentity(
                    from_number=normalize_e164(dedicated),
                    source=SenderSource.WORKSPACE_NUMBER,
                )

        if self._default_pool_id:
            return SenderIdentity(
                messaging_service_sid=self._default_pool_id,
                source=SenderSource.DEFAULT_POOL,
            )
        if self._default_number:
            return SenderIdentity(
                from_number=self._default_number,
                source=SenderSource.DEFAULT_NUMBER,
            )
        raise SenderUnresolvedError(workspace_id)
