"""Inbound message dispatcher.

Forwards each inbound message to its workspace's webhook at most once per
message id within the idempotency window.

Pipeline stages:
1. Duplicate check (already forwarded, or a forward for the id in flight)
2. Workspace resolution on the receiving number
3. Webhook lookup (workspace id, receiving number, default target)
4. JSON POST with a bounded timeout via httpx
5. Commit the message id only on a 2xx response

A failed forward is never committed, so the provider's redelivery of the
same callback retries it. Errors are converted into a ``DispatchResult``
and never raised past ``handle``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import httpx

from src.models import DispatchResult, InboundMessage, WebhookTarget, WorkspaceConfig
from src.routing.idempotency import IdempotencyStore
from src.routing.phone import strip_channel_prefix
from src.routing.registry import WebhookRegistry
from src.routing.workspaces import WorkspaceResolver

logger = logging.getLogger(__name__)

DEFAULT_FORWARD_TIMEOUT_SECONDS = 10.0
PAYLOAD_SOURCE = "whatsapp-service"
USER_AGENT = "whatsapp-relay/1.0"

REASON_ALREADY_PROCESSED = "already_processed"
REASON_IN_FLIGHT = "in_flight"
ERROR_NO_WEBHOOK = "no_webhook_configured"
ERROR_TIMEOUT = "delivery_timeout"
ERROR_REJECTED = "delivery_rejected"
ERROR_FAILED = "delivery_failed"


class DeliveryError(Exception):
    """Raised when a forward did not reach a 2xx response."""

    code = ERROR_FAILED
    status_code: int | None = None


class DeliveryTimeoutError(DeliveryError):
    code = ERROR_TIMEOUT


class DeliveryRejectedError(DeliveryError):
    code = ERROR_REJECTED

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Webhook responded with HTTP {status_code}")


class Dispatcher:
    """Resolves, deduplicates and forwards inbound messages."""

    def __init__(
        self,
        workspaces: WorkspaceResolver,
        registry: WebhookRegistry,
        idempotency: IdempotencyStore,
        timeout_seconds: float = DEFAULT_FORWARD_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._workspaces = workspaces
        self._registry = registry
        self._idempotency = idempotency
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    async def handle(self, message: InboundMessage) -> DispatchResult:
        """Dispatch one inbound message and report the outcome."""
        message_id = message.message_id

        # Stage 1: Duplicate check
        if self._idempotency.is_duplicate(message_id):
            logger.info("dispatch_skipped message_id=%s reason=%s", message_id, REASON_ALREADY_PROCESSED)
            return DispatchResult(skipped=True, reason=REASON_ALREADY_PROCESSED)
        if not self._claim(message_id):
            logger.info("dispatch_skipped message_id=%s reason=%s", message_id, REASON_IN_FLIGHT)
            return DispatchResult(skipped=True, reason=REASON_IN_FLIGHT)

        try:
            # Stage 2: Workspace resolution
            workspace = self._workspaces.resolve(message.to)

            # Stage 3: Webhook lookup
            target = self._registry.lookup(workspace.id, strip_channel_prefix(message.to))
            if target is None:
                logger.warning(
                    "dispatch_failed message_id=%s workspace=%s error=%s",
                    message_id, workspace.id, ERROR_NO_WEBHOOK,
                )
                return DispatchResult(error=ERROR_NO_WEBHOOK, workspace_id=workspace.id)

            # Stage 4: Forward
            payload = self.build_payload(message, workspace, target)
            try:
                status_code = await self._deliver(target, payload)
            except DeliveryError as e:
                logger.warning(
                    "dispatch_failed message_id=%s workspace=%s webhook=%s error=%s detail=%s",
                    message_id, workspace.id, target.name, e.code, e,
                )
                return DispatchResult(
                    error=e.code,
                    workspace_id=workspace.id,
                    webhook_name=target.name,
                    status_code=e.status_code,
                )

            # Stage 5: Commit
            self._idempotency.mark_processed(message_id)
            logger.info(
                "dispatch_forwarded message_id=%s workspace=%s webhook=%s status=%s",
                message_id, workspace.id, target.name, status_code,
            )
            return DispatchResult(
                forwarded=True,
                workspace_id=workspace.id,
                webhook_name=target.name,
                status_code=status_code,
            )
        finally:
            self._release(message_id)

    async def dispatch_all(self, messages: Iterable[InboundMessage]) -> list[DispatchResult]:
        """Dispatch a batch; each message's outcome is independent of the others."""
        return [await self.handle(message) for message in messages]

    @staticmethod
    def build_payload(
        message: InboundMessage,
        workspace: WorkspaceConfig,
        target: WebhookTarget,
    ) -> dict[str, Any]:
        return {
            "phoneNumber": message.from_number,
            "message": message.to_payload(),
            "timestamp": datetime.now(UTC).isoformat(),
            "webhookName": target.name,
            "source": PAYLOAD_SOURCE,
            "workspace": {"id": workspace.id, "name": workspace.display_name},
        }

    async def _deliver(self, target: WebhookTarget, payload: dict[str, Any]) -> int:
        """POST ``payload`` to the target; return the 2xx status or raise."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(
                    target.url, json=payload, headers=headers, timeout=self._timeout_seconds,
                )
        except httpx.TimeoutException as e:
            raise DeliveryTimeoutError(f"Webhook timed out after {self._timeout_seconds}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(str(e) or type(e).__name__) from e

        if not resp.is_success:
            raise DeliveryRejectedError(resp.status_code)
        return resp.status_code

    def _claim(self, message_id: str) -> bool:
        if not message_id:
            return True
        with self._in_flight_lock:
            if message_id in self._in_flight:
                return False
            self._in_flight.add(message_id)
            return True

    def _release(self, message_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(message_id)
