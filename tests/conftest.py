"""Shared test fixtures for the WhatsApp relay."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from src.models import InboundMessage, WorkspaceConfig
from src.routing.dispatcher import Dispatcher
from src.routing.idempotency import IdempotencyStore
from src.routing.registry import WebhookRegistry
from src.routing.workspaces import WorkspaceResolver

DEFAULT_NUMBER = "+34603960818"
TENANT_NUMBER = "+971543381600"


@pytest.fixture
def recorded_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def webhook_transport(
    recorded_requests: list[httpx.Request],
) -> Callable[[int], httpx.MockTransport]:
    """Build a MockTransport that records requests and answers with ``status``."""

    def _create(status: int = 200) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            recorded_requests.append(request)
            return httpx.Response(status, json={"ok": status < 400})

        return httpx.MockTransport(handler)

    return _create


@pytest.fixture
def registry() -> WebhookRegistry:
    return WebhookRegistry()


@pytest.fixture
def store() -> IdempotencyStore:
    return IdempotencyStore()


@pytest.fixture
def resolver() -> WorkspaceResolver:
    return WorkspaceResolver([
        make_workspace(id="2", display_name="Clinic", receiving_number=TENANT_NUMBER),
        make_workspace(
            id="3",
            display_name="Store",
            receiving_number="+15550001111",
            outbound_sender_pool_id="MG-store",
        ),
    ])


@pytest.fixture
def make_dispatcher(
    resolver: WorkspaceResolver,
    registry: WebhookRegistry,
    store: IdempotencyStore,
) -> Callable[..., Dispatcher]:
    def _create(transport: httpx.AsyncBaseTransport | None = None, **kwargs: Any) -> Dispatcher:
        return Dispatcher(resolver, registry, store, transport=transport, **kwargs)

    return _create


# --- Factory functions for test data ---


def make_workspace(**kwargs: Any) -> WorkspaceConfig:
    """Factory for WorkspaceConfig with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "2",
        "display_name": "Workspace 2",
        "receiving_number": TENANT_NUMBER,
    }
    defaults.update(kwargs)
    return WorkspaceConfig(**defaults)


def make_inbound_message(**kwargs: Any) -> InboundMessage:
    """Factory for InboundMessage with sensible defaults (by alias)."""
    defaults: dict[str, Any] = {
        "from": "+447700900123",
        "to": DEFAULT_NUMBER,
        "body": "hola",
        "messageId": "SM123",
        "timestamp": "2026-01-01T00:00:00+00:00",
        "type": "text",
    }
    defaults.update(kwargs)
    return InboundMessage.model_validate(defaults)
