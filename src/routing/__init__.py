"""Multi-tenant routing and idempotent dispatch.

This package provides:
- Receiving number to workspace resolution
- Webhook target registry
- Bounded in-memory idempotency
- Outbound sender identity resolution
- The inbound dispatcher tying them together
"""

from src.routing.dispatcher import (
    DeliveryError,
    DeliveryRejectedError,
    DeliveryTimeoutError,
    Dispatcher,
)
from src.routing.idempotency import IdempotencyStore
from src.routing.phone import normalize_e164, strip_channel_prefix
from src.routing.registry import WebhookRegistry
from src.routing.sender import SenderIdentityResolver, SenderUnresolvedError
from src.routing.workspaces import ConfigurationError, WorkspaceResolver

__all__ = [
    # Exceptions
    "ConfigurationError",
    "DeliveryError",
    "DeliveryRejectedError",
    "DeliveryTimeoutError",
    "SenderUnresolvedError",
    # Components
    "Dispatcher",
    "IdempotencyStore",
    "SenderIdentityResolver",
    "WebhookRegistry",
    "WorkspaceResolver",
    # Helpers
    "normalize_e164",
    "strip_channel_prefix",
]
