"""API endpoints for outbound messaging and webhook administration.

Provides endpoints for:
- Sending text, image, document and location replies from the resolved
  sender identity
- Read receipts and Twilio account information
- Reporting service and routing status
- Listing, adding, updating and removing webhook targets
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.models import LocationShare, OutboundMediaRequest, OutboundSendRequest, WebhookTarget
from src.routing.phone import normalize_e164
from src.routing.sender import SenderUnresolvedError
from src.webhook.twilio import TwilioSendError

if TYPE_CHECKING:
    from src.routing.idempotency import IdempotencyStore
    from src.routing.registry import WebhookRegistry
    from src.routing.sender import SenderIdentityResolver
    from src.routing.workspaces import WorkspaceResolver
    from src.webhook.twilio import TwilioRelay

logger = logging.getLogger(__name__)

API_PREFIX = "/api/whatsapp"
_MASKED_URL_LENGTH = 20


def _first(body: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = body.get(name)
        if value not in (None, ""):
            return value
    return None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def mask_url(url: str) -> str:
    if not url:
        return "not configured"
    if len(url) <= _MASKED_URL_LENGTH:
        return url
    return f"{url[:_MASKED_URL_LENGTH]}..."


def _masked(target: WebhookTarget) -> dict[str, Any]:
    return {"url": mask_url(target.url), "name": target.name, "enabled": target.enabled}


def _valid_url(url: Any) -> bool:
    return isinstance(url, str) and url.startswith(("http://", "https://"))


def _text_reply(body: dict[str, Any], common: dict[str, Any]) -> OutboundSendRequest:
    text = _first(body, "text", "body", "message")
    if not text:
        raise ValueError("Required fields: to and text")
    return OutboundSendRequest(text=str(text), **common)


def _media_reply(*url_fields: str) -> Callable[[dict[str, Any], dict[str, Any]], OutboundMediaRequest]:
    def compose(body: dict[str, Any], common: dict[str, Any]) -> OutboundMediaRequest:
        url = _first(body, *url_fields, "mediaUrl", "media_url")
        if not _valid_url(url):
            raise ValueError(f"{url_fields[0]} must be an http(s) URL")
        caption = _first(body, "caption")
        filename = _first(body, "filename")
        return OutboundMediaRequest(
            media_url=url,
            caption=str(caption) if caption is not None else None,
            filename=str(filename) if filename is not None else None,
            **common,
        )

    return compose


def _location_reply(body: dict[str, Any], common: dict[str, Any]) -> OutboundSendRequest:
    if body.get("latitude") is None or body.get("longitude") is None:
        raise ValueError("Required fields: to, latitude and longitude")
    location = LocationShare(
        latitude=body["latitude"],
        longitude=body["longitude"],
        name=_first(body, "name"),
        address=_first(body, "address"),
    )
    return OutboundSendRequest(text=location.to_text(), **common)


def create_messaging_router(
    sender_resolver: SenderIdentityResolver,
    twilio: TwilioRelay,
    outbound_idempotency: IdempotencyStore,
    workspaces: WorkspaceResolver,
    registry: WebhookRegistry,
    enabled_workspaces: frozenset[str] | None = None,
) -> APIRouter:
    """Create the outbound messaging API router."""
    router = APIRouter(prefix=API_PREFIX)

    async def _send(
        request: Request,
        compose: Callable[[dict[str, Any], dict[str, Any]], OutboundSendRequest | OutboundMediaRequest],
    ) -> JSONResponse:
        """Shared send pipeline; accepts the field aliases n8n flows use."""
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)

        metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else {}
        to = _first(body, "to", "number")
        workspace_id = _first(body, "workspace_id", "workspaceId")
        message_id = _first(metadata, "message_id") or _first(body, "message_id")
        override = _first(
            body, "business_number", "businessNumber", "from_number", "fromNumber", "from",
        )
        workspace_id = str(workspace_id) if workspace_id is not None else None
        message_id = str(message_id) if message_id is not None else None

        if not to:
            return _error("Required field: to", 400)
        try:
            outbound = compose(body, {
                "to": normalize_e164(str(to)),
                "workspace_id": workspace_id,
                "sender_override": str(override) if override is not None else None,
                "message_id": message_id,
            })
        except ValidationError as e:
            return _error(e.errors()[0]["msg"], 400)
        except ValueError as e:
            return _error(str(e), 400)

        if enabled_workspaces is not None and workspace_id not in enabled_workspaces:
            return _error("Workspace not allowed", 403)

        if message_id and outbound_idempotency.is_duplicate(message_id):
            return JSONResponse({
                "success": True,
                "duplicate_ignored": True,
                "workspace_id": workspace_id,
                "message_id": message_id,
            })

        try:
            sender = sender_resolver.resolve(outbound.workspace_id, outbound.sender_override)
        except SenderUnresolvedError as e:
            logger.error("send_failed workspace=%s error=%s", workspace_id, e)
            return _error(str(e), 503)

        try:
            if isinstance(outbound, OutboundMediaRequest):
                result = await twilio.send_media(
                    outbound.to, outbound.media_url, sender, caption=outbound.caption,
                )
            else:
                result = await twilio.send_text(outbound.to, outbound.text, sender)
        except TwilioSendError as e:
            logger.error(
                "send_failed to=%s workspace=%s status=%s error=%s",
                outbound.to, workspace_id, e.status_code, e,
            )
            return _error(str(e), 502)

        if message_id:
            outbound_idempotency.mark_processed(message_id)

        return JSONResponse({
            "success": True,
            "status": result["status"],
            "twilio_sid": result["provider_message_id"],
            "workspace_id": workspace_id,
            "message_id": message_id,
            "sender": sender.model_dump(mode="json", exclude_none=True),
        })

    async def send_text(request: Request) -> JSONResponse:
        return await _send(request, _text_reply)

    async def send_image(request: Request) -> JSONResponse:
        return await _send(request, _media_reply("imageUrl", "image_url"))

    async def send_document(request: Request) -> JSONResponse:
        return await _send(request, _media_reply("documentUrl", "document_url"))

    async def send_location(request: Request) -> JSONResponse:
        return await _send(request, _location_reply)

    # /messages is the path older n8n flows post to
    router.add_api_route("/send/text", send_text, methods=["POST"])
    router.add_api_route("/messages", send_text, methods=["POST"])
    router.add_api_route("/send/image", send_image, methods=["POST"])
    router.add_api_route("/send/document", send_document, methods=["POST"])
    router.add_api_route("/send/location", send_location, methods=["POST"])

    @router.put("/messages/{message_id}/read")
    async def mark_read(message_id: str) -> JSONResponse:
        """Acknowledge a read receipt; Twilio marks WhatsApp messages read itself."""
        logger.info("message_marked_read message_id=%s", message_id)
        return JSONResponse({
            "success": True,
            "data": {"message_id": message_id, "status": "read"},
        })

    @router.get("/phone-info")
    async def phone_info() -> JSONResponse:
        """Report the Twilio account and the default sender identity."""
        try:
            account = await twilio.fetch_account_info()
        except TwilioSendError as e:
            logger.error("phone_info_failed status=%s error=%s", e.status_code, e)
            return _error(str(e), 502)
        try:
            default_sender = sender_resolver.resolve().model_dump(mode="json", exclude_none=True)
        except SenderUnresolvedError:
            default_sender = None
        pooled = bool(default_sender and "messaging_service_sid" in default_sender)
        return JSONResponse({
            "success": True,
            "data": {
                **account,
                "default_sender": default_sender,
                "environment": "business" if pooled else "sandbox",
            },
        })

    @router.get("/status")
    async def status() -> JSONResponse:
        """Report sender defaults, the workspace table and webhook targets."""
        try:
            default_sender = sender_resolver.resolve().model_dump(mode="json", exclude_none=True)
        except SenderUnresolvedError:
            default_sender = None
        return JSONResponse({
            "success": True,
            "data": {
                "status": "online" if twilio.configured else "unconfigured",
                "default_sender": default_sender,
                "workspaces": [ws.model_dump(mode="json") for ws in workspaces.workspaces],
                "webhooks": {t.key: _masked(t) for t in registry.snapshot()},
            },
        })

    return router


def create_webhook_admin_router(registry: WebhookRegistry) -> APIRouter:
    """Create the webhook target CRUD router."""
    router = APIRouter(prefix=f"{API_PREFIX}/webhooks")

    @router.get("")
    async def list_webhooks() -> JSONResponse:
        return JSONResponse({
            "success": True,
            "data": {t.key: _masked(t) for t in registry.snapshot()},
        })

    @router.post("")
    async def add_webhook(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        key = _first(body, "phoneNumber", "key")
        url = _first(body, "webhookUrl", "url")
        if not key or not url:
            return _error("phoneNumber and webhookUrl are required", 400)
        if not _valid_url(url):
            return _error("webhookUrl must be an http(s) URL", 400)
        name = _first(body, "name")
        target = registry.add(str(key), url, str(name) if name is not None else None)
        return JSONResponse(
            {"success": True, "data": target.model_dump(mode="json")},
            status_code=201,
        )

    @router.put("/{key}")
    async def update_webhook(key: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        changes: dict[str, Any] = {}
        url = _first(body, "webhookUrl", "url")
        if url is not None:
            if not _valid_url(url):
                return _error("webhookUrl must be an http(s) URL", 400)
            changes["url"] = url
        if "name" in body:
            changes["name"] = body["name"]
        if "enabled" in body:
            if not isinstance(body["enabled"], bool):
                return _error("enabled must be a boolean", 400)
            changes["enabled"] = body["enabled"]

        try:
            target = registry.update(key, **changes)
        except ValidationError as e:
            return _error(e.errors()[0]["msg"], 400)
        if target is None:
            return _error("Webhook not found", 404)
        return JSONResponse({"success": True, "data": target.model_dump(mode="json")})

    @router.delete("/{key}")
    async def remove_webhook(key: str) -> JSONResponse:
        if not registry.remove(key):
            return _error("Webhook not found", 404)
        return JSONResponse({"success": True})

    return router
