"""FastAPI application for the WhatsApp relay service."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from src.config import Settings, load_settings
from src.routing.dispatcher import Dispatcher
from src.routing.idempotency import IdempotencyStore
from src.routing.registry import WebhookRegistry
from src.routing.sender import SenderIdentityResolver
from src.routing.workspaces import WorkspaceResolver
from src.service.auth_middleware import PROTECTED_PREFIXES, AuthMiddleware
from src.service.routes import create_messaging_router, create_webhook_admin_router
from src.webhook.rate_limiter import RateLimiter
from src.webhook.twilio import PayloadValidationError, TwilioRelay

logger = logging.getLogger(__name__)

SERVICE_NAME = "whatsapp-relay"
_SCALAR_TYPES = (str, int, float, bool)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


def create_app(
    settings: Settings,
    forward_transport: httpx.AsyncBaseTransport | None = None,
    twilio_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the relay app; components are exposed on ``app.state``."""
    workspaces = WorkspaceResolver(settings.workspaces)
    registry = WebhookRegistry()
    registry.load(settings.webhooks)
    inbound_idempotency = IdempotencyStore(default_ttl_seconds=settings.idempotency_ttl_seconds)
    outbound_idempotency = IdempotencyStore(default_ttl_seconds=settings.idempotency_ttl_seconds)
    dispatcher = Dispatcher(
        workspaces,
        registry,
        inbound_idempotency,
        timeout_seconds=settings.forward_timeout_seconds,
        transport=forward_transport,
    )
    sender_resolver = SenderIdentityResolver(
        workspaces,
        default_number=settings.default_whatsapp_number,
        default_pool_id=settings.default_messaging_service_sid,
    )
    twilio = TwilioRelay(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        default_number=settings.default_whatsapp_number,
        verify_token=settings.meta_verify_token,
        transport=twilio_transport,
    )
    rate_limiter = RateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "relay_started workspaces=%d webhooks=%d",
            len(workspaces.workspaces), len(registry),
        )
        yield
        registry.close()
        inbound_idempotency.close()
        outbound_idempotency.close()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.settings = settings
    app.state.workspaces = workspaces
    app.state.registry = registry
    app.state.inbound_idempotency = inbound_idempotency
    app.state.outbound_idempotency = outbound_idempotency
    app.state.dispatcher = dispatcher
    app.state.sender_resolver = sender_resolver
    app.state.twilio = twilio

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get("/webhook")
    async def verify_webhook(request: Request) -> Response:
        result = twilio.handle_verification(dict(request.query_params))
        if result["status_code"] == 200:
            return PlainTextResponse(result["content"])
        logger.warning("webhook_verification_failed status=%s", result["status_code"])
        return JSONResponse({"error": result["error"]}, status_code=result["status_code"])

    @app.post("/webhook")
    async def receive_webhook(request: Request) -> Response:
        """Provider callback: always acknowledged once the payload parses."""
        if "application/json" in request.headers.get("content-type", ""):
            try:
                payload = json.loads(await request.body() or b"{}")
            except json.JSONDecodeError:
                return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
            if not isinstance(payload, dict) or not all(
                isinstance(v, _SCALAR_TYPES) for v in payload.values() if v is not None
            ):
                return JSONResponse({"error": "Invalid callback payload"}, status_code=400)
            form = {str(k): str(v) for k, v in payload.items() if v is not None}
        else:
            # Twilio posts application/x-www-form-urlencoded
            form = {k: v for k, v in (await request.form()).items() if isinstance(v, str)}

        if settings.validate_twilio_signature:
            signature = request.headers.get("x-twilio-signature", "")
            if not twilio.verify_signature(str(request.url), form, signature):
                logger.warning("webhook_signature_invalid ip=%s", _client_ip(request))
                return JSONResponse({"error": "Invalid signature"}, status_code=403)

        try:
            messages = twilio.parse_callback(form)
        except PayloadValidationError as e:
            logger.warning("webhook_payload_invalid error=%s", e)
            return JSONResponse({"error": str(e)}, status_code=400)

        if messages:
            results = await dispatcher.dispatch_all(messages)
            logger.info(
                "webhook_processed messages=%d forwarded=%d",
                len(messages), sum(r.forwarded for r in results),
            )
        return PlainTextResponse("")

    app.include_router(create_messaging_router(
        sender_resolver,
        twilio,
        outbound_idempotency,
        workspaces,
        registry,
        enabled_workspaces=settings.enabled_workspaces,
    ))
    app.include_router(create_webhook_admin_router(registry))

    # Add auth middleware (wraps the entire app)
    app.add_middleware(AuthMiddleware, token=settings.service_token)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):  # type: ignore[no-untyped-def]
        if request.url.path.startswith(PROTECTED_PREFIXES):
            client = _client_ip(request)
            if not rate_limiter.check(client):
                logger.warning("rate_limited ip=%s path=%s", client, request.url.path)
                return JSONResponse(
                    {"success": False, "error": "Too many requests, try again later"},
                    status_code=429,
                    headers={"Retry-After": str(rate_limiter.retry_after(client))},
                )
        return await call_next(request)

    return app


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"
