"""Tests for the auth middleware."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from src.service.auth_middleware import AuthMiddleware

TOKEN = "test-secret-token-12345"


def _create_app(token: str = TOKEN) -> Starlette:
    async def send(request):  # noqa: ANN001
        return PlainTextResponse("sent")

    async def webhook(request):  # noqa: ANN001
        return PlainTextResponse("")

    async def health(request):  # noqa: ANN001
        return PlainTextResponse("healthy")

    app = Starlette(routes=[
        Route("/api/whatsapp/send/text", send, methods=["POST"]),
        Route("/webhook", webhook, methods=["POST"]),
        Route("/health", health),
    ])
    return AuthMiddleware(app, token=token)  # type: ignore[return-value]


@pytest.mark.asyncio
async def test_valid_token_passes() -> None:
    app = _create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/api/whatsapp/send/text", headers={"Authorization": f"Bearer {TOKEN}"},
        )
        assert resp.status_code == 200
        assert resp.text == "sent"


@pytest.mark.asyncio
async def test_missing_token_returns_401() -> None:
    app = _create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/api/whatsapp/send/text")
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Unauthorized"}


@pytest.mark.asyncio
async def test_non_bearer_scheme_returns_401() -> None:
    app = _create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/api/whatsapp/send/text", headers={"Authorization": f"Basic {TOKEN}"},
        )
        assert resp.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token_returns_403() -> None:
    app = _create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post(
            "/api/whatsapp/send/text", headers={"Authorization": "Bearer wrong-token"},
        )
        assert resp.status_code == 403
        assert "wrong-token" not in resp.text


@pytest.mark.asyncio
async def test_provider_callback_and_health_are_public() -> None:
    app = _create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.post("/webhook")).status_code == 200
        assert (await client.get("/health")).status_code == 200


@pytest.mark.asyncio
async def test_empty_token_disables_auth() -> None:
    app = _create_app(token="")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/api/whatsapp/send/text")
        assert resp.status_code == 200
