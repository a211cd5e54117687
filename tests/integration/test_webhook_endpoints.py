"""Integration tests for the provider callback endpoints."""

from __future__ import annotations

import base64
import hashlib
import hmac as hmac_mod
import json
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from src.config import load_settings
from src.service.app import create_app

BASE_ENV = {
    "TWILIO_ACCOUNT_SID": "AC123",
    "TWILIO_AUTH_TOKEN": "auth-token",
    "TWILIO_WHATSAPP_NUMBER": "+34603960818",
    "META_VERIFY_TOKEN": "verify-me",
    "WHATSAPP_ENABLED_WORKSPACES": "2",
    "TWILIO_WHATSAPP_NUMBER__2": "+971543381600",
    "WHATSAPP_WORKSPACE_NAME__2": "Clinic",
    "N8N_DEFAULT_WEBHOOK_URL": "https://n8n.example/default",
}


def _make_app(forwarded: list[httpx.Request], status: int = 200, **env: str) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        forwarded.append(request)
        return httpx.Response(status)

    settings = load_settings({**BASE_ENV, **env})
    return create_app(settings, forward_transport=httpx.MockTransport(handler))


def _callback(**kwargs: str) -> dict[str, str]:
    form = {
        "MessageSid": "SM123",
        "From": "whatsapp:+447700900123",
        "To": "whatsapp:+34603960818",
        "Body": "hola",
        "NumMedia": "0",
    }
    form.update(kwargs)
    return form


def _sign(url: str, params: dict[str, str], token: str = "auth-token") -> str:
    data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    return base64.b64encode(
        hmac_mod.new(token.encode(), data.encode(), hashlib.sha1).digest(),
    ).decode()


@pytest.mark.asyncio
async def test_health() -> None:
    app = _make_app([])
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


class TestVerificationChallenge:
    @pytest.mark.asyncio
    async def test_valid_challenge_echoed(self) -> None:
        app = _make_app([])
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/webhook", params={
                "hub.mode": "subscribe",
                "hub.verify_token": "verify-me",
                "hub.challenge": "12345",
            })
        assert resp.status_code == 200
        assert resp.text == "12345"

    @pytest.mark.asyncio
    async def test_wrong_token_forbidden(self) -> None:
        app = _make_app([])
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/webhook", params={
                "hub.mode": "subscribe",
                "hub.verify_token": "nope",
                "hub.challenge": "12345",
            })
        assert resp.status_code == 403


class TestInboundCallback:
    @pytest.mark.asyncio
    async def test_default_number_forwarded_once(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            first = await client.post("/webhook", data=_callback())
            second = await client.post("/webhook", data=_callback())

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.text == ""
        assert len(forwarded) == 1
        payload = json.loads(forwarded[0].content)
        assert payload["workspace"] == {"id": "1", "name": "Default"}
        assert payload["webhookName"] == "default"
        assert payload["message"]["body"] == "hola"

    @pytest.mark.asyncio
    async def test_tenant_without_webhook_acknowledged(self) -> None:
        """Tenant 2 has no target and there is no default: ack, no forward."""
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded, N8N_DEFAULT_WEBHOOK_URL="")
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post(
                "/webhook", data=_callback(To="whatsapp:+971543381600"),
            )
        assert resp.status_code == 200
        assert forwarded == []

    @pytest.mark.asyncio
    async def test_tenant_routed_to_its_webhook(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(
            forwarded,
            N8N_WEBHOOK_WORKSPACE_2_URL="https://n8n.example/clinic",
            N8N_WEBHOOK_WORKSPACE_2_NAME="clinic",
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            await client.post("/webhook", data=_callback(To="whatsapp:+971543381600"))
        assert str(forwarded[0].url) == "https://n8n.example/clinic"

    @pytest.mark.asyncio
    async def test_downstream_failure_still_acknowledged_and_retried(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded, status=500)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            first = await client.post("/webhook", data=_callback())
            second = await client.post("/webhook", data=_callback())
        assert first.status_code == 200
        assert second.status_code == 200
        assert len(forwarded) == 2

    @pytest.mark.asyncio
    async def test_json_callback_accepted(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/webhook", json=_callback(MessageSid="SMjson"))
        assert resp.status_code == 200
        assert len(forwarded) == 1

    @pytest.mark.asyncio
    async def test_form_encoded_values_decoded(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post(
                "/webhook", data=_callback(Body="hola & adiós = 100%+ ok"),
            )
        assert resp.status_code == 200
        payload = json.loads(forwarded[0].content)
        assert payload["message"]["body"] == "hola & adiós = 100%+ ok"
        assert payload["message"]["from"] == "+447700900123"

    @pytest.mark.asyncio
    async def test_json_callback_with_nested_value_rejected(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded)
        callback: dict[str, Any] = {**_callback(), "Body": {"text": "hola"}}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/webhook", json=callback)
        assert resp.status_code == 400
        assert forwarded == []

    @pytest.mark.asyncio
    async def test_status_callback_ignored(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/webhook", data={
                "MessageSid": "SM1", "MessageStatus": "delivered",
            })
        assert resp.status_code == 200
        assert forwarded == []

    @pytest.mark.asyncio
    async def test_malformed_callback_rejected(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded)
        callback = _callback()
        del callback["From"]
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/webhook", data=callback)
        assert resp.status_code == 400
        assert forwarded == []

    @pytest.mark.asyncio
    async def test_callback_not_rate_limited(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded, RATE_LIMIT_MAX_REQUESTS="1")
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            for i in range(3):
                resp = await client.post("/webhook", data=_callback(MessageSid=f"SM{i}"))
                assert resp.status_code == 200
        assert len(forwarded) == 3


class TestSignatureValidation:
    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded, TWILIO_VALIDATE_SIGNATURE="true")
        form = _callback()
        headers = {"X-Twilio-Signature": _sign("http://test/webhook", form)}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/webhook", data=form, headers=headers)
        assert resp.status_code == 200
        assert len(forwarded) == 1

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self) -> None:
        forwarded: list[httpx.Request] = []
        app = _make_app(forwarded, TWILIO_VALIDATE_SIGNATURE="true")
        headers = {"X-Twilio-Signature": "bogus"}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/webhook", data=_callback(), headers=headers)
        assert resp.status_code == 403
        assert forwarded == []
