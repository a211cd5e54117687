"""Twilio WhatsApp provider glue.

Handles Twilio webhook callbacks: signature verification, Meta
verification challenge, callback parsing into ``InboundMessage`` and
outbound text and media delivery through the Twilio Messages REST API.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import httpx

from src.models import InboundMessage, MessageType, SenderIdentity
from src.routing.phone import strip_channel_prefix

logger = logging.getLogger(__name__)

_TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
_SEND_TIMEOUT_SECONDS = 15.0
WHATSAPP_SCHEME = "whatsapp:"


class PayloadValidationError(Exception):
    """Raised when a provider callback cannot be turned into a message."""

    pass


class TwilioSendError(Exception):
    """Raised when a Twilio REST call fails or is rejected."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def determine_message_type(content_type: str | None) -> MessageType:
    if not content_type:
        return MessageType.MEDIA
    content_type = content_type.lower()
    if content_type.startswith("image/"):
        return MessageType.IMAGE
    if content_type.startswith("video/"):
        return MessageType.VIDEO
    if content_type.startswith("audio/"):
        return MessageType.AUDIO
    if "pdf" in content_type or "document" in content_type:
        return MessageType.DOCUMENT
    return MessageType.MEDIA


def to_whatsapp_address(number: str) -> str:
    number = "".join(number.split())
    if number.startswith(WHATSAPP_SCHEME):
        return number
    return f"{WHATSAPP_SCHEME}{number}"


class TwilioRelay:
    """Parses Twilio callbacks and sends replies via the Twilio REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        default_number: str | None = None,
        verify_token: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._default_number = default_number
        self._verify_token = verify_token
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token)

    def verify_signature(
        self, url: str, params: Mapping[str, str], signature: str,
    ) -> bool:
        """Verify the ``X-Twilio-Signature`` header.

        Twilio signs the full request URL followed by every POST parameter
        name and value, sorted by name, with HMAC-SHA1 keyed by the auth token.
        """
        if not signature or not self._auth_token:
            return False
        data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
        digest = hmac.new(self._auth_token.encode(), data.encode(), hashlib.sha1).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(signature, expected)

    def handle_verification(
        self, params: Mapping[str, str],
    ) -> dict[str, Any]:
        """Handle the Meta webhook verification challenge (GET).

        Returns the challenge on a valid subscribe, 403 on a bad token or
        mode, 400 when the handshake parameters are missing.
        """
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token")
        if not mode or not token:
            return {"status_code": 400, "error": "Missing verification parameters"}

        if mode == "subscribe" and self._verify_token and hmac.compare_digest(
            token, self._verify_token,
        ):
            return {
                "status_code": 200,
                "content": params.get("hub.challenge", ""),
            }
        return {"status_code": 403, "error": "Invalid verify token"}

    def parse_callback(self, form: Mapping[str, str]) -> list[InboundMessage]:
        """Convert a Twilio callback form into inbound messages.

        Status callbacks (no body and no media) yield an empty list.
        """
        body = form.get("Body")
        num_media = self._num_media(form.get("NumMedia"))
        if body is None and num_media == 0:
            return []

        sender = strip_channel_prefix(form.get("From", ""))
        message_id = (form.get("MessageSid") or form.get("SmsMessageSid") or "").strip()
        if not sender:
            raise PayloadValidationError("Callback is missing From")
        if not message_id:
            raise PayloadValidationError("Callback is missing MessageSid")

        recipient = strip_channel_prefix(form.get("To", "")) or self._default_number
        if not recipient:
            raise PayloadValidationError("Callback is missing To")

        fields: dict[str, Any] = {
            "from": sender,
            "to": recipient,
            "body": body or "",
            "messageId": message_id,
            "timestamp": form.get("Timestamp") or datetime.now(UTC).isoformat(),
        }
        if num_media > 0:
            fields["type"] = determine_message_type(form.get("MediaContentType0"))
            fields["mediaUrl"] = form.get("MediaUrl0")
        else:
            fields["type"] = MessageType.TEXT
        return [InboundMessage.model_validate(fields)]

    async def send_text(
        self, to: str, text: str, sender: SenderIdentity,
    ) -> dict[str, str]:
        """Send a text reply through Twilio.

        Returns ``{"status", "provider_message_id"}``; raises TwilioSendError
        on transport failure or a non-2xx response.
        """
        return await self._create_message(to, sender, {"Body": text})

    async def send_media(
        self,
        to: str,
        media_url: str,
        sender: SenderIdentity,
        caption: str | None = None,
    ) -> dict[str, str]:
        """Send an image or document by URL, with an optional caption."""
        data = {"MediaUrl": media_url}
        if caption:
            data["Body"] = caption
        return await self._create_message(to, sender, data)

    async def fetch_account_info(self) -> dict[str, str]:
        """Return name, status and type of the Twilio account."""
        if not self.configured:
            raise TwilioSendError("Twilio credentials are not configured")
        url = f"{_TWILIO_API_BASE}/Accounts/{self._account_sid}.json"
        try:
            async with httpx.AsyncClient(transport=self._transport, verify=True) as client:
                resp = await client.get(
                    url,
                    auth=(self._account_sid, self._auth_token),
                    timeout=_SEND_TIMEOUT_SECONDS,
                )
        except httpx.HTTPError as e:
            raise TwilioSendError(f"Twilio unavailable: {e}") from e

        if not resp.is_success:
            raise TwilioSendError(self._error_message(resp), status_code=resp.status_code)
        try:
            account = resp.json()
        except ValueError:
            account = {}
        return {
            "account_name": str(account.get("friendly_name", "")),
            "account_status": str(account.get("status", "")),
            "account_type": str(account.get("type", "")),
        }

    async def _create_message(
        self, to: str, sender: SenderIdentity, content: dict[str, str],
    ) -> dict[str, str]:
        if not self.configured:
            raise TwilioSendError("Twilio credentials are not configured")

        url = f"{_TWILIO_API_BASE}/Accounts/{self._account_sid}/Messages.json"
        data = {"To": to_whatsapp_address(to), **content}
        if sender.messaging_service_sid:
            data["MessagingServiceSid"] = sender.messaging_service_sid
        elif sender.from_number:
            data["From"] = to_whatsapp_address(sender.from_number)

        try:
            async with httpx.AsyncClient(transport=self._transport, verify=True) as client:
                resp = await client.post(
                    url,
                    data=data,
                    auth=(self._account_sid, self._auth_token),
                    timeout=_SEND_TIMEOUT_SECONDS,
                )
        except httpx.HTTPError as e:
            raise TwilioSendError(f"Twilio unavailable: {e}") from e

        if not resp.is_success:
            raise TwilioSendError(self._error_message(resp), status_code=resp.status_code)

        try:
            result = resp.json()
        except ValueError:
            result = {}
        logger.info(
            "whatsapp_sent to=%s from=%s pool=%s media=%s sid=%s status=%s",
            to,
            sender.from_number or "-",
            sender.messaging_service_sid or "-",
            "MediaUrl" in content,
            result.get("sid"),
            result.get("status"),
        )
        return {
            "status": str(result.get("status", "")),
            "provider_message_id": str(result.get("sid", "")),
        }

    @staticmethod
    def _num_media(raw: str | None) -> int:
        try:
            return int(raw or 0)
        except ValueError:
            raise PayloadValidationError(f"Invalid NumMedia: {raw!r}") from None

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("message", resp.text))
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"
