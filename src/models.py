"""Shared Pydantic data models for the WhatsApp relay."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    MEDIA = "media"


class SenderSource(str, Enum):
    """Which resolution rule produced an outbound sender identity."""

    OVERRIDE = "override"
    WORKSPACE_POOL = "workspace_pool"
    WORKSPACE_NUMBER = "workspace_number"
    DEFAULT_POOL = "default_pool"
    DEFAULT_NUMBER = "default_number"


# --- Tenancy Models ---


class WorkspaceConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    display_name: str
    receiving_number: str | None = None  # E.164, unique across workspaces
    sender_override_number: str | None = None
    outbound_sender_pool_id: str | None = None


class WebhookTarget(BaseModel):
    key: str = Field(min_length=1)  # workspace id or raw phone number
    url: str = Field(min_length=1)
    name: str
    enabled: bool = True


# --- Message Models ---


class InboundMessage(BaseModel):
    """A provider callback normalized for dispatch.

    Field aliases match the JSON shape downstream automations receive.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_number: str = Field(alias="from")
    to: str
    body: str = ""
    message_id: str = Field(alias="messageId")
    timestamp: str
    type: MessageType = MessageType.TEXT
    media_url: str | None = Field(default=None, alias="mediaUrl")

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OutboundSendRequest(BaseModel):
    to: str = Field(min_length=1)
    text: str = Field(min_length=1, max_length=4096)
    workspace_id: str | None = None
    sender_override: str | None = None
    message_id: str | None = None


class OutboundMediaRequest(BaseModel):
    """An image or document reply; Twilio fetches ``media_url`` itself."""

    to: str = Field(min_length=1)
    media_url: str = Field(min_length=1)
    caption: str | None = Field(default=None, max_length=1024)
    filename: str | None = None
    workspace_id: str | None = None
    sender_override: str | None = None
    message_id: str | None = None


class LocationShare(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    name: str | None = None
    address: str | None = None

    def to_text(self) -> str:
        """WhatsApp via Twilio has no location type, so it goes out as text."""
        lines = [
            f"\U0001F4CD Location: {self.name or 'Shared location'}",
            f"Latitude: {self.latitude}",
            f"Longitude: {self.longitude}",
        ]
        if self.address:
            lines.append(f"Address: {self.address}")
        return "\n".join(lines)


class SenderIdentity(BaseModel):
    """Provider-facing sender: exactly one of ``from_number`` or pool id."""

    model_config = ConfigDict(frozen=True)

    from_number: str | None = None
    messaging_service_sid: str | None = None
    source: SenderSource


class DispatchResult(BaseModel):
    forwarded: bool = False
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    workspace_id: str | None = None
    webhook_name: str | None = None
    status_code: int | None = None
