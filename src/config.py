"""Environment configuration parsed once into typed tables.

Workspace and webhook settings follow flat ``<NAMESPACE>_<KEY>_<FIELD>``
variable names; they are read here at startup so nothing else builds
variable names at runtime.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from src.models import WebhookTarget, WorkspaceConfig
from src.routing.phone import normalize_e164
from src.routing.registry import DEFAULT_TARGET_KEY

logger = logging.getLogger(__name__)

_WORKSPACE_KEY_PATTERNS = (
    re.compile(r"^TWILIO_WHATSAPP_NUMBER__(\w+)$"),
    re.compile(r"^TWILIO_MESSAGING_SERVICE_SID__(\w+)$"),
    re.compile(r"^WHATSAPP_WORKSPACE_NAME__(\w+)$"),
    re.compile(r"^WHATSAPP_SENDER_NUMBER__(\w+)$"),
)
_WEBHOOK_URL_PATTERN = re.compile(r"^N8N_WEBHOOK_(.+)_URL$")
_WORKSPACE_WEBHOOK_PREFIX = "WORKSPACE_"
_RESERVED_WORKSPACE_IDS = {"DEFAULT"}


@dataclass(frozen=True)
class Settings:
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    default_whatsapp_number: str | None = None
    default_messaging_service_sid: str | None = None
    service_token: str = ""
    enabled_workspaces: frozenset[str] | None = None
    meta_verify_token: str = ""
    validate_twilio_signature: bool = False
    rate_limit_window_seconds: float = 900.0
    rate_limit_max_requests: int = 100
    forward_timeout_seconds: float = 10.0
    idempotency_ttl_seconds: float = 3600.0
    log_level: str = "INFO"
    workspaces: list[WorkspaceConfig] = field(default_factory=list)
    webhooks: list[WebhookTarget] = field(default_factory=list)


def _get(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = env.get(name, "").strip()
        if value:
            return value
    return None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def load_workspaces(env: Mapping[str, str]) -> list[WorkspaceConfig]:
    """Collect every workspace mentioned by id in the environment."""
    ids: list[str] = []
    enabled = env.get("WHATSAPP_ENABLED_WORKSPACES", "")
    for ws_id in (s.strip() for s in enabled.split(",")):
        if ws_id and ws_id not in ids:
            ids.append(ws_id)
    for key in sorted(env):
        for pattern in _WORKSPACE_KEY_PATTERNS:
            match = pattern.match(key)
            if match and match.group(1) not in _RESERVED_WORKSPACE_IDS and match.group(1) not in ids:
                ids.append(match.group(1))

    workspaces = []
    for ws_id in ids:
        number = _get(env, f"TWILIO_WHATSAPP_NUMBER__{ws_id}", f"TWILIO_WHATSAPP_NUMBER_{ws_id}")
        sender = _get(env, f"WHATSAPP_SENDER_NUMBER__{ws_id}")
        workspaces.append(WorkspaceConfig(
            id=ws_id,
            display_name=_get(env, f"WHATSAPP_WORKSPACE_NAME__{ws_id}") or f"Workspace {ws_id}",
            receiving_number=normalize_e164(number) if number else None,
            sender_override_number=normalize_e164(sender) if sender else None,
            outbound_sender_pool_id=_get(
                env,
                f"TWILIO_MESSAGING_SERVICE_SID__{ws_id}",
                f"TWILIO_MESSAGING_SERVICE_SID_{ws_id}",
            ),
        ))
    return workspaces


def load_webhooks(env: Mapping[str, str]) -> list[WebhookTarget]:
    """Read ``N8N_WEBHOOK_<KEY>_URL`` entries plus the default target."""
    targets: list[WebhookTarget] = []
    default_url = _get(env, "N8N_DEFAULT_WEBHOOK_URL")
    if default_url:
        targets.append(WebhookTarget(key=DEFAULT_TARGET_KEY, url=default_url, name="default"))

    for var in sorted(env):
        match = _WEBHOOK_URL_PATTERN.match(var)
        if not match or not env[var].strip():
            continue
        raw_key = match.group(1)
        key = raw_key.removeprefix(_WORKSPACE_WEBHOOK_PREFIX) or raw_key
        enabled = env.get(f"N8N_WEBHOOK_{raw_key}_ENABLED", "").strip().lower() != "false"
        targets.append(WebhookTarget(
            key=key,
            url=env[var].strip(),
            name=_get(env, f"N8N_WEBHOOK_{raw_key}_NAME") or key,
            enabled=enabled,
        ))
    return targets


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    enabled = env.get("WHATSAPP_ENABLED_WORKSPACES", "")
    enabled_ids = frozenset(s.strip() for s in enabled.split(",") if s.strip())
    default_number = _get(env, "TWILIO_WHATSAPP_NUMBER")
    return Settings(
        twilio_account_sid=_get(env, "TWILIO_ACCOUNT_SID") or "",
        twilio_auth_token=_get(env, "TWILIO_AUTH_TOKEN") or "",
        default_whatsapp_number=normalize_e164(default_number) if default_number else None,
        default_messaging_service_sid=_get(
            env,
            "TWILIO_MESSAGING_SERVICE_SID__DEFAULT",
            "TWILIO_MESSAGING_SERVICE_SID_DEFAULT",
            "TWILIO_MESSAGING_SERVICE_SID",
        ),
        service_token=_get(env, "WHATSAPP_SERVICE_TOKEN") or "",
        enabled_workspaces=enabled_ids or None,
        meta_verify_token=_get(env, "META_VERIFY_TOKEN") or "",
        validate_twilio_signature=_bool(env, "TWILIO_VALIDATE_SIGNATURE", False),
        rate_limit_window_seconds=_number(env, "RATE_LIMIT_WINDOW_MS", 900_000) / 1000.0,
        rate_limit_max_requests=int(_number(env, "RATE_LIMIT_MAX_REQUESTS", 100)),
        forward_timeout_seconds=_number(env, "FORWARD_TIMEOUT_SECONDS", 10.0),
        idempotency_ttl_seconds=_number(env, "IDEMPOTENCY_TTL_SECONDS", 3600.0),
        log_level=(_get(env, "LOG_LEVEL") or "INFO").upper(),
        workspaces=load_workspaces(env),
        webhooks=load_webhooks(env),
    )
