"""Phone number normalization shared by routing and sending."""

from __future__ import annotations

import re

_SCHEME_PREFIX = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:")
_NON_DIAL_CHARS = re.compile(r"[^\d+]")


def strip_channel_prefix(value: str) -> str:
    """Drop a transport marker such as ``whatsapp:`` and surrounding spaces."""
    value = value.strip()
    return _SCHEME_PREFIX.sub("", value, count=1).strip()


def normalize_e164(value: str) -> str:
    """Coerce a loosely formatted number into ``+<digits>`` form.

    Only digits and ``+`` survive; a missing leading ``+`` is added.
    """
    cleaned = _NON_DIAL_CHARS.sub("", strip_channel_prefix(value))
    if not cleaned.startswith("+"):
        cleaned = f"+{cleaned}"
    return cleaned
