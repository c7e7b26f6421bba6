"""
Normalization of GPTMaker webhook payloads.

The provider sends the same information under different keys depending on
the event (``message`` vs ``mensagem``, ``assistantId`` vs ``agentId``,
``contactPhone`` vs ``recipient``). normalize_payload maps any JSON object
into a NormalizedEvent and never raises on missing or mistyped fields.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from chat_ingest.schemas import EventKind, NormalizedEvent
from chat_ingest.utils import format_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

TEXT_KEYS = ("message", "mensagem")
PHONE_KEYS = ("contactPhone", "recipient")
AGENT_KEYS = ("assistantId", "agentId")
NAME_KEYS = ("contactName", "name")

TOOL_ROLE = "tool"


def optional_str(value: Any) -> Optional[str]:
    """Trimmed string, or None for non-strings and blank strings."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def first_present(payload: dict, keys: tuple) -> Optional[str]:
    for key in keys:
        value = optional_str(payload.get(key))
        if value is not None:
            return value
    return None


def optional_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def parse_sent_at(value: Any) -> str:
    """
    Parse the provider ``date`` field.

    Accepts an ISO-8601 string or a numeric epoch in milliseconds. Anything
    else, including unparseable values, falls back to the processing time.
    """
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return format_timestamp(datetime.fromisoformat(raw))
        except (ValueError, OverflowError):
            logger.debug(f"Unparseable date string: {value!r}")
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return format_timestamp(datetime.fromtimestamp(value / 1000, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Epoch out of range: {value!r}")
    return utc_now_iso()


def classify(role: Optional[str], text: Optional[str], message_id: Optional[str],
             agent_id: Optional[str], channel_id: Optional[str]) -> EventKind:
    """
    Decide what an event is.

    The provider has no explicit event type: takeover notifications arrive
    with no text and no message id but with the agent and channel ids set.
    """
    if role is not None and role.lower() == TOOL_ROLE:
        return EventKind.IGNORED
    if text is None and message_id is None and agent_id is not None and channel_id is not None:
        return EventKind.TAKEOVER
    return EventKind.MESSAGE


def normalize_payload(payload: dict, default_channel: str = "WHATSAPP") -> NormalizedEvent:
    """
    Build the canonical event from a decoded JSON object.

    Args:
        payload: Decoded request body
        default_channel: Channel used when the payload carries none

    Returns:
        NormalizedEvent with kind set by classify()
    """
    text = first_present(payload, TEXT_KEYS)
    message_id = optional_str(payload.get("messageId"))
    role = optional_str(payload.get("role"))
    agent_id = first_present(payload, AGENT_KEYS)
    channel_id = optional_str(payload.get("channelId"))

    kind = classify(role, text, message_id, agent_id, channel_id)

    return NormalizedEvent(
        kind=kind,
        ignore_reason=f"role={TOOL_ROLE}" if kind is EventKind.IGNORED else None,
        context_id=optional_str(payload.get("contextId")),
        message_id=message_id,
        role=role,
        text=text,
        contact_phone=first_present(payload, PHONE_KEYS),
        contact_name=first_present(payload, NAME_KEYS),
        agent_id=agent_id,
        channel=optional_str(payload.get("channel")) or default_channel,
        channel_id=channel_id,
        images=optional_list(payload.get("images")),
        audios=optional_list(payload.get("audios")),
        sent_at=parse_sent_at(payload.get("date")),
        raw_payload=payload,
    )
