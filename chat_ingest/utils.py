"""
Utility functions for the chat ingest service.
"""

import hmac
import logging
import secrets
from datetime import datetime, timezone

from chat_ingest.config import settings

logger = logging.getLogger(__name__)


def verify_api_key(provided: str, expected: str) -> bool:
    """
    Compare an X-Api-Key header against ADMIN_API_KEY.

    Args:
        provided: Key sent by the caller
        expected: Configured ADMIN_API_KEY

    Returns:
        True if the keys match, False otherwise
    """
    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
    logger.debug(f"API key verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def generate_webhook_token() -> str:
    """Return a fresh URL-safe secret for a webhook source."""
    return secrets.token_urlsafe(24)


def format_timestamp(value: datetime) -> str:
    """
    Format a datetime as a fixed-width ISO-8601 UTC string (millisecond precision).

    Naive datetimes are treated as UTC. The fixed width keeps lexical order
    equal to chronological order, which the store relies on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f".{value.microsecond // 1000:03d}Z"
    )


def utc_now_iso() -> str:
    """Current server time in the stored timestamp format."""
    return format_timestamp(datetime.now(timezone.utc))


def build_webhook_url(token: str) -> str:
    base = settings.PUBLIC_BASE_URL.rstrip("/")
    return f"{base}{settings.WEBHOOK_PATH_PREFIX}/{token}"


def redact_path(path: str) -> str:
    """Strip the secret token from webhook paths before logging or labeling metrics."""
    prefix = settings.WEBHOOK_PATH_PREFIX.rstrip("/")
    if path.startswith(prefix + "/") and len(path) > len(prefix) + 1:
        return prefix + "/{token}"
    return path
