"""
Pydantic schemas for request/response validation.

This module contains:
- The canonical event produced by the payload normalizer
- Response models for the webhook and the /api routes
- Request bodies for the /api routes
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Normalized Provider Event
# =============================================================================

class EventKind(str, Enum):
    """Classification of one inbound provider event."""
    MESSAGE = "message"
    TAKEOVER = "takeover"
    IGNORED = "ignored"


class NormalizedEvent(BaseModel):
    """
    Canonical shape of a provider webhook payload.

    Every optional field is either a trimmed non-empty string or None;
    see normalizer.normalize_payload for the field name mapping.
    """
    kind: EventKind
    ignore_reason: Optional[str] = None
    context_id: Optional[str] = None
    message_id: Optional[str] = None
    role: Optional[str] = None
    text: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_name: Optional[str] = None
    agent_id: Optional[str] = None
    channel: str
    channel_id: Optional[str] = None
    images: list[Any] = Field(default_factory=list)
    audios: list[Any] = Field(default_factory=list)
    sent_at: str = Field(..., description="ISO-8601 UTC timestamp of the event")
    raw_payload: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Webhook Responses
# =============================================================================

class WebhookIgnoredResponse(BaseModel):
    ok: bool = True
    ignored: bool = True
    reason: str


class WebhookTakeoverResponse(BaseModel):
    ok: bool = True
    type: str = Field(default=EventKind.TAKEOVER.value)
    conversation_id: str


class WebhookMessageResponse(BaseModel):
    """Response for a stored (or already stored) chat message."""
    ok: bool = True
    type: str = Field(default=EventKind.MESSAGE.value)
    conversation_id: str
    context_id: str
    channel: str
    message_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")
    details: Optional[Any] = Field(None, description="Underlying error detail")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Conversation API
# =============================================================================

class ConversationResponse(BaseModel):
    id: str
    context_id: str
    channel: str
    channel_id: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_name: Optional[str] = None
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None
    human_takeover_at: Optional[str] = None
    human_takeover_by: Optional[str] = None
    last_message_at: Optional[str] = None

    model_config = {"from_attributes": True}


class ThreadMessageResponse(BaseModel):
    id: str
    message_id: Optional[str] = None
    role: str
    text: Optional[str] = None
    images: list[Any] = Field(default_factory=list)
    audios: list[Any] = Field(default_factory=list)
    sent_at: str

    model_config = {"from_attributes": True}


class ThreadResponse(BaseModel):
    """
    Response model for GET /api/conversations/thread.

    conversation is null (and messages empty) when the contact has no thread.
    """
    conversation: Optional[ConversationResponse] = None
    messages: list[ThreadMessageResponse] = Field(default_factory=list)


class TakeoverRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="CRM user claiming the conversation")


class WebhookSourceResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    channel: str
    active: bool
    token: str

    model_config = {"from_attributes": True}


class WebhookSourceUpdate(BaseModel):
    active: bool


class RotateTokenResponse(BaseModel):
    source: WebhookSourceResponse
    webhook_url: str
