"""
Admin/read API over ingested conversations.

All routes require X-Api-Key and are scoped to the tenant named by
X-Organization-Id.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from chat_ingest.config import settings
from chat_ingest.errors import AuthenticationError, ValidationError
from chat_ingest.schemas import (
    ConversationResponse,
    RotateTokenResponse,
    TakeoverRequest,
    ThreadMessageResponse,
    ThreadResponse,
    WebhookSourceResponse,
    WebhookSourceUpdate,
)
from chat_ingest.storage import (
    claim_conversation,
    get_db,
    get_thread,
    rotate_webhook_token,
    set_webhook_source_active,
)
from chat_ingest.utils import build_webhook_url, verify_api_key

logger = logging.getLogger(__name__)


def require_api_key(
    x_api_key: Annotated[Optional[str], Header(alias="X-Api-Key")] = None,
) -> None:
    if not x_api_key or not verify_api_key(x_api_key, settings.ADMIN_API_KEY):
        raise AuthenticationError("invalid api key", status_code=401)


def get_organization_id(
    x_organization_id: Annotated[Optional[str], Header(alias="X-Organization-Id")] = None,
) -> str:
    if not x_organization_id or not x_organization_id.strip():
        raise ValidationError("X-Organization-Id header required")
    return x_organization_id.strip()


router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

OrganizationId = Annotated[str, Depends(get_organization_id)]


@router.get("/conversations/thread", response_model=ThreadResponse)
def conversation_thread(
    organization_id: OrganizationId,
    contact_id: Annotated[Optional[str], Query(description="CRM contact id")] = None,
    db: Session = Depends(get_db),
) -> ThreadResponse:
    """
    Latest WhatsApp thread for a CRM contact, messages oldest first.

    When ingestion could not link the conversation to the contact, the
    contact's phone number is used to find it instead.
    """
    if not contact_id or not contact_id.strip():
        return ThreadResponse()

    conversation, messages = get_thread(db, organization_id, contact_id.strip())
    if conversation is None:
        return ThreadResponse()

    return ThreadResponse(
        conversation=ConversationResponse.model_validate(conversation),
        messages=[ThreadMessageResponse.model_validate(msg) for msg in messages],
    )


@router.post("/conversations/{conversation_id}/takeover", response_model=ConversationResponse)
def takeover_conversation(
    conversation_id: str,
    body: TakeoverRequest,
    organization_id: OrganizationId,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Claim a conversation for a human agent. The first claim is kept."""
    conversation = claim_conversation(db, organization_id, conversation_id, body.user_id)
    logger.info(f"Conversation {conversation_id} held by {conversation.human_takeover_by}")
    return ConversationResponse.model_validate(conversation)


@router.post("/webhook-sources/{source_id}/rotate-token", response_model=RotateTokenResponse)
def rotate_token(
    source_id: str,
    organization_id: OrganizationId,
    db: Session = Depends(get_db),
) -> RotateTokenResponse:
    """Issue a new webhook token; the old URL stops working immediately."""
    source = rotate_webhook_token(db, organization_id, source_id)
    return RotateTokenResponse(
        source=WebhookSourceResponse.model_validate(source),
        webhook_url=build_webhook_url(source.token),
    )


@router.patch("/webhook-sources/{source_id}", response_model=WebhookSourceResponse)
def update_webhook_source(
    source_id: str,
    body: WebhookSourceUpdate,
    organization_id: OrganizationId,
    db: Session = Depends(get_db),
) -> WebhookSourceResponse:
    source = set_webhook_source_active(db, organization_id, source_id, body.active)
    return WebhookSourceResponse.model_validate(source)
