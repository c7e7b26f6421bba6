"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Timestamps are stored as fixed-width ISO-8601 UTC strings
(see utils.format_timestamp) so ordering comparisons work on every backend.
"""

import uuid

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from chat_ingest.storage import Base
from chat_ingest.utils import utc_now_iso

JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


class Organization(Base):
    """Tenant. Every other row is scoped by it."""
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    created_at = Column(String, nullable=False, default=utc_now_iso)


class WebhookSource(Base):
    """
    Maps an opaque URL token to exactly one organization.

    Table: gptmaker_webhook_sources
    Unique: token
    """
    __tablename__ = "gptmaker_webhook_sources"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String, nullable=False, default="GPTMaker WhatsApp")
    token = Column(String, nullable=False, unique=True)
    channel = Column(String, nullable=False, default="WHATSAPP")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False, default=utc_now_iso)
    updated_at = Column(String, nullable=False, default=utc_now_iso)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(String, nullable=False, default=utc_now_iso)

    __table_args__ = (Index("contacts_org_phone_idx", "organization_id", "phone"),)


class Deal(Base):
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    contact_id = Column(String(36), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=True)
    created_at = Column(String, nullable=False, default=utc_now_iso)

    __table_args__ = (Index("deals_org_contact_idx", "organization_id", "contact_id", "created_at"),)


class Conversation(Base):
    """
    One chat thread with an end customer.

    Table: gptmaker_conversations
    Unique: (organization_id, context_id), the upsert key
    """
    __tablename__ = "gptmaker_conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    context_id = Column(String, nullable=False)
    channel = Column(String, nullable=False, default="WHATSAPP")
    channel_id = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    contact_id = Column(String(36), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True)
    deal_id = Column(String(36), ForeignKey("deals.id", ondelete="SET NULL"), nullable=True)
    human_takeover_at = Column(String, nullable=True)
    human_takeover_by = Column(String(36), nullable=True)
    last_message_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False, default=utc_now_iso)
    updated_at = Column(String, nullable=False, default=utc_now_iso)

    __table_args__ = (
        UniqueConstraint("organization_id", "context_id", name="gptmaker_conversations_org_context_unique"),
        Index("gptmaker_conversations_contact_idx", "organization_id", "contact_id", "last_message_at"),
        Index("gptmaker_conversations_phone_idx", "organization_id", "contact_phone"),
    )


class Message(Base):
    """
    One provider chat event. Written once, never updated.

    Table: gptmaker_messages
    Unique: (conversation_id, message_id); NULL provider ids never conflict
    """
    __tablename__ = "gptmaker_messages"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id = Column(
        String(36), ForeignKey("gptmaker_conversations.id", ondelete="CASCADE"), nullable=False
    )
    message_id = Column(String, nullable=True)
    role = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    images = Column(JSONType, nullable=False, default=list)
    audios = Column(JSONType, nullable=False, default=list)
    raw_payload = Column(JSONType, nullable=False, default=dict)
    sent_at = Column(String, nullable=False)
    created_at = Column(String, nullable=False, default=utc_now_iso)

    __table_args__ = (
        UniqueConstraint("conversation_id", "message_id", name="gptmaker_messages_dedupe"),
        Index("gptmaker_messages_thread_idx", "conversation_id", "sent_at"),
    )
