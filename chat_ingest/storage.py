import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import case, create_engine, func, inspect, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chat_ingest.config import settings
from chat_ingest.errors import NotFoundError, StoreError
from chat_ingest.schemas import NormalizedEvent
from chat_ingest.utils import generate_webhook_token, utc_now_iso

logger = logging.getLogger(__name__)

# SQLite connections are opened by get_db and then used on other threadpool workers by the routes
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    pool_pre_ping=True,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("gptmaker_webhook_sources", "gptmaker_conversations", "gptmaker_messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        import chat_ingest.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _insert(db: Session, table):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


def _fail(db: Session, message: str, exc: SQLAlchemyError) -> StoreError:
    db.rollback()
    logger.error(f"{message}: {exc}")
    return StoreError(message, details=str(getattr(exc, "orig", None) or exc))


# =============================================================================
# Webhook Source Repository Functions
# =============================================================================

def find_webhook_source(db: Session, token: str):
    """
    Look up the webhook source owning a URL token.

    Returns:
        WebhookSource if found (active or not), None otherwise

    Raises:
        StoreError: the lookup itself failed
    """
    from chat_ingest.models import WebhookSource

    try:
        return db.execute(
            select(WebhookSource).where(WebhookSource.token == token)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to look up webhook source", e)


def get_webhook_source(db: Session, organization_id: str, source_id: str):
    from chat_ingest.models import WebhookSource

    try:
        source = db.execute(
            select(WebhookSource).where(
                WebhookSource.id == source_id,
                WebhookSource.organization_id == organization_id,
            )
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to load webhook source", e)
    if source is None:
        raise NotFoundError("Webhook source not found")
    return source


def rotate_webhook_token(db: Session, organization_id: str, source_id: str):
    """
    Replace a source's token. The previous token stops resolving at commit.
    """
    source = get_webhook_source(db, organization_id, source_id)
    try:
        source.token = generate_webhook_token()
        source.updated_at = utc_now_iso()
        db.commit()
        db.refresh(source)
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to rotate webhook token", e)
    logger.info(f"Rotated webhook token for source {source.id}")
    return source


def set_webhook_source_active(db: Session, organization_id: str, source_id: str, active: bool):
    source = get_webhook_source(db, organization_id, source_id)
    try:
        source.active = active
        source.updated_at = utc_now_iso()
        db.commit()
        db.refresh(source)
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to update webhook source", e)
    logger.info(f"Webhook source {source.id} active={active}")
    return source


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def resolve_contact_and_deal(
    db: Session,
    organization_id: str,
    phone: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    """
    Best-effort link of a phone number to a contact and its latest deal.

    Lookup failures are logged and treated as "not found".

    Returns:
        Tuple of (contact_id, deal_id); either may be None
    """
    from chat_ingest.models import Contact, Deal

    if not phone:
        return None, None

    try:
        contact_id = db.execute(
            select(Contact.id)
            .where(Contact.organization_id == organization_id, Contact.phone == phone)
            .order_by(Contact.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if contact_id is None:
            return None, None

        deal_id = db.execute(
            select(Deal.id)
            .where(Deal.organization_id == organization_id, Deal.contact_id == contact_id)
            .order_by(Deal.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Contact resolution failed, continuing unlinked: {e}")
        return None, None

    logger.debug(f"Resolved contact={contact_id} deal={deal_id}")
    return contact_id, deal_id


def _newest(column, incoming):
    """last_message_at value under the configured policy."""
    if settings.LAST_MESSAGE_AT_POLICY == "overwrite":
        return incoming
    return case(
        (column.is_(None), incoming),
        (incoming > column, incoming),
        else_=column,
    )


def upsert_conversation(
    db: Session,
    organization_id: str,
    event: NormalizedEvent,
    contact_id: Optional[str] = None,
    deal_id: Optional[str] = None,
) -> Row:
    """
    Insert or update the conversation keyed by (organization_id, context_id).

    Known channel sub-id, phone and name are only replaced by non-null values.
    The contact/deal link is only replaced when this event resolved a contact.

    Returns:
        Row with id, context_id, human_takeover_at
    """
    from chat_ingest.models import Conversation

    now = utc_now_iso()
    stmt = _insert(db, Conversation).values(
        organization_id=organization_id,
        context_id=event.context_id,
        channel=event.channel,
        channel_id=event.channel_id,
        contact_phone=event.contact_phone,
        contact_name=event.contact_name,
        contact_id=contact_id,
        deal_id=deal_id,
        last_message_at=event.sent_at,
        updated_at=now,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=[Conversation.organization_id, Conversation.context_id],
        set_={
            "channel": excluded.channel,
            "channel_id": func.coalesce(excluded.channel_id, Conversation.channel_id),
            "contact_phone": func.coalesce(excluded.contact_phone, Conversation.contact_phone),
            "contact_name": func.coalesce(excluded.contact_name, Conversation.contact_name),
            "contact_id": func.coalesce(excluded.contact_id, Conversation.contact_id),
            "deal_id": case(
                (excluded.contact_id.is_not(None), excluded.deal_id),
                else_=Conversation.deal_id,
            ),
            "last_message_at": _newest(Conversation.last_message_at, excluded.last_message_at),
            "updated_at": excluded.updated_at,
        },
    ).returning(Conversation.id, Conversation.context_id, Conversation.human_takeover_at)

    try:
        row = db.execute(stmt).one()
        db.commit()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to upsert conversation", e)

    logger.info(f"Conversation upserted: id={row.id}, context_id={row.context_id}")
    return row


def apply_takeover(
    db: Session,
    organization_id: str,
    conversation_id: str,
    sent_at: str,
) -> bool:
    """
    Mark a provider-signalled human takeover. First takeover wins.

    Returns:
        True if this call set the takeover timestamp, False if it was already set
    """
    from chat_ingest.models import Conversation

    now = utc_now_iso()
    stmt = (
        update(Conversation)
        .where(
            Conversation.id == conversation_id,
            Conversation.organization_id == organization_id,
            Conversation.human_takeover_at.is_(None),
        )
        .values(
            human_takeover_at=now,
            last_message_at=_newest(Conversation.last_message_at, sent_at),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to mark takeover", e)

    applied = result.rowcount > 0
    logger.info(f"Takeover for conversation {conversation_id}: {'applied' if applied else 'already set'}")
    return applied


def bump_last_message_at(db: Session, organization_id: str, conversation_id: str, sent_at: str) -> None:
    """Advance the conversation's last activity marker to an event's timestamp."""
    from chat_ingest.models import Conversation

    stmt = (
        update(Conversation)
        .where(
            Conversation.id == conversation_id,
            Conversation.organization_id == organization_id,
        )
        .values(
            last_message_at=_newest(Conversation.last_message_at, sent_at),
            updated_at=utc_now_iso(),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to update conversation timestamp", e)


def claim_conversation(db: Session, organization_id: str, conversation_id: str, user_id: str):
    """
    Manual takeover by a CRM user.

    The takeover timestamp and the claiming user are each set only once;
    later claims return the existing state unchanged.
    """
    from chat_ingest.models import Conversation

    now = utc_now_iso()
    stmt = (
        update(Conversation)
        .where(
            Conversation.id == conversation_id,
            Conversation.organization_id == organization_id,
            Conversation.human_takeover_by.is_(None),
        )
        .values(
            human_takeover_at=func.coalesce(Conversation.human_takeover_at, now),
            human_takeover_by=user_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        db.execute(stmt)
        db.commit()
        conversation = db.execute(
            select(Conversation).where(
                Conversation.id == conversation_id,
                Conversation.organization_id == organization_id,
            )
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to claim conversation", e)

    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


def get_thread(db: Session, organization_id: str, contact_id: str) -> Tuple[Optional[object], list]:
    """
    Latest conversation for a contact plus its messages in chronological order.

    Falls back to matching the contact's phone when ingestion could not link
    the conversation to the contact.

    Returns:
        Tuple of (Conversation or None, list of Message)
    """
    from chat_ingest.models import Contact, Conversation, Message

    latest_first = (Conversation.last_message_at.desc(), Conversation.created_at.desc())
    try:
        conversation = db.execute(
            select(Conversation)
            .where(
                Conversation.organization_id == organization_id,
                Conversation.contact_id == contact_id,
            )
            .order_by(*latest_first)
            .limit(1)
        ).scalar_one_or_none()

        if conversation is None:
            phone = db.execute(
                select(Contact.phone).where(
                    Contact.organization_id == organization_id,
                    Contact.id == contact_id,
                )
            ).scalar_one_or_none()
            if phone:
                conversation = db.execute(
                    select(Conversation)
                    .where(
                        Conversation.organization_id == organization_id,
                        Conversation.contact_phone == phone,
                    )
                    .order_by(*latest_first)
                    .limit(1)
                ).scalar_one_or_none()

        if conversation is None:
            return None, []

        messages = db.execute(
            select(Message)
            .where(
                Message.organization_id == organization_id,
                Message.conversation_id == conversation.id,
            )
            .order_by(Message.sent_at.asc(), Message.created_at.asc())
        ).scalars().all()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to load thread", e)

    logger.debug(f"Thread for contact {contact_id}: {len(messages)} messages")
    return conversation, list(messages)


# =============================================================================
# Message Repository Functions
# =============================================================================

def store_message(db: Session, organization_id: str, conversation_id: str, event: NormalizedEvent) -> bool:
    """
    Store a chat message (idempotent when the provider sent a message id).

    Args:
        db: Database session
        organization_id: Owning tenant
        conversation_id: Conversation the message belongs to
        event: Normalized event with role set

    Returns:
        True if the message was a duplicate of an already stored one

    Raises:
        StoreError: the insert failed
    """
    from chat_ingest.models import Message

    stmt = _insert(db, Message).values(
        organization_id=organization_id,
        conversation_id=conversation_id,
        message_id=event.message_id,
        role=event.role,
        text=event.text,
        images=event.images,
        audios=event.audios,
        raw_payload=event.raw_payload,
        sent_at=event.sent_at,
    )
    if event.message_id:
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[Message.conversation_id, Message.message_id]
        )
    stmt = stmt.returning(Message.id)

    try:
        inserted_id = db.execute(stmt).scalar_one_or_none()
        db.commit()
    except SQLAlchemyError as e:
        raise _fail(db, "Failed to store message", e)

    is_duplicate = inserted_id is None
    if is_duplicate:
        logger.info(f"Duplicate message detected: {event.message_id}")
    else:
        logger.info(f"Message stored: id={inserted_id}, provider_id={event.message_id}")
    return is_duplicate
