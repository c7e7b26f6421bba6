import json
import logging
from contextlib import asynccontextmanager
from typing import Callable, Union

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from chat_ingest.api import router as api_router
from chat_ingest.config import settings
from chat_ingest.errors import AuthenticationError, ChatIngestError, ValidationError, register_exception_handlers
from chat_ingest.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from chat_ingest.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from chat_ingest.normalizer import normalize_payload
from chat_ingest.schemas import (
    ErrorResponse,
    EventKind,
    HealthResponse,
    WebhookIgnoredResponse,
    WebhookMessageResponse,
    WebhookTakeoverResponse,
)
from chat_ingest.storage import (
    apply_takeover,
    bump_last_message_at,
    check_db_health,
    find_webhook_source,
    get_db,
    init_db,
    resolve_contact_and_deal,
    store_message,
    upsert_conversation,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

WEBHOOK_PREFIX = settings.WEBHOOK_PATH_PREFIX.rstrip("/")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": settings.CORS_ALLOW_ORIGIN,
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


class WebhookCORSMiddleware(BaseHTTPMiddleware):
    """Adds the provider-facing CORS headers to every webhook response, errors included."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        if request.url.path.startswith(WEBHOOK_PREFIX):
            response.headers.update(CORS_HEADERS)
        return response


app = FastAPI(
    title="Chat Ingest API",
    description="Multi-tenant ingestion of GPTMaker WhatsApp webhooks into CRM conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(WebhookCORSMiddleware)
app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)
app.include_router(api_router)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    webhook tables exist, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.options(WEBHOOK_PREFIX, include_in_schema=False)
@app.options(WEBHOOK_PREFIX + "/", include_in_schema=False)
@app.options(WEBHOOK_PREFIX + "/{token}", include_in_schema=False)
async def webhook_preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(WEBHOOK_PREFIX, include_in_schema=False)
@app.post(WEBHOOK_PREFIX + "/", include_in_schema=False)
async def webhook_without_token(request: Request):
    record_webhook_outcome("invalid_token")
    log_webhook_data(request, result="invalid_token")
    raise AuthenticationError("Token missing from URL")


@app.post(
    WEBHOOK_PREFIX + "/{token}",
    # The three outcome models overlap, so skip union re-validation on output
    response_model=None,
    responses={
        400: {"model": ErrorResponse, "description": "Malformed JSON or missing field"},
        404: {"model": ErrorResponse, "description": "Unknown or inactive token"},
        500: {"model": ErrorResponse, "description": "Data store failure"},
    },
)
async def webhook(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
) -> Union[WebhookIgnoredResponse, WebhookTakeoverResponse, WebhookMessageResponse]:
    """
    Ingest one GPTMaker webhook event for the tenant owning ``token``.

    - role=tool events are acknowledged and not stored
    - takeover notifications mark the conversation once (first wins)
    - chat messages are deduplicated by (conversation, messageId)
    """
    logger.info("Webhook request received")
    try:
        raw_body = await request.body()
        return await run_in_threadpool(_handle_webhook, token, raw_body, request, db)
    except ChatIngestError as e:
        outcome = {
            AuthenticationError: "invalid_token",
            ValidationError: "validation_error",
        }.get(type(e), "store_error")
        record_webhook_outcome(outcome)
        if not hasattr(request.state, "webhook_log_data"):
            log_webhook_data(request, result=outcome)
        else:
            request.state.webhook_log_data["result"] = outcome
        raise


def _handle_webhook(token: str, raw_body: bytes, request: Request, db: Session):
    source = find_webhook_source(db, token)
    if source is None or not source.active:
        raise AuthenticationError("Source not found or inactive")
    organization_id = source.organization_id

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid JSON", details=str(e))
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON", details="body must be a JSON object")

    event = normalize_payload(payload, default_channel=source.channel or settings.DEFAULT_CHANNEL)
    log_webhook_data(request, result="received", organization_id=organization_id)

    if event.kind is EventKind.IGNORED:
        logger.info(f"Ignoring event: {event.ignore_reason}")
        record_webhook_outcome("ignored")
        log_webhook_data(request, result="ignored", organization_id=organization_id)
        return WebhookIgnoredResponse(reason=event.ignore_reason)

    if not event.context_id:
        raise ValidationError("contextId missing")

    contact_id, deal_id = resolve_contact_and_deal(db, organization_id, event.contact_phone)
    conversation = upsert_conversation(db, organization_id, event, contact_id=contact_id, deal_id=deal_id)
    log_webhook_data(
        request,
        result="conversation_upserted",
        organization_id=organization_id,
        context_id=conversation.context_id,
    )

    if event.kind is EventKind.TAKEOVER:
        if conversation.human_takeover_at is None:
            apply_takeover(db, organization_id, conversation.id, event.sent_at)
        record_webhook_outcome("takeover")
        log_webhook_data(
            request,
            result="takeover",
            organization_id=organization_id,
            context_id=conversation.context_id,
        )
        return WebhookTakeoverResponse(conversation_id=conversation.id)

    if not event.role:
        raise ValidationError("role missing")

    is_duplicate = store_message(db, organization_id, conversation.id, event)
    bump_last_message_at(db, organization_id, conversation.id, event.sent_at)

    result = "duplicate" if is_duplicate else "created"
    record_webhook_outcome(result)
    log_webhook_data(
        request,
        result=result,
        organization_id=organization_id,
        context_id=conversation.context_id,
        message_id=event.message_id,
        dup=is_duplicate,
    )

    return WebhookMessageResponse(
        conversation_id=conversation.id,
        context_id=conversation.context_id,
        channel=event.channel,
        message_id=event.message_id,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
