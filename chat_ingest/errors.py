"""
Error taxonomy and the FastAPI handlers that turn it into JSON responses.

Every error body has the shape {"error": str, "details": optional}.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ChatIngestError(Exception):
    """Base class for errors answered at the request boundary."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(ChatIngestError):
    # 404 rather than 403 so an unknown token looks like an unknown route
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(ChatIngestError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ChatIngestError):
    status_code = status.HTTP_404_NOT_FOUND


class StoreError(ChatIngestError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(message: str, details: Any = None) -> dict:
    body = {"error": message}
    if details is not None:
        body["details"] = details
    return body


async def chat_ingest_error_handler(request: Request, exc: ChatIngestError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.message}: {exc.details}")
    else:
        logger.warning(exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Request validation failed: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Invalid request", jsonable_errors(exc)),
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances which are not JSON serializable
    return [
        {key: value for key, value in err.items() if key in ("loc", "msg", "type")}
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatIngestError, chat_ingest_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
