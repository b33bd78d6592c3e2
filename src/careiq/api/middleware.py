"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert calendar sync exceptions
into standardised ``{"error": {"code": "...", "message": "..."}}`` JSON
responses.

Status code mapping:
- ``IntegrationNotFound`` / ``EventNotFound`` → 404 Not Found
- ``SyncAlreadyInProgress`` → 409 ``sync_in_progress``
- ``IntegrationInactive`` → 409 ``integration_inactive``
- ``InvalidOAuthState`` / ``ValueError`` → 400 Bad Request
- ``ProviderError`` → 502 Bad Gateway
- ``ProviderNotConfigured`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from careiq.api.models import ErrorDetail, ErrorResponse
from careiq.calendar.errors import (
    EventNotFound,
    IntegrationInactive,
    IntegrationNotFound,
    InvalidOAuthState,
    ProviderError,
    ProviderNotConfigured,
    SyncAlreadyInProgress,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_not_found(
    request: Request,
    exc: IntegrationNotFound | EventNotFound,
) -> JSONResponse:
    logger.info("Not found on %s %s: %s", request.method, request.url.path, exc)
    return error_response(404, "not_found", str(exc))


async def _handle_sync_in_progress(request: Request, exc: SyncAlreadyInProgress) -> JSONResponse:
    logger.info("Rejected sync for integration %s: run in progress", exc.integration_id)
    return error_response(409, "sync_in_progress", str(exc))


async def _handle_integration_inactive(
    request: Request, exc: IntegrationInactive
) -> JSONResponse:
    return error_response(409, "integration_inactive", str(exc))


async def _handle_invalid_oauth_state(request: Request, exc: InvalidOAuthState) -> JSONResponse:
    logger.warning("OAuth request rejected: %s", exc)
    return error_response(400, "invalid_state", str(exc))


async def _handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    """Return 502 when a calendar provider refuses a call made on the caller's behalf."""
    message = sanitize_error_message(str(exc))
    logger.warning(
        "Calendar provider error on %s %s: %s", request.method, request.url.path, message
    )
    return error_response(502, "provider_error", message)


async def _handle_provider_not_configured(
    request: Request, exc: ProviderNotConfigured
) -> JSONResponse:
    logger.warning("Provider not configured: %s", exc.provider)
    return error_response(503, "provider_not_configured", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return error_response(400, "validation_error", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still use the standard error envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return error_response(500, "internal_error", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    handlers = (
        (IntegrationNotFound, _handle_not_found),
        (EventNotFound, _handle_not_found),
        (SyncAlreadyInProgress, _handle_sync_in_progress),
        (IntegrationInactive, _handle_integration_inactive),
        (InvalidOAuthState, _handle_invalid_oauth_state),
        (ProviderError, _handle_provider_error),
        (ProviderNotConfigured, _handle_provider_not_configured),
        (ValueError, _handle_value_error),
    )
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
