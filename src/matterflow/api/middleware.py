"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``ApiError`` → its own status and code (401, 404, 429, ...)
- ``RecordValidationError`` / ``ValueError`` / request validation → 400 Bad Request
- ``AuthenticationError`` → 502 Bad Gateway (provider credential rejected)
- ``TransientSyncError`` / ``CursorInvalidatedError`` → 503 Service Unavailable
- ``RemoteNotFoundError`` → 404 Not Found
- ``ConfigError`` → 500 with ``CONFIG_ERROR``
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from matterflow.api.models import ErrorDetail, ErrorResponse
from matterflow.config import ConfigError
from matterflow.core.errors import SyncError, SyncErrorKind, sanitize_error_message

logger = logging.getLogger(__name__)

_SYNC_ERROR_RESPONSES: dict[SyncErrorKind, tuple[int, str]] = {
    SyncErrorKind.VALIDATION: (400, "VALIDATION_ERROR"),
    SyncErrorKind.AUTHENTICATION: (502, "PROVIDER_AUTH_ERROR"),
    SyncErrorKind.TRANSIENT: (503, "PROVIDER_UNAVAILABLE"),
    SyncErrorKind.INVALIDATED: (503, "PROVIDER_UNAVAILABLE"),
    SyncErrorKind.NOT_FOUND: (404, "NOT_FOUND"),
}


class ApiError(Exception):
    """An HTTP-level failure with an explicit status and error code."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        headers: dict[str, str] | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = headers
        self.details = details


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    details: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def _handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return _error_response(
        exc.status_code, exc.code, exc.message, details=exc.details, headers=exc.headers
    )


async def _handle_sync_error(request: Request, exc: SyncError) -> JSONResponse:
    """Map a classified sync failure onto its HTTP status."""
    status_code, code = _SYNC_ERROR_RESPONSES.get(exc.kind, (503, "PROVIDER_UNAVAILABLE"))
    message = sanitize_error_message(exc)
    if status_code >= 500:
        logger.warning("%s on %s %s: %s", code, request.method, request.url.path, message)
    else:
        logger.info("%s on %s %s: %s", code, request.method, request.url.path, message)
    details: dict[str, object] = {"kind": str(exc.kind)}
    if exc.status_code is not None:
        details["provider_status"] = exc.status_code
    return _error_response(status_code, code, message, details=details)


async def _handle_config_error(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("Configuration error on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(500, "CONFIG_ERROR", str(exc))


async def _handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted(
        {".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()}
    )
    logger.info("Request validation failed for %s: %s", request.url.path, fields)
    return _error_response(
        400, "VALIDATION_ERROR", "Request validation failed", details={"fields": fields}
    )


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
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
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(ApiError, _handle_api_error)  # type: ignore[arg-type]
    app.add_exception_handler(SyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ConfigError, _handle_config_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
