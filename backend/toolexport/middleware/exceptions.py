"""
Exception Handlers
==================

Render service errors, HTTP errors and unexpected failures as
``{code, message, timestamp, requestId, details}`` bodies.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from toolexport.core.errors import ExportServiceError, RateLimitedError
from toolexport.middleware.request_id import get_request_id
from toolexport.schemas.base import ErrorResponse

logger = logging.getLogger(__name__)

_HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    410: "GONE",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "RATE_LIMITED",
}


def _create_error_response(
    request: Request,
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Create a standardized error response."""
    error = ErrorResponse(
        code=code,
        message=message,
        timestamp=datetime.now(timezone.utc),
        request_id=get_request_id(request),
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=error.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


async def export_error_handler(request: Request, exc: ExportServiceError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Export API error: %s - %s",
        exc.code,
        exc.message,
        extra={
            "request_id": get_request_id(request),
            "path": request.url.path,
            "method": request.method,
            "error_code": exc.code,
        },
    )

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}

    return _create_error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _create_error_response(
        request,
        code=_HTTP_STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR"),
        message=message,
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        "Validation error: %s errors",
        len(errors),
        extra={"request_id": get_request_id(request), "path": request.url.path},
    )
    return _create_error_response(
        request,
        code="VALIDATION_ERROR",
        message="Request validation failed",
        status_code=422,
        details={"errors": errors},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the full exception; the client only sees a generic message."""
    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={
            "request_id": get_request_id(request),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return _create_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An unexpected error occurred",
        status_code=500,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ExportServiceError, export_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
