"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Error taxonomy:
    ValidationError          400  bad enum / malformed input, never retried
    RateLimitedError         429  alert double-fire inside the cool-down window
    AuthenticationRequiredError 401  no caller identity on the request
    AuthorizationDeniedError 403  caller may not act on this row
    NotFoundError            404  resource truly absent, surfaced not retried
    TransientError           503  store / channel connectivity, retried upstream

Usage:
    from backend.app.core.errors import RateLimitedError, register_error_handlers

    raise NotFoundError("Alert", alert_id=alert_id)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class PanicAlertError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(PanicAlertError):
    """Input validation failed (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class NotFoundError(PanicAlertError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class AuthenticationRequiredError(PanicAlertError):
    """No caller identity on the request (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHENTICATED",
        )


class AuthorizationDeniedError(PanicAlertError):
    """Caller is not allowed to perform this operation (403)."""

    def __init__(self, message: str = "Access denied", **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="AUTHORIZATION_DENIED",
            details=details,
        )


class RateLimitedError(PanicAlertError):
    """A new alert was requested inside the cool-down window (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please wait 30 seconds.",
        retry_after: int = 30,
    ):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMITED",
            details={"retry_after_seconds": retry_after},
        )
        self.retry_after = retry_after


class TransientError(PanicAlertError):
    """Store or channel call failed on connectivity (503)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"'{operation}' temporarily unavailable: {message}".rstrip(": "),
            status_code=503,
            error_code="TRANSIENT_ERROR",
            details={"operation": operation, **details},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(PanicAlertError)
    async def handle_app_error(request: Request, exc: PanicAlertError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        response = _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )
        if isinstance(exc, RateLimitedError):
            response.headers["Retry-After"] = str(exc.retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("Malformed request: %s", exc.errors())
        return _build_error_response(
            400, "VALIDATION_ERROR", "Malformed request",
            {"errors": jsonable_encoder(exc.errors())}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", "Internal server error", details, request,
        )
