"""
Request middleware — correlation IDs, timing, caller and alert context.

Provides:
    • X-Request-ID header injection (correlation ID)
    • Request/response timing (X-Process-Time header)
    • One structured log entry per request
    • Request context for downstream log enrichment: the caller
      (X-User-Id) and, for alert routes, the alert id from the path
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_ALERT_PATH = re.compile(r"^/api/v1/alerts/([0-9a-fA-F-]{36})(?:/|$)")
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon")
_PROBE_PATHS = ("/health/live", "/health/ready")


def _status_level(status_code: int) -> int:
    # 429 is the expected answer to a double-tap on the panic button
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400 and status_code != 429:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every HTTP request with timing, inject correlation ID.

    Request log entry includes:
        - method, path, status_code
        - duration_ms
        - client IP, caller user id, alert id (alert routes)
        - request_id (also returned in X-Request-ID response header)

    WebSocket traffic does not pass through here; the live route binds its
    own context.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        match = _ALERT_PATH.match(path)

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            user_id=request.headers.get("X-User-Id"),
            alert_id=match.group(1) if match else None,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500, "endpoint": path},
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if path.startswith(_QUIET_PREFIXES):
            pass
        elif path in _PROBE_PATHS and response.status_code < 400:
            logger.debug("%s %s → %d", request.method, path, response.status_code)
        else:
            logger.log(
                _status_level(response.status_code),
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code,
                duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()
        return response
