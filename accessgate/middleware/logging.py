"""Request-logging middleware."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("accessgate.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "x-admin-token", "cookie", "stripe-signature"})
# Query parameters carrying credentials (``GET /drive?token=``).
_SENSITIVE_PARAMS: frozenset[str] = frozenset({"token"})
_MASK: str = "***"

CORRELATION_HEADER: str = "X-Correlation-ID"


def _safe_headers(request: Request) -> dict[str, str]:
    """Return the request headers with credential values masked."""
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


def _safe_query(request: Request) -> str | None:
    """Return the query string with credential parameters masked."""
    if not request.url.query:
        return None
    parts = []
    for key, value in request.query_params.multi_items():
        parts.append(f"{key}={_MASK if key in _SENSITIVE_PARAMS else value}")
    return "&".join(parts)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    The correlation id is taken from ``X-Correlation-ID`` or generated,
    stored on ``request.state.correlation_id`` and echoed in the response.
    The verified ``uid`` is included when the auth middleware set one.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": _safe_query(request),
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "origin": request.headers.get("origin"),
                "uid": getattr(request.state, "uid", None),
                "headers": _safe_headers(request),
            }
            extra = {"request": log_payload, "correlation_id": correlation_id}
            if status_code >= 500:
                logger.error("request completed", extra=extra)
            elif status_code >= 400:
                logger.warning("request completed", extra=extra)
            else:
                logger.info("request completed", extra=extra)
