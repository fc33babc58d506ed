"""Security response headers."""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

# JSON API with one redirect endpoint: nothing here should ever be framed
# or execute script.
_DEFAULT_CSP = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

# Interactive docs load their own assets and need a looser policy.
_DOCS_PREFIXES: tuple[str, ...] = ("/docs", "/redoc")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds nosniff, framing, referrer and CSP headers to every response."""

    def __init__(self, app: ASGIApp, *, csp_policy: str | None = None) -> None:
        super().__init__(app)
        self._csp = csp_policy or _DEFAULT_CSP

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if not request.url.path.startswith(_DOCS_PREFIXES):
            response.headers["Content-Security-Policy"] = self._csp
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response
