"""Authentication middleware that verifies Firebase ID tokens.

Extracts ``Authorization: Bearer <token>`` from every request, verifies it
with the configured :class:`~accessgate.services.identity.FirebaseTokenVerifier`,
and populates ``request.state`` with ``uid``, ``email`` and ``name``.

``GET /drive`` is opened by a plain browser navigation, so it also accepts
the token as a ``?token=`` query parameter.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.  Admin routes
are also skipped here; they are guarded by the ``X-Admin-Token`` dependency
in :mod:`accessgate.routers.admin`.
"""

from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from accessgate.exceptions import AccessGateError, AuthenticationError

logger = logging.getLogger(__name__)

# Paths that do not require an identity token.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/health",
        "/config",
        "/stripe/webhook",
        "/webhook/stripe",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }
)

_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
    "/admin/",
)

# Paths that may carry the token as a query parameter.
_QUERY_TOKEN_PATHS: frozenset[str] = frozenset({"/drive"})


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def _error_response(exc: AccessGateError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def extract_token(request: Request) -> str:
    """Return the bearer token for *request*.

    Raises
    ------
    AuthenticationError
        If no token is present or the header does not use the Bearer scheme.
    """
    auth_header = request.headers.get("authorization")
    if auth_header:
        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise AuthenticationError("Authorization header must use Bearer scheme")
        return parts[1].strip()

    if request.url.path in _QUERY_TOKEN_PATHS:
        token = request.query_params.get("token")
        if token:
            return token

    raise AuthenticationError("Missing Authorization header")


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces identity-token authentication.

    On each request the middleware:

    1. Lets CORS preflights and public paths through untouched.
    2. Extracts the bearer token (header, or query parameter on ``/drive``).
    3. Verifies it off the event loop, since a JWKS refresh blocks.
    4. Stores ``uid``, ``email`` and ``name`` on ``request.state``.
    5. Returns a JSON error response on failure.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        from accessgate.dependencies import get_identity_verifier

        try:
            token = extract_token(request)
            verifier = get_identity_verifier()
            identity = await run_in_threadpool(verifier.verify, token)
        except AccessGateError as exc:
            if exc.status_code >= 500:
                logger.error("Identity verification unavailable: %s", exc.message)
            return _error_response(exc)

        request.state.uid = identity.uid
        request.state.email = identity.email
        request.state.name = identity.name
        return await call_next(request)
