"""FastAPI application entry-point for the access gate."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from accessgate import __version__
from accessgate.dependencies import (
    dispose_engine,
    dispose_services,
    get_settings,
    init_engine,
    init_services,
)
from accessgate.exceptions import AccessGateError
from accessgate.middleware.auth import AuthenticationMiddleware
from accessgate.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware
from accessgate.middleware.security_headers import SecurityHeadersMiddleware
from accessgate.routers import account, admin, billing, health, webhooks
from accessgate.state.database import create_tables

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to start without the Stripe secret and webhook secret.
    - Switch to JSON logging when ``STRUCTURED_LOGGING`` is set.
    - Initialise the async database engine and ensure the tables exist.
    - Build the provider adapters.

    On shutdown:
    - Dispose the database engine connection pool and the adapters.
    """
    settings = get_settings()
    settings.validate_for_startup()

    if settings.structured_logging:
        from accessgate.middleware.json_formatter import configure_structured_logging

        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    await create_tables(engine)
    logger.info(
        "Database ready (%s)",
        "local SQLite" if settings.database_url.startswith("sqlite") else "postgres",
    )

    init_services(settings)

    yield

    dispose_services()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Access Gate",
        description="Identity-verified Stripe payments that unlock a shared Google Drive folder.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs first) ----------------------------------

    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", CORRELATION_HEADER],
        expose_headers=[CORRELATION_HEADER],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router)
    app.include_router(billing.router)
    app.include_router(webhooks.router)
    app.include_router(account.router)
    app.include_router(admin.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(AccessGateError)
    async def access_gate_error_handler(request: Request, exc: AccessGateError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Invalid request body on %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request body", "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request", "code": "VALIDATION_ERROR"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error", "code": "STORE_ERROR"},
        )

    return app
