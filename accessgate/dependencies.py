"""FastAPI dependency injection for settings, database sessions, and providers.

Long-lived resources (engine, identity verifier, Stripe gateway, Drive
client, mailer) are created once by :func:`init_services` during startup
and handed to routes through the ``*Dep`` aliases below.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from accessgate.config import GateSettings, load_settings
from accessgate.exceptions import AuthenticationError
from accessgate.services.access_grant import AccessGrantWorkflow
from accessgate.services.identity import FirebaseTokenVerifier, Identity
from accessgate.services.mailer import ConfirmationMailer
from accessgate.services.payment_gateway import StripeGateway
from accessgate.services.storage_grant import DriveGrantService
from accessgate.state.database import get_engine
from accessgate.state.repository import UserRecordRepository

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: GateSettings | None = None


def get_settings() -> GateSettings:
    """Return the cached :class:`GateSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[GateSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: GateSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
SessionDep = Annotated[AsyncSession, Depends(get_db_session)]


async def get_repository(session: SessionDep) -> UserRecordRepository:
    return UserRecordRepository(session)


RepositoryDep = Annotated[UserRecordRepository, Depends(get_repository)]

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

_identity_verifier: FirebaseTokenVerifier | None = None


def set_identity_verifier(verifier: FirebaseTokenVerifier | None) -> None:
    """Install the verifier used by the authentication middleware."""
    global _identity_verifier  # noqa: PLW0603
    _identity_verifier = verifier


def get_identity_verifier() -> FirebaseTokenVerifier:
    """Return the identity verifier, building it from settings on first use.

    Raises
    ------
    ConfigurationError
        If ``FIREBASE_PROJECT_ID`` is not configured.
    """
    global _identity_verifier  # noqa: PLW0603
    if _identity_verifier is None:
        _identity_verifier = FirebaseTokenVerifier(get_settings().firebase_project_id)
    return _identity_verifier


def get_current_identity(request: Request) -> Identity:
    """Return the identity verified by the authentication middleware."""
    uid = getattr(request.state, "uid", None)
    if not uid:
        raise AuthenticationError("Authentication required")
    return Identity(
        uid=uid,
        email=getattr(request.state, "email", None),
        name=getattr(request.state, "name", None),
    )


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]

# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

_gateway: StripeGateway | None = None
_storage: DriveGrantService | None = None
_mailer: ConfirmationMailer | None = None


def init_services(settings: GateSettings) -> None:
    """Create the provider adapters once for the process."""
    global _gateway, _storage, _mailer  # noqa: PLW0603
    _gateway = StripeGateway(settings)
    _storage = DriveGrantService(settings)
    _mailer = ConfirmationMailer(settings)
    logger.info(
        "Providers initialised (stripe_mode=%s, drive_folder=%s, mail=%s)",
        settings.stripe_mode.value,
        "configured" if settings.resolved_drive_folder_id else "missing",
        "enabled" if settings.mail_enabled else "disabled",
    )


def dispose_services() -> None:
    global _gateway, _storage, _mailer  # noqa: PLW0603
    _gateway = None
    _storage = None
    _mailer = None
    set_identity_verifier(None)


def get_gateway() -> StripeGateway:
    if _gateway is None:
        raise RuntimeError("Providers have not been initialised. Ensure init_services() is called during startup.")
    return _gateway


def get_storage_grant() -> DriveGrantService:
    if _storage is None:
        raise RuntimeError("Providers have not been initialised. Ensure init_services() is called during startup.")
    return _storage


def get_mailer() -> ConfirmationMailer | None:
    return _mailer


GatewayDep = Annotated[StripeGateway, Depends(get_gateway)]
StorageGrantDep = Annotated[DriveGrantService, Depends(get_storage_grant)]
MailerDep = Annotated[ConfirmationMailer | None, Depends(get_mailer)]


def get_access_grant_workflow(
    session_factory: SessionFactoryDep,
    storage: StorageGrantDep,
    mailer: MailerDep,
) -> AccessGrantWorkflow:
    return AccessGrantWorkflow(session_factory, storage, mailer)


WorkflowDep = Annotated[AccessGrantWorkflow, Depends(get_access_grant_workflow)]
