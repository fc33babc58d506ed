"""Unauthenticated endpoints: liveness probe and public client configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from accessgate import __version__
from accessgate.dependencies import SessionDep, SettingsDep
from accessgate.schemas import HealthResponse, PublicConfigResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(session: SessionDep) -> HealthResponse:
    """Always 200 so load-balancers see the process as alive; ``db`` reports the store."""
    db_state = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        db_state = "degraded"
    return HealthResponse(ts=datetime.now(UTC).isoformat(), version=__version__, db=db_state)


@router.get("/config", response_model=PublicConfigResponse)
async def public_config(settings: SettingsDep) -> PublicConfigResponse:
    """Folder id and URL the client shows after access is granted."""
    return PublicConfigResponse(
        drive_folder_id=settings.resolved_drive_folder_id,
        drive_folder_url=settings.resolved_drive_folder_url,
    )
