"""Signed-in user endpoints: profile/access state and the gated Drive redirect."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import RedirectResponse

from accessgate.dependencies import CurrentIdentity, RepositoryDep, SettingsDep
from accessgate.exceptions import AccessDeniedError, ConfigurationError
from accessgate.schemas import MeResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["account"])


@router.get("/me", response_model=MeResponse)
async def me(identity: CurrentIdentity, repository: RepositoryDep) -> MeResponse:
    """Return the caller's record, creating a minimal profile on first sign-in.

    Clients poll this after checkout until ``access`` becomes true.
    """
    if await repository.ensure_profile(identity.uid, identity.email, identity.name):
        logger.info("Created profile for user %s", identity.uid)

    record = await repository.get(identity.uid)
    if record is None:
        return MeResponse(uid=identity.uid, email=identity.email, name=identity.name, access=False)
    return MeResponse(
        uid=identity.uid,
        email=record.email or identity.email,
        name=record.name or identity.name,
        access=bool(record.access),
        stripe_customer_id=record.stripe_customer_id,
        stripe_paylink_url=record.stripe_paylink_url,
        stripe_paylink_id=record.stripe_paylink_id,
    )


@router.get("/drive", response_class=RedirectResponse, status_code=302)
async def drive(identity: CurrentIdentity, repository: RepositoryDep, settings: SettingsDep) -> RedirectResponse:
    """Redirect to the shared folder when the caller has access, 403 otherwise."""
    folder_url = settings.resolved_drive_folder_url
    if not folder_url:
        raise ConfigurationError("DRIVE_FOLDER_URL or DRIVE_FOLDER_ID is not configured")

    record = await repository.get(identity.uid)
    if record is None or not record.access:
        raise AccessDeniedError("Access has not been granted for this account")
    return RedirectResponse(folder_url, status_code=302)
