"""Operator endpoints guarded by the ``X-Admin-Token`` header.

The token is compared against ``STRIPE_ADMIN_TOKEN`` in constant time.  When
no admin token is configured every admin request is rejected.
"""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from accessgate.dependencies import RepositoryDep, SettingsDep, StorageGrantDep, get_identity_verifier
from accessgate.exceptions import AuthenticationError, NotFoundError, ValidationError
from accessgate.middleware.auth import extract_token
from accessgate.schemas import (
    DeleteUserResponse,
    DriveFolderResponse,
    GrantDriveRequest,
    GrantDriveResponse,
    ResetPaylinkRequest,
    ResetPaylinkResponse,
)

logger = logging.getLogger(__name__)


def require_admin_token(
    settings: SettingsDep,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless ``X-Admin-Token`` matches the configured secret."""
    expected = settings.stripe_admin_token.get_secret_value()
    if not expected or not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise AuthenticationError("Invalid admin token")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.post("/reset-paylink", response_model=ResetPaylinkResponse)
async def reset_paylink(
    request: Request,
    repository: RepositoryDep,
    body: ResetPaylinkRequest | None = None,
) -> ResetPaylinkResponse:
    """Drop a user's cached payment link so the next request creates a fresh one.

    The target is ``uid`` from the body, or else the user identified by the
    request's bearer token.
    """
    uid = body.uid if body is not None else None
    if not uid:
        if not request.headers.get("authorization"):
            raise ValidationError("Missing uid or identity token")
        token = extract_token(request)
        identity = await run_in_threadpool(get_identity_verifier().verify, token)
        uid = identity.uid

    existed = await repository.clear_fields(uid)
    logger.info("Reset cached payment link for user %s (record present=%s)", uid, existed)
    return ResetPaylinkResponse(ok=True, uid=uid)


@router.get("/test-drive", response_model=DriveFolderResponse)
async def test_drive(storage: StorageGrantDep) -> DriveFolderResponse:
    """Check Drive connectivity by reading the configured folder's metadata."""
    folder = await storage.describe_folder()
    return DriveFolderResponse(ok=True, folder=folder)


@router.post("/grant-drive", response_model=GrantDriveResponse)
async def grant_drive(
    storage: StorageGrantDep,
    body: GrantDriveRequest | None = None,
    email: Annotated[str | None, Query()] = None,
) -> GrantDriveResponse:
    """Manually share the folder with ``email`` (body or query parameter)."""
    target = (body.email if body is not None else None) or email
    if not target:
        raise ValidationError("email is required")
    ok = await storage.grant_reader_access(target)
    logger.info("Manual Drive grant for %s: %s", target, "ok" if ok else "failed")
    return GrantDriveResponse(ok=ok, email=target)


@router.delete("/users/{uid}", response_model=DeleteUserResponse)
async def delete_user(uid: str, repository: RepositoryDep) -> DeleteUserResponse:
    """Remove a user's record when the identity is deleted."""
    deleted = await repository.delete(uid)
    if not deleted:
        raise NotFoundError(f"No user record for {uid}")
    logger.info("Deleted user record %s", uid)
    return DeleteUserResponse(ok=True, uid=uid, deleted=True)
