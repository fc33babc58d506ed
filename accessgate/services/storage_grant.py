"""Google Drive folder sharing for paying users.

Grants are duplicate-safe: Drive answers HTTP 409 when the permission
already exists, which is treated as success.  Every Drive call is blocking
and runs in the default executor.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from accessgate.config import GateSettings
from accessgate.exceptions import ConfigurationError, DownstreamProviderError

logger = logging.getLogger(__name__)

_FOLDER_FIELDS = "id,name,permissions(kind,role,emailAddress,domain),owners(emailAddress),shared"


class DriveGrantService:
    """Adds reader permissions on the configured Drive folder.

    Parameters
    ----------
    settings:
        Settings providing the folder id and Google credentials.
    service:
        A pre-built Drive v3 resource.  When omitted, one is built on first
        use from :meth:`GateSettings.resolve_google_credentials` and reused.
    """

    def __init__(self, settings: GateSettings, service: Any | None = None) -> None:
        self._settings = settings
        self._service = service
        self._lock = asyncio.Lock()

    @property
    def folder_id(self) -> str | None:
        return self._settings.resolved_drive_folder_id

    async def _get_service(self) -> Any:
        if self._service is not None:
            return self._service
        async with self._lock:
            if self._service is None:
                loop = asyncio.get_running_loop()
                self._service = await loop.run_in_executor(None, self._build_service)
                logger.info("Drive client initialised")
        return self._service

    def _build_service(self) -> Any:
        credentials = self._settings.resolve_google_credentials()
        return build("drive", "v3", credentials=credentials, cache_discovery=False)

    async def grant_reader_access(self, email: str | None) -> bool:
        """Share the folder with *email* as a reader, without notification.

        Returns ``True`` when the permission was created or already
        existed, ``False`` on any failure.  Never raises.
        """
        if not email:
            return False
        folder_id = self.folder_id
        if not folder_id:
            logger.warning("DRIVE_FOLDER_ID/DRIVE_FOLDER_URL not configured; skipping Drive grant")
            return False

        try:
            service = await self._get_service()
        except ConfigurationError as exc:
            logger.warning("Drive client unavailable: %s", exc.message)
            return False

        def create() -> Any:
            return (
                service.permissions()
                .create(
                    fileId=folder_id,
                    body={"role": "reader", "type": "user", "emailAddress": email},
                    sendNotificationEmail=False,
                )
                .execute()
            )

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, create)
        except HttpError as exc:
            status = exc.resp.status
            if status == 409:
                logger.info("Drive reader permission already present for %s", email)
                return True
            if status == 403:
                logger.warning("Drive returned 403 for %s; check the service account's access to the folder", email)
            elif status == 404:
                logger.warning("Drive returned 404; folder %s not found", folder_id)
            else:
                logger.warning("Drive permission for %s failed with HTTP %s", email, status)
            return False
        except Exception:
            logger.warning("Drive permission for %s failed", email, exc_info=True)
            return False

        logger.info("Drive reader permission added for %s", email)
        return True

    async def describe_folder(self) -> dict[str, Any]:
        """Return id, name, permissions, owners and shared flag of the folder.

        Raises
        ------
        ConfigurationError
            If no folder is configured or credentials are unavailable.
        DownstreamProviderError
            If the Drive API call fails.
        """
        folder_id = self.folder_id
        if not folder_id:
            raise ConfigurationError("DRIVE_FOLDER_ID or DRIVE_FOLDER_URL is not configured")
        service = await self._get_service()

        def fetch() -> dict[str, Any]:
            return service.files().get(fileId=folder_id, fields=_FOLDER_FIELDS).execute()

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fetch)
        except HttpError as exc:
            logger.warning("Drive folder lookup failed with HTTP %s", exc.resp.status)
            raise DownstreamProviderError(f"Drive returned HTTP {exc.resp.status}", provider="drive") from exc
