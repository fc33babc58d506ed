"""Service configuration loaded from environment variables.

Settings are resolved once at startup by :func:`load_settings`.  Variable
names match the deployment environment used by the storefront (for example
``STRIPE_SECRET`` and ``DRIVE_FOLDER_ID``), and can also be supplied through a
``.env`` file in the working directory.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from accessgate.exceptions import ConfigurationError

_FOLDER_ID_RE = re.compile(r"/folders/([^/?#]+)")

_DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]


class StripeMode(str, Enum):
    """Stripe operating mode partition."""

    TEST = "test"
    LIVE = "live"


class GateSettings(BaseSettings):
    """Application settings.

    All values can be overridden through environment variables of the same
    name (case-insensitive) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 3000

    # Async SQLAlchemy URL for the user record store.
    database_url: str = "sqlite+aiosqlite:///./accessgate.db"

    # Origins permitted by the CORS middleware.
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:5500",
        "http://127.0.0.1:5500",
    ]

    # Fallback origin for redirect URLs when the request has no Origin header.
    public_base_url: str = "http://localhost:3000"

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Stripe.
    stripe_secret: SecretStr = SecretStr("")
    stripe_webhook_secret: SecretStr = SecretStr("")
    stripe_test_price_id: str = ""
    stripe_test_product_id: str = ""
    stripe_live_price_id: str = ""
    stripe_live_product_id: str = ""
    stripe_price_id: str = ""
    stripe_product_name: str = ""
    stripe_product_description: str = ""
    stripe_currency: str = ""
    stripe_unit_amount: int | None = None
    stripe_admin_token: SecretStr = SecretStr("")

    # Google Drive folder that paying users are granted reader access to.
    drive_folder_id: str = ""
    drive_folder_url: str = ""

    # Firebase project whose ID tokens are accepted.
    firebase_project_id: str = ""

    # Service account credentials: inline JSON (raw or base64) or a file path.
    google_credentials_json: SecretStr = SecretStr("")
    google_application_credentials: str = ""

    # Optional purchase confirmation email.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: SecretStr = SecretStr("")
    smtp_sender: str = ""
    smtp_use_tls: bool = True

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        """Accept a comma-separated string as well as a JSON list."""
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [o.strip() for o in stripped.split(",") if o.strip()]
        return value

    @field_validator("stripe_unit_amount", mode="before")
    @classmethod
    def _blank_amount_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    # -- Derived values ------------------------------------------------------

    @property
    def stripe_mode(self) -> StripeMode:
        """Operating mode derived strictly from the secret key prefix."""
        key = self.stripe_secret.get_secret_value()
        if key.startswith(("sk_test", "rk_test")):
            return StripeMode.TEST
        return StripeMode.LIVE

    @property
    def resolved_drive_folder_id(self) -> str | None:
        """Folder id from ``DRIVE_FOLDER_ID`` or parsed out of ``DRIVE_FOLDER_URL``."""
        if self.drive_folder_id:
            return self.drive_folder_id
        if not self.drive_folder_url:
            return None
        match = _FOLDER_ID_RE.search(self.drive_folder_url)
        return match.group(1) if match else None

    @property
    def resolved_drive_folder_url(self) -> str | None:
        """Public folder URL, built from the folder id when not configured."""
        if self.drive_folder_url:
            return self.drive_folder_url
        if self.drive_folder_id:
            return f"https://drive.google.com/drive/folders/{self.drive_folder_id}?usp=sharing"
        return None

    @property
    def mail_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_sender)

    # -- Validation ----------------------------------------------------------

    def validate_for_startup(self) -> None:
        """Fail fast when the payment provider is not configured.

        Raises
        ------
        ConfigurationError
            If ``STRIPE_SECRET`` or ``STRIPE_WEBHOOK_SECRET`` is empty.
        """
        if not self.stripe_secret.get_secret_value():
            raise ConfigurationError("STRIPE_SECRET is not configured")
        if not self.stripe_webhook_secret.get_secret_value():
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

    def resolve_google_credentials(self) -> Any:
        """Build Google service-account credentials for the Drive API.

        Exactly one source is used, checked in this order:

        1. ``GOOGLE_CREDENTIALS_JSON`` (raw JSON or base64-encoded JSON).
        2. ``GOOGLE_APPLICATION_CREDENTIALS`` (path to a key file).
        3. Application default credentials.

        A source that is present but unusable raises instead of falling
        through to the next one.

        Raises
        ------
        ConfigurationError
            If the configured source cannot be parsed or read.
        """
        from google.oauth2 import service_account

        inline = self.google_credentials_json.get_secret_value().strip()
        if inline:
            info = _parse_inline_credentials(inline)
            return service_account.Credentials.from_service_account_info(info, scopes=_DRIVE_SCOPES)

        if self.google_application_credentials:
            path = Path(self.google_application_credentials).expanduser()
            if not path.is_file():
                raise ConfigurationError("GOOGLE_APPLICATION_CREDENTIALS does not point to a readable file")
            return service_account.Credentials.from_service_account_file(str(path), scopes=_DRIVE_SCOPES)

        import google.auth
        from google.auth.exceptions import DefaultCredentialsError

        try:
            credentials, _project = google.auth.default(scopes=_DRIVE_SCOPES)
        except DefaultCredentialsError as exc:
            raise ConfigurationError("No Google credentials configured") from exc
        return credentials


def _parse_inline_credentials(raw: str) -> dict[str, Any]:
    """Decode ``GOOGLE_CREDENTIALS_JSON`` as JSON, or base64 JSON."""
    if raw.startswith("{"):
        payload = raw
    else:
        try:
            payload = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError("GOOGLE_CREDENTIALS_JSON is neither JSON nor base64 JSON") from exc
    try:
        info = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ConfigurationError("GOOGLE_CREDENTIALS_JSON is not valid JSON") from exc
    if not isinstance(info, dict):
        raise ConfigurationError("GOOGLE_CREDENTIALS_JSON must be a JSON object")
    return info


def load_settings() -> GateSettings:
    """Construct settings from the environment / ``.env`` file."""
    return GateSettings()
