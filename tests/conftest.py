"""Shared fixtures for access gate tests.

Provides settings, a temporary SQLite record store, RSA-signed identity
tokens, genuinely signed Stripe webhook payloads, and a FastAPI app wired
to mock Stripe and Drive providers.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import jwt
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessgate import dependencies
from accessgate.config import GateSettings
from accessgate.dependencies import (
    get_gateway,
    get_mailer,
    get_session_factory,
    get_settings,
    get_storage_grant,
    set_identity_verifier,
)
from accessgate.main import create_app
from accessgate.services.identity import FirebaseTokenVerifier
from accessgate.services.payment_gateway import StripeGateway
from accessgate.services.storage_grant import DriveGrantService
from accessgate.state.database import create_tables, get_engine
from accessgate.state.repository import UserRecordRepository

PROJECT_ID = "demo-project"
WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-secret"
FOLDER_ID = "folder123"
FOLDER_URL = f"https://drive.google.com/drive/folders/{FOLDER_ID}?usp=sharing"
ALLOWED_ORIGIN = "http://localhost:5500"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(tmp_path: Path, **overrides: Any) -> GateSettings:
    values: dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'accessgate.db'}",
        "allowed_origins": [ALLOWED_ORIGIN],
        "public_base_url": "http://localhost:3000",
        "stripe_secret": "sk_test_123",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_test_price_id": "price_test_1",
        "stripe_test_product_id": "prod_test_1",
        "stripe_live_price_id": "price_live_1",
        "stripe_live_product_id": "prod_live_1",
        "stripe_admin_token": ADMIN_TOKEN,
        "drive_folder_id": FOLDER_ID,
        "firebase_project_id": PROJECT_ID,
    }
    values.update(overrides)
    return GateSettings(_env_file=None, **values)


@pytest.fixture()
def test_settings(tmp_path: Path) -> GateSettings:
    return make_settings(tmp_path)


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(test_settings: GateSettings):
    """Yield a session factory over a fresh SQLite file with tables created."""
    engine = get_engine(test_settings.database_url)
    await create_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def read_record(factory: async_sessionmaker[AsyncSession], uid: str) -> Any:
    async with factory() as session:
        return await UserRecordRepository(session).get(uid)


async def seed_record(factory: async_sessionmaker[AsyncSession], uid: str, **fields: Any) -> None:
    async with factory() as session:
        await UserRecordRepository(session).upsert_merge(uid, fields)
        await session.commit()


# ---------------------------------------------------------------------------
# Identity tokens
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def verifier(rsa_private_key: rsa.RSAPrivateKey) -> FirebaseTokenVerifier:
    """A verifier whose JWKS client always returns the test public key."""
    jwks_client = MagicMock()
    jwks_client.get_signing_key_from_jwt.return_value = SimpleNamespace(key=rsa_private_key.public_key())
    return FirebaseTokenVerifier(PROJECT_ID, jwks_client=jwks_client)


def make_id_token(
    private_key: rsa.RSAPrivateKey,
    uid: str = "u1",
    email: str | None = "a@x.com",
    name: str | None = "Ada",
    **claim_overrides: Any,
) -> str:
    """Sign a Firebase-shaped ID token with *private_key*."""
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": f"https://securetoken.google.com/{PROJECT_ID}",
        "aud": PROJECT_ID,
        "sub": uid,
        "user_id": uid,
        "iat": now,
        "exp": now + 3600,
        "auth_time": now,
    }
    if email is not None:
        claims["email"] = email
    if name is not None:
        claims["name"] = name
    claims.update(claim_overrides)
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": "test-kid"})


@pytest.fixture()
def auth_headers(rsa_private_key: rsa.RSAPrivateKey):
    """Factory for ``Authorization`` headers carrying a signed ID token."""

    def _headers(uid: str = "u1", email: str | None = "a@x.com", name: str | None = "Ada") -> dict[str, str]:
        return {"Authorization": f"Bearer {make_id_token(rsa_private_key, uid, email, name)}"}

    return _headers


# ---------------------------------------------------------------------------
# Stripe webhooks
# ---------------------------------------------------------------------------


def sign_stripe_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe signs deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def stripe_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1") -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_stripe() -> MagicMock:
    """A stand-in for the configured ``stripe`` module."""
    client = MagicMock()
    client.Customer.create.return_value = {"id": "cus_123"}
    client.PaymentLink.create.return_value = {"id": "plink_1", "url": "https://buy.stripe.com/test_L1"}
    client.checkout.Session.create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"}
    client.billing_portal.Session.create.return_value = {"id": "bps_1", "url": "https://billing.stripe.com/p/bps_1"}
    return client


@pytest.fixture()
def gateway(test_settings: GateSettings, mock_stripe: MagicMock):
    gw = StripeGateway(test_settings)
    with patch.object(gw, "_get_stripe", return_value=mock_stripe):
        yield gw


@pytest.fixture()
def mock_storage() -> AsyncMock:
    storage = AsyncMock(spec=DriveGrantService)
    storage.grant_reader_access.return_value = True
    storage.describe_folder.return_value = {"id": FOLDER_ID, "name": "Library", "shared": True}
    return storage


# ---------------------------------------------------------------------------
# FastAPI app (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    monkeypatch: pytest.MonkeyPatch,
    test_settings: GateSettings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: StripeGateway,
    mock_storage: AsyncMock,
    verifier: FirebaseTokenVerifier,
):
    """Create the app with providers and the record store overridden.

    ``ASGITransport`` does not run the lifespan, so nothing here touches
    the real environment or network.
    """
    monkeypatch.setattr(dependencies, "_settings_cache", test_settings)
    application = create_app()

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_gateway] = lambda: gateway
    application.dependency_overrides[get_storage_grant] = lambda: mock_storage
    application.dependency_overrides[get_mailer] = lambda: None

    set_identity_verifier(verifier)
    yield application
    set_identity_verifier(None)


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
