"""Verification of Firebase Authentication ID tokens.

ID tokens are RS256 JWTs signed by Google's ``securetoken`` service
account.  Signing keys are fetched from the public JWKS endpoint and cached
by :class:`jwt.PyJWKClient`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import jwt

from accessgate.exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

FIREBASE_JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
FIREBASE_ISSUER_PREFIX = "https://securetoken.google.com/"

# Allowed clock skew between Google and this host, in seconds.
CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class Identity:
    """The verified caller."""

    uid: str
    email: str | None = None
    name: str | None = None


class FirebaseTokenVerifier:
    """Validates Firebase ID tokens for one project.

    Parameters
    ----------
    project_id:
        The Firebase project id; it is both the expected audience and the
        suffix of the expected issuer.
    jwks_client:
        Optional pre-built JWKS client, mainly for tests.
    """

    def __init__(self, project_id: str, *, jwks_client: jwt.PyJWKClient | None = None) -> None:
        if not project_id:
            raise ConfigurationError("FIREBASE_PROJECT_ID is not configured")
        self._project_id = project_id
        self._issuer = f"{FIREBASE_ISSUER_PREFIX}{project_id}"
        self._jwks_client = jwks_client or jwt.PyJWKClient(FIREBASE_JWKS_URL, cache_keys=True)

    @property
    def project_id(self) -> str:
        return self._project_id

    def verify(self, token: str) -> Identity:
        """Verify *token* and return the identity it asserts.

        This call may block on a JWKS fetch when the signing key is not yet
        cached; async callers should run it in a thread pool.

        Raises
        ------
        AuthenticationError
            If the token is malformed, expired, signed by an unknown key,
            or issued for another project.
        """
        if not token:
            raise AuthenticationError("Missing identity token")

        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(token)
            # The alg header is never trusted; Firebase only signs with RS256.
            claims: dict[str, Any] = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._project_id,
                issuer=self._issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("Identity token has expired") from exc
        except jwt.PyJWTError as exc:
            logger.info("Rejected identity token: %s", exc)
            raise AuthenticationError("Invalid identity token") from exc

        uid = claims.get("sub")
        if not isinstance(uid, str) or not uid or len(uid) > 128:
            raise AuthenticationError("Identity token has an invalid subject")

        return Identity(uid=uid, email=claims.get("email"), name=claims.get("name"))
