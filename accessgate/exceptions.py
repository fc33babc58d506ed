"""Exception hierarchy for the access gate.

Every error carries the HTTP status it maps to so that a single exception
handler in :mod:`accessgate.main` can render it.  Messages are safe to show
to clients; configuration errors name the missing setting but never its
value.
"""

from __future__ import annotations

from typing import Any


class AccessGateError(Exception):
    """Base class for all access-gate errors."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-compatible response body."""
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(AccessGateError):
    """Missing or invalid identity token or admin secret."""

    status_code = 401
    default_code = "UNAUTHENTICATED"


class AccessDeniedError(AccessGateError):
    """Authenticated identity without the access flag."""

    status_code = 403
    default_code = "ACCESS_DENIED"


class ValidationError(AccessGateError):
    """A required request field is missing or malformed."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(AccessGateError):
    """No user record matches the requested key."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConfigurationError(AccessGateError):
    """A required provider secret or mode-specific identifier is missing."""

    status_code = 500
    default_code = "CONFIGURATION_ERROR"


class SignatureError(AccessGateError):
    """Stripe webhook signature verification failed."""

    status_code = 400
    default_code = "SIGNATURE_INVALID"

    def __init__(self, reason: str) -> None:
        super().__init__("Webhook signature verification failed", details={"reason": reason})
        self.reason = reason


class DownstreamProviderError(AccessGateError):
    """A storage, payment, or mail provider call failed."""

    status_code = 502
    default_code = "PROVIDER_ERROR"

    def __init__(self, message: str, *, provider: str) -> None:
        super().__init__(message, details={"provider": provider})
        self.provider = provider


class PaymentProviderError(DownstreamProviderError):
    """A Stripe API call failed before any state was committed."""

    default_code = "PAYMENT_PROVIDER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, provider="stripe")
