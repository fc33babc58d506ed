"""Request and response models for the HTTP surface.

Response bodies use the camelCase keys the browser client reads
(``sessionId``, ``paymentLinkId``, ...); Python code populates them by
field name.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for response bodies serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Body for ``POST /create-checkout-session``.

    ``unit_amount`` and ``product_name`` are required by the endpoint but
    declared optional so that a missing value yields the service's own
    validation error.
    """

    unit_amount: int | None = Field(default=None, gt=0)
    currency: str | None = None
    product_name: str | None = None
    success_path: str | None = None
    cancel_path: str | None = None


class PaylinkRequest(BaseModel):
    """Body for ``POST /user-paylink``; every field is optional."""

    unit_amount: int | None = Field(default=None, gt=0)
    currency: str | None = None
    product_name: str | None = None
    success_path: str | None = None


class ResetPaylinkRequest(BaseModel):
    uid: str | None = None


class GrantDriveRequest(BaseModel):
    email: str | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class CustomerResponse(CamelModel):
    customer_id: str
    exists: bool


class CheckoutSessionResponse(CamelModel):
    url: str
    session_id: str


class PaylinkResponse(CamelModel):
    url: str
    payment_link_id: str
    price_id: str
    product_id: str | None = None


class PortalSessionResponse(CamelModel):
    url: str
    session_id: str


class WebhookAck(BaseModel):
    received: bool = True


class MeResponse(CamelModel):
    """Profile and access state for the signed-in user."""

    uid: str
    email: str | None = None
    name: str | None = None
    access: bool = False
    stripe_customer_id: str | None = None
    stripe_paylink_url: str | None = None
    stripe_paylink_id: str | None = None


class PublicConfigResponse(CamelModel):
    drive_folder_id: str | None = None
    drive_folder_url: str | None = None


class HealthResponse(BaseModel):
    ok: bool = True
    ts: str
    version: str
    db: str = "ok"


class ResetPaylinkResponse(BaseModel):
    ok: bool
    uid: str


class DriveFolderResponse(BaseModel):
    ok: bool
    folder: dict[str, Any]


class GrantDriveResponse(BaseModel):
    ok: bool
    email: str


class DeleteUserResponse(BaseModel):
    ok: bool
    uid: str
    deleted: bool
