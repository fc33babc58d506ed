"""Billing endpoints: Stripe customer, checkout session, payment link, portal."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from accessgate.config import GateSettings
from accessgate.dependencies import CurrentIdentity, GatewayDep, RepositoryDep, SettingsDep
from accessgate.exceptions import ValidationError
from accessgate.schemas import (
    CheckoutRequest,
    CheckoutSessionResponse,
    CustomerResponse,
    PaylinkRequest,
    PaylinkResponse,
    PortalSessionResponse,
)
from accessgate.services.payment_gateway import ProductRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


def request_origin(request: Request, settings: GateSettings) -> str:
    """Return the origin redirect URLs are built on.

    The ``Origin`` header is used only when it is one of the allowed CORS
    origins; otherwise ``PUBLIC_BASE_URL`` is used.
    """
    origin = request.headers.get("origin")
    if origin and origin.rstrip("/") in {o.rstrip("/") for o in settings.allowed_origins}:
        return origin.rstrip("/")
    return settings.public_base_url.rstrip("/")


def redirect_path(value: str | None, field: str) -> str:
    """Validate a client-supplied path that is appended to the origin."""
    if not value:
        return "/"
    if not value.startswith("/") or value.startswith("//"):
        raise ValidationError(f"{field} must be an absolute path starting with '/'")
    # Redirect markers are appended as the query string.
    if "?" in value or "#" in value:
        raise ValidationError(f"{field} must not carry a query string or fragment")
    return value


@router.post("/create-stripe-customer", response_model=CustomerResponse)
async def create_stripe_customer(
    identity: CurrentIdentity,
    gateway: GatewayDep,
    repository: RepositoryDep,
) -> CustomerResponse:
    """Return the caller's Stripe customer, creating and linking it on first call."""
    customer_id, existed = await gateway.ensure_customer(identity.uid, identity.email, identity.name, repository)
    return CustomerResponse(customer_id=customer_id, exists=existed)


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    identity: CurrentIdentity,
    gateway: GatewayDep,
    repository: RepositoryDep,
    settings: SettingsDep,
) -> CheckoutSessionResponse:
    """Create a one-shot Checkout session for the configured price.

    After payment Stripe redirects to ``success_path`` with
    ``?success=true&session_id=...``; on cancel to ``cancel_path`` with
    ``?canceled=true``.
    """
    if not body.unit_amount or not body.product_name:
        raise ValidationError("unit_amount and product_name are required")

    origin = request_origin(request, settings)
    success_url = f"{origin}{redirect_path(body.success_path, 'success_path')}?success=true&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{origin}{redirect_path(body.cancel_path, 'cancel_path')}?canceled=true"

    selection = gateway.ensure_price_for_mode(
        ProductRequest(product_name=body.product_name, currency=body.currency, unit_amount=body.unit_amount)
    )
    customer_id, _existed = await gateway.ensure_customer(identity.uid, identity.email, identity.name, repository)
    url, session_id = await gateway.create_checkout_session(
        customer_id=customer_id,
        price_id=selection.price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        uid=identity.uid,
    )
    logger.info("Checkout session %s created for user %s", session_id, identity.uid)
    return CheckoutSessionResponse(url=url, session_id=session_id)


@router.post("/user-paylink", response_model=PaylinkResponse, response_model_exclude_none=True)
async def user_paylink(
    request: Request,
    identity: CurrentIdentity,
    gateway: GatewayDep,
    repository: RepositoryDep,
    settings: SettingsDep,
    body: PaylinkRequest | None = None,
) -> PaylinkResponse:
    """Return the caller's payment link, reusing it while price and mode are unchanged."""
    body = body or PaylinkRequest()
    origin = request_origin(request, settings)
    success_url = f"{origin}{redirect_path(body.success_path, 'success_path')}?paid=true"

    paylink = await gateway.ensure_user_paylink(
        uid=identity.uid,
        email=identity.email,
        name=identity.name,
        product=ProductRequest(product_name=body.product_name, currency=body.currency, unit_amount=body.unit_amount),
        success_url=success_url,
        repository=repository,
    )
    return PaylinkResponse(
        url=paylink.url,
        payment_link_id=paylink.payment_link_id,
        price_id=paylink.price_id,
        product_id=paylink.product_id,
    )


@router.post("/billing-portal", response_model=PortalSessionResponse)
async def billing_portal(
    request: Request,
    identity: CurrentIdentity,
    gateway: GatewayDep,
    repository: RepositoryDep,
    settings: SettingsDep,
) -> PortalSessionResponse:
    """Create a Customer Portal session that returns to ``/?billing=done``."""
    customer_id, _existed = await gateway.ensure_customer(identity.uid, identity.email, identity.name, repository)
    return_url = f"{request_origin(request, settings)}/?billing=done"
    url, session_id = await gateway.create_billing_portal_session(customer_id, return_url)
    return PortalSessionResponse(url=url, session_id=session_id)
