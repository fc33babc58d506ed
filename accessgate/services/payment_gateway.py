"""Stripe payment integration.

Provides customer management, price selection per operating mode, payment
link and checkout session creation, billing portal sessions, and webhook
signature verification.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import stripe
from starlette.concurrency import run_in_threadpool

from accessgate.config import GateSettings, StripeMode
from accessgate.exceptions import ConfigurationError, PaymentProviderError, SignatureError
from accessgate.state.repository import UserRecordRepository

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_NAME = "Full Access"
DEFAULT_CURRENCY = "usd"
DEFAULT_UNIT_AMOUNT = 1200


@dataclass(frozen=True)
class ProductRequest:
    """Product hints supplied by the client; configuration takes precedence."""

    product_name: str | None = None
    currency: str | None = None
    unit_amount: int | None = None


@dataclass(frozen=True)
class PriceSelection:
    """The price to charge in the current operating mode."""

    mode: StripeMode
    price_id: str
    product_id: str | None
    name: str
    currency: str
    unit_amount: int
    description: str | None = None


@dataclass(frozen=True)
class UserPaylink:
    """A per-user payment link, either reused from the record or newly created."""

    url: str
    payment_link_id: str
    price_id: str
    product_id: str | None
    reused: bool


def append_query_param(url: str, key: str, value: str) -> str:
    """Set *key* to *value* in the query string of *url*, replacing any prior value."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != key]
    query.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


class StripeGateway:
    """Stripe operations on behalf of signed-in users.

    Stripe calls are made with the secret configured in *settings*.  The
    SDK is blocking, so each call runs in the thread pool and a slow
    response holds up only the calling request.  Any
    :class:`stripe.StripeError` is re-raised as
    :class:`~accessgate.exceptions.PaymentProviderError`.

    Parameters
    ----------
    settings:
        Settings containing the Stripe secrets and price configuration.
    """

    def __init__(self, settings: GateSettings) -> None:
        self._settings = settings

    @property
    def mode(self) -> StripeMode:
        return self._settings.stripe_mode

    def _get_stripe(self) -> Any:
        """Return the Stripe library configured with the secret key."""
        secret = self._settings.stripe_secret.get_secret_value()
        if not secret:
            raise ConfigurationError("STRIPE_SECRET is not configured")
        stripe.api_key = secret
        return stripe

    # -- Customers -----------------------------------------------------------

    async def ensure_customer(
        self,
        uid: str,
        email: str | None,
        name: str | None,
        repository: UserRecordRepository,
    ) -> tuple[str, bool]:
        """Return the user's Stripe customer id, creating the customer if needed.

        Returns
        -------
        tuple
            ``(customer_id, existed)``; ``existed`` is ``True`` when the id
            was already linked on the user record.
        """
        record = await repository.get(uid)
        if record is not None and record.stripe_customer_id:
            return record.stripe_customer_id, True

        client = self._get_stripe()
        try:
            customer = await run_in_threadpool(
                client.Customer.create, email=email, name=name, metadata={"uid": uid}
            )
        except stripe.StripeError as exc:
            logger.error("Stripe customer creation failed for %s: %s", uid, exc)
            raise PaymentProviderError("Could not create Stripe customer") from exc

        await repository.upsert_merge(
            uid,
            {
                "email": email,
                "name": name,
                "stripe_customer_id": customer["id"],
                "stripe_created_at": datetime.now(UTC),
            },
        )
        logger.info("Created Stripe customer %s for user %s", customer["id"], uid)
        return customer["id"], False

    # -- Prices --------------------------------------------------------------

    def ensure_price_for_mode(self, product: ProductRequest | None = None) -> PriceSelection:
        """Select the price configured for the current operating mode.

        Never falls back to an identifier from the other mode, nor to the
        generic ``STRIPE_PRICE_ID``.

        Raises
        ------
        ConfigurationError
            If no price id is configured for the current mode.
        """
        product = product or ProductRequest()
        settings = self._settings
        mode = self.mode

        if mode is StripeMode.TEST:
            price_id, product_id, price_var = (
                settings.stripe_test_price_id,
                settings.stripe_test_product_id,
                "STRIPE_TEST_PRICE_ID",
            )
        else:
            price_id, product_id, price_var = (
                settings.stripe_live_price_id,
                settings.stripe_live_product_id,
                "STRIPE_LIVE_PRICE_ID",
            )

        if not price_id:
            if settings.stripe_price_id:
                raise ConfigurationError(
                    f"{price_var} is not configured; STRIPE_PRICE_ID is not used to avoid mixing modes"
                )
            raise ConfigurationError(f"{price_var} is not configured")

        selection = PriceSelection(
            mode=mode,
            price_id=price_id,
            product_id=product_id or None,
            name=settings.stripe_product_name or product.product_name or DEFAULT_PRODUCT_NAME,
            currency=(settings.stripe_currency or product.currency or DEFAULT_CURRENCY).lower(),
            unit_amount=settings.stripe_unit_amount or product.unit_amount or DEFAULT_UNIT_AMOUNT,
            description=settings.stripe_product_description or None,
        )
        logger.debug("Using %s price %s", mode.value, price_id)
        return selection

    # -- Payment artifacts ---------------------------------------------------

    async def create_payment_link(self, price_id: str, uid: str, success_url: str) -> tuple[str, str]:
        """Create a payment link tagged with *uid*.  Returns ``(url, link_id)``."""
        client = self._get_stripe()
        try:
            link = await run_in_threadpool(
                client.PaymentLink.create,
                line_items=[{"price": price_id, "quantity": 1}],
                metadata={"uid": uid},
                customer_creation="if_required",
                after_completion={"type": "redirect", "redirect": {"url": success_url}},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe payment link creation failed for %s: %s", uid, exc)
            raise PaymentProviderError("Could not create payment link") from exc
        return link["url"], link["id"]

    async def ensure_user_paylink(
        self,
        uid: str,
        email: str | None,
        name: str | None,
        product: ProductRequest,
        success_url: str,
        repository: UserRecordRepository,
    ) -> UserPaylink:
        """Return the user's cached payment link, or create and cache a new one.

        A cached link is reused only when both its price id and its mode
        match the current selection.  The returned URL carries
        ``prefilled_email`` (when known) and ``client_reference_id``.
        """
        selection = self.ensure_price_for_mode(product)
        record = await repository.get(uid)

        if (
            record is not None
            and record.stripe_paylink_url
            and record.stripe_paylink_id
            and record.stripe_price_id == selection.price_id
            and record.stripe_mode == selection.mode.value
        ):
            return UserPaylink(
                url=self._decorate_paylink(record.stripe_paylink_url, uid, email),
                payment_link_id=record.stripe_paylink_id,
                price_id=selection.price_id,
                product_id=record.stripe_product_id or selection.product_id,
                reused=True,
            )

        url, link_id = await self.create_payment_link(selection.price_id, uid, success_url)
        await repository.upsert_merge(
            uid,
            {
                "email": email,
                "name": name,
                "stripe_mode": selection.mode.value,
                "stripe_paylink_id": link_id,
                "stripe_paylink_url": url,
                "stripe_price_id": selection.price_id,
                "stripe_product_id": selection.product_id,
            },
        )
        logger.info("Created %s payment link %s for user %s", selection.mode.value, link_id, uid)
        return UserPaylink(
            url=self._decorate_paylink(url, uid, email),
            payment_link_id=link_id,
            price_id=selection.price_id,
            product_id=selection.product_id,
            reused=False,
        )

    @staticmethod
    def _decorate_paylink(url: str, uid: str, email: str | None) -> str:
        if email:
            url = append_query_param(url, "prefilled_email", email)
        return append_query_param(url, "client_reference_id", uid)

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        uid: str,
    ) -> tuple[str, str]:
        """Create a one-shot payment Checkout session.  Returns ``(url, session_id)``."""
        client = self._get_stripe()
        try:
            session = await run_in_threadpool(
                client.checkout.Session.create,
                mode="payment",
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                allow_promotion_codes=True,
                client_reference_id=uid,
                metadata={"uid": uid},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed for %s: %s", uid, exc)
            raise PaymentProviderError("Could not create checkout session") from exc
        return session["url"], session["id"]

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> tuple[str, str]:
        """Create a Customer Portal session.  Returns ``(url, session_id)``."""
        client = self._get_stripe()
        try:
            session = await run_in_threadpool(
                client.billing_portal.Session.create, customer=customer_id, return_url=return_url
            )
        except stripe.StripeError as exc:
            logger.error("Stripe billing portal session failed for customer %s: %s", customer_id, exc)
            raise PaymentProviderError("Could not create billing portal session") from exc
        return session["url"], session["id"]

    # -- Webhooks ------------------------------------------------------------

    def verify_and_parse_webhook(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        """Verify a webhook signature over the exact raw body and parse the event.

        Raises
        ------
        ConfigurationError
            If ``STRIPE_WEBHOOK_SECRET`` is not configured.
        SignatureError
            If the header is missing or does not match, or the body is not
            a JSON object.
        """
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature_header:
            raise SignatureError("missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureError("payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(str(exc)) from exc

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise SignatureError("payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise SignatureError("payload is not a JSON object")
        return event
