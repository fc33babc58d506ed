"""Tests for accessgate/services/payment_gateway.py

Covers:
- Price selection per operating mode, never crossing modes
- Customer creation and linking on the user record
- Payment link reuse and regeneration on price or mode change
- Checkout / portal parameters and Stripe error translation
- Webhook signature verification over the raw body
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import stripe
from conftest import WEBHOOK_SECRET, make_settings, read_record, seed_record, sign_stripe_payload, stripe_event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessgate.config import StripeMode
from accessgate.exceptions import ConfigurationError, PaymentProviderError, SignatureError
from accessgate.services.payment_gateway import (
    DEFAULT_CURRENCY,
    DEFAULT_PRODUCT_NAME,
    DEFAULT_UNIT_AMOUNT,
    ProductRequest,
    StripeGateway,
    append_query_param,
)
from accessgate.state.database import session_scope
from accessgate.state.repository import UserRecordRepository

# ---------------------------------------------------------------------------
# Price selection
# ---------------------------------------------------------------------------


class TestEnsurePriceForMode:
    """Configuration for the current mode is the only source of price ids."""

    def test_test_mode_uses_test_price(self, tmp_path: Path) -> None:
        selection = StripeGateway(make_settings(tmp_path)).ensure_price_for_mode()
        assert selection.mode is StripeMode.TEST
        assert selection.price_id == "price_test_1"
        assert selection.product_id == "prod_test_1"

    def test_live_mode_uses_live_price(self, tmp_path: Path) -> None:
        selection = StripeGateway(make_settings(tmp_path, stripe_secret="sk_live_123")).ensure_price_for_mode()
        assert selection.mode is StripeMode.LIVE
        assert selection.price_id == "price_live_1"
        assert selection.product_id == "prod_live_1"

    def test_never_falls_back_to_other_mode(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, stripe_secret="sk_live_123", stripe_live_price_id="")
        with pytest.raises(ConfigurationError, match="STRIPE_LIVE_PRICE_ID"):
            StripeGateway(settings).ensure_price_for_mode()

    def test_legacy_price_id_is_refused(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, stripe_test_price_id="", stripe_price_id="price_legacy")
        with pytest.raises(ConfigurationError, match="STRIPE_PRICE_ID is not used"):
            StripeGateway(settings).ensure_price_for_mode()

    def test_empty_product_id_becomes_none(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, stripe_test_product_id="")
        assert StripeGateway(settings).ensure_price_for_mode().product_id is None

    def test_configuration_overrides_request(self, tmp_path: Path) -> None:
        settings = make_settings(
            tmp_path,
            stripe_product_name="Library",
            stripe_product_description="All volumes",
            stripe_currency="EUR",
            stripe_unit_amount=900,
        )
        selection = StripeGateway(settings).ensure_price_for_mode(
            ProductRequest(product_name="Client", currency="usd", unit_amount=100)
        )
        assert (selection.name, selection.currency, selection.unit_amount) == ("Library", "eur", 900)
        assert selection.description == "All volumes"

    def test_request_used_when_unconfigured(self, tmp_path: Path) -> None:
        selection = StripeGateway(make_settings(tmp_path)).ensure_price_for_mode(
            ProductRequest(product_name="Client", currency="GBP", unit_amount=100)
        )
        assert (selection.name, selection.currency, selection.unit_amount) == ("Client", "gbp", 100)

    def test_defaults(self, tmp_path: Path) -> None:
        selection = StripeGateway(make_settings(tmp_path)).ensure_price_for_mode()
        assert selection.name == DEFAULT_PRODUCT_NAME
        assert selection.currency == DEFAULT_CURRENCY
        assert selection.unit_amount == DEFAULT_UNIT_AMOUNT


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


class TestEnsureCustomer:
    @pytest.mark.asyncio
    async def test_creates_and_links_customer(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        async with session_scope(session_factory) as session:
            customer_id, existed = await gateway.ensure_customer(
                "u1", "a@x.com", "Ada", UserRecordRepository(session)
            )

        assert (customer_id, existed) == ("cus_123", False)
        mock_stripe.Customer.create.assert_called_once_with(email="a@x.com", name="Ada", metadata={"uid": "u1"})
        record = await read_record(session_factory, "u1")
        assert record.stripe_customer_id == "cus_123"
        assert record.stripe_created_at is not None
        assert record.email == "a@x.com"

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_record(session_factory, "u1", stripe_customer_id="cus_existing")

        async with session_scope(session_factory) as session:
            result = await gateway.ensure_customer("u1", "a@x.com", "Ada", UserRecordRepository(session))

        assert result == ("cus_existing", True)
        mock_stripe.Customer.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_stripe_error_is_translated(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        mock_stripe.Customer.create.side_effect = stripe.APIConnectionError("boom")

        async with session_factory() as session:
            with pytest.raises(PaymentProviderError) as excinfo:
                await gateway.ensure_customer("u1", "a@x.com", "Ada", UserRecordRepository(session))

        assert excinfo.value.status_code == 502
        assert excinfo.value.provider == "stripe"
        assert await read_record(session_factory, "u1") is None

    @pytest.mark.asyncio
    async def test_missing_secret(self, tmp_path: Path, session_factory: async_sessionmaker[AsyncSession]) -> None:
        gateway = StripeGateway(make_settings(tmp_path, stripe_secret=""))
        async with session_factory() as session:
            with pytest.raises(ConfigurationError, match="STRIPE_SECRET"):
                await gateway.ensure_customer("u1", None, None, UserRecordRepository(session))


# ---------------------------------------------------------------------------
# Payment links
# ---------------------------------------------------------------------------


class TestEnsureUserPaylink:
    """Per-user payment links are cached on the record and keyed on price and mode."""

    async def _paylink(self, gateway: StripeGateway, factory, email: str | None = "a@x.com"):
        async with session_scope(factory) as session:
            return await gateway.ensure_user_paylink(
                uid="u1",
                email=email,
                name="Ada",
                product=ProductRequest(),
                success_url="http://localhost:5500/?paid=true",
                repository=UserRecordRepository(session),
            )

    @pytest.mark.asyncio
    async def test_creates_and_caches_link(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        paylink = await self._paylink(gateway, session_factory)

        assert paylink.reused is False
        assert paylink.payment_link_id == "plink_1"
        assert paylink.price_id == "price_test_1"
        assert paylink.url.startswith("https://buy.stripe.com/test_L1?")
        assert "prefilled_email=a%40x.com" in paylink.url
        assert "client_reference_id=u1" in paylink.url

        kwargs = mock_stripe.PaymentLink.create.call_args.kwargs
        assert kwargs["line_items"] == [{"price": "price_test_1", "quantity": 1}]
        assert kwargs["metadata"] == {"uid": "u1"}
        assert kwargs["after_completion"]["redirect"]["url"] == "http://localhost:5500/?paid=true"

        record = await read_record(session_factory, "u1")
        assert record.stripe_paylink_id == "plink_1"
        assert record.stripe_paylink_url == "https://buy.stripe.com/test_L1"
        assert record.stripe_price_id == "price_test_1"
        assert record.stripe_mode == "test"

    @pytest.mark.asyncio
    async def test_reuses_link_for_same_price_and_mode(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        first = await self._paylink(gateway, session_factory)
        second = await self._paylink(gateway, session_factory)

        assert second.reused is True
        assert second.url == first.url
        assert mock_stripe.PaymentLink.create.call_count == 1

    @pytest.mark.asyncio
    async def test_regenerates_on_price_change(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_record(
            session_factory,
            "u1",
            stripe_paylink_id="plink_old",
            stripe_paylink_url="https://buy.stripe.com/old",
            stripe_price_id="price_test_old",
            stripe_mode="test",
        )

        paylink = await self._paylink(gateway, session_factory)

        assert paylink.reused is False
        assert paylink.payment_link_id == "plink_1"
        assert (await read_record(session_factory, "u1")).stripe_price_id == "price_test_1"

    @pytest.mark.asyncio
    async def test_regenerates_on_mode_change(
        self,
        gateway: StripeGateway,
        mock_stripe: MagicMock,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await seed_record(
            session_factory,
            "u1",
            stripe_paylink_id="plink_live",
            stripe_paylink_url="https://buy.stripe.com/live",
            stripe_price_id="price_test_1",
            stripe_mode="live",
        )

        paylink = await self._paylink(gateway, session_factory)

        assert paylink.reused is False
        mock_stripe.PaymentLink.create.assert_called_once()
        assert (await read_record(session_factory, "u1")).stripe_mode == "test"

    @pytest.mark.asyncio
    async def test_without_email_only_reference_is_added(
        self,
        gateway: StripeGateway,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        paylink = await self._paylink(gateway, session_factory, email=None)
        assert "prefilled_email" not in paylink.url
        assert paylink.url.endswith("client_reference_id=u1")


class TestAppendQueryParam:
    def test_replaces_existing_value(self) -> None:
        url = append_query_param("https://buy.stripe.com/x?client_reference_id=old&a=1", "client_reference_id", "u1")
        assert url == "https://buy.stripe.com/x?a=1&client_reference_id=u1"


# ---------------------------------------------------------------------------
# Checkout and portal
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_checkout_session_parameters(self, gateway: StripeGateway, mock_stripe: MagicMock) -> None:
        url, session_id = await gateway.create_checkout_session(
            customer_id="cus_123",
            price_id="price_test_1",
            success_url="https://shop/?success=true",
            cancel_url="https://shop/?canceled=true",
            uid="u1",
        )

        assert session_id == "cs_test_1"
        assert url == "https://checkout.stripe.com/c/cs_test_1"
        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["customer"] == "cus_123"
        assert kwargs["allow_promotion_codes"] is True
        assert kwargs["client_reference_id"] == "u1"
        assert kwargs["metadata"] == {"uid": "u1"}

    @pytest.mark.asyncio
    async def test_checkout_error_is_translated(self, gateway: StripeGateway, mock_stripe: MagicMock) -> None:
        mock_stripe.checkout.Session.create.side_effect = stripe.InvalidRequestError("No such price", "price")
        with pytest.raises(PaymentProviderError, match="checkout session"):
            await gateway.create_checkout_session("cus_123", "price_x", "s", "c", "u1")

    @pytest.mark.asyncio
    async def test_billing_portal(self, gateway: StripeGateway, mock_stripe: MagicMock) -> None:
        url, _ = await gateway.create_billing_portal_session("cus_123", "https://shop/?billing=done")
        assert url == "https://billing.stripe.com/p/bps_1"
        mock_stripe.billing_portal.Session.create.assert_called_once_with(
            customer="cus_123", return_url="https://shop/?billing=done"
        )


# ---------------------------------------------------------------------------
# Webhook verification
# ---------------------------------------------------------------------------


class TestVerifyAndParseWebhook:
    """Signatures are checked over the exact raw body with the real Stripe scheme."""

    def test_valid_signature(self, tmp_path: Path) -> None:
        payload = stripe_event("checkout.session.completed", {"id": "cs_1"})
        event = StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(
            payload.encode(), sign_stripe_payload(payload)
        )
        assert event["type"] == "checkout.session.completed"
        assert event["data"]["object"]["id"] == "cs_1"

    def test_body_modified_after_signing(self, tmp_path: Path) -> None:
        payload = stripe_event("checkout.session.completed", {"id": "cs_1"})
        header = sign_stripe_payload(payload)
        tampered = payload.replace("cs_1", "cs_2")
        with pytest.raises(SignatureError):
            StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(tampered.encode(), header)

    def test_wrong_secret(self, tmp_path: Path) -> None:
        payload = stripe_event("checkout.session.completed", {})
        with pytest.raises(SignatureError):
            StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(
                payload.encode(), sign_stripe_payload(payload, secret="whsec_other")
            )

    def test_missing_header(self, tmp_path: Path) -> None:
        with pytest.raises(SignatureError, match="missing"):
            StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(b"{}", None)

    def test_stale_timestamp(self, tmp_path: Path) -> None:
        payload = stripe_event("checkout.session.completed", {})
        header = sign_stripe_payload(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureError):
            StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(payload.encode(), header)

    def test_signed_non_object_payload(self, tmp_path: Path) -> None:
        payload = json.dumps(["not", "an", "event"])
        with pytest.raises(SignatureError, match="JSON object"):
            StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(
                payload.encode(), sign_stripe_payload(payload)
            )

    def test_missing_webhook_secret(self, tmp_path: Path) -> None:
        gateway = StripeGateway(make_settings(tmp_path, stripe_webhook_secret=""))
        with pytest.raises(ConfigurationError, match="STRIPE_WEBHOOK_SECRET"):
            gateway.verify_and_parse_webhook(b"{}", "t=1,v1=abc")

    def test_verification_does_not_touch_api_key(self, tmp_path: Path) -> None:
        payload = stripe_event("payment_intent.succeeded", {})
        with patch.object(StripeGateway, "_get_stripe") as get_stripe:
            StripeGateway(make_settings(tmp_path)).verify_and_parse_webhook(
                payload.encode(), sign_stripe_payload(payload, secret=WEBHOOK_SECRET)
            )
        get_stripe.assert_not_called()
