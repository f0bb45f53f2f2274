"""Tests for billing_engine.provider.stripe_client.StripeProviderClient.

The SDK's resource classes are patched; no network access is made.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from billing_engine.errors import ProviderError, SignatureError, TransientProviderError
from billing_engine.mapper import map_invoice
from billing_engine.provider import RetryConfig, StripeProviderClient

_SECRET = "whsec_test_secret"


@pytest.fixture
def client() -> StripeProviderClient:
    return StripeProviderClient(
        "sk_test_123",
        api_version="2024-06-20",
        retry=RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.002, jitter=False),
    )


def _list_object(*items: dict, has_more: bool = False) -> stripe.ListObject:
    return stripe.ListObject.construct_from(
        {"object": "list", "url": "/v1/invoices", "data": list(items), "has_more": has_more},
        "sk_test_123",
    )


def _sign(payload: str, secret: str = _SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class TestVerifySignature:
    def test_valid_signature(self, client: StripeProviderClient) -> None:
        payload = '{"id": "evt_1"}'
        client.verify_signature(payload.encode(), _sign(payload), _SECRET)

    def test_wrong_secret(self, client: StripeProviderClient) -> None:
        payload = '{"id": "evt_1"}'
        with pytest.raises(SignatureError):
            client.verify_signature(payload.encode(), _sign(payload, secret="whsec_other"), _SECRET)

    def test_tampered_body(self, client: StripeProviderClient) -> None:
        header = _sign('{"id": "evt_1"}')
        with pytest.raises(SignatureError):
            client.verify_signature(b'{"id": "evt_2"}', header, _SECRET)

    def test_stale_timestamp(self, client: StripeProviderClient) -> None:
        payload = '{"id": "evt_1"}'
        header = _sign(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureError):
            client.verify_signature(payload.encode(), header, _SECRET, tolerance=300)

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, client: StripeProviderClient, header: str | None) -> None:
        with pytest.raises(SignatureError, match="Missing"):
            client.verify_signature(b"{}", header, _SECRET)

    def test_unset_secret(self, client: StripeProviderClient) -> None:
        with pytest.raises(SignatureError, match="not configured"):
            client.verify_signature(b"{}", _sign("{}"), "")


# ---------------------------------------------------------------------------
# Reads, retries, error translation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_invoices_passes_key_version_and_cursor(client: StripeProviderClient) -> None:
    page = _list_object({"id": "in_1", "object": "invoice"}, {"id": "in_2", "object": "invoice"}, has_more=True)
    with patch.object(stripe.Invoice, "list", MagicMock(return_value=page)) as list_mock:
        result = await client.list_invoices("cus_1", limit=2, starting_after="in_0")

    kwargs = list_mock.call_args.kwargs
    assert kwargs["customer"] == "cus_1"
    assert kwargs["limit"] == 2
    assert kwargs["starting_after"] == "in_0"
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["stripe_version"] == "2024-06-20"
    assert result.has_more is True
    assert result.next_cursor == "in_2"
    assert all(isinstance(item, dict) for item in result.data)


@pytest.mark.asyncio
async def test_latest_subscription_empty(client: StripeProviderClient) -> None:
    with patch.object(stripe.Subscription, "list", MagicMock(return_value=_list_object())):
        assert await client.latest_subscription("cus_1") is None


@pytest.mark.asyncio
async def test_retrieve_invoice_uses_client_credentials(client: StripeProviderClient) -> None:
    sdk_invoice = stripe.Invoice.construct_from({"id": "in_9", "object": "invoice"}, "sk_test_123")
    retrieve = MagicMock(return_value=sdk_invoice)
    with patch.object(stripe.Invoice, "retrieve", retrieve):
        invoice = await client.retrieve_invoice("in_9")

    assert invoice["id"] == "in_9"
    args, kwargs = retrieve.call_args
    assert args == ("in_9",)
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["stripe_version"] == "2024-06-20"


@pytest.mark.asyncio
async def test_transient_error_retried_then_succeeds(client: StripeProviderClient) -> None:
    list_mock = MagicMock(side_effect=[stripe.APIConnectionError("reset"), _list_object()])
    with patch.object(stripe.Invoice, "list", list_mock):
        result = await client.list_invoices("cus_1")

    assert list_mock.call_count == 2
    assert result.data == []


@pytest.mark.asyncio
async def test_transient_error_exhausts_retries(client: StripeProviderClient) -> None:
    list_mock = MagicMock(side_effect=stripe.RateLimitError("slow down", http_status=429))
    with patch.object(stripe.Invoice, "list", list_mock):
        with pytest.raises(TransientProviderError):
            await client.list_invoices("cus_1")

    assert list_mock.call_count == 3


@pytest.mark.asyncio
async def test_server_error_is_transient(client: StripeProviderClient) -> None:
    retrieve = MagicMock(side_effect=stripe.APIError("boom", http_status=502))
    with patch.object(stripe.Subscription, "retrieve", retrieve):
        with pytest.raises(TransientProviderError):
            await client.retrieve_subscription("sub_1")


@pytest.mark.asyncio
async def test_client_error_not_retried(client: StripeProviderClient) -> None:
    retrieve = MagicMock(side_effect=stripe.InvalidRequestError("No such subscription", "id", http_status=404))
    with patch.object(stripe.Subscription, "retrieve", retrieve):
        with pytest.raises(ProviderError) as excinfo:
            await client.retrieve_subscription("sub_missing")

    assert not isinstance(excinfo.value, TransientProviderError)
    assert retrieve.call_count == 1


@pytest.mark.asyncio
async def test_writes_are_not_retried(client: StripeProviderClient) -> None:
    modify = MagicMock(side_effect=stripe.APIConnectionError("reset"))
    with patch.object(stripe.Subscription, "modify", modify):
        with pytest.raises(TransientProviderError):
            await client.update_subscription("sub_1", cancel_at_period_end=False)

    assert modify.call_count == 1


@pytest.mark.asyncio
async def test_create_customer_is_idempotent_per_org(client: StripeProviderClient) -> None:
    create = MagicMock(return_value={"id": "cus_new"})
    with patch.object(stripe.Customer, "create", create):
        customer = await client.create_customer("org_1", name="Acme", email="owner@acme.test")

    assert customer["id"] == "cus_new"
    kwargs = create.call_args.kwargs
    assert kwargs["idempotency_key"] == "org-customer-org_1"
    assert kwargs["metadata"] == {"org_id": "org_1"}
    assert kwargs["email"] == "owner@acme.test"


@pytest.mark.asyncio
async def test_checkout_session_tags_subscription_with_org(client: StripeProviderClient) -> None:
    create = MagicMock(return_value={"id": "cs_1", "url": "https://checkout.test/cs_1"})
    with patch.object(stripe.checkout.Session, "create", create):
        await client.create_checkout_session(
            customer_id="cus_1",
            price_id="price_pro",
            org_id="org_1",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert kwargs["subscription_data"] == {"metadata": {"org_id": "org_1"}}
    assert kwargs["client_reference_id"] == "org_1"


@pytest.mark.asyncio
async def test_sdk_objects_are_mappable(client: StripeProviderClient) -> None:
    invoice = {
        "id": "in_1",
        "object": "invoice",
        "customer": "cus_1",
        "currency": "eur",
        "amount_due": 15000,
        "amount_paid": 0,
        "status": "open",
        "subscription_details": {"metadata": {"org_id": "org_1"}},
    }
    with patch.object(stripe.Invoice, "list", MagicMock(return_value=_list_object(invoice))):
        page = await client.list_invoices("cus_1")

    record = map_invoice(page.data[0], client.api_version)
    assert record.external_id == "in_1"
    assert record.currency == "EUR"
    assert record.amount_due == 15000
    assert record.metadata == {"org_id": "org_1"}


@pytest.mark.asyncio
async def test_latest_subscription_is_plain_mapping(client: StripeProviderClient) -> None:
    sub = {"id": "sub_1", "object": "subscription", "status": "active", "customer": "cus_1"}
    with patch.object(stripe.Subscription, "list", MagicMock(return_value=_list_object(sub))):
        latest = await client.latest_subscription("cus_1")

    assert isinstance(latest, dict)
    assert latest["id"] == "sub_1"


@pytest.mark.asyncio
async def test_create_customer_returns_plain_mapping(client: StripeProviderClient) -> None:
    customer = stripe.Customer.construct_from({"id": "cus_new", "object": "customer"}, "sk_test_123")
    with patch.object(stripe.Customer, "create", MagicMock(return_value=customer)):
        result = await client.create_customer("org_1", name="Acme", email=None)

    assert result == {"id": "cus_new", "object": "customer"}
