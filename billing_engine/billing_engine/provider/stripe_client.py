"""Stripe implementation of :class:`~billing_engine.provider.base.BillingProvider`.

The client is an ordinary instance: the API key and pinned API version are
passed per request, so nothing is written to the ``stripe`` module's global
configuration and several clients can coexist in one process.

The Stripe SDK is synchronous; every call runs in a worker thread.  Results
leave the client as plain nested dicts, so the mapper and services only ever
see ordinary mappings.  SDK exceptions are translated at this boundary:

* connection failures, rate limiting, and provider-side 5xx responses become
  :class:`TransientProviderError` (reads are retried with backoff first);
* any other Stripe error becomes :class:`ProviderError`;
* signature failures become :class:`SignatureError`.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Mapping
from typing import Any

import stripe

from billing_engine.config import DEFAULT_STRIPE_API_VERSION, Settings
from billing_engine.errors import ProviderError, SignatureError, TransientProviderError
from billing_engine.provider.base import InvoicePage
from billing_engine.provider.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)


def _plain(result: Any) -> Any:
    """Return SDK objects as plain nested dicts; recent SDKs no longer subclass ``dict``."""
    if isinstance(result, stripe.StripeObject):
        return result.to_dict()
    return result


def _translate(exc: stripe.StripeError) -> ProviderError:
    """Map a Stripe SDK exception onto the engine's error taxonomy."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientProviderError(f"Stripe unavailable: {exc.user_message or exc}")
    if isinstance(exc, stripe.APIError) and (exc.http_status is None or exc.http_status >= 500):
        return TransientProviderError(f"Stripe server error ({exc.http_status}): {exc.user_message or exc}")
    return ProviderError(f"Stripe request failed ({exc.http_status}): {exc.user_message or exc}")


class StripeProviderClient:
    """Explicitly constructed Stripe client.

    Parameters
    ----------
    api_key:
        Stripe secret key used for every request this client makes.
    api_version:
        Stripe API version to pin requests to.  The state mapper uses the
        same value to pick its payload shape adapter.
    retry:
        Backoff policy for read calls.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_version: str = DEFAULT_STRIPE_API_VERSION,
        retry: RetryConfig | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_version = api_version
        self._retry = retry or RetryConfig()

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeProviderClient:
        return cls(
            settings.stripe_secret_key.get_secret_value(),
            api_version=settings.stripe_api_version,
            retry=RetryConfig(
                max_retries=settings.provider_max_retries,
                base_delay=settings.provider_base_delay,
                max_delay=settings.provider_max_delay,
            ),
        )

    @property
    def api_version(self) -> str:
        return self._api_version

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request(self, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        call = functools.partial(fn, *args, api_key=self._api_key, stripe_version=self._api_version, **params)
        try:
            result = await asyncio.to_thread(call)
        except stripe.StripeError as exc:
            raise _translate(exc) from exc
        return _plain(result)

    async def _read(self, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        return await async_retry_with_backoff(
            lambda: self._request(fn, *args, **params),
            self._retry,
            retryable_exceptions=(TransientProviderError,),
        )

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def verify_signature(self, payload: bytes, header: str | None, secret: str, tolerance: int = 300) -> None:
        """Verify a webhook signature over the raw request body.

        Raises
        ------
        SignatureError
            If the header is missing, the secret is unset, the body is not
            UTF-8, or the HMAC does not match within *tolerance* seconds.
        """
        if not header:
            raise SignatureError("Missing Stripe-Signature header")
        if not secret:
            raise SignatureError("Webhook signing secret is not configured")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureError("Webhook body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, header, secret, tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_invoices(
        self,
        customer_id: str,
        *,
        limit: int = 100,
        starting_after: str | None = None,
    ) -> InvoicePage:
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        page = await self._read(stripe.Invoice.list, **params)
        data = list(page.get("data") or [])
        return InvoicePage(
            data=data,
            has_more=bool(page.get("has_more")),
            next_cursor=data[-1].get("id") if data else None,
        )

    async def latest_subscription(self, customer_id: str) -> Mapping[str, Any] | None:
        page = await self._read(stripe.Subscription.list, customer=customer_id, status="all", limit=1)
        data = page.get("data") or []
        return data[0] if data else None

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        return await self._read(stripe.Subscription.retrieve, subscription_id)

    async def retrieve_invoice(self, invoice_id: str) -> Mapping[str, Any]:
        return await self._read(stripe.Invoice.retrieve, invoice_id)

    async def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        return await self._read(
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription", "subscription.latest_invoice"],
        )

    # ------------------------------------------------------------------
    # Writes (not retried)
    # ------------------------------------------------------------------

    async def update_subscription(self, subscription_id: str, **fields: Any) -> Mapping[str, Any]:
        return await self._request(stripe.Subscription.modify, subscription_id, **fields)

    async def create_customer(self, org_id: str, *, name: str, email: str | None) -> Mapping[str, Any]:
        """Create a customer tagged with ``metadata.org_id`` for later tenant resolution."""
        params: dict[str, Any] = {"name": name, "metadata": {"org_id": org_id}}
        if email:
            params["email"] = email
        customer = await self._request(stripe.Customer.create, idempotency_key=f"org-customer-{org_id}", **params)
        logger.info("Created Stripe customer %s for org %s", customer.get("id"), org_id)
        return customer

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        org_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Mapping[str, Any]:
        return await self._request(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            allow_promotion_codes=True,
            client_reference_id=org_id,
            subscription_data={"metadata": {"org_id": org_id}},
            success_url=success_url,
            cancel_url=cancel_url,
        )
