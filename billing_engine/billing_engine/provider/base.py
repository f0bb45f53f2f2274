"""Provider-neutral interface consumed by the reconciliation components.

Components receive a :class:`BillingProvider` instance explicitly; tests
substitute an in-memory fake that satisfies the same protocol.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class InvoicePage:
    """One page of a customer's invoices.

    ``next_cursor`` is the opaque continuation token to pass as
    ``starting_after`` for the following page.
    """

    data: list[Mapping[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


class BillingProvider(Protocol):
    """Read/write operations the core needs from the payment provider."""

    @property
    def api_version(self) -> str: ...

    def verify_signature(self, payload: bytes, header: str | None, secret: str, tolerance: int = 300) -> None:
        """Raise :class:`~billing_engine.errors.SignatureError` unless *header* signs *payload*."""
        ...

    async def list_invoices(
        self,
        customer_id: str,
        *,
        limit: int = 100,
        starting_after: str | None = None,
    ) -> InvoicePage: ...

    async def latest_subscription(self, customer_id: str) -> Mapping[str, Any] | None: ...

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]: ...

    async def retrieve_invoice(self, invoice_id: str) -> Mapping[str, Any]: ...

    async def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]: ...

    async def update_subscription(self, subscription_id: str, **fields: Any) -> Mapping[str, Any]: ...

    async def create_customer(self, org_id: str, *, name: str, email: str | None) -> Mapping[str, Any]: ...

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        org_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Mapping[str, Any]: ...
