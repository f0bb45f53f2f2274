"""Billing provider client abstraction and the Stripe implementation."""

from __future__ import annotations

from billing_engine.provider.base import BillingProvider, InvoicePage
from billing_engine.provider.retry import RetryConfig, async_retry_with_backoff
from billing_engine.provider.stripe_client import StripeProviderClient

__all__ = [
    "BillingProvider",
    "InvoicePage",
    "RetryConfig",
    "StripeProviderClient",
    "async_retry_with_backoff",
]
