"""Exception taxonomy for the billing reconciliation core.

Callers branch on these types to decide between rejecting, skipping, and
retrying:

* :class:`SignatureError` -- inbound event cannot be trusted; reject.
* :class:`UnresolvedTenantError` -- record cannot be attributed to a tenant;
  log and skip.
* :class:`MappingError` -- provider payload is missing identifying fields;
  skip that record and continue the batch.
* :class:`TransientProviderError` -- network or rate-limit failure talking
  to the provider; propagate so the caller can retry the whole operation.
* :class:`StoreError` -- persistence failure; propagate, the operation is
  not complete.
"""

from __future__ import annotations


class BillingSyncError(Exception):
    """Base class for every error raised by the billing engine."""


class SignatureError(BillingSyncError):
    """The inbound event signature is missing, malformed, or does not verify."""


class UnresolvedTenantError(BillingSyncError):
    """No organization owns the customer reference carried by a record."""

    def __init__(self, customer_id: str | None, org_hint: str | None = None) -> None:
        self.customer_id = customer_id
        self.org_hint = org_hint
        super().__init__(f"No tenant for customer={customer_id!r} (metadata org_id={org_hint!r})")


class MappingError(BillingSyncError):
    """A provider object lacks the fields required to normalize it."""

    def __init__(self, kind: str, reason: str) -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(f"Cannot map provider {kind}: {reason}")


class ProviderError(BillingSyncError):
    """A non-retryable error returned by the billing provider."""


class TransientProviderError(ProviderError):
    """A network, rate-limit, or provider-side 5xx failure that may succeed on retry."""


class StoreError(BillingSyncError):
    """The local state store rejected or failed a write."""


class MailDeliveryError(BillingSyncError):
    """The mail transport refused or failed to deliver a notification."""
