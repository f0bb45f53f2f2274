"""Pure functions mapping provider objects onto normalized records.

The provider's object layout depends on the API version the payload was
rendered with.  A shape adapter, chosen by API version, hides that variance
so :func:`map_subscription` and :func:`map_invoice` read every field from
one stable place.

Mapping never invents data: absent timestamps stay ``None`` and the
reconciliation engine decides what a create path falls back to.  Amounts
are integer minor units and are passed through untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from billing_engine.config import DEFAULT_STRIPE_API_VERSION
from billing_engine.errors import MappingError
from billing_engine.models.billing import (
    InvoiceStatus,
    NormalizedInvoice,
    NormalizedSubscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

# First API version that reports billing periods on subscription items
# rather than on the subscription itself.
ITEM_PERIOD_API_VERSION = "2025-03-31"


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _timestamp(value: Any) -> datetime | None:
    """Convert a unix-seconds value into an aware UTC datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.debug("Unparseable provider timestamp %r", value)
        return None


def _reference(value: Any) -> str | None:
    """Return the id of a reference that may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def _amount(obj: Mapping[str, Any], field: str, kind: str) -> int:
    value = obj.get(field)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise MappingError(kind, f"{field} must be an integer amount in minor units, got {value!r}")
    return value


def _metadata(obj: Mapping[str, Any]) -> dict[str, str]:
    raw = obj.get("metadata")
    if not isinstance(raw, Mapping):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _first_item(sub: Mapping[str, Any]) -> Mapping[str, Any]:
    items = sub.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(part) for part in err["loc"]) or "payload"
    return f"{field}: {err['msg']}"


def _require_id(obj: Any, kind: str) -> str:
    if not isinstance(obj, Mapping):
        raise MappingError(kind, "payload is not an object")
    declared = obj.get("object")
    if declared is not None and declared != kind:
        raise MappingError(kind, f"payload is a {declared!r}")
    external_id = obj.get("id")
    if not isinstance(external_id, str) or not external_id:
        raise MappingError(kind, "missing id")
    return external_id


# ---------------------------------------------------------------------------
# Version-specific shape adapters
# ---------------------------------------------------------------------------


class LegacyShapeAdapter:
    """Payload layout for API versions before :data:`ITEM_PERIOD_API_VERSION`.

    Subscription periods sit on the subscription object and the price may
    only be available through the deprecated ``plan`` field.
    """

    def subscription_period(self, sub: Mapping[str, Any]) -> tuple[Any, Any]:
        return sub.get("current_period_start"), sub.get("current_period_end")

    def subscription_price(self, sub: Mapping[str, Any]) -> str | None:
        price = _reference(_first_item(sub).get("price"))
        if price is None:
            price = _reference(sub.get("plan"))
        return price

    def invoice_period(self, inv: Mapping[str, Any]) -> tuple[Any, Any]:
        return inv.get("period_start"), inv.get("period_end")

    def invoice_subscription_metadata(self, inv: Mapping[str, Any]) -> dict[str, str]:
        """Metadata of the subscription that generated the invoice."""
        return _metadata(inv.get("subscription_details") or {})


class ItemPeriodShapeAdapter(LegacyShapeAdapter):
    """Payload layout from :data:`ITEM_PERIOD_API_VERSION` onwards.

    Periods moved onto the first subscription item.  The top-level fields
    are still consulted when an item carries none.
    """

    def subscription_period(self, sub: Mapping[str, Any]) -> tuple[Any, Any]:
        item = _first_item(sub)
        start = item.get("current_period_start")
        end = item.get("current_period_end")
        if start is None and end is None:
            return super().subscription_period(sub)
        return start, end

    def invoice_subscription_metadata(self, inv: Mapping[str, Any]) -> dict[str, str]:
        parent = inv.get("parent")
        details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
        if isinstance(details, Mapping):
            return _metadata(details)
        return super().invoice_subscription_metadata(inv)


def adapter_for(api_version: str | None, default_version: str = DEFAULT_STRIPE_API_VERSION) -> LegacyShapeAdapter:
    """Select the shape adapter for a payload rendered with *api_version*.

    Version strings are date-prefixed (``2025-03-31.basil``), so the date
    part compares lexically.
    """
    version = (api_version or default_version)[:10]
    if version >= ITEM_PERIOD_API_VERSION:
        return ItemPeriodShapeAdapter()
    return LegacyShapeAdapter()


# ---------------------------------------------------------------------------
# Public mappers
# ---------------------------------------------------------------------------


def map_subscription(
    obj: Any,
    api_version: str | None = None,
    *,
    deleted: bool = False,
) -> NormalizedSubscription:
    """Normalize a provider subscription object.

    Parameters
    ----------
    obj:
        Provider subscription payload (a mapping).
    api_version:
        API version the payload was rendered with; selects the shape adapter.
    deleted:
        ``True`` when the object came from a deletion event.  Deletion is a
        terminal status, so the status is forced to ``CANCELED``.

    Raises
    ------
    MappingError
        If the payload is not a subscription, has no id, or has a field of
        the wrong type.
    """
    external_id = _require_id(obj, "subscription")
    adapter = adapter_for(api_version)
    start, end = adapter.subscription_period(obj)

    status = obj.get("status") or SubscriptionStatus.INCOMPLETE.value
    if deleted:
        status = SubscriptionStatus.CANCELED.value

    try:
        return NormalizedSubscription(
            external_id=external_id,
            customer_id=_reference(obj.get("customer")),
            status=str(status),
            price_id=adapter.subscription_price(obj),
            current_period_start=_timestamp(start),
            current_period_end=_timestamp(end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            metadata=_metadata(obj),
        )
    except ValidationError as exc:
        raise MappingError("subscription", _first_error(exc)) from exc


def map_invoice(obj: Any, api_version: str | None = None) -> NormalizedInvoice:
    """Normalize a provider invoice object.

    Missing status defaults to ``DRAFT`` and missing currency to ``USD``.

    Raises
    ------
    MappingError
        If the payload is not an invoice, has no id, carries a
        non-integer amount, or has a field of the wrong type.
    """
    external_id = _require_id(obj, "invoice")
    adapter = adapter_for(api_version)
    period_start, period_end = adapter.invoice_period(obj)

    try:
        return NormalizedInvoice(
            external_id=external_id,
            customer_id=_reference(obj.get("customer")),
            currency=str(obj.get("currency") or "usd"),
            amount_due=_amount(obj, "amount_due", "invoice"),
            amount_paid=_amount(obj, "amount_paid", "invoice"),
            status=str(obj.get("status") or InvoiceStatus.DRAFT.value),
            due_date=_timestamp(obj.get("due_date")),
            period_start=_timestamp(period_start),
            period_end=_timestamp(period_end),
            hosted_invoice_url=obj.get("hosted_invoice_url") or None,
            created=_timestamp(obj.get("created")),
            metadata={**adapter.invoice_subscription_metadata(obj), **_metadata(obj)},
        )
    except ValidationError as exc:
        raise MappingError("invoice", _first_error(exc)) from exc
