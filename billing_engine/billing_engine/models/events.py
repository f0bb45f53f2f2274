"""Validated schema for inbound provider events.

Raw webhook JSON is parsed into a tagged union keyed on ``category`` before
anything reaches the reconciliation engine.  Event types the engine does not
act on become :class:`IgnoredEvent` and carry no payload requirements.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from billing_engine.errors import MappingError


class EventCategory(str, Enum):
    """What an inbound event is about, as far as reconciliation is concerned."""

    INVOICE = "invoice"
    SUBSCRIPTION = "subscription"
    IGNORED = "ignored"


INVOICE_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "invoice.created",
        "invoice.finalized",
        "invoice.updated",
        "invoice.paid",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "invoice.voided",
        "invoice.marked_uncollectible",
    }
)

SUBSCRIPTION_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)


def categorize(event_type: str) -> EventCategory:
    """Map a provider event type string onto an :class:`EventCategory`."""
    if event_type in INVOICE_EVENT_TYPES:
        return EventCategory.INVOICE
    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return EventCategory.SUBSCRIPTION
    return EventCategory.IGNORED


class _EventEnvelope(BaseModel):
    id: str = Field(..., min_length=1, description="Provider event id.")
    type: str = Field(..., min_length=1)
    api_version: str | None = None
    created: int | None = None
    livemode: bool = False


class InvoiceEvent(_EventEnvelope):
    """An invoice lifecycle transition; ``object`` is the invoice snapshot."""

    category: Literal["invoice"] = "invoice"
    object: dict[str, Any]


class SubscriptionEvent(_EventEnvelope):
    """A subscription lifecycle transition; ``object`` is the subscription snapshot."""

    category: Literal["subscription"] = "subscription"
    object: dict[str, Any]

    @property
    def is_deletion(self) -> bool:
        return self.type == "customer.subscription.deleted"


class IgnoredEvent(_EventEnvelope):
    """An event type acknowledged without processing."""

    category: Literal["ignored"] = "ignored"
    object: dict[str, Any] = Field(default_factory=dict)


ProviderEvent = Annotated[
    InvoiceEvent | SubscriptionEvent | IgnoredEvent,
    Field(discriminator="category"),
]

_EVENT_ADAPTER: TypeAdapter[InvoiceEvent | SubscriptionEvent | IgnoredEvent] = TypeAdapter(ProviderEvent)


def parse_event(raw: Any) -> InvoiceEvent | SubscriptionEvent | IgnoredEvent:
    """Validate a decoded webhook body into a :data:`ProviderEvent`.

    Parameters
    ----------
    raw:
        The JSON-decoded request body.

    Returns
    -------
    InvoiceEvent | SubscriptionEvent | IgnoredEvent
        The validated event, discriminated by category.

    Raises
    ------
    MappingError
        If the envelope lacks an id or type, or a recognised event has no
        ``data.object`` payload.
    """
    if not isinstance(raw, dict):
        raise MappingError("event", "payload is not a JSON object")

    event_type = raw.get("type")
    data = raw.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    category = categorize(event_type) if isinstance(event_type, str) else EventCategory.IGNORED

    candidate: dict[str, Any] = {
        "id": raw.get("id"),
        "type": event_type,
        "api_version": raw.get("api_version"),
        "created": raw.get("created"),
        "livemode": bool(raw.get("livemode", False)),
        "category": category.value,
    }
    if obj is not None:
        candidate["object"] = obj

    try:
        return _EVENT_ADAPTER.validate_python(candidate)
    except ValidationError as exc:
        raise MappingError("event", f"invalid {category.value} envelope: {exc.error_count()} error(s)") from exc
