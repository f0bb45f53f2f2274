"""Tests for billing_engine.mapper.state_mapper."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from billing_fakes import make_invoice, make_subscription, ts

from billing_engine.errors import MappingError
from billing_engine.mapper.state_mapper import (
    ItemPeriodShapeAdapter,
    LegacyShapeAdapter,
    adapter_for,
    map_invoice,
    map_subscription,
)

# ---------------------------------------------------------------------------
# Adapter selection
# ---------------------------------------------------------------------------


class TestAdapterSelection:
    def test_legacy_versions(self) -> None:
        assert isinstance(adapter_for("2024-06-20"), LegacyShapeAdapter)
        assert not isinstance(adapter_for("2025-02-24.acacia"), ItemPeriodShapeAdapter)

    def test_item_period_versions(self) -> None:
        assert isinstance(adapter_for("2025-03-31.basil"), ItemPeriodShapeAdapter)
        assert isinstance(adapter_for("2025-09-30.clover"), ItemPeriodShapeAdapter)

    def test_none_uses_default(self) -> None:
        assert isinstance(adapter_for(None, default_version="2025-04-30"), ItemPeriodShapeAdapter)
        assert not isinstance(adapter_for(None, default_version="2023-10-16"), ItemPeriodShapeAdapter)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestMapSubscription:
    def test_basic_fields(self) -> None:
        record = map_subscription(make_subscription("sub_1", status="trialing", cancel_at_period_end=True))

        assert record.external_id == "sub_1"
        assert record.customer_id == "cus_1"
        assert record.status == "TRIALING"
        assert record.price_id == "price_pro"
        assert record.cancel_at_period_end is True
        assert record.current_period_start == datetime(2026, 4, 1, tzinfo=UTC)
        assert record.current_period_end == datetime(2026, 5, 1, tzinfo=UTC)

    def test_expanded_customer_object(self) -> None:
        record = map_subscription(make_subscription("sub_1", customer={"id": "cus_9", "object": "customer"}))
        assert record.customer_id == "cus_9"

    def test_unknown_status_passes_through_uppercased(self) -> None:
        record = map_subscription(make_subscription("sub_1", status="some_future_state"))
        assert record.status == "SOME_FUTURE_STATE"

    def test_missing_status_defaults_to_incomplete(self) -> None:
        payload = make_subscription("sub_1")
        del payload["status"]
        assert map_subscription(payload).status == "INCOMPLETE"

    def test_deleted_forces_canceled(self) -> None:
        record = map_subscription(make_subscription("sub_1", status="active"), deleted=True)
        assert record.status == "CANCELED"

    def test_missing_periods_map_to_none(self) -> None:
        payload = make_subscription("sub_1")
        del payload["current_period_start"]
        del payload["current_period_end"]
        record = map_subscription(payload)
        assert record.current_period_start is None
        assert record.current_period_end is None

    def test_price_falls_back_to_plan(self) -> None:
        payload = make_subscription("sub_1", items={"data": []}, plan={"id": "plan_legacy"})
        assert map_subscription(payload, "2022-11-15").price_id == "plan_legacy"

    def test_item_period_shape(self) -> None:
        payload = make_subscription(
            "sub_1",
            items={
                "data": [
                    {
                        "id": "si_1",
                        "price": {"id": "price_pro"},
                        "current_period_start": ts(2026, 6, 1),
                        "current_period_end": ts(2026, 7, 1),
                    }
                ]
            },
        )
        del payload["current_period_start"]
        del payload["current_period_end"]

        legacy = map_subscription(payload, "2024-06-20")
        current = map_subscription(payload, "2025-03-31.basil")

        assert legacy.current_period_start is None
        assert current.current_period_start == datetime(2026, 6, 1, tzinfo=UTC)
        assert current.current_period_end == datetime(2026, 7, 1, tzinfo=UTC)

    def test_item_period_shape_falls_back_to_top_level(self) -> None:
        record = map_subscription(make_subscription("sub_1"), "2025-03-31.basil")
        assert record.current_period_start == datetime(2026, 4, 1, tzinfo=UTC)

    def test_metadata_is_stringified(self) -> None:
        record = map_subscription(make_subscription("sub_1", metadata={"org_id": "org_1", "seats": 3, "x": None}))
        assert record.metadata == {"org_id": "org_1", "seats": "3"}

    @pytest.mark.parametrize("payload", [None, "sub_1", {}, {"id": ""}, {"object": "subscription"}])
    def test_missing_id_raises(self, payload: object) -> None:
        with pytest.raises(MappingError):
            map_subscription(payload)

    def test_wrong_object_type_raises(self) -> None:
        with pytest.raises(MappingError, match="invoice"):
            map_subscription(make_invoice("in_1"))


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class TestMapInvoice:
    def test_basic_fields(self) -> None:
        record = map_invoice(make_invoice("in_1", amount_paid=5000))

        assert record.external_id == "in_1"
        assert record.customer_id == "cus_1"
        assert record.currency == "USD"
        assert record.amount_due == 15000
        assert record.amount_paid == 5000
        assert record.status == "OPEN"
        assert record.due_date == datetime(2026, 5, 1, tzinfo=UTC)
        assert record.hosted_invoice_url == "https://invoice.stripe.test/in_1"
        assert record.created == datetime(2026, 4, 1, tzinfo=UTC)

    def test_amounts_pass_through_even_when_overpaid(self) -> None:
        record = map_invoice(make_invoice("in_1", amount_due=100, amount_paid=250))
        assert (record.amount_due, record.amount_paid) == (100, 250)

    def test_defaults(self) -> None:
        payload = {"id": "in_1", "object": "invoice"}
        record = map_invoice(payload)

        assert record.status == "DRAFT"
        assert record.currency == "USD"
        assert record.amount_due == 0
        assert record.amount_paid == 0
        assert record.due_date is None
        assert record.created is None
        assert record.customer_id is None

    def test_null_due_date_stays_absent(self) -> None:
        assert map_invoice(make_invoice("in_1", due_date=None)).due_date is None

    def test_float_amount_rejected(self) -> None:
        with pytest.raises(MappingError, match="amount_due"):
            map_invoice(make_invoice("in_1", amount_due=150.0))

    def test_wrongly_typed_field_raises_mapping_error(self) -> None:
        with pytest.raises(MappingError, match="hosted_invoice_url"):
            map_invoice(make_invoice("in_1", hosted_invoice_url=42))

    def test_missing_id_raises(self) -> None:
        payload = make_invoice("in_1")
        del payload["id"]
        with pytest.raises(MappingError, match="missing id"):
            map_invoice(payload)

    def test_subscription_metadata_legacy(self) -> None:
        payload = make_invoice("in_1", subscription_details={"metadata": {"org_id": "org_7"}})
        assert map_invoice(payload, "2024-06-20").metadata == {"org_id": "org_7"}

    def test_subscription_metadata_parent_shape(self) -> None:
        payload = make_invoice("in_1", parent={"subscription_details": {"metadata": {"org_id": "org_8"}}})
        assert map_invoice(payload, "2025-03-31.basil").metadata == {"org_id": "org_8"}

    def test_invoice_metadata_wins_over_subscription_metadata(self) -> None:
        payload = make_invoice(
            "in_1",
            metadata={"org_id": "org_inv"},
            subscription_details={"metadata": {"org_id": "org_sub"}},
        )
        assert map_invoice(payload).metadata["org_id"] == "org_inv"
