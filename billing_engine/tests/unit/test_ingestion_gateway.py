"""Tests for billing_engine.ingestion.gateway.EventIngestionGateway."""

from __future__ import annotations

import json
import logging
from typing import Any

import pytest
from billing_fakes import VALID_SIGNATURE, make_invoice, make_subscription
from prometheus_client import REGISTRY
from sqlalchemy.exc import SQLAlchemyError

from billing_engine.errors import SignatureError, StoreError
from billing_engine.ingestion.gateway import EventIngestionGateway, IngestionOutcome
from billing_engine.state.repository import (
    AuditRepository,
    InvoiceRepository,
    OrganizationRepository,
    SubscriptionRepository,
)


def _event(event_id: str, event_type: str, obj: dict[str, Any] | None, api_version: str = "2024-06-20") -> bytes:
    raw: dict[str, Any] = {"id": event_id, "object": "event", "type": event_type, "api_version": api_version}
    if obj is not None:
        raw["data"] = {"object": obj}
    return json.dumps(raw).encode()


@pytest.fixture
def gateway(session, provider) -> EventIngestionGateway:
    return EventIngestionGateway(session, provider, webhook_secret="whsec_test")


# ---------------------------------------------------------------------------
# Signature handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bad_signature_rejected_before_parsing(gateway) -> None:
    before = REGISTRY.get_sample_value("billsync_webhook_events_total", {"outcome": "signature_rejected"}) or 0.0

    with pytest.raises(SignatureError):
        await gateway.ingest(b"not even json", "t=1,v1=forged")

    after = REGISTRY.get_sample_value("billsync_webhook_events_total", {"outcome": "signature_rejected"})
    assert after == before + 1


@pytest.mark.asyncio
async def test_missing_signature_rejected(gateway) -> None:
    with pytest.raises(SignatureError):
        await gateway.ingest(_event("evt_1", "invoice.paid", make_invoice("in_1")), None)


# ---------------------------------------------------------------------------
# Acknowledged no-ops
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unrecognized_type_ignored(gateway) -> None:
    result = await gateway.ingest(_event("evt_1", "charge.succeeded", {"id": "ch_1"}), VALID_SIGNATURE)

    assert result.outcome is IngestionOutcome.IGNORED
    assert result.event_type == "charge.succeeded"


@pytest.mark.asyncio
async def test_undecodable_body_skipped(gateway) -> None:
    result = await gateway.ingest(b"{truncated", VALID_SIGNATURE)
    assert result.outcome is IngestionOutcome.MAPPING_SKIPPED


@pytest.mark.asyncio
async def test_payload_without_id_skipped(seed, gateway, session) -> None:
    await seed()
    invoice = make_invoice("in_1")
    del invoice["id"]

    result = await gateway.ingest(_event("evt_1", "invoice.finalized", invoice), VALID_SIGNATURE)

    assert result.outcome is IngestionOutcome.MAPPING_SKIPPED
    assert result.event_id == "evt_1"
    assert await AuditRepository(session).query() == []


@pytest.mark.asyncio
async def test_wrongly_typed_field_skipped(seed, gateway, session) -> None:
    await seed()
    invoice = make_invoice("in_1", hosted_invoice_url=42)

    result = await gateway.ingest(_event("evt_1", "invoice.finalized", invoice), VALID_SIGNATURE)

    assert result.outcome is IngestionOutcome.MAPPING_SKIPPED
    assert await InvoiceRepository(session).get("in_1") is None


@pytest.mark.asyncio
async def test_unknown_tenant_skipped_and_audited(gateway, session) -> None:
    result = await gateway.ingest(
        _event("evt_1", "invoice.finalized", make_invoice("in_1", customer="cus_ghost")),
        VALID_SIGNATURE,
    )

    assert result.outcome is IngestionOutcome.TENANT_UNRESOLVED
    assert await InvoiceRepository(session).get("in_1") is None

    entries = await AuditRepository(session).query(action="webhook.skipped")
    assert len(entries) == 1
    assert entries[0].org_id is None
    assert entries[0].entity_type == "provider_event_skipped"
    assert entries[0].entity_id == "evt_1"
    assert entries[0].metadata_json["customer"] == "cus_ghost"


# ---------------------------------------------------------------------------
# Applied events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invoice_event_applied(seed, gateway, session) -> None:
    await seed()

    result = await gateway.ingest(
        _event("evt_1", "invoice.payment_succeeded", make_invoice("in_1", status="paid", amount_paid=15000)),
        VALID_SIGNATURE,
    )

    assert result.outcome is IngestionOutcome.APPLIED
    assert result.tenant_id == "org_1"
    row = await InvoiceRepository(session).get("in_1")
    assert row.status == "PAID"
    assert row.org_id == "org_1"


@pytest.mark.asyncio
async def test_applied_event_logs_billing_context(seed, gateway, caplog) -> None:
    await seed()

    with caplog.at_level(logging.INFO, logger="billing_engine.ingestion.gateway"):
        await gateway.ingest(_event("evt_1", "invoice.finalized", make_invoice("in_1")), VALID_SIGNATURE)

    applied = [r for r in caplog.records if r.getMessage().startswith("Applied event evt_1")]
    assert len(applied) == 1
    assert applied[0].billing == {
        "event_id": "evt_1",
        "event_type": "invoice.finalized",
        "org_id": "org_1",
        "outcome": "applied",
    }


@pytest.mark.asyncio
async def test_duplicate_delivery_acknowledged_without_reapplying(seed, gateway, session) -> None:
    await seed()
    body = _event("evt_1", "invoice.finalized", make_invoice("in_1"))

    first = await gateway.ingest(body, VALID_SIGNATURE)
    second = await gateway.ingest(body, VALID_SIGNATURE)

    assert first.outcome is IngestionOutcome.APPLIED
    assert second.outcome is IngestionOutcome.DUPLICATE
    assert len(await AuditRepository(session).query(org_id="org_1")) == 1


@pytest.mark.asyncio
async def test_skipped_event_is_applied_on_redelivery_once_resolvable(seed, gateway, session) -> None:
    body = _event("evt_1", "invoice.finalized", make_invoice("in_1", customer="cus_1"))

    assert (await gateway.ingest(body, VALID_SIGNATURE)).outcome is IngestionOutcome.TENANT_UNRESOLVED
    await seed()
    assert (await gateway.ingest(body, VALID_SIGNATURE)).outcome is IngestionOutcome.APPLIED


@pytest.mark.asyncio
async def test_trialing_before_tenant_then_active_after(seed, gateway, session) -> None:
    await seed("org_1", customer_id=None)

    early = await gateway.ingest(
        _event("evt_1", "customer.subscription.created", make_subscription("sub_1", customer="cus_new", status="trialing")),
        VALID_SIGNATURE,
    )

    assert early.outcome is IngestionOutcome.TENANT_UNRESOLVED
    assert await SubscriptionRepository(session).get("sub_1") is None
    assert (await OrganizationRepository(session).get("org_1")).plan == "FREE"

    later = await gateway.ingest(
        _event(
            "evt_2",
            "customer.subscription.updated",
            make_subscription("sub_1", customer="cus_new", status="active", metadata={"org_id": "org_1"}),
        ),
        VALID_SIGNATURE,
    )

    assert later.outcome is IngestionOutcome.APPLIED
    assert later.tenant_id == "org_1"
    row = await SubscriptionRepository(session).get("sub_1")
    assert row.status == "ACTIVE"
    org = await OrganizationRepository(session).get("org_1")
    assert org.plan == "PRO"
    assert org.stripe_customer_id == "cus_new"


@pytest.mark.asyncio
async def test_subscription_deletion_downgrades(seed, gateway, session) -> None:
    await seed()
    await gateway.ingest(_event("evt_1", "customer.subscription.created", make_subscription("sub_1")), VALID_SIGNATURE)

    result = await gateway.ingest(
        _event("evt_2", "customer.subscription.deleted", make_subscription("sub_1", status="active")),
        VALID_SIGNATURE,
    )

    assert result.outcome is IngestionOutcome.APPLIED
    assert (await SubscriptionRepository(session).get("sub_1")).status == "CANCELED"
    assert (await OrganizationRepository(session).get("org_1")).plan == "FREE"


@pytest.mark.asyncio
async def test_store_failure_propagates(seed, gateway, monkeypatch) -> None:
    await seed()

    async def _fail(self, values, update_columns):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(InvoiceRepository, "upsert", _fail)

    with pytest.raises(StoreError):
        await gateway.ingest(_event("evt_1", "invoice.finalized", make_invoice("in_1")), VALID_SIGNATURE)
