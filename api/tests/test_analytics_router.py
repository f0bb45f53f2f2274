"""Tests for the Pro-gated /api/v1/analytics endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from api_payloads import invoice_payload, subscription_payload
from billing_engine.mapper import map_invoice, map_subscription
from billing_engine.reconciliation import ReconciliationEngine
from billing_engine.state.repository import AuditRepository

_OWNER = "owner@acme.test"


def _ts(delta: timedelta) -> int:
    return int((datetime.now(UTC) + delta).timestamp())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("path", "feature"),
    [
        ("/api/v1/analytics/aging", "aging_analytics"),
        ("/api/v1/analytics/dunning", "dunning_analytics"),
        ("/api/v1/analytics/summary", "kpi_summary"),
    ],
)
async def test_free_plan_gets_upgrade_message(client, seed, auth_headers, path: str, feature: str) -> None:
    await seed(owners=(_OWNER,))

    resp = await client.get(path, headers=auth_headers(_OWNER))

    assert resp.status_code == 403
    detail = resp.json()["detail"]
    assert f"Feature '{feature}' requires the Pro plan" in detail
    assert "Your current plan is 'FREE'" in detail


@pytest.mark.asyncio
async def test_aging_rollup(client, seed, auth_headers, session_factory) -> None:
    await seed(plan="PRO", owners=(_OWNER,))
    async with session_factory() as session:
        engine = ReconciliationEngine(session)
        for payload in (
            invoice_payload("in_1", due_date=_ts(timedelta(days=-100))),
            invoice_payload("in_2", due_date=_ts(timedelta(days=-70)), amount_paid=5000),
            invoice_payload("in_3", due_date=_ts(timedelta(days=5))),
            invoice_payload("in_4", status="paid", amount_paid=20000, due_date=_ts(timedelta(days=-2))),
        ):
            await engine.upsert_invoice(map_invoice(payload), tenant_id="org_1")
        await session.commit()

    resp = await client.get("/api/v1/analytics/aging", headers=auth_headers(_OWNER))

    assert resp.status_code == 200
    assert resp.json() == {
        "ok": True,
        "rollup": {
            "0-30": {"count": 2, "outstanding": 15000, "overdue": 0},
            "31-60": {"count": 0, "outstanding": 0, "overdue": 0},
            "61-90": {"count": 1, "outstanding": 10000, "overdue": 1},
            "90+": {"count": 1, "outstanding": 15000, "overdue": 1},
            "n/a": {"count": 0, "outstanding": 0, "overdue": 0},
        },
    }


@pytest.mark.asyncio
async def test_dunning_activity_last_30_days(client, seed, auth_headers, session_factory) -> None:
    await seed(plan="PRO", owners=(_OWNER,))
    await seed("org_2", plan="PRO", customer_id="cus_2")
    async with session_factory() as session:
        audit = AuditRepository(session)
        for org_id, kind, mocked in (
            ("org_1", "overdue", True),
            ("org_1", "upcoming", False),
            ("org_1", "overdue", False),
            ("org_2", "overdue", True),
        ):
            await audit.log(
                action="dunning.sent",
                org_id=org_id,
                entity_type="invoice",
                entity_id="in_x",
                metadata={"to": _OWNER, "kind": kind, "mocked": mocked},
            )
        await session.commit()

    resp = await client.get("/api/v1/analytics/dunning", headers=auth_headers(_OWNER))

    assert resp.json() == {
        "ok": True,
        "last30d": {"total": 3, "upcoming": 1, "overdue": 2, "mocked": 1},
    }


@pytest.mark.asyncio
async def test_kpi_summary(client, seed, auth_headers, session_factory) -> None:
    await seed(owners=(_OWNER,))
    recent = _ts(timedelta(days=-5))
    async with session_factory() as session:
        engine = ReconciliationEngine(session)
        await engine.upsert_subscription(map_subscription(subscription_payload("sub_1")), tenant_id="org_1")
        await engine.upsert_invoice(
            map_invoice(invoice_payload("in_paid", status="paid", amount_paid=15000, period_end=recent)),
            tenant_id="org_1",
        )
        await engine.upsert_invoice(
            map_invoice(invoice_payload("in_open", period_end=recent)),
            tenant_id="org_1",
        )
        await session.commit()

    resp = await client.get("/api/v1/analytics/summary", headers=auth_headers(_OWNER))

    assert resp.status_code == 200
    assert resp.json() == {
        "ok": True,
        "currency": "USD",
        "kpis": {
            "MRR": 15000,
            "ARR": 180000,
            "activeCustomers": 1,
            "ARPA": 15000.0,
            "collectionRate": 0.5,
            "DSO": 30.0,
        },
    }
