"""Tests for GET /api/v1/invoices: pagination, filters, aging fields, rollups."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from api_payloads import invoice_payload
from billing_engine.mapper import map_invoice
from billing_engine.reconciliation import ReconciliationEngine

_ACCOUNTANT = "books@acme.test"


def _ts(delta: timedelta) -> int:
    return int((datetime.now(UTC) + delta).timestamp())


async def _store(session_factory, *payloads, org_id: str = "org_1") -> None:
    async with session_factory() as session:
        engine = ReconciliationEngine(session)
        for payload in payloads:
            await engine.upsert_invoice(map_invoice(payload), tenant_id=org_id)
        await session.commit()


@pytest.fixture()
def get_invoices(client, auth_headers):
    async def _get(**params):
        return await client.get("/api/v1/invoices", params=params, headers=auth_headers(_ACCOUNTANT))

    return _get


@pytest.mark.asyncio
async def test_pagination(seed, session_factory, get_invoices) -> None:
    await seed(accountants=(_ACCOUNTANT,))
    await _store(
        session_factory,
        *(invoice_payload(f"in_{i:02d}", due_date=_ts(timedelta(days=i))) for i in range(12)),
    )

    resp = await get_invoices(page=3, limit=5)

    assert resp.status_code == 200
    body = resp.json()
    assert body["page"] == 3
    assert body["limit"] == 5
    assert body["total"] == 12
    assert body["pages"] == 3
    # Latest due date first, so the last page holds the two earliest.
    assert [row["stripeInvoiceId"] for row in body["data"]] == ["in_01", "in_00"]


@pytest.mark.asyncio
async def test_empty_listing_has_one_page(seed, get_invoices) -> None:
    await seed(accountants=(_ACCOUNTANT,))

    body = (await get_invoices()).json()

    assert body["total"] == 0
    assert body["pages"] == 1
    assert body["data"] == []
    assert body["rollups"] == {
        "buckets": {"0-30": 0, "31-60": 0, "61-90": 0, "90+": 0, "n/a": 0},
        "overdue": 0,
        "atRisk": 0,
    }


@pytest.mark.asyncio
async def test_aging_fields_flags_and_rollups(seed, session_factory, get_invoices) -> None:
    await seed(accountants=(_ACCOUNTANT,))
    await _store(
        session_factory,
        invoice_payload("in_late", due_date=_ts(timedelta(days=-45, hours=-1))),
        invoice_payload("in_soon", due_date=_ts(timedelta(days=3))),
        invoice_payload("in_paid", status="paid", amount_paid=15000, due_date=_ts(timedelta(days=-10))),
        invoice_payload("in_nodue", due_date=None),
    )

    body = (await get_invoices()).json()
    rows = {row["stripeInvoiceId"]: row for row in body["data"]}

    late = rows["in_late"]
    assert late["agingDays"] == 45
    assert late["agingBucket"] == "31-60"
    assert late["flags"] == {"overdue": True, "atRisk": False}
    assert late["outstanding"] == 15000
    assert late["amountDueFormatted"] == "150.00 USD"

    assert rows["in_soon"]["flags"] == {"overdue": False, "atRisk": True}
    assert rows["in_soon"]["agingBucket"] == "0-30"
    assert rows["in_paid"]["flags"] == {"overdue": False, "atRisk": False}
    assert rows["in_paid"]["outstanding"] == 0
    assert rows["in_nodue"]["agingDays"] is None
    assert rows["in_nodue"]["agingBucket"] == "n/a"

    assert body["rollups"] == {
        "buckets": {"0-30": 2, "31-60": 1, "61-90": 0, "90+": 0, "n/a": 1},
        "overdue": 1,
        "atRisk": 1,
    }


@pytest.mark.asyncio
async def test_status_filter_and_search(seed, session_factory, get_invoices) -> None:
    await seed(accountants=(_ACCOUNTANT,))
    await _store(
        session_factory,
        invoice_payload("in_open_1"),
        invoice_payload("in_paid_1", status="paid", amount_paid=15000),
        invoice_payload("in_eur_1", currency="eur"),
    )

    paid = (await get_invoices(status="paid")).json()
    everything = (await get_invoices(status="ALL")).json()
    euros = (await get_invoices(q="EUR")).json()

    assert [row["stripeInvoiceId"] for row in paid["data"]] == ["in_paid_1"]
    assert everything["total"] == 3
    assert [row["stripeInvoiceId"] for row in euros["data"]] == ["in_eur_1"]


@pytest.mark.asyncio
async def test_other_tenants_invoices_not_listed(seed, session_factory, get_invoices) -> None:
    await seed(accountants=(_ACCOUNTANT,))
    await seed("org_2", customer_id="cus_2")
    await _store(session_factory, invoice_payload("in_mine"))
    await _store(session_factory, invoice_payload("in_theirs", customer="cus_2"), org_id="org_2")

    body = (await get_invoices()).json()

    assert [row["stripeInvoiceId"] for row in body["data"]] == ["in_mine"]


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"limit": 51}, {"limit": 0}, {"page": 0}])
async def test_out_of_range_paging_is_422(seed, get_invoices, params) -> None:
    await seed(accountants=(_ACCOUNTANT,))
    resp = await get_invoices(**params)
    assert resp.status_code == 422
