"""Tests for api/api/middleware/prometheus.py

Covers:
- Path normalisation (UUIDs, provider object ids, numeric segments)
- Counter increments for HTTP requests
- Skipped paths (metrics, docs, favicon)
"""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from api.middleware.prometheus import normalise_path

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------


class TestPathNormalisation:
    """Verify normalise_path collapses identifier segments."""

    def test_uuid_collapsed(self) -> None:
        path = "/api/v1/users/550e8400-e29b-41d4-a716-446655440000"
        assert normalise_path(path) == "/api/v1/users/{id}"

    @pytest.mark.parametrize("ident", ["in_1NqXyZ", "sub_1Abc", "cus_Q2w3", "cs_test_a1B2", "evt_1Zz"])
    def test_provider_ids_collapsed(self, ident: str) -> None:
        assert normalise_path(f"/api/v1/objects/{ident}") == "/api/v1/objects/{id}"

    def test_numeric_segment_collapsed(self) -> None:
        assert normalise_path("/api/v1/orgs/42") == "/api/v1/orgs/{id}"

    def test_multiple_segments_collapsed(self) -> None:
        path = "/api/v1/orgs/42/invoices/in_1Abc"
        assert normalise_path(path) == "/api/v1/orgs/{id}/invoices/{id}"

    @pytest.mark.parametrize(
        "path",
        ["/api/v1/invoices", "/api/v1/webhooks/stripe", "/api/v1/cron/reconcile", "/api/v1/analytics/summary"],
    )
    def test_static_path_unchanged(self, path: str) -> None:
        assert normalise_path(path) == path


# ---------------------------------------------------------------------------
# Middleware recording
# ---------------------------------------------------------------------------


def _request_count(method: str, path: str, status_code: str) -> float:
    value = REGISTRY.get_sample_value(
        "billsync_http_requests_total",
        {"method": method, "path": path, "status_code": status_code},
    )
    return value or 0.0


@pytest.mark.asyncio
async def test_request_counted_with_status(client) -> None:
    before = _request_count("GET", "/api/v1/cron/dunning", "200")

    resp = await client.get("/api/v1/cron/dunning")

    assert resp.status_code == 200
    assert _request_count("GET", "/api/v1/cron/dunning", "200") == before + 1


@pytest.mark.asyncio
async def test_rejected_request_counted(client) -> None:
    before = _request_count("POST", "/api/v1/cron/dunning", "401")

    await client.post("/api/v1/cron/dunning")

    assert _request_count("POST", "/api/v1/cron/dunning", "401") == before + 1


@pytest.mark.asyncio
async def test_metrics_path_not_recorded(client) -> None:
    before = _request_count("GET", "/metrics", "200")

    resp = await client.get("/metrics")

    assert resp.status_code == 200
    assert _request_count("GET", "/metrics", "200") == before
