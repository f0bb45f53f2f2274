"""Receivables analytics endpoints (Pro plan)."""

from __future__ import annotations

from typing import Annotated

from billing_engine.license.feature_flags import Feature
from fastapi import APIRouter, Depends

from api.dependencies import OrgContext, SessionDep, require_feature
from api.schemas import (
    AgingResponse,
    BucketRollupResponse,
    DunningActivityResponse,
    DunningAnalyticsResponse,
    KpiSummaryResponse,
    KpiValues,
)
from api.services.analytics_service import AnalyticsService

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/aging", response_model=AgingResponse)
async def aging(
    session: SessionDep,
    ctx: Annotated[OrgContext, Depends(require_feature(Feature.AGING_ANALYTICS))],
) -> AgingResponse:
    """Outstanding balance and overdue count per aging bucket."""
    rollup = await AnalyticsService(session).aging(ctx.org_id)
    return AgingResponse(
        rollup={
            bucket: BucketRollupResponse(count=entry.count, outstanding=entry.outstanding, overdue=entry.overdue)
            for bucket, entry in rollup.items()
        }
    )


@router.get("/dunning", response_model=DunningAnalyticsResponse)
async def dunning(
    session: SessionDep,
    ctx: Annotated[OrgContext, Depends(require_feature(Feature.DUNNING_ANALYTICS))],
) -> DunningAnalyticsResponse:
    """Dunning notices sent in the last 30 days."""
    activity = await AnalyticsService(session).dunning(ctx.org_id)
    return DunningAnalyticsResponse(
        last30d=DunningActivityResponse(
            total=activity.total,
            upcoming=activity.upcoming,
            overdue=activity.overdue,
            mocked=activity.mocked,
        )
    )


@router.get("/summary", response_model=KpiSummaryResponse)
async def summary(
    session: SessionDep,
    ctx: Annotated[OrgContext, Depends(require_feature(Feature.KPI_SUMMARY))],
) -> KpiSummaryResponse:
    """Headline KPIs over the trailing 30 days."""
    kpis = await AnalyticsService(session).summary(ctx.org_id)
    return KpiSummaryResponse(
        currency=kpis.currency,
        kpis=KpiValues(
            mrr=kpis.mrr,
            arr=kpis.arr,
            active_customers=kpis.active_customers,
            arpa=kpis.arpa,
            collection_rate=kpis.collection_rate,
            dso=kpis.dso,
        ),
    )
