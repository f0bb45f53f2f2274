"""Scheduler-triggered jobs: full reconciliation sweep and dunning run.

Both POST endpoints require the shared secret in ``x-cron-key``.  The GET
variants are unauthenticated probes that only confirm the route exists.
"""

from __future__ import annotations

import logging

from billing_engine.dunning import DunningRunner
from billing_engine.reconciliation import FullReconciliationSweep
from fastapi import APIRouter, Depends

from api.dependencies import (
    EngineSettingsDep,
    MailerDep,
    ProviderDep,
    SessionDep,
    SessionFactoryDep,
    SettingsDep,
    require_cron_key,
)
from api.schemas import CronDunningResponse, CronProbeResponse, CronReconcileResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.post(
    "/reconcile",
    response_model=CronReconcileResponse,
    dependencies=[Depends(require_cron_key)],
)
async def run_reconcile(
    factory: SessionFactoryDep,
    provider: ProviderDep,
    engine_settings: EngineSettingsDep,
) -> CronReconcileResponse:
    """Re-pull provider state for every tenant with a customer reference."""
    sweep = FullReconciliationSweep(
        factory,
        provider,
        page_size=engine_settings.sweep_page_size,
        max_pages=engine_settings.sweep_max_pages,
    )
    result = await sweep.reconcile_all()
    return CronReconcileResponse(
        organizations=result.tenants_scanned,
        invoices_upserted=result.invoices_upserted,
        subscriptions_synced=result.subscriptions_synced,
        records_skipped=result.records_skipped,
    )


@router.post(
    "/dunning",
    response_model=CronDunningResponse,
    dependencies=[Depends(require_cron_key)],
)
async def run_dunning(
    session: SessionDep,
    mailer: MailerDep,
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
) -> CronDunningResponse:
    """Send overdue and upcoming notices to tenant owners."""
    runner = DunningRunner(
        session,
        mailer,
        window_days=engine_settings.dunning_window_days,
        dedupe_daily=engine_settings.dunning_dedupe_daily,
        app_url=settings.app_url,
    )
    result = await runner.run_dunning()
    return CronDunningResponse(
        scanned=result.scanned,
        overdue=result.overdue,
        upcoming=result.upcoming,
        sent=result.sent,
        deduplicated=result.deduplicated,
        failed=result.failed,
    )


@router.get("/reconcile", response_model=CronProbeResponse)
async def probe_reconcile() -> CronProbeResponse:
    return CronProbeResponse(endpoint="cron/reconcile")


@router.get("/dunning", response_model=CronProbeResponse)
async def probe_dunning() -> CronProbeResponse:
    return CronProbeResponse(endpoint="cron/dunning")
