"""Billing endpoints: checkout, manual checkout sync, resume, subscription status."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse

from api.dependencies import OrgDep, OwnerDep, ProviderDep, SessionDep, SettingsDep
from api.schemas import (
    CheckoutSyncResponse,
    ResumeResponse,
    SubscriptionStatusResponse,
    SubscriptionSummary,
)
from api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/checkout", response_class=RedirectResponse, status_code=303)
async def create_checkout(
    ctx: OrgDep,
    session: SessionDep,
    provider: ProviderDep,
    settings: SettingsDep,
) -> RedirectResponse:
    """Redirect a member to a provider-hosted checkout for the Pro plan.

    The organization's customer reference is created on first use.
    """
    if not settings.stripe_price_id_pro:
        raise HTTPException(status_code=500, detail="API_STRIPE_PRICE_ID_PRO is not configured")

    service = BillingService(session, provider, settings)
    org = await service.get_organization(ctx.org_id)
    if org is None:
        raise HTTPException(status_code=404, detail="Organization not found")

    url = await service.create_checkout(org, email=ctx.user.email)
    await session.commit()
    return RedirectResponse(url, status_code=303)


@router.post("/sync", response_model=CheckoutSyncResponse)
async def sync_checkout(
    ctx: OwnerDep,
    session: SessionDep,
    provider: ProviderDep,
    settings: SettingsDep,
    session_id: Annotated[str, Query(min_length=1)],
) -> CheckoutSyncResponse:
    """Pull a completed checkout into the local mirror without waiting for webhooks."""
    service = BillingService(session, provider, settings)
    result = await service.sync_checkout(session_id, org_id=ctx.org_id)
    await session.commit()
    return CheckoutSyncResponse(**result)


@router.post("/resume", response_model=None)
async def resume_subscription(
    ctx: OwnerDep,
    session: SessionDep,
    provider: ProviderDep,
    settings: SettingsDep,
) -> RedirectResponse | ResumeResponse:
    """Undo a scheduled cancellation and return to the billing page."""
    service = BillingService(session, provider, settings)
    tier = await service.resume(ctx.org_id)
    await session.commit()
    if tier is None:
        return ResumeResponse(note="No subscription to resume")
    return RedirectResponse(f"{settings.app_url.rstrip('/')}/billing", status_code=303)


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(
    ctx: OrgDep,
    session: SessionDep,
    provider: ProviderDep,
    settings: SettingsDep,
) -> SubscriptionStatusResponse:
    """Return the cached plan tier and the latest subscription."""
    service = BillingService(session, provider, settings)
    org = await service.get_organization(ctx.org_id)
    if org is None:
        raise HTTPException(status_code=404, detail="Organization not found")

    latest = await service.latest_subscription(ctx.org_id)
    return SubscriptionStatusResponse(
        org_id=org.id,
        plan=org.plan,
        customer_id=org.stripe_customer_id,
        subscription=(
            SubscriptionSummary(
                stripe_subscription_id=latest.stripe_subscription_id,
                status=latest.status,
                price_id=latest.price_id,
                current_period_start=latest.current_period_start,
                current_period_end=latest.current_period_end,
                cancel_at_period_end=latest.cancel_at_period_end,
            )
            if latest is not None
            else None
        ),
    )
