"""Inbound Stripe webhook endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from billing_engine.ingestion import EventIngestionGateway
from fastapi import APIRouter, Header, Request

from api.dependencies import ProviderDep, SessionDep, SettingsDep
from api.schemas import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    provider: ProviderDep,
    settings: SettingsDep,
    stripe_signature: Annotated[str | None, Header()] = None,
) -> WebhookAck:
    """Verify and apply one provider event.

    The signature is checked against the raw body.  A bad signature is a
    400 (``SignatureError`` handler); skips, duplicates and ignored types
    are all acknowledged with 200 so the provider does not retry them.  A
    store failure surfaces as 500 and the provider redelivers.
    """
    payload = await request.body()
    gateway = EventIngestionGateway(
        session,
        provider,
        webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
        tolerance=settings.webhook_tolerance_seconds,
    )
    result = await gateway.ingest(payload, stripe_signature)
    await session.commit()
    return WebhookAck(outcome=result.outcome.value)
