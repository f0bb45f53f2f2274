"""Invoice listing for the dashboard."""

from __future__ import annotations

from typing import Annotated

from billing_engine.license.feature_flags import Feature
from fastapi import APIRouter, Depends, Query

from api.dependencies import OrgContext, SessionDep, require_feature
from api.schemas import InvoiceListResponse
from api.services.invoice_service import InvoiceService

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    session: SessionDep,
    ctx: Annotated[OrgContext, Depends(require_feature(Feature.INVOICE_LIST))],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=50)] = 10,
    status: Annotated[str | None, Query(description="Invoice status, or ALL.")] = None,
    q: Annotated[str | None, Query(description="Substring of invoice id or currency.")] = None,
) -> InvoiceListResponse:
    """Page through the organization's invoices, latest due date first."""
    return await InvoiceService(session).list_invoices(
        ctx.org_id,
        page=page,
        limit=limit,
        status=status,
        search=q,
    )
