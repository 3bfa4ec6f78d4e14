"""Payment batch endpoints settling several approved invoices at once."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from servicedesk_core.workflow.roles import PlatformRole

from api.dependencies import ActorDep, NotifierDep, SessionDep, TenantDep, require_access
from api.middleware.rbac import Permission, require_permission
from api.schemas import PaymentBatchResponse
from api.services.invoice_service import InvoiceLedgerService

router = APIRouter(prefix="/payment-batches", tags=["payment-batches"], dependencies=[Depends(require_access())])


class CreateBatchRequest(BaseModel):
    """Request body for ``POST /payment-batches``."""

    invoice_ids: list[str] = Field(..., min_length=1)
    pop_file_url: str = Field(..., min_length=1, max_length=2048, description="Proof-of-payment document.")
    pop_reference: str | None = Field(default=None, max_length=128)
    payment_date: datetime | None = None
    notes: str | None = Field(default=None, max_length=4000)


@router.post("", response_model=PaymentBatchResponse, status_code=201)
async def create_batch(
    body: CreateBatchRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.PROCESS_PAYMENTS)),
) -> dict[str, Any]:
    """Mark every listed APPROVED invoice as PAID under a new batch number."""
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.create_batch(
        actor,
        body.invoice_ids,
        body.pop_file_url,
        pop_reference=body.pop_reference,
        payment_date=body.payment_date,
        notes=body.notes,
    )


@router.get("", response_model=list[PaymentBatchResponse])
async def list_batches(
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _role: PlatformRole = Depends(require_permission(Permission.PROCESS_PAYMENTS)),
) -> list[dict[str, Any]]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id)
    return await service.list_batches(actor, limit=limit, offset=offset)


@router.get("/{batch_id}", response_model=PaymentBatchResponse)
async def get_batch(
    batch_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.PROCESS_PAYMENTS)),
) -> dict[str, Any]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id)
    return await service.get_batch(actor, batch_id)
