"""Contractor invoice endpoints: submission, review, payments and clarification."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from servicedesk_core.models.invoice import InvoiceStatus
from servicedesk_core.workflow.roles import PlatformRole

from api.dependencies import ActorDep, NotifierDep, SessionDep, TenantDep, require_access
from api.middleware.rbac import Permission, require_permission
from api.schemas import InvoiceResponse
from api.services.invoice_service import InvoiceLedgerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"], dependencies=[Depends(require_access())])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SubmitInvoiceRequest(BaseModel):
    """Request body for ``POST /invoices``."""

    ticket_id: str = Field(..., min_length=1)
    invoice_number: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0)
    work_description: str | None = Field(default=None, max_length=20000)
    invoice_file_url: str | None = Field(default=None, max_length=2048)
    hours_worked: Decimal | None = Field(default=None, ge=0)
    hourly_rate: Decimal | None = Field(default=None, ge=0)
    variation_description: str | None = Field(default=None, max_length=4000)
    notes: str | None = Field(default=None, max_length=4000)


class RejectInvoiceRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=4000)


class RecordPaymentRequest(BaseModel):
    """Request body for ``POST /invoices/{id}/payments``."""

    amount: Decimal = Field(..., gt=0)
    proof_of_payment_url: str | None = Field(default=None, max_length=2048)


class ClarificationRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", response_model=InvoiceResponse, status_code=201)
async def submit_invoice(
    body: SubmitInvoiceRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.SUBMIT_INVOICES)),
) -> dict[str, Any]:
    """Submit an invoice for a completed ticket.

    Returns 409 while another non-rejected invoice is active for the
    ticket and 404 when the ticket is not billable by the caller.  After a
    rejection the same call submits the next revision.
    """
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.submit_invoice(
        body.ticket_id,
        actor,
        invoice_number=body.invoice_number,
        amount=body.amount,
        work_description=body.work_description,
        file_url=body.invoice_file_url,
        hours_worked=body.hours_worked,
        hourly_rate=body.hourly_rate,
        variation_description=body.variation_description,
        notes=body.notes,
    )


@router.get("", response_model=list[InvoiceResponse])
async def list_invoices(
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    status: InvoiceStatus | None = Query(default=None),
    include_inactive: bool = Query(default=False, description="Include superseded revisions."),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: PlatformRole = Depends(require_permission(Permission.READ_INVOICES)),
) -> list[dict[str, Any]]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id)
    return await service.list_invoices(
        actor,
        status=status,
        active_only=not include_inactive,
        limit=limit,
        offset=offset,
    )


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.READ_INVOICES)),
) -> dict[str, Any]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id)
    return await service.get_invoice(actor, invoice_id)


@router.get("/{invoice_id}/revisions", response_model=list[InvoiceResponse])
async def get_revisions(
    invoice_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.READ_INVOICES)),
) -> list[dict[str, Any]]:
    """Every revision submitted for the invoice's ticket, oldest first."""
    service = InvoiceLedgerService(session, tenant_id=tenant_id)
    return await service.get_revision_chain(actor, invoice_id)


@router.post("/{invoice_id}/approve", response_model=InvoiceResponse)
async def approve_invoice(
    invoice_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_INVOICES)),
) -> dict[str, Any]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.approve(invoice_id, actor)


@router.post("/{invoice_id}/reject", response_model=InvoiceResponse)
async def reject_invoice(
    invoice_id: str,
    body: RejectInvoiceRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_INVOICES)),
) -> dict[str, Any]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.reject(invoice_id, actor, body.reason)


@router.post("/{invoice_id}/payments", response_model=InvoiceResponse)
async def record_payment(
    invoice_id: str,
    body: RecordPaymentRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.PROCESS_PAYMENTS)),
) -> dict[str, Any]:
    """Apply a partial or full payment; the invoice becomes PAID at zero balance."""
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.record_payment(invoice_id, actor, body.amount, body.proof_of_payment_url)


@router.post("/{invoice_id}/clarification", response_model=InvoiceResponse)
async def request_clarification(
    invoice_id: str,
    body: ClarificationRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_INVOICES)),
) -> dict[str, Any]:
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.request_clarification(invoice_id, actor, body.text)


@router.post("/{invoice_id}/clarification-response", response_model=InvoiceResponse)
async def respond_clarification(
    invoice_id: str,
    body: ClarificationRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.SUBMIT_INVOICES)),
) -> dict[str, Any]:
    """Answer an open clarification request; the invoice returns to PENDING."""
    service = InvoiceLedgerService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.respond_clarification(invoice_id, actor, body.text)
