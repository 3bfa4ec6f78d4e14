"""Ticket lifecycle endpoints: creation, transitions, assignment and quotes."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from servicedesk_core.models.ticket import Department, JobPlan, Priority, RatingInput, TicketStatus
from servicedesk_core.workflow.roles import PlatformRole
from servicedesk_core.workflow.transitions import TicketAction

from api.dependencies import ActorDep, NotifierDep, SessionDep, TenantDep, require_access
from api.middleware.rbac import Permission, require_permission
from api.schemas import (
    QuoteRequestResponse,
    QuoteRequestsCreatedResponse,
    QuoteSubmissionResponse,
    StatusHistoryResponse,
    TicketDetailResponse,
    TicketResponse,
    UnassignResponse,
)
from api.services.assignment_service import AssignmentCoordinator
from api.services.ticket_workflow_service import TicketWorkflowService, TransitionPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tickets", tags=["tickets"], dependencies=[Depends(require_access())])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class CreateTicketRequest(BaseModel):
    """Request body for ``POST /tickets``."""

    title: str = Field(..., min_length=1, max_length=512)
    description: str = Field(default="", max_length=20000)
    priority: Priority = Priority.MEDIUM
    department: Department = Department.GENERAL
    location: str | None = Field(default=None, max_length=512)


class TransitionInputs(BaseModel):
    """Edge-specific inputs shared by transitions and named actions."""

    reason: str | None = Field(default=None, max_length=4000)
    job_plan: JobPlan | None = None
    work_description: str | None = Field(default=None, max_length=20000)
    rating: RatingInput | None = None
    assignee_id: str | None = None
    contractor_ids: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=4000)
    quote_request_id: str | None = None
    quote_amount: Decimal | None = None
    quote_description: str | None = None
    quote_file_url: str | None = None

    def to_payload(self) -> TransitionPayload:
        return TransitionPayload(
            reason=self.reason,
            job_plan=self.job_plan,
            work_description=self.work_description,
            rating=self.rating,
            assignee_id=self.assignee_id,
            contractor_ids=list(self.contractor_ids),
            notes=self.notes,
            quote_request_id=self.quote_request_id,
            quote_amount=self.quote_amount,
            quote_description=self.quote_description,
            quote_file_url=self.quote_file_url,
        )


class TransitionRequest(TransitionInputs):
    """Request body for ``POST /tickets/{id}/transitions``."""

    status: TicketStatus


class ActionRequest(TransitionInputs):
    """Request body for ``POST /tickets/{id}/actions``."""

    action: TicketAction


class AssignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class UnassignRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=4000)


class QuoteRequestBody(BaseModel):
    """Request body for ``POST /tickets/{id}/quotes/request``."""

    contractor_ids: list[str] = Field(..., min_length=1)
    notes: str | None = Field(default=None, max_length=4000)


class SubmitQuoteRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=20000)
    file_url: str | None = None
    quote_request_id: str | None = None


class ApproveQuoteRequest(BaseModel):
    quote_request_id: str | None = None


class RejectQuoteRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=4000)


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


@router.post("", response_model=TicketResponse, status_code=201)
async def create_ticket(
    body: CreateTicketRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.CREATE_TICKETS)),
) -> dict[str, Any]:
    """Open a ticket owned by the caller."""
    service = TicketWorkflowService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.create_ticket(
        actor,
        title=body.title,
        description=body.description,
        priority=body.priority,
        department=body.department,
        location=body.location,
    )


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    status: TicketStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: PlatformRole = Depends(require_permission(Permission.READ_TICKETS)),
) -> list[dict[str, Any]]:
    """List the tickets visible to the caller, newest first."""
    service = TicketWorkflowService(session, tenant_id=tenant_id)
    return await service.list_tickets(actor, status=status, limit=limit, offset=offset)


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(
    ticket_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.READ_TICKETS)),
) -> dict[str, Any]:
    service = TicketWorkflowService(session, tenant_id=tenant_id)
    return await service.get_ticket(actor, ticket_id)


@router.get("/{ticket_id}/history", response_model=list[StatusHistoryResponse])
async def get_history(
    ticket_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.READ_TICKETS)),
) -> list[dict[str, Any]]:
    """Return the ticket's status history, oldest first."""
    service = TicketWorkflowService(session, tenant_id=tenant_id)
    return await service.get_history(actor, ticket_id)


@router.post("/{ticket_id}/transitions", response_model=TicketResponse)
async def apply_transition(
    ticket_id: str,
    body: TransitionRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.TRANSITION_TICKETS)),
) -> dict[str, Any]:
    """Move the ticket to ``status`` if the caller's role class allows the edge."""
    service = TicketWorkflowService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.apply_transition(ticket_id, actor, body.status, body.to_payload())


@router.post("/{ticket_id}/actions", response_model=TicketResponse)
async def perform_action(
    ticket_id: str,
    body: ActionRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.TRANSITION_TICKETS)),
) -> dict[str, Any]:
    """Apply a named action (``accept``, ``close``...) to the ticket."""
    service = TicketWorkflowService(session, tenant_id=tenant_id, notifier=notifier)
    return await service.perform_action(ticket_id, actor, body.action, body.to_payload())


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


@router.post("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: str,
    body: AssignRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_ASSIGNMENTS)),
) -> dict[str, Any]:
    """Assign an unassigned ticket; a concurrent assignment yields 409."""
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=notifier)
    return await coordinator.assign(ticket_id, body.assignee_id, actor)


@router.post("/{ticket_id}/unassign", response_model=UnassignResponse)
async def unassign_ticket(
    ticket_id: str,
    body: UnassignRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_ASSIGNMENTS)),
) -> dict[str, Any]:
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=notifier)
    return await coordinator.unassign(ticket_id, actor, body.reason)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


@router.post("/{ticket_id}/quotes/request", response_model=QuoteRequestsCreatedResponse)
async def request_quotes(
    ticket_id: str,
    body: QuoteRequestBody,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_QUOTES)),
) -> dict[str, Any]:
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=notifier)
    return await coordinator.request_quotes(ticket_id, body.contractor_ids, actor, body.notes)


@router.get("/{ticket_id}/quotes", response_model=list[QuoteRequestResponse])
async def list_quotes(
    ticket_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.READ_TICKETS)),
) -> list[dict[str, Any]]:
    """Admins see every request; contractors only their own."""
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id)
    return await coordinator.list_quote_requests(ticket_id, actor)


@router.post("/{ticket_id}/quotes/submit", response_model=QuoteSubmissionResponse)
async def submit_quote(
    ticket_id: str,
    body: SubmitQuoteRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.SUBMIT_QUOTES)),
) -> dict[str, Any]:
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=notifier)
    return await coordinator.submit_quote(
        ticket_id,
        actor,
        amount=body.amount,
        description=body.description,
        file_url=body.file_url,
        quote_request_id=body.quote_request_id,
    )


@router.post("/{ticket_id}/quotes/approve", response_model=TicketResponse)
async def approve_quote(
    ticket_id: str,
    body: ApproveQuoteRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_QUOTES)),
) -> dict[str, Any]:
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=notifier)
    return await coordinator.approve_quote(ticket_id, actor, body.quote_request_id)


@router.post("/{ticket_id}/quotes/reject", response_model=TicketResponse)
async def reject_quote(
    ticket_id: str,
    body: RejectQuoteRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_QUOTES)),
) -> dict[str, Any]:
    coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=notifier)
    return await coordinator.reject_quote(ticket_id, actor, body.reason)
