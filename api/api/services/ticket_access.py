"""Ticket visibility rules and response shaping shared by the ticket services."""

from __future__ import annotations

from typing import Any

from servicedesk_core.errors import AuthzError, NotFoundError
from servicedesk_core.state.repository import TicketRepository
from servicedesk_core.state.tables import QuoteRequestTable, StatusHistoryTable, TicketTable
from servicedesk_core.workflow.roles import Actor, Admin, Contractor, Requester


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _money(value: Any) -> str | None:
    return str(value) if value is not None else None


def ticket_to_dict(ticket: TicketTable) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status,
        "priority": ticket.priority,
        "department": ticket.department,
        "location": ticket.location,
        "user_id": ticket.user_id,
        "assigned_to_id": ticket.assigned_to_id,
        "hq_assigned_at": _iso(ticket.hq_assigned_at),
        "quote_requested": ticket.quote_requested,
        "quote_amount": _money(ticket.quote_amount),
        "quote_description": ticket.quote_description,
        "quote_file_url": ticket.quote_file_url,
        "quote_approved": ticket.quote_approved,
        "quote_rejection_reason": ticket.quote_rejection_reason,
        "scheduled_arrival": _iso(ticket.scheduled_arrival),
        "estimated_hours": _money(ticket.estimated_hours),
        "technician_name": ticket.technician_name,
        "job_plan": ticket.job_plan,
        "work_description": ticket.work_description,
        "work_description_rejection_reason": ticket.work_description_rejection_reason,
        "cancellation_reason": ticket.cancellation_reason,
        "cancelled_by_id": ticket.cancelled_by_id,
        "response_due_at": _iso(ticket.response_due_at),
        "resolution_due_at": _iso(ticket.resolution_due_at),
        "completed_at": _iso(ticket.completed_at),
        "closed_at": _iso(ticket.closed_at),
        "created_at": _iso(ticket.created_at),
        "updated_at": _iso(ticket.updated_at),
    }


def history_to_dict(row: StatusHistoryTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "ticket_id": row.ticket_id,
        "from_status": row.from_status,
        "to_status": row.to_status,
        "changed_by_id": row.changed_by_id,
        "reason": row.reason,
        "created_at": _iso(row.created_at),
    }


def quote_request_to_dict(row: QuoteRequestTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "ticket_id": row.ticket_id,
        "contractor_id": row.contractor_id,
        "status": row.status,
        "amount": _money(row.amount),
        "description": row.description,
        "file_url": row.file_url,
        "notes": row.notes,
        "submitted_at": _iso(row.submitted_at),
        "responded_at": _iso(row.responded_at),
    }


async def load_ticket(repo: TicketRepository, ticket_id: str) -> TicketTable:
    """Fetch a ticket of the repository's tenant or raise :class:`NotFoundError`."""
    ticket = await repo.get(ticket_id)
    if ticket is None:
        raise NotFoundError(f"Ticket {ticket_id} not found")
    return ticket


def check_admin_scope(actor: Actor, ticket: TicketTable) -> None:
    """Raise unless *actor* is an admin whose department scope covers *ticket*."""
    role_class = actor.role_class
    if not isinstance(role_class, Admin):
        raise AuthzError("Only administrators can perform this operation")
    if not role_class.covers(ticket.department):
        raise AuthzError(f"Ticket belongs to the {ticket.department} department, outside your scope")


def check_participant(actor: Actor, ticket: TicketTable, *, quoted: bool = False) -> None:
    """Raise unless *actor* takes part in *ticket*.

    Requesters must own the ticket, contractors must be its assignee (or,
    with *quoted*, hold a quote request for it) and admins must cover its
    department.
    """
    role_class = actor.role_class
    if isinstance(role_class, Admin):
        check_admin_scope(actor, ticket)
    elif isinstance(role_class, Requester):
        if ticket.user_id != actor.user_id:
            raise AuthzError("You can only act on tickets you created")
    elif isinstance(role_class, Contractor):
        if ticket.assigned_to_id != actor.user_id and not quoted:
            raise AuthzError("This ticket is not assigned to you")
