"""Ticket workflow engine.

:meth:`TicketWorkflowService.apply_transition` is the single entry point
for status changes.  It validates, in order:

1. the ticket exists in the caller's tenant (``NotFoundError``);
2. the caller takes part in the ticket: owner, assignee or an admin whose
   department scope covers it (``AuthzError``);
3. the edge is in the transition table for the caller's role class
   (``InvalidTransition``);
4. the edge's own preconditions: reason, job plan, work description,
   rating (``PreconditionFailed``).

Only then is the ticket moved, by one compare-and-swap ``UPDATE`` plus
exactly one status-history row.  A lost race raises ``ConflictError`` and
writes nothing.  Edges that change the assignment or the quote state are
delegated to :class:`~api.services.assignment_service.AssignmentCoordinator`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from servicedesk_core.errors import AuthzError, ConflictError, PreconditionFailed, ValidationError
from servicedesk_core.models.ticket import Department, JobPlan, Priority, RatingInput, TicketStatus
from servicedesk_core.state.repository import QuoteRequestRepository, RatingRepository, TicketRepository, UserRepository
from servicedesk_core.state.tables import TicketTable
from servicedesk_core.workflow.roles import (
    Actor,
    Admin,
    Contractor,
    PlatformRole,
    Requester,
    RoleKind,
    admin_roles_for,
)
from servicedesk_core.workflow.sla import is_breached, sla_deadlines
from servicedesk_core.workflow.transitions import TicketAction, allowed_next, check_transition, target_for_action
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.assignment_service import AssignmentCoordinator
from api.services.notification_dispatcher import EventType, Notifier
from api.services.ticket_access import check_participant, history_to_dict, load_ticket, ticket_to_dict

logger = logging.getLogger(__name__)

S = TicketStatus


@dataclass
class TransitionPayload:
    """Optional inputs accompanying a transition request."""

    reason: str | None = None
    job_plan: JobPlan | dict[str, Any] | None = None
    work_description: str | None = None
    rating: RatingInput | dict[str, Any] | None = None
    assignee_id: str | None = None
    contractor_ids: list[str] = field(default_factory=list)
    notes: str | None = None
    quote_request_id: str | None = None
    quote_amount: Decimal | float | str | None = None
    quote_description: str | None = None
    quote_file_url: str | None = None


def _error_summary(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]


def _require_reason(payload: TransitionPayload, what: str) -> str:
    reason = (payload.reason or "").strip()
    if not reason:
        raise PreconditionFailed(f"A reason is required to {what}")
    return reason


def _coerce_job_plan(raw: JobPlan | dict[str, Any] | None) -> JobPlan:
    if raw is None:
        raise PreconditionFailed("A job plan is required to accept a job")
    if isinstance(raw, JobPlan):
        return raw
    try:
        return JobPlan.model_validate(raw)
    except PydanticValidationError as exc:
        raise PreconditionFailed("Invalid job plan", details={"errors": _error_summary(exc)})


def _coerce_rating(raw: RatingInput | dict[str, Any] | None) -> RatingInput | None:
    if raw is None or isinstance(raw, RatingInput):
        return raw
    try:
        return RatingInput.model_validate(raw)
    except PydanticValidationError as exc:
        raise PreconditionFailed("Rating values are out of range", details={"errors": _error_summary(exc)})


class TicketWorkflowService:
    """Create, read and move tickets for one tenant.

    Parameters
    ----------
    session:
        Active database session with RLS tenant context.
    tenant_id:
        The tenant whose tickets are managed.
    notifier:
        Staging buffer for notifications sent after commit.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str, notifier: Notifier | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._notifier = notifier or Notifier()
        self._tickets = TicketRepository(session, tenant_id=tenant_id)
        self._ratings = RatingRepository(session, tenant_id=tenant_id)
        self._quotes = QuoteRequestRepository(session, tenant_id=tenant_id)
        self._users = UserRepository(session, tenant_id=tenant_id)
        self._coordinator = AssignmentCoordinator(session, tenant_id=tenant_id, notifier=self._notifier)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_ticket(
        self,
        actor: Actor,
        *,
        title: str,
        description: str,
        priority: Priority = Priority.MEDIUM,
        department: Department = Department.GENERAL,
        location: str | None = None,
    ) -> dict[str, Any]:
        """Open a new ticket owned by *actor* with SLA deadlines from *priority*."""
        if actor.role == PlatformRole.CONTRACTOR:
            raise AuthzError("Contractors cannot create tickets")
        title = (title or "").strip()
        if not title:
            raise ValidationError("Ticket title is required")

        now = datetime.now(UTC)
        response_due, resolution_due = sla_deadlines(priority, now)
        ticket = await self._tickets.create(
            title=title,
            description=description or "",
            priority=priority.value,
            department=department.value,
            location=location,
            user_id=actor.user_id,
            response_due_at=response_due,
            resolution_due_at=resolution_due,
        )
        logger.info("Ticket %s (%s) created by %s", ticket.id, ticket.ticket_number, actor.user_id)
        admins = await self._users.list_by_roles([r.value for r in admin_roles_for(department)])
        self._notifier.notify(
            EventType.TICKET_CREATED,
            tenant_id=self._tenant_id,
            recipient_ids=[a.id for a in admins],
            exclude=actor.user_id,
            title=f"New ticket {ticket.ticket_number}",
            message=f"{ticket.title} ({priority.value}, {department.value})",
            data={"ticket_id": ticket.id, "priority": priority.value, "department": department.value},
        )
        return ticket_to_dict(ticket)

    async def get_ticket(self, actor: Actor, ticket_id: str) -> dict[str, Any]:
        ticket = await self._visible_ticket(actor, ticket_id)
        result = ticket_to_dict(ticket)
        now = datetime.now(UTC)
        result["response_breached"] = is_breached(
            ticket.response_due_at,
            now,
            met_at=ticket.accepted_at or ticket.hq_assigned_at,
        )
        result["resolution_breached"] = is_breached(ticket.resolution_due_at, now, met_at=ticket.completed_at)
        result["allowed_next"] = sorted(s.value for s in allowed_next(TicketStatus(ticket.status), actor.role_class))
        return result

    async def list_tickets(
        self,
        actor: Actor,
        *,
        status: TicketStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List the tickets *actor* may see, newest first.

        Requesters see their own, contractors the ones assigned to them,
        department admins their department and tenant admins everything.
        """
        role_class = actor.role_class
        filters: dict[str, Any] = {}
        if isinstance(role_class, Requester):
            filters["user_id"] = actor.user_id
        elif isinstance(role_class, Contractor):
            filters["assigned_to_id"] = actor.user_id
        elif isinstance(role_class, Admin) and role_class.department_scope is not None:
            filters["departments"] = [role_class.department_scope.value]
        rows = await self._tickets.list_tickets(
            status=status.value if status is not None else None,
            limit=limit,
            offset=offset,
            **filters,
        )
        return [ticket_to_dict(t) for t in rows]

    async def get_history(self, actor: Actor, ticket_id: str) -> list[dict[str, Any]]:
        ticket = await self._visible_ticket(actor, ticket_id)
        return [history_to_dict(h) for h in await self._tickets.get_history(ticket.id)]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def perform_action(
        self,
        ticket_id: str,
        actor: Actor,
        action: TicketAction,
        payload: TransitionPayload | None = None,
    ) -> dict[str, Any]:
        """Resolve a named action to its target status and apply it."""
        return await self.apply_transition(ticket_id, actor, target_for_action(action), payload)

    async def apply_transition(
        self,
        ticket_id: str,
        actor: Actor,
        requested_status: TicketStatus,
        payload: TransitionPayload | None = None,
    ) -> dict[str, Any]:
        """Move a ticket to *requested_status* on behalf of *actor*.

        Parameters
        ----------
        ticket_id:
            Ticket to move.
        actor:
            Authenticated caller.
        requested_status:
            Desired next status.
        payload:
            Edge-specific inputs (reason, job plan, work description...).

        Returns
        -------
        dict
            The updated ticket.

        Raises
        ------
        NotFoundError, AuthzError, InvalidTransition, PreconditionFailed, ConflictError
            See the module docstring for the order of checks.
        """
        payload = payload or TransitionPayload()
        ticket = await load_ticket(self._tickets, ticket_id)
        current = TicketStatus(ticket.status)
        role_class = actor.role_class

        quoted = False
        if isinstance(role_class, Contractor) and ticket.assigned_to_id != actor.user_id:
            quoted = await self._quotes.get_for_contractor(ticket.id, actor.user_id) is not None
        check_participant(actor, ticket, quoted=quoted)
        check_transition(current, requested_status, role_class)

        delegated = await self._delegate(ticket, current, requested_status, actor, payload)
        if delegated is not None:
            return delegated

        values, reason, guard = self._edge_effects(ticket, current, requested_status, actor, payload)
        rating = _coerce_rating(payload.rating) if requested_status == S.CLOSED else None
        # Captured before the update clears the assignment.
        participants = [ticket.user_id, ticket.assigned_to_id]
        rated_contractor = ticket.assigned_to_id

        moved = await self._tickets.transition(
            ticket.id,
            from_status=current,
            to_status=requested_status,
            changed_by=actor.user_id,
            reason=reason,
            values=values,
            assigned_to=guard,
        )
        if not moved:
            raise ConflictError(
                "Ticket was modified concurrently; reload and retry",
                details={"expected_status": current.value},
            )

        if rating is not None and isinstance(role_class, Requester):
            created = await self._ratings.create(
                ticket.id,
                actor.user_id,
                rated_contractor,
                **rating.model_dump(),
            )
            if not created:
                logger.info("Ticket %s already rated by %s; keeping the first rating", ticket.id, actor.user_id)

        logger.info(
            "Ticket %s moved %s -> %s by %s (%s)",
            ticket.id,
            current.value,
            requested_status.value,
            actor.user_id,
            actor.role.value,
        )
        self._notify_transition(ticket, current, requested_status, actor, reason, participants)
        return ticket_to_dict(await load_ticket(self._tickets, ticket.id))

    async def _delegate(
        self,
        ticket: TicketTable,
        current: TicketStatus,
        target: TicketStatus,
        actor: Actor,
        payload: TransitionPayload,
    ) -> dict[str, Any] | None:
        """Route assignment and quote edges to the coordinator."""
        kind = actor.role_class.kind
        coordinator = self._coordinator

        if kind == RoleKind.ADMIN and current == S.OPEN and target in (S.PROCESSING, S.IN_PROGRESS):
            if not payload.assignee_id:
                raise PreconditionFailed("assignee_id is required to assign a ticket")
            return await coordinator.assign(ticket.id, payload.assignee_id, actor)
        if kind == RoleKind.ADMIN and target == S.OPEN:
            result = await coordinator.unassign(ticket.id, actor, payload.reason)
            return result["ticket"]
        if kind == RoleKind.ADMIN and target == S.AWAITING_QUOTE and current != S.QUOTE_SUBMITTED:
            return (await coordinator.request_quotes(ticket.id, payload.contractor_ids, actor, payload.notes))["ticket"]
        if kind == RoleKind.CONTRACTOR and target == S.QUOTE_SUBMITTED:
            result = await coordinator.submit_quote(
                ticket.id,
                actor,
                amount=payload.quote_amount if payload.quote_amount is not None else "0",
                description=payload.quote_description or "",
                file_url=payload.quote_file_url,
                quote_request_id=payload.quote_request_id,
            )
            return result["ticket"]
        if kind == RoleKind.ADMIN and current == S.QUOTE_SUBMITTED and target == S.PROCESSING:
            return await coordinator.approve_quote(ticket.id, actor, payload.quote_request_id)
        if kind == RoleKind.ADMIN and current == S.QUOTE_SUBMITTED and target == S.AWAITING_QUOTE:
            return await coordinator.reject_quote(ticket.id, actor, payload.reason or "")
        return None

    def _edge_effects(
        self,
        ticket: TicketTable,
        current: TicketStatus,
        target: TicketStatus,
        actor: Actor,
        payload: TransitionPayload,
    ) -> tuple[dict[str, Any], str | None, str | None]:
        """Validate edge preconditions and return ``(values, reason, assignee_guard)``.

        ``assignee_guard`` pins the CAS to the current assignee for edges
        that only the assignee may take.
        """
        now = datetime.now(UTC)
        kind = actor.role_class.kind
        values: dict[str, Any] = {}
        reason: str | None = (payload.reason or "").strip() or None
        guard: str | None = None

        if kind == RoleKind.CONTRACTOR:
            guard = actor.user_id

        if target == S.CANCELLED:
            reason = _require_reason(payload, "cancel a ticket")
            values.update(
                cancelled_at=now,
                cancelled_by_id=actor.user_id,
                cancellation_reason=reason,
                assigned_to_id=None,
                hq_assigned_at=None,
            )
        elif current == S.PROCESSING and target == S.ACCEPTED:
            plan = _coerce_job_plan(payload.job_plan)
            values.update(
                accepted_at=now,
                scheduled_arrival=plan.arrival_date,
                estimated_hours=Decimal(str(plan.estimated_duration)),
                technician_name=plan.technician_name,
                job_plan=plan.model_dump(mode="json"),
            )
        elif current == S.PROCESSING and target == S.OPEN:
            reason = _require_reason(payload, "decline a job")
            values.update(assigned_to_id=None, hq_assigned_at=None)
        elif target == S.ON_SITE:
            values["arrived_at"] = now
        elif target == S.AWAITING_DESCRIPTION:
            values["work_description_requested_at"] = now
            if current == S.AWAITING_WORK_APPROVAL:
                reason = _require_reason(payload, "reject the work description")
                values["work_description_rejection_reason"] = reason
        elif target == S.AWAITING_WORK_APPROVAL:
            description = (payload.work_description or "").strip()
            if not description:
                raise PreconditionFailed("A work description is required")
            values.update(work_description=description, work_description_submitted_at=now)
        elif target == S.COMPLETED:
            if current == S.IN_PROGRESS:
                # HQ completion is reserved for the admin the ticket was assigned to.
                if ticket.assigned_to_id != actor.user_id:
                    raise AuthzError("Only the assigned administrator can complete this ticket")
                guard = actor.user_id
            else:
                values["work_description_approved_at"] = now
            values["completed_at"] = now
        elif target == S.CLOSED:
            values["closed_at"] = now
            if payload.rating is not None and kind != RoleKind.REQUESTER:
                raise PreconditionFailed("Only the requester can rate the work")

        return values, reason, guard

    def _notify_transition(
        self,
        ticket: TicketTable,
        current: TicketStatus,
        target: TicketStatus,
        actor: Actor,
        reason: str | None,
        recipients: list[str | None],
    ) -> None:
        event = EventType.TICKET_CANCELLED if target == S.CANCELLED else EventType.TICKET_STATUS_CHANGED
        message = f"Ticket {ticket.ticket_number} moved from {current.value} to {target.value}."
        if reason:
            message = f"{message} Reason: {reason}"
        self._notifier.notify(
            event,
            tenant_id=self._tenant_id,
            recipient_ids=recipients,
            exclude=actor.user_id,
            title=f"Ticket {ticket.ticket_number} {target.value.replace('_', ' ').lower()}",
            message=message,
            data={
                "ticket_id": ticket.id,
                "from_status": current.value,
                "to_status": target.value,
                "changed_by_id": actor.user_id,
            },
        )

    async def _visible_ticket(self, actor: Actor, ticket_id: str) -> TicketTable:
        ticket = await load_ticket(self._tickets, ticket_id)
        quoted = False
        if actor.role == PlatformRole.CONTRACTOR and ticket.assigned_to_id != actor.user_id:
            quoted = await self._quotes.get_for_contractor(ticket.id, actor.user_id) is not None
        check_participant(actor, ticket, quoted=quoted)
        return ticket
