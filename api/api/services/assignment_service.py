"""Assignment coordination: who works on a ticket, and the quote sub-flow.

``assigned_to_id`` is owned here.  Every write that sets it restates the
"nobody is assigned yet" precondition in the same conditional ``UPDATE``,
so of two admins assigning the same ticket concurrently exactly one wins
and the other gets a :class:`ConflictError`.  Reassignment is always
unassign-then-assign.

Quote flow::

    OPEN / PROCESSING --request_quotes--> AWAITING_QUOTE
    AWAITING_QUOTE --first submit_quote--> QUOTE_SUBMITTED
    QUOTE_SUBMITTED --approve_quote--> PROCESSING (awarded contractor assigned)
    QUOTE_SUBMITTED --reject_quote--> AWAITING_QUOTE (contractors may resubmit)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from servicedesk_core.errors import (
    AuthzError,
    ConflictError,
    NotFoundError,
    PreconditionFailed,
    StateError,
    ValidationError,
)
from servicedesk_core.ledger.balances import to_money
from servicedesk_core.models.invoice import QuoteRequestStatus
from servicedesk_core.models.ticket import TERMINAL_STATUSES, TicketStatus
from servicedesk_core.state.repository import QuoteRequestRepository, TicketRepository, UserRepository
from servicedesk_core.state.tables import TicketTable, UserTable
from servicedesk_core.workflow.roles import ADMIN_ROLES, Actor, PlatformRole, parse_platform_role
from servicedesk_core.workflow.transitions import check_transition
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_dispatcher import EventType, Notifier
from api.services.ticket_access import (
    check_admin_scope,
    load_ticket,
    quote_request_to_dict,
    ticket_to_dict,
)

logger = logging.getLogger(__name__)


def _user_role(user: UserTable) -> PlatformRole | None:
    try:
        return parse_platform_role(user.role)
    except ValueError:
        return None


class AssignmentCoordinator:
    """Assign, unassign and run the quote sub-flow for one tenant.

    Parameters
    ----------
    session:
        Active database session with RLS tenant context.
    tenant_id:
        The tenant whose tickets are coordinated.
    notifier:
        Staging buffer for notifications sent after commit.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str, notifier: Notifier | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._notifier = notifier or Notifier()
        self._tickets = TicketRepository(session, tenant_id=tenant_id)
        self._users = UserRepository(session, tenant_id=tenant_id)
        self._quotes = QuoteRequestRepository(session, tenant_id=tenant_id)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign(self, ticket_id: str, assignee_id: str, actor: Actor) -> dict[str, Any]:
        """Assign an unassigned ticket to a contractor or an HQ admin.

        A contractor assignment moves the ticket to ``PROCESSING`` (the
        contractor still has to accept); an admin assignment moves it
        straight to ``IN_PROGRESS``.

        Raises
        ------
        AuthzError
            If *actor* is not an admin covering the ticket's department.
        NotFoundError
            If the ticket or the assignee does not exist in this tenant.
        ValidationError
            If the assignee is inactive or neither contractor nor admin.
        ConflictError
            If the ticket is already assigned (including losing a race).
        """
        ticket = await load_ticket(self._tickets, ticket_id)
        check_admin_scope(actor, ticket)
        current = TicketStatus(ticket.status)
        if current in TERMINAL_STATUSES:
            raise StateError(f"Ticket {ticket.ticket_number} is {current.value} and can no longer be assigned")
        if ticket.assigned_to_id is not None:
            raise ConflictError(
                "Ticket is already assigned; unassign it before reassigning",
                details={"assigned_to_id": ticket.assigned_to_id},
            )

        assignee = await self._users.get(assignee_id)
        if assignee is None:
            raise NotFoundError(f"User {assignee_id} not found")
        if not assignee.is_active:
            raise ValidationError(f"User {assignee.name} is inactive and cannot be assigned")
        assignee_role = _user_role(assignee)
        if assignee_role == PlatformRole.CONTRACTOR:
            target = TicketStatus.PROCESSING
            values: dict[str, Any] = {"assigned_to_id": assignee.id}
        elif assignee_role in ADMIN_ROLES:
            target = TicketStatus.IN_PROGRESS
            values = {"assigned_to_id": assignee.id, "hq_assigned_at": datetime.now(UTC)}
        else:
            raise ValidationError("Tickets can only be assigned to contractors or administrators")

        check_transition(current, target, actor.role_class)
        moved = await self._tickets.transition(
            ticket.id,
            from_status=current,
            to_status=target,
            changed_by=actor.user_id,
            reason=f"Assigned to {assignee.name}",
            values=values,
            require_unassigned=True,
        )
        if not moved:
            raise ConflictError("Ticket was assigned or changed concurrently; reload and retry")

        logger.info(
            "Ticket %s assigned to %s by %s (%s -> %s)",
            ticket.id,
            assignee.id,
            actor.user_id,
            current.value,
            target.value,
        )
        self._notifier.notify(
            EventType.TICKET_ASSIGNED,
            tenant_id=self._tenant_id,
            recipient_ids=[assignee.id, ticket.user_id],
            exclude=actor.user_id,
            title="Ticket assigned",
            message=f"Ticket {ticket.ticket_number} has been assigned to {assignee.name}.",
            data={"ticket_id": ticket.id, "assigned_to_id": assignee.id, "status": target.value},
        )
        return ticket_to_dict(await load_ticket(self._tickets, ticket.id))

    async def unassign(self, ticket_id: str, actor: Actor, reason: str | None = None) -> dict[str, Any]:
        """Revoke the current assignment and return the ticket to ``OPEN``.

        Returns
        -------
        dict
            ``{"ticket": ..., "previous_assignee_id": ...}``.
        """
        ticket = await load_ticket(self._tickets, ticket_id)
        check_admin_scope(actor, ticket)
        current = TicketStatus(ticket.status)
        check_transition(current, TicketStatus.OPEN, actor.role_class)
        previous_id = ticket.assigned_to_id
        if previous_id is None:
            raise StateError(f"Ticket {ticket.ticket_number} is not assigned")

        previous = await self._users.get(previous_id)
        previous_name = previous.name if previous is not None else previous_id
        reason = (reason or "").strip() or f"Assignment revoked from {previous_name}"

        moved = await self._tickets.transition(
            ticket.id,
            from_status=current,
            to_status=TicketStatus.OPEN,
            changed_by=actor.user_id,
            reason=reason,
            values={"assigned_to_id": None, "hq_assigned_at": None},
            assigned_to=previous_id,
        )
        if not moved:
            raise ConflictError("Ticket was modified concurrently; reload and retry")

        logger.info("Ticket %s unassigned from %s by %s", ticket.id, previous_id, actor.user_id)
        self._notifier.notify(
            EventType.TICKET_UNASSIGNED,
            tenant_id=self._tenant_id,
            recipient_ids=[previous_id],
            exclude=actor.user_id,
            title="Assignment revoked",
            message=f"You are no longer assigned to ticket {ticket.ticket_number}. Reason: {reason}",
            data={"ticket_id": ticket.id, "reason": reason},
        )
        return {
            "ticket": ticket_to_dict(await load_ticket(self._tickets, ticket.id)),
            "previous_assignee_id": previous_id,
        }

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def request_quotes(
        self,
        ticket_id: str,
        contractor_ids: list[str],
        actor: Actor,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Ask one or more contractors to quote for a ticket."""
        ticket = await load_ticket(self._tickets, ticket_id)
        check_admin_scope(actor, ticket)
        contractor_ids = list(dict.fromkeys(c for c in contractor_ids if c))
        if not contractor_ids:
            raise PreconditionFailed("At least one contractor must be selected")
        current = TicketStatus(ticket.status)
        check_transition(current, TicketStatus.AWAITING_QUOTE, actor.role_class)

        users = await self._users.get_many(contractor_ids)
        invalid = [
            cid
            for cid in contractor_ids
            if cid not in users or not users[cid].is_active or _user_role(users[cid]) != PlatformRole.CONTRACTOR
        ]
        if invalid:
            raise ValidationError("Quotes can only be requested from active contractors", details={"invalid": invalid})

        previous_assignee = ticket.assigned_to_id
        moved = await self._tickets.transition(
            ticket.id,
            from_status=current,
            to_status=TicketStatus.AWAITING_QUOTE,
            changed_by=actor.user_id,
            reason=f"Quotes requested from {len(contractor_ids)} contractor(s)",
            values={
                "assigned_to_id": None,
                "quote_requested": True,
                "quote_requested_at": datetime.now(UTC),
                "quote_amount": None,
                "quote_description": None,
                "quote_file_url": None,
                "quote_submitted_at": None,
                "quote_approved": None,
                "quote_rejection_reason": None,
            },
        )
        if not moved:
            raise ConflictError("Ticket was modified concurrently; reload and retry")
        for contractor_id in contractor_ids:
            await self._quotes.request(ticket.id, contractor_id, requested_by=actor.user_id, notes=notes)

        logger.info("Quotes requested for ticket %s from %s", ticket.id, contractor_ids)
        self._notifier.notify(
            EventType.QUOTE_REQUESTED,
            tenant_id=self._tenant_id,
            recipient_ids=[*contractor_ids, previous_assignee],
            title="Quote requested",
            message=f"Please submit a quote for ticket {ticket.ticket_number}: {ticket.title}",
            data={"ticket_id": ticket.id, "notes": notes},
        )
        return {
            "ticket": ticket_to_dict(await load_ticket(self._tickets, ticket.id)),
            "quote_requests": [quote_request_to_dict(q) for q in await self._quotes.list_for_ticket(ticket.id)],
        }

    async def submit_quote(
        self,
        ticket_id: str,
        actor: Actor,
        *,
        amount: Decimal | float | str,
        description: str,
        file_url: str | None = None,
        quote_request_id: str | None = None,
    ) -> dict[str, Any]:
        """Submit the calling contractor's quote.

        The first submission moves the ticket to ``QUOTE_SUBMITTED``; later
        submissions by other contractors only update their own request.
        """
        if actor.role != PlatformRole.CONTRACTOR:
            raise AuthzError("Only contractors can submit quotes")
        try:
            quote_amount = to_money(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise PreconditionFailed("Quote amount must be a number")
        if quote_amount <= 0:
            raise PreconditionFailed("Quote amount must be greater than zero")
        description = (description or "").strip()
        if not description:
            raise PreconditionFailed("A quote description is required")

        ticket = await load_ticket(self._tickets, ticket_id)
        if quote_request_id is not None:
            request = await self._quotes.get(quote_request_id)
            if request is not None and request.ticket_id != ticket.id:
                request = None
        else:
            request = await self._quotes.get_for_contractor(ticket.id, actor.user_id)
        if request is None or request.contractor_id != actor.user_id:
            raise AuthzError("No quote was requested from you for this ticket")
        if request.status != QuoteRequestStatus.PENDING.value:
            raise ConflictError(f"Your quote for this ticket is already {request.status}")

        current = TicketStatus(ticket.status)
        if current not in (TicketStatus.AWAITING_QUOTE, TicketStatus.QUOTE_SUBMITTED):
            raise StateError(f"Ticket {ticket.ticket_number} is not awaiting quotes")

        if not await self._quotes.submit(request.id, amount=quote_amount, description=description, file_url=file_url):
            raise ConflictError("Quote request changed concurrently; reload and retry")

        if current == TicketStatus.AWAITING_QUOTE:
            check_transition(current, TicketStatus.QUOTE_SUBMITTED, actor.role_class)
            moved = await self._tickets.transition(
                ticket.id,
                from_status=current,
                to_status=TicketStatus.QUOTE_SUBMITTED,
                changed_by=actor.user_id,
                values={
                    "quote_amount": quote_amount,
                    "quote_description": description,
                    "quote_file_url": file_url,
                    "quote_submitted_at": datetime.now(UTC),
                },
            )
            if not moved:
                # Another contractor's first submission won; only that one is recorded.
                refreshed = await load_ticket(self._tickets, ticket.id)
                if refreshed.status != TicketStatus.QUOTE_SUBMITTED.value:
                    raise ConflictError("Ticket was modified concurrently; reload and retry")

        logger.info("Quote %s submitted for ticket %s (amount=%s)", request.id, ticket.id, quote_amount)
        self._notifier.notify(
            EventType.QUOTE_SUBMITTED,
            tenant_id=self._tenant_id,
            recipient_ids=[request.requested_by_id],
            title="Quote submitted",
            message=f"A quote of {quote_amount} was submitted for ticket {ticket.ticket_number}.",
            data={"ticket_id": ticket.id, "quote_request_id": request.id, "amount": str(quote_amount)},
        )
        submitted = await self._quotes.get(request.id)
        return {
            "ticket": ticket_to_dict(await load_ticket(self._tickets, ticket.id)),
            "quote_request": quote_request_to_dict(submitted) if submitted is not None else None,
        }

    async def approve_quote(
        self,
        ticket_id: str,
        actor: Actor,
        quote_request_id: str | None = None,
    ) -> dict[str, Any]:
        """Award a submitted quote and assign its contractor."""
        ticket = await load_ticket(self._tickets, ticket_id)
        check_admin_scope(actor, ticket)
        self._require_quote_submitted(ticket)
        check_transition(TicketStatus.QUOTE_SUBMITTED, TicketStatus.PROCESSING, actor.role_class)

        requests = await self._quotes.list_for_ticket(ticket.id)
        submitted = [q for q in requests if q.status == QuoteRequestStatus.SUBMITTED.value]
        if quote_request_id is not None:
            chosen = next((q for q in submitted if q.id == quote_request_id), None)
            if chosen is None:
                raise NotFoundError(f"No submitted quote {quote_request_id} for this ticket")
        elif len(submitted) == 1:
            chosen = submitted[0]
        elif not submitted:
            raise StateError("No submitted quote to approve")
        else:
            raise PreconditionFailed(
                "Several quotes were submitted; choose one with quote_request_id",
                details={"quote_request_ids": [q.id for q in submitted]},
            )

        moved = await self._tickets.transition(
            ticket.id,
            from_status=TicketStatus.QUOTE_SUBMITTED,
            to_status=TicketStatus.PROCESSING,
            changed_by=actor.user_id,
            reason=f"Quote {chosen.id} approved",
            values={
                "assigned_to_id": chosen.contractor_id,
                "quote_approved": True,
                "quote_amount": chosen.amount,
                "quote_description": chosen.description,
                "quote_file_url": chosen.file_url,
                "quote_submitted_at": chosen.submitted_at,
                "quote_rejection_reason": None,
            },
            require_unassigned=True,
        )
        if not moved:
            raise ConflictError("Ticket was modified concurrently; reload and retry")
        await self._quotes.award(ticket.id, chosen.id)

        logger.info("Quote %s awarded on ticket %s by %s", chosen.id, ticket.id, actor.user_id)
        self._notifier.notify(
            EventType.QUOTE_APPROVED,
            tenant_id=self._tenant_id,
            recipient_ids=[chosen.contractor_id],
            title="Quote approved",
            message=f"Your quote for ticket {ticket.ticket_number} was approved. Please accept the job.",
            data={"ticket_id": ticket.id, "quote_request_id": chosen.id},
        )
        losers = [q.contractor_id for q in requests if q.id != chosen.id]
        self._notifier.notify(
            EventType.QUOTE_REJECTED,
            tenant_id=self._tenant_id,
            recipient_ids=losers,
            title="Quote not selected",
            message=f"Another quote was selected for ticket {ticket.ticket_number}.",
            data={"ticket_id": ticket.id},
        )
        return ticket_to_dict(await load_ticket(self._tickets, ticket.id))

    async def reject_quote(self, ticket_id: str, actor: Actor, reason: str) -> dict[str, Any]:
        """Reject the submitted quotes and reopen them for resubmission."""
        ticket = await load_ticket(self._tickets, ticket_id)
        check_admin_scope(actor, ticket)
        self._require_quote_submitted(ticket)
        reason = (reason or "").strip()
        if not reason:
            raise PreconditionFailed("A rejection reason is required")
        check_transition(TicketStatus.QUOTE_SUBMITTED, TicketStatus.AWAITING_QUOTE, actor.role_class)

        submitted = [
            q.contractor_id
            for q in await self._quotes.list_for_ticket(ticket.id)
            if q.status == QuoteRequestStatus.SUBMITTED.value
        ]
        moved = await self._tickets.transition(
            ticket.id,
            from_status=TicketStatus.QUOTE_SUBMITTED,
            to_status=TicketStatus.AWAITING_QUOTE,
            changed_by=actor.user_id,
            reason=reason,
            values={
                "quote_amount": None,
                "quote_description": None,
                "quote_file_url": None,
                "quote_submitted_at": None,
                "quote_approved": False,
                "quote_rejection_reason": reason,
            },
        )
        if not moved:
            raise ConflictError("Ticket was modified concurrently; reload and retry")
        reopened = await self._quotes.reopen_submitted(ticket.id)

        logger.info("Quotes rejected on ticket %s (%d reopened)", ticket.id, reopened)
        self._notifier.notify(
            EventType.QUOTE_REJECTED,
            tenant_id=self._tenant_id,
            recipient_ids=submitted,
            title="Quote rejected",
            message=f"Your quote for ticket {ticket.ticket_number} was rejected: {reason}. You may resubmit.",
            data={"ticket_id": ticket.id, "reason": reason},
        )
        return ticket_to_dict(await load_ticket(self._tickets, ticket.id))

    async def list_quote_requests(self, ticket_id: str, actor: Actor) -> list[dict[str, Any]]:
        """Admins see every request; a contractor sees only their own."""
        ticket = await load_ticket(self._tickets, ticket_id)
        requests = await self._quotes.list_for_ticket(ticket.id)
        if actor.role == PlatformRole.CONTRACTOR:
            return [quote_request_to_dict(q) for q in requests if q.contractor_id == actor.user_id]
        check_admin_scope(actor, ticket)
        return [quote_request_to_dict(q) for q in requests]

    @staticmethod
    def _require_quote_submitted(ticket: TicketTable) -> None:
        if ticket.status != TicketStatus.QUOTE_SUBMITTED.value:
            raise StateError(
                f"Ticket {ticket.ticket_number} has no quote awaiting review",
                details={"status": ticket.status},
            )
