"""Ticket transition table.

The table maps ``(current_status, role_kind)`` to the set of statuses that
role class may move a ticket to.  It is the only place edges are defined:
the workflow service checks it before evaluating any edge-specific
precondition, and the assignment and quote operations check it too.

Ownership (requester owns the ticket, contractor is the assignee) and the
admin department scope are checked by the caller; the table answers only
"is this edge legal for this kind of actor".
"""

from __future__ import annotations

from enum import Enum

from servicedesk_core.errors import InvalidTransition
from servicedesk_core.models.ticket import TERMINAL_STATUSES, TicketStatus
from servicedesk_core.workflow.roles import RoleClass, RoleKind

S = TicketStatus

# Statuses in which a ticket has (or may have) an assignee an admin can revoke.
ASSIGNED_STATUSES: frozenset[TicketStatus] = frozenset(
    {
        S.PROCESSING,
        S.ACCEPTED,
        S.ON_SITE,
        S.IN_PROGRESS,
        S.AWAITING_DESCRIPTION,
        S.AWAITING_WORK_APPROVAL,
    }
)

# Admins may cancel anywhere short of completion.
_ADMIN_CANCELLABLE: frozenset[TicketStatus] = frozenset(
    s for s in TicketStatus if s not in TERMINAL_STATUSES and s != S.COMPLETED
)

# Requesters may cancel only before a contractor has accepted.
_REQUESTER_CANCELLABLE: frozenset[TicketStatus] = frozenset({S.OPEN, S.PROCESSING})


def _build_table() -> dict[tuple[TicketStatus, RoleKind], frozenset[TicketStatus]]:
    edges: dict[tuple[TicketStatus, RoleKind], set[TicketStatus]] = {}

    def allow(src: TicketStatus, kind: RoleKind, *targets: TicketStatus) -> None:
        edges.setdefault((src, kind), set()).update(targets)

    admin, requester, contractor = RoleKind.ADMIN, RoleKind.REQUESTER, RoleKind.CONTRACTOR

    # Assignment and quotes.
    allow(S.OPEN, admin, S.PROCESSING, S.IN_PROGRESS, S.AWAITING_QUOTE)
    allow(S.PROCESSING, admin, S.AWAITING_QUOTE)
    allow(S.AWAITING_QUOTE, contractor, S.QUOTE_SUBMITTED)
    allow(S.QUOTE_SUBMITTED, admin, S.PROCESSING, S.AWAITING_QUOTE)
    for src in ASSIGNED_STATUSES:
        allow(src, admin, S.OPEN)

    # Contractor response to an assignment.
    allow(S.PROCESSING, contractor, S.ACCEPTED, S.OPEN)

    # Site visit and work.
    allow(S.ACCEPTED, requester, S.ON_SITE)
    allow(S.ACCEPTED, contractor, S.ON_SITE, S.IN_PROGRESS)
    allow(S.ON_SITE, contractor, S.IN_PROGRESS)
    allow(S.ON_SITE, requester, S.AWAITING_DESCRIPTION)
    allow(S.IN_PROGRESS, requester, S.AWAITING_DESCRIPTION)
    allow(S.IN_PROGRESS, admin, S.COMPLETED)

    # Work description review.
    allow(S.AWAITING_DESCRIPTION, contractor, S.AWAITING_WORK_APPROVAL)
    allow(S.AWAITING_WORK_APPROVAL, requester, S.COMPLETED, S.AWAITING_DESCRIPTION)
    allow(S.AWAITING_WORK_APPROVAL, admin, S.COMPLETED, S.AWAITING_DESCRIPTION)

    # Closure.
    allow(S.COMPLETED, requester, S.CLOSED)
    allow(S.COMPLETED, admin, S.CLOSED)

    # Cancellation.
    for src in _REQUESTER_CANCELLABLE:
        allow(src, requester, S.CANCELLED)
    for src in _ADMIN_CANCELLABLE:
        allow(src, admin, S.CANCELLED)

    return {key: frozenset(targets) for key, targets in edges.items()}


TRANSITIONS: dict[tuple[TicketStatus, RoleKind], frozenset[TicketStatus]] = _build_table()


def allowed_next(current: TicketStatus, role_class: RoleClass) -> frozenset[TicketStatus]:
    """Return the statuses *role_class* may move a *current* ticket to."""
    if current in TERMINAL_STATUSES:
        return frozenset()
    return TRANSITIONS.get((current, role_class.kind), frozenset())


def is_allowed(current: TicketStatus, target: TicketStatus, role_class: RoleClass) -> bool:
    return target in allowed_next(current, role_class)


def check_transition(current: TicketStatus, target: TicketStatus, role_class: RoleClass) -> None:
    """Raise :class:`InvalidTransition` unless the edge is in the table."""
    if not is_allowed(current, target, role_class):
        raise InvalidTransition(
            f"Cannot move ticket from {current.value} to {target.value} as {role_class.kind.value}",
            details={
                "from_status": current.value,
                "to_status": target.value,
                "allowed": sorted(s.value for s in allowed_next(current, role_class)),
            },
        )


# ---------------------------------------------------------------------------
# Named actions
# ---------------------------------------------------------------------------


class TicketAction(str, Enum):
    """Named operations accepted by the HTTP surface.

    Each action resolves to exactly one target status; the transition
    table still decides whether it is legal for the caller.
    """

    ACCEPT = "accept"
    DECLINE = "decline"
    CONFIRM_ARRIVAL = "confirm_arrival"
    START = "start"
    MARK_DONE = "mark_done"
    SUBMIT_DESCRIPTION = "submit_description"
    APPROVE_WORK = "approve_work"
    REJECT_WORK = "reject_work"
    COMPLETE = "complete"
    CLOSE = "close"
    CANCEL = "cancel"


ACTION_TARGETS: dict[TicketAction, TicketStatus] = {
    TicketAction.ACCEPT: S.ACCEPTED,
    TicketAction.DECLINE: S.OPEN,
    TicketAction.CONFIRM_ARRIVAL: S.ON_SITE,
    TicketAction.START: S.IN_PROGRESS,
    TicketAction.MARK_DONE: S.AWAITING_DESCRIPTION,
    TicketAction.SUBMIT_DESCRIPTION: S.AWAITING_WORK_APPROVAL,
    TicketAction.APPROVE_WORK: S.COMPLETED,
    TicketAction.REJECT_WORK: S.AWAITING_DESCRIPTION,
    TicketAction.COMPLETE: S.COMPLETED,
    TicketAction.CLOSE: S.CLOSED,
    TicketAction.CANCEL: S.CANCELLED,
}


def target_for_action(action: TicketAction) -> TicketStatus:
    return ACTION_TARGETS[action]
