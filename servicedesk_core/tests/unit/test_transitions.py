"""Unit tests for servicedesk_core.workflow.transitions."""

from __future__ import annotations

import pytest
from servicedesk_core.errors import InvalidTransition
from servicedesk_core.models.ticket import Department, TicketStatus
from servicedesk_core.workflow.roles import Admin, Contractor, Requester
from servicedesk_core.workflow.transitions import (
    ACTION_TARGETS,
    ASSIGNED_STATUSES,
    TicketAction,
    allowed_next,
    check_transition,
    is_allowed,
    target_for_action,
)

S = TicketStatus
ADMIN = Admin()
REQUESTER = Requester()
CONTRACTOR = Contractor()


# ---------------------------------------------------------------------------
# Terminal states
# ---------------------------------------------------------------------------


class TestTerminalStates:
    @pytest.mark.parametrize("status", [S.CLOSED, S.CANCELLED])
    @pytest.mark.parametrize("role_class", [ADMIN, REQUESTER, CONTRACTOR])
    def test_no_outgoing_edges(self, status, role_class):
        assert allowed_next(status, role_class) == frozenset()

    def test_completed_cannot_be_cancelled(self):
        assert not is_allowed(S.COMPLETED, S.CANCELLED, ADMIN)
        assert not is_allowed(S.COMPLETED, S.CANCELLED, REQUESTER)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_full_path_is_legal(self):
        path = [
            (S.OPEN, S.PROCESSING, ADMIN),
            (S.PROCESSING, S.ACCEPTED, CONTRACTOR),
            (S.ACCEPTED, S.ON_SITE, REQUESTER),
            (S.ON_SITE, S.IN_PROGRESS, CONTRACTOR),
            (S.IN_PROGRESS, S.AWAITING_DESCRIPTION, REQUESTER),
            (S.AWAITING_DESCRIPTION, S.AWAITING_WORK_APPROVAL, CONTRACTOR),
            (S.AWAITING_WORK_APPROVAL, S.COMPLETED, REQUESTER),
            (S.COMPLETED, S.CLOSED, REQUESTER),
        ]
        for current, target, role_class in path:
            check_transition(current, target, role_class)

    def test_requester_cannot_accept_for_contractor(self):
        with pytest.raises(InvalidTransition) as exc_info:
            check_transition(S.PROCESSING, S.ACCEPTED, REQUESTER)
        details = exc_info.value.details
        assert details["from_status"] == "PROCESSING"
        assert details["to_status"] == "ACCEPTED"
        assert "CANCELLED" in details["allowed"]

    def test_contractor_cannot_complete(self):
        assert not is_allowed(S.AWAITING_WORK_APPROVAL, S.COMPLETED, CONTRACTOR)

    def test_work_rejection_returns_to_description(self):
        assert is_allowed(S.AWAITING_WORK_APPROVAL, S.AWAITING_DESCRIPTION, REQUESTER)
        assert is_allowed(S.AWAITING_WORK_APPROVAL, S.AWAITING_DESCRIPTION, ADMIN)

    def test_contractor_decline_reopens(self):
        assert is_allowed(S.PROCESSING, S.OPEN, CONTRACTOR)


# ---------------------------------------------------------------------------
# Quotes and assignment
# ---------------------------------------------------------------------------


class TestQuoteEdges:
    def test_quote_flow(self):
        assert is_allowed(S.OPEN, S.AWAITING_QUOTE, ADMIN)
        assert is_allowed(S.AWAITING_QUOTE, S.QUOTE_SUBMITTED, CONTRACTOR)
        assert is_allowed(S.QUOTE_SUBMITTED, S.PROCESSING, ADMIN)
        assert is_allowed(S.QUOTE_SUBMITTED, S.AWAITING_QUOTE, ADMIN)

    def test_requester_cannot_request_quotes(self):
        assert not is_allowed(S.OPEN, S.AWAITING_QUOTE, REQUESTER)

    @pytest.mark.parametrize("status", sorted(ASSIGNED_STATUSES, key=lambda s: s.value))
    def test_admin_can_unassign_back_to_open(self, status):
        assert is_allowed(status, S.OPEN, ADMIN)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.parametrize("status", [S.OPEN, S.PROCESSING])
    def test_requester_may_cancel_before_acceptance(self, status):
        assert is_allowed(status, S.CANCELLED, REQUESTER)

    @pytest.mark.parametrize("status", [S.ACCEPTED, S.ON_SITE, S.IN_PROGRESS])
    def test_requester_may_not_cancel_after_acceptance(self, status):
        assert not is_allowed(status, S.CANCELLED, REQUESTER)

    def test_admin_may_cancel_in_progress(self):
        assert is_allowed(S.IN_PROGRESS, S.CANCELLED, ADMIN)

    def test_contractor_never_cancels(self):
        for status in S:
            assert not is_allowed(status, S.CANCELLED, CONTRACTOR)


# ---------------------------------------------------------------------------
# Department scope does not change edges
# ---------------------------------------------------------------------------


class TestScopedAdmin:
    def test_scoped_admin_has_same_edges(self):
        scoped = Admin(department_scope=Department.IT)
        for status in S:
            assert allowed_next(status, scoped) == allowed_next(status, ADMIN)


# ---------------------------------------------------------------------------
# Named actions
# ---------------------------------------------------------------------------


class TestActions:
    def test_every_action_has_a_target(self):
        assert set(ACTION_TARGETS) == set(TicketAction)

    @pytest.mark.parametrize(
        ("action", "expected"),
        [
            (TicketAction.ACCEPT, S.ACCEPTED),
            (TicketAction.DECLINE, S.OPEN),
            (TicketAction.CONFIRM_ARRIVAL, S.ON_SITE),
            (TicketAction.MARK_DONE, S.AWAITING_DESCRIPTION),
            (TicketAction.CLOSE, S.CLOSED),
            (TicketAction.CANCEL, S.CANCELLED),
        ],
    )
    def test_target_for_action(self, action, expected):
        assert target_for_action(action) == expected
