"""Ticket workflow rules: role classes, transition table and SLA targets."""

from servicedesk_core.workflow.roles import (
    ADMIN_ROLES,
    Actor,
    Admin,
    Contractor,
    PlatformRole,
    Requester,
    RoleClass,
    RoleKind,
    parse_platform_role,
    role_class_for,
)
from servicedesk_core.workflow.sla import SLA_TARGETS, sla_deadlines
from servicedesk_core.workflow.transitions import (
    ACTION_TARGETS,
    ASSIGNED_STATUSES,
    TRANSITIONS,
    TicketAction,
    allowed_next,
    check_transition,
    is_allowed,
    target_for_action,
)

__all__ = [
    "ACTION_TARGETS",
    "ADMIN_ROLES",
    "ASSIGNED_STATUSES",
    "Actor",
    "Admin",
    "Contractor",
    "PlatformRole",
    "Requester",
    "RoleClass",
    "RoleKind",
    "SLA_TARGETS",
    "TRANSITIONS",
    "TicketAction",
    "allowed_next",
    "check_transition",
    "is_allowed",
    "parse_platform_role",
    "role_class_for",
    "sla_deadlines",
    "target_for_action",
]
