"""Role-Based Access Control dependencies.

Endpoint guards are coarse: they check that the caller's platform role
holds a permission for the kind of operation (create tickets, manage
invoices, administer subscriptions...).  Whether a specific ticket may
move to a specific status is decided by the workflow transition table in
:mod:`servicedesk_core.workflow`, not here.

Usage in routers::

    from api.middleware.rbac import Permission, require_permission

    @router.post("/invoices/{invoice_id}/approve")
    async def approve_invoice(
        ...,
        _role: PlatformRole = Depends(require_permission(Permission.MANAGE_INVOICES)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from fastapi import Depends, HTTPException, Request
from servicedesk_core.workflow.roles import ADMIN_ROLES, Actor, PlatformRole, parse_platform_role

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Permission tokens checked by endpoint guards."""

    # Tickets
    READ_TICKETS = "read:tickets"
    CREATE_TICKETS = "create:tickets"
    TRANSITION_TICKETS = "transition:tickets"
    MANAGE_ASSIGNMENTS = "manage:assignments"
    MANAGE_QUOTES = "manage:quotes"
    SUBMIT_QUOTES = "submit:quotes"

    # Contractor ledger
    READ_INVOICES = "read:invoices"
    SUBMIT_INVOICES = "submit:invoices"
    MANAGE_INVOICES = "manage:invoices"
    PROCESS_PAYMENTS = "process:payments"

    # Platform subscription
    VIEW_BILLING = "view:billing"
    MANAGE_BILLING = "manage:billing"
    ADMINISTER_PLATFORM = "administer:platform"


_BASE_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_TICKETS,
        Permission.TRANSITION_TICKETS,
    }
)

_REQUESTER_PERMS: frozenset[Permission] = _BASE_PERMS | frozenset({Permission.CREATE_TICKETS})

_CONTRACTOR_PERMS: frozenset[Permission] = _BASE_PERMS | frozenset(
    {
        Permission.SUBMIT_QUOTES,
        Permission.READ_INVOICES,
        Permission.SUBMIT_INVOICES,
    }
)

_DEPARTMENT_ADMIN_PERMS: frozenset[Permission] = _REQUESTER_PERMS | frozenset(
    {
        Permission.MANAGE_ASSIGNMENTS,
        Permission.MANAGE_QUOTES,
        Permission.READ_INVOICES,
        Permission.MANAGE_INVOICES,
        Permission.VIEW_BILLING,
    }
)

_TENANT_ADMIN_PERMS: frozenset[Permission] = _DEPARTMENT_ADMIN_PERMS | frozenset(
    {
        Permission.PROCESS_PAYMENTS,
        Permission.MANAGE_BILLING,
    }
)

_SUPER_ADMIN_PERMS: frozenset[Permission] = _TENANT_ADMIN_PERMS | frozenset({Permission.ADMINISTER_PLATFORM})

ROLE_PERMISSIONS: dict[PlatformRole, frozenset[Permission]] = {
    PlatformRole.END_USER: _REQUESTER_PERMS,
    PlatformRole.CONTRACTOR: _CONTRACTOR_PERMS,
    PlatformRole.TENANT_ADMIN: _TENANT_ADMIN_PERMS,
    PlatformRole.SUPER_ADMIN: _SUPER_ADMIN_PERMS,
    **{role: _DEPARTMENT_ADMIN_PERMS for role in ADMIN_ROLES - {PlatformRole.TENANT_ADMIN, PlatformRole.SUPER_ADMIN}},
}


def role_has_permission(role: PlatformRole, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependencies: extract role / actor from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> PlatformRole:
    """Extract and validate the platform role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request carries no authenticated identity.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_platform_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(status_code=403, detail=f"Unrecognised role '{raw_role}'")


def get_actor(request: Request, role: PlatformRole = Depends(get_user_role)) -> Actor:
    """Build the :class:`Actor` handed to service operations."""
    tenant_id = getattr(request.state, "tenant_id", None)
    sub = getattr(request.state, "sub", None)
    if tenant_id is None or sub is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Actor(user_id=sub, tenant_id=tenant_id, role=role)


# ---------------------------------------------------------------------------
# FastAPI dependencies: permission and role guards
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., PlatformRole]:
    """Return a FastAPI dependency that enforces a specific permission.

    Returns the resolved :class:`PlatformRole` so downstream handlers can
    inspect it if needed.
    """

    def _guard(role: PlatformRole = Depends(get_user_role)) -> PlatformRole:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.value, permission.value)
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: role '{role.value}' does not have '{permission.value}' permission",
            )
        return role

    return _guard


def require_role(*allowed: PlatformRole) -> Callable[..., PlatformRole]:
    """Return a FastAPI dependency admitting only the *allowed* roles."""

    def _guard(role: PlatformRole = Depends(get_user_role)) -> PlatformRole:
        if role not in allowed:
            logger.info("Role check failed: has=%s, allowed=%s", role.value, [r.value for r in allowed])
            raise HTTPException(status_code=403, detail=f"Role '{role.value}' may not perform this operation")
        return role

    return _guard
