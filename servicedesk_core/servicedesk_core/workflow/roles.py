"""Platform roles and the compact role classes the workflow is keyed on.

The identity provider issues one of nine platform roles.  Six of them are
near-identical admin roles that differ only in which department's tickets
they may act on, so the workflow collapses them into a single
:class:`Admin` class carrying an optional department scope::

    RoleClass = Requester | Contractor | Admin(department_scope)

A ``None`` scope means tenant-wide authority (tenant admin, super admin).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from servicedesk_core.models.ticket import Department


class PlatformRole(str, Enum):
    """Role claim values issued by the identity provider."""

    SUPER_ADMIN = "SUPER_ADMIN"
    TENANT_ADMIN = "TENANT_ADMIN"
    IT_ADMIN = "IT_ADMIN"
    SALES_ADMIN = "SALES_ADMIN"
    RETAIL_ADMIN = "RETAIL_ADMIN"
    MAINTENANCE_ADMIN = "MAINTENANCE_ADMIN"
    PROJECTS_ADMIN = "PROJECTS_ADMIN"
    END_USER = "END_USER"
    CONTRACTOR = "CONTRACTOR"


_ROLE_LOOKUP: dict[str, PlatformRole] = {r.value.lower(): r for r in PlatformRole}

# Department admins and the department each one is scoped to.
_DEPARTMENT_SCOPES: dict[PlatformRole, Department] = {
    PlatformRole.IT_ADMIN: Department.IT,
    PlatformRole.SALES_ADMIN: Department.SALES,
    PlatformRole.RETAIL_ADMIN: Department.RETAIL,
    PlatformRole.MAINTENANCE_ADMIN: Department.MAINTENANCE,
    PlatformRole.PROJECTS_ADMIN: Department.PROJECTS,
}

ADMIN_ROLES: frozenset[PlatformRole] = frozenset(
    {PlatformRole.SUPER_ADMIN, PlatformRole.TENANT_ADMIN, *_DEPARTMENT_SCOPES}
)


def admin_roles_for(department: Department | str | None) -> list[PlatformRole]:
    """Return the admin roles that oversee tickets of *department*."""
    roles = [PlatformRole.TENANT_ADMIN]
    if department is None:
        return roles
    value = department.value if isinstance(department, Department) else department
    roles.extend(role for role, scope in _DEPARTMENT_SCOPES.items() if scope.value == value)
    return roles


def parse_platform_role(raw: str) -> PlatformRole:
    """Convert a token ``role`` claim into a :class:`PlatformRole`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Role classes
# ---------------------------------------------------------------------------


class RoleKind(str, Enum):
    """Discriminator of the role-class variant."""

    REQUESTER = "requester"
    CONTRACTOR = "contractor"
    ADMIN = "admin"


@dataclass(frozen=True)
class Requester:
    kind: ClassVar[RoleKind] = RoleKind.REQUESTER


@dataclass(frozen=True)
class Contractor:
    kind: ClassVar[RoleKind] = RoleKind.CONTRACTOR


@dataclass(frozen=True)
class Admin:
    """Any admin role, optionally limited to one department's tickets."""

    department_scope: Department | None = None
    kind: ClassVar[RoleKind] = RoleKind.ADMIN

    def covers(self, department: Department | str | None) -> bool:
        """Return ``True`` if this admin may act on a ticket of *department*."""
        if self.department_scope is None:
            return True
        if department is None:
            return False
        return Department(department) == self.department_scope


RoleClass = Requester | Contractor | Admin


def role_class_for(role: PlatformRole) -> RoleClass:
    """Collapse a platform role into its workflow role class."""
    if role == PlatformRole.CONTRACTOR:
        return Contractor()
    if role == PlatformRole.END_USER:
        return Requester()
    return Admin(department_scope=_DEPARTMENT_SCOPES.get(role))


# ---------------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a service operation."""

    user_id: str
    tenant_id: str
    role: PlatformRole

    @property
    def role_class(self) -> RoleClass:
        return role_class_for(self.role)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_super_admin(self) -> bool:
        return self.role == PlatformRole.SUPER_ADMIN
