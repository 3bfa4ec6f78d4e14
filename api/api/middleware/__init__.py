"""Middleware components for the service desk API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import CorrelationLoggingFilter, RequestLoggingMiddleware
from api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    get_actor,
    get_user_role,
    require_permission,
    require_role,
)

__all__ = [
    "AuthenticationMiddleware",
    "CorrelationLoggingFilter",
    "Permission",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "get_actor",
    "get_user_role",
    "require_permission",
    "require_role",
]
