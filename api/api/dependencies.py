"""FastAPI dependency injection for database sessions, notifications, and settings."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Response
from servicedesk_core.billing.subscription_rules import SubscriptionAccess
from servicedesk_core.errors import SubscriptionBlocked
from servicedesk_core.models.billing import AccessMode
from servicedesk_core.state.database import get_engine, set_tenant_context
from servicedesk_core.workflow.roles import Actor, PlatformRole
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.middleware.rbac import get_actor, get_user_role
from api.services.notification_dispatcher import Notifier, get_dispatcher

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that operate outside FastAPI's dependency injection
    (e.g. the notification dispatcher) and need direct session access.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


# ---------------------------------------------------------------------------
# Notifications staged during the request
# ---------------------------------------------------------------------------


def get_notifier(request: Request) -> Notifier:
    """Return the request's notification buffer, creating it on first use."""
    notifier = getattr(request.state, "notifier", None)
    if notifier is None:
        notifier = Notifier()
        request.state.notifier = notifier
    return notifier


NotifierDep = Annotated[Notifier, Depends(get_notifier)]


async def _session_scope(request: Request, tenant_id: str | None) -> AsyncGenerator[AsyncSession, None]:
    """Commit on clean exit, roll back on exception, then flush notifications.

    Staged notifications are handed to the dispatcher only after the
    commit succeeded; on rollback they are discarded.
    """
    factory = get_session_factory()
    notifier = get_notifier(request)
    session = factory()
    try:
        if tenant_id is not None:
            await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        notifier.discard()
        raise
    finally:
        await session.close()
    await get_dispatcher().dispatch(notifier.drain())


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    .. warning:: **No Row-Level Security**

       Sessions produced by this dependency do **not** set
       ``app.tenant_id``.  Queries executed through this session bypass
       PostgreSQL RLS policies and can read/write rows belonging to
       **any** tenant.

    **Intended usage (via** ``PublicSessionDep`` **):**

    - ``POST /billing/paynow/webhook`` -- the tenant is derived from the
      verified merchant reference.
    - ``GET|POST /cron/subscription-check`` -- the daily check spans tenants.
    - ``GET /ready`` readiness probe.

    The session commits on clean exit and rolls back on exception.
    """
    async for session in _session_scope(request, None):
        yield session


async def get_tenant_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set.

    Extracts ``tenant_id`` from the authenticated request state and sets
    ``app.tenant_id`` on the session so that PostgreSQL Row-Level Security
    policies restrict all queries to the authenticated tenant's rows.

    This is the primary session dependency for all tenant-scoped endpoints.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    async for session in _session_scope(request, tenant_id):
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# WARNING: PublicSessionDep provides a session WITHOUT tenant RLS context.
# Any queries through this session bypass RLS and can see ALL tenant data.
# Only use for the payment webhook, the cron trigger and probes.
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]


async def get_admin_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context for platform operations.

    .. warning:: **No Row-Level Security**

       Use only in endpoints guarded by
       ``require_permission(Permission.ADMINISTER_PLATFORM)``, such as
       bank-transfer confirmation across tenants.
    """
    async for session in _session_scope(request, None):
        yield session


# WARNING: AdminSessionDep provides a session WITHOUT tenant RLS context.
# It can read/write rows belonging to ANY tenant.  Use only in endpoints
# protected by the platform-administration guard.
AdminSessionDep = Annotated[AsyncSession, Depends(get_admin_session)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from authenticated request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]

RoleDep = Annotated[PlatformRole, Depends(get_user_role)]

ActorDep = Annotated[Actor, Depends(get_actor)]

# ---------------------------------------------------------------------------
# Subscription access gating
# ---------------------------------------------------------------------------

_READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def require_access(mode: AccessMode | None = None) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces the tenant's subscription access.

    The access level is derived from the tenant's subscription status.
    With *mode* ``None`` the mode follows the HTTP method (reads for
    ``GET``/``HEAD``/``OPTIONS``, writes otherwise).  Super admins bypass
    the gate.  Any warning is surfaced as ``X-Subscription-Warning``.

    Usage::

        router = APIRouter(
            prefix="/tickets",
            dependencies=[Depends(require_access())],
        )
    """

    async def _gate(
        request: Request,
        response: Response,
        session: SessionDep,
        tenant_id: TenantDep,
        role: RoleDep,
    ) -> None:
        from api.services.subscription_service import SubscriptionService

        if role == PlatformRole.SUPER_ADMIN:
            return

        required = mode or (AccessMode.READ if request.method in _READ_METHODS else AccessMode.WRITE)
        access: SubscriptionAccess = await SubscriptionService(session, tenant_id=tenant_id).get_access()
        request.state.subscription_access = access

        if not access.allows(required):
            logger.info(
                "Subscription gate denied %s %s for tenant %s (level=%s)",
                request.method,
                request.url.path,
                tenant_id,
                access.level.value,
            )
            raise SubscriptionBlocked(
                access.message or "Your subscription does not allow this operation",
                details={
                    "access_level": access.level.value,
                    "status": access.status.value if access.status else None,
                },
            )

        response.headers["X-Subscription-Level"] = access.level.value
        if access.message:
            response.headers["X-Subscription-Warning"] = access.message

    return _gate  # type: ignore[return-value]
