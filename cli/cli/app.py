"""Service desk CLI application -- Typer-based operator interface.

Provides commands to create the schema, seed tenants and users, mint
bearer tokens for local testing, run the scheduled subscription jobs and
start the API server.  Human-readable output goes to *stderr* via Rich;
``--json`` prints machine-readable results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console

from cli.display import (
    display_check_results,
    display_delivery_results,
    display_tenant,
    display_tenants,
    display_users,
)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="servicedesk",
    help="Service desk - tickets, contractor invoicing and platform subscriptions",
    no_args_is_help=True,
)
console = Console(stderr=True)

from cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (defaults to API_DATABASE_URL).",
        envvar="API_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> Any:
    from api.config import load_api_settings

    return load_api_settings()


def _run_with_session(work: Callable[[Any], Awaitable[T]]) -> T:
    """Run *work(session)* in one committed transaction against the configured database."""
    from servicedesk_core.state.database import get_engine, get_session

    async def _main() -> T:
        engine = get_engine(_database_url or _settings().database_url)
        try:
            async with get_session(engine) as session:
                return await work(session)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _fail(message: str, code: int = 1) -> typer.Exit:
    console.print(f"[red]{message}[/red]")
    return typer.Exit(code=code)


# ---------------------------------------------------------------------------
# Schema and directory
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create every table that does not exist yet.

    Intended for local SQLite databases and development; PostgreSQL
    deployments should run ``alembic upgrade head`` instead.
    """
    from servicedesk_core.state.database import get_engine
    from servicedesk_core.state.tables import Base

    url = _database_url or _settings().database_url

    async def _main() -> None:
        engine = get_engine(url)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        finally:
            await engine.dispose()

    asyncio.run(_main())
    console.print(f"[green]Schema ready[/green] ({url.split('://', 1)[0]})")


@app.command("seed-tenant")
def seed_tenant(
    name: str = typer.Argument(..., help="Organisation name."),
    slug: str = typer.Option(..., "--slug", help="Short unique slug used in payment references."),
    admin_email: str = typer.Option(..., "--admin-email", help="Email of the first TENANT_ADMIN."),
    admin_name: str = typer.Option("Administrator", "--admin-name"),
    plan: str = typer.Option("BASIC", "--plan", help="Trial plan (BASIC | PRO | ENTERPRISE)."),
    billing_cycle: str = typer.Option("monthly", "--cycle", help="monthly | yearly"),
    trial: bool = typer.Option(True, "--trial/--no-trial", help="Start a trial subscription."),
) -> None:
    """Create a tenant, its first administrator and (by default) a trial."""
    from servicedesk_core.models.billing import BillingCycle, SubscriptionPlan
    from servicedesk_core.state.repository import TenantRepository, UserRepository
    from servicedesk_core.workflow.roles import PlatformRole

    from api.services.subscription_service import SubscriptionService

    try:
        plan_value = SubscriptionPlan(plan.upper())
        cycle_value = BillingCycle(billing_cycle.lower())
    except ValueError as exc:
        raise _fail(f"Invalid plan or billing cycle: {exc}", code=3) from exc

    settings = _settings()

    async def _work(session: Any) -> dict[str, Any]:
        tenants = TenantRepository(session)
        if await tenants.get_by_slug(slug) is not None:
            raise _fail(f"Tenant slug '{slug}' is already taken")
        tenant = await tenants.create(name, slug)
        admin = await UserRepository(session, tenant_id=tenant.id).create(
            email=admin_email, name=admin_name, role=PlatformRole.TENANT_ADMIN.value
        )
        subscription = None
        if trial:
            service = SubscriptionService(
                session,
                tenant_id=tenant.id,
                trial_days=settings.trial_days,
                grace_days=settings.grace_period_days,
            )
            subscription = await service.create_trial(plan_value, cycle_value)
        return {
            "tenant": {"id": tenant.id, "name": tenant.name, "slug": tenant.slug},
            "admin": {"id": admin.id, "email": admin.email, "name": admin.name, "role": admin.role},
            "subscription": subscription,
        }

    result = _run_with_session(_work)
    if _json_output:
        _emit_json(result)
        return
    display_tenant(console, result["tenant"], result["subscription"])
    display_users(console, [result["admin"]])


@app.command("add-user")
def add_user(
    tenant_id: str = typer.Argument(..., help="Tenant the user belongs to."),
    email: str = typer.Argument(...),
    name: str = typer.Option(..., "--name"),
    role: str = typer.Option("END_USER", "--role", help="Platform role, e.g. CONTRACTOR or IT_ADMIN."),
    department: str | None = typer.Option(None, "--department", help="Department for END_USER accounts."),
) -> None:
    """Add a user to an existing tenant."""
    from servicedesk_core.models.ticket import Department
    from servicedesk_core.state.repository import TenantRepository, UserRepository
    from servicedesk_core.workflow.roles import PlatformRole

    try:
        role_value = PlatformRole(role.upper())
        department_value = Department(department.upper()).value if department else None
    except ValueError as exc:
        raise _fail(f"Invalid role or department: {exc}", code=3) from exc

    async def _work(session: Any) -> dict[str, Any]:
        if await TenantRepository(session).get(tenant_id) is None:
            raise _fail(f"Tenant '{tenant_id}' not found")
        user = await UserRepository(session, tenant_id=tenant_id).create(
            email=email, name=name, role=role_value.value, department=department_value
        )
        return {"id": user.id, "email": user.email, "name": user.name, "role": user.role, "department": user.department}

    user = _run_with_session(_work)
    if _json_output:
        _emit_json(user)
        return
    display_users(console, [user])


@app.command("tenants")
def list_tenants() -> None:
    """List tenants with their subscription status."""
    from servicedesk_core.state.repository import SubscriptionRepository, TenantRepository

    async def _work(session: Any) -> list[dict[str, Any]]:
        rows = []
        for tenant in await TenantRepository(session).list_all():
            sub = await SubscriptionRepository(session, tenant_id=tenant.id).get()
            rows.append(
                {
                    "id": tenant.id,
                    "name": tenant.name,
                    "slug": tenant.slug,
                    "subscription_status": sub.status if sub else None,
                }
            )
        return rows

    tenants = _run_with_session(_work)
    if _json_output:
        _emit_json(tenants)
        return
    display_tenants(console, tenants)


@app.command("token")
def issue_token(
    user_id: str = typer.Argument(..., help="Subject (user id) of the token."),
    tenant_id: str = typer.Argument(...),
    role: str = typer.Option("END_USER", "--role"),
    ttl: int = typer.Option(3600, "--ttl", help="Lifetime in seconds."),
) -> None:
    """Print a bearer token signed with JWT_SECRET, for local testing."""
    from servicedesk_core.workflow.roles import PlatformRole

    from api.security import TokenManager, load_token_config

    try:
        role_value = PlatformRole(role.upper())
    except ValueError as exc:
        raise _fail(f"Invalid role: {role}", code=3) from exc

    token = TokenManager(load_token_config()).generate_token(user_id, tenant_id, role_value.value, ttl_seconds=ttl)
    typer.echo(token)


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


@app.command("subscription-check")
def subscription_check() -> None:
    """Run the daily subscription check once (same job as the cron endpoint)."""
    from servicedesk_core.state.database import get_engine, get_session, session_factory

    from api.services.notification_dispatcher import Notifier, init_dispatcher
    from api.services.subscription_service import run_daily_check

    settings = _settings()
    url = _database_url or settings.database_url

    async def _main() -> dict[str, int]:
        engine = get_engine(url)
        notifier = Notifier()
        try:
            async with get_session(engine) as session:
                result = await run_daily_check(session, notifier=notifier, grace_days=settings.grace_period_days)
            dispatcher = init_dispatcher(
                session_factory(engine),
                webhook_url=settings.notification_webhook_url,
                max_attempts=settings.notification_max_attempts,
            )
            await dispatcher.dispatch(notifier.drain())
            return result
        finally:
            await engine.dispose()

    result = asyncio.run(_main())
    if _json_output:
        _emit_json(result)
        return
    display_check_results(console, result)


@app.command("deliver-notifications")
def deliver_notifications(
    url: str | None = typer.Option(None, "--url", help="Delivery endpoint (defaults to API_NOTIFICATION_WEBHOOK_URL)."),
    limit: int = typer.Option(100, "--limit", min=1),
) -> None:
    """Retry HTTP delivery of outbox notifications."""
    from servicedesk_core.state.database import get_engine, session_factory

    from api.services.notification_dispatcher import deliver_pending

    settings = _settings()
    target = url or settings.notification_webhook_url
    if not target:
        raise _fail("No delivery URL: pass --url or set API_NOTIFICATION_WEBHOOK_URL", code=3)

    async def _main() -> dict[str, int]:
        engine = get_engine(_database_url or settings.database_url)
        try:
            return await deliver_pending(
                session_factory(engine),
                target,
                max_attempts=settings.notification_max_attempts,
                limit=limit,
            )
        finally:
            await engine.dispose()

    result = asyncio.run(_main())
    if _json_output:
        _emit_json(result)
        return
    display_delivery_results(console, result)
