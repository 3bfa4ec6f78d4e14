"""Shared fixtures for the service desk API tests.

Every test runs against a throwaway SQLite file through the real
middleware stack, repositories and services.  A single tenant is seeded
with one user per role and an active subscription; see :mod:`helpers`
for the seeded ids and token helpers.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from helpers import CRON_SECRET, OTHER_TENANT_ID, PAYNOW_KEY, TENANT_ID, TENANT_SLUG, USERS
from httpx import ASGITransport, AsyncClient
from servicedesk_core.state.repository import SubscriptionRepository, TenantRepository, UserRepository
from servicedesk_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import api.dependencies as deps
from api.config import APISettings
from api.main import create_app
from api.services.notification_dispatcher import init_dispatcher

# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        paynow_integration_id="12345",
        paynow_integration_key=PAYNOW_KEY,
        paynow_init_url="https://paynow.test/interface/initiatetransaction",
        cron_secret=CRON_SECRET,
        bank_name="First Test Bank",
        bank_account_name="Service Desk Ltd",
        bank_account_number="000111222",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path, monkeypatch) -> async_sessionmaker[AsyncSession]:
    """Create a SQLite database, seed it, and install it as the app's engine."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    async with factory() as session:
        tenants = TenantRepository(session)
        await tenants.create("Acme Facilities", TENANT_SLUG, tenant_id=TENANT_ID)
        await tenants.create("Other Org", "other", tenant_id=OTHER_TENANT_ID)
        users = UserRepository(session, tenant_id=TENANT_ID)
        for user_id, (role, department) in USERS.items():
            await users.create(
                email=f"{user_id}@acme.test",
                name=user_id.replace("-", " ").title(),
                role=role,
                department=department,
                user_id=user_id,
            )
        await UserRepository(session, tenant_id=OTHER_TENANT_ID).create(
            email="outsider@other.test", name="Outsider", role="TENANT_ADMIN", user_id="outsider"
        )
        now = datetime.now(UTC)
        await SubscriptionRepository(session, tenant_id=TENANT_ID).create(
            plan="PRO",
            billing_cycle="monthly",
            status="ACTIVE",
            current_period_start=now - timedelta(days=10),
            current_period_end=now + timedelta(days=20),
            grace_period_end=now + timedelta(days=27),
        )
        await session.commit()

    monkeypatch.setattr(deps, "_engine", engine)
    monkeypatch.setattr(deps, "_session_factory", factory)
    init_dispatcher(factory)

    yield factory

    init_dispatcher()
    await engine.dispose()


# ---------------------------------------------------------------------------
# FastAPI client (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory: async_sessionmaker[AsyncSession]):
    """Create a FastAPI app bound to the seeded database."""
    application = create_app()
    application.dependency_overrides[deps.get_settings] = lambda: test_settings
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  Requests carry no credentials by default;
    pass ``headers=auth_headers(...)`` per call.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
