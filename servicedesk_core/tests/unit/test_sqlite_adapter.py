"""Tests for the SQLite adapter and backend dispatch used in local mode."""

from __future__ import annotations

from pathlib import Path

import pytest
from servicedesk_core.state.database import get_engine, get_session, set_tenant_context
from servicedesk_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy import inspect, text

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        engine = get_local_engine(db_path)
        assert db_path.parent.exists()
        assert "state.db" in str(engine.url)


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    @pytest.mark.asyncio
    async def test_creates_every_table_idempotently(self, tmp_path: Path) -> None:
        db_path = tmp_path / "tables.db"
        engine = get_local_engine(db_path)
        await create_local_tables(engine)
        await create_local_tables(engine)

        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

        assert {
            "tenants",
            "users",
            "tickets",
            "status_history",
            "quote_requests",
            "invoices",
            "payment_batches",
            "subscriptions",
            "payments",
            "webhook_receipts",
            "notification_outbox",
        } <= names
        await engine.dispose()


# ---------------------------------------------------------------------------
# Sessions and tenant context
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_rollback_on_error(self) -> None:
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)

        with pytest.raises(ValueError, match="boom"):
            async with get_session(engine) as _session:
                raise ValueError("boom")

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_tenant_context_is_a_noop(self) -> None:
        engine = get_local_engine(":memory:")
        async with get_session(engine) as session:
            # Not validated on SQLite, which has no RLS.
            await set_tenant_context(session, "not a valid id!")
            result = await session.execute(text("SELECT 1"))
            assert result.scalar() == 1
        await engine.dispose()


class TestDatabaseDispatch:
    def test_sqlite_url_dispatches_to_local_engine(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        assert "sqlite" in str(engine.url)
        assert "x.db" in str(engine.url)
