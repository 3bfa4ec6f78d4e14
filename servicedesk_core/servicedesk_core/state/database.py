"""Async SQLAlchemy engine, session factory and tenant context.

The backend is chosen from the database URL scheme:

* ``postgresql+asyncpg://`` gives a pooled engine with statement and lock
  timeouts and row-level security keyed on ``app.tenant_id``;
* ``sqlite+aiosqlite://`` gives a single-writer local engine
  (see :mod:`servicedesk_core.state.sqlite_adapter`).
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Tenant ids are bound into set_config(); restrict them to a safe alphabet.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from servicedesk_core.state.sqlite_adapter import get_local_engine

        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",
                "lock_timeout": "10000",
            }
        },
    )
    logger.info("Created async engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached session factory bound to *engine*."""
    factory = _session_factories.get(id(engine))
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[id(engine)] = factory
    return factory


def is_sqlite(session: AsyncSession) -> bool:
    bind = session.get_bind()
    return "sqlite" in str(getattr(getattr(bind, "dialect", None), "name", ""))


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Bind *tenant_id* for row-level security for the current transaction.

    A no-op on SQLite, which has no RLS.

    Raises
    ------
    ValueError
        If *tenant_id* contains characters outside ``[a-zA-Z0-9_-]``.
    """
    if is_sqlite(session):
        return

    if not _TENANT_ID_RE.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")

    # Third argument scopes the setting to the transaction (SET LOCAL).
    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
