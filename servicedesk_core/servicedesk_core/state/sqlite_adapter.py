"""SQLite adapter for local and test operation.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend, so the
CLI can run the full API stack without external services.

Differences from the PostgreSQL backend:

* No connection pooling (SQLite is single-writer).
* ``set_tenant_context()`` is a no-op (no row-level security).
* Advisory locks are skipped; the database write lock serialises writers.
* The driver's implicit transaction handling is turned off and SQLAlchemy
  emits ``BEGIN`` itself, so savepoints nest inside the session transaction.
* JSONB columns fall back to SQLite's TEXT (JSON stored as strings).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = ".servicedesk/state.db"


def get_local_engine(db_path: Path | str = DEFAULT_DB_PATH) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for an ephemeral
        in-memory database.

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()
        dbapi_conn.isolation_level = None  # type: ignore[attr-defined]

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables; idempotent and safe to call on every startup."""
    from servicedesk_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
