"""
keystone.database.engine — Database Connection & Async Helper
==============================================================

The bot runs on an ``asyncio`` event loop while SQLAlchemy + psycopg2 is
synchronous.  Every blocking call is therefore shipped to a worker thread:

    1. A coordination primitive (mutex, cache, health probe) needs the DB.
    2. It calls ``await run_db(some_sync_function, arg1, arg2)``.
    3. ``run_db`` hands the function to ``asyncio.to_thread()``.
    4. The query runs on a background thread; the event loop stays free.

:class:`Database` is the narrow handle the health checks and ad-hoc callers
use: raw SQL in, rows (as dicts) out, with compiled ``text()`` clauses
reused through a :class:`~keystone.cache.lru.PreparedStatementCache`.

Usage::

    from keystone.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    db = Database(engine)
    db.connect()
    rows = await db.query("SELECT lock_key FROM distributed_locks")
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeVar

from sqlalchemy import Engine, TextClause, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from keystone.cache.lru import PreparedStatementCache
from keystone.database.models import Base
from keystone.errors import StorageError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    The pool is sized for a handful of bot processes sharing one database:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    SQLite URLs (tests, local dev) get the driver defaults instead.

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False)
    else:
        engine = create_engine(
            url,
            echo=False,        # Set True for SQL debugging
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,   # Reconnect stale connections automatically
            pool_timeout=10,      # Fail after 10s instead of hanging forever
            pool_recycle=3600,    # Recycle connections after 1 hour
        )
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`keystone.database.models`.

    Safe to call on every startup (``CREATE TABLE IF NOT EXISTS``).

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained as a safety net for dev/test
        environments where Alembic may not have run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(GuildMember(guild_id=1, user_id=123))
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call made from async code goes through this wrapper::

        result = await run_db(my_sync_db_function, engine, user_id)

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is never
    blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class QueryResult:
    """Outcome of a statement that returns no rows (INSERT/UPDATE/DELETE)."""

    changes: int


class Database:
    """Thin async facade over an :class:`Engine` for raw SQL.

    ``query`` returns a list of dict rows for statements that produce a
    result set, and a :class:`QueryResult` otherwise.  Driver errors are
    wrapped in :class:`~keystone.errors.StorageError` with the SQL attached.
    """

    def __init__(self, engine: Engine, *, statement_cache_size: int = 100) -> None:
        self.engine = engine
        self.statements = PreparedStatementCache(max_size=statement_cache_size)
        self._ready = False

    def connect(self) -> None:
        """Open and release one connection to prove the database is reachable."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            self._ready = False
            raise StorageError("connect", exc) from exc
        self._ready = True
        logger.info("Database connection verified.")

    def is_ready(self) -> bool:
        return self._ready

    def dispose(self) -> None:
        self._ready = False
        self.statements.clear()
        self.engine.dispose()

    def _execute(
        self, statement: TextClause, sql: str, params: dict[str, Any] | None
    ) -> list[dict[str, Any]] | QueryResult:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(statement, params or {})
                if result.returns_rows:
                    return [dict(row) for row in result.mappings()]
                return QueryResult(changes=result.rowcount)
        except SQLAlchemyError as exc:
            raise StorageError("query", exc, sql=sql) from exc

    async def query(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]] | QueryResult:
        # Statement cache lookups stay on the event loop thread
        statement = self.statements.get(sql, text)
        return await run_db(self._execute, statement, sql, params)

    async def query_one(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """First row of *sql*, or None when the result set is empty."""
        rows = await self.query(sql, params)
        if isinstance(rows, QueryResult) or not rows:
            return None
        return rows[0]

    async def transaction(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn(session)`` in one transaction on a worker thread.

        Commits when *fn* returns, rolls back and re-raises when it throws.
        """
        def _run() -> T:
            with get_session(self.engine) as session:
                return fn(session)

        try:
            return await run_db(_run)
        except SQLAlchemyError as exc:
            raise StorageError("transaction", exc) from exc
