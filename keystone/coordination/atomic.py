"""
keystone.coordination.atomic — Retryable All-or-Nothing Transactions
=====================================================================

:class:`AtomicOperations` runs a function inside one database transaction
and retries it when the failure is transient (serialization conflict,
deadlock, SQLite "database is locked", dropped connection).  A failed
attempt is always rolled back, so callers never observe partial writes.

The helpers below ``run`` cover the common single-row patterns used by the
economy and guild services:

* ``increment`` — ``UPDATE … SET col = col + n``
* ``compare_and_swap`` — update only if the column still holds a value
* ``check_and_insert`` — insert unless a row with the same key exists
* ``update_with_optimistic_lock`` — ``version`` column guard
* ``batch_increment`` — several increments, all or none
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from sqlalchemy import Engine, Table, and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from keystone.database.engine import get_session, run_db
from keystone.database.models import Base
from keystone.errors import StorageError, ValidationError, is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
RETRY_DELAY_MS = 100


class OptimisticLockError(StorageError):
    """The row's version changed under us on every attempt."""

    code = "OPTIMISTIC_LOCK_CONFLICT"


def _table(name: str) -> Table:
    table = Base.metadata.tables.get(name)
    if table is None:
        raise ValidationError(f"Unknown table: {name}", table=name)
    return table


def _where(table: Table, where: Mapping[str, Any]):
    if not where:
        raise ValidationError("A WHERE clause is required", table=table.name)
    return and_(*(table.c[col] == value for col, value in where.items()))


class AtomicOperations:
    """Transaction runner with retry on transient failures.

    ``run(fn)`` calls ``fn(session)`` on a worker thread inside
    :func:`~keystone.database.engine.get_session`: commit when it returns,
    rollback when it raises.  Retryable failures are retried up to
    ``max_retries`` times in total, sleeping ``retry_delay_ms * 2**(attempt - 1)``
    between attempts.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        max_retries: int = MAX_RETRIES,
        retry_delay_ms: int = RETRY_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValidationError("max_retries must be >= 1", max_retries=max_retries)
        self.engine = engine
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._sleep = sleep
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "transactions": 0,
            "commits": 0,
            "rollbacks": 0,
            "retries": 0,
            "failures": 0,
        }

    def _attempt(self, fn: Callable[[Session], T]) -> T:
        with get_session(self.engine) as session:
            return fn(session)

    async def run(self, fn: Callable[[Session], T], *, operation: str = "transaction") -> T:
        """Execute ``fn(session)`` atomically and return its result."""
        self._stats["transactions"] += 1
        attempt = 0
        while True:
            try:
                result = await run_db(self._attempt, fn)
            except Exception as exc:
                self._stats["rollbacks"] += 1
                attempt += 1
                if is_retryable_error(exc) and attempt < self.max_retries:
                    self._stats["retries"] += 1
                    delay = self.retry_delay_ms * 2 ** (attempt - 1)
                    logger.debug(
                        "%s hit a transient error (attempt %d/%d), retrying in %dms: %s",
                        operation, attempt, self.max_retries, delay, exc,
                    )
                    await self._sleep(delay / 1000)
                    continue

                self._stats["failures"] += 1
                if is_retryable_error(exc):
                    logger.warning("%s failed after %d attempts", operation, attempt)
                if isinstance(exc, SQLAlchemyError):
                    raise StorageError(operation, exc) from exc
                raise
            self._stats["commits"] += 1
            return result

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------
    async def increment(
        self, table: str, column: str, amount: int, where: Mapping[str, Any]
    ) -> int:
        """Add *amount* to *column* on the matching rows; return rows changed."""
        tbl = _table(table)
        condition = _where(tbl, where)

        def _op(session: Session) -> int:
            result = session.execute(
                update(tbl).where(condition).values({column: tbl.c[column] + amount})
            )
            return result.rowcount

        return await self.run(_op, operation=f"increment {table}.{column}")

    async def compare_and_swap(
        self,
        table: str,
        column: str,
        expected: Any,
        new_value: Any,
        where: Mapping[str, Any],
    ) -> bool:
        """Set *column* to *new_value* only if it still equals *expected*."""
        tbl = _table(table)
        condition = and_(_where(tbl, where), tbl.c[column] == expected)

        def _op(session: Session) -> bool:
            result = session.execute(update(tbl).where(condition).values({column: new_value}))
            return result.rowcount > 0

        return await self.run(_op, operation=f"compare_and_swap {table}.{column}")

    async def check_and_insert(
        self, table: str, values: Mapping[str, Any], unique: Mapping[str, Any]
    ) -> bool:
        """Insert *values* unless a row matching *unique* already exists.

        Returns True when this call inserted the row.  A concurrent insert
        that wins the race surfaces as an IntegrityError, reported as False.
        """
        tbl = _table(table)
        condition = _where(tbl, unique)

        def _op(session: Session) -> bool:
            exists = session.execute(select(1).select_from(tbl).where(condition)).first()
            if exists is not None:
                return False
            session.execute(tbl.insert().values(dict(values)))
            return True

        try:
            return await self.run(_op, operation=f"check_and_insert {table}")
        except StorageError as exc:
            if isinstance(exc.original, IntegrityError):
                return False
            raise

    async def update_with_optimistic_lock(
        self,
        table: str,
        where: Mapping[str, Any],
        update_fn: Callable[[dict[str, Any]], Mapping[str, Any]],
        *,
        version_column: str = "version",
    ) -> dict[str, Any] | None:
        """Read-modify-write guarded by a version column.

        ``update_fn(row)`` returns the columns to change.  The write only
        lands if the version is unchanged since the read; otherwise the
        read is repeated, up to ``max_retries`` times.  Returns the updated
        row, or None if no row matched.
        """
        tbl = _table(table)
        condition = _where(tbl, where)
        version = tbl.c[version_column]

        def _read(session: Session) -> dict[str, Any] | None:
            row = session.execute(select(tbl).where(condition)).mappings().first()
            return dict(row) if row is not None else None

        for attempt in range(1, self.max_retries + 1):
            current = await self.run(_read, operation=f"read {table}")
            if current is None:
                return None

            changes = dict(update_fn(dict(current)))
            changes[version_column] = current[version_column] + 1

            def _write(session: Session, seen=current[version_column], changes=changes) -> bool:
                result = session.execute(
                    update(tbl).where(condition, version == seen).values(changes)
                )
                return result.rowcount == 1

            if await self.run(_write, operation=f"optimistic update {table}"):
                return {**current, **changes}

            self._stats["retries"] += 1
            logger.debug("Version conflict on %s %s (attempt %d)", table, dict(where), attempt)
            await self._sleep(self.retry_delay_ms * 2 ** (attempt - 1) / 1000)

        self._stats["failures"] += 1
        raise OptimisticLockError(f"optimistic update {table}", None, where=dict(where))

    async def batch_increment(
        self, operations: list[tuple[str, str, int, Mapping[str, Any]]]
    ) -> list[int]:
        """Apply several ``(table, column, amount, where)`` increments atomically."""
        prepared = []
        for table, column, amount, where in operations:
            tbl = _table(table)
            prepared.append((tbl, column, amount, _where(tbl, where)))

        def _op(session: Session) -> list[int]:
            changed = []
            for tbl, column, amount, condition in prepared:
                result = session.execute(
                    update(tbl).where(condition).values({column: tbl.c[column] + amount})
                )
                changed.append(result.rowcount)
            return changed

        return await self.run(_op, operation="batch_increment")

    def get_stats(self) -> dict[str, Any]:
        total = self._stats["transactions"]
        return {
            **self._stats,
            "success_rate": round(self._stats["commits"] / total * 100, 2) if total else 0.0,
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()
