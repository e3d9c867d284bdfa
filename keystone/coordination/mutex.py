"""
keystone.coordination.mutex — Database-Backed Distributed Locks
================================================================

:class:`MutexManager` serializes critical sections (economy transfers,
guild initialization, queue mutation) across every bot process that shares
the same database.  Nothing is remembered in process memory: the
``distributed_locks`` table is the single source of truth, so any instance
can observe, acquire, or release any lock.

Acquisition runs in up to two steps:

    1. **Insert-if-absent** — a new row with a fresh token.  The primary key
       on ``lock_key`` rejects the insert when a row already exists.
    2. **Replace-if-expired** — a conditional ``UPDATE … WHERE lock_key = ?
       AND expires_at <= now``.  Only one racing contender can see its
       predicate match; everybody else updates zero rows.

If neither step touches a row the caller gets :class:`LockContentionError`.
Every conditional write checks its affected-row count; zero always means
"not done".

Expired rows are swept by a background cleanup task (``start()``) in
bounded batches with a short pause between batches, so a large backlog
never holds a long write lock on the shared table.

Usage::

    mutex = MutexManager(engine, owner_id="bot-1")
    mutex.start()

    async def pay():
        ...

    await mutex.with_lock("economy:123:456", pay)
    await mutex.shutdown()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import Engine, delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from keystone.database.engine import get_session, run_db
from keystone.database.models import DistributedLock
from keystone.errors import (
    LockContentionError,
    StorageError,
    ValidationError,
    is_retryable_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_MS = 5_000
CLEANUP_INTERVAL_MS = 60_000
CLEANUP_BATCH_SIZE = 500
CLEANUP_SLEEP_MS = 5
MAX_RETRIES = 3
RETRY_DELAY_MS = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


def _validate_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise ValidationError("Lock key must be a non-empty string", key=key)
    if len(key) > 255:
        raise ValidationError("Lock key exceeds 255 characters", key=key[:64])


def _validate_ms(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer (ms)", **{name: value})


class MutexManager:
    """Named locks with TTL expiry, shared through the ``distributed_locks`` table.

    Parameters
    ----------
    engine:
        Engine bound to the shared database.
    owner_id:
        Identity of this process.  Used by :meth:`release_all` so a graceful
        shutdown frees only this instance's locks.
    clock / sleep:
        Millisecond wall clock and async sleep; swapped out in tests.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        owner_id: str | None = None,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        cleanup_interval_ms: int = CLEANUP_INTERVAL_MS,
        cleanup_batch_size: int = CLEANUP_BATCH_SIZE,
        cleanup_sleep_ms: int = CLEANUP_SLEEP_MS,
        max_retries: int = MAX_RETRIES,
        retry_delay_ms: int = RETRY_DELAY_MS,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        _validate_ms("default_ttl_ms", default_ttl_ms)
        _validate_ms("cleanup_interval_ms", cleanup_interval_ms)
        _validate_ms("cleanup_batch_size", cleanup_batch_size)
        if max_retries < 1:
            raise ValidationError("max_retries must be >= 1", max_retries=max_retries)

        self.engine = engine
        self.owner_id = owner_id or f"mutex-{secrets.token_hex(6)}"
        self.default_ttl_ms = default_ttl_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self.cleanup_batch_size = cleanup_batch_size
        self.cleanup_sleep_ms = cleanup_sleep_ms
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._clock = clock
        self._sleep = sleep
        self._cleanup_task: asyncio.Task | None = None
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "locks_acquired": 0,
            "locks_released": 0,
            "locks_failed": 0,
            "locks_timed_out": 0,
            "cleanup_runs": 0,
            "expired_locks_removed": 0,
        }

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any, key: str | None = None) -> T:
        """Run a sync store function off-loop, wrapping driver errors."""
        try:
            return await run_db(fn, *args)
        except SQLAlchemyError as exc:
            raise StorageError(operation, exc, key=key) from exc

    # ------------------------------------------------------------------
    # Sync store operations (worker thread)
    # ------------------------------------------------------------------
    def _insert_sync(self, key: str, token: str, now: int, expires_at: int) -> bool:
        values = {
            "lock_key": key,
            "lock_token": token,
            "acquired_at": now,
            "expires_at": expires_at,
            "owner_id": self.owner_id,
        }
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(DistributedLock).values(**values).on_conflict_do_nothing(
                index_elements=["lock_key"]
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(DistributedLock).values(**values).on_conflict_do_nothing(
                index_elements=["lock_key"]
            )
        else:
            try:
                with get_session(self.engine) as session:
                    session.execute(insert(DistributedLock).values(**values))
                return True
            except IntegrityError:
                return False

        with get_session(self.engine) as session:
            return session.execute(stmt).rowcount == 1

    def _replace_expired_sync(self, key: str, token: str, now: int, expires_at: int) -> bool:
        with get_session(self.engine) as session:
            current = session.execute(
                select(DistributedLock.expires_at).where(DistributedLock.lock_key == key)
            ).scalar_one_or_none()
            if current is None or current > now:
                return False

            result = session.execute(
                update(DistributedLock)
                .where(
                    DistributedLock.lock_key == key,
                    DistributedLock.expires_at <= now,
                )
                .values(
                    lock_token=token,
                    acquired_at=now,
                    expires_at=expires_at,
                    owner_id=self.owner_id,
                )
            )
            return result.rowcount == 1

    def _delete_sync(self, key: str, token: str) -> bool:
        with get_session(self.engine) as session:
            result = session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_key == key,
                    DistributedLock.lock_token == token,
                )
            )
            return result.rowcount == 1

    def _is_locked_sync(self, key: str, now: int) -> bool:
        with get_session(self.engine) as session:
            row = session.execute(
                select(DistributedLock.lock_key).where(
                    DistributedLock.lock_key == key,
                    DistributedLock.expires_at > now,
                )
            ).first()
            return row is not None

    def _extend_sync(self, key: str, token: str, additional_ms: int, now: int) -> bool:
        with get_session(self.engine) as session:
            result = session.execute(
                update(DistributedLock)
                .where(
                    DistributedLock.lock_key == key,
                    DistributedLock.lock_token == token,
                    DistributedLock.expires_at > now,
                )
                .values(expires_at=DistributedLock.expires_at + additional_ms)
            )
            return result.rowcount == 1

    def _count_expired_sync(self, now: int) -> int:
        with get_session(self.engine) as session:
            return session.execute(
                select(func.count()).select_from(DistributedLock).where(
                    DistributedLock.expires_at < now
                )
            ).scalar_one()

    def _delete_expired_sync(self, now: int, limit: int | None) -> int:
        with get_session(self.engine) as session:
            if limit is None:
                stmt = delete(DistributedLock).where(DistributedLock.expires_at < now)
            else:
                batch = (
                    select(DistributedLock.lock_key)
                    .where(DistributedLock.expires_at < now)
                    .limit(limit)
                )
                stmt = delete(DistributedLock).where(DistributedLock.lock_key.in_(batch))
            return session.execute(stmt).rowcount

    def _delete_owned_sync(self) -> int:
        with get_session(self.engine) as session:
            result = session.execute(
                delete(DistributedLock).where(DistributedLock.owner_id == self.owner_id)
            )
            return result.rowcount

    def _active_locks_sync(self, now: int) -> list[dict]:
        with get_session(self.engine) as session:
            rows = session.execute(
                select(DistributedLock)
                .where(DistributedLock.expires_at > now)
                .order_by(DistributedLock.acquired_at)
            ).scalars().all()
            return [row.to_dict() for row in rows]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def acquire(self, key: str, timeout_ms: int | None = None) -> str:
        """Take the lock on *key* for ``timeout_ms`` and return its token.

        Raises
        ------
        LockContentionError
            A live lock is held by someone else.
        StorageError
            The database failed.
        ValidationError
            *key* or *timeout_ms* is malformed (raised before any query).
        """
        _validate_key(key)
        ttl = self.default_ttl_ms if timeout_ms is None else timeout_ms
        _validate_ms("timeout_ms", ttl)

        token = secrets.token_hex(16)
        now = self._clock()
        expires_at = now + ttl

        if await self._run("acquire", self._insert_sync, key, token, now, expires_at, key=key):
            self._stats["locks_acquired"] += 1
            logger.debug("Lock acquired: %s (ttl=%dms)", key, ttl)
            return token

        if await self._run(
            "acquire", self._replace_expired_sync, key, token, now, expires_at, key=key
        ):
            self._stats["locks_acquired"] += 1
            logger.debug("Expired lock replaced: %s (ttl=%dms)", key, ttl)
            return token

        self._stats["locks_failed"] += 1
        logger.debug("Lock contention on %s", key)
        raise LockContentionError(key)

    async def try_acquire(self, key: str, timeout_ms: int | None = None) -> str | None:
        """Like :meth:`acquire`, but contention returns ``None``."""
        try:
            return await self.acquire(key, timeout_ms)
        except LockContentionError:
            return None

    async def release(self, key: str, token: str) -> bool:
        """Delete the lock row only if *token* still owns it.

        Returns False for a stale or foreign token, or a second release.
        """
        _validate_key(key)
        released = await self._run("release", self._delete_sync, key, token, key=key)
        if released:
            self._stats["locks_released"] += 1
            logger.debug("Lock released: %s", key)
        return released

    async def with_lock(
        self,
        key: str,
        fn: Callable[[], Awaitable[T] | T],
        timeout_ms: int | None = None,
    ) -> T:
        """Run *fn* while holding *key*, releasing the lock afterwards.

        Acquisition is retried ``max_retries`` times in total with an
        exponential backoff of ``retry_delay_ms * 2**(attempt - 1)``.  Contention
        and transient storage errors are retried; the last error propagates.
        """
        attempt = 0
        while True:
            try:
                token = await self.acquire(key, timeout_ms)
                break
            except (LockContentionError, StorageError) as exc:
                if isinstance(exc, StorageError) and not is_retryable_error(exc):
                    raise
                attempt += 1
                if attempt >= self.max_retries:
                    self._stats["locks_timed_out"] += 1
                    logger.warning(
                        "Gave up on lock %s after %d attempts", key, attempt
                    )
                    raise
                await self._sleep(self.retry_delay_ms * 2 ** (attempt - 1) / 1000)

        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
        except BaseException:
            # The holder's error wins over a failed release
            try:
                await self.release(key, token)
            except StorageError as exc:
                logger.error("Failed to release %s after an error in its holder: %s", key, exc)
            raise
        await self.release(key, token)
        return result

    async def is_locked(self, key: str) -> bool:
        """True if a live (unexpired) lock row exists for *key*."""
        _validate_key(key)
        return await self._run("is_locked", self._is_locked_sync, key, self._clock(), key=key)

    async def extend(self, key: str, token: str, additional_ms: int) -> bool:
        """Push the expiry of a still-live lock back by *additional_ms*."""
        _validate_key(key)
        _validate_ms("additional_ms", additional_ms)
        extended = await self._run(
            "extend", self._extend_sync, key, token, additional_ms, self._clock(), key=key
        )
        if extended:
            logger.debug("Lock extended: %s (+%dms)", key, additional_ms)
        return extended

    async def cleanup(self) -> int:
        """Delete every expired lock row and return how many were removed."""
        now = self._clock()
        expired = await self._run("cleanup", self._count_expired_sync, now)
        removed = 0

        if expired == 0:
            pass
        elif expired <= self.cleanup_batch_size:
            removed = await self._run("cleanup", self._delete_expired_sync, now, None)
        else:
            while True:
                deleted = await self._run(
                    "cleanup", self._delete_expired_sync, now, self.cleanup_batch_size
                )
                removed += deleted
                if deleted < self.cleanup_batch_size:
                    break
                await self._sleep(self.cleanup_sleep_ms / 1000)

        self._stats["cleanup_runs"] += 1
        self._stats["expired_locks_removed"] += removed
        if removed:
            logger.info("Cleaned up %d expired lock(s)", removed)
        return removed

    async def release_all(self) -> int:
        """Delete every lock owned by this instance's ``owner_id``."""
        removed = await self._run("release_all", self._delete_owned_sync)
        self._stats["locks_released"] += removed
        if removed:
            logger.info("Released %d lock(s) held by %s", removed, self.owner_id)
        return removed

    async def get_active_locks(self) -> list[dict]:
        return await self._run("get_active_locks", self._active_locks_sync, self._clock())

    async def get_active_locks_count(self) -> int:
        return len(await self.get_active_locks())

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "owner_id": self.owner_id,
            "cleanup_running": self.is_cleanup_running,
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def start(self) -> None:
        """Start the periodic cleanup task on the running event loop."""
        if self._cleanup_task is not None:
            return

        async def _cleanup_loop() -> None:
            while True:
                await self._sleep(self.cleanup_interval_ms / 1000)
                try:
                    await self.cleanup()
                except Exception:
                    logger.exception("Lock cleanup failed; retrying next interval")

        self._cleanup_task = asyncio.get_running_loop().create_task(
            _cleanup_loop(), name="mutex-cleanup"
        )
        logger.info(
            "Mutex cleanup started (owner=%s, every %dms)",
            self.owner_id, self.cleanup_interval_ms,
        )

    def stop_cleanup(self) -> None:
        """Cancel the cleanup task.  Safe to call repeatedly."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def shutdown(self) -> int:
        """Stop the cleanup task and release every lock this instance holds."""
        self.stop_cleanup()
        removed = await self.release_all()
        logger.info("MutexManager %s shut down", self.owner_id)
        return removed
