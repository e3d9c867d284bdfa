"""
keystone.cache.manager — Shared TTL Cache in the Database
==========================================================

:class:`CacheManager` stores JSON-serializable values in the
``cache_entries`` table so every bot process sees the same cache.  An
optional in-process :class:`~keystone.cache.lru.LRUCache` sits in front of
the table for hot keys.  A local copy never outlives the expiry written
with it.  A delete on one process cannot evict another process's copy,
so the front's own TTL bounds how stale a peer can be; keep it short.

Expiry is lazy on read (an expired row is deleted and reported as a miss)
plus an explicit :meth:`CacheManager.cleanup` sweep.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from keystone.cache.lru import LRUCache
from keystone.database.engine import get_session, run_db
from keystone.database.models import CacheEntry
from keystone.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_MS = 60 * 60 * 1000  # 1 hour


def _now_ms() -> int:
    return int(time.time() * 1000)


class CacheManager:
    """Key → JSON value cache backed by ``cache_entries``.

    ``None`` is stored like any other value but reads back exactly like a
    miss, so callers should not cache it.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        local_cache: LRUCache | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if default_ttl_ms <= 0:
            raise ValidationError("default_ttl_ms must be > 0", default_ttl_ms=default_ttl_ms)
        self.engine = engine
        self.default_ttl_ms = default_ttl_ms
        self.local = local_cache
        self._clock = clock
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "expirations": 0, "errors": 0}

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any, key: str | None = None) -> T:
        try:
            return await run_db(fn, *args)
        except SQLAlchemyError as exc:
            self._stats["errors"] += 1
            logger.error("Cache %s failed for %s: %s", operation, key, exc)
            raise StorageError(f"cache {operation}", exc, key=key) from exc

    # ------------------------------------------------------------------
    # Sync store operations
    # ------------------------------------------------------------------
    def _get_sync(self, key: str) -> tuple[str, int] | None:
        with get_session(self.engine) as session:
            row = session.execute(
                select(CacheEntry.value, CacheEntry.expires_at).where(CacheEntry.key == key)
            ).first()
            return (row.value, row.expires_at) if row is not None else None

    def _set_sync(self, key: str, payload: str, expires_at: int, now: int) -> None:
        values = {
            "key": key,
            "value": payload,
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }
        refresh = {"value": payload, "expires_at": expires_at, "updated_at": now}

        with get_session(self.engine) as session:
            dialect = self.engine.dialect.name
            if dialect == "postgresql":
                stmt = pg_insert(CacheEntry).values(**values)
                session.execute(stmt.on_conflict_do_update(index_elements=["key"], set_=refresh))
            elif dialect == "sqlite":
                stmt = sqlite_insert(CacheEntry).values(**values)
                session.execute(stmt.on_conflict_do_update(index_elements=["key"], set_=refresh))
            else:
                session.merge(CacheEntry(**values))

    def _delete_sync(self, key: str) -> bool:
        with get_session(self.engine) as session:
            return session.execute(delete(CacheEntry).where(CacheEntry.key == key)).rowcount > 0

    def _delete_like_sync(self, pattern: str) -> int:
        with get_session(self.engine) as session:
            return session.execute(delete(CacheEntry).where(CacheEntry.key.like(pattern))).rowcount

    def _keys_like_sync(self, pattern: str) -> list[str]:
        with get_session(self.engine) as session:
            return list(
                session.execute(
                    select(CacheEntry.key).where(CacheEntry.key.like(pattern)).order_by(CacheEntry.key)
                ).scalars()
            )

    def _clear_sync(self) -> int:
        with get_session(self.engine) as session:
            return session.execute(delete(CacheEntry)).rowcount

    def _cleanup_sync(self, now: int) -> int:
        with get_session(self.engine) as session:
            return session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= now)).rowcount

    def _counts_sync(self, now: int) -> tuple[int, int]:
        with get_session(self.engine) as session:
            total = session.execute(select(func.count()).select_from(CacheEntry)).scalar_one()
            expired = session.execute(
                select(func.count()).select_from(CacheEntry).where(CacheEntry.expires_at <= now)
            ).scalar_one()
            return total, expired

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get(self, key: str, *, use_local: bool = True) -> Any:
        """Return the cached value for *key*, or None on miss / expiry.

        ``use_local=False`` reads the shared table even when the local front
        holds a copy.
        """
        if use_local and self.local is not None:
            local = self.local.get(key)
            if local is not None:
                value, expires_at = local
                if expires_at > self._clock():
                    self._stats["hits"] += 1
                    return value
                self.local.delete(key)

        row = await self._run("get", self._get_sync, key, key=key)
        if row is None:
            self._stats["misses"] += 1
            return None

        payload, expires_at = row
        if expires_at <= self._clock():
            await self._run("delete", self._delete_sync, key, key=key)
            self._stats["misses"] += 1
            self._stats["expirations"] += 1
            return None

        try:
            value = json.loads(payload)
        except ValueError:
            logger.warning("Discarding unparseable cache entry %s", key)
            await self._run("delete", self._delete_sync, key, key=key)
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        if self.local is not None and value is not None:
            self.local.set(key, (value, expires_at))
        return value

    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        ttl = ttl_ms or self.default_ttl_ms
        try:
            payload = json.dumps(value)
        except TypeError as exc:
            raise ValidationError(f"Value for {key} is not JSON serializable", key=key) from exc

        now = self._clock()
        expires_at = now + ttl
        await self._run("set", self._set_sync, key, payload, expires_at, now, key=key)
        self._stats["sets"] += 1
        if self.local is not None:
            if value is None:
                self.local.delete(key)
            else:
                self.local.set(key, (value, expires_at))

    async def delete(self, key: str) -> bool:
        if self.local is not None:
            self.local.delete(key)
        deleted = await self._run("delete", self._delete_sync, key, key=key)
        if deleted:
            self._stats["deletes"] += 1
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching the SQL LIKE *pattern* (``%`` wildcard)."""
        if self.local is not None:
            self.local.clear()
        removed = await self._run("delete_pattern", self._delete_like_sync, pattern, key=pattern)
        self._stats["deletes"] += removed
        return removed

    async def keys_matching(self, pattern: str) -> list[str]:
        return await self._run("keys", self._keys_like_sync, pattern, key=pattern)

    async def clear(self) -> int:
        if self.local is not None:
            self.local.clear()
        removed = await self._run("clear", self._clear_sync)
        logger.info("Cache cleared: %d entries removed", removed)
        return removed

    async def cleanup(self) -> int:
        """Delete expired rows; returns how many were removed."""
        removed = await self._run("cleanup", self._cleanup_sync, self._clock())
        if self.local is not None:
            self.local.cleanup()
        if removed:
            logger.info("Cache cleanup removed %d expired entries", removed)
        else:
            logger.debug("Cache cleanup: no expired entries")
        return removed

    async def get_stats(self) -> dict[str, Any]:
        total_entries, expired_entries = await self._run(
            "stats", self._counts_sync, self._clock()
        )
        requests = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_rate": round(self._stats["hits"] / requests * 100, 2) if requests else 0.0,
            "total_requests": requests,
            "total_entries": total_entries,
            "active_entries": total_entries - expired_entries,
            "expired_entries": expired_entries,
            "default_ttl_ms": self.default_ttl_ms,
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()
        logger.info("Cache statistics reset")
