"""
keystone.cache.invalidator — Stampede-Protected Cache Access
=============================================================

:class:`CacheInvalidator` composes a cache backend with the
:class:`~keystone.coordination.mutex.MutexManager` so that an expensive
value is recomputed by **one** caller at a time, across every process.

Read path (``get_or_fetch``), poll-then-read:

    1. Cache hit → return it.  No lock is touched.
    2. Miss → ``try_acquire("stampede:<key>")``.
    3. Winner: re-read the cache (another winner may have just filled it),
       otherwise call ``fetch_fn``, store the value, release the lock.
    4. Losers: sleep ``poll_interval_ms``, re-read the cache, and try for
       the lock again if it was released without a value.  After
       ``stampede_timeout_ms`` they raise :class:`CacheStampedeTimeout`.

Losers never see a stale value; they wait for the fresh one.

Write path: ``with_invalidation`` / ``update_atomic`` / ``delete_atomic`` /
``batch_invalidate`` run the database change first and then drop (or
replace) the affected cache keys.  When the change fails, all but
``with_invalidation`` drop the keys anyway so the cache never outlives a
half-known state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, Protocol, TypeVar

from keystone.coordination.mutex import MutexManager
from keystone.errors import CacheStampedeTimeout, KeystoneError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAMPEDE_TIMEOUT_MS = 5_000
DEFAULT_TTL_MS = 10 * 60 * 1000
POLL_INTERVAL_MS = 50


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def keys_matching(self, pattern: str) -> list[str]: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _call(fn: Callable[[], Awaitable[T] | T]) -> T:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class CacheInvalidator:
    """Cache-aside reads with stampede protection, plus invalidation helpers.

    A cached ``None`` is indistinguishable from a miss; ``fetch_fn`` results
    of ``None`` are therefore recomputed on every call.
    """

    def __init__(
        self,
        cache: CacheBackend,
        mutex: MutexManager,
        *,
        stampede_timeout_ms: int = STAMPEDE_TIMEOUT_MS,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if cache is None:
            raise ValidationError("A cache backend is required")
        if mutex is None:
            raise ValidationError("A MutexManager is required")
        self.cache = cache
        self.mutex = mutex
        self.stampede_timeout_ms = stampede_timeout_ms
        self.default_ttl_ms = default_ttl_ms
        self.poll_interval_ms = poll_interval_ms
        self._clock = clock
        self._sleep = sleep
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "invalidations": 0,
            "pattern_invalidations": 0,
            "stampede_prevented": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "fetches": 0,
            "timeouts": 0,
            "errors": 0,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any] | Any],
        ttl_ms: int | None = None,
    ) -> Any:
        """Return the cached value for *key*, computing it at most once at a time."""
        try:
            return await self._get_or_fetch(key, fetch_fn, ttl_ms)
        except Exception:
            self._stats["errors"] += 1
            raise

    async def _get_or_fetch(self, key: str, fetch_fn, ttl_ms: int | None) -> Any:
        cached = await self.cache.get(key)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return cached

        lock_key = f"stampede:{key}"
        deadline = self._clock() + self.stampede_timeout_ms

        while True:
            token = await self.mutex.try_acquire(lock_key, self.stampede_timeout_ms)
            if token is not None:
                try:
                    cached = await self.cache.get(key)
                    if cached is not None:
                        self._stats["cache_hits"] += 1
                        self._stats["stampede_prevented"] += 1
                        return cached

                    self._stats["cache_misses"] += 1
                    self._stats["fetches"] += 1
                    value = await _call(fetch_fn)
                    await self.cache.set(key, value, ttl_ms or self.default_ttl_ms)
                    return value
                finally:
                    await self.mutex.release(lock_key, token)

            await self._sleep(self.poll_interval_ms / 1000)
            cached = await self.cache.get(key)
            if cached is not None:
                self._stats["cache_hits"] += 1
                self._stats["stampede_prevented"] += 1
                return cached

            if self._clock() >= deadline:
                self._stats["timeouts"] += 1
                logger.warning("Timed out waiting for %s to be recomputed", key)
                raise CacheStampedeTimeout(
                    f"Timed out waiting for cache key: {key}",
                    key=key,
                    timeout_ms=self.stampede_timeout_ms,
                )

    async def refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any] | Any],
        ttl_ms: int | None = None,
    ) -> Any:
        """Recompute *key* unconditionally and store the fresh value."""
        try:
            value = await _call(fetch_fn)
            await self.cache.set(key, value, ttl_ms or self.default_ttl_ms)
        except Exception:
            self._stats["errors"] += 1
            raise
        self._stats["fetches"] += 1
        return value

    async def warm_up(self, entries: Mapping[str, Any], ttl_ms: int | None = None) -> int:
        ttl = ttl_ms or self.default_ttl_ms
        for key, value in entries.items():
            await self.cache.set(key, value, ttl)
        logger.info("Cache warmed with %d entries", len(entries))
        return len(entries)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------
    async def invalidate(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        try:
            for key in keys:
                await self.cache.delete(key)
        except Exception:
            self._stats["errors"] += 1
            raise
        self._stats["invalidations"] += len(keys)
        return len(keys)

    async def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key matching *pattern*; ``*`` is the wildcard."""
        like = pattern.replace("*", "%")
        try:
            keys = await self.cache.keys_matching(like)
        except Exception:
            self._stats["errors"] += 1
            raise
        if keys:
            await self.invalidate(keys)
            self._stats["pattern_invalidations"] += 1
        return len(keys)

    async def _invalidate_after_failure(self, keys: list[str]) -> None:
        try:
            await self.invalidate(keys)
        except KeystoneError:
            # The original failure is re-raised by the caller
            logger.exception("Failed to invalidate %s after a failed write", keys)

    async def with_invalidation(
        self, fn: Callable[[], Awaitable[T] | T], keys: Iterable[str]
    ) -> T:
        """Run *fn*, then invalidate *keys* once it has succeeded."""
        keys = list(keys)
        try:
            result = await _call(fn)
        except Exception:
            self._stats["errors"] += 1
            raise
        await self.invalidate(keys)
        return result

    async def batch_invalidate(
        self, keys: Iterable[str], update_fn: Callable[[], Awaitable[T] | T]
    ) -> T:
        """Run *update_fn* and invalidate *keys* whether it succeeds or not."""
        keys = list(keys)
        try:
            result = await _call(update_fn)
        except Exception:
            self._stats["errors"] += 1
            await self._invalidate_after_failure(keys)
            raise
        await self.invalidate(keys)
        return result

    async def update_atomic(
        self,
        key: str,
        update_fn: Callable[[], Awaitable[T] | T],
        new_value: Any,
        ttl_ms: int | None = None,
    ) -> T:
        """Apply *update_fn* and write *new_value* through to the cache."""
        try:
            result = await _call(update_fn)
        except Exception:
            self._stats["errors"] += 1
            await self._invalidate_after_failure([key])
            raise
        await self.cache.set(key, new_value, ttl_ms or self.default_ttl_ms)
        return result

    async def delete_atomic(self, key: str, delete_fn: Callable[[], Awaitable[T] | T]) -> T:
        try:
            result = await _call(delete_fn)
        except Exception:
            self._stats["errors"] += 1
            await self._invalidate_after_failure([key])
            raise
        await self.cache.delete(key)
        return result

    def get_stats(self) -> dict[str, Any]:
        lookups = self._stats["cache_hits"] + self._stats["cache_misses"]
        return {
            **self._stats,
            "hit_rate": round(self._stats["cache_hits"] / lookups * 100, 2) if lookups else 0.0,
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()
