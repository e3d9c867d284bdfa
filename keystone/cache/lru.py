"""
keystone.cache.lru — Bounded In-Memory Caches
==============================================

Two small, synchronous, process-local caches:

* :class:`LRUCache` — key → value with a per-cache TTL and least-recently-used
  eviction.  Used as the hot front of :class:`~keystone.cache.manager.CacheManager`
  and for per-guild lookups that are read far more often than written.
* :class:`PreparedStatementCache` — SQL string → compiled statement, pure
  LRU, no expiry.  Used by :class:`~keystone.database.engine.Database` so
  repeated raw queries reuse the same ``text()`` clause.

Both lean on ``OrderedDict`` ordering: the first key is always the least
recently used one, the last key the most recently used one.

Neither class is thread-safe; they are meant to be touched from the asyncio
event loop only.  :meth:`Database.query` looks its statement up before
handing the execution to a worker thread.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL_MS = 10 * 60 * 1000  # 10 minutes


def _now_ms() -> int:
    return int(time.time() * 1000)


def _hit_rate(hits: int, total: int) -> float:
    """Hit rate as a percentage rounded to two decimals (0.0 when idle)."""
    return round(hits / total * 100, 2) if total else 0.0


@dataclass(slots=True)
class _Entry:
    value: Any
    timestamp: int


class LRUCache(Generic[K, V]):
    """LRU cache with TTL expiry.

    An entry is valid while ``now - timestamp <= ttl_ms`` where ``timestamp``
    is the moment it was last ``set``.  Reads refresh *recency* but not the
    timestamp, so a hot key still expires ``ttl_ms`` after it was written.

    Usage::

        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")          # "b" is now least recently used
        cache.set("c", 3)       # evicts "b"
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_ms: int = DEFAULT_TTL_MS,
        *,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be > 0, got {ttl_ms}")
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: OrderedDict[K, _Entry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: _Entry, now: int) -> bool:
        return now - entry.timestamp > self.ttl_ms

    def get(self, key: K, default: V | None = None) -> V | None:
        """Return the cached value, or *default* on miss / expiry.

        Expired entries are deleted here and counted as misses.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default

        if self._expired(entry, self._clock()):
            del self._entries[key]
            self._misses += 1
            return default

        # Re-insert at the end: most recently used
        del self._entries[key]
        self._entries[key] = entry
        self._hits += 1
        return entry.value

    def set(self, key: K, value: V) -> None:
        """Insert or replace *key*, evicting the LRU entry when full."""
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
            self._evictions += 1

        self._entries[key] = _Entry(value=value, timestamp=self._clock())

    def has(self, key: K) -> bool:
        """True if *key* is present and not expired.  Does not touch recency."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return False
        return True

    def __contains__(self, key: object) -> bool:
        return self.has(key)  # type: ignore[arg-type]

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Purge every expired entry.  Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "total_requests": total,
            "hit_rate": _hit_rate(self._hits, total),
            "size": len(self._entries),
            "max_size": self.max_size,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0


class PreparedStatementCache:
    """LRU cache of compiled statements keyed by their SQL text.

    ``get(sql, create_fn)`` returns the cached statement or builds one with
    ``create_fn(sql)``, storing it and evicting the least recently requested
    statement when the cache is full.  There is no expiry.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self._statements: OrderedDict[str, Any] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, sql: str, create_fn: Callable[[str], Any]) -> Any:
        statement = self._statements.get(sql)
        if statement is not None:
            self._statements.move_to_end(sql)
            self._hits += 1
            return statement

        self._misses += 1
        statement = create_fn(sql)
        self.set(sql, statement)
        return statement

    def set(self, sql: str, statement: Any) -> None:
        if sql in self._statements:
            self._statements.move_to_end(sql)
        elif len(self._statements) >= self.max_size:
            self._statements.popitem(last=False)
            self._evictions += 1
        self._statements[sql] = statement

    def has(self, sql: str) -> bool:
        return sql in self._statements

    def clear(self) -> None:
        self._statements.clear()

    def __len__(self) -> int:
        return len(self._statements)

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "total_requests": total,
            "hit_rate": _hit_rate(self._hits, total),
            "size": len(self._statements),
            "max_size": self.max_size,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0
