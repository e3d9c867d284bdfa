"""
tests/test_cache_manager.py — CacheManager Tests
=================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from conftest import FakeClock, run_async
from keystone.cache.lru import LRUCache
from keystone.cache.manager import CacheManager
from keystone.database.models import CacheEntry
from keystone.errors import StorageError, ValidationError


@pytest.fixture
def cache(db_engine, fake_clock):
    return CacheManager(db_engine, default_ttl_ms=1000, clock=fake_clock)


class TestGetSet:
    def test_round_trips_json_values(self, cache):
        async def scenario():
            await cache.set("guild:1:settings", {"prefix": "!", "roles": [1, 2]})
            return await cache.get("guild:1:settings")

        assert run_async(scenario()) == {"prefix": "!", "roles": [1, 2]}

    def test_miss_returns_none(self, cache):
        assert run_async(cache.get("nothing")) is None
        assert cache._stats["misses"] == 1

    def test_overwrite_keeps_single_row(self, cache, db_engine, fake_clock):
        async def scenario():
            await cache.set("k", 1)
            fake_clock.advance(10)
            await cache.set("k", 2)
            return await cache.get("k")

        assert run_async(scenario()) == 2
        with Session(db_engine) as s:
            row = s.get(CacheEntry, "k")
            assert row.created_at == fake_clock.now - 10
            assert row.updated_at == fake_clock.now

    def test_rejects_unserializable_value(self, cache):
        with pytest.raises(ValidationError):
            run_async(cache.set("k", object()))

    def test_expired_entry_is_miss_and_deleted(self, cache, db_engine, fake_clock):
        async def scenario():
            await cache.set("k", "v", ttl_ms=100)
            fake_clock.advance(100)
            return await cache.get("k")

        assert run_async(scenario()) is None
        assert cache._stats["expirations"] == 1
        with Session(db_engine) as s:
            assert s.get(CacheEntry, "k") is None

    def test_corrupt_entry_discarded(self, cache, db_engine, fake_clock):
        with Session(db_engine) as s:
            s.add(CacheEntry(
                key="bad", value="{not json", expires_at=fake_clock.now + 1000,
                created_at=fake_clock.now, updated_at=fake_clock.now,
            ))
            s.commit()

        assert run_async(cache.get("bad")) is None
        with Session(db_engine) as s:
            assert s.get(CacheEntry, "bad") is None


class TestDeletion:
    def test_delete(self, cache):
        async def scenario():
            await cache.set("k", 1)
            return await cache.delete("k"), await cache.delete("k"), await cache.get("k")

        assert run_async(scenario()) == (True, False, None)

    def test_delete_pattern_and_keys_matching(self, cache):
        async def scenario():
            await cache.set("economy:balance:1:10", 1)
            await cache.set("economy:balance:1:11", 2)
            await cache.set("guild:1", 3)
            keys = await cache.keys_matching("economy:%")
            removed = await cache.delete_pattern("economy:%")
            return keys, removed, await cache.get("guild:1")

        keys, removed, survivor = run_async(scenario())
        assert keys == ["economy:balance:1:10", "economy:balance:1:11"]
        assert removed == 2
        assert survivor == 3

    def test_clear(self, cache):
        async def scenario():
            await cache.set("a", 1)
            await cache.set("b", 2)
            return await cache.clear()

        assert run_async(scenario()) == 2

    def test_cleanup_removes_expired_rows(self, cache, fake_clock):
        async def scenario():
            await cache.set("short", 1, ttl_ms=100)
            await cache.set("long", 2, ttl_ms=10_000)
            fake_clock.advance(500)
            removed = await cache.cleanup()
            return removed, await cache.get_stats()

        removed, stats = run_async(scenario())
        assert removed == 1
        assert stats["total_entries"] == 1
        assert stats["active_entries"] == 1
        assert stats["expired_entries"] == 0


class TestLocalFront:
    def test_local_hit_skips_store(self, db_engine, fake_clock):
        local = LRUCache(max_size=10, ttl_ms=30_000, clock=fake_clock)
        cache = CacheManager(db_engine, local_cache=local, clock=fake_clock)

        async def scenario():
            await cache.set("k", {"a": 1})
            # Remove the row behind the local cache's back
            with Session(db_engine) as s:
                s.delete(s.get(CacheEntry, "k"))
                s.commit()
            return await cache.get("k")

        assert run_async(scenario()) == {"a": 1}

    def test_local_copy_expires_with_its_entry(self, db_engine, fake_clock):
        local = LRUCache(max_size=10, ttl_ms=30_000, clock=fake_clock)
        cache = CacheManager(db_engine, local_cache=local, clock=fake_clock)

        async def scenario():
            await cache.set("k", {"v": 1}, ttl_ms=100)
            before = await cache.get("k")
            fake_clock.advance(1000)
            return before, await cache.get("k")

        before, after = run_async(scenario())
        assert before == {"v": 1}
        assert after is None
        assert "k" not in local

    def test_store_read_bypasses_local_copy(self, db_engine, fake_clock):
        local = LRUCache(max_size=10, ttl_ms=30_000, clock=fake_clock)
        cache = CacheManager(db_engine, local_cache=local, clock=fake_clock)

        async def scenario():
            await cache.set("k", {"a": 1})
            with Session(db_engine) as s:
                s.delete(s.get(CacheEntry, "k"))
                s.commit()
            return await cache.get("k", use_local=False), await cache.get("k")

        assert run_async(scenario()) == (None, {"a": 1})

    def test_storing_none_drops_local_copy(self, db_engine, fake_clock):
        local = LRUCache(max_size=10, clock=fake_clock)
        cache = CacheManager(db_engine, local_cache=local, clock=fake_clock)

        async def scenario():
            await cache.set("k", 1)
            await cache.set("k", None)
            return await cache.get("k")

        assert run_async(scenario()) is None
        assert "k" not in local

    def test_delete_evicts_local_copy(self, db_engine, fake_clock):
        local = LRUCache(max_size=10, clock=fake_clock)
        cache = CacheManager(db_engine, local_cache=local, clock=fake_clock)

        async def scenario():
            await cache.set("k", 1)
            await cache.delete("k")
            return await cache.get("k")

        assert run_async(scenario()) is None
        assert "k" not in local


class TestStatsAndErrors:
    def test_stats(self, cache):
        async def scenario():
            await cache.set("a", 1)
            await cache.get("a")
            await cache.get("missing")
            return await cache.get_stats()

        stats = run_async(scenario())
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["sets"] == 1
        assert stats["hit_rate"] == 50.0
        assert stats["default_ttl_ms"] == 1000

        cache.reset_stats()
        assert cache._stats["hits"] == 0

    def test_store_failure_raises_storage_error(self):
        engine = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
        cache = CacheManager(engine, clock=FakeClock())

        with pytest.raises(StorageError) as exc_info:
            run_async(cache.get("k"))
        assert exc_info.value.operation == "cache get"
        assert cache._stats["errors"] == 1

    def test_rejects_non_positive_ttl(self, db_engine):
        with pytest.raises(ValidationError):
            CacheManager(db_engine, default_ttl_ms=0)
