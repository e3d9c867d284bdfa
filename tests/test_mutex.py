"""
tests/test_mutex.py — MutexManager Tests
=========================================

Covers the lock lifecycle (acquire → extend → release), TTL expiry and
replacement, token-checked release, ``with_lock`` retry/backoff and
exception safety, batched cleanup, owner-wide release, and mutual
exclusion when several coroutines race for the same key.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from conftest import FakeClock, run_async
from keystone.coordination.mutex import MutexManager
from keystone.database.models import DistributedLock
from keystone.errors import LockContentionError, StorageError, ValidationError


def _insert_lock(engine, key, *, expires_at, owner="other", token="tok", acquired_at=0):
    with Session(engine) as s:
        s.add(DistributedLock(
            lock_key=key, lock_token=token, acquired_at=acquired_at,
            expires_at=expires_at, owner_id=owner,
        ))
        s.commit()


def _lock_count(engine) -> int:
    with Session(engine) as s:
        return len(s.scalars(select(DistributedLock)).all())


@pytest.fixture
def mutex(db_engine, fake_clock):
    return MutexManager(
        db_engine, owner_id="test-owner", clock=fake_clock, sleep=fake_clock.sleep,
    )


# ---------------------------------------------------------------------------
# Acquire / release
# ---------------------------------------------------------------------------
class TestAcquireRelease:
    def test_acquire_returns_token_and_locks(self, mutex):
        async def scenario():
            token = await mutex.acquire("econ:g1:u1", 1000)
            return token, await mutex.is_locked("econ:g1:u1")

        token, locked = run_async(scenario())
        assert isinstance(token, str) and len(token) == 32
        assert locked

    def test_tokens_are_unique(self, mutex):
        async def scenario():
            a = await mutex.acquire("k1")
            b = await mutex.acquire("k2")
            return a, b

        a, b = run_async(scenario())
        assert a != b

    def test_second_acquire_is_contention(self, mutex):
        async def scenario():
            await mutex.acquire("k", 1000)
            with pytest.raises(LockContentionError) as exc_info:
                await mutex.acquire("k", 1000)
            return exc_info.value

        err = run_async(scenario())
        assert err.key == "k"
        assert mutex.get_stats()["locks_failed"] == 1

    def test_try_acquire_returns_none_on_contention(self, mutex):
        async def scenario():
            first = await mutex.try_acquire("k")
            second = await mutex.try_acquire("k")
            return first, second

        first, second = run_async(scenario())
        assert first is not None
        assert second is None

    def test_release_unlocks(self, mutex):
        async def scenario():
            token = await mutex.acquire("k")
            released = await mutex.release("k", token)
            return released, await mutex.is_locked("k")

        released, locked = run_async(scenario())
        assert released is True
        assert locked is False

    def test_double_release_is_noop(self, mutex):
        async def scenario():
            token = await mutex.acquire("k")
            return await mutex.release("k", token), await mutex.release("k", token)

        assert run_async(scenario()) == (True, False)

    def test_foreign_token_does_not_release(self, mutex):
        async def scenario():
            await mutex.acquire("k")
            released = await mutex.release("k", "not-the-token")
            return released, await mutex.is_locked("k")

        released, locked = run_async(scenario())
        assert released is False
        assert locked is True

    def test_default_ttl_applied(self, mutex, db_engine, fake_clock):
        run_async(mutex.acquire("k"))
        with Session(db_engine) as s:
            row = s.get(DistributedLock, "k")
        assert row.expires_at - row.acquired_at == 5000
        assert row.acquired_at == fake_clock.now
        assert row.owner_id == "test-owner"


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------
class TestExpiry:
    def test_end_to_end_expired_lock_replaced(self, mutex, fake_clock):
        """Acquire 1000ms, contend, wait 1100ms, re-acquire, release."""
        async def scenario():
            first = await mutex.acquire("econ:g1:u1", 1000)
            with pytest.raises(LockContentionError):
                await mutex.acquire("econ:g1:u1", 1000)

            fake_clock.advance(1100)
            second = await mutex.acquire("econ:g1:u1", 1000)
            assert second != first

            stale_release = await mutex.release("econ:g1:u1", first)
            released = await mutex.release("econ:g1:u1", second)
            return stale_release, released, await mutex.is_locked("econ:g1:u1")

        stale_release, released, locked = run_async(scenario())
        assert stale_release is False
        assert released is True
        assert locked is False

    def test_expired_row_reads_as_unlocked(self, mutex, db_engine, fake_clock):
        _insert_lock(db_engine, "stale", expires_at=fake_clock.now - 1)
        assert run_async(mutex.is_locked("stale")) is False
        # The row is still there until cleanup or replacement
        assert _lock_count(db_engine) == 1

    def test_replacement_takes_ownership(self, mutex, db_engine, fake_clock):
        _insert_lock(db_engine, "stale", expires_at=fake_clock.now - 10, owner="crashed")
        token = run_async(mutex.acquire("stale", 2000))
        with Session(db_engine) as s:
            row = s.get(DistributedLock, "stale")
        assert row.owner_id == "test-owner"
        assert row.lock_token == token
        assert row.expires_at == fake_clock.now + 2000


# ---------------------------------------------------------------------------
# Extend
# ---------------------------------------------------------------------------
class TestExtend:
    def test_extend_live_lock(self, mutex, db_engine, fake_clock):
        async def scenario():
            token = await mutex.acquire("k", 1000)
            return await mutex.extend("k", token, 500)

        assert run_async(scenario()) is True
        with Session(db_engine) as s:
            assert s.get(DistributedLock, "k").expires_at == fake_clock.now + 1500

    def test_cannot_extend_expired_lock(self, mutex, fake_clock):
        async def scenario():
            token = await mutex.acquire("k", 1000)
            fake_clock.advance(1001)
            return await mutex.extend("k", token, 5000)

        assert run_async(scenario()) is False

    def test_cannot_extend_with_wrong_token(self, mutex):
        async def scenario():
            await mutex.acquire("k", 1000)
            return await mutex.extend("k", "wrong", 5000)

        assert run_async(scenario()) is False


# ---------------------------------------------------------------------------
# Validation & storage errors
# ---------------------------------------------------------------------------
class TestErrors:
    @pytest.mark.parametrize("ttl", [0, -5, 1.5, "100", True])
    def test_bad_ttl_rejected_before_store(self, ttl):
        engine = MagicMock()
        mutex = MutexManager(engine, owner_id="x")
        with patch("keystone.coordination.mutex.run_db", new=AsyncMock()) as run_db:
            with pytest.raises(ValidationError):
                run_async(mutex.acquire("k", ttl))
            run_db.assert_not_called()

    @pytest.mark.parametrize("key", ["", None, "x" * 256])
    def test_bad_key_rejected(self, key):
        mutex = MutexManager(MagicMock(), owner_id="x")
        with pytest.raises(ValidationError):
            run_async(mutex.acquire(key, 1000))

    def test_database_error_wrapped(self):
        engine = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )  # no tables
        mutex = MutexManager(engine, owner_id="x")
        with pytest.raises(StorageError) as exc_info:
            run_async(mutex.acquire("k", 1000))
        assert exc_info.value.operation == "acquire"
        assert exc_info.value.context["key"] == "k"
        assert "distributed_locks" in exc_info.value.context["original_error"]

    def test_storage_error_not_retried_by_with_lock(self):
        engine = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
        clock = FakeClock()
        mutex = MutexManager(engine, owner_id="x", clock=clock, sleep=clock.sleep)
        with pytest.raises(StorageError):
            run_async(mutex.with_lock("k", lambda: None))
        assert clock.sleeps == []


# ---------------------------------------------------------------------------
# with_lock
# ---------------------------------------------------------------------------
class TestWithLock:
    def test_runs_fn_and_releases(self, mutex):
        seen = {}

        async def body():
            seen["locked"] = await mutex.is_locked("k")
            return 42

        async def scenario():
            result = await mutex.with_lock("k", body)
            return result, await mutex.is_locked("k")

        result, locked_after = run_async(scenario())
        assert result == 42
        assert seen["locked"] is True
        assert locked_after is False

    def test_accepts_sync_fn(self, mutex):
        assert run_async(mutex.with_lock("k", lambda: "sync")) == "sync"

    def test_releases_when_fn_raises(self, mutex):
        async def body():
            raise RuntimeError("boom")

        async def scenario():
            with pytest.raises(RuntimeError, match="boom"):
                await mutex.with_lock("k", body)
            return await mutex.is_locked("k")

        assert run_async(scenario()) is False
        assert mutex.get_stats()["locks_released"] == 1

    def test_release_failure_does_not_mask_fn_error(self, mutex):
        async def body():
            raise RuntimeError("boom")

        async def scenario():
            with patch.object(mutex, "release", AsyncMock(side_effect=StorageError("release"))):
                with pytest.raises(RuntimeError, match="boom"):
                    await mutex.with_lock("k", body)

        run_async(scenario())

    def test_release_failure_after_success_propagates(self, mutex):
        async def scenario():
            with patch.object(mutex, "release", AsyncMock(side_effect=StorageError("release"))):
                with pytest.raises(StorageError):
                    await mutex.with_lock("k", lambda: "done")

        run_async(scenario())

    def test_exponential_backoff_then_gives_up(self, mutex, fake_clock):
        async def scenario():
            await mutex.acquire("k", 60_000)
            with pytest.raises(LockContentionError):
                await mutex.with_lock("k", lambda: None)

        run_async(scenario())
        assert fake_clock.sleeps == [0.1, 0.2]
        stats = mutex.get_stats()
        assert stats["locks_timed_out"] == 1
        assert stats["locks_failed"] == 3

    def test_succeeds_once_holder_releases(self, db_engine, fake_clock):
        holder = {}

        async def release_on_sleep(seconds):
            await fake_clock.sleep(seconds)
            if "token" in holder:
                await mutex.release("k", holder.pop("token"))

        mutex = MutexManager(
            db_engine, owner_id="me", clock=fake_clock, sleep=release_on_sleep
        )

        async def scenario():
            holder["token"] = await mutex.acquire("k", 60_000)
            return await mutex.with_lock("k", lambda: "done")

        assert run_async(scenario()) == "done"
        assert fake_clock.sleeps == [0.1]


# ---------------------------------------------------------------------------
# Cleanup, release_all, diagnostics
# ---------------------------------------------------------------------------
class TestCleanup:
    def test_removes_only_expired(self, mutex, db_engine, fake_clock):
        for i in range(3):
            _insert_lock(db_engine, f"old{i}", expires_at=fake_clock.now - 100)
        _insert_lock(db_engine, "live", expires_at=fake_clock.now + 10_000)

        assert run_async(mutex.cleanup()) == 3
        assert _lock_count(db_engine) == 1
        stats = mutex.get_stats()
        assert stats["cleanup_runs"] == 1
        assert stats["expired_locks_removed"] == 3

    def test_large_backlog_deleted_in_batches(self, db_engine, fake_clock):
        mutex = MutexManager(
            db_engine, owner_id="me", cleanup_batch_size=2, cleanup_sleep_ms=5,
            clock=fake_clock, sleep=fake_clock.sleep,
        )
        for i in range(5):
            _insert_lock(db_engine, f"old{i}", expires_at=fake_clock.now - 1)

        assert run_async(mutex.cleanup()) == 5
        assert _lock_count(db_engine) == 0
        # Two full batches, each followed by a pause, then a partial one
        assert fake_clock.sleeps == [0.005, 0.005]

    def test_nothing_to_clean(self, mutex):
        assert run_async(mutex.cleanup()) == 0

    def test_release_all_only_touches_own_locks(self, mutex, db_engine, fake_clock):
        _insert_lock(db_engine, "theirs", expires_at=fake_clock.now + 10_000, owner="other")

        async def scenario():
            await mutex.acquire("mine1")
            await mutex.acquire("mine2")
            return await mutex.release_all()

        assert run_async(scenario()) == 2
        with Session(db_engine) as s:
            assert [r.lock_key for r in s.scalars(select(DistributedLock))] == ["theirs"]

    def test_active_locks(self, mutex, db_engine, fake_clock):
        _insert_lock(db_engine, "stale", expires_at=fake_clock.now - 1)

        async def scenario():
            await mutex.acquire("a")
            await mutex.acquire("b")
            return await mutex.get_active_locks(), await mutex.get_active_locks_count()

        active, count = run_async(scenario())
        assert count == 2
        assert {lock["lock_key"] for lock in active} == {"a", "b"}
        assert all(lock["owner_id"] == "test-owner" for lock in active)


class TestLifecycle:
    def test_cleanup_task_runs_and_stops(self, db_engine):
        mutex = MutexManager(db_engine, owner_id="me", cleanup_interval_ms=10)

        async def scenario():
            mutex.start()
            assert mutex.is_cleanup_running
            await asyncio.sleep(0.3)
            mutex.stop_cleanup()
            mutex.stop_cleanup()  # idempotent
            return mutex.get_stats()

        stats = run_async(scenario())
        assert stats["cleanup_runs"] >= 1
        assert stats["cleanup_running"] is False

    def test_cleanup_errors_are_logged_not_raised(self, db_engine):
        mutex = MutexManager(db_engine, owner_id="me", cleanup_interval_ms=10)
        calls = []

        async def flaky_cleanup():
            calls.append(1)
            if len(calls) == 1:
                raise StorageError("cleanup")
            return 0

        async def scenario():
            with patch.object(mutex, "cleanup", side_effect=flaky_cleanup):
                mutex.start()
                await asyncio.sleep(0.3)
                alive = mutex.is_cleanup_running
                mutex.stop_cleanup()
                return alive

        assert run_async(scenario()) is True
        assert len(calls) >= 2

    def test_shutdown_stops_cleanup_and_releases(self, db_engine):
        mutex = MutexManager(db_engine, owner_id="me")

        async def scenario():
            mutex.start()
            await mutex.acquire("a")
            await mutex.acquire("b")
            removed = await mutex.shutdown()
            return removed, mutex.is_cleanup_running

        removed, running = run_async(scenario())
        assert removed == 2
        assert running is False
        assert _lock_count(db_engine) == 0

    def test_default_owner_id_generated(self, db_engine):
        a = MutexManager(db_engine)
        b = MutexManager(db_engine)
        assert a.owner_id.startswith("mutex-")
        assert a.owner_id != b.owner_id


# ---------------------------------------------------------------------------
# Races across connections
# ---------------------------------------------------------------------------
class TestConcurrency:
    def test_only_one_racer_wins(self, file_engine):
        managers = [MutexManager(file_engine, owner_id=f"proc-{i}") for i in range(8)]

        async def scenario():
            return await asyncio.gather(
                *(m.try_acquire("econ:g1:u1", 10_000) for m in managers)
            )

        tokens = run_async(scenario())
        assert sum(t is not None for t in tokens) == 1

    def test_only_one_racer_replaces_expired_lock(self, file_engine):
        _insert_lock(file_engine, "econ:g1:u1", expires_at=1, owner="crashed")
        managers = [MutexManager(file_engine, owner_id=f"proc-{i}") for i in range(8)]

        async def scenario():
            return await asyncio.gather(
                *(m.try_acquire("econ:g1:u1", 10_000) for m in managers)
            )

        tokens = run_async(scenario())
        winners = [t for t in tokens if t is not None]
        assert len(winners) == 1
        with Session(file_engine) as s:
            assert s.get(DistributedLock, "econ:g1:u1").lock_token == winners[0]

    def test_with_lock_serializes_critical_section(self, file_engine):
        mutex = MutexManager(file_engine, owner_id="me", max_retries=50, retry_delay_ms=5)
        inside = 0
        overlaps = []

        async def critical():
            nonlocal inside
            inside += 1
            overlaps.append(inside)
            await asyncio.sleep(0.01)
            inside -= 1

        async def scenario():
            await asyncio.gather(*(mutex.with_lock("k", critical, 5000) for _ in range(4)))

        run_async(scenario())
        assert overlaps == [1, 1, 1, 1]
