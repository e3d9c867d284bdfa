"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import BigInteger, Engine, create_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from keystone.database.models import Base


# ---------------------------------------------------------------------------
# SQLite only autoincrements INTEGER PRIMARY KEY columns, so render
# BigInteger as INTEGER when running against SQLite.
# ---------------------------------------------------------------------------
@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a fresh event loop."""
    return asyncio.run(coro)


class FakeClock:
    """Millisecond clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(seconds * 1000)
        await asyncio.sleep(0)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Keystone tables.

    Uses StaticPool so the worker threads behind ``run_db`` share the same
    in-memory database.  Fine for tests that await one query at a time.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine: one connection per thread.

    Use this for tests that race several coroutines against the store;
    SQLite's own file locking serializes the writers.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'keystone.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
