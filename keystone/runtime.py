"""
keystone.runtime — Wiring of the Coordination Stack
====================================================

The bot and the dashboard API both need the same set of collaborators
built from one engine and one :class:`~keystone.config.KeystoneConfig`:

    Database ─┬─ MutexManager ─┬─ CacheInvalidator ── EconomyService
              │                │        │
              ├─ AtomicOperations      CacheManager (+ LRU front)
              │
              └─ HealthCheckService ← ConnectionPoolMonitor, MigrationManager

:func:`build_runtime` assembles them; :meth:`Runtime.start` and
:meth:`Runtime.shutdown` own the background tasks so callers only have
one lifecycle to drive.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine

from keystone.cache.invalidator import CacheInvalidator
from keystone.cache.lru import LRUCache
from keystone.cache.manager import CacheManager
from keystone.config import KeystoneConfig
from keystone.coordination.atomic import AtomicOperations
from keystone.coordination.mutex import MutexManager
from keystone.database.engine import Database
from keystone.database.migrations import MigrationManager
from keystone.database.pool import ConnectionPoolMonitor
from keystone.services.economy_service import EconomyService
from keystone.services.health_service import HealthCheckResult, HealthCheckService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    cfg: KeystoneConfig
    database: Database
    mutex: MutexManager
    atomic: AtomicOperations
    cache: CacheManager
    invalidator: CacheInvalidator
    health: HealthCheckService
    economy: EconomyService

    async def start(self, *, periodic_health: bool = True) -> None:
        """Verify the connection and start cleanup and health loops."""
        self.database.connect()
        self.mutex.start()
        if periodic_health:
            self.health.start_periodic_checks(self.cfg.health.check_interval_ms)

    async def shutdown(self) -> None:
        """Stop background tasks and free this instance's locks."""
        self.health.shutdown()
        await self.mutex.shutdown()
        self.database.dispose()


def _log_failure(result: HealthCheckResult) -> None:
    logger.error(
        "Data stack UNHEALTHY (%d in a row): %s",
        result.consecutive_failures, "; ".join(result.issues) or "no details",
    )


def process_owner_id(instance_id: str) -> str:
    """Lock owner for this process: the instance id plus a per-process nonce.

    The bot and the API usually load the same config file, and
    ``release_all`` on shutdown deletes every lock its owner holds.
    """
    return f"{instance_id}-{secrets.token_hex(4)}"


def build_runtime(cfg: KeystoneConfig, engine: Engine, **overrides: Any) -> Runtime:
    """Build every collaborator from *cfg*.

    ``overrides`` replaces individual health collaborators (``pool``,
    ``migrations``, ``on_failure``); pass ``migrations=None`` to skip the
    migration probe.
    """
    database = Database(engine, statement_cache_size=cfg.cache.statement_cache_size)

    mutex = MutexManager(
        engine,
        owner_id=process_owner_id(cfg.instance_id),
        default_ttl_ms=cfg.mutex.default_ttl_ms,
        cleanup_interval_ms=cfg.mutex.cleanup_interval_ms,
        cleanup_batch_size=cfg.mutex.cleanup_batch_size,
        cleanup_sleep_ms=cfg.mutex.cleanup_sleep_ms,
        max_retries=cfg.mutex.max_retries,
        retry_delay_ms=cfg.mutex.retry_delay_ms,
    )
    atomic = AtomicOperations(
        engine,
        max_retries=cfg.mutex.max_retries,
        retry_delay_ms=cfg.mutex.retry_delay_ms,
    )
    cache = CacheManager(
        engine,
        default_ttl_ms=cfg.cache.default_ttl_ms,
        local_cache=LRUCache(max_size=cfg.cache.local_max_size, ttl_ms=cfg.cache.local_ttl_ms),
    )
    invalidator = CacheInvalidator(
        cache,
        mutex,
        stampede_timeout_ms=cfg.cache.stampede_timeout_ms,
        default_ttl_ms=cfg.cache.default_ttl_ms,
        poll_interval_ms=cfg.cache.poll_interval_ms,
    )

    if "migrations" in overrides:
        migrations = overrides["migrations"]
    else:
        migrations = MigrationManager(engine) if cfg.health.check_migrations else None

    health = HealthCheckService(
        database,
        pool=overrides.get("pool") or ConnectionPoolMonitor(engine),
        cache=cache,
        migrations=migrations,
        check_interval_ms=cfg.health.check_interval_ms,
        slow_query_ms=cfg.health.slow_query_ms,
        on_failure=overrides.get("on_failure", _log_failure),
    )

    return Runtime(
        cfg=cfg,
        database=database,
        mutex=mutex,
        atomic=atomic,
        cache=cache,
        invalidator=invalidator,
        health=health,
        economy=EconomyService(mutex, atomic, invalidator),
    )
