"""
keystone.database.pool — Connection Pool Health
================================================

:class:`ConnectionPoolMonitor` reads the SQLAlchemy pool's counters and
turns them into a ``healthy`` / ``degraded`` / ``unhealthy`` verdict for
:class:`~keystone.services.health_service.HealthCheckService`.

Pool events (``checkout`` / ``invalidate``) are counted through
``sqlalchemy.event`` so the monitor can flag a pool that keeps throwing
connections away.  Pools without sizing (``StaticPool``, ``NullPool``)
report their class name and skip the capacity rules.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy import Engine, event, text
from sqlalchemy.exc import SQLAlchemyError

from keystone.database.engine import run_db

logger = logging.getLogger(__name__)

MAX_INVALIDATION_RATE = 5.0


class ConnectionPoolMonitor:
    def __init__(self, engine: Engine, *, min_connections: int = 1) -> None:
        self.engine = engine
        self.min_connections = min_connections
        self._checkouts = 0
        self._invalidations = 0

        event.listen(engine, "checkout", self._on_checkout)
        event.listen(engine, "invalidate", self._on_invalidate)

    def _on_checkout(self, dbapi_conn, conn_record, conn_proxy) -> None:
        self._checkouts += 1

    def _on_invalidate(self, dbapi_conn, conn_record, exception) -> None:
        self._invalidations += 1

    def get_stats(self) -> dict[str, Any]:
        pool = self.engine.pool
        stats: dict[str, Any] = {
            "pool_class": type(pool).__name__,
            "total_checkouts": self._checkouts,
            "total_invalidations": self._invalidations,
        }
        size = getattr(pool, "size", None)
        if callable(size):
            stats.update(
                pool_size=pool.size(),
                checked_in=pool.checkedin(),
                checked_out=pool.checkedout(),
                overflow=pool.overflow(),
                max_overflow=getattr(pool, "_max_overflow", 0),
            )
        return stats

    def _test_connection(self) -> float:
        started = time.perf_counter()
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return (time.perf_counter() - started) * 1000

    async def health_check(self) -> dict[str, Any]:
        stats = self.get_stats()
        issues: list[str] = []
        status = "healthy"

        if "pool_size" in stats:
            capacity = stats["pool_size"] + max(stats["max_overflow"], 0)
            if stats["pool_size"] < self.min_connections:
                issues.append(
                    f"Pool size ({stats['pool_size']}) below minimum ({self.min_connections})"
                )
                status = "degraded"
            if stats["checked_out"] >= capacity:
                issues.append("All connections in use and pool at maximum capacity")
                status = "degraded"

        if self._checkouts:
            rate = self._invalidations / self._checkouts * 100
            if rate > MAX_INVALIDATION_RATE:
                issues.append(f"High connection invalidation rate: {rate:.2f}%")
                status = "degraded"

        try:
            elapsed = await run_db(self._test_connection)
            connection_test = {"success": True, "response_time_ms": round(elapsed, 2)}
        except SQLAlchemyError as exc:
            logger.warning("Pool connection test failed: %s", exc)
            connection_test = {"success": False, "error": str(exc)}
            issues.append(f"Connection test failed: {exc}")
            status = "unhealthy"

        return {
            "status": status,
            "timestamp": int(time.time() * 1000),
            "stats": stats,
            "issues": issues,
            "connection_test": connection_test,
        }
