"""
keystone.services.health_service — Data-Stack Health Checks
============================================================

:class:`HealthCheckService` probes the database, the connection pool, the
shared cache and the migration state, and folds the four verdicts into one:

* any sub-check ``unhealthy`` → ``unhealthy``
* else any ``degraded``       → ``degraded``
* else                        → ``healthy`` (``skipped`` checks are ignored)

Pool, cache and migration probes are optional.  ``check_health`` leaves an
unconfigured one out of ``checks``; calling its probe directly reports
``skipped``.

On an ``unhealthy`` verdict the ``on_failure`` callback (sync or async)
receives the full :class:`HealthCheckResult`.  Callback errors are logged
and never reach the caller.  ``consecutive_failures`` counts unhealthy
results in a row; a healthy or degraded check resets it.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CHECK_INTERVAL_MS = 5 * 60 * 1000
SLOW_QUERY_MS = 1000
RESPONSE_SAMPLES = 100

# Cache probe thresholds
MIN_HIT_RATE = 50.0
MIN_REQUESTS_FOR_HIT_RATE = 100
MAX_ERROR_RATE = 5.0
MAX_EXPIRED_RATIO = 0.5
PROBE_TTL_MS = 5000


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    SKIPPED = "skipped"


def aggregate_status(statuses: Iterable[str]) -> HealthStatus:
    """Fold sub-check statuses into one verdict.  ``skipped`` never counts."""
    seen = {HealthStatus(s) for s in statuses}
    if HealthStatus.UNHEALTHY in seen:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in seen:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------
class DatabaseProbe(Protocol):
    def is_ready(self) -> bool: ...
    async def query(self, sql: str, params: dict | None = None) -> Any: ...


class PoolProbe(Protocol):
    async def health_check(self) -> dict[str, Any]: ...


class CacheProbe(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def get_stats(self) -> dict[str, Any]: ...


class MigrationProbe(Protocol):
    async def get_status(self) -> dict[str, Any]: ...


@dataclass(slots=True)
class HealthCheckResult:
    status: HealthStatus
    timestamp: int
    response_time_ms: int
    checks: dict[str, dict[str, Any]] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)
    consecutive_failures: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["error"] is None:
            del data["error"]
        return data


def _now_ms() -> int:
    return int(time.time() * 1000)


class HealthCheckService:
    """Periodic and on-demand health verdicts for the data-access stack."""

    def __init__(
        self,
        database: DatabaseProbe,
        *,
        pool: PoolProbe | None = None,
        cache: CacheProbe | None = None,
        migrations: MigrationProbe | None = None,
        check_interval_ms: int = CHECK_INTERVAL_MS,
        slow_query_ms: int = SLOW_QUERY_MS,
        on_failure: Callable[[HealthCheckResult], Any] | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if database is None:
            raise ValueError("HealthCheckService requires a database handle")
        self.database = database
        self.pool = pool
        self.cache = cache
        self.migrations = migrations
        self.check_interval_ms = check_interval_ms
        self.slow_query_ms = slow_query_ms
        self.on_failure = on_failure
        self._clock = clock

        self.consecutive_failures = 0
        self._last_result: HealthCheckResult | None = None
        self._last_check_time: int | None = None
        self._periodic_task: asyncio.Task | None = None
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._degraded = 0
        self._response_times: deque[int] = deque(maxlen=RESPONSE_SAMPLES)

    # ------------------------------------------------------------------
    # Full check
    # ------------------------------------------------------------------
    async def check_health(self) -> HealthCheckResult:
        """Run every configured probe and return the aggregated result."""
        started = self._clock()
        checks: dict[str, dict[str, Any]] = {}

        try:
            checks["database"] = await self.check_database_connection()
            if self.pool is not None:
                checks["connection_pool"] = await self.check_connection_pool()
            if self.cache is not None:
                checks["cache"] = await self.check_cache()
            if self.migrations is not None:
                checks["migrations"] = await self.check_migrations()
        except Exception as exc:
            logger.exception("Health check crashed")
            result = self._record(
                HealthStatus.UNHEALTHY,
                started,
                checks,
                [f"Health check failed: {exc}"],
                error=str(exc),
            )
        else:
            status = aggregate_status(c["status"] for c in checks.values())
            issues = [issue for c in checks.values() for issue in c.get("issues", [])]
            result = self._record(status, started, checks, issues)

        log = logger.info if result.status == HealthStatus.HEALTHY else logger.warning
        log(
            "Health check completed: %s (%dms, %d issue(s))",
            result.status, result.response_time_ms, len(result.issues),
        )

        if result.status == HealthStatus.UNHEALTHY and self.on_failure is not None:
            await self._notify_failure(result)
        return result

    def _record(
        self,
        status: HealthStatus,
        started: int,
        checks: dict[str, dict[str, Any]],
        issues: list[str],
        *,
        error: str | None = None,
    ) -> HealthCheckResult:
        response_time = self._clock() - started

        self._total += 1
        if status == HealthStatus.UNHEALTHY:
            self._failed += 1
            self.consecutive_failures += 1
        else:
            if status == HealthStatus.DEGRADED:
                self._degraded += 1
            else:
                self._successful += 1
            self.consecutive_failures = 0
        self._response_times.append(response_time)

        result = HealthCheckResult(
            status=status,
            timestamp=self._clock(),
            response_time_ms=response_time,
            checks=checks,
            issues=issues,
            consecutive_failures=self.consecutive_failures,
            error=error,
        )
        self._last_result = result
        self._last_check_time = result.timestamp
        return result

    async def _notify_failure(self, result: HealthCheckResult) -> None:
        try:
            outcome = self.on_failure(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Health failure callback raised")

    # ------------------------------------------------------------------
    # Individual probes
    # ------------------------------------------------------------------
    async def check_database_connection(self) -> dict[str, Any]:
        started = self._clock()
        issues: list[str] = []
        status = HealthStatus.HEALTHY

        try:
            if not self.database.is_ready():
                issues.append("Database connection not ready")
                status = HealthStatus.UNHEALTHY

            query_start = self._clock()
            await self.database.query("SELECT 1 AS test")
            query_time = self._clock() - query_start

            if query_time > self.slow_query_ms:
                issues.append(f"Slow database response: {query_time}ms")
                if status == HealthStatus.HEALTHY:
                    status = HealthStatus.DEGRADED

            return {
                "status": status,
                "response_time_ms": self._clock() - started,
                "query_time_ms": query_time,
                "is_connected": self.database.is_ready(),
                "issues": issues,
                "timestamp": self._clock(),
            }
        except Exception as exc:
            issues.append(f"Database connection test failed: {exc}")
            return {
                "status": HealthStatus.UNHEALTHY,
                "response_time_ms": self._clock() - started,
                "is_connected": False,
                "error": str(exc),
                "issues": issues,
                "timestamp": self._clock(),
            }

    async def check_connection_pool(self) -> dict[str, Any]:
        """Adopt the pool's own verdict."""
        if self.pool is None:
            return self._skipped("Connection pool not configured")

        try:
            report = await self.pool.health_check()
        except Exception as exc:
            return self._failed_probe("Connection pool check failed", exc)

        return {
            "status": HealthStatus(report["status"]),
            "stats": report.get("stats", {}),
            "connection_test": report.get("connection_test"),
            "issues": list(report.get("issues", [])),
            "timestamp": self._clock(),
        }

    async def check_cache(self) -> dict[str, Any]:
        """Statistical signals first, then a live set/get/delete round-trip.

        A failed round-trip is ``unhealthy`` whatever the statistics say.
        """
        if self.cache is None:
            return self._skipped("Cache manager not configured")

        issues: list[str] = []
        status = HealthStatus.HEALTHY

        try:
            stats = await self.cache.get_stats()
        except Exception as exc:
            return self._failed_probe("Cache check failed", exc)

        requests = stats.get("total_requests", 0)
        hit_rate = float(stats.get("hit_rate", 0.0))
        if hit_rate < MIN_HIT_RATE and requests > MIN_REQUESTS_FOR_HIT_RATE:
            issues.append(f"Low cache hit rate: {hit_rate:.2f}%")
            status = HealthStatus.DEGRADED

        error_rate = stats.get("errors", 0) / requests * 100 if requests else 0.0
        if error_rate > MAX_ERROR_RATE:
            issues.append(f"High cache error rate: {error_rate:.2f}%")
            status = HealthStatus.DEGRADED

        expired = stats.get("expired_entries", 0)
        if expired > stats.get("active_entries", 0) * MAX_EXPIRED_RATIO:
            issues.append(f"High number of expired entries: {expired}")
            status = HealthStatus.DEGRADED

        probe_key = f"health_check_{self._clock()}"
        try:
            await self.cache.set(probe_key, {"test": True}, PROBE_TTL_MS)
            retrieved = await self.cache.get(probe_key, use_local=False)
            if not isinstance(retrieved, dict) or retrieved.get("test") is not True:
                issues.append("Cache read/write test failed")
                status = HealthStatus.UNHEALTHY
            await self.cache.delete(probe_key)
        except Exception as exc:
            issues.append(f"Cache operation test failed: {exc}")
            status = HealthStatus.UNHEALTHY

        return {
            "status": status,
            "stats": stats,
            "issues": issues,
            "timestamp": self._clock(),
        }

    async def check_migrations(self) -> dict[str, Any]:
        """``degraded`` while migrations are pending.  No migrations at all is fine."""
        if self.migrations is None:
            return self._skipped("Migration manager not configured")

        try:
            migration_status = await self.migrations.get_status()
        except Exception as exc:
            return self._failed_probe("Migration check failed", exc)

        issues: list[str] = []
        status = HealthStatus.HEALTHY
        pending = migration_status.get("pending", 0)
        if pending > 0:
            issues.append(f"{pending} pending migration(s)")
            status = HealthStatus.DEGRADED

        return {
            "status": status,
            "migration_status": migration_status,
            "issues": issues,
            "timestamp": self._clock(),
        }

    def _skipped(self, message: str) -> dict[str, Any]:
        return {
            "status": HealthStatus.SKIPPED,
            "message": message,
            "issues": [],
            "timestamp": self._clock(),
        }

    def _failed_probe(self, label: str, exc: Exception) -> dict[str, Any]:
        return {
            "status": HealthStatus.UNHEALTHY,
            "error": str(exc),
            "issues": [f"{label}: {exc}"],
            "timestamp": self._clock(),
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    @property
    def periodic_checks_enabled(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    def start_periodic_checks(self, interval_ms: int | None = None) -> None:
        """Run a check now, then every *interval_ms*, on the running loop."""
        if self._periodic_task is not None:
            logger.warning("Periodic health checks already running")
            return

        if interval_ms is not None:
            self.check_interval_ms = interval_ms
        interval = self.check_interval_ms
        logger.info("Starting periodic health checks (interval: %dms)", interval)

        async def _check_loop() -> None:
            while True:
                try:
                    await self.check_health()
                except Exception:
                    logger.exception("Periodic health check error")
                await asyncio.sleep(interval / 1000)

        self._periodic_task = asyncio.get_running_loop().create_task(
            _check_loop(), name="health-checks"
        )

    def stop_periodic_checks(self) -> None:
        if self._periodic_task:
            self._periodic_task.cancel()
            self._periodic_task = None
            logger.info("Periodic health checks stopped")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_last_check_result(self) -> HealthCheckResult | None:
        return self._last_result

    def get_stats(self) -> dict[str, Any]:
        samples = list(self._response_times)
        return {
            "total_checks": self._total,
            "successful_checks": self._successful,
            "failed_checks": self._failed,
            "degraded_checks": self._degraded,
            "average_response_time_ms": round(sum(samples) / len(samples)) if samples else 0,
            "response_times": samples,
            "last_check_time": self._last_check_time,
            "last_check_status": self._last_result.status if self._last_result else None,
            "consecutive_failures": self.consecutive_failures,
            "periodic_checks_enabled": self.periodic_checks_enabled,
            "check_interval_ms": self.check_interval_ms,
        }

    def reset_stats(self) -> None:
        self._reset_counters()
        self.consecutive_failures = 0
        logger.info("Health check statistics reset")

    def shutdown(self) -> None:
        logger.info("Shutting down health check service")
        self.stop_periodic_checks()
        stats = self.get_stats()
        logger.info(
            "Final health stats: %d checks, %d ok, %d degraded, %d failed, avg %dms",
            stats["total_checks"], stats["successful_checks"], stats["degraded_checks"],
            stats["failed_checks"], stats["average_response_time_ms"],
        )
