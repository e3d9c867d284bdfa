"""
keystone.api.main — FastAPI application entry point
====================================================

Read-only operational endpoints for dashboards and load balancers:

- ``GET /api/health``        — run a health check now (503 when unhealthy)
- ``GET /api/health/last``   — the most recent result, without re-checking
- ``GET /api/health/stats``  — rolling health-check statistics
- ``GET /api/locks``         — locks currently held, plus mutex counters

Run with::

    uvicorn keystone.api.main:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Response, status
from pydantic import BaseModel

load_dotenv()

from keystone.api.deps import get_config, get_engine, get_runtime  # noqa: E402
from keystone.runtime import Runtime, build_runtime  # noqa: E402
from keystone.services.health_service import HealthStatus  # noqa: E402

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------
class HealthResponse(BaseModel):
    status: HealthStatus
    timestamp: int
    response_time_ms: int
    checks: dict[str, dict[str, Any]]
    issues: list[str]
    consecutive_failures: int
    error: str | None = None


class HealthStatsResponse(BaseModel):
    total_checks: int
    successful_checks: int
    failed_checks: int
    degraded_checks: int
    average_response_time_ms: int
    last_check_time: int | None
    last_check_status: HealthStatus | None
    consecutive_failures: int
    periodic_checks_enabled: bool
    check_interval_ms: int


class LockInfo(BaseModel):
    lock_key: str
    owner_id: str
    acquired_at: int
    expires_at: int


class LocksResponse(BaseModel):
    count: int
    locks: list[LockInfo]
    stats: dict[str, Any]


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the coordination stack on startup, release it on shutdown."""
    runtime = build_runtime(get_config(), get_engine())
    await runtime.start()
    app.state.runtime = runtime
    logger.info("Keystone API started (owner=%s)", runtime.mutex.owner_id)
    yield
    await runtime.shutdown()
    app.state.runtime = None
    logger.info("Keystone API shut down")


app = FastAPI(
    title="Keystone Operations API",
    version="1.0.0",
    lifespan=lifespan,
)

RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


@app.get("/api/health", response_model=HealthResponse)
async def health(runtime: RuntimeDep, response: Response):
    result = await runtime.health.check_health()
    if result.status == HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result.to_dict()


@app.get("/api/health/last", response_model=HealthResponse)
def last_health(runtime: RuntimeDep):
    result = runtime.health.get_last_check_result()
    if result is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "No health check has run yet")
    return result.to_dict()


@app.get("/api/health/stats", response_model=HealthStatsResponse)
def health_stats(runtime: RuntimeDep):
    return runtime.health.get_stats()


@app.get("/api/locks", response_model=LocksResponse)
async def locks(runtime: RuntimeDep):
    active = await runtime.mutex.get_active_locks()
    return {
        "count": len(active),
        "locks": active,
        "stats": runtime.mutex.get_stats(),
    }
