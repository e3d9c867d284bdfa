"""
tests/test_api_health.py — Operations API Tests
================================================
Exercises the FastAPI routes with a mocked coordination stack placed on
``app.state``; the lifespan (and therefore the real database) is never
entered.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from keystone.api.main import app
from keystone.services.health_service import HealthCheckResult, HealthStatus


def _result(status=HealthStatus.HEALTHY, issues=()):
    return HealthCheckResult(
        status=status,
        timestamp=1_700_000_000_000,
        response_time_ms=12,
        checks={"database": {"status": status, "issues": list(issues)}},
        issues=list(issues),
        consecutive_failures=1 if status == HealthStatus.UNHEALTHY else 0,
    )


@pytest.fixture
def runtime():
    rt = MagicMock()
    rt.health.check_health = AsyncMock(return_value=_result())
    rt.health.get_last_check_result.return_value = None
    rt.health.get_stats.return_value = {
        "total_checks": 3,
        "successful_checks": 2,
        "failed_checks": 1,
        "degraded_checks": 0,
        "average_response_time_ms": 15,
        "response_times": [10, 15, 20],
        "last_check_time": 1_700_000_000_000,
        "last_check_status": "unhealthy",
        "consecutive_failures": 1,
        "periodic_checks_enabled": True,
        "check_interval_ms": 300_000,
    }
    rt.mutex.get_active_locks = AsyncMock(return_value=[{
        "lock_key": "economy:1:10",
        "lock_token": "secret-token",
        "acquired_at": 1,
        "expires_at": 5001,
        "owner_id": "keystone-1",
    }])
    rt.mutex.get_stats.return_value = {"locks_acquired": 4, "owner_id": "keystone-1"}
    return rt


@pytest.fixture
def client(runtime):
    app.state.runtime = runtime
    yield TestClient(app, raise_server_exceptions=False)
    app.state.runtime = None


class TestHealthEndpoint:
    def test_healthy(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["response_time_ms"] == 12
        assert body["checks"]["database"]["status"] == "healthy"

    def test_degraded_still_200(self, client, runtime):
        runtime.health.check_health.return_value = _result(
            HealthStatus.DEGRADED, ["1 pending migration(s)"]
        )
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["issues"] == ["1 pending migration(s)"]

    def test_unhealthy_is_503(self, client, runtime):
        runtime.health.check_health.return_value = _result(
            HealthStatus.UNHEALTHY, ["Database connection test failed"]
        )
        resp = client.get("/api/health")
        assert resp.status_code == 503
        assert resp.json()["consecutive_failures"] == 1

    def test_last_result_404_before_first_check(self, client):
        assert client.get("/api/health/last").status_code == 404

    def test_last_result(self, client, runtime):
        runtime.health.get_last_check_result.return_value = _result()
        resp = client.get("/api/health/last")
        assert resp.status_code == 200
        assert resp.json()["timestamp"] == 1_700_000_000_000
        runtime.health.check_health.assert_not_called()

    def test_stats(self, client):
        resp = client.get("/api/health/stats")
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_checks"] == 3
        assert body["last_check_status"] == "unhealthy"
        assert "response_times" not in body


class TestLocksEndpoint:
    def test_lists_locks_without_tokens(self, client):
        resp = client.get("/api/locks")
        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == 1
        assert body["locks"][0]["lock_key"] == "economy:1:10"
        assert "lock_token" not in body["locks"][0]
        assert body["stats"]["locks_acquired"] == 4


class TestNotStarted:
    def test_503_without_runtime(self):
        app.state.runtime = None
        client = TestClient(app, raise_server_exceptions=False)
        assert client.get("/api/health").status_code == 503
        assert client.get("/api/locks").status_code == 503
