"""
tests/test_pool_migrations.py — Pool Monitor and Migration Status Tests
========================================================================
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, inspect

import keystone
from conftest import run_async
from keystone.database.migrations import DEFAULT_SCRIPT_LOCATION, MigrationManager
from keystone.database.pool import ConnectionPoolMonitor


class TestConnectionPoolMonitor:
    def test_static_pool_skips_capacity_rules(self, db_engine):
        monitor = ConnectionPoolMonitor(db_engine)
        report = run_async(monitor.health_check())

        assert report["status"] == "healthy"
        assert report["stats"]["pool_class"] == "StaticPool"
        assert "pool_size" not in report["stats"]
        assert report["connection_test"]["success"] is True

    def test_queue_pool_stats(self, file_engine):
        monitor = ConnectionPoolMonitor(file_engine)
        report = run_async(monitor.health_check())

        stats = monitor.get_stats()
        assert report["status"] == "healthy"
        assert stats["pool_size"] == 5
        assert stats["checked_out"] == 0
        assert stats["total_checkouts"] >= 1

    def test_pool_at_capacity_degrades(self, file_engine):
        monitor = ConnectionPoolMonitor(file_engine)
        full = {
            "pool_class": "QueuePool", "total_checkouts": 0, "total_invalidations": 0,
            "pool_size": 5, "checked_in": 0, "checked_out": 15, "overflow": 10,
            "max_overflow": 10,
        }
        with patch.object(monitor, "get_stats", return_value=full):
            report = run_async(monitor.health_check())

        assert report["status"] == "degraded"
        assert "All connections in use and pool at maximum capacity" in report["issues"]

    def test_high_invalidation_rate_degrades(self, file_engine):
        monitor = ConnectionPoolMonitor(file_engine)
        monitor._checkouts = 10
        monitor._invalidations = 2

        report = run_async(monitor.health_check())
        assert report["status"] == "degraded"
        assert any("invalidation rate" in issue for issue in report["issues"])

    def test_failed_connection_is_unhealthy(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
        monitor = ConnectionPoolMonitor(engine)

        report = run_async(monitor.health_check())
        assert report["status"] == "unhealthy"
        assert report["connection_test"]["success"] is False


class TestMigrationManager:
    @pytest.fixture
    def empty_engine(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
        yield engine
        engine.dispose()

    def test_scripts_ship_inside_the_package(self):
        package_dir = Path(keystone.__file__).resolve().parent
        assert DEFAULT_SCRIPT_LOCATION.parent == package_dir
        assert (DEFAULT_SCRIPT_LOCATION / "env.py").is_file()
        assert any((DEFAULT_SCRIPT_LOCATION / "versions").glob("0001_*.py"))

    def test_fresh_database_has_pending(self, empty_engine):
        status = run_async(MigrationManager(empty_engine).get_status())

        assert status["total"] >= 1
        assert status["executed"] == 0
        assert status["pending"] == status["total"]
        assert status["pending_revisions"][0] == "0001"
        assert status["current"] == []

    def test_upgrade_clears_pending(self, empty_engine):
        manager = MigrationManager(empty_engine)

        run_async(manager.upgrade())
        status = run_async(manager.get_status())

        assert status["pending"] == 0
        assert status["executed"] == status["total"]
        assert status["current"] == status["heads"]
        tables = set(inspect(empty_engine).get_table_names())
        assert {"distributed_locks", "cache_entries", "economy_accounts"} <= tables
