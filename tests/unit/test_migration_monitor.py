"""Unit tests for MigrationMonitor."""

import asyncio
import json
from itertools import count
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from migrator.core.config import MigrationConfig
from migrator.core.errors import ConnectivityError
from migrator.core.migrations.models import LogAction, LogLevel, LogQuery
from migrator.core.migrations.monitor import DAY_MS, MigrationMonitor
from migrator.core.migrations.storage import MigrationStorage


@pytest.fixture
def clock():
    """Deterministic, strictly increasing millisecond clock; ``advance(ms)`` jumps ahead."""
    ticks = count(1_700_000_000_000, 1000)
    offset = [0]

    def advance(ms):
        offset[0] += ms

    with patch("migrator.core.migrations.monitor.now_ms", side_effect=lambda: next(ticks) + offset[0]):
        yield SimpleNamespace(advance=advance)


def _monitor(db, **config):
    config.setdefault("enable_logging", False)
    return MigrationMonitor(db, MigrationStorage(db), MigrationConfig(**config))


@pytest_asyncio.fixture
async def persistent_monitor(db):
    monitor = MigrationMonitor(db, MigrationStorage(db), MigrationConfig())
    await monitor.storage.ensure_schema()
    await monitor.ensure_schema()
    return monitor


class TestLogBuffer:
    """Tests for the in-memory log buffer."""

    @pytest.mark.asyncio
    async def test_evicts_oldest(self, db, clock):
        """Only the newest max_log_entries entries are kept."""
        monitor = _monitor(db, max_log_entries=3)
        for version in ("001", "002", "003", "004", "005"):
            await monitor.log_event(LogAction.START, version, f"Starting {version}")

        logs = monitor.get_logs()
        assert [e.migration_id for e in logs] == ["005", "004", "003"]

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, db, clock):
        monitor = _monitor(db)
        await monitor.log_event(LogAction.START, "001", "start 001")
        await monitor.log_event(LogAction.COMPLETE, "001", "done 001", {"execution_time_ms": 5})
        await monitor.log_event(LogAction.START, "002", "start 002")
        await monitor.log_event(LogAction.FAIL, "002", "boom", {"error": "boom"}, LogLevel.ERROR)

        assert [e.message for e in monitor.get_logs(migration_id="001")] == ["done 001", "start 001"]
        assert [e.message for e in monitor.get_logs(action="start")] == ["start 002", "start 001"]
        assert [e.message for e in monitor.get_error_logs()] == ["boom"]
        assert [e.message for e in monitor.get_logs(limit=2, offset=1)] == ["start 002", "done 001"]
        assert [e.message for e in monitor.get_logs(LogQuery(end_time=1_700_000_001_000))] == ["done 001", "start 001"]

    def test_query_and_filters_exclusive(self, db):
        with pytest.raises(TypeError):
            _monitor(db).get_logs(LogQuery(), limit=1)

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, db):
        with pytest.raises(ValueError):
            await _monitor(db).log_event("explode", "001", "nope")

    @pytest.mark.asyncio
    async def test_clear_logs(self, db, clock):
        monitor = _monitor(db)
        await monitor.log_event(LogAction.START, "001", "a")
        await monitor.log_event(LogAction.START, "002", "b")

        assert await monitor.clear_logs(migration_id="001") == 1
        assert [e.migration_id for e in monitor.get_logs()] == ["002"]
        assert await monitor.clear_logs() == 1
        assert monitor.get_logs() == []

    @pytest.mark.asyncio
    async def test_prune_logs(self, db):
        """Entries older than the retention window are removed."""
        monitor = _monitor(db)
        with patch("migrator.core.migrations.monitor.now_ms", return_value=1_700_000_000_000):
            await monitor.log_event(LogAction.START, "001", "old")
        await monitor.log_event(LogAction.START, "002", "new")

        with patch("migrator.core.migrations.monitor.now_ms", return_value=1_700_000_000_000 + 31 * DAY_MS):
            assert await monitor.prune_logs() == 1
        assert [e.message for e in monitor.get_logs()] == ["new"]


class TestExport:
    """Tests for export_logs."""

    @pytest.mark.asyncio
    async def test_csv_escapes_quotes(self, db, clock):
        monitor = _monitor(db)
        entry = await monitor.log_event(LogAction.FAIL, "001", 'column "email" missing, aborting', level=LogLevel.ERROR)

        lines = monitor.export_logs("csv").splitlines()

        assert lines[0] == "id,migrationId,action,timestamp,message,level"
        assert lines[1] == f'{entry.id},001,fail,{entry.timestamp},"column ""email"" missing, aborting",error'

    @pytest.mark.asyncio
    async def test_json(self, db, clock):
        monitor = _monitor(db)
        await monitor.log_event(LogAction.START, "001", "a", {"direction": "up"})
        data = json.loads(monitor.export_logs("json"))
        assert data[0]["migration_id"] == "001"
        assert data[0]["details"] == {"direction": "up"}

    def test_unknown_format(self, db):
        with pytest.raises(ValueError, match="Unsupported export format"):
            _monitor(db).export_logs("xml")


class TestPersistence:
    """Tests for the log table."""

    @pytest.mark.asyncio
    async def test_entries_persisted_and_reloaded(self, db, persistent_monitor, clock):
        await persistent_monitor.log_event(LogAction.START, "001", "start", {"direction": "up"})
        await persistent_monitor.log_event(LogAction.COMPLETE, "001", "done", {"execution_time_ms": 3})

        fresh = MigrationMonitor(db, persistent_monitor.storage, MigrationConfig())
        assert await fresh.load_persisted_logs() == 2
        assert await fresh.load_persisted_logs() == 0
        logs = fresh.get_logs()
        assert [e.message for e in logs] == ["done", "start"]
        assert logs[1].details == {"direction": "up"}

    @pytest.mark.asyncio
    async def test_clear_deletes_rows(self, db, persistent_monitor):
        await persistent_monitor.log_event(LogAction.START, "001", "start")
        await persistent_monitor.clear_logs(migration_id="001")
        rows = await db.query(f"SELECT COUNT(*) AS n FROM {persistent_monitor.table_name}")
        assert rows[0]["n"] == 0

    @pytest.mark.asyncio
    async def test_persist_failure_is_logged_not_raised(self, db):
        """A failing log table write never fails the event."""
        broken = AsyncMock()
        broken.execute.side_effect = OSError("disk full")
        monitor = MigrationMonitor(broken, MigrationStorage(db), MigrationConfig())

        entry = await monitor.log_event(LogAction.START, "001", "start")

        assert monitor.get_logs()[0].id == entry.id

    @pytest.mark.asyncio
    async def test_disabled_persistence_skips_table(self, db):
        monitor = _monitor(db)
        await monitor.ensure_schema()
        assert await monitor.load_persisted_logs() == 0
        rows = await db.query("SELECT name FROM sqlite_master WHERE name = '__migration_logs'")
        assert rows == []


class TestStatsAndHealth:
    """Tests for statistics and health checks."""

    @pytest_asyncio.fixture
    async def monitor(self, db):
        monitor = _monitor(db)
        await monitor.storage.ensure_schema()
        return monitor

    @pytest.mark.asyncio
    async def test_stats(self, monitor, clock):
        await monitor.log_event(LogAction.START, "001", "s")
        await monitor.log_event(LogAction.COMPLETE, "001", "c", {"execution_time_ms": 10})
        await monitor.log_event(LogAction.START, "002", "s")
        await monitor.log_event(LogAction.COMPLETE, "002", "c", {"execution_time_ms": 30})
        await monitor.log_event(LogAction.ROLLBACK, "002", "r", {"execution_time_ms": 4})
        await monitor.log_event(LogAction.ROLLBACK, "001", "skipped", {"skipped": True}, LogLevel.WARN)

        stats = monitor.get_stats()

        assert stats.applied == 2
        assert stats.rolled_back == 1
        assert stats.failed == 0
        assert stats.total == 3
        assert stats.average_execution_time_ms == 20.0
        assert stats.pending == 0

    @pytest.mark.asyncio
    async def test_healthy(self, monitor, clock):
        await monitor.log_event(LogAction.START, "001", "s")
        await monitor.log_event(LogAction.COMPLETE, "001", "c", {"execution_time_ms": 10})

        health = await monitor.health_check()

        assert health.is_healthy
        assert health.issues == []
        assert monitor.last_health_check is health

    @pytest.mark.asyncio
    async def test_failures_and_stuck(self, monitor, clock):
        """One failure out of two attempts trips the failure-rate check."""
        await monitor.log_event(LogAction.START, "001", "s")
        await monitor.log_event(LogAction.COMPLETE, "001", "c", {"execution_time_ms": 10})
        await monitor.log_event(LogAction.START, "002", "s")
        await monitor.log_event(LogAction.FAIL, "002", "f", level=LogLevel.ERROR)
        await monitor.log_event(LogAction.START, "003", "s")

        health = await monitor.health_check()

        assert not health.is_healthy
        assert health.failed_migrations == 1
        assert health.pending_migrations == 1
        assert "1 migrations failed in the last 7 days" in health.issues
        assert "1 migrations appear to be stuck" in health.issues
        assert "High migration failure rate: 50.0%" in health.issues
        assert "Review and resolve failed migrations" in health.recommendations

    @pytest.mark.asyncio
    async def test_restart_after_fail_is_stuck(self, monitor, clock):
        """A start newer than the last terminal event counts as unfinished."""
        await monitor.log_event(LogAction.START, "001", "s")
        await monitor.log_event(LogAction.FAIL, "001", "f", level=LogLevel.ERROR)
        await monitor.log_event(LogAction.START, "001", "s again")

        assert monitor.get_stats().pending == 1

    @pytest.mark.asyncio
    async def test_slow_average_reported(self, monitor, clock):
        await monitor.log_event(LogAction.START, "001", "s")
        await monitor.log_event(LogAction.COMPLETE, "001", "c", {"execution_time_ms": 45000})
        await monitor.log_event(LogAction.START, "002", "s")
        await monitor.log_event(LogAction.COMPLETE, "002", "c", {"execution_time_ms": 35000})

        health = await monitor.health_check()

        assert not health.is_healthy
        assert health.issues == ["Slow migrations detected: average 40000ms"]
        assert health.recommendations == ["Optimize migration SQL or break into smaller migrations"]

    @pytest.mark.asyncio
    async def test_entries_outside_window_ignored(self, monitor, clock):
        """Events older than the stats window count toward neither stats nor health."""
        await monitor.log_event(LogAction.START, "001", "s")
        await monitor.log_event(LogAction.FAIL, "001", "f", level=LogLevel.ERROR)
        await monitor.log_event(LogAction.START, "002", "s")
        await monitor.log_event(LogAction.COMPLETE, "002", "c", {"execution_time_ms": 60000})
        clock.advance(8 * DAY_MS)
        await monitor.log_event(LogAction.START, "003", "s")
        await monitor.log_event(LogAction.COMPLETE, "003", "c", {"execution_time_ms": 10})

        stats = monitor.get_stats()
        health = await monitor.health_check()

        assert (stats.applied, stats.failed, stats.average_execution_time_ms) == (1, 0, 10.0)
        assert health.is_healthy
        assert health.failed_migrations == 0
        assert monitor.get_stats(window_days=30).failed == 1

    @pytest.mark.asyncio
    async def test_connectivity_issue_reported(self, db):
        monitor = _monitor(db)
        monitor.storage.ping = AsyncMock(side_effect=ConnectivityError("refused"))

        health = await monitor.health_check(pending_migrations=2, total_migrations=5)

        assert not health.is_healthy
        assert health.issues == ["Database connectivity issues detected"]
        assert health.pending_migrations == 2
        assert health.total_migrations == 5

    @pytest.mark.asyncio
    async def test_schema_info(self, db, monitor):
        await db.execute("CREATE TABLE IF NOT EXISTS users (id INTEGER PRIMARY KEY); CREATE VIEW v_users AS SELECT id FROM users;")
        info = await monitor.get_schema_info()
        assert "users" in info["tables"]
        assert "__schema_migrations" in info["tables"]
        assert info["views"] == ["v_users"]


class TestPeriodicHealthChecks:
    """Tests for the health-check task."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, db):
        monitor = _monitor(db)
        await monitor.storage.ensure_schema()
        monitor.pending_provider = AsyncMock(return_value=0)

        monitor.start_health_checks(interval_ms=10)
        monitor.start_health_checks(interval_ms=10)
        assert monitor.health_checks_running
        await asyncio.sleep(0.05)
        await monitor.stop_health_checks()

        assert not monitor.health_checks_running
        assert monitor.last_health_check is not None
        assert monitor.pending_provider.await_count >= 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, db):
        monitor = _monitor(db)
        await monitor.stop_health_checks()
        assert not monitor.health_checks_running
