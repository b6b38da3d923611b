"""Observability for migration lifecycle events.

The monitor keeps a bounded in-memory ring buffer of log entries (oldest
evicted first), mirrors them to a log table when persistence is enabled, and
derives statistics and health verdicts from them on demand.
"""

import asyncio
import csv
import io
import json
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

from migrator.core.config import MigrationConfig, validate_identifier
from migrator.core.db.client import DatabaseClient
from migrator.core.errors import StorageError
from migrator.core.migrations.models import (
    LogAction,
    LogLevel,
    LogQuery,
    MigrationHealthCheck,
    MigrationLogEntry,
    MigrationStats,
)
from migrator.core.migrations.storage import MigrationStorage
from migrator.core.migrations.utils import now_ms

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000

FAILURE_RATE_THRESHOLD = 0.1
SLOW_AVERAGE_MS = 30000

TERMINAL_ACTIONS = {LogAction.COMPLETE, LogAction.FAIL, LogAction.ROLLBACK}

CSV_HEADERS = ["id", "migrationId", "action", "timestamp", "message", "level"]

_PYTHON_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _matches(entry: MigrationLogEntry, query: LogQuery) -> bool:
    if query.migration_id is not None and entry.migration_id != query.migration_id:
        return False
    if query.action is not None and entry.action != LogAction(query.action):
        return False
    if query.level is not None and entry.level != LogLevel(query.level):
        return False
    if query.start_time is not None and entry.timestamp < query.start_time:
        return False
    if query.end_time is not None and entry.timestamp > query.end_time:
        return False
    return True


def _build_query(query: LogQuery | None, filters: dict[str, Any]) -> LogQuery:
    if query is None:
        return LogQuery(**filters)
    if filters:
        raise TypeError("Pass either a LogQuery or keyword filters, not both")
    return query


class MigrationMonitor:
    """Structured event log, statistics and health checks."""

    def __init__(
        self,
        db: DatabaseClient,
        storage: MigrationStorage,
        config: MigrationConfig | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        """Initialize monitor.

        Args:
            db: Database handle for the log table and schema catalog.
            storage: Version storage, used for the connectivity probe.
            config: Engine configuration.
            logger: Logger to use instead of the module logger.
        """
        self.db = db
        self.storage = storage
        self.config = config or MigrationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.table_name = validate_identifier(self.config.log_table_name, "log table name")
        self.persist = self.config.enable_logging
        self.max_entries = self.config.max_log_entries
        self._logs: deque[MigrationLogEntry] = deque(maxlen=self.max_entries)
        self._lock = threading.Lock()
        self._health_task: asyncio.Task | None = None
        self._running = False
        self.last_health_check: MigrationHealthCheck | None = None
        self.pending_provider: Callable[[], Awaitable[int]] | None = None

    # Persistence

    async def ensure_schema(self) -> None:
        """Create the log table and its indexes if they do not exist."""
        if not self.persist:
            return
        t = self.table_name
        statements = [
            f"""CREATE TABLE IF NOT EXISTS {t} (
                id TEXT PRIMARY KEY,
                migration_id TEXT NOT NULL,
                action TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                message TEXT NOT NULL,
                details TEXT,
                level TEXT NOT NULL
            )""",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_migration_id ON {t} (migration_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_timestamp ON {t} (timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_action ON {t} (action)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_level ON {t} (level)",
        ]
        try:
            for statement in statements:
                await self.db.execute(statement)
        except Exception as e:
            raise StorageError(f"Could not create log table {t}: {e}", details={"table": t}) from e

    async def _persist(self, entry: MigrationLogEntry) -> None:
        try:
            await self.db.execute(
                f"""INSERT INTO {self.table_name}
                    (id, migration_id, action, timestamp, message, details, level)
                VALUES (:id, :migration_id, :action, :timestamp, :message, :details, :level)
                ON CONFLICT (id) DO UPDATE SET
                    migration_id = excluded.migration_id,
                    action = excluded.action,
                    timestamp = excluded.timestamp,
                    message = excluded.message,
                    details = excluded.details,
                    level = excluded.level""",
                {
                    "id": entry.id,
                    "migration_id": entry.migration_id,
                    "action": entry.action.value,
                    "timestamp": entry.timestamp,
                    "message": entry.message,
                    "details": json.dumps(entry.details, default=str) if entry.details is not None else None,
                    "level": entry.level.value,
                },
            )
        except Exception as e:
            self.logger.error(f"Failed to persist migration log - id={entry.id}, error={e}")

    async def load_persisted_logs(self) -> int:
        """Fill the ring buffer from the log table.

        Loads the newest entries up to the buffer capacity and skips ids that
        are already cached, so repeated calls never duplicate entries.

        Returns:
            Number of entries added.
        """
        if not self.persist:
            return 0
        try:
            rows = await self.db.query(
                f"SELECT * FROM {self.table_name} ORDER BY timestamp DESC LIMIT :limit",
                {"limit": self.max_entries},
            )
        except Exception as e:
            raise StorageError(f"Could not load migration logs: {e}", details={"table": self.table_name}) from e

        with self._lock:
            known = {entry.id for entry in self._logs}
            loaded = [self._row_to_entry(row) for row in rows if row["id"] not in known]
            if not loaded:
                return 0
            merged = sorted([*self._logs, *loaded], key=lambda e: e.timestamp)
            self._logs = deque(merged[-self.max_entries :], maxlen=self.max_entries)
        self.logger.debug(f"Loaded persisted migration logs - count={len(loaded)}")
        return len(loaded)

    @staticmethod
    def _row_to_entry(row: dict[str, Any]) -> MigrationLogEntry:
        details = row.get("details")
        return MigrationLogEntry(
            id=row["id"],
            migration_id=row["migration_id"],
            action=LogAction(row["action"]),
            timestamp=int(row["timestamp"]),
            message=row["message"],
            details=json.loads(details) if details else None,
            level=LogLevel(row["level"]),
        )

    # Events

    async def log_event(
        self,
        action: LogAction | str,
        migration_id: str,
        message: str,
        details: dict[str, Any] | None = None,
        level: LogLevel | str = LogLevel.INFO,
    ) -> MigrationLogEntry:
        """Record a lifecycle event.

        Appends to the ring buffer, writes one line to the logger and, when
        persistence is enabled, upserts the entry into the log table.
        """
        entry = MigrationLogEntry(
            id=str(uuid4()),
            migration_id=migration_id,
            action=LogAction(action),
            timestamp=now_ms(),
            message=message,
            details=details,
            level=LogLevel(level),
        )
        with self._lock:
            self._logs.append(entry)

        self.logger.log(
            _PYTHON_LEVELS[entry.level],
            f"Migration event - action={entry.action.value}, migration={migration_id}, message={message}",
            extra={"migration": entry.to_dict()},
        )
        if self.persist:
            await self._persist(entry)
        return entry

    # Queries

    def _snapshot(self) -> list[MigrationLogEntry]:
        with self._lock:
            return list(self._logs)

    def get_logs(self, query: LogQuery | None = None, **filters: Any) -> list[MigrationLogEntry]:
        """Filter cached entries, newest first, paginated by offset/limit.

        Accepts a LogQuery or its fields as keyword arguments
        (``migration_id``, ``action``, ``level``, ``start_time``, ``end_time``,
        ``limit``, ``offset``).
        """
        query = _build_query(query, filters)
        matched = [e for e in self._snapshot() if _matches(e, query)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        offset = max(query.offset, 0)
        return matched[offset : offset + max(query.limit, 0)]

    def get_migration_logs(self, migration_id: str, limit: int = 100) -> list[MigrationLogEntry]:
        return self.get_logs(migration_id=migration_id, limit=limit)

    def get_recent_logs(self, hours: float = 24, limit: int = 100) -> list[MigrationLogEntry]:
        return self.get_logs(start_time=now_ms() - int(hours * HOUR_MS), limit=limit)

    def get_error_logs(self, limit: int = 50) -> list[MigrationLogEntry]:
        return self.get_logs(level=LogLevel.ERROR, limit=limit)

    async def clear_logs(self, query: LogQuery | None = None, **filters: Any) -> int:
        """Remove matching entries (all entries without filters).

        Pagination fields are ignored. Matching rows are also deleted from the
        log table when persistence is enabled.

        Returns:
            Number of in-memory entries removed.
        """
        query = _build_query(query, filters)
        with self._lock:
            kept = [e for e in self._logs if not _matches(e, query)]
            removed = len(self._logs) - len(kept)
            self._logs = deque(kept, maxlen=self.max_entries)

        if self.persist:
            clauses, params = [], {}
            if query.migration_id is not None:
                clauses.append("migration_id = :migration_id")
                params["migration_id"] = query.migration_id
            if query.action is not None:
                clauses.append("action = :action")
                params["action"] = LogAction(query.action).value
            if query.level is not None:
                clauses.append("level = :level")
                params["level"] = LogLevel(query.level).value
            if query.start_time is not None:
                clauses.append("timestamp >= :start_time")
                params["start_time"] = query.start_time
            if query.end_time is not None:
                clauses.append("timestamp <= :end_time")
                params["end_time"] = query.end_time
            where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            try:
                await self.db.execute(f"DELETE FROM {self.table_name}{where}", params or None)
            except Exception as e:
                raise StorageError(f"Could not clear migration logs: {e}", details={"table": self.table_name}) from e

        self.logger.info(f"Migration logs cleared - removed={removed}")
        return removed

    async def prune_logs(self, older_than_days: int | None = None) -> int:
        """Remove entries older than the retention window."""
        days = older_than_days or self.config.log_retention_days
        return await self.clear_logs(end_time=now_ms() - days * DAY_MS)

    def export_logs(self, format: str = "json", query: LogQuery | None = None, **filters: Any) -> str:
        """Serialize filtered entries as JSON or CSV.

        Args:
            format: "json" or "csv".
            query: Filters (see get_logs).

        Returns:
            Serialized entries, newest first.

        Raises:
            ValueError: If the format is unknown.
        """
        entries = self.get_logs(query, **filters)
        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2, default=str)
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_HEADERS)
            for e in entries:
                writer.writerow([e.id, e.migration_id, e.action.value, e.timestamp, e.message, e.level.value])
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {format}")

    # Statistics and health

    def _window(self, days: int | None = None) -> list[MigrationLogEntry]:
        days = days or self.config.stats_window_days
        since = now_ms() - days * DAY_MS
        return [e for e in self._snapshot() if e.timestamp >= since]

    @staticmethod
    def _unfinished_starts(entries: list[MigrationLogEntry]) -> list[MigrationLogEntry]:
        """Start entries with no terminal entry for the same migration after them."""
        last_terminal: dict[str, int] = {}
        for e in entries:
            if e.action in TERMINAL_ACTIONS:
                last_terminal[e.migration_id] = max(last_terminal.get(e.migration_id, -1), e.timestamp)
        latest_start: dict[str, MigrationLogEntry] = {}
        for e in entries:
            if e.action == LogAction.START:
                current = latest_start.get(e.migration_id)
                if current is None or e.timestamp >= current.timestamp:
                    latest_start[e.migration_id] = e
        return [
            e for mid, e in latest_start.items() if last_terminal.get(mid, -1) < e.timestamp
        ]

    def get_stats(self, window_days: int | None = None) -> MigrationStats:
        """Aggregate lifecycle events over the trailing window (default 7 days)."""
        entries = self._window(window_days)
        completes = [e for e in entries if e.action == LogAction.COMPLETE]
        failed = sum(1 for e in entries if e.action == LogAction.FAIL)
        rolled_back = sum(
            1 for e in entries if e.action == LogAction.ROLLBACK and e.level not in (LogLevel.WARN, LogLevel.ERROR)
        )
        times = [
            e.details["execution_time_ms"]
            for e in completes
            if e.details and isinstance(e.details.get("execution_time_ms"), (int, float))
        ]
        pending = self._unfinished_starts(entries)
        return MigrationStats(
            total=len(completes) + failed + rolled_back,
            applied=len(completes),
            failed=failed,
            rolled_back=rolled_back,
            pending=len(pending),
            average_execution_time_ms=sum(times) / len(times) if times else 0.0,
            last_migration_time=max((e.timestamp for e in completes), default=None),
            oldest_pending_time=min((e.timestamp for e in pending), default=None),
            window_days=window_days or self.config.stats_window_days,
        )

    async def health_check(
        self,
        pending_migrations: int | None = None,
        total_migrations: int | None = None,
    ) -> MigrationHealthCheck:
        """Derive a health verdict from recent events and a connectivity probe.

        Never raises: a failing probe is reported as an issue.

        Args:
            pending_migrations: Known pending count (defaults to unfinished starts).
            total_migrations: Known definition count (defaults to events in the window).
        """
        stats = self.get_stats()
        entries = self._window()
        issues: list[str] = []
        recommendations: list[str] = []

        if stats.failed > 0:
            issues.append(f"{stats.failed} migrations failed in the last {stats.window_days} days")
            recommendations.append("Review and resolve failed migrations")

        stuck = self._unfinished_starts(entries)
        if stuck:
            issues.append(f"{len(stuck)} migrations appear to be stuck")
            recommendations.append("Check for stuck migrations and restart if necessary")

        completed = sum(1 for e in entries if e.action == LogAction.COMPLETE)
        attempted = completed + stats.failed
        failure_rate = stats.failed / attempted if attempted else 0.0
        if failure_rate > FAILURE_RATE_THRESHOLD:
            issues.append(f"High migration failure rate: {failure_rate * 100:.1f}%")
            recommendations.append("Investigate root causes of migration failures")

        if stats.average_execution_time_ms > SLOW_AVERAGE_MS:
            issues.append(f"Slow migrations detected: average {stats.average_execution_time_ms:.0f}ms")
            recommendations.append("Optimize migration SQL or break into smaller migrations")

        try:
            await self.storage.ping()
        except Exception as e:
            self.logger.error(f"Health check connectivity probe failed - error={e}")
            issues.append("Database connectivity issues detected")
            recommendations.append("Check database connection and credentials")

        result = MigrationHealthCheck(
            is_healthy=not issues,
            last_migration_time=stats.last_migration_time,
            pending_migrations=stats.pending if pending_migrations is None else pending_migrations,
            failed_migrations=stats.failed,
            total_migrations=stats.total if total_migrations is None else total_migrations,
            issues=issues,
            recommendations=recommendations,
        )
        self.last_health_check = result
        return result

    async def get_schema_info(self) -> dict[str, list[str]]:
        """List tables, views, indexes and triggers of the target database.

        Reads ``sqlite_master`` on SQLite and ``information_schema`` elsewhere
        (indexes and triggers are only listed for SQLite).
        """
        catalog: dict[str, list[str]] = {"tables": [], "views": [], "indexes": [], "triggers": []}
        dialect = getattr(self.db, "dialect", "sqlite")
        try:
            if dialect == "sqlite":
                rows = await self.db.query(
                    "SELECT type, name FROM sqlite_master WHERE name NOT LIKE 'sqlite_%' ORDER BY name", None
                )
                keys = {"table": "tables", "view": "views", "index": "indexes", "trigger": "triggers"}
                for row in rows:
                    key = keys.get(row["type"])
                    if key:
                        catalog[key].append(row["name"])
            else:
                rows = await self.db.query(
                    "SELECT table_name, table_type FROM information_schema.tables "
                    "WHERE table_schema NOT IN ('pg_catalog', 'information_schema') ORDER BY table_name",
                    None,
                )
                for row in rows:
                    key = "views" if row["table_type"] == "VIEW" else "tables"
                    catalog[key].append(row["table_name"])
        except Exception as e:
            raise StorageError(f"Could not read schema catalog: {e}") from e
        return catalog

    # Periodic health checks

    async def _health_loop(self, interval_seconds: float) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval_seconds)
                pending = await self.pending_provider() if self.pending_provider else None
                result = await self.health_check(pending_migrations=pending)
                if result.is_healthy:
                    self.logger.debug("Periodic migration health check passed")
                else:
                    self.logger.warning(f"Periodic migration health check failed - issues={'; '.join(result.issues)}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in periodic health check: {e}", exc_info=True)

    def start_health_checks(self, interval_ms: int | None = None) -> None:
        """Start the periodic health-check task on the running event loop."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._running = True
        interval = (interval_ms or self.config.health_check_interval) / 1000
        self._health_task = asyncio.create_task(self._health_loop(interval))
        self.logger.info(f"Periodic health checks started - interval_s={interval}")

    async def stop_health_checks(self) -> None:
        """Stop the periodic health-check task."""
        self._running = False
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def health_checks_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()
