"""Version-history persistence."""

import logging
from typing import Any

from migrator.core.config import DEFAULT_TABLE_NAME, validate_identifier
from migrator.core.db.client import DatabaseClient, ExecuteOutcome
from migrator.core.errors import ConnectivityError, DriverError, SchemaCorruptionError, StorageError
from migrator.core.migrations.models import MigrationRecord, MigrationStatus
from migrator.core.migrations.utils import now_ms, version_key


class MigrationStorage:
    """Reads and writes rows of the version table.

    Every write is keyed by version, so repeating a write after a partial
    failure leaves the table in the same state. Any driver failure surfaces as
    ``StorageError``.
    """

    def __init__(
        self,
        db: DatabaseClient,
        table_name: str = DEFAULT_TABLE_NAME,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        """Initialize storage.

        Args:
            db: Database handle.
            table_name: Version table name (checked against the identifier allow-list).
            logger: Logger to use instead of the module logger.
        """
        self.db = db
        self.table_name = validate_identifier(table_name)
        self.logger = logger or logging.getLogger(__name__)

    async def _execute(self, sql: str, params: dict[str, Any] | None, operation: str) -> ExecuteOutcome:
        try:
            return await self.db.execute(sql, params)
        except StorageError:
            raise
        except Exception as e:
            self.logger.error(f"Storage write failed - operation={operation}, table={self.table_name}, error={e}")
            raise self._wrap(e, operation) from e

    async def _query(self, sql: str, params: dict[str, Any] | None, operation: str) -> list[dict[str, Any]]:
        try:
            return await self.db.query(sql, params)
        except StorageError:
            raise
        except Exception as e:
            self.logger.error(f"Storage read failed - operation={operation}, table={self.table_name}, error={e}")
            raise self._wrap(e, operation) from e

    def _wrap(self, error: Exception, operation: str) -> StorageError:
        details = {"operation": operation, "table": self.table_name}
        if isinstance(error, DriverError) and error.transient or isinstance(error, (ConnectionError, OSError)):
            return ConnectivityError(f"Database unreachable during {operation}: {error}", details=details)
        return StorageError(f"Storage operation {operation} failed: {error}", details=details)

    async def ensure_schema(self) -> None:
        """Create the version table and its indexes if they do not exist."""
        t = self.table_name
        statements = [
            f"""CREATE TABLE IF NOT EXISTS {t} (
                version TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at INTEGER NOT NULL,
                status TEXT NOT NULL,
                execution_time_ms INTEGER,
                error TEXT
            )""",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_applied_at ON {t} (applied_at)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_status ON {t} (status)",
        ]
        for statement in statements:
            await self._execute(statement, None, "ensure_schema")
        self.logger.debug(f"Version table ready - table={t}")

    async def table_exists(self) -> bool:
        """Check for the version table without creating it."""
        if getattr(self.db, "dialect", "sqlite") == "sqlite":
            sql = "SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"
        else:
            sql = "SELECT table_name FROM information_schema.tables WHERE table_name = :name"
        rows = await self._query(sql, {"name": self.table_name}, "table_exists")
        return bool(rows)

    async def record_start(self, version: str, name: str, checksum: str) -> None:
        """Insert or reset the row for a version with status ``running``."""
        await self._execute(
            f"""INSERT INTO {self.table_name}
                (version, name, checksum, applied_at, status, execution_time_ms, error)
            VALUES (:version, :name, :checksum, :applied_at, :status, NULL, NULL)
            ON CONFLICT (version) DO UPDATE SET
                name = excluded.name,
                checksum = excluded.checksum,
                applied_at = excluded.applied_at,
                status = excluded.status,
                execution_time_ms = NULL,
                error = NULL""",
            {
                "version": version,
                "name": name,
                "checksum": checksum,
                "applied_at": now_ms(),
                "status": MigrationStatus.RUNNING.value,
            },
            "record_start",
        )

    async def record_complete(self, version: str, execution_time_ms: int, checksum: str | None = None) -> None:
        """Mark a version completed with its measured execution time."""
        params = {
            "version": version,
            "status": MigrationStatus.COMPLETED.value,
            "execution_time_ms": int(execution_time_ms),
            "applied_at": now_ms(),
        }
        checksum_clause = ""
        if checksum is not None:
            checksum_clause = ", checksum = :checksum"
            params["checksum"] = checksum
        await self._update(
            f"""UPDATE {self.table_name}
            SET status = :status, execution_time_ms = :execution_time_ms,
                applied_at = :applied_at, error = NULL{checksum_clause}
            WHERE version = :version""",
            params,
            "record_complete",
        )

    async def record_failure(self, version: str, error: str, execution_time_ms: int | None = None) -> None:
        """Mark a version failed with its error message."""
        await self._update(
            f"""UPDATE {self.table_name}
            SET status = :status, error = :error, execution_time_ms = :execution_time_ms
            WHERE version = :version""",
            {
                "version": version,
                "status": MigrationStatus.FAILED.value,
                "error": error,
                "execution_time_ms": execution_time_ms,
            },
            "record_failure",
        )

    async def record_rollback(self, version: str) -> None:
        """Mark a completed version rolled back."""
        await self._update(
            f"UPDATE {self.table_name} SET status = :status, error = NULL WHERE version = :version",
            {"version": version, "status": MigrationStatus.ROLLED_BACK.value},
            "record_rollback",
        )

    async def _update(self, sql: str, params: dict[str, Any], operation: str) -> None:
        outcome = await self._execute(sql, params, operation)
        if outcome is not None and outcome.rowcount == 0 and await self.get_record(params["version"]) is None:
            raise SchemaCorruptionError(
                f"No version row for {params['version']} during {operation}",
                details={"version": params["version"], "operation": operation, "table": self.table_name},
            )

    async def get_record(self, version: str) -> MigrationRecord | None:
        rows = await self._query(
            f"SELECT * FROM {self.table_name} WHERE version = :version",
            {"version": version},
            "get_record",
        )
        return self._to_record(rows[0]) if rows else None

    async def get_records(self) -> list[MigrationRecord]:
        """Get every version row, ascending by version."""
        rows = await self._query(f"SELECT * FROM {self.table_name}", None, "get_records")
        records = [self._to_record(row) for row in rows]
        return sorted(records, key=lambda r: version_key(r.version))

    async def get_applied_versions(self) -> list[str]:
        """Get versions whose status is ``completed``, ascending."""
        rows = await self._query(
            f"SELECT version FROM {self.table_name} WHERE status = :status",
            {"status": MigrationStatus.COMPLETED.value},
            "get_applied_versions",
        )
        return sorted((row["version"] for row in rows), key=version_key)

    async def get_latest_version(self) -> str | None:
        """Get the highest completed version, or None."""
        applied = await self.get_applied_versions()
        return applied[-1] if applied else None

    async def get_history(self, limit: int = 50) -> list[MigrationRecord]:
        """Get the most recently touched version rows, newest first."""
        rows = await self._query(
            f"SELECT * FROM {self.table_name} ORDER BY applied_at DESC, version DESC LIMIT :limit",
            {"limit": max(int(limit), 0)},
            "get_history",
        )
        return [self._to_record(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._query(
            f"SELECT status, COUNT(*) AS total FROM {self.table_name} GROUP BY status",
            None,
            "count_by_status",
        )
        counts = {status.value: 0 for status in MigrationStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    async def ping(self) -> bool:
        """Trivial connectivity probe.

        Raises:
            ConnectivityError: If the probe query fails.
        """
        try:
            await self.db.query("SELECT 1 AS ok", None)
        except Exception as e:
            raise ConnectivityError(f"Connectivity probe failed: {e}") from e
        return True

    def _to_record(self, row: dict[str, Any]) -> MigrationRecord:
        try:
            return MigrationRecord.from_row(row)
        except (KeyError, ValueError) as e:
            raise SchemaCorruptionError(
                f"Unexpected row in {self.table_name}: {e}",
                details={"row": {k: str(v) for k, v in row.items()}},
            ) from e
