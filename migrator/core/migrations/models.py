"""Data models for migration definitions, records, plans and results."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from migrator.core.errors import MigrationError
from migrator.core.migrations.utils import calculate_checksum, estimate_execution_time, now_ms


class MigrationStatus(str, Enum):
    """Lifecycle state of a version in the version table."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class LogAction(str, Enum):
    """Kind of lifecycle event recorded by the monitor."""

    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"
    ROLLBACK = "rollback"
    VALIDATE = "validate"


class LogLevel(str, Enum):
    """Severity of a monitor log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class Migration(BaseModel):
    """A versioned pair of up/down scripts.

    Immutable once built. ``checksum`` is always derived from ``up`` and
    ``down``; a value passed in is replaced.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    name: str
    description: str | None = None
    up: str
    down: str | None = None
    checksum: str = ""
    dependencies: tuple[str, ...] = ()
    created_at: int = Field(default_factory=now_ms)
    source: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _derive_checksum(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            down = data.get("down") or None
            data["down"] = down
            data["checksum"] = calculate_checksum(data.get("up", ""), down)
            deps = data.get("dependencies") or ()
            data["dependencies"] = tuple(deps)
        return data

    @property
    def id(self) -> str:
        return f"{self.version}_{self.name}"

    @property
    def has_down(self) -> bool:
        return bool(self.down and self.down.strip())


def create_migration(
    version: str,
    name: str,
    up: str,
    down: str | None = None,
    description: str | None = None,
    dependencies: list[str] | None = None,
) -> Migration:
    """Convenience constructor for in-code migration definitions."""
    return Migration(
        version=version,
        name=name,
        up=up,
        down=down,
        description=description,
        dependencies=dependencies or [],
    )


@dataclass
class MigrationRecord:
    """One row of the version table."""

    version: str
    name: str
    checksum: str
    status: MigrationStatus
    applied_at: int
    execution_time_ms: int | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MigrationRecord":
        return cls(
            version=row["version"],
            name=row["name"],
            checksum=row["checksum"],
            status=MigrationStatus(row["status"]),
            applied_at=int(row["applied_at"] or 0),
            execution_time_ms=row.get("execution_time_ms"),
            error=row.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class MigrationPlan:
    """Ordered migrations to execute plus blocking errors and warnings."""

    migrations: list[Migration] = field(default_factory=list)
    errors: list[MigrationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    direction: str = "up"
    dry_run: bool = False
    target_version: str | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def versions(self) -> list[str]:
        return [m.version for m in self.migrations]

    def summary(self) -> str:
        """Human-readable description of what the plan would do."""
        verb = "apply" if self.direction == "up" else "roll back"
        lines = [f"Plan to {verb} {len(self.migrations)} migration(s)"]
        total = 0
        for migration in self.migrations:
            estimate = estimate_execution_time(migration)
            total += estimate
            lines.append(f"  {migration.version} {migration.name} (~{estimate}ms)")
        lines.append(f"Estimated total: {total}ms")
        if self.warnings:
            lines.append(f"Warnings ({len(self.warnings)}):")
            lines.extend(f"  - {w}" for w in self.warnings)
        if self.errors:
            lines.append(f"Errors ({len(self.errors)}):")
            lines.extend(f"  - [{e.code}] {e}" for e in self.errors)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "dry_run": self.dry_run,
            "target_version": self.target_version,
            "migrations": [{"version": m.version, "name": m.name, "checksum": m.checksum} for m in self.migrations],
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "is_valid": self.is_valid,
        }


@dataclass
class MigrationResult:
    """Outcome of applying or rolling back one migration."""

    version: str
    success: bool
    execution_time_ms: int = 0
    error: str | None = None
    error_code: str | None = None
    name: str | None = None
    direction: str = "up"
    skipped: bool = False
    estimated: bool = False
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MigrationLogEntry:
    """A single monitor event."""

    id: str
    migration_id: str
    action: LogAction
    timestamp: int
    message: str
    level: LogLevel = LogLevel.INFO
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "migration_id": self.migration_id,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "message": self.message,
            "details": self.details,
            "level": self.level.value,
        }


@dataclass
class MigrationStats:
    """Aggregates over the monitoring window."""

    total: int = 0
    applied: int = 0
    failed: int = 0
    rolled_back: int = 0
    pending: int = 0
    average_execution_time_ms: float = 0.0
    last_migration_time: int | None = None
    oldest_pending_time: int | None = None
    window_days: int = 7

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MigrationHealthCheck:
    """Derived health verdict; never persisted."""

    is_healthy: bool
    last_migration_time: int | None = None
    pending_migrations: int = 0
    failed_migrations: int = 0
    total_migrations: int = 0
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    checked_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunOptions:
    """Options for applying migrations."""

    dry_run: bool = False
    force: bool = False
    stop_on_first_error: bool = True
    target_version: str | None = None
    timeout: int | None = None
    retries: int | None = None


@dataclass
class RollbackOptions:
    """Options for rolling back migrations.

    ``to`` rolls back every applied version greater than it; ``steps`` rolls
    back the last N applied versions. With neither, the latest one is rolled back.
    """

    to: str | None = None
    steps: int | None = None
    dry_run: bool = False
    force: bool = False
    stop_on_first_error: bool = True
    timeout: int | None = None
    retries: int | None = None


@dataclass
class ValidateOptions:
    """Options for validation-only runs."""

    force: bool = False
    check_applied: bool = True


@dataclass
class LogQuery:
    """Filters for monitor log queries. Times are epoch milliseconds."""

    migration_id: str | None = None
    action: LogAction | str | None = None
    level: LogLevel | str | None = None
    start_time: int | None = None
    end_time: int | None = None
    limit: int = 100
    offset: int = 0


@dataclass
class MigrationContext:
    """What a hook receives.

    ``db`` is the execution handle the migration runs against.
    """

    migration: Migration | None
    action: str
    dry_run: bool = False
    force: bool = False
    start_time: int = field(default_factory=now_ms)
    attempt: int = 0
    db: Any = None
    result: MigrationResult | None = None
    error: BaseException | None = None
    plan: MigrationPlan | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
