"""Schema migration engine: storage, validation, execution, monitoring and hooks."""

from migrator.core.migrations.hooks import (
    AbortMigration,
    HookEvent,
    HookRegistry,
    create_backup_hook,
    create_circuit_breaker_hook,
    create_completion_logging_hook,
    create_environment_guard_hook,
    create_logging_hook,
    create_performance_hook,
)
from migrator.core.migrations.models import (
    LogAction,
    LogLevel,
    LogQuery,
    Migration,
    MigrationContext,
    MigrationHealthCheck,
    MigrationLogEntry,
    MigrationPlan,
    MigrationRecord,
    MigrationResult,
    MigrationStats,
    MigrationStatus,
    RollbackOptions,
    RunOptions,
    ValidateOptions,
    create_migration,
)
from migrator.core.migrations.monitor import MigrationMonitor
from migrator.core.migrations.reporter import MigrationReporter
from migrator.core.migrations.runner import MigrationRunner
from migrator.core.migrations.service import MigrationService
from migrator.core.migrations.storage import MigrationStorage
from migrator.core.migrations.system import MigrationSystem, create_migration_system
from migrator.core.migrations.validator import MigrationValidator

__all__ = [
    "create_migration_system",
    "MigrationSystem",
    "MigrationService",
    "MigrationRunner",
    "MigrationValidator",
    "MigrationStorage",
    "MigrationMonitor",
    "MigrationReporter",
    "HookRegistry",
    "HookEvent",
    "AbortMigration",
    "create_logging_hook",
    "create_completion_logging_hook",
    "create_backup_hook",
    "create_environment_guard_hook",
    "create_performance_hook",
    "create_circuit_breaker_hook",
    "Migration",
    "create_migration",
    "MigrationRecord",
    "MigrationStatus",
    "MigrationPlan",
    "MigrationResult",
    "MigrationLogEntry",
    "MigrationStats",
    "MigrationHealthCheck",
    "MigrationContext",
    "LogAction",
    "LogLevel",
    "LogQuery",
    "RunOptions",
    "RollbackOptions",
    "ValidateOptions",
]
