"""Migration service facade.

Composes storage, validator, runner, monitor and the hook registry behind
the operations used by deployment scripts, the CLI and the HTTP router.
"""

import asyncio
import dataclasses
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from migrator.core.config import MigrationConfig
from migrator.core.db.client import DatabaseClient
from migrator.core.errors import PlanValidationError, RollbackDisabledError, StorageError
from migrator.core.logging import LevelFilterAdapter
from migrator.core.migrations.hooks import HookEvent, HookHandler, HookRegistry
from migrator.core.migrations.loader import load_migrations
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
    RollbackOptions,
    RunOptions,
    ValidateOptions,
)
from migrator.core.migrations.monitor import MigrationMonitor
from migrator.core.migrations.runner import MigrationRunner
from migrator.core.migrations.storage import MigrationStorage
from migrator.core.migrations.validator import MigrationValidator

OptionsT = TypeVar("OptionsT")

PLAN_LOG_ID = "plan"


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def coerce_options(cls: type[OptionsT], options: OptionsT | Mapping[str, Any] | None, overrides: dict[str, Any]) -> OptionsT:
    """Build an options dataclass from an instance, a mapping and/or keyword overrides.

    Mapping keys may be snake_case or camelCase (``stopOnFirstError``).
    """
    values: dict[str, Any] = {}
    if isinstance(options, Mapping):
        values.update({_snake(k): v for k, v in options.items()})
        options = None
    values.update({_snake(k): v for k, v in overrides.items()})
    if options is None:
        return cls(**values)
    return dataclasses.replace(options, **values) if values else options


class MigrationService:
    """Orchestrates migrations for one target database."""

    def __init__(
        self,
        db: DatabaseClient,
        config: MigrationConfig | Mapping[str, Any] | None = None,
        migrations: Iterable[Migration] | None = None,
    ):
        """Initialize service.

        Args:
            db: Database handle.
            config: Engine configuration (a mapping is validated into MigrationConfig).
            migrations: Explicit definitions; loaded from ``config.migrations_path`` when omitted.
        """
        if config is None:
            config = MigrationConfig()
        elif not isinstance(config, MigrationConfig):
            config = MigrationConfig(**config)
        self.config = config
        self.db = db
        self.logger = config.logger or LevelFilterAdapter(logging.getLogger(__name__), config.python_log_level)

        self.hooks = HookRegistry(logger=self.logger)
        if config.hooks:
            self.hooks.set_hooks(config.hooks)

        self.storage = MigrationStorage(db, config.table_name, logger=self.logger)
        self.validator = MigrationValidator(
            self.storage,
            validate_checksums=config.validate_checksums,
            require_rollback=config.require_rollback,
            logger=self.logger,
        )
        self.runner = MigrationRunner(db, self.storage, self.validator, self.hooks, config, logger=self.logger)
        self.monitor = MigrationMonitor(db, self.storage, config, logger=self.logger)
        self.runner.add_listener(self.monitor.log_event)
        self.monitor.pending_provider = self.count_pending

        self._migrations = list(migrations) if migrations is not None else None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # Definitions

    def get_migrations(self) -> list[Migration]:
        """Known definitions: the explicit list, or the files under ``migrations_path``."""
        if self._migrations is not None:
            return list(self._migrations)
        return load_migrations(self.config.migrations_path)

    def set_migrations(self, migrations: Iterable[Migration]) -> None:
        self._migrations = list(migrations)

    # Lifecycle

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the version and log tables and load persisted logs.

        Safe to call repeatedly; later calls do nothing.
        """
        async with self._init_lock:
            if self._initialized:
                return
            await self.storage.ensure_schema()
            await self.monitor.ensure_schema()
            loaded = await self.monitor.load_persisted_logs()
            if self.config.enable_health_checks:
                self.monitor.start_health_checks()
            self._initialized = True
            self.logger.info(
                f"Migration service initialized - table={self.config.table_name}, persisted_logs={loaded}"
            )

    async def cleanup(self) -> int:
        """Stop the health-check timer and prune logs past the retention window.

        Returns:
            Number of log entries removed.
        """
        await self.monitor.stop_health_checks()
        removed = await self.monitor.prune_logs(self.config.log_retention_days)
        self.logger.info(f"Migration service cleanup - pruned_logs={removed}")
        return removed

    # Operations

    async def _prepare(self, read_only: bool) -> dict[str, MigrationRecord] | None:
        """Bootstrap storage before a write; read-only calls never create tables.

        Returns:
            An empty record map when a read-only call finds no version table,
            otherwise None so records are read from storage.
        """
        if not read_only:
            await self.initialize()
            return None
        if self._initialized or await self.storage.table_exists():
            return None
        return {}

    async def _validation_failed(self, plan: MigrationPlan) -> PlanValidationError:
        error = PlanValidationError(plan)
        context = MigrationContext(migration=None, action="validate", plan=plan, error=error, db=self.db)
        await self.hooks.run(HookEvent.ON_VALIDATION_ERROR, context)
        await self.monitor.log_event(
            LogAction.VALIDATE,
            PLAN_LOG_ID,
            error.message,
            {"errors": [e.to_dict() for e in plan.errors], "direction": plan.direction},
            LogLevel.ERROR,
        )
        return error

    def _log_warnings(self, plan: MigrationPlan) -> None:
        for warning in plan.warnings:
            self.logger.warning(f"Migration plan warning - {warning}")

    async def get_migration_plan(self, options: RunOptions | Mapping[str, Any] | None = None, **kwargs: Any) -> MigrationPlan:
        """Build the apply plan without executing anything."""
        options = coerce_options(RunOptions, options, kwargs)
        records = await self._prepare(read_only=True)
        return await self.validator.build_plan(self.get_migrations(), options, records=records)

    async def get_rollback_plan(
        self, options: RollbackOptions | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> MigrationPlan:
        """Build the rollback plan without executing anything."""
        options = coerce_options(RollbackOptions, options, kwargs)
        records = await self._prepare(read_only=True)
        return await self.validator.build_rollback_plan(self.get_migrations(), options, records=records)

    async def run_migrations(
        self, options: RunOptions | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> list[MigrationResult]:
        """Apply pending migrations.

        Args:
            options: RunOptions, a mapping of its fields, or keyword arguments
                (``dry_run``, ``force``, ``stop_on_first_error``, ``target_version``,
                ``timeout``, ``retries``).

        Returns:
            One result per attempted migration, including failures.

        Raises:
            PlanValidationError: If validation found blocking errors (nothing ran).
            StorageError: If the version table could not be written.
        """
        options = coerce_options(RunOptions, options, kwargs)
        records = await self._prepare(read_only=options.dry_run)
        migrations = self.get_migrations()
        plan = await self.validator.build_plan(migrations, options, records=records)
        if not plan.is_valid:
            raise await self._validation_failed(plan)
        self._log_warnings(plan)

        results = await self.runner.run(migrations, options, plan=plan)
        failed = sum(1 for r in results if not r.success)
        self.logger.info(
            f"Migration run finished - attempted={len(results)}, failed={failed}, dry_run={options.dry_run}"
        )
        return results

    async def rollback_migrations(
        self, options: RollbackOptions | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> list[MigrationResult]:
        """Roll back applied migrations, highest version first.

        Args:
            options: RollbackOptions, a mapping of its fields, or keyword arguments
                (``to``, ``steps``, ``dry_run``, ``force``, ``stop_on_first_error``).

        Raises:
            RollbackDisabledError: If rollback is disabled in the configuration.
            PlanValidationError: If validation found blocking errors.
            StorageError: If the version table could not be written.
        """
        if not self.config.enable_rollback:
            raise RollbackDisabledError("Rollback is disabled by configuration (enable_rollback=False)")
        options = coerce_options(RollbackOptions, options, kwargs)
        records = await self._prepare(read_only=options.dry_run)
        migrations = self.get_migrations()
        plan = await self.validator.build_rollback_plan(migrations, options, records=records)
        if not plan.is_valid:
            raise await self._validation_failed(plan)
        self._log_warnings(plan)

        results = await self.runner.rollback(migrations, options, plan=plan)
        failed = sum(1 for r in results if not r.success)
        self.logger.info(f"Rollback finished - attempted={len(results)}, failed={failed}, dry_run={options.dry_run}")
        return results

    async def validate_migrations(
        self, options: ValidateOptions | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> MigrationPlan:
        """Validate definitions against each other and the version table.

        Returns the plan instead of raising; ``plan.is_valid`` tells the outcome.
        Validation errors still fire ``ON_VALIDATION_ERROR`` hooks.
        """
        await self.initialize()
        options = coerce_options(ValidateOptions, options, kwargs)
        records = None if options.check_applied else {}
        plan = await self.validator.build_plan(
            self.get_migrations(), RunOptions(dry_run=True, force=options.force), records=records
        )
        if plan.is_valid:
            await self.monitor.log_event(
                LogAction.VALIDATE,
                PLAN_LOG_ID,
                f"Validation passed: {len(plan.migrations)} pending, {len(plan.warnings)} warning(s)",
                {"pending": plan.versions, "warnings": plan.warnings},
            )
        else:
            await self._validation_failed(plan)
        return plan

    async def count_pending(self) -> int:
        applied = set(await self.storage.get_applied_versions())
        return sum(1 for m in self.get_migrations() if m.version not in applied)

    async def health_check(self) -> MigrationHealthCheck:
        """Health verdict from recent events, pending definitions and a connectivity probe.

        Never raises; storage problems are reported as issues.
        """
        try:
            pending = await self.count_pending()
        except StorageError as e:
            self.logger.error(f"Could not count pending migrations - error={e}")
            pending = None
        total = len(self.get_migrations())
        return await self.monitor.health_check(pending_migrations=pending, total_migrations=total)

    async def get_stats(self) -> MigrationStats:
        stats = self.monitor.get_stats()
        try:
            stats.pending = await self.count_pending()
        except StorageError as e:
            self.logger.error(f"Could not count pending migrations - error={e}")
        return stats

    def get_logs(self, options: LogQuery | Mapping[str, Any] | None = None, **kwargs: Any) -> list[MigrationLogEntry]:
        return self.monitor.get_logs(coerce_options(LogQuery, options, kwargs))

    async def get_history(self, limit: int = 50) -> list[MigrationRecord]:
        await self.initialize()
        return await self.storage.get_history(limit)

    def set_hooks(self, hooks: Mapping[HookEvent | str, HookHandler | Iterable[HookHandler]], replace: bool = True) -> None:
        """Install hook handlers (see HookRegistry.set_hooks)."""
        self.hooks.set_hooks(hooks, replace=replace)
