"""Migration execution engine.

Applies and rolls back migrations against the live database, one at a time,
recording each transition in storage and emitting lifecycle events that the
monitor (or any other listener) consumes.

Scripts run under a per-attempt timeout. A timed-out statement may still be
running on the server, so a retry can execute a script twice: scripts must
be idempotent (``CREATE TABLE IF NOT EXISTS``...).
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from migrator.core.config import MigrationConfig
from migrator.core.db.client import DatabaseClient
from migrator.core.errors import (
    DriverError,
    HookAbortedError,
    MigrationError,
    MissingDependencyError,
    MissingDownScriptError,
    PlanValidationError,
    StorageError,
)
from migrator.core.migrations.hooks import HookEvent, HookRegistry
from migrator.core.migrations.models import (
    LogAction,
    LogLevel,
    Migration,
    MigrationContext,
    MigrationPlan,
    MigrationResult,
    RollbackOptions,
    RunOptions,
)
from migrator.core.migrations.retry import RetryHandler
from migrator.core.migrations.storage import MigrationStorage
from migrator.core.migrations.utils import estimate_execution_time
from migrator.core.migrations.validator import MigrationValidator

EventListener = Callable[[LogAction, str, str, dict[str, Any] | None, LogLevel], Awaitable[Any] | Any]


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


class MigrationRunner:
    """Executes validated plans."""

    def __init__(
        self,
        db: DatabaseClient,
        storage: MigrationStorage,
        validator: MigrationValidator,
        hooks: HookRegistry | None = None,
        config: MigrationConfig | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        """Initialize runner.

        Args:
            db: Database handle scripts are executed against.
            storage: Version storage.
            validator: Plan builder.
            hooks: Hook registry (a private empty one when omitted).
            config: Engine configuration.
            logger: Logger to use instead of the module logger.
        """
        self.db = db
        self.storage = storage
        self.validator = validator
        self.hooks = hooks or HookRegistry(logger=logger)
        self.config = config or MigrationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_migrations)
        self._listeners: list[EventListener] = []

    # Events

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(
        self,
        action: LogAction,
        migration_id: str,
        message: str,
        details: dict[str, Any] | None = None,
        level: LogLevel = LogLevel.INFO,
    ) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(action, migration_id, message, details, level)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Event listener failed - action={action.value}, migration={migration_id}, error={e}")

    # Apply

    async def run(
        self,
        migrations: Iterable[Migration],
        options: RunOptions | None = None,
        plan: MigrationPlan | None = None,
    ) -> list[MigrationResult]:
        """Apply every pending migration in plan order.

        Args:
            migrations: Every known definition (ignored when ``plan`` is given).
            options: Run options.
            plan: Pre-built plan; built with the validator when omitted.

        Returns:
            One result per attempted migration, in execution order.

        Raises:
            PlanValidationError: If the plan has blocking errors.
            StorageError: If the version table cannot be written; ``error.results``
                holds the results collected before the failure.
        """
        options = options or RunOptions()
        if plan is None:
            plan = await self.validator.build_plan(migrations, options)
        if not plan.is_valid:
            raise PlanValidationError(plan)

        if options.dry_run:
            return self.simulate(plan)

        if not plan.migrations:
            self.logger.info("No pending migrations")
            return []

        self.logger.info(f"Applying migrations - count={len(plan.migrations)}, versions={','.join(plan.versions)}")
        if self.config.enable_batch_mode and hasattr(self.db, "transaction"):
            return await self._run_batch(plan, options)

        results: list[MigrationResult] = []
        failed: set[str] = set()
        for migration in plan.migrations:
            blocked = [d for d in migration.dependencies if d in failed]
            try:
                if blocked:
                    result = await self._skip_blocked(migration, blocked, options)
                else:
                    result = await self.apply_migration(migration, options)
            except StorageError as e:
                e.results = results
                raise
            results.append(result)
            if not result.success:
                failed.add(migration.version)
            if not result.success and options.stop_on_first_error:
                self.logger.warning(f"Stopping after failed migration - version={migration.version}")
                break
        return results

    async def apply_migration(self, migration: Migration, options: RunOptions | None = None) -> MigrationResult:
        """Apply a single migration and record its outcome."""
        options = options or RunOptions()
        v = migration.version
        context = MigrationContext(migration=migration, action="up", force=options.force, db=self.db)

        async with self._semaphore:
            abort = await self.hooks.run(HookEvent.BEFORE_MIGRATION, context, allow_abort=True)
            if abort is not None:
                error = HookAbortedError(f"Migration {v} aborted by hook: {abort.reason}", version=v)
                return await self._fail(migration, context, error, 0, 0, record=False)

            await self.hooks.run(HookEvent.ON_MIGRATION_START, context)
            await self.storage.record_start(v, migration.name, migration.checksum)
            await self._emit(LogAction.START, v, f"Starting migration {v} ({migration.name})", {"direction": "up"})

            handler = self._retry_handler(options.timeout, options.retries)
            started = time.perf_counter()
            try:
                await handler.run(lambda: self.db.execute(migration.up), f"Migration {v}", v)
            except Exception as e:
                return await self._fail(migration, context, self._as_error(e, v), _elapsed_ms(started), handler.attempts)

            elapsed = _elapsed_ms(started)
            await self.storage.record_complete(v, elapsed, migration.checksum)
            result = MigrationResult(
                version=v,
                name=migration.name,
                success=True,
                execution_time_ms=elapsed,
                attempts=handler.attempts,
            )
            context.result = result
            await self.hooks.run(HookEvent.AFTER_MIGRATION, context)
            await self.hooks.run(HookEvent.ON_MIGRATION_COMPLETE, context)
            await self._emit(
                LogAction.COMPLETE,
                v,
                f"Migration {v} completed in {elapsed}ms",
                {"execution_time_ms": elapsed, "attempts": handler.attempts, "direction": "up"},
            )
            return result

    async def _skip_blocked(self, migration: Migration, blocked: list[str], options: RunOptions) -> MigrationResult:
        """Fail a migration whose dependency failed earlier in the same run, without executing it."""
        v = migration.version
        self.logger.warning(f"Skipping migration with failed dependency - version={v}, dependencies={','.join(blocked)}")
        context = MigrationContext(migration=migration, action="up", force=options.force, db=self.db)
        error = MissingDependencyError(
            f"Migration {v} skipped: dependency {', '.join(blocked)} failed",
            version=v,
            details={"failed_dependencies": blocked},
        )
        return await self._fail(migration, context, error, 0, 0, record=False)

    async def _fail(
        self,
        migration: Migration,
        context: MigrationContext,
        error: MigrationError,
        elapsed: int,
        attempts: int,
        record: bool = True,
        direction: str = "up",
    ) -> MigrationResult:
        v = migration.version
        if record:
            await self.storage.record_failure(v, str(error), elapsed)
        result = MigrationResult(
            version=v,
            name=migration.name,
            success=False,
            execution_time_ms=elapsed,
            error=str(error),
            error_code=error.code,
            direction=direction,
            attempts=attempts,
        )
        context.result = result
        context.error = error
        await self.hooks.run(HookEvent.ON_MIGRATION_FAIL, context)
        await self._emit(
            LogAction.FAIL,
            v,
            f"Migration {v} failed: {error}",
            {"error": str(error), "code": error.code, "attempts": attempts, "direction": direction},
            LogLevel.ERROR,
        )
        return result

    async def _run_batch(self, plan: MigrationPlan, options: RunOptions) -> list[MigrationResult]:
        """Apply every migration of the plan inside a single transaction.

        Statements inside the transaction are not retried. On failure the
        transaction is rolled back and every migration of the batch is
        recorded failed.
        """
        contexts: dict[str, MigrationContext] = {}
        for migration in plan.migrations:
            context = MigrationContext(migration=migration, action="up", force=options.force, db=self.db)
            abort = await self.hooks.run(HookEvent.BEFORE_MIGRATION, context, allow_abort=True)
            if abort is not None:
                error = HookAbortedError(f"Migration {migration.version} aborted by hook: {abort.reason}", migration.version)
                return [await self._fail(migration, context, error, 0, 0, record=False)]
            contexts[migration.version] = context

        for migration in plan.migrations:
            await self.hooks.run(HookEvent.ON_MIGRATION_START, contexts[migration.version])
            await self.storage.record_start(migration.version, migration.name, migration.checksum)
            await self._emit(
                LogAction.START,
                migration.version,
                f"Starting migration {migration.version} ({migration.name}) in batch",
                {"direction": "up", "batch": True},
            )

        timings: dict[str, int] = {}
        current: Migration | None = None
        started = time.perf_counter()
        try:
            async with self._semaphore:
                async with self.db.transaction() as tx:
                    for migration in plan.migrations:
                        current = migration
                        handler = self._retry_handler(options.timeout, 0)
                        step = time.perf_counter()
                        await handler.run(lambda m=migration: tx.execute(m.up), f"Migration {migration.version}", migration.version)
                        timings[migration.version] = _elapsed_ms(step)
        except Exception as e:
            elapsed = _elapsed_ms(started)
            failed = self._as_error(e, current.version if current else None)
            results = []
            for migration in plan.migrations:
                if current is not None and migration.version == current.version:
                    error = failed
                else:
                    error = DriverError(
                        f"Batch rolled back after migration {current.version if current else '?'} failed: {failed}",
                        version=migration.version,
                    )
                results.append(
                    await self._fail(migration, contexts[migration.version], error, timings.get(migration.version, elapsed), 1)
                )
            return results

        results = []
        for migration in plan.migrations:
            v = migration.version
            elapsed = timings[v]
            await self.storage.record_complete(v, elapsed, migration.checksum)
            result = MigrationResult(version=v, name=migration.name, success=True, execution_time_ms=elapsed, attempts=1)
            context = contexts[v]
            context.result = result
            await self.hooks.run(HookEvent.AFTER_MIGRATION, context)
            await self.hooks.run(HookEvent.ON_MIGRATION_COMPLETE, context)
            await self._emit(
                LogAction.COMPLETE,
                v,
                f"Migration {v} completed in {elapsed}ms (batch)",
                {"execution_time_ms": elapsed, "batch": True, "direction": "up"},
            )
            results.append(result)
        return results

    # Rollback

    async def rollback(
        self,
        migrations: Iterable[Migration],
        options: RollbackOptions | None = None,
        plan: MigrationPlan | None = None,
    ) -> list[MigrationResult]:
        """Roll back applied migrations, highest version first.

        Args:
            migrations: Every known definition (ignored when ``plan`` is given).
            options: Rollback options (``to`` or ``steps``).
            plan: Pre-built rollback plan.

        Returns:
            One result per attempted migration, in execution order.

        Raises:
            PlanValidationError: If the plan has blocking errors.
            StorageError: If the version table cannot be written.
        """
        options = options or RollbackOptions()
        if plan is None:
            plan = await self.validator.build_rollback_plan(migrations, options)
        if not plan.is_valid:
            raise PlanValidationError(plan)

        if options.dry_run:
            return self.simulate(plan)

        if not plan.migrations:
            self.logger.info("No migrations to roll back")
            return []

        self.logger.info(f"Rolling back migrations - count={len(plan.migrations)}, versions={','.join(plan.versions)}")
        results: list[MigrationResult] = []
        for migration in plan.migrations:
            try:
                result = await self.rollback_migration(migration, options)
            except StorageError as e:
                e.results = results
                raise
            results.append(result)
            if not result.success and options.stop_on_first_error:
                self.logger.warning(f"Stopping rollback after failure - version={migration.version}")
                break
        return results

    async def rollback_migration(self, migration: Migration, options: RollbackOptions | None = None) -> MigrationResult:
        """Run the down script of one migration.

        Without a down script the rollback fails with MissingDownScriptError,
        or, when ``force`` is set, is skipped with a warning and the record is
        left untouched. A failed down script leaves the record ``completed``.
        """
        options = options or RollbackOptions()
        v = migration.version
        context = MigrationContext(migration=migration, action="down", force=options.force, db=self.db)

        if not migration.has_down:
            if options.force:
                message = f"Skipped rollback of migration {v}: no down script (forced)"
                self.logger.warning(message)
                await self._emit(LogAction.ROLLBACK, v, message, {"skipped": True}, LogLevel.WARN)
                return MigrationResult(version=v, name=migration.name, success=True, direction="down", skipped=True)
            error = MissingDownScriptError(f"Migration {v} has no down script", version=v)
            return await self._fail(migration, context, error, 0, 0, record=False, direction="down")

        async with self._semaphore:
            abort = await self.hooks.run(HookEvent.BEFORE_ROLLBACK, context, allow_abort=True)
            if abort is not None:
                error = HookAbortedError(f"Rollback of {v} aborted by hook: {abort.reason}", version=v)
                return await self._fail(migration, context, error, 0, 0, record=False, direction="down")

            await self._emit(LogAction.START, v, f"Rolling back migration {v} ({migration.name})", {"direction": "down"})
            handler = self._retry_handler(options.timeout, options.retries)
            started = time.perf_counter()
            try:
                await handler.run(lambda: self.db.execute(migration.down), f"Rollback {v}", v)
            except Exception as e:
                error = self._as_error(e, v)
                return await self._fail(
                    migration, context, error, _elapsed_ms(started), handler.attempts, record=False, direction="down"
                )

            elapsed = _elapsed_ms(started)
            await self.storage.record_rollback(v)
            result = MigrationResult(
                version=v,
                name=migration.name,
                success=True,
                execution_time_ms=elapsed,
                direction="down",
                attempts=handler.attempts,
            )
            context.result = result
            await self.hooks.run(HookEvent.AFTER_ROLLBACK, context)
            await self._emit(
                LogAction.ROLLBACK,
                v,
                f"Migration {v} rolled back in {elapsed}ms",
                {"execution_time_ms": elapsed, "attempts": handler.attempts},
            )
            return result

    # Dry run

    def simulate(self, plan: MigrationPlan) -> list[MigrationResult]:
        """Results the plan would produce, with estimated times. Never touches the database."""
        results = []
        for migration in plan.migrations:
            skipped = plan.direction == "down" and not migration.has_down
            results.append(
                MigrationResult(
                    version=migration.version,
                    name=migration.name,
                    success=True,
                    execution_time_ms=0 if skipped else estimate_execution_time(migration),
                    direction=plan.direction,
                    skipped=skipped,
                    estimated=True,
                )
            )
        self.logger.info(f"Dry run - direction={plan.direction}, migrations={len(results)}")
        return results

    def _retry_handler(self, timeout: int | None, retries: int | None) -> RetryHandler:
        return RetryHandler(
            max_retries=self.config.retries if retries is None else retries,
            timeout_ms=timeout or self.config.timeout,
            backoff_ms=self.config.retry_backoff_ms,
            logger=self.logger,
        )

    @staticmethod
    def _as_error(error: BaseException, version: str | None) -> MigrationError:
        if isinstance(error, MigrationError):
            return error
        return DriverError(str(error) or type(error).__name__, version=version, details={"type": type(error).__name__})
