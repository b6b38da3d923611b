"""Lifecycle hooks.

Each ``HookRegistry`` belongs to one migration service. Handlers are plain or
async callables taking a ``MigrationContext``. They run in registration order;
a handler that raises is logged and skipped, never failing the migration.
A handler may return ``AbortMigration`` to stop the step it guards, but only
events run with ``allow_abort=True`` honor it.
"""

import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from migrator.core.migrations.models import MigrationContext
from migrator.core.migrations.utils import is_production_safe, now_ms

HookHandler = Callable[[MigrationContext], "AbortMigration | None | Awaitable[AbortMigration | None]"]


class HookEvent(str, Enum):
    """Lifecycle events hooks can subscribe to."""

    BEFORE_MIGRATION = "before_migration"
    AFTER_MIGRATION = "after_migration"
    BEFORE_ROLLBACK = "before_rollback"
    AFTER_ROLLBACK = "after_rollback"
    ON_VALIDATION_ERROR = "on_validation_error"
    ON_MIGRATION_START = "on_migration_start"
    ON_MIGRATION_COMPLETE = "on_migration_complete"
    ON_MIGRATION_FAIL = "on_migration_fail"

    @classmethod
    def parse(cls, value: "HookEvent | str") -> "HookEvent":
        """Accept an enum member, its value, or the camelCase name (``beforeMigration``).

        Raises:
            ValueError: If the name is not a known event.
        """
        if isinstance(value, cls):
            return value
        name = re.sub(r"(?<!^)(?=[A-Z])", "_", str(value)).lower()
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown hook event: {value}") from None


@dataclass(frozen=True)
class AbortMigration:
    """Returned by a hook to stop the migration it guards."""

    reason: str = "Aborted by hook"


def _hook_name(handler: Callable) -> str:
    return getattr(handler, "__name__", None) or type(handler).__name__


class HookRegistry:
    """Ordered handler lists keyed by ``HookEvent``."""

    def __init__(self, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self._hooks: dict[HookEvent, list[HookHandler]] = {event: [] for event in HookEvent}
        self.logger = logger or logging.getLogger(__name__)

    def register(self, event: HookEvent | str, handler: HookHandler) -> None:
        """Append a handler for an event.

        Raises:
            ValueError: If the event is unknown.
            TypeError: If the handler is not callable.
        """
        key = HookEvent.parse(event)
        if not callable(handler):
            raise TypeError(f"Hook for {key.value} must be callable, got {type(handler).__name__}")
        self._hooks[key].append(handler)
        self.logger.debug(f"Hook registered - event={key.value}, hook={_hook_name(handler)}")

    def unregister(self, event: HookEvent | str, handler: HookHandler) -> bool:
        """Remove a handler. Returns False if it was not registered."""
        handlers = self._hooks[HookEvent.parse(event)]
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def clear(self, event: HookEvent | str | None = None) -> None:
        """Remove every handler, or only those of one event."""
        if event is None:
            for handlers in self._hooks.values():
                handlers.clear()
        else:
            self._hooks[HookEvent.parse(event)].clear()

    def set_hooks(self, hooks: Mapping[HookEvent | str, HookHandler | Iterable[HookHandler]], replace: bool = True) -> None:
        """Install handlers from a mapping of event to handler(s).

        Args:
            hooks: Mapping of event to a handler or list of handlers.
            replace: Replace existing handlers of the listed events instead of appending.
        """
        for event, handlers in hooks.items():
            key = HookEvent.parse(event)
            handler_list = [handlers] if callable(handlers) else list(handlers)
            if replace:
                self._hooks[key].clear()
            for handler in handler_list:
                self.register(key, handler)

    def handlers(self, event: HookEvent | str) -> list[HookHandler]:
        return list(self._hooks[HookEvent.parse(event)])

    def get_hooks(self) -> dict[str, list[str]]:
        """Registered handler names per event."""
        return {event.value: [_hook_name(h) for h in handlers] for event, handlers in self._hooks.items()}

    async def run(
        self,
        event: HookEvent | str,
        context: MigrationContext,
        allow_abort: bool = False,
    ) -> AbortMigration | None:
        """Run every handler of an event in registration order.

        Args:
            event: Event to dispatch.
            context: Context passed to each handler.
            allow_abort: Honor an ``AbortMigration`` returned by a handler.

        Returns:
            The AbortMigration that stopped dispatch, or None.
        """
        key = HookEvent.parse(event)
        version = context.migration.version if context.migration else None
        for handler in list(self._hooks[key]):
            name = _hook_name(handler)
            try:
                result = handler(context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                self.logger.error(
                    f"Hook failed - event={key.value}, hook={name}, version={version}, error={e}",
                    exc_info=True,
                )
                continue

            if isinstance(result, AbortMigration):
                if allow_abort:
                    self.logger.warning(
                        f"Hook aborted migration - event={key.value}, hook={name}, "
                        f"version={version}, reason={result.reason}"
                    )
                    return result
                self.logger.warning(
                    f"Hook abort ignored - event={key.value}, hook={name}, version={version}, reason={result.reason}"
                )
        return None


# Built-in hooks


def create_logging_hook(logger: logging.Logger | logging.LoggerAdapter) -> HookHandler:
    """Log the start of every migration."""

    def log_migration_start(context: MigrationContext) -> None:
        migration = context.migration
        if migration is None:
            return
        logger.info(
            f"Migration starting - version={migration.version}, name={migration.name}, "
            f"action={context.action}, dry_run={context.dry_run}"
        )

    return log_migration_start


def create_completion_logging_hook(logger: logging.Logger | logging.LoggerAdapter) -> HookHandler:
    """Log the outcome of every migration with its duration."""

    def log_migration_complete(context: MigrationContext) -> None:
        migration = context.migration
        if migration is None:
            return
        duration = context.result.execution_time_ms if context.result else now_ms() - context.start_time
        logger.info(
            f"Migration finished - version={migration.version}, action={context.action}, "
            f"duration_ms={duration}"
        )

    return log_migration_complete


def create_backup_hook(backup: Callable[[MigrationContext], Any]) -> HookHandler:
    """Call ``backup`` before migrations whose up script is destructive.

    Skipped for dry runs and rollbacks.
    """

    async def backup_before_destructive(context: MigrationContext) -> None:
        migration = context.migration
        if context.dry_run or migration is None or context.action != "up":
            return
        if not is_production_safe(migration):
            result = backup(context)
            if inspect.isawaitable(result):
                await result

    return backup_before_destructive


def create_environment_guard_hook(
    check: Callable[[], bool | Awaitable[bool]],
    message: str = "Environment conditions not met for migration",
) -> HookHandler:
    """Abort (when the event allows it) if ``check`` returns False."""

    async def guard_environment(context: MigrationContext) -> AbortMigration | None:
        if context.dry_run:
            return None
        ok = check()
        if inspect.isawaitable(ok):
            ok = await ok
        return None if ok else AbortMigration(message)

    return guard_environment


def create_performance_hook(
    collector: Callable[[dict[str, Any]], None],
    slow_threshold_ms: int = 5000,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> HookHandler:
    """Report execution time of each migration to ``collector``; warn when slow."""
    log = logger or logging.getLogger(__name__)

    def monitor_performance(context: MigrationContext) -> None:
        migration = context.migration
        if migration is None:
            return
        execution_time = context.result.execution_time_ms if context.result else now_ms() - context.start_time
        collector(
            {
                "migration_id": migration.id,
                "version": migration.version,
                "action": context.action,
                "execution_time_ms": execution_time,
                "timestamp": now_ms(),
            }
        )
        if execution_time > slow_threshold_ms:
            log.warning(f"Slow migration detected - version={migration.version}, duration_ms={execution_time}")

    return monitor_performance


def create_circuit_breaker_hook(is_open: Callable[[], bool]) -> HookHandler:
    """Abort (when the event allows it) while the circuit breaker is open."""

    def circuit_breaker_check(context: MigrationContext) -> AbortMigration | None:
        if is_open():
            return AbortMigration("Circuit breaker is open - migrations temporarily disabled")
        return None

    return circuit_breaker_check
