"""Configuration for the migration engine.

Two layers live here:

* ``Settings``: process-level settings loaded from environment variables and
  ``.env`` files (pydantic-settings), cached by ``get_settings()``.
* ``MigrationConfig``: the typed engine configuration. Defaults are applied
  once at construction and every value is validated eagerly, so a bad table
  name or a non-positive timeout fails when the engine is built, not at the
  first migration.
"""

import logging
import re
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from migrator.core.errors import ConfigurationError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

LOG_LEVELS = ("debug", "info", "warn", "error")

DEFAULT_TABLE_NAME = "__schema_migrations"
DEFAULT_LOG_TABLE_NAME = "__migration_logs"


def validate_identifier(value: str, kind: str = "table name") -> str:
    """Check a SQL identifier against the allow-list pattern.

    Args:
        value: Identifier to check.
        kind: Human-readable label used in the error message.

    Returns:
        The identifier, unchanged.

    Raises:
        ConfigurationError: If the identifier does not match the pattern.
    """
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ConfigurationError(
            f"Invalid {kind}: {value!r} (expected letters, digits and underscores, max 63 chars)",
            details={"value": value, "kind": kind},
        )
    return value


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    # Environment
    ENV: str = "dev"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./migrator.db"
    DB_ECHO: bool = False

    # Migrations
    MIGRATIONS_PATH: str = "migrations"
    MIGRATIONS_TABLE: str = DEFAULT_TABLE_NAME
    MIGRATIONS_LOG_TABLE: str = DEFAULT_LOG_TABLE_NAME
    MIGRATION_TIMEOUT_MS: int = 30000
    MIGRATION_RETRIES: int = 3
    MIGRATION_VALIDATE_CHECKSUMS: bool = True
    MIGRATION_ENABLE_ROLLBACK: bool = True
    MIGRATION_REQUIRE_ROLLBACK: bool = False
    MIGRATION_BATCH_MODE: bool = False
    MIGRATION_MAX_CONCURRENT: int = 1
    MIGRATION_HEALTH_CHECKS: bool = False
    MIGRATION_HEALTH_CHECK_INTERVAL_MS: int = 30000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "human"  # "human" or "json"
    LOG_TO_DB: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class MigrationConfig(BaseModel):
    """Typed engine configuration.

    Field names are snake_case; the camelCase spellings (``tableName``,
    ``maxConcurrentMigrations``...) are accepted as aliases. Durations are
    milliseconds.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )

    migrations_path: str = "migrations"
    table_name: str = DEFAULT_TABLE_NAME
    log_table_name: str = DEFAULT_LOG_TABLE_NAME
    enable_logging: bool = True
    log_level: str = "info"
    timeout: int = Field(default=30000, gt=0)
    retries: int = Field(default=3, ge=0)
    retry_backoff_ms: int = Field(default=100, ge=0)
    validate_checksums: bool = True
    enable_rollback: bool = True
    require_rollback: bool = False
    enable_batch_mode: bool = False
    max_concurrent_migrations: int = Field(default=1, ge=1)
    enable_health_checks: bool = False
    health_check_interval: int = Field(default=30000, gt=0)
    max_log_entries: int = Field(default=1000, ge=1)
    log_retention_days: int = Field(default=30, ge=1)
    stats_window_days: int = Field(default=7, ge=1)
    hooks: dict[Any, list[Callable[..., Any]]] = Field(default_factory=dict)
    logger: logging.Logger | logging.LoggerAdapter | None = None

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid migration configuration: {e.error_count()} error(s)",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    @field_validator("table_name", "log_table_name")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"invalid SQL identifier {value!r}")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _check_log_level(cls, value: Any) -> str:
        level = str(value).lower()
        if level == "warning":
            level = "warn"
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("hooks", mode="before")
    @classmethod
    def _check_hooks(cls, value: Any) -> dict:
        from migrator.core.migrations.hooks import HookEvent

        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("hooks must be a mapping of event to handler list")
        normalized: dict[HookEvent, list[Callable[..., Any]]] = {}
        for event, handlers in value.items():
            key = HookEvent.parse(event)
            if callable(handlers):
                handlers = [handlers]
            for handler in handlers:
                if not callable(handler):
                    raise ValueError(f"hook for {key.value} is not callable: {handler!r}")
            normalized[key] = list(handlers)
        return normalized

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000

    @property
    def python_log_level(self) -> int:
        return {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warn": logging.WARNING,
            "error": logging.ERROR,
        }[self.log_level]

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "MigrationConfig":
        """Build an engine configuration from environment settings.

        Args:
            settings: Settings instance (defaults to ``get_settings()``).
            **overrides: Field values that take precedence over settings.

        Returns:
            Validated MigrationConfig.
        """
        settings = settings or get_settings()
        values: dict[str, Any] = {
            "migrations_path": settings.MIGRATIONS_PATH,
            "table_name": settings.MIGRATIONS_TABLE,
            "log_table_name": settings.MIGRATIONS_LOG_TABLE,
            "enable_logging": settings.LOG_TO_DB,
            "log_level": settings.LOG_LEVEL,
            "timeout": settings.MIGRATION_TIMEOUT_MS,
            "retries": settings.MIGRATION_RETRIES,
            "validate_checksums": settings.MIGRATION_VALIDATE_CHECKSUMS,
            "enable_rollback": settings.MIGRATION_ENABLE_ROLLBACK,
            "require_rollback": settings.MIGRATION_REQUIRE_ROLLBACK,
            "enable_batch_mode": settings.MIGRATION_BATCH_MODE,
            "max_concurrent_migrations": settings.MIGRATION_MAX_CONCURRENT,
            "enable_health_checks": settings.MIGRATION_HEALTH_CHECKS,
            "health_check_interval": settings.MIGRATION_HEALTH_CHECK_INTERVAL_MS,
        }
        values.update(overrides)
        return cls(**values)
