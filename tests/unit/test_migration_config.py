"""Unit tests for engine configuration."""

import logging

import pytest

from migrator.core.config import MigrationConfig, Settings, validate_identifier
from migrator.core.errors import ConfigurationError
from migrator.core.migrations.hooks import HookEvent


class TestMigrationConfig:
    """Tests for MigrationConfig."""

    def test_defaults(self):
        """Defaults are applied at construction."""
        config = MigrationConfig()
        assert config.table_name == "__schema_migrations"
        assert config.log_table_name == "__migration_logs"
        assert config.timeout == 30000
        assert config.retries == 3
        assert config.validate_checksums is True
        assert config.enable_rollback is True
        assert config.max_concurrent_migrations == 1
        assert config.health_check_interval == 30000
        assert config.hooks == {}

    def test_camel_case_aliases(self):
        """camelCase keys are accepted."""
        config = MigrationConfig(**{"tableName": "schema_versions", "maxConcurrentMigrations": 2})
        assert config.table_name == "schema_versions"
        assert config.max_concurrent_migrations == 2

    @pytest.mark.parametrize(
        "overrides",
        [
            {"table_name": "versions; DROP TABLE users"},
            {"table_name": "1versions"},
            {"log_table_name": "logs-table"},
            {"timeout": 0},
            {"retries": -1},
            {"max_concurrent_migrations": 0},
            {"log_level": "verbose"},
            {"unknown_option": True},
        ],
    )
    def test_invalid_values_fail_eagerly(self, overrides):
        """Bad values raise ConfigurationError at construction."""
        with pytest.raises(ConfigurationError) as exc_info:
            MigrationConfig(**overrides)
        assert exc_info.value.details["errors"]

    def test_log_level_normalized(self):
        assert MigrationConfig(log_level="WARNING").log_level == "warn"
        assert MigrationConfig(log_level="warn").python_log_level == logging.WARNING

    def test_hooks_keyed_by_enum(self):
        """Hook keys are normalized to HookEvent; single handlers become lists."""

        def handler(context):
            return None

        config = MigrationConfig(hooks={"beforeMigration": handler, HookEvent.AFTER_ROLLBACK: [handler]})
        assert config.hooks == {HookEvent.BEFORE_MIGRATION: [handler], HookEvent.AFTER_ROLLBACK: [handler]}

    def test_unknown_hook_event(self):
        with pytest.raises(ConfigurationError):
            MigrationConfig(hooks={"beforeEverything": [lambda context: None]})

    def test_non_callable_hook(self):
        with pytest.raises(ConfigurationError):
            MigrationConfig(hooks={"before_migration": ["not callable"]})

    def test_from_settings(self):
        """Environment settings map onto engine fields; overrides win."""
        settings = Settings(
            MIGRATIONS_TABLE="versions",
            MIGRATION_TIMEOUT_MS=1000,
            MIGRATION_RETRIES=0,
            LOG_LEVEL="DEBUG",
            LOG_TO_DB=False,
        )
        config = MigrationConfig.from_settings(settings, retries=5)
        assert config.table_name == "versions"
        assert config.timeout == 1000
        assert config.timeout_seconds == 1.0
        assert config.retries == 5
        assert config.log_level == "debug"
        assert config.enable_logging is False


def test_validate_identifier():
    assert validate_identifier("__schema_migrations") == "__schema_migrations"
    with pytest.raises(ConfigurationError, match="Invalid table name"):
        validate_identifier("bad name")
    with pytest.raises(ConfigurationError):
        validate_identifier("x" * 64)
