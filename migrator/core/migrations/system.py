"""Factory assembling a complete migration system."""

from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy.engine import Engine

from migrator.core.config import MigrationConfig
from migrator.core.db.client import DatabaseClient, SQLAlchemyDatabase
from migrator.core.db.session import create_db_engine
from migrator.core.migrations.models import Migration
from migrator.core.migrations.service import MigrationService


class MigrationSystem:
    """A service plus direct access to its components.

    The operation methods delegate to the service.
    """

    def __init__(self, service: MigrationService):
        self.service = service
        self.runner = service.runner
        self.validator = service.validator
        self.monitor = service.monitor
        self.storage = service.storage
        self.hooks = service.hooks
        self.config = service.config

    async def initialize(self) -> None:
        await self.service.initialize()

    async def run_migrations(self, options=None, **kwargs):
        return await self.service.run_migrations(options, **kwargs)

    async def rollback_migrations(self, options=None, **kwargs):
        return await self.service.rollback_migrations(options, **kwargs)

    async def validate_migrations(self, options=None, **kwargs):
        return await self.service.validate_migrations(options, **kwargs)

    async def get_migration_plan(self, options=None, **kwargs):
        return await self.service.get_migration_plan(options, **kwargs)

    async def get_rollback_plan(self, options=None, **kwargs):
        return await self.service.get_rollback_plan(options, **kwargs)

    async def health_check(self):
        return await self.service.health_check()

    async def get_stats(self):
        return await self.service.get_stats()

    def get_logs(self, options=None, **kwargs):
        return self.service.get_logs(options, **kwargs)

    async def get_history(self, limit: int = 50):
        return await self.service.get_history(limit)

    def set_hooks(self, hooks, replace: bool = True) -> None:
        self.service.set_hooks(hooks, replace=replace)

    async def cleanup(self) -> int:
        return await self.service.cleanup()


def create_migration_system(
    db: DatabaseClient | Engine | str,
    config: MigrationConfig | Mapping[str, Any] | None = None,
    *,
    migrations: Iterable[Migration] | None = None,
) -> MigrationSystem:
    """Build a migration system for one target database.

    Args:
        db: A DatabaseClient, a SQLAlchemy Engine, or a database URL.
        config: MigrationConfig or a mapping of its fields (camelCase accepted).
            Validated here, so a bad configuration fails before anything runs.
        migrations: Explicit definitions instead of files under ``migrations_path``.

    Returns:
        MigrationSystem
    """
    if config is None:
        config = MigrationConfig()
    elif not isinstance(config, MigrationConfig):
        config = MigrationConfig(**config)

    if isinstance(db, str):
        db = SQLAlchemyDatabase(create_db_engine(db))
    elif isinstance(db, Engine):
        db = SQLAlchemyDatabase(db)

    return MigrationSystem(MigrationService(db, config, migrations=migrations))
