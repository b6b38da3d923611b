"""Shared fixtures: an in-memory SQLite target and a few migration definitions."""

import logging

import pytest

from migrator.core.config import MigrationConfig
from migrator.core.db.client import SQLAlchemyDatabase
from migrator.core.db.session import create_db_engine
from migrator.core.migrations.models import create_migration
from migrator.core.migrations.system import create_migration_system


@pytest.fixture(autouse=True)
def _restore_migrator_log_level():
    """Undo log-level changes the CLI makes to the shared "migrator" logger."""
    logger = logging.getLogger("migrator")
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.fixture
def engine():
    """In-memory SQLite engine sharing a single connection."""
    engine = create_db_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """DatabaseClient over the in-memory engine."""
    return SQLAlchemyDatabase(engine)


@pytest.fixture
def config():
    """Engine configuration with fast retries."""
    return MigrationConfig(retries=2, retry_backoff_ms=0, timeout=5000)


@pytest.fixture
def users_migration():
    return create_migration(
        "001",
        "create_users",
        up="CREATE TABLE IF NOT EXISTS users (id INTEGER PRIMARY KEY, email TEXT NOT NULL);",
        down="DROP TABLE IF EXISTS users;",
    )


@pytest.fixture
def posts_migration():
    return create_migration(
        "002",
        "create_posts",
        up="CREATE TABLE IF NOT EXISTS posts (id INTEGER PRIMARY KEY, user_id INTEGER REFERENCES users (id));",
        down="DROP TABLE IF EXISTS posts;",
        dependencies=["001"],
    )


@pytest.fixture
def index_migration():
    return create_migration(
        "003",
        "add_posts_index",
        up="CREATE INDEX IF NOT EXISTS idx_posts_user_id ON posts (user_id);",
        down="DROP INDEX IF EXISTS idx_posts_user_id;",
    )


@pytest.fixture
def migrations(users_migration, posts_migration, index_migration):
    return [users_migration, posts_migration, index_migration]


@pytest.fixture
def system(db, config, migrations):
    """Migration system over the in-memory database with the three sample migrations."""
    return create_migration_system(db, config, migrations=migrations)
