"""Engine construction from settings."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from migrator.core.config import Settings, get_settings


def create_db_engine(url: str | None = None, settings: Settings | None = None) -> Engine:
    """Create a SQLAlchemy engine for the migration target.

    Args:
        url: Database URL (defaults to ``DATABASE_URL`` setting).
        settings: Settings instance (defaults to ``get_settings()``).

    Returns:
        Configured Engine.
    """
    settings = settings or get_settings()
    url = url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.DB_ECHO, future=True, **kwargs)

    return create_engine(
        url,
        echo=settings.DB_ECHO,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )
