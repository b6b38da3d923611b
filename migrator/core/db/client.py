"""Database handle consumed by the migration engine.

The engine only needs two calls: ``execute(sql, params)`` and
``query(sql, params)``. ``SQLAlchemyDatabase`` adapts a synchronous SQLAlchemy
engine to that contract by running the blocking work in a worker thread.
"""

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from migrator.core.db.sql import split_statements
from migrator.core.errors import DriverError


_TRANSIENT_MARKERS = ("database is locked", "deadlock", "could not serialize", "connection reset")


@dataclass
class ExecuteOutcome:
    """Result of an ``execute`` call."""

    rowcount: int = 0
    statements: int = 0
    warnings: list[str] = field(default_factory=list)


@runtime_checkable
class DatabaseClient(Protocol):
    """Minimal database contract used by storage, monitor and runner."""

    async def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> ExecuteOutcome: ...

    async def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]: ...


def is_transient(error: BaseException) -> bool:
    """Return True when a driver error is worth retrying."""
    if isinstance(error, (DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def to_driver_error(error: SQLAlchemyError) -> DriverError:
    """Wrap a SQLAlchemy error as a DriverError."""
    original = getattr(error, "orig", None) or error
    return DriverError(
        str(original),
        transient=is_transient(error),
        details={"type": type(original).__name__},
    )


def _run(conn: Connection, sql: str, params: Mapping[str, Any] | None) -> ExecuteOutcome:
    if params:
        result = conn.execute(text(sql), dict(params))
        return ExecuteOutcome(rowcount=max(result.rowcount, 0), statements=1)

    outcome = ExecuteOutcome()
    for statement in split_statements(sql):
        result = conn.exec_driver_sql(statement)
        outcome.rowcount += max(result.rowcount, 0)
        outcome.statements += 1
    return outcome


def _fetch(conn: Connection, sql: str, params: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    result = conn.execute(text(sql), dict(params or {}))
    return [dict(row) for row in result.mappings().all()]


class SQLAlchemyDatabase:
    """DatabaseClient backed by a SQLAlchemy engine.

    Parameterized calls go through ``text()`` with named (``:name``) binds.
    Calls without parameters are treated as scripts: they are split into
    statements and executed with ``exec_driver_sql`` in one transaction.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> ExecuteOutcome:
        def _execute() -> ExecuteOutcome:
            with self.engine.begin() as conn:
                return _run(conn, sql, params)

        try:
            return await asyncio.to_thread(_execute)
        except SQLAlchemyError as e:
            raise to_driver_error(e) from e

    async def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        def _query() -> list[dict[str, Any]]:
            with self.engine.connect() as conn:
                return _fetch(conn, sql, params)

        try:
            return await asyncio.to_thread(_query)
        except SQLAlchemyError as e:
            raise to_driver_error(e) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["ConnectionDatabase"]:
        """Run several calls in a single transaction.

        Commits when the block exits normally and rolls back on any exception.
        """
        try:
            conn = await asyncio.to_thread(self.engine.connect)
            trans = await asyncio.to_thread(conn.begin)
        except SQLAlchemyError as e:
            raise to_driver_error(e) from e

        try:
            yield ConnectionDatabase(conn)
        except BaseException:
            await asyncio.to_thread(trans.rollback)
            await asyncio.to_thread(conn.close)
            raise

        try:
            await asyncio.to_thread(trans.commit)
        except SQLAlchemyError as e:
            raise to_driver_error(e) from e
        finally:
            await asyncio.to_thread(conn.close)

    def dispose(self) -> None:
        self.engine.dispose()


class ConnectionDatabase:
    """DatabaseClient bound to an open connection inside a transaction."""

    def __init__(self, conn: Connection):
        self.conn = conn

    async def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> ExecuteOutcome:
        try:
            return await asyncio.to_thread(_run, self.conn, sql, params)
        except SQLAlchemyError as e:
            raise to_driver_error(e) from e

    async def query(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            return await asyncio.to_thread(_fetch, self.conn, sql, params)
        except SQLAlchemyError as e:
            raise to_driver_error(e) from e
