"""FastAPI application exposing the migration monitoring endpoints."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from migrator import __version__
from migrator.api.v1 import api_router
from migrator.core.config import MigrationConfig, get_settings
from migrator.core.db.session import create_db_engine
from migrator.core.exceptions import APIException
from migrator.core.migrations.service import MigrationService
from migrator.core.migrations.system import create_migration_system


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Return the standard error envelope for APIException."""
    response_content = exc.detail.copy()
    response_content["data"] = None
    return JSONResponse(status_code=exc.status_code, content=response_content)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Convert FastAPI validation errors to the standard error envelope."""
    details: dict[str, list[str]] = {}
    for error in exc.errors():
        field_path = error["loc"]
        field_name = str(field_path[-1] if len(field_path) > 1 else field_path[0])
        details.setdefault(field_name, []).append(error["msg"])

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {"code": "VALIDATION_ERROR", "message": "Validation failed", "details": details},
            "data": None,
        },
    )


def create_app(service: MigrationService | None = None) -> FastAPI:
    """Build the API application.

    Args:
        service: Migration service to expose. When omitted one is built from
            the environment settings at startup and cleaned up at shutdown.

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = service is None
        current = service
        if owned:
            settings = get_settings()
            system = create_migration_system(create_db_engine(settings=settings), MigrationConfig.from_settings(settings))
            current = system.service
        await current.initialize()
        app.state.migration_service = current
        try:
            yield
        finally:
            if owned:
                await current.cleanup()

    app = FastAPI(
        title="Migrator API",
        version=__version__,
        description="Schema migration health, statistics and history",
        lifespan=lifespan,
    )
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    if service is not None:
        app.state.migration_service = service

    @app.get("/healthz", tags=["system"])
    def healthz():
        """Liveness probe."""
        return {"status": "ok", "version": __version__}

    app.include_router(api_router, prefix="/api/v1")
    return app
