"""Migrations router exposing health, statistics, logs, history and plans."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status

from migrator.api.v1.schemas import (
    HealthResponse,
    HistoryEntryResponse,
    LogEntryResponse,
    PlanResponse,
    StandardResponse,
    StatsResponse,
)
from migrator.core.errors import MigrationError
from migrator.core.exceptions import APIException, raise_migration_error
from migrator.core.migrations.models import LogAction, LogLevel, LogQuery
from migrator.core.migrations.service import MigrationService

router = APIRouter(prefix="/migrations", tags=["migrations"])


def get_migration_service(request: Request) -> MigrationService:
    """Dependency to get the MigrationService attached to the application."""
    service = getattr(request.app.state, "migration_service", None)
    if service is None:
        raise APIException(
            code="MIGRATION_SERVICE_UNAVAILABLE",
            message="Migration service is not configured",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return service


ServiceDep = Annotated[MigrationService, Depends(get_migration_service)]


@router.get(
    "/health",
    response_model=StandardResponse[HealthResponse],
    summary="Migration health",
    description="Health verdict from recent events, pending migrations and a connectivity probe.",
)
async def get_health(service: ServiceDep) -> StandardResponse[HealthResponse]:
    health = await service.health_check()
    return StandardResponse(data=HealthResponse(**health.to_dict()))


@router.get(
    "/stats",
    response_model=StandardResponse[StatsResponse],
    summary="Migration statistics",
)
async def get_stats(service: ServiceDep) -> StandardResponse[StatsResponse]:
    stats = await service.get_stats()
    return StandardResponse(data=StatsResponse(**stats.to_dict()))


@router.get(
    "/logs",
    response_model=StandardResponse[list[LogEntryResponse]],
    summary="Migration logs",
    description="Monitor events, newest first.",
)
async def get_logs(
    service: ServiceDep,
    migration_id: str | None = Query(default=None, description="Filter by migration version"),
    action: LogAction | None = Query(default=None, description="Filter by action"),
    level: LogLevel | None = Query(default=None, description="Filter by level"),
    start_time: int | None = Query(default=None, description="Epoch ms lower bound"),
    end_time: int | None = Query(default=None, description="Epoch ms upper bound"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> StandardResponse[list[LogEntryResponse]]:
    query = LogQuery(
        migration_id=migration_id,
        action=action,
        level=level,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        offset=offset,
    )
    entries = service.get_logs(query)
    return StandardResponse(
        data=[LogEntryResponse(**e.to_dict()) for e in entries],
        meta={"count": len(entries), "limit": limit, "offset": offset},
    )


@router.get(
    "/history",
    response_model=StandardResponse[list[HistoryEntryResponse]],
    summary="Version table history",
)
async def get_history(
    service: ServiceDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> StandardResponse[list[HistoryEntryResponse]]:
    try:
        records = await service.get_history(limit)
    except MigrationError as e:
        raise_migration_error(e)
    return StandardResponse(data=[HistoryEntryResponse(**r.to_dict()) for r in records])


@router.get(
    "/plan",
    response_model=StandardResponse[PlanResponse],
    summary="Pending migration plan",
    description="Builds the apply plan without executing anything. Invalid plans are returned with their errors.",
)
async def get_plan(
    service: ServiceDep,
    target_version: str | None = Query(default=None, description="Stop after this version"),
    force: bool = Query(default=False, description="Downgrade checksum drift to warnings"),
) -> StandardResponse[PlanResponse]:
    try:
        plan = await service.get_migration_plan(dry_run=True, force=force, target_version=target_version)
    except MigrationError as e:
        raise_migration_error(e)
    return StandardResponse(data=PlanResponse(**plan.to_dict()))
