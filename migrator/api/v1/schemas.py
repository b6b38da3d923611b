"""Response schemas for the migrations API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StandardResponse[T](BaseModel):
    """Standard response wrapper for single resources."""

    model_config = ConfigDict(
        json_schema_extra={"example": {"data": {}, "meta": None, "error": None}}
    )

    data: T = Field(..., description="Response data")
    meta: dict | None = Field(None, description="Optional metadata")
    error: None = Field(None, description="Error object (null on success)")


class HealthResponse(BaseModel):
    is_healthy: bool
    last_migration_time: int | None = None
    pending_migrations: int = 0
    failed_migrations: int = 0
    total_migrations: int = 0
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    checked_at: int


class StatsResponse(BaseModel):
    total: int = 0
    applied: int = 0
    failed: int = 0
    rolled_back: int = 0
    pending: int = 0
    average_execution_time_ms: float = 0.0
    last_migration_time: int | None = None
    oldest_pending_time: int | None = None
    window_days: int = 7


class LogEntryResponse(BaseModel):
    id: str
    migration_id: str
    action: str
    timestamp: int
    message: str
    level: str
    details: dict[str, Any] | None = None


class HistoryEntryResponse(BaseModel):
    version: str
    name: str
    checksum: str
    status: str
    applied_at: int
    execution_time_ms: int | None = None
    error: str | None = None


class PlanResponse(BaseModel):
    """Apply plan: pending versions plus blocking errors and warnings."""

    direction: str
    dry_run: bool
    target_version: str | None = None
    is_valid: bool
    migrations: list[dict[str, Any]] = Field(default_factory=list, description="Migrations in execution order")
    errors: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
