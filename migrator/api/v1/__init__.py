"""API v1 router aggregation."""

from fastapi import APIRouter

from migrator.api.v1 import migrations

api_router = APIRouter()

api_router.include_router(migrations.router)
