"""API Routes Module."""

from fastapi import APIRouter

from vdrs.api import admin, telemetry, telemetry_query

router = APIRouter()

router.include_router(telemetry.router, prefix="/telemetry", tags=["Telemetry Ingestion"])
router.include_router(telemetry_query.router, prefix="/telemetry", tags=["Telemetry"])
router.include_router(admin.router, prefix="/admin", tags=["Administration"])
