"""Administration REST API endpoints.

Retention policy management, chunk inspection, on-demand maintenance
passes and correction batches against compressed history.
"""

from typing import Any

from fastapi import APIRouter, Body, HTTPException, status
from pydantic import BaseModel, Field

from vdrs.api.telemetry import BatchIngestResponse, batch_response, check_batch_size
from vdrs.core.deps import AppSettings, DbSession, MaintenanceWorker, Storage
from vdrs.models.retention_policy import RetentionPolicyRecord
from vdrs.services.maintenance_worker_service import MAINTENANCE_TASKS
from vdrs.services.retention_policy_service import RetentionPolicyService
from vdrs.services.telemetry_ingestion_service import TelemetryIngestionService
from vdrs.services.telemetry_query_service import TelemetryQueryService

router = APIRouter()


class RetentionPolicyUpdate(BaseModel):
    """Retention policy update request."""

    retention_days: int = Field(gt=0)
    compression_days: int = Field(ge=0)
    regulatory_requirement: str | None = None


class RetentionPolicyResponse(BaseModel):
    tenant_id: str
    data_type: str
    retention_days: int
    compression_days: int
    regulatory_requirement: str | None
    updated_at: str | None = None


class ChunkStatusResponse(BaseModel):
    tables: dict[str, list[dict[str, Any]]]
    aggregates: list[dict[str, Any]]


class MaintenanceRunResponse(BaseModel):
    task: str
    affected: int


def policy_response(record: RetentionPolicyRecord) -> RetentionPolicyResponse:
    return RetentionPolicyResponse(
        tenant_id=record.tenant_id,
        data_type=record.data_type,
        retention_days=record.retention_days,
        compression_days=record.compression_days,
        regulatory_requirement=record.regulatory_requirement,
        updated_at=record.updated_at.isoformat() if record.updated_at else None,
    )


@router.get("/retention-policies", response_model=list[RetentionPolicyResponse])
async def list_retention_policies(db: DbSession, tenant_id: str | None = None):
    """List stored retention policies."""
    service = RetentionPolicyService(db)
    return [policy_response(record) for record in await service.list_policies(tenant_id)]


@router.put("/retention-policies/{tenant_id}/{data_type}", response_model=RetentionPolicyResponse)
async def update_retention_policy(
    tenant_id: str,
    data_type: str,
    update: RetentionPolicyUpdate,
    db: DbSession,
):
    """Create or replace the retention policy of a tenant and data type.

    Takes effect on the next maintenance pass.
    """
    service = RetentionPolicyService(db)
    record = await service.upsert_policy(
        tenant_id,
        data_type,
        update.retention_days,
        update.compression_days,
        update.regulatory_requirement,
    )
    return policy_response(record)


@router.get("/chunks", response_model=ChunkStatusResponse)
async def get_chunk_status(storage: Storage, settings: AppSettings):
    """Chunk metadata of every table plus continuous aggregate status."""
    service = TelemetryQueryService(storage, settings)
    return ChunkStatusResponse(tables=service.get_chunk_status(), aggregates=storage.aggregates.status())


@router.post("/maintenance/{task}", response_model=MaintenanceRunResponse)
async def run_maintenance_task(task: str, worker: MaintenanceWorker):
    """Run one maintenance pass now: compression, retention or refresh."""
    if task not in MAINTENANCE_TASKS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown maintenance task: {task}",
        )
    affected = await worker.run_task(task)
    return MaintenanceRunResponse(task=task, affected=affected)


@router.post("/corrections", response_model=BatchIngestResponse)
async def apply_corrections(
    storage: Storage,
    settings: AppSettings,
    items: list[Any] = Body(...),
):
    """Apply a telemetry correction batch.

    Compressed chunks touched by the batch are decompressed, corrected and
    compressed again.
    """
    check_batch_size(items, settings.ingest_max_batch_records)
    service = TelemetryIngestionService(storage, settings)
    result = await service.correct(items)
    return batch_response(result, len(items), noun="corrections")
