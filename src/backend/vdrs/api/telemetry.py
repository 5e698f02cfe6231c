"""Telemetry ingestion REST API endpoints."""

from typing import Any

from fastapi import APIRouter, Body, HTTPException, status
from pydantic import BaseModel

from vdrs.core.deps import AppSettings, Storage
from vdrs.services.anomaly_service import AnomalyService
from vdrs.services.device_status_service import DeviceStatusService
from vdrs.services.telemetry_ingestion_service import TelemetryIngestionService
from vdrs.storage.hypertable import BatchResult

router = APIRouter()


class RejectedRecordResponse(BaseModel):
    """One rejected item of a batch."""

    index: int
    license_plate: str | None = None
    imei: str | None = None
    time: str | None
    code: str
    reason: str
    field: str | None = None


class SubBatchResponse(BaseModel):
    index: int
    size: int
    inserted: int
    updated: int
    rejected: int
    attempts: int
    error: str | None = None


class BatchIngestResponse(BaseModel):
    """Batch ingestion response."""

    success: bool
    message: str
    inserted: int
    updated: int
    rejected: list[RejectedRecordResponse]
    sub_batches: list[SubBatchResponse]


def batch_response(result: BatchResult, received: int, noun: str = "records") -> BatchIngestResponse:
    payload = result.to_dict()
    written = result.inserted + result.updated
    return BatchIngestResponse(
        success=written > 0 or received == 0,
        message=(
            f"Processed {received} {noun}: {result.inserted} inserted, "
            f"{result.updated} updated, {len(result.rejected)} rejected"
        ),
        **payload,
    )


def check_batch_size(items: list[Any], max_records: int) -> None:
    if len(items) > max_records:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch of {len(items)} records exceeds the limit of {max_records}",
        )


@router.post("/batch", response_model=BatchIngestResponse)
async def ingest_batch(
    storage: Storage,
    settings: AppSettings,
    items: list[Any] = Body(...),
):
    """Ingest a batch of vehicle telemetry.

    Each item is validated on its own; invalid items are returned in
    ``rejected`` with their position and never fail the whole batch.
    """
    check_batch_size(items, settings.ingest_max_batch_records)
    service = TelemetryIngestionService(storage, settings)
    result = await service.ingest(items)
    return batch_response(result, len(items))


@router.post("/anomalies", response_model=BatchIngestResponse)
async def record_anomalies(
    storage: Storage,
    settings: AppSettings,
    items: list[Any] = Body(...),
):
    """Record a batch of anomaly events."""
    check_batch_size(items, settings.ingest_max_batch_records)
    service = AnomalyService(storage, settings)
    result = await service.record_anomalies(items)
    return batch_response(result, len(items), noun="anomalies")


@router.post("/device-status", response_model=BatchIngestResponse)
async def record_device_status(
    storage: Storage,
    settings: AppSettings,
    items: list[Any] = Body(...),
):
    """Record a batch of tracker device status reports, keyed by IMEI."""
    check_batch_size(items, settings.ingest_max_batch_records)
    service = DeviceStatusService(storage, settings)
    result = await service.record_statuses(items)
    return batch_response(result, len(items), noun="status reports")
