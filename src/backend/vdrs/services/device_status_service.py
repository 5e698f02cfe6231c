"""Device status stream: tracker health reports keyed by IMEI."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from vdrs.core.config import Settings
from vdrs.models.telemetry import DeviceStatusRecord, ensure_utc
from vdrs.services.telemetry_ingestion_service import TelemetryIngestionService
from vdrs.storage.engine import StorageEngine
from vdrs.storage.errors import OperationTimeoutError
from vdrs.storage.hypertable import BatchResult


class DeviceStatusInput(BaseModel):
    """JSON shape of one device status report."""

    model_config = ConfigDict(extra="ignore")

    ENTITY_LABEL: ClassVar[str] = "imei"

    entity_id: str = Field(validation_alias=AliasChoices("imei", "entity_id"))
    time: datetime

    imsi: str | None = None
    license_plate: str | None = None
    battery_level: int | None = None
    battery_voltage: float | None = None
    temperature: float | None = None
    csq: int | None = None
    network_type: str | None = None
    network_operator: str | None = None
    memory_usage: int | None = None
    storage_usage: int | None = None
    health_score: float | None = None
    needs_attention: bool = False
    maintenance_due: bool = False
    last_maintenance: datetime | None = None
    next_maintenance: datetime | None = None
    raw_status: dict[str, Any] | None = None

    def to_record(self) -> DeviceStatusRecord:
        return DeviceStatusRecord(**self.model_dump())


class DeviceStatusService:
    """Stores and reads device health reports."""

    def __init__(self, storage: StorageEngine, settings: Settings):
        self.storage = storage
        self.settings = settings
        self._ingestion = TelemetryIngestionService(storage, settings)

    async def record_statuses(self, items: list[Any]) -> BatchResult:
        return await self._ingestion.ingest_into(self.storage.device_status, items, DeviceStatusInput)

    async def get_device_status(
        self,
        imei: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeviceStatusRecord]:
        """Status reports of one device, newest first; defaults to the last 7 days."""
        end_time = ensure_utc(end_time) if end_time else self.storage.clock()
        start_time = ensure_utc(start_time) if start_time else end_time - timedelta(days=7)
        limit = min(limit or self.settings.track_default_limit, self.settings.track_max_limit)

        try:
            return await asyncio.wait_for(
                self.storage.device_status.fetch_range(imei, start_time, end_time, limit),
                timeout=self.settings.query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"device status lookup exceeded {self.settings.query_timeout_seconds}s"
            ) from None
