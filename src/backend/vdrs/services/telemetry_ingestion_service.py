"""Telemetry ingestion service for shape-checking and storing vehicle telemetry.

Accepts raw JSON items from the HTTP facade, checks their shape with
pydantic, fills derived motion flags and hands the records to the chunked
store, which owns every domain rule. One malformed item never fails the
batch: it becomes a rejection at its original position.
"""

import time
from datetime import datetime
from typing import Any, ClassVar

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from vdrs.core.config import Settings
from vdrs.core.metrics import record_ingestion
from vdrs.models.telemetry import TelemetryRecord
from vdrs.storage.engine import StorageEngine
from vdrs.storage.errors import RecordValidationError
from vdrs.storage.hypertable import BatchResult, Hypertable, RejectedRecord

logger = structlog.get_logger()


class TelemetryRecordInput(BaseModel):
    """JSON shape of one telemetry item. Domain ranges are checked by the store."""

    model_config = ConfigDict(extra="ignore")

    ENTITY_LABEL: ClassVar[str] = "license_plate"

    entity_id: str = Field(validation_alias=AliasChoices("license_plate", "entity_id"))
    time: datetime

    imei: str | None = None
    imsi: str | None = None
    longitude: float | None = None
    latitude: float | None = None
    altitude: float | None = None
    speed: float | None = None
    gps_speed: float | None = None
    direction: float | None = None
    mileage: float | None = None
    rpm: int | None = None
    gps_status: str | None = None
    gps_satellite_count: int | None = None
    is_moving: bool | None = None
    is_speeding: bool | None = None
    csq: int | None = None
    driver_id: str | None = None
    log_sequence: int | None = None
    crc_checksum: str | None = None
    ignition: bool | None = None
    engine_on: bool | None = None
    door_open: bool | None = None
    brake_signal: bool | None = None
    fuel_level: int | None = None
    battery_voltage: float | None = None
    engine_temperature: float | None = None
    raw_data: dict[str, Any] | None = None
    raw_log_data: dict[str, Any] | None = None
    raw_device_status: dict[str, Any] | None = None
    raw_io_extended: dict[str, Any] | None = None
    data_source: str = "api_ingestion"

    def to_record(self) -> TelemetryRecord:
        return TelemetryRecord(**self.model_dump())


def _shape_error(index: int, item: Any, error: ValidationError, entity_label: str) -> RejectedRecord:
    first = error.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    entity_id = None
    if isinstance(item, dict):
        entity_id = item.get(entity_label) or item.get("entity_id")
    return RejectedRecord(
        index=index,
        entity_id=entity_id if isinstance(entity_id, str) else None,
        time=None,
        code=RecordValidationError.code,
        reason=f"{loc}: {first.get('msg')}" if loc else str(first.get("msg")),
        field=loc or None,
        entity_label=entity_label,
    )


class TelemetryIngestionService:
    """Parses, enriches and stores telemetry and anomaly batches."""

    def __init__(self, storage: StorageEngine, settings: Settings):
        self.storage = storage
        self.settings = settings

    async def ingest(self, items: list[Any]) -> BatchResult:
        """Ingest a telemetry batch, returning per-record outcomes."""
        return await self.ingest_into(self.storage.telemetry, items, TelemetryRecordInput)

    async def correct(self, items: list[Any]) -> BatchResult:
        """Apply a telemetry correction batch, including rows in compressed chunks."""
        started = time.perf_counter()
        records, positions, shape_rejections = self._parse(items, TelemetryRecordInput)
        manager = self.storage.compression[self.storage.telemetry.name]
        result = await manager.correct_records(records)
        return self._finish(self.storage.telemetry, result, positions, shape_rejections, started)

    def _parse(self, items: list[Any], schema: type[BaseModel]):
        records = []
        positions: list[int] = []
        rejections: list[RejectedRecord] = []
        entity_label = getattr(schema, "ENTITY_LABEL", "license_plate")

        for index, item in enumerate(items):
            try:
                parsed = schema.model_validate(item)
            except ValidationError as e:
                rejections.append(_shape_error(index, item, e, entity_label))
                continue

            record = parsed.to_record()
            if isinstance(record, TelemetryRecord):
                record.derive_motion_flags(
                    self.settings.moving_speed_threshold_kmh,
                    self.settings.speeding_threshold_kmh,
                )
            records.append(record)
            positions.append(index)

        return records, positions, rejections

    async def ingest_into(self, table: Hypertable, items: list[Any], schema: type[BaseModel]) -> BatchResult:
        started = time.perf_counter()
        records, positions, shape_rejections = self._parse(items, schema)
        result = await table.insert_batch(records)
        return self._finish(table, result, positions, shape_rejections, started)

    def _finish(self, table: Hypertable, result: BatchResult, positions: list[int],
                shape_rejections: list[RejectedRecord], started: float) -> BatchResult:
        # Store indices refer to the parsed list; map them back to the caller's positions
        for rejection in result.rejected:
            rejection.index = positions[rejection.index]
        result.rejected.extend(shape_rejections)
        result.rejected.sort(key=lambda r: r.index)

        duration = time.perf_counter() - started
        record_ingestion(
            table.name,
            result.inserted,
            result.updated,
            [r.code for r in result.rejected],
            duration,
        )
        if shape_rejections:
            logger.warning(
                "Malformed telemetry items rejected",
                table=table.name,
                count=len(shape_rejections),
                first_reason=shape_rejections[0].reason,
            )
        return result
