"""Anomaly event recording and lookup."""

import asyncio
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from vdrs.core.config import Settings
from vdrs.models.telemetry import AnomalyEvent, ensure_utc
from vdrs.services.telemetry_ingestion_service import TelemetryIngestionService
from vdrs.services.telemetry_query_service import day_start
from vdrs.storage.engine import StorageEngine
from vdrs.storage.errors import InvalidRangeError, OperationTimeoutError
from vdrs.storage.hypertable import BatchResult


class AnomalyEventInput(BaseModel):
    """JSON shape of one anomaly event."""

    model_config = ConfigDict(extra="ignore")

    entity_id: str = Field(validation_alias=AliasChoices("license_plate", "entity_id"))
    time: datetime
    anomaly_type: str
    anomaly_id: int | None = None
    longitude: float | None = None
    latitude: float | None = None
    severity: str | None = None
    description: str | None = None
    status: str = "open"
    driver_id: str | None = None
    driver_attribution_method: str = "telemetry_lookup"
    driver_confidence_score: float = 1.0
    attribution_details: dict[str, Any] | None = None
    is_critical: bool = False
    is_resolved: bool = False
    resolved_at: datetime | None = None

    def to_record(self) -> AnomalyEvent:
        return AnomalyEvent(**self.model_dump())


class AnomalyService:
    """Append-only anomaly stream stored beside telemetry."""

    def __init__(self, storage: StorageEngine, settings: Settings):
        self.storage = storage
        self.settings = settings
        self._ingestion = TelemetryIngestionService(storage, settings)

    async def record_anomalies(self, items: list[Any]) -> BatchResult:
        """Store a batch of anomaly events; ids are assigned when absent."""
        return await self._ingestion.ingest_into(self.storage.anomalies, items, AnomalyEventInput)

    async def get_vehicle_anomalies(
        self,
        license_plate: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[AnomalyEvent]:
        """Anomalies of one vehicle, newest first; defaults to the last 7 days."""
        end_time = ensure_utc(end_time) if end_time else self.storage.clock()
        start_time = ensure_utc(start_time) if start_time else end_time - timedelta(days=7)
        limit = min(limit or self.settings.track_default_limit, self.settings.track_max_limit)

        try:
            return await asyncio.wait_for(
                self.storage.anomalies.fetch_range(license_plate, start_time, end_time, limit),
                timeout=self.settings.query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"anomaly lookup exceeded {self.settings.query_timeout_seconds}s"
            ) from None

    def get_anomaly_summary(self, start_date: date, end_date: date) -> list[dict[str, Any]]:
        """Daily counts per anomaly type and severity, newest day first."""
        if start_date > end_date:
            raise InvalidRangeError("start_date is after end_date")

        rows = self.storage.anomalies.scan(
            day_start(start_date),
            day_start(end_date + timedelta(days=1)),
            max_rows=self.settings.query_max_scan_rows,
        )

        groups: dict[tuple[date, str, str | None], list[AnomalyEvent]] = defaultdict(list)
        for row in rows:
            groups[(row.time.date(), row.anomaly_type, row.severity)].append(row)

        summary = [
            {
                "date": day.isoformat(),
                "anomaly_type": anomaly_type,
                "severity": severity,
                "occurrence_count": len(events),
                "affected_vehicles": len({e.entity_id for e in events}),
                "affected_drivers": len({e.driver_id for e in events if e.driver_id}),
                "critical_ratio": sum(1 for e in events if e.is_critical) / len(events),
                "resolution_ratio": sum(1 for e in events if e.is_resolved) / len(events),
            }
            for (day, anomaly_type, severity), events in groups.items()
        ]
        summary.sort(key=lambda s: (s["anomaly_type"], s["severity"] or ""))
        summary.sort(key=lambda s: s["date"], reverse=True)
        return summary
