"""Telemetry query service for reading stored vehicle telemetry.

Full-resolution reads (tracks, latest state) go straight to the chunked
store; summaries go through the query router, which serves rollups for
finalised buckets and folds raw rows only for the in-flight tail.
"""

import asyncio
import time
from collections.abc import Awaitable
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, TypeVar

import structlog

from vdrs.core.config import Settings
from vdrs.core.metrics import observe_query
from vdrs.models.telemetry import TelemetryRecord, ensure_utc
from vdrs.storage.aggregates import DRIVER_DAILY, VEHICLE_DAILY, VEHICLE_HOURLY, BucketGranularity, RollupBucket
from vdrs.storage.engine import StorageEngine
from vdrs.storage.errors import InvalidRangeError, OperationTimeoutError
from vdrs.storage.router import RoutePlan

logger = structlog.get_logger()

T = TypeVar("T")


def day_start(day: date) -> datetime:
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


class TelemetryQueryService:
    """Query vehicle tracks, latest state, summaries and store statistics."""

    def __init__(self, storage: StorageEngine, settings: Settings):
        self.storage = storage
        self.settings = settings

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Run a read under the query time budget."""
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.query_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Query timed out", operation=operation, timeout=self.settings.query_timeout_seconds)
            raise OperationTimeoutError(
                f"{operation} exceeded {self.settings.query_timeout_seconds}s"
            ) from None
        finally:
            observe_query(operation, time.perf_counter() - started)

    async def get_vehicle_track(
        self,
        license_plate: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[TelemetryRecord]:
        """Records of one vehicle in [start_time, end_time], newest first.

        Defaults to the last 24 hours and 1000 records; the limit is capped
        at track_max_limit whatever the caller asks for.
        """
        now = self.storage.clock()
        end_time = ensure_utc(end_time) if end_time else now
        start_time = (
            ensure_utc(start_time) if start_time
            else end_time - timedelta(hours=self.settings.track_default_hours)
        )
        if limit is None or limit < 1:
            limit = self.settings.track_default_limit
        limit = min(limit, self.settings.track_max_limit)

        return await self._bounded(
            "track",
            self.storage.telemetry.fetch_range(license_plate, start_time, end_time, limit),
        )

    async def _summary(self, aggregate: str, start: datetime, end: datetime,
                       key: str | None) -> tuple[RoutePlan, list[RollupBucket]]:
        return await self._bounded(aggregate, self.storage.router.summarize(aggregate, start, end, key))

    async def get_vehicle_daily_summary(self, start_date: date, end_date: date,
                                        license_plate: str | None = None) -> tuple[RoutePlan, list[RollupBucket]]:
        """Daily buckets for every day from start_date to end_date inclusive."""
        if start_date > end_date:
            raise InvalidRangeError("start_date is after end_date")
        return await self._summary(
            VEHICLE_DAILY, day_start(start_date), day_start(end_date + timedelta(days=1)), license_plate
        )

    async def get_driver_daily_summary(self, start_date: date, end_date: date,
                                       driver_id: str | None = None) -> tuple[RoutePlan, list[RollupBucket]]:
        if start_date > end_date:
            raise InvalidRangeError("start_date is after end_date")
        return await self._summary(
            DRIVER_DAILY, day_start(start_date), day_start(end_date + timedelta(days=1)), driver_id
        )

    async def get_vehicle_hourly_summary(self, start_time: datetime, end_time: datetime,
                                         license_plate: str | None = None) -> tuple[RoutePlan, list[RollupBucket]]:
        """Hourly buckets covering start_time through end_time inclusive."""
        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)
        if start_time > end_time:
            raise InvalidRangeError("start_time is after end_time")
        hourly = BucketGranularity.HOURLY
        return await self._summary(
            VEHICLE_HOURLY, hourly.floor(start_time), hourly.floor(end_time) + hourly.interval, license_plate
        )

    def get_realtime_summary(self, window_minutes: int | None = None) -> list[dict[str, Any]]:
        """Latest known state per vehicle seen in the recent window, most recent first."""
        now = self.storage.clock()
        window = timedelta(minutes=window_minutes or self.settings.realtime_window_minutes)
        latest = self.storage.telemetry.latest_by_entity(now - window)

        rows = [
            {
                "license_plate": plate,
                "last_update": record.time.isoformat(),
                "longitude": record.longitude,
                "latitude": record.latitude,
                "speed": record.speed,
                "direction": record.direction,
                "is_moving": record.is_moving,
                "is_speeding": record.is_speeding,
                "gps_status": record.gps_status,
                "driver_id": record.driver_id,
                "seconds_since_update": (now - record.time).total_seconds(),
            }
            for plate, record in latest.items()
        ]
        rows.sort(key=lambda r: r["last_update"], reverse=True)
        return rows

    def get_performance_metrics(self) -> list[dict[str, Any]]:
        """Store-level operational metrics, one row per metric."""
        now = self.storage.clock()
        telemetry = self.storage.telemetry
        stats = telemetry.stats()
        active = telemetry.latest_by_entity(now - timedelta(hours=1))

        before = stats["compressed_bytes_before"]
        after = stats["compressed_bytes_after"]
        ratio = before / after if after else 1.0

        def metric(name: str, value: float, unit: str) -> dict[str, Any]:
            return {"metric_name": name, "value": value, "unit": unit, "timestamp": now.isoformat()}

        return [
            metric("telemetry_ingestion_rate", telemetry.ingestion_rate(), "records_per_minute"),
            metric("telemetry_storage_size", round(stats["total_bytes"] / 1024 / 1024, 3), "MB"),
            metric("active_vehicles_last_hour", len(active), "vehicles"),
            metric("compression_ratio", round(ratio, 2), "ratio"),
            metric("telemetry_rows", stats["row_count"], "rows"),
            metric("telemetry_chunks", stats["num_chunks"], "chunks"),
            metric("compressed_chunks", stats["compressed_chunks"], "chunks"),
        ]

    def get_chunk_status(self) -> dict[str, list[dict[str, Any]]]:
        """Chunk metadata per table."""
        return {
            name: [info.to_dict() for info in table.chunks()]
            for name, table in self.storage.tables.items()
        }
