"""Wiring of tables, background managers, aggregates and the query router."""

import itertools
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vdrs.core.config import Settings
from vdrs.models.telemetry import (
    DEFAULT_ANOMALY_HOT_FIELDS,
    DEFAULT_DEVICE_STATUS_HOT_FIELDS,
    AnomalyEvent,
    DeviceStatusRecord,
    TelemetryRecord,
    validate_anomaly,
    validate_device_status,
    validate_telemetry,
)
from vdrs.storage.aggregates import ContinuousAggregateEngine, default_aggregates
from vdrs.storage.chunk import utcnow
from vdrs.storage.compression import CompressionManager
from vdrs.storage.hypertable import Hypertable, TableSchema
from vdrs.storage.persistence import StoragePersistence
from vdrs.storage.retention import (
    ANOMALY_DATA_TYPE,
    DEVICE_STATUS_DATA_TYPE,
    TELEMETRY_DATA_TYPE,
    RetentionManager,
)
from vdrs.storage.router import QueryRouter

logger = structlog.get_logger()


class StorageEngine:
    """Owns the telemetry, anomaly and device status tables and everything that maintains them.

    With a session factory the tables and rollups write through to the
    database and ``load()`` rebuilds them on startup; without one the engine
    keeps its state in memory only.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] | None = None,
                 session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.settings = settings
        self.clock = clock or utcnow
        self._anomaly_ids = itertools.count(1)
        self.persistence = StoragePersistence(session_factory) if session_factory is not None else None

        table_options = {
            "sub_batch_size": settings.ingest_sub_batch_size,
            "sub_batch_timeout": settings.ingest_sub_batch_timeout_seconds,
            "max_scan_rows": settings.query_max_scan_rows,
            "clock_skew_tolerance": timedelta(seconds=settings.clock_skew_tolerance_seconds),
            "cell_size_degrees": settings.spatial_cell_size_degrees,
            "clock": self.clock,
            "persistence": self.persistence,
        }

        self.telemetry = Hypertable(
            TableSchema(
                name=TELEMETRY_DATA_TYPE,
                record_type=TelemetryRecord,
                chunk_interval=timedelta(hours=settings.telemetry_chunk_interval_hours),
                hot_fields=settings.telemetry_hot_fields,
                validator=validate_telemetry,
            ),
            **table_options,
        )
        self.anomalies = Hypertable(
            TableSchema(
                name=ANOMALY_DATA_TYPE,
                record_type=AnomalyEvent,
                chunk_interval=timedelta(hours=settings.anomaly_chunk_interval_hours),
                hot_fields=DEFAULT_ANOMALY_HOT_FIELDS,
                validator=validate_anomaly,
                prepare=self._assign_anomaly_id,
            ),
            **table_options,
        )
        self.device_status = Hypertable(
            TableSchema(
                name=DEVICE_STATUS_DATA_TYPE,
                record_type=DeviceStatusRecord,
                chunk_interval=timedelta(hours=settings.device_status_chunk_interval_hours),
                hot_fields=DEFAULT_DEVICE_STATUS_HOT_FIELDS,
                validator=validate_device_status,
            ),
            **table_options,
        )

        self.aggregates = ContinuousAggregateEngine(
            self.telemetry,
            default_aggregates(
                hourly_start_offset=timedelta(hours=settings.hourly_aggregate_start_offset_hours),
                hourly_end_offset=timedelta(minutes=settings.hourly_aggregate_end_offset_minutes),
                daily_start_offset=timedelta(days=settings.daily_aggregate_start_offset_days),
                daily_end_offset=timedelta(minutes=settings.daily_aggregate_end_offset_minutes),
            ),
            clock=self.clock,
            persistence=self.persistence,
        )
        self.router = QueryRouter(self.aggregates)

        self.compression = {
            name: CompressionManager(table, clock=self.clock) for name, table in self.tables.items()
        }
        self.retention = {
            TELEMETRY_DATA_TYPE: RetentionManager(
                self.telemetry,
                aggregates=self.aggregates,
                cascade=settings.aggregate_cascade_retention,
                clock=self.clock,
            ),
            ANOMALY_DATA_TYPE: RetentionManager(self.anomalies, clock=self.clock),
            DEVICE_STATUS_DATA_TYPE: RetentionManager(self.device_status, clock=self.clock),
        }

        logger.info(
            "Storage engine initialized",
            telemetry_chunk_hours=settings.telemetry_chunk_interval_hours,
            anomaly_chunk_hours=settings.anomaly_chunk_interval_hours,
            device_status_chunk_hours=settings.device_status_chunk_interval_hours,
            hot_fields=list(settings.telemetry_hot_fields),
            durable=self.persistence is not None,
        )

    def _assign_anomaly_id(self, record: AnomalyEvent) -> None:
        if record.anomaly_id is None:
            record.anomaly_id = next(self._anomaly_ids)

    async def load(self) -> None:
        """Rebuild tables and rollups from durable storage."""
        if self.persistence is None:
            return

        for table in self.tables.values():
            await table.load()
        await self.aggregates.load()

        # New anomaly ids continue after the highest stored one
        infos = self.anomalies.chunks(include_sizes=False)
        if infos:
            rows = self.anomalies.scan(infos[0].start, infos[-1].end)
            highest = max((r.anomaly_id for r in rows if r.anomaly_id is not None), default=0)
            self._anomaly_ids = itertools.count(highest + 1)

        logger.info("Storage engine loaded", tables={name: t.stats()["row_count"] for name, t in self.tables.items()})

    @property
    def tables(self) -> dict[str, Hypertable]:
        return {
            TELEMETRY_DATA_TYPE: self.telemetry,
            ANOMALY_DATA_TYPE: self.anomalies,
            DEVICE_STATUS_DATA_TYPE: self.device_status,
        }

    def table(self, data_type: str) -> Hypertable:
        try:
            return self.tables[data_type]
        except KeyError:
            raise KeyError(f"Unknown data type: {data_type}") from None

    def summary(self) -> dict[str, Any]:
        return {
            "tables": {name: table.stats() for name, table in self.tables.items()},
            "aggregates": self.aggregates.status(),
        }
