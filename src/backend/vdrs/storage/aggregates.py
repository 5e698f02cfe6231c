"""Continuous aggregates: hourly and daily rollups maintained by refresh passes."""

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

import msgpack
import structlog

from vdrs.storage.chunk import EPOCH, from_micros, to_micros, utcnow
from vdrs.storage.errors import InvalidRangeError
from vdrs.storage.geo import GeoPoint, haversine_meters
from vdrs.storage.hypertable import Hypertable

if TYPE_CHECKING:
    from vdrs.storage.persistence import StoragePersistence

logger = structlog.get_logger()

VEHICLE_HOURLY = "vehicle_hourly"
VEHICLE_DAILY = "vehicle_daily"
DRIVER_DAILY = "driver_daily"


class BucketGranularity(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def interval(self) -> timedelta:
        if self is BucketGranularity.HOURLY:
            return timedelta(hours=1)
        return timedelta(days=1)

    def floor(self, moment: datetime) -> datetime:
        return EPOCH + ((moment - EPOCH) // self.interval) * self.interval

    def ceil(self, moment: datetime) -> datetime:
        floored = self.floor(moment)
        return floored if floored == moment else floored + self.interval


@dataclass
class RollupBucket:
    """Aggregate of one group key's rows inside one time bucket."""

    bucket_start: datetime
    granularity: str
    entity_id: str
    count: int = 0
    avg_speed: float | None = None
    max_speed: float | None = None
    min_speed: float | None = None
    avg_rpm: float | None = None
    avg_battery_voltage: float | None = None
    avg_engine_temperature: float | None = None
    speeding_count: int = 0
    moving_count: int = 0
    vehicle_count: int = 0
    distance_meters: float = 0.0
    centroid_longitude: float | None = None
    centroid_latitude: float | None = None

    # "last" snapshot, from the row with the greatest timestamp
    last_time: datetime | None = None
    last_longitude: float | None = None
    last_latitude: float | None = None
    last_speed: float | None = None
    last_driver_id: str | None = None

    refreshed_at: datetime | None = field(default=None, compare=False)
    source: str = field(default="rollup", compare=False)

    @property
    def bucket_end(self) -> datetime:
        return self.bucket_start + BucketGranularity(self.granularity).interval

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket_start": self.bucket_start.isoformat(),
            "bucket_end": self.bucket_end.isoformat(),
            "granularity": self.granularity,
            "key": self.entity_id,
            "count": self.count,
            "avg_speed": self.avg_speed,
            "max_speed": self.max_speed,
            "min_speed": self.min_speed,
            "avg_rpm": self.avg_rpm,
            "avg_battery_voltage": self.avg_battery_voltage,
            "avg_engine_temperature": self.avg_engine_temperature,
            "speeding_count": self.speeding_count,
            "moving_count": self.moving_count,
            "vehicle_count": self.vehicle_count,
            "distance_meters": self.distance_meters,
            "centroid": (
                {"longitude": self.centroid_longitude, "latitude": self.centroid_latitude}
                if self.centroid_longitude is not None else None
            ),
            "last": {
                "time": self.last_time.isoformat() if self.last_time else None,
                "longitude": self.last_longitude,
                "latitude": self.last_latitude,
                "speed": self.last_speed,
                "driver_id": self.last_driver_id,
            },
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
            "source": self.source,
        }

    @property
    def storage_key(self) -> str:
        return bucket_storage_key((self.bucket_start, self.entity_id))

    def to_payload(self) -> bytes:
        values = {}
        for f in fields(self):
            if f.name == "source":
                continue
            value = getattr(self, f.name)
            values[f.name] = to_micros(value) if isinstance(value, datetime) else value
        return msgpack.packb(values, use_bin_type=True)

    @classmethod
    def from_payload(cls, payload: bytes) -> "RollupBucket":
        values = msgpack.unpackb(payload, raw=False)
        for name in ("bucket_start", "last_time", "refreshed_at"):
            if values.get(name) is not None:
                values[name] = from_micros(values[name])
        return cls(**values)


def bucket_storage_key(key: tuple[datetime, str]) -> str:
    return f"{to_micros(key[0])}|{key[1]}"


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _non_null(rows: list[Any], name: str) -> list[float]:
    return [getattr(r, name) for r in rows if getattr(r, name) is not None]


def fold_bucket(rows: list[Any], bucket_start: datetime, granularity: BucketGranularity,
                key: str, refreshed_at: datetime | None = None, source: str = "rollup") -> RollupBucket:
    """Compute one bucket from exactly the rows that belong to it."""
    speeds = _non_null(rows, "speed")
    positioned = sorted((r for r in rows if r.geom is not None), key=lambda r: r.time)

    distance = 0.0
    for previous, current in zip(positioned, positioned[1:]):
        distance += haversine_meters(previous.geom, current.geom)

    centroid = None
    if positioned:
        centroid = GeoPoint(
            longitude=sum(r.geom.longitude for r in positioned) / len(positioned),
            latitude=sum(r.geom.latitude for r in positioned) / len(positioned),
        )

    last = max(rows, key=lambda r: (r.time, r.entity_id))

    return RollupBucket(
        bucket_start=bucket_start,
        granularity=granularity.value,
        entity_id=key,
        count=len(rows),
        avg_speed=_mean(speeds),
        max_speed=max(speeds) if speeds else None,
        min_speed=min(speeds) if speeds else None,
        avg_rpm=_mean(_non_null(rows, "rpm")),
        avg_battery_voltage=_mean(_non_null(rows, "battery_voltage")),
        avg_engine_temperature=_mean(_non_null(rows, "engine_temperature")),
        speeding_count=sum(1 for r in rows if r.is_speeding),
        moving_count=sum(1 for r in rows if r.is_moving),
        vehicle_count=len({r.entity_id for r in rows}),
        distance_meters=distance,
        centroid_longitude=centroid.longitude if centroid else None,
        centroid_latitude=centroid.latitude if centroid else None,
        last_time=last.time,
        last_longitude=last.longitude,
        last_latitude=last.latitude,
        last_speed=last.speed,
        last_driver_id=last.driver_id,
        refreshed_at=refreshed_at,
        source=source,
    )


BucketKey = tuple[datetime, str]


@dataclass
class ContinuousAggregate:
    """Definition and materialised state of one rollup."""

    name: str
    granularity: BucketGranularity
    group_by: str
    start_offset: timedelta
    end_offset: timedelta
    buckets: dict[BucketKey, RollupBucket] = field(default_factory=dict)
    watermark: datetime | None = None
    last_refreshed_at: datetime | None = None
    invalidated: set[datetime] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.end_offset >= self.start_offset:
            raise ValueError(f"{self.name}: end_offset must be smaller than start_offset")

    def group_rows(self, rows: Iterable[Any]) -> dict[BucketKey, list[Any]]:
        """Group rows by (bucket start, group key); rows without a key are skipped."""
        groups: dict[BucketKey, list[Any]] = defaultdict(list)
        for row in rows:
            key = getattr(row, self.group_by)
            if key is None:
                continue
            groups[(self.granularity.floor(row.time), key)].append(row)
        return groups

    def state(self) -> dict[str, Any]:
        """Durable refresh state: watermark, last refresh and pending invalidations."""
        return {
            "watermark": self.watermark,
            "last_refreshed_at": self.last_refreshed_at,
            "invalidated": msgpack.packb(sorted(to_micros(b) for b in self.invalidated)),
        }

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "granularity": self.granularity.value,
            "group_by": self.group_by,
            "buckets": len(self.buckets),
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "last_refreshed_at": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
            "invalidated_buckets": len(self.invalidated),
        }


def default_aggregates(
    hourly_start_offset: timedelta = timedelta(hours=72),
    hourly_end_offset: timedelta = timedelta(minutes=30),
    daily_start_offset: timedelta = timedelta(days=3),
    daily_end_offset: timedelta = timedelta(minutes=60),
) -> list[ContinuousAggregate]:
    return [
        ContinuousAggregate(VEHICLE_HOURLY, BucketGranularity.HOURLY, "entity_id",
                            hourly_start_offset, hourly_end_offset),
        ContinuousAggregate(VEHICLE_DAILY, BucketGranularity.DAILY, "entity_id",
                            daily_start_offset, daily_end_offset),
        ContinuousAggregate(DRIVER_DAILY, BucketGranularity.DAILY, "driver_id",
                            daily_start_offset, daily_end_offset),
    ]


class ContinuousAggregateEngine:
    """Refreshes rollups from snapshot scans of the telemetry table.

    Writes landing below an aggregate's watermark (backfill, corrections,
    history written before the first refresh) invalidate their buckets; the
    next refresh recomputes those buckets whatever their age, so late data
    never stays missing from rollups the router serves.
    """

    def __init__(self, store: Hypertable, aggregates: Iterable[ContinuousAggregate],
                 clock: Callable[[], datetime] | None = None,
                 persistence: "StoragePersistence | None" = None):
        self.store = store
        self._aggregates = {a.name: a for a in aggregates}
        self._clock = clock or utcnow
        self.persistence = persistence
        store.add_write_listener(self.note_writes)

    @property
    def names(self) -> list[str]:
        return list(self._aggregates)

    def get(self, name: str) -> ContinuousAggregate:
        try:
            return self._aggregates[name]
        except KeyError:
            raise InvalidRangeError(f"Unknown aggregate {name!r}") from None

    async def note_writes(self, times: list[datetime]) -> None:
        """Invalidate the buckets of rows written behind each aggregate's watermark."""
        for aggregate in self._aggregates.values():
            touched = {
                aggregate.granularity.floor(moment)
                for moment in times
                if aggregate.watermark is None or moment < aggregate.watermark
            }
            touched -= aggregate.invalidated
            if not touched:
                continue
            aggregate.invalidated |= touched
            logger.debug("Rollup buckets invalidated", aggregate=aggregate.name, buckets=len(touched))
            if self.persistence is not None:
                await self.persistence.save_aggregate_state(aggregate.name, aggregate.state())

    def refresh_window(self, name: str, window: tuple[datetime, datetime] | None = None
                       ) -> tuple[datetime, datetime] | None:
        """Lag window intersected with window and shrunk to whole buckets."""
        aggregate = self.get(name)
        now = self._clock()
        start = now - aggregate.start_offset
        end = now - aggregate.end_offset

        if window is not None:
            if window[0] > window[1]:
                raise InvalidRangeError("refresh window start is after its end")
            start = max(start, window[0])
            end = min(end, window[1])

        start = aggregate.granularity.ceil(start)
        end = aggregate.granularity.floor(end)
        if start >= end:
            return None
        return start, end

    def _due_invalidations(self, aggregate: ContinuousAggregate,
                           window: tuple[datetime, datetime] | None) -> list[datetime]:
        """Invalidated buckets that are closed (past the lag) and inside window."""
        limit = aggregate.granularity.floor(self._clock() - aggregate.end_offset)
        interval = aggregate.granularity.interval
        return sorted(
            bucket for bucket in aggregate.invalidated
            if bucket + interval <= limit
            and (window is None or window[0] <= bucket < window[1])
        )

    async def refresh(self, name: str, window: tuple[datetime, datetime] | None = None) -> int:
        """Recompute buckets in the refresh window plus due invalidations; returns how many changed."""
        aggregate = self.get(name)
        bounds = self.refresh_window(name, window)
        due = self._due_invalidations(aggregate, window)
        if bounds is None and not due:
            return 0
        now = self._clock()
        interval = aggregate.granularity.interval

        ranges = [bounds] if bounds is not None else []
        ranges.extend(
            (bucket, bucket + interval)
            for bucket in due
            if bounds is None or not (bounds[0] <= bucket < bounds[1])
        )

        changed = 0
        rows_scanned = 0
        upserts: dict[str, bytes] = {}
        deletes: list[str] = []
        for start, end in ranges:
            # Synchronous snapshot: never observes a partly applied sub-batch
            rows = self.store.scan(start, end)
            rows_scanned += len(rows)
            fresh = {
                key: fold_bucket(group, key[0], aggregate.granularity, key[1], refreshed_at=now)
                for key, group in aggregate.group_rows(rows).items()
            }

            for key in [k for k in aggregate.buckets if start <= k[0] < end and k not in fresh]:
                del aggregate.buckets[key]
                deletes.append(bucket_storage_key(key))
                changed += 1

            for key, bucket in fresh.items():
                if aggregate.buckets.get(key) != bucket:
                    changed += 1
                    upserts[bucket.storage_key] = bucket.to_payload()
                aggregate.buckets[key] = bucket

        aggregate.invalidated.difference_update(due)
        if bounds is not None:
            aggregate.invalidated.difference_update(
                b for b in list(aggregate.invalidated) if bounds[0] <= b < bounds[1]
            )
            if aggregate.watermark is None or bounds[1] > aggregate.watermark:
                aggregate.watermark = bounds[1]
        aggregate.last_refreshed_at = now

        if self.persistence is not None:
            await self.persistence.save_buckets(name, upserts, deletes, aggregate.state())

        logger.info(
            "Continuous aggregate refreshed",
            aggregate=name,
            window_start=bounds[0].isoformat() if bounds else None,
            window_end=bounds[1].isoformat() if bounds else None,
            invalidated_buckets=len(due),
            rows=rows_scanned,
            changed=changed,
        )
        return changed

    def buckets(self, name: str, start: datetime, end: datetime, key: str | None = None) -> list[RollupBucket]:
        """Materialised buckets starting in [start, end), newest first."""
        aggregate = self.get(name)
        found = [
            replace(bucket)
            for (bucket_start, bucket_key), bucket in aggregate.buckets.items()
            if start <= bucket_start < end and (key is None or bucket_key == key)
        ]
        found.sort(key=lambda b: b.entity_id)
        found.sort(key=lambda b: b.bucket_start, reverse=True)
        return found

    def fold_raw(self, name: str, start: datetime, end: datetime, key: str | None = None) -> list[RollupBucket]:
        """Buckets folded on the fly from raw rows in [start, end), newest first."""
        aggregate = self.get(name)
        entity_id = key if aggregate.group_by == "entity_id" else None
        rows = self.store.scan(start, end, entity_id=entity_id, max_rows=self.store.max_scan_rows)

        groups = aggregate.group_rows(rows)
        found = [
            fold_bucket(group, bucket_key[0], aggregate.granularity, bucket_key[1], source="raw")
            for bucket_key, group in groups.items()
            if key is None or bucket_key[1] == key
        ]
        found.sort(key=lambda b: b.entity_id)
        found.sort(key=lambda b: b.bucket_start, reverse=True)
        return found

    async def drop_buckets_before(self, cutoff: datetime) -> int:
        """Delete buckets of every aggregate that end at or before cutoff."""
        removed = 0
        for aggregate in self._aggregates.values():
            expired = [k for k, b in aggregate.buckets.items() if b.bucket_end <= cutoff]
            for key in expired:
                del aggregate.buckets[key]
            aggregate.invalidated.difference_update(
                b for b in list(aggregate.invalidated) if b + aggregate.granularity.interval <= cutoff
            )
            if self.persistence is not None:
                await self.persistence.delete_buckets(aggregate.name, [bucket_storage_key(k) for k in expired])
            removed += len(expired)
        return removed

    async def load(self) -> int:
        """Restore buckets and refresh state from durable storage. Returns buckets loaded."""
        if self.persistence is None:
            return 0

        loaded = 0
        for aggregate in self._aggregates.values():
            snapshot = await self.persistence.load_aggregate(aggregate.name)
            for payload in snapshot.buckets:
                bucket = RollupBucket.from_payload(payload)
                aggregate.buckets[(bucket.bucket_start, bucket.entity_id)] = bucket
            aggregate.watermark = snapshot.watermark
            aggregate.last_refreshed_at = snapshot.last_refreshed_at
            if snapshot.invalidated:
                aggregate.invalidated = {from_micros(m) for m in msgpack.unpackb(snapshot.invalidated)}
            loaded += len(snapshot.buckets)

        logger.info("Continuous aggregates loaded", buckets=loaded)
        return loaded

    def status(self) -> list[dict[str, Any]]:
        return [a.status() for a in self._aggregates.values()]
