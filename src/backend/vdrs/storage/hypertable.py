"""Chunked time-series store (hypertable-like table partitioned by time).

Rows are keyed by (entity_id, time, ...) and routed into epoch-aligned
chunks of ``chunk_interval``. Writes arrive in sub-batches; each sub-batch
takes the locks of every chunk it touches (in chunk order) and then applies
all of its rows without yielding to the event loop, so readers and
maintenance sweeps never observe a half-applied sub-batch. With a
persistence layer attached the applied rows are then written through in one
transaction while the locks are still held; a failed write-through reverts
the sub-batch in memory.
"""

import asyncio
import bisect
import contextlib
import dataclasses
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from vdrs.models.telemetry import record_field_names
from vdrs.storage.chunk import EPOCH, Chunk, ChunkInfo, ChunkState, decode_row, utcnow
from vdrs.storage.errors import (
    ChunkImmutableError,
    InvalidRangeError,
    OperationTimeoutError,
    QueryTooExpensiveError,
    RecordValidationError,
    StorageError,
    StoreError,
)
from vdrs.storage.geo import BoundingBox, GeoPoint, haversine_meters, point_in_polygon

if TYPE_CHECKING:
    from vdrs.storage.persistence import StoragePersistence

logger = structlog.get_logger()

Clock = Callable[[], datetime]
WriteListener = Callable[[list[datetime]], Awaitable[None]]

INGESTION_RATE_WINDOW = timedelta(minutes=1)


@dataclass(frozen=True)
class TableSchema:
    """Static description of one hypertable."""

    name: str
    record_type: type
    chunk_interval: timedelta
    hot_fields: tuple[str, ...]
    validator: Callable[[Any, datetime, timedelta], None]
    prepare: Callable[[Any], None] | None = None

    def __post_init__(self) -> None:
        if self.chunk_interval <= timedelta(0):
            raise ValueError("chunk_interval must be positive")

        stored = set(record_field_names(self.record_type))
        unknown = sorted(set(self.hot_fields) - stored)
        if unknown:
            raise ValueError(f"Unknown hot fields for {self.name}: {', '.join(unknown)}")

        key_fields = set(getattr(self.record_type, "KEY_FIELDS", ()))
        overlap = sorted(set(self.hot_fields) & key_fields)
        if overlap:
            raise ValueError(f"Key fields cannot be hot fields: {', '.join(overlap)}")


@dataclass
class RejectedRecord:
    """A record that was not written, with the reason."""

    index: int
    entity_id: str | None
    time: datetime | None
    code: str
    reason: str
    field: str | None = None
    entity_label: str = "license_plate"

    @classmethod
    def from_error(cls, index: int, record: Any, error: StoreError) -> "RejectedRecord":
        return cls(
            index=index,
            entity_id=getattr(record, "entity_id", None),
            time=getattr(record, "time", None),
            code=error.code,
            reason=error.message,
            field=getattr(error, "field", None),
            entity_label=getattr(type(record), "ENTITY_LABEL", "license_plate"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            self.entity_label: self.entity_id,
            "time": self.time.isoformat() if isinstance(self.time, datetime) else None,
            "code": self.code,
            "reason": self.reason,
            "field": self.field,
        }


@dataclass
class SubBatchOutcome:
    """Per sub-batch accounting of an insert_batch call."""

    index: int
    size: int
    inserted: int = 0
    updated: int = 0
    rejected: int = 0
    attempts: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class BatchResult:
    """Outcome of insert_batch: counts plus every rejection."""

    inserted: int = 0
    updated: int = 0
    rejected: list[RejectedRecord] = field(default_factory=list)
    sub_batches: list[SubBatchOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "rejected": [r.to_dict() for r in self.rejected],
            "sub_batches": [s.to_dict() for s in self.sub_batches],
        }


class Hypertable:
    """Time-partitioned, entity-keyed store with upsert and spatial lookups."""

    def __init__(
        self,
        schema: TableSchema,
        *,
        sub_batch_size: int = 500,
        sub_batch_timeout: float = 5.0,
        max_scan_rows: int = 1_000_000,
        clock_skew_tolerance: timedelta = timedelta(minutes=5),
        cell_size_degrees: float = 0.01,
        clock: Clock | None = None,
        persistence: "StoragePersistence | None" = None,
    ):
        if sub_batch_size < 1:
            raise ValueError("sub_batch_size must be at least 1")
        self.schema = schema
        self.sub_batch_size = sub_batch_size
        self.sub_batch_timeout = sub_batch_timeout
        self.max_scan_rows = max_scan_rows
        self.clock_skew_tolerance = clock_skew_tolerance
        self.cell_size_degrees = cell_size_degrees
        self._clock = clock or utcnow
        self.persistence = persistence

        self._chunks: dict[datetime, Chunk] = {}
        self._starts: list[datetime] = []
        self._horizon: datetime | None = None
        self._recent_writes: deque[tuple[datetime, int]] = deque()
        self._write_listeners: list[WriteListener] = []

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def chunk_interval(self) -> timedelta:
        return self.schema.chunk_interval

    @property
    def horizon(self) -> datetime | None:
        """Oldest instant still visible to reads (set by retention)."""
        return self._horizon

    def now(self) -> datetime:
        return self._clock()

    def add_write_listener(self, listener: WriteListener) -> None:
        """Await listener with the times of every applied sub-batch's rows."""
        self._write_listeners.append(listener)

    # ==================== Chunk routing ====================

    def chunk_start_for(self, moment: datetime) -> datetime:
        offset = (moment - EPOCH) // self.chunk_interval
        return EPOCH + offset * self.chunk_interval

    def _get_or_create_chunk(self, start: datetime) -> Chunk:
        chunk = self._chunks.get(start)
        if chunk is not None:
            return chunk

        chunk = Chunk(
            table=self.name,
            start=start,
            end=start + self.chunk_interval,
            record_type=self.schema.record_type,
            cell_size_degrees=self.cell_size_degrees,
        )
        self._chunks[start] = chunk
        bisect.insort(self._starts, start)
        logger.info("Chunk created", table=self.name, chunk_id=chunk.chunk_id)
        return chunk

    def _overlapping(self, start: datetime, end: datetime, *, closed: bool = True,
                     newest_first: bool = False) -> list[Chunk]:
        """Chunks intersecting [start, end] (or [start, end) when closed is False)."""
        lo = bisect.bisect_right(self._starts, start - self.chunk_interval)
        if closed:
            hi = bisect.bisect_right(self._starts, end)
        else:
            hi = bisect.bisect_left(self._starts, end)
        chunks = [self._chunks[s] for s in self._starts[lo:hi]]
        if newest_first:
            chunks.reverse()
        return chunks

    def _visible_start(self, start: datetime) -> datetime:
        if self._horizon is not None and start < self._horizon:
            return self._horizon
        return start

    def _check_cost(self, estimated: int, max_rows: int | None) -> None:
        if max_rows is not None and estimated > max_rows:
            raise QueryTooExpensiveError(estimated, max_rows)

    # ==================== Writes ====================

    async def insert_batch(self, records: Sequence[Any]) -> BatchResult:
        """Validate and upsert records in bounded sub-batches.

        Invalid records are rejected individually. A failed sub-batch is
        reported and never rolls back the sub-batches before it.
        """
        result = BatchResult()
        now = self._clock()

        for batch_index, offset in enumerate(range(0, len(records), self.sub_batch_size)):
            sub_batch = records[offset:offset + self.sub_batch_size]
            outcome = await self._run_sub_batch(batch_index, offset, sub_batch, now, result)
            result.sub_batches.append(outcome)

        logger.info(
            "Batch ingested",
            table=self.name,
            records=len(records),
            inserted=result.inserted,
            updated=result.updated,
            rejected=len(result.rejected),
        )
        return result

    async def _run_sub_batch(self, batch_index: int, offset: int, sub_batch: Sequence[Any],
                             now: datetime, result: BatchResult) -> SubBatchOutcome:
        outcome = SubBatchOutcome(index=batch_index, size=len(sub_batch))
        valid: list[tuple[int, Any]] = []

        for index, record in enumerate(sub_batch, start=offset):
            try:
                self.schema.validator(record, now, self.clock_skew_tolerance)
                self._check_horizon(record)
            except RecordValidationError as e:
                result.rejected.append(RejectedRecord.from_error(index, record, e))
                outcome.rejected += 1
                continue
            if self.schema.prepare is not None:
                self.schema.prepare(record)
            valid.append((index, record))

        if not valid:
            return outcome

        applied = None
        error: StoreError | None = None
        for attempt in (1, 2):
            outcome.attempts = attempt
            try:
                applied = await self._apply(valid, now)
                error = None
                break
            except asyncio.TimeoutError:
                error = OperationTimeoutError(
                    f"Sub-batch {batch_index} exceeded {self.sub_batch_timeout}s waiting for chunk locks"
                )
                logger.warning("Sub-batch timed out", table=self.name, sub_batch=batch_index, attempt=attempt)
            except StorageError as e:
                error = e
                break

        if applied is None:
            outcome.error = error.code
            outcome.rejected += len(valid)
            result.rejected.extend(RejectedRecord.from_error(i, r, error) for i, r in valid)
            logger.error(
                "Sub-batch failed",
                table=self.name,
                sub_batch=batch_index,
                records=len(valid),
                error=error.message,
            )
            return outcome

        inserted, updated, immutable = applied
        outcome.inserted = inserted
        outcome.updated = updated
        outcome.rejected += len(immutable)
        result.inserted += inserted
        result.updated += updated
        for index, record, chunk_error in immutable:
            result.rejected.append(RejectedRecord.from_error(index, record, chunk_error))
        if immutable:
            logger.warning(
                "Writes against compressed chunks rejected",
                table=self.name,
                sub_batch=batch_index,
                records=len(immutable),
            )
        return outcome

    def _check_horizon(self, record: Any) -> None:
        if self._horizon is not None and record.time < self._horizon:
            raise RecordValidationError(
                f"time {record.time.isoformat()} is older than the retention horizon "
                f"{self._horizon.isoformat()}",
                field="time",
            )

    async def _lock_chunks(self, stack: contextlib.AsyncExitStack, chunks: list[Chunk]) -> None:
        for chunk in chunks:
            await stack.enter_async_context(chunk.lock)

    async def _apply(self, valid: list[tuple[int, Any]], now: datetime):
        plan: dict[datetime, list[tuple[int, Any]]] = {}
        for index, record in valid:
            plan.setdefault(self.chunk_start_for(record.time), []).append((index, record))

        chunks = [self._get_or_create_chunk(start) for start in sorted(plan)]

        async with contextlib.AsyncExitStack() as stack:
            await asyncio.wait_for(self._lock_chunks(stack, chunks), timeout=self.sub_batch_timeout)

            # No awaits until the rows are applied: the sub-batch lands atomically
            for chunk in chunks:
                if chunk.state == ChunkState.DROPPED:
                    raise StorageError(f"Chunk {chunk.chunk_id} was dropped while the batch waited")

            inserted = updated = 0
            immutable: list[tuple[int, Any, ChunkImmutableError]] = []
            previous: dict[tuple[datetime, Any], Any] = {}
            for chunk in chunks:
                items = plan[chunk.start]
                if chunk.is_compressed:
                    chunk_error = ChunkImmutableError(chunk.chunk_id, chunk.start, chunk.end)
                    immutable.extend((index, record, chunk_error) for index, record in items)
                    continue
                for _, record in items:
                    slot = (chunk.start, record.key)
                    if slot not in previous:
                        existing = chunk.get(record.key)
                        previous[slot] = dataclasses.replace(existing) if existing is not None else None
                    if chunk.upsert(record, self.schema.hot_fields, now):
                        inserted += 1
                    else:
                        updated += 1

            if previous and self.persistence is not None:
                await self._write_through(chunks, previous)

        if inserted or updated:
            moment = self._clock()
            self._prune_recent_writes(moment)
            self._recent_writes.append((moment, inserted + updated))
            await self._notify([key[1] for _, key in previous])
        return inserted, updated, immutable

    async def _write_through(self, chunks: list[Chunk], previous: dict[tuple[datetime, Any], Any]) -> None:
        keys_by_chunk: dict[datetime, list[Any]] = {}
        for start, key in previous:
            keys_by_chunk.setdefault(start, []).append(key)
        writes = [
            (chunk, [chunk.get(key) for key in keys_by_chunk[chunk.start]])
            for chunk in chunks
            if chunk.start in keys_by_chunk
        ]
        try:
            await self.persistence.save_rows(writes)
        except (StorageError, asyncio.CancelledError):
            for (start, key), row in previous.items():
                self._chunks[start].revert(key, row)
            raise

    async def _notify(self, times: list[datetime]) -> None:
        for listener in self._write_listeners:
            try:
                await listener(times)
            except StoreError as e:
                logger.error("Write listener failed", table=self.name, error=e.message)

    # ==================== Reads ====================

    async def query_range(self, entity_id: str, start: datetime, end: datetime,
                          limit: int | None = None) -> AsyncIterator[Any]:
        """Lazily yield one entity's records in [start, end], newest first."""
        if start > end:
            raise InvalidRangeError(f"start {start.isoformat()} is after end {end.isoformat()}")

        start = self._visible_start(start)
        chunks = self._overlapping(start, end, newest_first=True)
        estimated = sum(c.entity_row_count(entity_id) for c in chunks)
        self._check_cost(estimated, self.max_scan_rows)

        emitted = 0
        for chunk in chunks:
            if chunk.state == ChunkState.DROPPED:
                continue
            for row in chunk.entity_rows(entity_id, start, end):
                yield dataclasses.replace(row)
                emitted += 1
                if limit is not None and emitted >= limit:
                    return
            # Cooperative cancellation point between chunks
            await asyncio.sleep(0)

    async def fetch_range(self, entity_id: str, start: datetime, end: datetime,
                          limit: int | None = None) -> list[Any]:
        return [row async for row in self.query_range(entity_id, start, end, limit)]

    async def query_radius(self, center: GeoPoint, radius_meters: float, time_window: timedelta,
                           limit: int | None = None) -> list[tuple[Any, float]]:
        """Records within radius_meters (spherical) of center seen in the last time_window.

        Ordered by ascending distance, newest first on ties.
        """
        if radius_meters < 0:
            raise InvalidRangeError("radius_meters must not be negative")
        if time_window <= timedelta(0):
            raise InvalidRangeError("time_window must be positive")

        now = self._clock()
        start = self._visible_start(now - time_window)
        end = now + self.clock_skew_tolerance
        bbox = BoundingBox.from_center(center, radius_meters)

        candidates = [
            (chunk, list(chunk.spatial_index.candidates(bbox)))
            for chunk in self._overlapping(start, end, newest_first=True)
        ]
        self._check_cost(sum(len(keys) for _, keys in candidates), self.max_scan_rows)

        matches: list[tuple[Any, float]] = []
        for chunk, keys in candidates:
            if chunk.state == ChunkState.DROPPED:
                continue
            for row in chunk.records_for_keys(keys):
                if row.geom is None or not (start <= row.time <= end):
                    continue
                distance = haversine_meters(center, row.geom)
                if distance <= radius_meters:
                    matches.append((dataclasses.replace(row), distance))
            await asyncio.sleep(0)

        matches.sort(key=lambda m: (m[1], -m[0].time.timestamp()))
        return matches[:limit] if limit is not None else matches

    async def query_polygon(self, polygon: list[GeoPoint], time_window: timedelta,
                            limit: int | None = None) -> list[Any]:
        """Records whose point lies inside polygon (planar), newest first."""
        if len(polygon) < 3:
            raise InvalidRangeError("Polygon must have at least 3 points")
        if time_window <= timedelta(0):
            raise InvalidRangeError("time_window must be positive")

        now = self._clock()
        start = self._visible_start(now - time_window)
        end = now + self.clock_skew_tolerance
        bbox = BoundingBox.from_polygon(polygon)

        candidates = [
            (chunk, list(chunk.spatial_index.candidates(bbox)))
            for chunk in self._overlapping(start, end, newest_first=True)
        ]
        self._check_cost(sum(len(keys) for _, keys in candidates), self.max_scan_rows)

        matches = []
        for chunk, keys in candidates:
            if chunk.state == ChunkState.DROPPED:
                continue
            for row in chunk.records_for_keys(keys):
                if row.geom is None or not (start <= row.time <= end):
                    continue
                if point_in_polygon(row.geom, polygon):
                    matches.append(dataclasses.replace(row))
            await asyncio.sleep(0)

        matches.sort(key=lambda r: r.time, reverse=True)
        return matches[:limit] if limit is not None else matches

    def scan(self, start: datetime, end: datetime, *, entity_id: str | None = None,
             max_rows: int | None = None) -> list[Any]:
        """Snapshot of rows with start <= time < end.

        Runs without suspension points, so the result reflects whole
        sub-batches only.
        """
        if start > end:
            raise InvalidRangeError(f"start {start.isoformat()} is after end {end.isoformat()}")

        start = self._visible_start(start)
        if start >= end:
            return []
        chunks = [c for c in self._overlapping(start, end, closed=False) if c.state != ChunkState.DROPPED]

        if entity_id is not None:
            self._check_cost(sum(c.entity_row_count(entity_id) for c in chunks), max_rows)
            rows = []
            for chunk in chunks:
                rows.extend(r for r in chunk.entity_rows(entity_id, start, end) if r.time < end)
            return rows

        self._check_cost(sum(c.row_count for c in chunks), max_rows)
        rows = []
        for chunk in chunks:
            rows.extend(chunk.rows_between(start, end))
        return rows

    def latest_by_entity(self, since: datetime) -> dict[str, Any]:
        """Most recent visible record per entity at or after since."""
        now = self._clock()
        since = self._visible_start(since)
        until = now + self.clock_skew_tolerance

        latest: dict[str, Any] = {}
        for chunk in self._overlapping(since, until, newest_first=True):
            if chunk.state == ChunkState.DROPPED:
                continue
            for entity_id in chunk.entities:
                if entity_id in latest:
                    continue
                rows = chunk.entity_rows(entity_id, since, until)
                if rows:
                    latest[entity_id] = dataclasses.replace(rows[0])
        return latest

    # ==================== Chunk maintenance API ====================

    def chunks(self, include_sizes: bool = True) -> list[ChunkInfo]:
        """Metadata of live chunks, oldest first."""
        return [self._chunks[s].info(include_sizes=include_sizes) for s in self._starts]

    def _require_chunk(self, start: datetime) -> Chunk:
        chunk = self._chunks.get(start)
        if chunk is None:
            raise StorageError(f"No chunk starting at {start.isoformat()} in {self.name}")
        return chunk

    async def compress_chunk(self, start: datetime) -> bool:
        """Compress one chunk; False if it was already compressed."""
        chunk = self._require_chunk(start)
        async with chunk.lock:
            if chunk.state != ChunkState.UNCOMPRESSED:
                return False
            rows = chunk.row_count
            chunk.compress(self._clock())
            if self.persistence is not None:
                try:
                    await self.persistence.save_compressed(chunk)
                except (StorageError, asyncio.CancelledError):
                    chunk.decompress()
                    raise

        info = chunk.info()
        logger.info(
            "Chunk compressed",
            table=self.name,
            chunk_id=chunk.chunk_id,
            rows=rows,
            uncompressed_bytes=info.uncompressed_byte_size,
            compressed_bytes=info.byte_size,
        )
        return True

    async def decompress_chunk(self, start: datetime) -> bool:
        """Decompress one chunk so it accepts writes again."""
        chunk = self._require_chunk(start)
        async with chunk.lock:
            if chunk.state != ChunkState.COMPRESSED:
                return False
            compressed_at = chunk.compressed_at
            chunk.decompress()
            if self.persistence is not None:
                try:
                    await self.persistence.save_decompressed(chunk)
                except (StorageError, asyncio.CancelledError):
                    chunk.compress(compressed_at)
                    raise

        logger.info("Chunk decompressed", table=self.name, chunk_id=chunk.chunk_id)
        return True

    async def drop_chunks(self, older_than: datetime) -> list[ChunkInfo]:
        """Drop every chunk whose whole range ends at or before older_than."""
        dropped: list[ChunkInfo] = []
        for start in list(self._starts):
            chunk = self._chunks.get(start)
            if chunk is None:
                continue
            if chunk.end > older_than:
                break

            async with chunk.lock:
                if chunk.state == ChunkState.DROPPED:
                    continue
                info = chunk.info(include_sizes=False)
                if self.persistence is not None:
                    await self.persistence.delete_chunk(chunk.chunk_id)
                chunk.drop()
                del self._chunks[start]
                self._starts.remove(start)
            dropped.append(info)

        return dropped

    async def set_horizon(self, boundary: datetime) -> None:
        """Hide rows older than boundary from reads and reject writes behind it."""
        if self.persistence is not None and boundary != self._horizon:
            await self.persistence.save_horizon(self.name, boundary)
        self._horizon = boundary

    async def load(self) -> int:
        """Rebuild chunks and the horizon from durable storage. Returns chunks loaded."""
        if self.persistence is None:
            return 0

        snapshots, horizon = await self.persistence.load_table(self.name)
        for snapshot in snapshots:
            chunk = Chunk(
                table=self.name,
                start=snapshot.start,
                end=snapshot.end,
                record_type=self.schema.record_type,
                cell_size_degrees=self.cell_size_degrees,
            )
            if snapshot.state == ChunkState.COMPRESSED.value:
                chunk.restore_segments(snapshot.segments, snapshot.compressed_at)
            else:
                chunk.restore_rows(decode_row(payload, self.schema.record_type) for payload in snapshot.rows)
            if snapshot.start not in self._chunks:
                bisect.insort(self._starts, snapshot.start)
            self._chunks[snapshot.start] = chunk
        self._horizon = horizon

        logger.info(
            "Table loaded",
            table=self.name,
            chunks=len(snapshots),
            rows=sum(c.row_count for c in self._chunks.values()),
            horizon=horizon.isoformat() if horizon else None,
        )
        return len(snapshots)

    # ==================== Statistics ====================

    def _prune_recent_writes(self, now: datetime) -> None:
        cutoff = now - INGESTION_RATE_WINDOW
        while self._recent_writes and self._recent_writes[0][0] < cutoff:
            self._recent_writes.popleft()

    def ingestion_rate(self) -> int:
        """Rows written during the last minute of wall-clock time."""
        self._prune_recent_writes(self._clock())
        return sum(count for _, count in self._recent_writes)

    def stats(self) -> dict[str, Any]:
        infos = self.chunks()
        compressed = [i for i in infos if i.state == ChunkState.COMPRESSED]
        return {
            "table": self.name,
            "num_chunks": len(infos),
            "compressed_chunks": len(compressed),
            "row_count": sum(i.row_count for i in infos),
            "total_bytes": sum(i.byte_size for i in infos),
            "uncompressed_bytes": sum(i.uncompressed_byte_size for i in infos),
            "compressed_bytes_before": sum(i.uncompressed_byte_size for i in compressed),
            "compressed_bytes_after": sum(i.byte_size for i in compressed),
            "records_last_minute": self.ingestion_rate(),
            "horizon": self._horizon.isoformat() if self._horizon else None,
        }
