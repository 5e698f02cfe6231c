"""Time-range partitions of a hypertable and their columnar compressed form."""

import asyncio
import bisect
import dataclasses
from collections.abc import Hashable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import msgpack
import zstandard as zstd

from vdrs.models.telemetry import record_field_names
from vdrs.storage.errors import StorageError
from vdrs.storage.spatial_index import GridIndex

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ZSTD_LEVEL = 3
SEGMENT_CACHE_SIZE = 64


class ChunkState(str, Enum):
    """Lifecycle state of a chunk."""

    UNCOMPRESSED = "uncompressed"
    COMPRESSED = "compressed"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ChunkInfo:
    """Snapshot of chunk metadata for maintenance and status reporting."""

    chunk_id: str
    table: str
    start: datetime
    end: datetime
    state: ChunkState
    row_count: int
    byte_size: int
    uncompressed_byte_size: int
    compressed_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "table": self.table,
            "range_start": self.start.isoformat(),
            "range_end": self.end.isoformat(),
            "state": self.state.value,
            "row_count": self.row_count,
            "byte_size": self.byte_size,
            "uncompressed_byte_size": self.uncompressed_byte_size,
            "compressed_at": self.compressed_at.isoformat() if self.compressed_at else None,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_micros(value: datetime) -> int:
    delta = value - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


def encode_columns(rows: list[Any], record_type: type) -> dict[str, Any]:
    """Columnar layout of rows already ordered by time descending.

    Timestamps are delta encoded against the first (newest) row; the other
    datetime columns are stored as epoch microseconds.
    """
    names = record_field_names(record_type)
    datetime_fields = set(getattr(record_type, "DATETIME_FIELDS", ()))

    columns: dict[str, Any] = {}
    for name in names:
        values = [getattr(row, name) for row in rows]
        if name == "time":
            micros = [to_micros(v) for v in values]
            base = micros[0] if micros else 0
            columns["time"] = {
                "base": base,
                "deltas": [base - m for m in micros],
            }
        elif name in datetime_fields:
            columns[name] = [to_micros(v) if v is not None else None for v in values]
        else:
            columns[name] = values
    return columns


def decode_columns(columns: dict[str, Any], record_type: type) -> list[Any]:
    """Rebuild records (derived columns included) from a columnar layout."""
    names = record_field_names(record_type)
    datetime_fields = set(getattr(record_type, "DATETIME_FIELDS", ()))

    time_column = columns["time"]
    base = time_column["base"]
    times = [from_micros(base - delta) for delta in time_column["deltas"]]

    rows = []
    for i, moment in enumerate(times):
        values: dict[str, Any] = {"time": moment}
        for name in names:
            if name == "time":
                continue
            value = columns[name][i]
            if name in datetime_fields and value is not None:
                value = from_micros(value)
            values[name] = value
        rows.append(record_type(**values))
    return rows


def encode_row(row: Any, record_type: type) -> bytes:
    """Single-row msgpack payload of a durable uncompressed row."""
    return msgpack.packb(encode_columns([row], record_type), use_bin_type=True)


def decode_row(payload: bytes, record_type: type) -> Any:
    columns = msgpack.unpackb(payload, raw=False, strict_map_key=False)
    return decode_columns(columns, record_type)[0]


def row_key_string(key: tuple) -> str:
    """Stable text form of a record key: entity, epoch micros, then any extra parts."""
    entity_id, moment, *rest = key
    return "|".join([entity_id, str(to_micros(moment)), *(str(part) for part in rest)])


class CompressedSegment:
    """All rows of one entity inside a compressed chunk, newest first."""

    def __init__(self, entity_id: str, payload: bytes, row_count: int,
                 min_time: datetime, max_time: datetime, raw_size: int):
        self.entity_id = entity_id
        self.payload = payload
        self.row_count = row_count
        self.min_time = min_time
        self.max_time = max_time
        self.raw_size = raw_size

    @classmethod
    def encode(cls, entity_id: str, rows: list[Any], record_type: type) -> "CompressedSegment":
        ordered = sorted(rows, key=lambda r: r.key[1:], reverse=True)
        packed = msgpack.packb(encode_columns(ordered, record_type), use_bin_type=True)
        payload = zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(packed)
        return cls(
            entity_id=entity_id,
            payload=payload,
            row_count=len(ordered),
            min_time=ordered[-1].time,
            max_time=ordered[0].time,
            raw_size=len(packed),
        )

    def decode(self, record_type: type) -> list[Any]:
        packed = zstd.ZstdDecompressor().decompress(self.payload)
        columns = msgpack.unpackb(packed, raw=False, strict_map_key=False)
        return decode_columns(columns, record_type)


class Chunk:
    """A [start, end) partition of one table.

    Uncompressed chunks keep rows in a key map plus a per-entity sorted key
    list. Compressed chunks keep one CompressedSegment per entity and are
    read-only; the spatial index survives compression unchanged.
    """

    def __init__(self, table: str, start: datetime, end: datetime,
                 record_type: type, cell_size_degrees: float = 0.01):
        self.table = table
        self.start = start
        self.end = end
        self.record_type = record_type
        self.chunk_id = f"{table}_{start:%Y%m%d%H%M%S}"
        self.state = ChunkState.UNCOMPRESSED
        self.lock = asyncio.Lock()
        self.spatial_index = GridIndex(cell_size_degrees)
        self.compressed_at: datetime | None = None

        self._rows: dict[Hashable, Any] = {}
        self._entity_keys: dict[str, list[tuple]] = {}
        self._segments: dict[str, CompressedSegment] = {}
        self._segment_cache: dict[str, dict[Hashable, Any]] = {}

    def __repr__(self) -> str:
        return f"<Chunk(id={self.chunk_id}, state={self.state.value}, rows={self.row_count})>"

    # ==================== Metadata ====================

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @property
    def is_compressed(self) -> bool:
        return self.state == ChunkState.COMPRESSED

    @property
    def row_count(self) -> int:
        if self.is_compressed:
            return sum(s.row_count for s in self._segments.values())
        return len(self._rows)

    @property
    def entities(self) -> list[str]:
        if self.is_compressed:
            return list(self._segments)
        return list(self._entity_keys)

    def entity_row_count(self, entity_id: str) -> int:
        if self.is_compressed:
            segment = self._segments.get(entity_id)
            return segment.row_count if segment else 0
        return len(self._entity_keys.get(entity_id, ()))

    def info(self, include_sizes: bool = True) -> ChunkInfo:
        if not include_sizes:
            byte_size = raw_size = 0
        elif self.is_compressed:
            byte_size = sum(len(s.payload) for s in self._segments.values())
            raw_size = sum(s.raw_size for s in self._segments.values())
        else:
            raw_size = self._raw_size()
            byte_size = raw_size
        return ChunkInfo(
            chunk_id=self.chunk_id,
            table=self.table,
            start=self.start,
            end=self.end,
            state=self.state,
            row_count=self.row_count,
            byte_size=byte_size,
            uncompressed_byte_size=raw_size,
            compressed_at=self.compressed_at,
        )

    def _raw_size(self) -> int:
        total = 0
        for entity_id, keys in self._entity_keys.items():
            rows = [self._rows[k] for k in reversed(keys)]
            total += len(msgpack.packb(encode_columns(rows, self.record_type), use_bin_type=True))
        return total

    def _ensure_available(self) -> None:
        if self.state == ChunkState.DROPPED:
            raise StorageError(f"Chunk {self.chunk_id} has been dropped")

    # ==================== Writes ====================

    def upsert(self, record: Any, hot_fields: Iterable[str], now: datetime) -> bool:
        """Insert record or merge its hot fields into the existing row.

        Returns True for an insert, False for a merge. Callers must hold
        ``self.lock`` and must have checked the chunk is uncompressed.
        """
        self._ensure_available()
        key = record.key
        existing = self._rows.get(key)

        if existing is None:
            row = dataclasses.replace(record)
            if hasattr(row, "created_at") and row.created_at is None:
                row.created_at = now
            row.derive_point()
            self._rows[key] = row
            entity_keys = self._entity_keys.setdefault(row.entity_id, [])
            bisect.insort(entity_keys, key)
            self.spatial_index.upsert(key, row.geom)
            return True

        for name in hot_fields:
            setattr(existing, name, getattr(record, name))
        existing.derive_point()
        self.spatial_index.upsert(key, existing.geom)
        return False

    def revert(self, key: Hashable, previous: Any | None) -> None:
        """Put back the row held under key before an upsert (None removes it)."""
        if previous is not None:
            self._rows[key] = previous
            self.spatial_index.upsert(key, previous.geom)
            return

        row = self._rows.pop(key, None)
        if row is None:
            return
        entity_keys = self._entity_keys.get(row.entity_id, [])
        index = bisect.bisect_left(entity_keys, key)
        if index < len(entity_keys) and entity_keys[index] == key:
            del entity_keys[index]
        if not entity_keys:
            self._entity_keys.pop(row.entity_id, None)
        self.spatial_index.remove(key)

    def restore_rows(self, rows: Iterable[Any]) -> None:
        """Load rows read back from durable storage into an empty uncompressed chunk."""
        for row in rows:
            key = row.key
            self._rows[key] = row
            bisect.insort(self._entity_keys.setdefault(row.entity_id, []), key)
            self.spatial_index.upsert(key, row.geom)

    # ==================== Reads ====================

    def get(self, key: Hashable) -> Any | None:
        self._ensure_available()
        if self.is_compressed:
            return self._segment_rows(key[0]).get(key)
        return self._rows.get(key)

    def entity_rows(self, entity_id: str, start: datetime, end: datetime) -> list[Any]:
        """Rows of one entity with start <= time <= end, newest first."""
        self._ensure_available()
        if self.is_compressed:
            segment = self._segments.get(entity_id)
            if segment is None or segment.max_time < start or segment.min_time > end:
                return []
            rows = self._segment_rows(entity_id).values()
            return [r for r in rows if start <= r.time <= end]

        keys = self._entity_keys.get(entity_id)
        if not keys:
            return []
        lo = bisect.bisect_left(keys, (entity_id, start))
        hi = lo
        while hi < len(keys) and keys[hi][1] <= end:
            hi += 1
        return [self._rows[k] for k in reversed(keys[lo:hi])]

    def rows_between(self, start: datetime, end: datetime) -> list[Any]:
        """All rows with start <= time < end (half-open), any order."""
        self._ensure_available()
        if self.is_compressed:
            result = []
            for entity_id in self._segments:
                result.extend(
                    r for r in self._segment_rows(entity_id).values() if start <= r.time < end
                )
            return result
        return [r for r in self._rows.values() if start <= r.time < end]

    def records_for_keys(self, keys: Iterable[Hashable]) -> Iterator[Any]:
        self._ensure_available()
        for key in keys:
            row = self.get(key)
            if row is not None:
                yield row

    def _segment_rows(self, entity_id: str) -> dict[Hashable, Any]:
        cached = self._segment_cache.get(entity_id)
        if cached is not None:
            return cached
        segment = self._segments.get(entity_id)
        if segment is None:
            return {}
        # Decoded rows keep time-descending order from the segment layout
        decoded = {row.key: row for row in segment.decode(self.record_type)}
        if len(self._segment_cache) >= SEGMENT_CACHE_SIZE:
            self._segment_cache.clear()
        self._segment_cache[entity_id] = decoded
        return decoded

    # ==================== Lifecycle ====================

    def compress(self, now: datetime) -> None:
        """Re-encode rows as one compressed segment per entity. Hold ``self.lock``."""
        self._ensure_available()
        if self.is_compressed:
            return

        segments: dict[str, CompressedSegment] = {}
        for entity_id, keys in self._entity_keys.items():
            rows = [self._rows[k] for k in keys]
            if rows:
                segments[entity_id] = CompressedSegment.encode(entity_id, rows, self.record_type)

        self._segments = segments
        self._rows = {}
        self._entity_keys = {}
        self._segment_cache = {}
        self.state = ChunkState.COMPRESSED
        self.compressed_at = now

    def restore_segments(self, segments: Iterable[CompressedSegment], compressed_at: datetime | None) -> None:
        """Load compressed segments read back from durable storage."""
        self._segments = {segment.entity_id: segment for segment in segments}
        self._rows = {}
        self._entity_keys = {}
        self._segment_cache = {}
        self.state = ChunkState.COMPRESSED
        self.compressed_at = compressed_at
        for segment in self._segments.values():
            for row in segment.decode(self.record_type):
                self.spatial_index.upsert(row.key, row.geom)

    @property
    def segments(self) -> list[CompressedSegment]:
        return list(self._segments.values())

    def decompress(self) -> None:
        """Restore the row map from the compressed segments. Hold ``self.lock``."""
        self._ensure_available()
        if not self.is_compressed:
            return

        rows: dict[Hashable, Any] = {}
        entity_keys: dict[str, list[tuple]] = {}
        for entity_id, segment in self._segments.items():
            decoded = segment.decode(self.record_type)
            for row in decoded:
                rows[row.key] = row
            entity_keys[entity_id] = sorted(row.key for row in decoded)

        self._rows = rows
        self._entity_keys = entity_keys
        self._segments = {}
        self._segment_cache = {}
        self.state = ChunkState.UNCOMPRESSED
        self.compressed_at = None

    def drop(self) -> None:
        """Detach all data. Hold ``self.lock``."""
        self._rows = {}
        self._entity_keys = {}
        self._segments = {}
        self._segment_cache = {}
        self.spatial_index = GridIndex(self.spatial_index.cell_size)
        self.state = ChunkState.DROPPED
