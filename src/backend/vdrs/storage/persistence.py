"""Write-through persistence of chunks, rollups and table state.

Every mutation of the in-memory store is mirrored here inside one database
transaction: a sub-batch's rows, a chunk's compression or decompression, a
chunk drop, a horizon move, a refresh's changed buckets. ``load_*`` reads the
state back when the storage engine starts.
"""

import contextlib
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vdrs.models.storage import (
    StoredAggregateState,
    StoredChunk,
    StoredRollupBucket,
    StoredRow,
    StoredSegment,
    StoredTableState,
)
from vdrs.models.telemetry import ensure_utc
from vdrs.storage.chunk import Chunk, CompressedSegment, encode_row, row_key_string
from vdrs.storage.errors import StorageError

logger = structlog.get_logger()


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back naive
    return ensure_utc(value) if value is not None else None


@dataclass
class ChunkSnapshot:
    """One durable chunk as read back at startup."""

    chunk_id: str
    start: datetime
    end: datetime
    state: str
    compressed_at: datetime | None
    rows: list[bytes] = field(default_factory=list)
    segments: list[CompressedSegment] = field(default_factory=list)


@dataclass
class AggregateSnapshot:
    """Materialised buckets and refresh state of one aggregate."""

    buckets: list[bytes]
    watermark: datetime | None = None
    last_refreshed_at: datetime | None = None
    invalidated: bytes | None = None


class StoragePersistence:
    """Mirrors storage mutations into SQL tables through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @contextlib.asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Storage persistence failed", action=action, error=str(e))
            raise StorageError(f"Could not persist {action}: {e}") from e

    @staticmethod
    def _chunk_entry(chunk: Chunk) -> StoredChunk:
        return StoredChunk(
            chunk_id=chunk.chunk_id,
            table_name=chunk.table,
            range_start=chunk.start,
            range_end=chunk.end,
            state=chunk.state.value,
            compressed_at=chunk.compressed_at,
        )

    @staticmethod
    def _row_entries(chunk: Chunk, rows: Iterable[Any]) -> list[StoredRow]:
        return [
            StoredRow(
                chunk_id=chunk.chunk_id,
                row_key=row_key_string(row.key),
                entity_id=row.entity_id,
                time=row.time,
                payload=encode_row(row, chunk.record_type),
            )
            for row in rows
        ]

    # ==================== Chunks ====================

    async def save_rows(self, writes: list[tuple[Chunk, list[Any]]]) -> None:
        """Upsert the rows one sub-batch wrote, across all of its chunks."""
        async with self._transaction("sub-batch") as session:
            for chunk, rows in writes:
                await session.merge(self._chunk_entry(chunk))
                await session.execute(
                    delete(StoredRow).where(
                        StoredRow.chunk_id == chunk.chunk_id,
                        StoredRow.row_key.in_([row_key_string(row.key) for row in rows]),
                    )
                )
                session.add_all(self._row_entries(chunk, rows))

    async def save_compressed(self, chunk: Chunk) -> None:
        """Replace a chunk's rows with its compressed segments."""
        async with self._transaction("compression") as session:
            await session.merge(self._chunk_entry(chunk))
            await session.execute(delete(StoredRow).where(StoredRow.chunk_id == chunk.chunk_id))
            await session.execute(delete(StoredSegment).where(StoredSegment.chunk_id == chunk.chunk_id))
            session.add_all(
                StoredSegment(
                    chunk_id=chunk.chunk_id,
                    entity_id=segment.entity_id,
                    payload=segment.payload,
                    row_count=segment.row_count,
                    min_time=segment.min_time,
                    max_time=segment.max_time,
                    raw_size=segment.raw_size,
                )
                for segment in chunk.segments
            )

    async def save_decompressed(self, chunk: Chunk) -> None:
        """Replace a chunk's compressed segments with its rows."""
        async with self._transaction("decompression") as session:
            await session.merge(self._chunk_entry(chunk))
            await session.execute(delete(StoredSegment).where(StoredSegment.chunk_id == chunk.chunk_id))
            await session.execute(delete(StoredRow).where(StoredRow.chunk_id == chunk.chunk_id))
            session.add_all(self._row_entries(chunk, chunk.rows_between(chunk.start, chunk.end)))

    async def delete_chunk(self, chunk_id: str) -> None:
        async with self._transaction("chunk drop") as session:
            await session.execute(delete(StoredRow).where(StoredRow.chunk_id == chunk_id))
            await session.execute(delete(StoredSegment).where(StoredSegment.chunk_id == chunk_id))
            await session.execute(delete(StoredChunk).where(StoredChunk.chunk_id == chunk_id))

    async def save_horizon(self, table: str, horizon: datetime) -> None:
        async with self._transaction("horizon") as session:
            await session.merge(StoredTableState(table_name=table, horizon=horizon))

    async def load_table(self, table: str) -> tuple[list[ChunkSnapshot], datetime | None]:
        """Every durable chunk of table, oldest first, plus its horizon."""
        async with self._transaction("table load") as session:
            result = await session.execute(
                select(StoredChunk).where(StoredChunk.table_name == table).order_by(StoredChunk.range_start)
            )
            snapshots = [
                ChunkSnapshot(
                    chunk_id=stored.chunk_id,
                    start=_utc(stored.range_start),
                    end=_utc(stored.range_end),
                    state=stored.state,
                    compressed_at=_utc(stored.compressed_at),
                )
                for stored in result.scalars().all()
            ]

            for snapshot in snapshots:
                rows = await session.execute(
                    select(StoredRow.payload).where(StoredRow.chunk_id == snapshot.chunk_id)
                )
                snapshot.rows = list(rows.scalars().all())

                segments = await session.execute(
                    select(StoredSegment).where(StoredSegment.chunk_id == snapshot.chunk_id)
                )
                snapshot.segments = [
                    CompressedSegment(
                        entity_id=stored.entity_id,
                        payload=stored.payload,
                        row_count=stored.row_count,
                        min_time=_utc(stored.min_time),
                        max_time=_utc(stored.max_time),
                        raw_size=stored.raw_size,
                    )
                    for stored in segments.scalars().all()
                ]

            state = await session.get(StoredTableState, table)
            horizon = _utc(state.horizon) if state is not None else None

        return snapshots, horizon

    # ==================== Rollups ====================

    async def save_buckets(self, aggregate: str, upserts: dict[str, bytes], deletes: Iterable[str],
                           state: dict[str, Any]) -> None:
        """Write one refresh's changed buckets together with the aggregate state."""
        async with self._transaction("aggregate refresh") as session:
            removed = list(deletes) + list(upserts)
            if removed:
                await session.execute(
                    delete(StoredRollupBucket).where(
                        StoredRollupBucket.aggregate == aggregate,
                        StoredRollupBucket.bucket_key.in_(removed),
                    )
                )
            session.add_all(
                StoredRollupBucket(aggregate=aggregate, bucket_key=key, payload=payload)
                for key, payload in upserts.items()
            )
            await session.merge(StoredAggregateState(aggregate=aggregate, **state))

    async def save_aggregate_state(self, aggregate: str, state: dict[str, Any]) -> None:
        async with self._transaction("aggregate state") as session:
            await session.merge(StoredAggregateState(aggregate=aggregate, **state))

    async def delete_buckets(self, aggregate: str, keys: list[str]) -> None:
        if not keys:
            return
        async with self._transaction("bucket drop") as session:
            await session.execute(
                delete(StoredRollupBucket).where(
                    StoredRollupBucket.aggregate == aggregate,
                    StoredRollupBucket.bucket_key.in_(keys),
                )
            )

    async def load_aggregate(self, aggregate: str) -> AggregateSnapshot:
        async with self._transaction("aggregate load") as session:
            result = await session.execute(
                select(StoredRollupBucket.payload).where(StoredRollupBucket.aggregate == aggregate)
            )
            snapshot = AggregateSnapshot(buckets=list(result.scalars().all()))

            state = await session.get(StoredAggregateState, aggregate)
            if state is not None:
                snapshot.watermark = _utc(state.watermark)
                snapshot.last_refreshed_at = _utc(state.last_refreshed_at)
                snapshot.invalidated = state.invalidated

        return snapshot
