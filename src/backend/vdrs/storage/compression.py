"""Background compression of aged chunks."""

from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import structlog

from vdrs.storage.chunk import ChunkState, utcnow
from vdrs.storage.hypertable import BatchResult, Hypertable
from vdrs.storage.retention import RetentionPolicy

logger = structlog.get_logger()


class CompressionManager:
    """Demotes chunks older than a policy's compression age to read-only columnar form.

    Writes against a compressed chunk are rejected by the store with
    ChunkImmutableError. Retroactive fixes go through correct_records,
    which decompresses, applies the batch and compresses again.
    """

    def __init__(self, store: Hypertable, clock: Callable[[], datetime] | None = None):
        self.store = store
        self._clock = clock or utcnow
        self._correcting: set[datetime] = set()

    def eligible_chunks(self, policy: RetentionPolicy) -> list[datetime]:
        """Start instants of uncompressed chunks entirely older than the compression age."""
        boundary = self._clock() - policy.compression_age
        return [
            info.start
            for info in self.store.chunks(include_sizes=False)
            if info.state == ChunkState.UNCOMPRESSED
            and info.end <= boundary
            and info.start not in self._correcting
        ]

    async def scan_and_compress(self, policy: RetentionPolicy) -> int:
        """Compress every eligible chunk, returning how many were compressed.

        A chunk that fails is logged and left for the next sweep.
        """
        compressed = 0
        for start in self.eligible_chunks(policy):
            try:
                if await self.store.compress_chunk(start):
                    compressed += 1
            except Exception as e:
                logger.error(
                    "Chunk compression failed",
                    table=self.store.name,
                    chunk_start=start.isoformat(),
                    error=str(e),
                )

        if compressed:
            logger.info(
                "Compression sweep finished",
                table=self.store.name,
                tenant_id=policy.tenant_id,
                compressed_chunks=compressed,
            )
        return compressed

    async def correct_records(self, records: Sequence[Any]) -> BatchResult:
        """Apply a correction batch, temporarily decompressing the chunks it touches."""
        starts = sorted({self.store.chunk_start_for(r.time) for r in records if getattr(r, "time", None)})
        compressed_starts = [
            info.start
            for info in self.store.chunks(include_sizes=False)
            if info.start in starts and info.state == ChunkState.COMPRESSED
        ]

        self._correcting.update(compressed_starts)
        try:
            for start in compressed_starts:
                await self.store.decompress_chunk(start)

            result = await self.store.insert_batch(records)
        finally:
            try:
                for start in compressed_starts:
                    await self.store.compress_chunk(start)
            finally:
                self._correcting.difference_update(compressed_starts)

        logger.info(
            "Correction batch applied",
            table=self.store.name,
            records=len(records),
            recompressed_chunks=len(compressed_starts),
            inserted=result.inserted,
            updated=result.updated,
            rejected=len(result.rejected),
        )
        return result
