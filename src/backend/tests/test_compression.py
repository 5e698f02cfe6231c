"""Tests for CompressionManager."""

from datetime import timedelta

import pytest

from vdrs.storage.chunk import ChunkState
from vdrs.storage.retention import TELEMETRY_DATA_TYPE, RetentionPolicy

from conftest import NOW


def policy(compression_days: int = 7, retention_days: int = 730) -> RetentionPolicy:
    return RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, retention_days, compression_days)


class TestCompressionSweep:
    """Tests for scan_and_compress."""

    @pytest.mark.asyncio
    async def test_only_chunks_older_than_compression_age(self, storage, make_record):
        table = storage.telemetry
        await table.insert_batch([make_record(time=NOW - timedelta(days=d)) for d in (0, 3, 8, 10)])
        manager = storage.compression[TELEMETRY_DATA_TYPE]

        compressed = await manager.scan_and_compress(policy(compression_days=7))

        assert compressed == 2
        states = {info.start.date(): info.state for info in table.chunks()}
        assert states[(NOW - timedelta(days=10)).date()] == ChunkState.COMPRESSED
        assert states[(NOW - timedelta(days=8)).date()] == ChunkState.COMPRESSED
        assert states[(NOW - timedelta(days=3)).date()] == ChunkState.UNCOMPRESSED
        assert states[NOW.date()] == ChunkState.UNCOMPRESSED

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, storage, make_record):
        await storage.telemetry.insert_batch([make_record(time=NOW - timedelta(days=9))])
        manager = storage.compression[TELEMETRY_DATA_TYPE]

        assert await manager.scan_and_compress(policy()) == 1
        assert await manager.scan_and_compress(policy()) == 0

    @pytest.mark.asyncio
    async def test_chunk_straddling_boundary_not_compressed(self, storage, clock, make_record):
        # Chunk of NOW-7d ends after the boundary (NOW-7d at noon)
        await storage.telemetry.insert_batch([make_record(time=NOW - timedelta(days=7))])
        manager = storage.compression[TELEMETRY_DATA_TYPE]

        assert manager.eligible_chunks(policy()) == []

        clock.advance(hours=12)
        assert len(manager.eligible_chunks(policy())) == 1


class TestCorrections:
    """Tests for correct_records (decompress, modify, recompress)."""

    @pytest.mark.asyncio
    async def test_correction_applied_and_chunk_recompressed(self, storage, make_record):
        old = NOW - timedelta(days=10)
        table = storage.telemetry
        await table.insert_batch([make_record(time=old, speed=50.0)])
        manager = storage.compression[TELEMETRY_DATA_TYPE]
        await manager.scan_and_compress(policy())

        # A plain write is refused
        refused = await table.insert_batch([make_record(time=old, speed=55.0)])
        assert [r.code for r in refused.rejected] == ["chunk_immutable"]

        result = await manager.correct_records([make_record(time=old, speed=55.0)])

        assert result.updated == 1
        assert table.chunks()[0].state == ChunkState.COMPRESSED
        rows = await table.fetch_range("ABC-1234", old, old)
        assert rows[0].speed == 55.0

    @pytest.mark.asyncio
    async def test_correction_of_uncompressed_chunk_leaves_it_uncompressed(self, storage, make_record):
        manager = storage.compression[TELEMETRY_DATA_TYPE]

        result = await manager.correct_records([make_record(time=NOW - timedelta(hours=1))])

        assert result.inserted == 1
        assert storage.telemetry.chunks()[0].state == ChunkState.UNCOMPRESSED

    @pytest.mark.asyncio
    async def test_correction_can_insert_new_rows_into_old_chunk(self, storage, make_record):
        old = NOW - timedelta(days=10)
        await storage.telemetry.insert_batch([make_record(time=old)])
        manager = storage.compression[TELEMETRY_DATA_TYPE]
        await manager.scan_and_compress(policy())

        result = await manager.correct_records([make_record("LATE-0001", time=old + timedelta(minutes=5))])

        assert result.inserted == 1
        info = storage.telemetry.chunks()[0]
        assert info.state == ChunkState.COMPRESSED
        assert info.row_count == 2
