"""Durable backing tables of the chunked store and its rollups.

Uncompressed chunks keep one row per record; compressed chunks keep one
segment per entity holding the same msgpack + zstandard payload the
in-memory chunk serves reads from.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from vdrs.models.base import Base


class StoredChunk(Base):
    """Chunk catalogue: range and lifecycle state of every live chunk."""

    __tablename__ = "storage_chunks"

    chunk_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    range_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    range_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    compressed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<StoredChunk(chunk_id={self.chunk_id}, state={self.state})>"


class StoredRow(Base):
    """One record of an uncompressed chunk."""

    __tablename__ = "storage_rows"

    chunk_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    row_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(20), nullable=False)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class StoredSegment(Base):
    """All rows of one entity inside a compressed chunk."""

    __tablename__ = "storage_segments"

    chunk_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(20), primary_key=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    min_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    raw_size: Mapped[int] = mapped_column(Integer, nullable=False)


class StoredTableState(Base):
    """Per table visibility horizon set by retention."""

    __tablename__ = "storage_tables"

    table_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    horizon: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StoredRollupBucket(Base):
    """One materialised continuous aggregate bucket."""

    __tablename__ = "rollup_buckets"

    aggregate: Mapped[str] = mapped_column(String(50), primary_key=True)
    bucket_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


class StoredAggregateState(Base):
    """Watermark and pending invalidations of one continuous aggregate."""

    __tablename__ = "rollup_state"

    aggregate: Mapped[str] = mapped_column(String(50), primary_key=True)
    watermark: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invalidated: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
