"""Create durable chunk and rollup storage; seed device status retention.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the chunk catalogue, row, segment and rollup tables."""
    op.create_table(
        "storage_chunks",
        sa.Column("chunk_id", sa.String(100), primary_key=True),
        sa.Column("table_name", sa.String(50), nullable=False),
        sa.Column("range_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("compressed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_storage_chunks_table_name", "storage_chunks", ["table_name"])

    op.create_table(
        "storage_rows",
        sa.Column("chunk_id", sa.String(100), primary_key=True),
        sa.Column("row_key", sa.String(100), primary_key=True),
        sa.Column("entity_id", sa.String(20), nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
    )

    op.create_table(
        "storage_segments",
        sa.Column("chunk_id", sa.String(100), primary_key=True),
        sa.Column("entity_id", sa.String(20), primary_key=True),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("row_count", sa.Integer, nullable=False),
        sa.Column("min_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("raw_size", sa.Integer, nullable=False),
    )

    op.create_table(
        "storage_tables",
        sa.Column("table_name", sa.String(50), primary_key=True),
        sa.Column("horizon", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "rollup_buckets",
        sa.Column("aggregate", sa.String(50), primary_key=True),
        sa.Column("bucket_key", sa.String(100), primary_key=True),
        sa.Column("payload", sa.LargeBinary, nullable=False),
    )

    op.create_table(
        "rollup_state",
        sa.Column("aggregate", sa.String(50), primary_key=True),
        sa.Column("watermark", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated", sa.LargeBinary, nullable=True),
    )

    retention_policies = sa.table(
        "retention_policies",
        sa.column("tenant_id", sa.String),
        sa.column("data_type", sa.String),
        sa.column("retention_days", sa.Integer),
        sa.column("compression_days", sa.Integer),
        sa.column("regulatory_requirement", sa.Text),
    )
    op.bulk_insert(
        retention_policies,
        [
            {"tenant_id": "default", "data_type": "device_status", "retention_days": 365,
             "compression_days": 3, "regulatory_requirement": "Standard 1-year device status retention"},
            {"tenant_id": "enterprise", "data_type": "device_status", "retention_days": 730,
             "compression_days": 7, "regulatory_requirement": "Enterprise 2-year device status retention"},
            {"tenant_id": "government", "data_type": "device_status", "retention_days": 1095,
             "compression_days": 14, "regulatory_requirement": "Government 3-year device status retention"},
        ],
    )


def downgrade() -> None:
    """Drop the storage tables and the device status seeds."""
    op.execute("DELETE FROM retention_policies WHERE data_type = 'device_status'")
    op.drop_table("rollup_state")
    op.drop_table("rollup_buckets")
    op.drop_table("storage_tables")
    op.drop_table("storage_segments")
    op.drop_table("storage_rows")
    op.drop_index("ix_storage_chunks_table_name", table_name="storage_chunks")
    op.drop_table("storage_chunks")
