"""Create retention_policies control table with seeded defaults.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create retention_policies and seed the per-tenant defaults."""
    retention_policies = op.create_table(
        "retention_policies",
        sa.Column("tenant_id", sa.String(50), primary_key=True),
        sa.Column("data_type", sa.String(50), primary_key=True),
        sa.Column("retention_days", sa.Integer, nullable=False),
        sa.Column("compression_days", sa.Integer, nullable=False),
        sa.Column("regulatory_requirement", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("retention_days > 0", name="ck_retention_policies_retention_positive"),
        sa.CheckConstraint(
            "compression_days >= 0 AND compression_days <= retention_days",
            name="ck_retention_policies_compression_within_retention",
        ),
    )

    op.bulk_insert(
        retention_policies,
        [
            {"tenant_id": "default", "data_type": "vehicle_telemetry", "retention_days": 730,
             "compression_days": 7, "regulatory_requirement": "Standard 2-year retention"},
            {"tenant_id": "enterprise", "data_type": "vehicle_telemetry", "retention_days": 2555,
             "compression_days": 30, "regulatory_requirement": "Enterprise 7-year retention"},
            {"tenant_id": "government", "data_type": "vehicle_telemetry", "retention_days": 3650,
             "compression_days": 90, "regulatory_requirement": "Government 10-year retention"},
            {"tenant_id": "default", "data_type": "vehicle_anomalies", "retention_days": 1825,
             "compression_days": 30, "regulatory_requirement": "Standard 5-year anomaly retention"},
            {"tenant_id": "enterprise", "data_type": "vehicle_anomalies", "retention_days": 2555,
             "compression_days": 60, "regulatory_requirement": "Enterprise 7-year anomaly retention"},
            {"tenant_id": "government", "data_type": "vehicle_anomalies", "retention_days": 3650,
             "compression_days": 180, "regulatory_requirement": "Government 10-year anomaly retention"},
        ],
    )


def downgrade() -> None:
    """Drop retention_policies."""
    op.drop_table("retention_policies")
