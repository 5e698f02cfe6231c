"""Retention policy control table."""

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from vdrs.models.base import Base, TimestampMixin
from vdrs.storage.retention import RetentionPolicy


class RetentionPolicyRecord(Base, TimestampMixin):
    """Per tenant, per data type retention and compression ages in days."""

    __tablename__ = "retention_policies"

    tenant_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    data_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False)
    compression_days: Mapped[int] = mapped_column(Integer, nullable=False)
    regulatory_requirement: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RetentionPolicyRecord(tenant_id={self.tenant_id}, data_type={self.data_type}, "
            f"retention_days={self.retention_days}, compression_days={self.compression_days})>"
        )

    def to_policy(self) -> RetentionPolicy:
        return RetentionPolicy.from_days(
            tenant_id=self.tenant_id,
            data_type=self.data_type,
            retention_days=self.retention_days,
            compression_days=self.compression_days,
            regulatory_requirement=self.regulatory_requirement,
        )
