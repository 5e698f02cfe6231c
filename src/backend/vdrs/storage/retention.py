"""Retention policies and the chunk-dropping sweep."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from vdrs.storage.chunk import utcnow
from vdrs.storage.errors import PolicyViolationError
from vdrs.storage.hypertable import Hypertable

if TYPE_CHECKING:
    from vdrs.storage.aggregates import ContinuousAggregateEngine

logger = structlog.get_logger()

TELEMETRY_DATA_TYPE = "vehicle_telemetry"
ANOMALY_DATA_TYPE = "vehicle_anomalies"
DEVICE_STATUS_DATA_TYPE = "device_status"
DATA_TYPES = (TELEMETRY_DATA_TYPE, ANOMALY_DATA_TYPE, DEVICE_STATUS_DATA_TYPE)


@dataclass(frozen=True)
class RetentionPolicy:
    """Per tenant, per data type lifetime rule."""

    tenant_id: str
    data_type: str
    retention: timedelta
    compression_age: timedelta
    regulatory_requirement: str | None = None

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise PolicyViolationError("tenant_id is required")
        if self.data_type not in DATA_TYPES:
            raise PolicyViolationError(
                f"Unknown data type {self.data_type!r}; expected one of {', '.join(DATA_TYPES)}"
            )
        if self.retention <= timedelta(0):
            raise PolicyViolationError("retention must be positive")
        if self.compression_age < timedelta(0):
            raise PolicyViolationError("compression age must not be negative")
        if self.compression_age > self.retention:
            raise PolicyViolationError(
                f"compression age ({self.compression_age.days} days) exceeds retention "
                f"({self.retention.days} days)"
            )

    @classmethod
    def from_days(cls, tenant_id: str, data_type: str, retention_days: int,
                  compression_days: int, regulatory_requirement: str | None = None) -> "RetentionPolicy":
        return cls(
            tenant_id=tenant_id,
            data_type=data_type,
            retention=timedelta(days=retention_days),
            compression_age=timedelta(days=compression_days),
            regulatory_requirement=regulatory_requirement,
        )

    @property
    def retention_days(self) -> int:
        return self.retention.days

    @property
    def compression_days(self) -> int:
        return self.compression_age.days

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "data_type": self.data_type,
            "retention_days": self.retention_days,
            "compression_days": self.compression_days,
            "regulatory_requirement": self.regulatory_requirement,
        }


DEFAULT_POLICIES = (
    RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, 730, 7, "Standard 2-year retention"),
    RetentionPolicy.from_days("enterprise", TELEMETRY_DATA_TYPE, 2555, 30, "Enterprise 7-year retention"),
    RetentionPolicy.from_days("government", TELEMETRY_DATA_TYPE, 3650, 90, "Government 10-year retention"),
    RetentionPolicy.from_days("default", ANOMALY_DATA_TYPE, 1825, 30, "Standard 5-year anomaly retention"),
    RetentionPolicy.from_days("enterprise", ANOMALY_DATA_TYPE, 2555, 60, "Enterprise 7-year anomaly retention"),
    RetentionPolicy.from_days("government", ANOMALY_DATA_TYPE, 3650, 180, "Government 10-year anomaly retention"),
    RetentionPolicy.from_days("default", DEVICE_STATUS_DATA_TYPE, 365, 3, "Standard 1-year device status retention"),
    RetentionPolicy.from_days("enterprise", DEVICE_STATUS_DATA_TYPE, 730, 7, "Enterprise 2-year device status retention"),
    RetentionPolicy.from_days("government", DEVICE_STATUS_DATA_TYPE, 1095, 14, "Government 3-year device status retention"),
)


def default_policy(tenant_id: str, data_type: str) -> RetentionPolicy:
    """Seeded policy for tenant and data type, falling back to the default tenant."""
    by_key = {(p.tenant_id, p.data_type): p for p in DEFAULT_POLICIES}
    policy = by_key.get((tenant_id, data_type)) or by_key.get(("default", data_type))
    if policy is None:
        raise PolicyViolationError(f"No default retention policy for {data_type!r}")
    return policy


class RetentionManager:
    """Drops whole chunks once they are entirely outside the retention window."""

    def __init__(
        self,
        store: Hypertable,
        aggregates: "ContinuousAggregateEngine | None" = None,
        cascade: bool = True,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.aggregates = aggregates
        self.cascade = cascade
        self._clock = clock or utcnow

    def boundary(self, policy: RetentionPolicy) -> datetime:
        return self._clock() - policy.retention

    async def apply_policy(self, policy: RetentionPolicy) -> int:
        """Drop expired chunks and hide rows older than the boundary. Returns chunks dropped."""
        boundary = self.boundary(policy)
        previous_horizon = self.store.horizon
        await self.store.set_horizon(boundary)

        dropped = await self.store.drop_chunks(boundary)

        removed_buckets = 0
        if dropped and self.cascade and self.aggregates is not None:
            cutoff = max(info.end for info in dropped)
            removed_buckets = await self.aggregates.drop_buckets_before(cutoff)

        if not dropped:
            if boundary != previous_horizon:
                logger.info(
                    "Retention horizon moved",
                    table=self.store.name,
                    tenant_id=policy.tenant_id,
                    retention_days=policy.retention_days,
                    previous_horizon=previous_horizon.isoformat() if previous_horizon else None,
                    boundary=boundary.isoformat(),
                    dropped_chunks=[],
                )
            return 0

        logger.info(
            "Retention policy applied",
            table=self.store.name,
            tenant_id=policy.tenant_id,
            retention_days=policy.retention_days,
            previous_horizon=previous_horizon.isoformat() if previous_horizon else None,
            boundary=boundary.isoformat(),
            dropped_chunks=[info.chunk_id for info in dropped],
            dropped_rows=sum(info.row_count for info in dropped),
            removed_buckets=removed_buckets,
        )
        return len(dropped)
