"""VDRS models.

Telemetry and anomaly records are dataclasses held by the chunked store.
The retention policy control table (``vdrs.models.retention_policy``) is a
SQLAlchemy model and is imported explicitly where the database is used.
"""

from vdrs.models.base import Base, TimestampMixin
from vdrs.models.telemetry import (
    AnomalyEvent,
    AnomalySeverity,
    AnomalyStatus,
    GpsStatus,
    TelemetryRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "TelemetryRecord",
    "AnomalyEvent",
    "GpsStatus",
    "AnomalySeverity",
    "AnomalyStatus",
]
