"""Vehicle telemetry, anomaly and device status records held by the chunked store.

These are plain dataclasses rather than ORM models: rows live in time
partitioned chunks managed by ``vdrs.storage``, which mirrors them into its
own backing tables as opaque payloads.
"""

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from vdrs.storage.errors import RecordValidationError
from vdrs.storage.geo import GeoPoint


class GpsStatus(str, Enum):
    """GPS fix status reported by the tracker."""

    VALID = "A"
    INVALID = "V"


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


# Default hot field set: retransmissions refine position, motion and payload
# and leave audit-only fields (imei, log_sequence, crc_checksum...) untouched.
DEFAULT_TELEMETRY_HOT_FIELDS = (
    "longitude",
    "latitude",
    "altitude",
    "speed",
    "gps_speed",
    "direction",
    "is_moving",
    "is_speeding",
    "raw_data",
)

DEFAULT_ANOMALY_HOT_FIELDS = (
    "status",
    "is_resolved",
    "resolved_at",
    "description",
)

# Device reports are periodic snapshots: a retransmission refreshes every reading
DEFAULT_DEVICE_STATUS_HOT_FIELDS = (
    "battery_level",
    "battery_voltage",
    "temperature",
    "csq",
    "network_type",
    "network_operator",
    "memory_usage",
    "storage_usage",
    "health_score",
    "needs_attention",
    "maintenance_due",
    "raw_status",
)


@dataclass
class TelemetryRecord:
    """One observation from one vehicle at one instant."""

    KEY_FIELDS = ("entity_id", "time")
    DATETIME_FIELDS = ("time", "created_at")
    DERIVED_FIELDS = ("geom",)

    entity_id: str
    time: datetime

    # Device identification
    imei: str | None = None
    imsi: str | None = None

    # Position
    longitude: float | None = None
    latitude: float | None = None
    altitude: float | None = None

    # Motion
    speed: float | None = None
    gps_speed: float | None = None
    direction: float | None = None
    mileage: float | None = None
    rpm: int | None = None

    # Fix and link quality
    gps_status: str | None = None
    gps_satellite_count: int | None = None
    is_moving: bool | None = None
    is_speeding: bool | None = None
    csq: int | None = None

    driver_id: str | None = None

    # Audit
    log_sequence: int | None = None
    crc_checksum: str | None = None

    # IO status
    ignition: bool | None = None
    engine_on: bool | None = None
    door_open: bool | None = None
    brake_signal: bool | None = None

    # Device status
    fuel_level: int | None = None
    battery_voltage: float | None = None
    engine_temperature: float | None = None

    # Opaque payloads, stored verbatim
    raw_data: dict[str, Any] | None = None
    raw_log_data: dict[str, Any] | None = None
    raw_device_status: dict[str, Any] | None = None
    raw_io_extended: dict[str, Any] | None = None

    data_source: str = "api_ingestion"
    created_at: datetime | None = None

    geom: GeoPoint | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        self.time = ensure_utc(self.time)
        if self.created_at is not None:
            self.created_at = ensure_utc(self.created_at)
        self.derive_point()

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.entity_id, self.time)

    def derive_point(self) -> None:
        """Recompute the spatial point from the coordinate columns."""
        self.geom = GeoPoint.from_coordinates(self.longitude, self.latitude)

    def derive_motion_flags(self, moving_threshold_kmh: float, speeding_threshold_kmh: float) -> None:
        """Fill is_moving/is_speeding from speed when the device did not report them."""
        if self.speed is None:
            return
        if self.is_moving is None:
            self.is_moving = self.speed > moving_threshold_kmh
        if self.is_speeding is None:
            self.is_speeding = self.speed > speeding_threshold_kmh

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation."""
        data = _record_to_dict(self)
        data["license_plate"] = data.pop("entity_id")
        data["geom"] = self.geom.to_wkt() if self.geom else None
        return data


@dataclass
class AnomalyEvent:
    """Exceptional condition detected for a vehicle; append-only stream."""

    KEY_FIELDS = ("entity_id", "time", "anomaly_id")
    DATETIME_FIELDS = ("time", "created_at", "resolved_at")
    DERIVED_FIELDS = ("geom",)

    entity_id: str
    time: datetime
    anomaly_type: str
    anomaly_id: int | None = None

    longitude: float | None = None
    latitude: float | None = None

    severity: str | None = None
    description: str | None = None
    status: str = AnomalyStatus.OPEN.value

    driver_id: str | None = None
    driver_attribution_method: str = "telemetry_lookup"
    driver_confidence_score: float = 1.0
    attribution_details: dict[str, Any] | None = None

    is_critical: bool = False
    is_resolved: bool = False

    created_at: datetime | None = None
    resolved_at: datetime | None = None

    geom: GeoPoint | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        self.time = ensure_utc(self.time)
        if self.created_at is not None:
            self.created_at = ensure_utc(self.created_at)
        if self.resolved_at is not None:
            self.resolved_at = ensure_utc(self.resolved_at)
        self.derive_point()

    @property
    def key(self) -> tuple[str, datetime, int | None]:
        return (self.entity_id, self.time, self.anomaly_id)

    def derive_point(self) -> None:
        self.geom = GeoPoint.from_coordinates(self.longitude, self.latitude)

    def to_dict(self) -> dict[str, Any]:
        data = _record_to_dict(self)
        data["license_plate"] = data.pop("entity_id")
        data["geom"] = self.geom.to_wkt() if self.geom else None
        return data


@dataclass
class DeviceStatusRecord:
    """Health report of one tracker device (keyed by IMEI) at one instant."""

    KEY_FIELDS = ("entity_id", "time")
    DATETIME_FIELDS = ("time", "created_at", "last_maintenance", "next_maintenance")
    DERIVED_FIELDS = ("geom",)
    ENTITY_LABEL = "imei"

    entity_id: str
    time: datetime

    imsi: str | None = None
    license_plate: str | None = None

    battery_level: int | None = None
    battery_voltage: float | None = None
    temperature: float | None = None

    csq: int | None = None
    network_type: str | None = None
    network_operator: str | None = None

    memory_usage: int | None = None
    storage_usage: int | None = None

    health_score: float | None = None
    needs_attention: bool = False
    maintenance_due: bool = False
    last_maintenance: datetime | None = None
    next_maintenance: datetime | None = None

    raw_status: dict[str, Any] | None = None
    created_at: datetime | None = None

    # Device reports carry no position; kept for the chunk's spatial index
    geom: GeoPoint | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        self.time = ensure_utc(self.time)
        for name in ("created_at", "last_maintenance", "next_maintenance"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, ensure_utc(value))

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.entity_id, self.time)

    def derive_point(self) -> None:
        self.geom = None

    def to_dict(self) -> dict[str, Any]:
        data = _record_to_dict(self)
        data["imei"] = data.pop("entity_id")
        return data


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_field_names(record_type: type) -> list[str]:
    """Stored (non-derived) field names of a record dataclass."""
    derived = set(getattr(record_type, "DERIVED_FIELDS", ()))
    return [f.name for f in fields(record_type) if f.name not in derived]


def _record_to_dict(record: Any) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for name in record_field_names(type(record)):
        value = getattr(record, name)
        if isinstance(value, datetime):
            value = value.isoformat()
        data[name] = value
    return data


# ==================== Validation ====================

# field -> (minimum, maximum, maximum is exclusive)
TELEMETRY_RANGES: dict[str, tuple[float | None, float | None, bool]] = {
    "longitude": (-180.0, 180.0, False),
    "latitude": (-90.0, 90.0, False),
    "speed": (0.0, None, False),
    "gps_speed": (0.0, 300.0, False),
    "direction": (0.0, 360.0, True),
    "mileage": (0.0, None, False),
    "rpm": (0, 10000, False),
    "gps_satellite_count": (0, None, False),
    "csq": (0, 31, False),
    "fuel_level": (0, 100, False),
}

TELEMETRY_MAX_LENGTHS = {
    "entity_id": 20,
    "imei": 15,
    "imsi": 15,
    "driver_id": 20,
    "crc_checksum": 100,
    "data_source": 50,
}

ANOMALY_RANGES: dict[str, tuple[float | None, float | None, bool]] = {
    "longitude": (-180.0, 180.0, False),
    "latitude": (-90.0, 90.0, False),
    "driver_confidence_score": (0.0, 1.0, False),
}

DEVICE_STATUS_RANGES: dict[str, tuple[float | None, float | None, bool]] = {
    "battery_level": (0, 100, False),
    "csq": (0, 31, False),
    "memory_usage": (0, None, False),
    "storage_usage": (0, None, False),
    "health_score": (0.0, 1.0, False),
}

DEVICE_STATUS_MAX_LENGTHS = {
    "entity_id": 15,
    "imsi": 15,
    "license_plate": 20,
    "network_type": 10,
    "network_operator": 50,
}


def _check_common(record: Any, now: datetime, clock_skew: timedelta) -> None:
    if not record.entity_id or not isinstance(record.entity_id, str):
        label = getattr(type(record), "ENTITY_LABEL", "license_plate")
        raise RecordValidationError(f"entity_id ({label}) is required", field="entity_id")
    if not isinstance(record.time, datetime):
        raise RecordValidationError("time is required", field="time")
    if record.time > now + clock_skew:
        raise RecordValidationError(
            f"time {record.time.isoformat()} is in the future beyond the allowed clock skew",
            field="time",
        )


def _check_ranges(record: Any, ranges: dict[str, tuple[float | None, float | None, bool]]) -> None:
    for name, (minimum, maximum, exclusive) in ranges.items():
        value = getattr(record, name)
        if value is None:
            continue
        # CRITICAL: bool is an int subclass; a boolean is never a valid measurement
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RecordValidationError(f"{name} must be numeric", field=name)
        if isinstance(value, float) and not math.isfinite(value):
            raise RecordValidationError(f"{name} must be finite", field=name)
        if minimum is not None and value < minimum:
            raise RecordValidationError(f"{name}={value} is below {minimum}", field=name)
        if maximum is not None and (value >= maximum if exclusive else value > maximum):
            raise RecordValidationError(f"{name}={value} is above {maximum}", field=name)


def validate_telemetry(record: TelemetryRecord, now: datetime, clock_skew: timedelta) -> None:
    """Raise RecordValidationError if the record violates a domain rule."""
    _check_common(record, now, clock_skew)
    _check_ranges(record, TELEMETRY_RANGES)

    for name, max_length in TELEMETRY_MAX_LENGTHS.items():
        value = getattr(record, name)
        if value is not None and len(value) > max_length:
            raise RecordValidationError(f"{name} exceeds {max_length} characters", field=name)

    if record.gps_status is not None and record.gps_status not in {s.value for s in GpsStatus}:
        raise RecordValidationError("gps_status must be 'A' or 'V'", field="gps_status")

    for name in ("altitude", "battery_voltage", "engine_temperature"):
        value = getattr(record, name)
        if value is not None and not math.isfinite(value):
            raise RecordValidationError(f"{name} must be finite", field=name)


def validate_anomaly(record: AnomalyEvent, now: datetime, clock_skew: timedelta) -> None:
    _check_common(record, now, clock_skew)
    _check_ranges(record, ANOMALY_RANGES)

    if not record.anomaly_type:
        raise RecordValidationError("anomaly_type is required", field="anomaly_type")
    if record.severity is not None and record.severity not in {s.value for s in AnomalySeverity}:
        raise RecordValidationError(f"unknown severity {record.severity!r}", field="severity")
    if record.status not in {s.value for s in AnomalyStatus}:
        raise RecordValidationError(f"unknown status {record.status!r}", field="status")


def validate_device_status(record: DeviceStatusRecord, now: datetime, clock_skew: timedelta) -> None:
    _check_common(record, now, clock_skew)
    _check_ranges(record, DEVICE_STATUS_RANGES)

    for name, max_length in DEVICE_STATUS_MAX_LENGTHS.items():
        value = getattr(record, name)
        if value is not None and len(value) > max_length:
            raise RecordValidationError(f"{name} exceeds {max_length} characters", field=name)

    for name in ("battery_voltage", "temperature"):
        value = getattr(record, name)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))
                                  or not math.isfinite(value)):
            raise RecordValidationError(f"{name} must be a finite number", field=name)
