"""Tests for retention policies and RetentionManager."""

from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from vdrs.storage.errors import PolicyViolationError
from vdrs.storage.retention import (
    ANOMALY_DATA_TYPE,
    DEFAULT_POLICIES,
    DEVICE_STATUS_DATA_TYPE,
    TELEMETRY_DATA_TYPE,
    RetentionPolicy,
    default_policy,
)
from vdrs.storage.aggregates import VEHICLE_DAILY, VEHICLE_HOURLY

from conftest import NOW


class TestRetentionPolicy:
    """Tests for RetentionPolicy invariants."""

    def test_from_days(self):
        policy = RetentionPolicy.from_days("acme", TELEMETRY_DATA_TYPE, 30, 7, "Test")

        assert policy.retention == timedelta(days=30)
        assert policy.compression_age == timedelta(days=7)
        assert policy.to_dict() == {
            "tenant_id": "acme",
            "data_type": TELEMETRY_DATA_TYPE,
            "retention_days": 30,
            "compression_days": 7,
            "regulatory_requirement": "Test",
        }

    def test_compression_after_retention_rejected(self):
        with pytest.raises(PolicyViolationError):
            RetentionPolicy.from_days("acme", TELEMETRY_DATA_TYPE, 7, 30)

    @pytest.mark.parametrize(
        "tenant_id,data_type,retention_days,compression_days",
        [
            ("", TELEMETRY_DATA_TYPE, 30, 7),
            ("acme", "engine_logs", 30, 7),
            ("acme", TELEMETRY_DATA_TYPE, 0, 0),
            ("acme", TELEMETRY_DATA_TYPE, 30, -1),
        ],
    )
    def test_invalid_policies(self, tenant_id, data_type, retention_days, compression_days):
        with pytest.raises(PolicyViolationError):
            RetentionPolicy.from_days(tenant_id, data_type, retention_days, compression_days)

    def test_compression_equal_to_retention_allowed(self):
        policy = RetentionPolicy.from_days("acme", ANOMALY_DATA_TYPE, 30, 30)
        assert policy.compression_days == 30

    def test_seeded_defaults(self):
        telemetry = default_policy("default", TELEMETRY_DATA_TYPE)

        assert len(DEFAULT_POLICIES) == 9
        assert telemetry.retention_days == 730
        assert telemetry.compression_days == 7
        assert telemetry.regulatory_requirement == "Standard 2-year retention"
        assert default_policy("government", ANOMALY_DATA_TYPE).retention_days == 3650

    def test_unknown_tenant_falls_back_to_default(self):
        assert default_policy("unknown-tenant", ANOMALY_DATA_TYPE).retention_days == 1825


class TestRetentionManager:
    """Tests for apply_policy."""

    @pytest.mark.asyncio
    async def test_rows_older_than_retention_disappear(self, storage, make_record):
        """7-day retention: an 8-day-old row is gone, a 6-day-old row is kept."""
        table = storage.telemetry
        await table.insert_batch([
            make_record(time=NOW - timedelta(days=8)),
            make_record(time=NOW - timedelta(days=6)),
        ])
        policy = RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, 7, 1)

        dropped = await storage.retention[TELEMETRY_DATA_TYPE].apply_policy(policy)

        assert dropped == 1
        rows = await table.fetch_range("ABC-1234", NOW - timedelta(days=30), NOW)
        assert [r.time for r in rows] == [NOW - timedelta(days=6)]

    @pytest.mark.asyncio
    async def test_rows_past_boundary_hidden_in_kept_chunk(self, storage, make_record):
        table = storage.telemetry
        # Both rows share the chunk that straddles the 7-day boundary
        inside = NOW - timedelta(days=7) + timedelta(hours=1)
        outside = NOW - timedelta(days=7) - timedelta(hours=1)
        await table.insert_batch([make_record(time=inside), make_record(time=outside)])
        policy = RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, 7, 1)

        dropped = await storage.retention[TELEMETRY_DATA_TYPE].apply_policy(policy)

        assert dropped == 0
        rows = await table.fetch_range("ABC-1234", NOW - timedelta(days=30), NOW)
        assert [r.time for r in rows] == [inside]
        assert table.horizon == NOW - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_retention_cascades_to_rollups(self, storage, clock, make_record):
        table = storage.telemetry
        old = NOW - timedelta(days=9)
        await table.insert_batch([make_record(time=old), make_record(time=NOW - timedelta(hours=3))])
        # Materialise the old bucket while it was still inside the refresh lag window
        clock.set(old + timedelta(hours=2))
        await storage.aggregates.refresh(VEHICLE_HOURLY)
        clock.set(NOW)
        await storage.aggregates.refresh(VEHICLE_HOURLY)
        before = storage.aggregates.buckets(VEHICLE_HOURLY, old - timedelta(days=1), NOW)
        assert [b.bucket_start for b in before] == [NOW - timedelta(hours=3), old]

        policy = RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, 7, 1)
        await storage.retention[TELEMETRY_DATA_TYPE].apply_policy(policy)

        remaining = storage.aggregates.buckets(VEHICLE_HOURLY, old - timedelta(days=1), NOW)
        assert [b.bucket_start for b in remaining] == [NOW - timedelta(hours=3)]

    @pytest.mark.asyncio
    async def test_nothing_to_drop(self, storage, make_record):
        await storage.telemetry.insert_batch([make_record()])
        policy = RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, 7, 1)

        assert await storage.retention[TELEMETRY_DATA_TYPE].apply_policy(policy) == 0
        assert len(storage.telemetry.chunks()) == 1

    @pytest.mark.asyncio
    async def test_anomaly_retention_independent(self, storage, make_anomaly, make_record):
        await storage.anomalies.insert_batch([make_anomaly(time=NOW - timedelta(days=40))])
        await storage.telemetry.insert_batch([make_record(time=NOW - timedelta(days=40))])
        policy = RetentionPolicy.from_days("default", ANOMALY_DATA_TYPE, 14, 7)

        await storage.retention[ANOMALY_DATA_TYPE].apply_policy(policy)

        assert storage.anomalies.chunks() == []
        assert len(storage.telemetry.chunks()) == 1
        assert storage.aggregates.get(VEHICLE_DAILY).buckets == {}

    @pytest.mark.asyncio
    async def test_horizon_move_logged_without_drops(self, storage, clock, make_record):
        await storage.telemetry.insert_batch([make_record()])
        policy = RetentionPolicy.from_days("default", TELEMETRY_DATA_TYPE, 7, 1)
        manager = storage.retention[TELEMETRY_DATA_TYPE]

        with capture_logs() as logs:
            await manager.apply_policy(policy)
        moved = [e for e in logs if e["event"] == "Retention horizon moved"]
        assert len(moved) == 1
        assert moved[0]["boundary"] == (NOW - timedelta(days=7)).isoformat()
        assert moved[0]["previous_horizon"] is None
        assert moved[0]["dropped_chunks"] == []

        # Same boundary again: nothing moved, nothing logged
        with capture_logs() as logs:
            await manager.apply_policy(policy)
        assert [e for e in logs if e["event"] == "Retention horizon moved"] == []

        clock.advance(days=1)
        with capture_logs() as logs:
            await manager.apply_policy(policy)
        moved = [e for e in logs if e["event"] == "Retention horizon moved"]
        assert moved[0]["previous_horizon"] == (NOW - timedelta(days=7)).isoformat()


class TestDeviceStatusRetention:
    """Retention of the device status stream."""

    def test_seeded_device_status_defaults(self):
        policy = default_policy("default", DEVICE_STATUS_DATA_TYPE)

        assert policy.retention_days == 365
        assert policy.compression_days == 3
        assert default_policy("government", DEVICE_STATUS_DATA_TYPE).retention_days == 1095

    @pytest.mark.asyncio
    async def test_year_old_reports_dropped(self, storage, make_status):
        table = storage.device_status
        await table.insert_batch([
            make_status(time=NOW - timedelta(days=400)),
            make_status(time=NOW - timedelta(days=10)),
        ])

        dropped = await storage.retention[DEVICE_STATUS_DATA_TYPE].apply_policy(
            default_policy("default", DEVICE_STATUS_DATA_TYPE)
        )

        assert dropped == 1
        rows = await table.fetch_range("861234567890123", NOW - timedelta(days=500), NOW)
        assert [r.time for r in rows] == [NOW - timedelta(days=10)]
