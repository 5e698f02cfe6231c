"""Tests for continuous aggregates and the query router."""

from datetime import datetime, timedelta, timezone

import pytest

from vdrs.storage.aggregates import (
    DRIVER_DAILY,
    VEHICLE_DAILY,
    VEHICLE_HOURLY,
    BucketGranularity,
    fold_bucket,
)
from vdrs.storage.errors import InvalidRangeError

from conftest import NOW

HOUR = timedelta(hours=1)


class TestBucketGranularity:
    """Tests for bucket alignment."""

    def test_floor_and_ceil(self):
        moment = datetime(2024, 3, 15, 10, 25, tzinfo=timezone.utc)

        assert BucketGranularity.HOURLY.floor(moment) == datetime(2024, 3, 15, 10, tzinfo=timezone.utc)
        assert BucketGranularity.HOURLY.ceil(moment) == datetime(2024, 3, 15, 11, tzinfo=timezone.utc)
        assert BucketGranularity.DAILY.floor(moment) == datetime(2024, 3, 15, tzinfo=timezone.utc)

    def test_ceil_of_aligned_instant_is_itself(self):
        aligned = datetime(2024, 3, 15, 10, tzinfo=timezone.utc)
        assert BucketGranularity.HOURLY.ceil(aligned) == aligned


class TestFoldBucket:
    """Tests for the bucket fold."""

    def test_statistics(self, make_record):
        start = NOW - 3 * HOUR
        rows = [
            make_record(time=start + timedelta(minutes=10), speed=30.0, rpm=1000, is_moving=True),
            make_record(time=start + timedelta(minutes=20), speed=90.0, rpm=3000,
                        is_moving=True, is_speeding=True, longitude=121.6, latitude=25.1),
            make_record(time=start + timedelta(minutes=30), speed=None, rpm=None),
        ]

        bucket = fold_bucket(rows, start, BucketGranularity.HOURLY, "ABC-1234")

        assert bucket.count == 3
        assert bucket.avg_speed == 60.0
        assert bucket.max_speed == 90.0
        assert bucket.min_speed == 30.0
        assert bucket.avg_rpm == 2000.0
        assert bucket.speeding_count == 1
        assert bucket.moving_count == 2
        assert bucket.vehicle_count == 1
        assert bucket.last_time == start + timedelta(minutes=30)
        assert bucket.last_speed is None
        assert bucket.distance_meters > 0
        assert bucket.bucket_end == start + HOUR

    def test_speed_statistics_empty_when_no_speed(self, make_record):
        bucket = fold_bucket([make_record(speed=None)], NOW, BucketGranularity.HOURLY, "ABC-1234")

        assert bucket.avg_speed is None
        assert bucket.max_speed is None


class TestRefresh:
    """Tests for ContinuousAggregateEngine.refresh."""

    @pytest.mark.asyncio
    async def test_rollup_matches_raw_rows(self, storage, make_record):
        """Hourly buckets hold exactly the rows of their hour."""
        base = NOW - 5 * HOUR
        records = []
        for hour in range(4):
            for minute in (5, 25, 45):
                records.append(make_record(time=base + hour * HOUR + timedelta(minutes=minute),
                                           speed=10.0 * (hour + 1) + minute / 5))
        await storage.telemetry.insert_batch(records)

        await storage.aggregates.refresh(VEHICLE_HOURLY)
        buckets = storage.aggregates.buckets(VEHICLE_HOURLY, base, base + 4 * HOUR, key="ABC-1234")

        assert [b.bucket_start for b in buckets] == [base + h * HOUR for h in (3, 2, 1, 0)]
        for bucket in buckets:
            members = [r for r in records if bucket.bucket_start <= r.time < bucket.bucket_end]
            expected = fold_bucket(members, bucket.bucket_start, BucketGranularity.HOURLY, "ABC-1234")
            assert bucket == expected

    @pytest.mark.asyncio
    async def test_refresh_advances_watermark_to_lag(self, storage, make_record):
        await storage.telemetry.insert_batch([make_record(time=NOW - 2 * HOUR)])

        await storage.aggregates.refresh(VEHICLE_HOURLY)
        aggregate = storage.aggregates.get(VEHICLE_HOURLY)

        # end offset is 30 minutes: 11:30 floors to 11:00
        assert aggregate.watermark == NOW - HOUR
        assert aggregate.last_refreshed_at == NOW

    @pytest.mark.asyncio
    async def test_recent_rows_excluded_until_lag_passes(self, storage, clock, make_record):
        await storage.telemetry.insert_batch([make_record(time=NOW - timedelta(minutes=10))])

        await storage.aggregates.refresh(VEHICLE_HOURLY)
        assert storage.aggregates.buckets(VEHICLE_HOURLY, NOW - HOUR, NOW + HOUR) == []

        clock.advance(hours=2)
        await storage.aggregates.refresh(VEHICLE_HOURLY)
        assert len(storage.aggregates.buckets(VEHICLE_HOURLY, NOW - HOUR, NOW + HOUR)) == 1

    @pytest.mark.asyncio
    async def test_refresh_picks_up_updates_and_is_idempotent(self, storage, make_record):
        at = NOW - 3 * HOUR
        await storage.telemetry.insert_batch([make_record(time=at, speed=50.0)])
        assert await storage.aggregates.refresh(VEHICLE_HOURLY) == 1
        assert await storage.aggregates.refresh(VEHICLE_HOURLY) == 0

        await storage.telemetry.insert_batch([make_record(time=at, speed=55.0)])
        assert await storage.aggregates.refresh(VEHICLE_HOURLY) == 1

        bucket = storage.aggregates.buckets(VEHICLE_HOURLY, at, at + HOUR)[0]
        assert bucket.max_speed == 55.0

    @pytest.mark.asyncio
    async def test_driver_daily_groups_by_driver(self, storage, clock, make_record):
        yesterday = NOW - timedelta(days=1)
        await storage.telemetry.insert_batch([
            make_record("CAR-0001", time=yesterday, driver_id="D1"),
            make_record("CAR-0002", time=yesterday + HOUR, driver_id="D1"),
            make_record("CAR-0003", time=yesterday, driver_id=None),
        ])

        await storage.aggregates.refresh(DRIVER_DAILY)
        buckets = storage.aggregates.buckets(DRIVER_DAILY, yesterday - timedelta(days=1), NOW)

        assert [(b.entity_id, b.count, b.vehicle_count) for b in buckets] == [("D1", 2, 2)]

    @pytest.mark.asyncio
    async def test_unknown_aggregate_is_invalid(self, storage):
        with pytest.raises(InvalidRangeError):
            await storage.aggregates.refresh("no_such_rollup")


class TestQueryRouter:
    """Tests for raw / rollup / split routing."""

    def test_narrow_window_goes_raw(self, storage):
        plan = storage.router.plan(VEHICLE_HOURLY, NOW - timedelta(minutes=30), NOW)
        assert plan.source == "raw"

    def test_no_watermark_goes_raw(self, storage):
        plan = storage.router.plan(VEHICLE_DAILY, NOW - timedelta(days=3), NOW)
        assert plan.source == "raw"

    @pytest.mark.asyncio
    async def test_rollup_and_split(self, storage):
        await storage.aggregates.refresh(VEHICLE_HOURLY)
        watermark = storage.aggregates.get(VEHICLE_HOURLY).watermark

        rollup = storage.router.plan(VEHICLE_HOURLY, watermark - 5 * HOUR, watermark)
        split = storage.router.plan(VEHICLE_HOURLY, watermark - 5 * HOUR, watermark + 2 * HOUR)

        assert rollup.source == "rollup"
        assert split.source == "split"
        assert split.rollup_window == (watermark - 5 * HOUR, watermark)
        assert split.raw_window == (watermark, watermark + 2 * HOUR)

    def test_start_after_end_invalid(self, storage):
        with pytest.raises(InvalidRangeError):
            storage.router.plan(VEHICLE_HOURLY, NOW, NOW - HOUR)

    @pytest.mark.asyncio
    async def test_split_serves_tail_from_raw_rows(self, storage, make_record):
        """Rows newer than the watermark are still counted, folded from raw chunks."""
        await storage.telemetry.insert_batch([
            make_record(time=NOW - 3 * HOUR, speed=40.0),
            make_record(time=NOW - timedelta(minutes=20), speed=60.0),
        ])
        await storage.aggregates.refresh(VEHICLE_HOURLY)

        plan, buckets = await storage.router.summarize(VEHICLE_HOURLY, NOW - 4 * HOUR, NOW + HOUR)

        assert plan.source == "split"
        assert [(b.bucket_start, b.source) for b in buckets] == [
            (NOW - HOUR, "raw"),
            (NOW - 3 * HOUR, "rollup"),
        ]

    @pytest.mark.asyncio
    async def test_rollup_and_raw_agree(self, storage, make_record):
        await storage.telemetry.insert_batch([
            make_record(time=NOW - 3 * HOUR + timedelta(minutes=m), speed=float(m)) for m in range(0, 60, 7)
        ])
        await storage.aggregates.refresh(VEHICLE_HOURLY)

        _, from_rollup = await storage.router.summarize(VEHICLE_HOURLY, NOW - 3 * HOUR, NOW - 2 * HOUR)
        raw = storage.aggregates.fold_raw(VEHICLE_HOURLY, NOW - 3 * HOUR, NOW - 2 * HOUR)

        assert from_rollup == raw


class TestBackfillInvalidation:
    """Writes behind the watermark are folded in by the next refresh."""

    @pytest.mark.asyncio
    async def test_backfill_older_than_refresh_window_materialised(self, storage, make_record):
        today = BucketGranularity.DAILY.floor(NOW)
        await storage.aggregates.refresh(VEHICLE_DAILY)
        assert storage.aggregates.get(VEHICLE_DAILY).watermark == today

        # Ten days back is well outside the three-day refresh window
        day = today - timedelta(days=10)
        await storage.telemetry.insert_batch([
            make_record(time=day + timedelta(hours=hour)) for hour in range(5)
        ])
        assert storage.aggregates.get(VEHICLE_DAILY).invalidated == {day}

        await storage.aggregates.refresh(VEHICLE_DAILY)
        plan, buckets = await storage.router.summarize(VEHICLE_DAILY, day - timedelta(days=1), today)

        assert plan.source == "rollup"
        assert sum(b.count for b in buckets) == 5
        assert storage.aggregates.get(VEHICLE_DAILY).invalidated == set()

    @pytest.mark.asyncio
    async def test_correction_behind_watermark_replaces_bucket(self, storage, make_record):
        at = NOW - timedelta(days=5)
        await storage.telemetry.insert_batch([make_record(time=at, speed=20.0)])
        await storage.aggregates.refresh(VEHICLE_HOURLY)
        assert storage.aggregates.buckets(VEHICLE_HOURLY, at, at + HOUR)[0].avg_speed == 20.0

        await storage.telemetry.insert_batch([make_record(time=at, speed=80.0)])
        assert await storage.aggregates.refresh(VEHICLE_HOURLY) == 1

        assert storage.aggregates.buckets(VEHICLE_HOURLY, at, at + HOUR)[0].avg_speed == 80.0

    @pytest.mark.asyncio
    async def test_writes_ahead_of_watermark_not_invalidated(self, storage, make_record):
        await storage.aggregates.refresh(VEHICLE_HOURLY)

        # 11:55 is past the 11:00 watermark; the lag window will pick it up
        await storage.telemetry.insert_batch([make_record(time=NOW - timedelta(minutes=5))])

        assert storage.aggregates.get(VEHICLE_HOURLY).invalidated == set()
