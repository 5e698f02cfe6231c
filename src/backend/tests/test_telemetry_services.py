"""Tests for ingestion, query and geospatial services."""

from datetime import date, timedelta

import pytest

from vdrs.services.geospatial import GeospatialService
from vdrs.services.telemetry_ingestion_service import TelemetryIngestionService
from vdrs.services.telemetry_query_service import TelemetryQueryService
from vdrs.storage.errors import InvalidRangeError
from vdrs.storage.geo import GeoPoint, destination_point

from conftest import NOW, TAIPEI_101, telemetry_item

CENTER = GeoPoint(*TAIPEI_101)


class TestTelemetryIngestionService:
    """Tests for TelemetryIngestionService."""

    @pytest.mark.asyncio
    async def test_malformed_item_rejected_at_its_position(self, storage, test_settings):
        service = TelemetryIngestionService(storage, test_settings)
        items = [
            telemetry_item(time=NOW - timedelta(minutes=1)),
            {"license_plate": "ABC-1234"},
            "not an object",
            telemetry_item(time=NOW - timedelta(minutes=2), latitude=200.0),
            telemetry_item(time=NOW - timedelta(minutes=3)),
        ]

        result = await service.ingest(items)

        assert result.inserted == 2
        assert [r.index for r in result.rejected] == [1, 2, 3]
        assert all(r.code == "validation_error" for r in result.rejected)
        assert result.rejected[0].entity_id == "ABC-1234"
        assert result.rejected[0].field == "time"
        assert result.rejected[2].field == "latitude"

    @pytest.mark.asyncio
    async def test_entity_id_alias_accepted(self, storage, test_settings):
        service = TelemetryIngestionService(storage, test_settings)
        item = telemetry_item()
        item["entity_id"] = item.pop("license_plate")

        result = await service.ingest([item])

        assert result.inserted == 1

    @pytest.mark.asyncio
    async def test_motion_flags_derived_from_speed(self, storage, test_settings):
        service = TelemetryIngestionService(storage, test_settings)
        await service.ingest([
            telemetry_item("SLOW-0001", speed=3.0),
            telemetry_item("FAST-0001", speed=95.0),
            telemetry_item("FLAG-0001", speed=95.0, is_speeding=False),
        ])

        latest = storage.telemetry.latest_by_entity(NOW - timedelta(hours=1))

        assert (latest["SLOW-0001"].is_moving, latest["SLOW-0001"].is_speeding) == (False, False)
        assert (latest["FAST-0001"].is_moving, latest["FAST-0001"].is_speeding) == (True, True)
        # Device-reported flags win
        assert latest["FLAG-0001"].is_speeding is False

    @pytest.mark.asyncio
    async def test_correct_rewrites_compressed_history(self, storage, test_settings):
        service = TelemetryIngestionService(storage, test_settings)
        old = NOW - timedelta(days=10)
        await service.ingest([telemetry_item(time=old, speed=50.0)])
        await storage.telemetry.compress_chunk(storage.telemetry.chunk_start_for(old))

        refused = await service.ingest([telemetry_item(time=old, speed=55.0)])
        corrected = await service.correct([telemetry_item(time=old, speed=55.0)])

        assert [r.code for r in refused.rejected] == ["chunk_immutable"]
        assert corrected.updated == 1
        rows = await storage.telemetry.fetch_range("ABC-1234", old, old)
        assert rows[0].speed == 55.0


class TestTelemetryQueryService:
    """Tests for TelemetryQueryService."""

    @pytest.mark.asyncio
    async def test_track_defaults_to_last_24_hours(self, storage, test_settings, make_record):
        await storage.telemetry.insert_batch([
            make_record(time=NOW - timedelta(hours=1)),
            make_record(time=NOW - timedelta(hours=23)),
            make_record(time=NOW - timedelta(hours=25)),
        ])
        service = TelemetryQueryService(storage, test_settings)

        track = await service.get_vehicle_track("ABC-1234")

        assert [r.time for r in track] == [NOW - timedelta(hours=1), NOW - timedelta(hours=23)]

    @pytest.mark.asyncio
    async def test_track_limit_is_capped(self, storage, test_settings, make_record):
        test_settings.track_max_limit = 3
        await storage.telemetry.insert_batch([
            make_record(time=NOW - timedelta(minutes=i)) for i in range(10)
        ])
        service = TelemetryQueryService(storage, test_settings)

        track = await service.get_vehicle_track("ABC-1234", limit=50_000)

        assert len(track) == 3

    @pytest.mark.asyncio
    async def test_daily_summary_inclusive_dates(self, storage, test_settings, make_record):
        await storage.telemetry.insert_batch([
            make_record(time=NOW - timedelta(days=2), speed=30.0),
            make_record(time=NOW - timedelta(days=1), speed=50.0),
            make_record(time=NOW, speed=70.0),
        ])
        service = TelemetryQueryService(storage, test_settings)
        today = NOW.date()

        plan, buckets = await service.get_vehicle_daily_summary(today - timedelta(days=1), today)

        assert plan.source == "raw"
        assert [(b.bucket_start.date(), b.avg_speed) for b in buckets] == [
            (today, 70.0),
            (today - timedelta(days=1), 50.0),
        ]

    @pytest.mark.asyncio
    async def test_daily_summary_reversed_dates_invalid(self, storage, test_settings):
        service = TelemetryQueryService(storage, test_settings)

        with pytest.raises(InvalidRangeError):
            await service.get_vehicle_daily_summary(date(2024, 3, 15), date(2024, 3, 1))

    @pytest.mark.asyncio
    async def test_hourly_summary_for_one_vehicle(self, storage, test_settings, make_record):
        await storage.telemetry.insert_batch([
            make_record("CAR-0001", time=NOW - timedelta(hours=3)),
            make_record("CAR-0002", time=NOW - timedelta(hours=3)),
        ])
        await storage.aggregates.refresh("vehicle_hourly")
        service = TelemetryQueryService(storage, test_settings)

        plan, buckets = await service.get_vehicle_hourly_summary(
            NOW - timedelta(hours=4), NOW - timedelta(hours=2), license_plate="CAR-0002"
        )

        assert plan.source == "rollup"
        assert [b.entity_id for b in buckets] == ["CAR-0002"]

    @pytest.mark.asyncio
    async def test_realtime_summary_latest_per_vehicle(self, storage, test_settings, make_record):
        await storage.telemetry.insert_batch([
            make_record("CAR-0001", time=NOW - timedelta(minutes=10), speed=10.0),
            make_record("CAR-0001", time=NOW - timedelta(minutes=2), speed=20.0),
            make_record("CAR-0002", time=NOW - timedelta(minutes=5)),
            make_record("CAR-0003", time=NOW - timedelta(hours=3)),
        ])
        service = TelemetryQueryService(storage, test_settings)

        rows = service.get_realtime_summary()

        assert [r["license_plate"] for r in rows] == ["CAR-0001", "CAR-0002"]
        assert rows[0]["speed"] == 20.0
        assert rows[0]["seconds_since_update"] == 120.0

    @pytest.mark.asyncio
    async def test_performance_metrics(self, storage, test_settings, make_record):
        await storage.telemetry.insert_batch([
            make_record(f"CAR-{i:04d}", time=NOW - timedelta(minutes=i)) for i in range(5)
        ])
        service = TelemetryQueryService(storage, test_settings)

        metrics = {m["metric_name"]: m for m in service.get_performance_metrics()}

        assert metrics["telemetry_ingestion_rate"]["value"] == 5
        assert metrics["active_vehicles_last_hour"]["value"] == 5
        assert metrics["telemetry_rows"]["value"] == 5
        assert metrics["telemetry_storage_size"]["unit"] == "MB"


class TestGeospatialService:
    """Tests for GeospatialService."""

    @pytest.mark.asyncio
    async def test_nearby_sorted_by_distance(self, storage, test_settings, make_record):
        far = destination_point(CENTER, 0.0, 800.0)
        near = destination_point(CENTER, 0.0, 200.0)
        await storage.telemetry.insert_batch([
            make_record("FAR-0001", longitude=far.longitude, latitude=far.latitude),
            make_record("NEAR-0001", longitude=near.longitude, latitude=near.latitude),
        ])
        service = GeospatialService(storage, test_settings)

        results = await service.find_nearby_vehicles(CENTER)

        assert [r.record.entity_id for r in results] == ["NEAR-0001", "FAR-0001"]
        assert results[0].to_dict()["distance_meters"] == pytest.approx(200.0, abs=0.5)

    @pytest.mark.asyncio
    async def test_radius_is_capped(self, storage, test_settings, make_record):
        test_settings.nearby_max_radius_meters = 1000.0
        far = destination_point(CENTER, 45.0, 1500.0)
        await storage.telemetry.insert_batch([
            make_record("FAR-0001", longitude=far.longitude, latitude=far.latitude),
        ])
        service = GeospatialService(storage, test_settings)

        assert await service.find_nearby_vehicles(CENTER, radius_meters=5000.0) == []

    @pytest.mark.asyncio
    async def test_distinct_vehicles_keeps_closest(self, storage, test_settings, make_record):
        await storage.telemetry.insert_batch([
            make_record("CAR-0001", time=NOW - timedelta(minutes=m)) for m in range(5)
        ] + [make_record("CAR-0002", time=NOW)])
        service = GeospatialService(storage, test_settings)

        all_rows = await service.find_nearby_vehicles(CENTER, limit=100)
        distinct = await service.find_nearby_vehicles(CENTER, distinct_vehicles=True)

        assert len(all_rows) == 6
        assert sorted(r.record.entity_id for r in distinct) == ["CAR-0001", "CAR-0002"]

    @pytest.mark.asyncio
    async def test_polygon_needs_three_points(self, storage, test_settings):
        service = GeospatialService(storage, test_settings)

        with pytest.raises(InvalidRangeError):
            await service.find_in_polygon([CENTER, GeoPoint(121.6, 25.1)])
