"""Telemetry query REST API endpoints.

Tracks and proximity lookups read full-resolution rows; the analytics
endpoints return rollup buckets together with the route plan that
produced them.
"""

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from vdrs.core.deps import AppSettings, Storage
from vdrs.services.anomaly_service import AnomalyService
from vdrs.services.device_status_service import DeviceStatusService
from vdrs.services.geospatial import GeospatialService
from vdrs.services.telemetry_query_service import TelemetryQueryService
from vdrs.storage.aggregates import RollupBucket
from vdrs.storage.geo import GeoPoint
from vdrs.storage.router import RoutePlan

router = APIRouter()


class TrackResponse(BaseModel):
    """Vehicle track response, newest record first."""

    license_plate: str
    start_time: str | None
    end_time: str | None
    count: int
    data: list[dict[str, Any]]


class NearbyResponse(BaseModel):
    center: dict[str, float]
    radius_meters: float
    count: int
    data: list[dict[str, Any]]


class PolygonPoint(BaseModel):
    longitude: float = Field(ge=-180, le=180)
    latitude: float = Field(ge=-90, le=90)


class PolygonQuery(BaseModel):
    """Polygon containment query body."""

    polygon: list[PolygonPoint]
    time_window: int | None = Field(default=None, ge=1)
    limit: int | None = Field(default=None, ge=1)


class RecordListResponse(BaseModel):
    count: int
    data: list[dict[str, Any]]


class SummaryResponse(BaseModel):
    """Rollup buckets and how they were served."""

    route: dict[str, Any]
    count: int
    data: list[dict[str, Any]]


class MetricResponse(BaseModel):
    metric_name: str
    value: float
    unit: str
    timestamp: str


def summary_response(plan: RoutePlan, buckets: list[RollupBucket]) -> SummaryResponse:
    return SummaryResponse(
        route=plan.to_dict(),
        count=len(buckets),
        data=[bucket.to_dict() for bucket in buckets],
    )


@router.get("/vehicle/{license_plate}/track", response_model=TrackResponse)
async def get_vehicle_track(
    license_plate: str,
    storage: Storage,
    settings: AppSettings,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int | None = Query(default=None, ge=1),
):
    """Get the track of one vehicle.

    Defaults to the last 24 hours; the limit is capped server side.
    """
    service = TelemetryQueryService(storage, settings)
    records = await service.get_vehicle_track(license_plate, start_time, end_time, limit)

    return TrackResponse(
        license_plate=license_plate,
        start_time=start_time.isoformat() if start_time else None,
        end_time=end_time.isoformat() if end_time else None,
        count=len(records),
        data=[record.to_dict() for record in records],
    )


@router.get("/nearby", response_model=NearbyResponse)
async def find_nearby_vehicles(
    storage: Storage,
    settings: AppSettings,
    longitude: float = Query(..., ge=-180, le=180),
    latitude: float = Query(..., ge=-90, le=90),
    radius: float | None = Query(default=None, ge=0),
    time_window: int | None = Query(default=None, ge=1, description="Minutes"),
    limit: int | None = Query(default=None, ge=1),
    distinct_vehicles: bool = False,
):
    """Find recent telemetry within a radius (meters) of a point, closest first."""
    service = GeospatialService(storage, settings)
    center = GeoPoint(longitude=longitude, latitude=latitude)
    results = await service.find_nearby_vehicles(center, radius, time_window, limit, distinct_vehicles)

    effective_radius = min(
        radius if radius is not None else settings.nearby_default_radius_meters,
        settings.nearby_max_radius_meters,
    )
    return NearbyResponse(
        center=center.to_dict(),
        radius_meters=effective_radius,
        count=len(results),
        data=[result.to_dict() for result in results],
    )


@router.post("/within", response_model=RecordListResponse)
async def find_in_polygon(
    query: PolygonQuery,
    storage: Storage,
    settings: AppSettings,
):
    """Find recent telemetry whose position lies inside a polygon."""
    service = GeospatialService(storage, settings)
    polygon = [GeoPoint(longitude=p.longitude, latitude=p.latitude) for p in query.polygon]
    records = await service.find_in_polygon(polygon, query.time_window, query.limit)
    return RecordListResponse(count=len(records), data=[record.to_dict() for record in records])


@router.get("/realtime-summary", response_model=RecordListResponse)
async def get_realtime_summary(
    storage: Storage,
    settings: AppSettings,
    window_minutes: int | None = Query(default=None, ge=1),
):
    """Latest state of every vehicle reporting in the recent window."""
    service = TelemetryQueryService(storage, settings)
    rows = service.get_realtime_summary(window_minutes)
    return RecordListResponse(count=len(rows), data=rows)


@router.get("/performance/metrics", response_model=list[MetricResponse])
async def get_performance_metrics(storage: Storage, settings: AppSettings):
    service = TelemetryQueryService(storage, settings)
    return service.get_performance_metrics()


@router.get("/analytics/vehicle-daily", response_model=SummaryResponse)
async def get_vehicle_daily_summary(
    start_date: date,
    end_date: date,
    storage: Storage,
    settings: AppSettings,
    license_plate: str | None = None,
):
    """Daily per-vehicle summary for [start_date, end_date]."""
    service = TelemetryQueryService(storage, settings)
    plan, buckets = await service.get_vehicle_daily_summary(start_date, end_date, license_plate)
    return summary_response(plan, buckets)


@router.get("/analytics/vehicle-hourly", response_model=SummaryResponse)
async def get_vehicle_hourly_summary(
    start_time: datetime,
    end_time: datetime,
    storage: Storage,
    settings: AppSettings,
    license_plate: str | None = None,
):
    """Hourly per-vehicle summary covering start_time through end_time."""
    service = TelemetryQueryService(storage, settings)
    plan, buckets = await service.get_vehicle_hourly_summary(start_time, end_time, license_plate)
    return summary_response(plan, buckets)


@router.get("/analytics/driver-daily", response_model=SummaryResponse)
async def get_driver_daily_summary(
    start_date: date,
    end_date: date,
    storage: Storage,
    settings: AppSettings,
    driver_id: str | None = None,
):
    service = TelemetryQueryService(storage, settings)
    plan, buckets = await service.get_driver_daily_summary(start_date, end_date, driver_id)
    return summary_response(plan, buckets)


@router.get("/analytics/anomaly-summary", response_model=RecordListResponse)
async def get_anomaly_summary(
    start_date: date,
    end_date: date,
    storage: Storage,
    settings: AppSettings,
):
    """Daily anomaly counts by type and severity."""
    service = AnomalyService(storage, settings)
    rows = service.get_anomaly_summary(start_date, end_date)
    return RecordListResponse(count=len(rows), data=rows)


@router.get("/vehicle/{license_plate}/anomalies", response_model=RecordListResponse)
async def get_vehicle_anomalies(
    license_plate: str,
    storage: Storage,
    settings: AppSettings,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int | None = Query(default=None, ge=1),
):
    service = AnomalyService(storage, settings)
    events = await service.get_vehicle_anomalies(license_plate, start_time, end_time, limit)
    return RecordListResponse(count=len(events), data=[event.to_dict() for event in events])


@router.get("/device/{imei}/status", response_model=RecordListResponse)
async def get_device_status(
    imei: str,
    storage: Storage,
    settings: AppSettings,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int | None = Query(default=None, ge=1),
):
    """Status reports of one tracker device, newest first."""
    service = DeviceStatusService(storage, settings)
    reports = await service.get_device_status(imei, start_time, end_time, limit)
    return RecordListResponse(count=len(reports), data=[report.to_dict() for report in reports])
