"""Geospatial Query Service.

Proximity (spherical, meters) and containment (planar lon/lat) lookups
over recent vehicle telemetry, served from the per-chunk grid index.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from vdrs.core.config import Settings
from vdrs.core.metrics import observe_query
from vdrs.models.telemetry import TelemetryRecord
from vdrs.storage.engine import StorageEngine
from vdrs.storage.errors import InvalidRangeError, OperationTimeoutError
from vdrs.storage.geo import GeoPoint


@dataclass
class NearbyResult:
    """Result of a nearby query with distance."""

    record: TelemetryRecord
    distance_meters: float

    def to_dict(self) -> dict[str, Any]:
        data = self.record.to_dict()
        data["distance_meters"] = round(self.distance_meters, 3)
        return data


class GeospatialService:
    """Service for geospatial queries over the telemetry table."""

    def __init__(self, storage: StorageEngine, settings: Settings):
        self.storage = storage
        self.settings = settings

    async def find_nearby_vehicles(
        self,
        center: GeoPoint,
        radius_meters: float | None = None,
        time_window_minutes: int | None = None,
        limit: int | None = None,
        distinct_vehicles: bool = False,
    ) -> list[NearbyResult]:
        """Find telemetry records within a radius of a point.

        Args:
            center: Center point to search from
            radius_meters: Search radius, capped at nearby_max_radius_meters
            time_window_minutes: Only records this recent are considered
            limit: Maximum number of results, capped at nearby_max_limit
            distinct_vehicles: Keep only the closest record per vehicle

        Returns:
            List of records with distances, sorted by distance
        """
        if radius_meters is None:
            radius_meters = self.settings.nearby_default_radius_meters
        if radius_meters < 0:
            raise InvalidRangeError("radius must not be negative")
        radius_meters = min(radius_meters, self.settings.nearby_max_radius_meters)

        window = timedelta(minutes=time_window_minutes or self.settings.nearby_default_window_minutes)
        limit = min(limit or self.settings.nearby_default_limit, self.settings.nearby_max_limit)

        started = time.perf_counter()
        try:
            # Over-fetch when de-duplicating so the limit applies to vehicles
            matches = await asyncio.wait_for(
                self.storage.telemetry.query_radius(
                    center, radius_meters, window, None if distinct_vehicles else limit
                ),
                timeout=self.settings.query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"nearby exceeded {self.settings.query_timeout_seconds}s"
            ) from None
        finally:
            observe_query("nearby", time.perf_counter() - started)

        results = []
        seen: set[str] = set()
        for record, distance in matches:
            if distinct_vehicles:
                if record.entity_id in seen:
                    continue
                seen.add(record.entity_id)
            results.append(NearbyResult(record=record, distance_meters=distance))
            if len(results) >= limit:
                break

        return results

    async def find_in_polygon(
        self,
        polygon: list[GeoPoint],
        time_window_minutes: int | None = None,
        limit: int | None = None,
    ) -> list[TelemetryRecord]:
        """Find recent records whose position lies inside a polygon.

        Uses ray casting on the lon/lat plane, suited to small areas.
        """
        if len(polygon) < 3:
            raise InvalidRangeError("Polygon must have at least 3 points")

        window = timedelta(minutes=time_window_minutes or self.settings.nearby_default_window_minutes)
        limit = min(limit or self.settings.nearby_default_limit, self.settings.nearby_max_limit)

        started = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self.storage.telemetry.query_polygon(polygon, window, limit),
                timeout=self.settings.query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                f"polygon query exceeded {self.settings.query_timeout_seconds}s"
            ) from None
        finally:
            observe_query("polygon", time.perf_counter() - started)
