"""Geometry helpers for the spatial columns.

Two coordinate models are used on purpose: a spherical one (haversine,
meters) for radius queries and a planar lon/lat one for polygon containment.
"""

from dataclasses import dataclass
from math import asin, atan2, cos, degrees, radians, sin, sqrt

# Mean Earth radius in meters (IUGG)
EARTH_RADIUS_M = 6371008.8
METERS_PER_DEGREE = radians(1) * EARTH_RADIUS_M
SRID = 4326


@dataclass(frozen=True)
class GeoPoint:
    """WGS84 point, longitude first like ST_MakePoint."""

    longitude: float
    latitude: float

    @classmethod
    def from_coordinates(cls, longitude: float | None, latitude: float | None) -> "GeoPoint | None":
        """Build the derived point, or None when either coordinate is missing."""
        if longitude is None or latitude is None:
            return None
        return cls(longitude=float(longitude), latitude=float(latitude))

    def to_wkt(self) -> str:
        return f"POINT({self.longitude} {self.latitude})"

    def to_dict(self) -> dict[str, float]:
        return {"longitude": self.longitude, "latitude": self.latitude}


@dataclass(frozen=True)
class BoundingBox:
    """Geographic bounding box. Longitudes may extend past +/-180 before wrapping."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    @classmethod
    def from_center(cls, center: GeoPoint, radius_m: float) -> "BoundingBox":
        """Create a box that contains every point within radius_m of center."""
        lat_delta = degrees(radius_m / EARTH_RADIUS_M)
        min_lat = center.latitude - lat_delta
        max_lat = center.latitude + lat_delta

        # Near the poles the longitude span degenerates; cover all longitudes
        if min_lat <= -90.0 or max_lat >= 90.0:
            return cls(max(min_lat, -90.0), -180.0, min(max_lat, 90.0), 180.0)

        cos_lat = min(cos(radians(min_lat)), cos(radians(max_lat)))
        lon_delta = lat_delta / cos_lat if cos_lat > 1e-9 else 360.0
        if lon_delta >= 180.0:
            return cls(min_lat, -180.0, max_lat, 180.0)

        return cls(
            min_lat=min_lat,
            min_lon=center.longitude - lon_delta,
            max_lat=max_lat,
            max_lon=center.longitude + lon_delta,
        )

    @classmethod
    def from_polygon(cls, polygon: list[GeoPoint]) -> "BoundingBox":
        return cls(
            min_lat=min(p.latitude for p in polygon),
            min_lon=min(p.longitude for p in polygon),
            max_lat=max(p.latitude for p in polygon),
            max_lon=max(p.longitude for p in polygon),
        )

    def longitude_ranges(self) -> list[tuple[float, float]]:
        """Split the box at the antimeridian into ranges inside [-180, 180]."""
        if self.max_lon - self.min_lon >= 360.0:
            return [(-180.0, 180.0)]
        if self.min_lon < -180.0:
            return [(self.min_lon + 360.0, 180.0), (-180.0, self.max_lon)]
        if self.max_lon > 180.0:
            return [(self.min_lon, 180.0), (-180.0, self.max_lon - 360.0)]
        return [(self.min_lon, self.max_lon)]


def haversine_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great circle distance between two points in meters."""
    lat1, lon1, lat2, lon2 = map(radians, [a.latitude, a.longitude, b.latitude, b.longitude])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2

    return 2 * EARTH_RADIUS_M * asin(min(1.0, sqrt(h)))


def planar_distance(a: GeoPoint, b: GeoPoint) -> float:
    """Euclidean distance in degrees on the lon/lat plane (approximate)."""
    return sqrt((a.longitude - b.longitude) ** 2 + (a.latitude - b.latitude) ** 2)


def destination_point(origin: GeoPoint, bearing_deg: float, distance_m: float) -> GeoPoint:
    """Point reached from origin after distance_m along an initial bearing."""
    lat1 = radians(origin.latitude)
    lon1 = radians(origin.longitude)
    theta = radians(bearing_deg)
    delta = distance_m / EARTH_RADIUS_M

    lat2 = asin(sin(lat1) * cos(delta) + cos(lat1) * sin(delta) * cos(theta))
    lon2 = lon1 + atan2(
        sin(theta) * sin(delta) * cos(lat1),
        cos(delta) - sin(lat1) * sin(lat2),
    )
    lon2_deg = (degrees(lon2) + 540.0) % 360.0 - 180.0
    return GeoPoint(longitude=lon2_deg, latitude=degrees(lat2))


def point_in_polygon(point: GeoPoint, polygon: list[GeoPoint]) -> bool:
    """Check if a point is inside a polygon using ray casting on the lon/lat plane."""
    x, y = point.longitude, point.latitude
    n = len(polygon)
    inside = False

    j = n - 1
    for i in range(n):
        xi, yi = polygon[i].longitude, polygon[i].latitude
        xj, yj = polygon[j].longitude, polygon[j].latitude

        if ((yi > y) != (yj > y)) and \
           (x < (xj - xi) * (y - yi) / (yj - yi) + xi):
            inside = not inside

        j = i

    return inside
