"""Great-circle distance helpers for proximity search.

The store prefilters rows with a latitude/longitude bounding box in SQL and
then filters and orders the survivors by haversine distance.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_008.8
METERS_PER_DEGREE_LAT = 111_320.0


@dataclass(frozen=True, slots=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_latitude <= latitude <= self.max_latitude
            and self.min_longitude <= longitude <= self.max_longitude
        )


def validate_coordinates(latitude: float, longitude: float) -> None:
    """Raise ValueError for coordinates outside the WGS84 range."""
    if not -90.0 <= latitude <= 90.0:
        msg = f"Latitude out of range: {latitude}"
        raise ValueError(msg)
    if not -180.0 <= longitude <= 180.0:
        msg = f"Longitude out of range: {longitude}"
        raise ValueError(msg)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(latitude: float, longitude: float, radius_m: float) -> BoundingBox:
    """Smallest lat/lon box containing the circle of ``radius_m`` around the point.

    Near the poles the longitude span is widened to the full range.
    """
    d_lat = radius_m / METERS_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(latitude))
    if cos_lat < 1e-6:
        d_lon = 180.0
    else:
        d_lon = min(180.0, radius_m / (METERS_PER_DEGREE_LAT * cos_lat))
    return BoundingBox(
        min_latitude=max(-90.0, latitude - d_lat),
        max_latitude=min(90.0, latitude + d_lat),
        min_longitude=max(-180.0, longitude - d_lon),
        max_longitude=min(180.0, longitude + d_lon),
    )
