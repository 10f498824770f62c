"""Geospatial helper functions."""

from __future__ import annotations

import math
from typing import Optional, Sequence

from shapely.geometry import MultiPoint

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def squared_degree_distance(a: Optional[tuple[float, float]], b: Optional[tuple[float, float]]) -> float:
    """Squared planar distance in degrees; infinite when either point is unknown."""

    if a is None or b is None:
        return math.inf
    d_lat = a[0] - b[0]
    d_lon = a[1] - b[1]
    return d_lat * d_lat + d_lon * d_lon


def polar_angle(origin: tuple[float, float], point: tuple[float, float]) -> float:
    """Planar angle (radians, -pi..pi) of ``point`` as seen from ``origin``."""

    return math.atan2(point[0] - origin[0], point[1] - origin[1])


def centroid(points: Sequence[tuple[float, float]]) -> Optional[tuple[float, float]]:
    """Mean (lat, lon) of a set of points, or None when empty."""

    if not points:
        return None
    # shapely works in (x, y) = (lon, lat)
    center = MultiPoint([(lon, lat) for lat, lon in points]).centroid
    return (center.y, center.x)
