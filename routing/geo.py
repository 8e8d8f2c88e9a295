"""
Purpose: Great-circle distance math shared by dispatch, marketplace and clustering.
What it does:
- haversine distance between two (lat, lng) points, in miles
- cheap bounding-box prefilter so radius scans skip obviously-far points

Rule: Pure functions only. No routing engine, no road network.
"""

from __future__ import annotations

from math import asin, cos, radians, sin, sqrt
from typing import Tuple

LatLng = Tuple[float, float]

EARTH_RADIUS_MILES = 3959.0

# one degree of latitude in miles (close enough for prefiltering)
MILES_PER_DEGREE_LAT = 69.0


def haversine_miles(a: LatLng, b: LatLng) -> float:
    """
    Great-circle distance between two (lat, lng) points in miles.
    """
    lat1, lng1, lat2, lng2 = map(radians, [float(a[0]), float(a[1]), float(b[0]), float(b[1])])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * asin(min(1.0, sqrt(h)))


def within_bounding_box(center: LatLng, point: LatLng, radius_miles: float) -> bool:
    """
    True if `point` lies inside the lat/lng box that encloses a circle of
    `radius_miles` around `center`. Always a superset of the true circle.
    """
    lat_offset = radius_miles / MILES_PER_DEGREE_LAT
    if abs(point[0] - center[0]) > lat_offset:
        return False

    cos_lat = abs(cos(radians(center[0])))
    if cos_lat < 1e-6:
        # at the poles every longitude is close
        return True
    lng_offset = radius_miles / (MILES_PER_DEGREE_LAT * cos_lat)
    dlng = abs(point[1] - center[1]) % 360.0
    dlng = min(dlng, 360.0 - dlng)
    return dlng <= lng_offset


def is_within_radius(center: LatLng, point: LatLng, radius_miles: float) -> bool:
    if radius_miles < 0:
        return False
    if not within_bounding_box(center, point, radius_miles):
        return False
    return haversine_miles(center, point) <= radius_miles
