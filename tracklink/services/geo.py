"""
Geographic utilities for the position filters: haversine distance, bearing change.
"""
from math import radians, cos, sin, asin, sqrt

EARTH_RADIUS_M = 6371000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance in meters between two lat/lon points.
    Uses the haversine formula for great-circle distance.
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(min(1.0, a)))

    return EARTH_RADIUS_M * c


def bearing_delta(bearing1: float, bearing2: float) -> float:
    """Smallest absolute difference between two bearings, 0..180 degrees."""
    delta = abs(bearing1 - bearing2) % 360
    return 360 - delta if delta > 180 else delta
