"""
Great-circle distance between two coordinates.

Straight-line ("as the crow flies") distance; road distance is typically
longer. Used to rank donors and hospitals by proximity to a patient.
"""

import math
from typing import Any, Optional

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Haversine distance in kilometers.

    Args:
        lat1, lng1: Latitude and longitude of point 1, in degrees
        lat2, lng2: Latitude and longitude of point 2, in degrees

    Returns:
        Distance in kilometers on a sphere of radius 6371 km
    """
    lat1, lng1, lat2, lng2 = map(math.radians, [lat1, lng1, lat2, lng2])

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return EARTH_RADIUS_KM * c


def coerce_coordinate(value: Any, limit: float) -> Optional[float]:
    """Return value as a float within [-limit, limit], or None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or abs(number) > limit:
        return None
    return number


def distance_between(
    lat1: Any, lng1: Any, lat2: Any, lng2: Any
) -> Optional[float]:
    """Distance in km, or None when either point is missing or malformed."""
    points = (
        coerce_coordinate(lat1, 90.0),
        coerce_coordinate(lng1, 180.0),
        coerce_coordinate(lat2, 90.0),
        coerce_coordinate(lng2, 180.0),
    )
    if any(p is None for p in points):
        return None
    return haversine_km(*points)
