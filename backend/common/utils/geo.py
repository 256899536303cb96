"""
Geographic utility functions.

Distances are great-circle (Haversine) distances; the matching engine works
in kilometres, while the Redis GEO index speaks metres.
"""

from decimal import Decimal
from math import radians, cos, sin, asin, sqrt

EARTH_RADIUS_METERS = 6371000
COORDINATE_PLACES = Decimal("0.000001")


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return c * EARTH_RADIUS_METERS


def calculate_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Same as calculate_distance, in kilometres."""
    return calculate_distance(lat1, lon1, lat2, lon2) / 1000.0


def is_valid_coordinate(lat, lon) -> bool:
    """True when lat/lon are finite numbers inside the WGS84 ranges."""
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        return False
    if lat != lat or lon != lon:  # NaN
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def to_coordinate(value) -> Decimal:
    """Round a coordinate to the 6 decimal places stored on the models."""
    return Decimal(str(value)).quantize(COORDINATE_PLACES)
