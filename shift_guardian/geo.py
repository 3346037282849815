"""
geo.py  –  great-circle distance and circular geofence containment.
"""

import math
from itertools import combinations
from typing import Iterable, Tuple

from shift_guardian.errors import InvalidCoordinate

EARTH_RADIUS_M = 6_371_000.0

Coordinate = Tuple[float, float]


def check_coordinate(lat, lon) -> Coordinate:
    """Return (lat, lon) as floats or raise InvalidCoordinate."""
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"coordinates must be numeric, got ({lat!r}, {lon!r})")

    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinate(f"coordinates must be finite, got ({lat}, {lon})")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinate(f"latitude {lat} outside [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise InvalidCoordinate(f"longitude {lon} outside [-180, 180]")
    return lat, lon


def haversine_distance_m(a: Coordinate, b: Coordinate) -> float:
    """Return great-circle distance in meters between two (lat, lon) pairs."""
    lat1, lon1 = check_coordinate(*a)
    lat2, lon2 = check_coordinate(*b)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lon2 - lon1)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.asin(min(1.0, math.sqrt(h)))


def distance_to_fence_m(point: Coordinate, fence) -> float:
    return haversine_distance_m(point, (fence.latitude, fence.longitude))


def is_within_geofence(point: Coordinate, fence) -> bool:
    """True if the point lies inside (or on the edge of) the fence circle."""
    return distance_to_fence_m(point, fence) <= fence.radius_meters


def max_pairwise_distance_m(points: Iterable[Coordinate]) -> float:
    """Largest distance between any two of the points (0 for fewer than two)."""
    return max(
        (haversine_distance_m(a, b) for a, b in combinations(list(points), 2)),
        default=0.0,
    )
