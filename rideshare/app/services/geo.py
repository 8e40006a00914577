"""
Geospatial helpers and search predicates.

Points are (lat, lng) tuples in degrees. Route geometry follows the routing
provider's GeoJSON order: a list of [lng, lat, ...] positions.

The two ride-matching predicates are independent pure functions; the search
service combines them with OR.
"""

import math
import logging
from numbers import Real
from typing import Any, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Point = Tuple[float, float]

EARTH_RADIUS_METERS = 6371000.0

# Endpoints closer than this (degrees, per axis) are the same place
IDENTICAL_ENDPOINT_TOLERANCE_DEG = 1e-5


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in meters
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2) - math.radians(lon1)

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def is_valid_coordinate(lat: Any, lng: Any) -> bool:
    if not is_number(lat) or not is_number(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def are_identical_endpoints(origin: Point, destination: Point) -> bool:
    return (
        abs(origin[0] - destination[0]) < IDENTICAL_ENDPOINT_TOLERANCE_DEG
        and abs(origin[1] - destination[1]) < IDENTICAL_ENDPOINT_TOLERANCE_DEG
    )


def is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def sanitize_route_geometry(geometry: Any) -> Optional[List[List[float]]]:
    """
    Validate provider route geometry.

    Returns the polyline as [[lng, lat], ...] when every position has at
    least two numeric components, otherwise None. Never returns a partially
    accepted polyline.
    """
    if geometry is None:
        return None

    if not isinstance(geometry, (list, tuple)) or not geometry:
        logger.warning("Dropping route geometry: expected a non-empty coordinate list, got %s", type(geometry).__name__)
        return None

    cleaned = []
    for index, position in enumerate(geometry):
        if (
            not isinstance(position, (list, tuple))
            or len(position) < 2
            or not is_number(position[0])
            or not is_number(position[1])
        ):
            logger.warning("Dropping route geometry: invalid position at index %s: %r", index, position)
            return None
        cleaned.append([float(position[0]), float(position[1])])

    return cleaned


def _point_segment_distance(px: float, py: float, ax: float, ay: float, bx: float, by: float) -> float:
    """Planar distance from P to segment AB."""
    dx = bx - ax
    dy = by - ay
    if dx == 0 and dy == 0:
        return math.hypot(px - ax, py - ay)

    t = ((px - ax) * dx + (py - ay) * dy) / (dx * dx + dy * dy)
    t = max(0.0, min(1.0, t))
    return math.hypot(px - (ax + t * dx), py - (ay + t * dy))


def distance_to_polyline_degrees(point: Point, polyline: Sequence[Sequence[float]]) -> float:
    """
    Planar distance in degrees from a (lat, lng) point to a [lng, lat] polyline.

    Matches a buffer computed in the geometry's own coordinate space.
    """
    px, py = point[1], point[0]

    if len(polyline) == 1:
        return math.hypot(px - polyline[0][0], py - polyline[0][1])

    return min(
        _point_segment_distance(px, py, a[0], a[1], b[0], b[1])
        for a, b in zip(polyline, polyline[1:])
    )


def matches_endpoints(
    ride_pickup: Point,
    ride_destination: Point,
    source: Point,
    destination: Point,
    radius_meters: float,
) -> bool:
    """Case A: ride pickup near source and ride destination near destination."""
    return (
        haversine_distance(ride_pickup[0], ride_pickup[1], source[0], source[1]) <= radius_meters
        and haversine_distance(ride_destination[0], ride_destination[1], destination[0], destination[1]) <= radius_meters
    )


def matches_corridor(
    route_geometry: Any,
    source: Point,
    destination: Point,
    buffer_degrees: float,
) -> bool:
    """Case B: both points fall inside the buffered route polyline."""
    polyline = sanitize_route_geometry(route_geometry)
    if not polyline:
        return False

    return (
        distance_to_polyline_degrees(source, polyline) <= buffer_degrees
        and distance_to_polyline_degrees(destination, polyline) <= buffer_degrees
    )
