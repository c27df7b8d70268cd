"""
Distance calculation using the Haversine formula.

Assumption
----------
Routing is an external collaborator: callers normally pass the distance and
duration their map provider returned.  When they only send coordinates we
fall back to great-circle distance stretched by a road factor, and derive a
duration from an average urban speed.  This is a coarse estimate, not ETA
computation.

Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **meters** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def estimate_route(
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
    road_factor: float = 1.3,
    average_speed_kmh: float = 25.0,
) -> tuple[float, float]:
    """Return ``(distance_meters, duration_seconds)`` for a straight-line trip."""
    distance = haversine_m(lat1, lng1, lat2, lng2) * road_factor
    duration = distance / (average_speed_kmh * 1000 / 3600)
    return round(distance, 1), round(duration, 1)
