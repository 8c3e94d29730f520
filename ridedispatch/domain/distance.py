"""
Distance and travel-time estimates.

Great-circle (Haversine) distance stands in for a routing engine; dispatch
only needs a radius filter and a rough ETA.

Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_KM = 6_371.0
DEFAULT_SPEED_KMH = 30.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def eta_minutes(distance_km: float, average_speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """Whole minutes to cover *distance_km*; never less than one."""
    if average_speed_kmh <= 0:
        average_speed_kmh = DEFAULT_SPEED_KMH
    return max(1, int(distance_km / average_speed_kmh * 60))
