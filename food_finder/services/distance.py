from __future__ import annotations

import math

EARTH_RADIUS_MILES = 3959.0


def distance_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in miles (spherical law of cosines), rounded to 0.1."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)

    cos_angle = math.sin(phi1) * math.sin(phi2) + math.cos(phi1) * math.cos(phi2) * math.cos(dlambda)
    # float noise can push identical points just past 1.0
    cos_angle = max(-1.0, min(1.0, cos_angle))
    return round(EARTH_RADIUS_MILES * math.acos(cos_angle), 1)