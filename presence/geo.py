"""
Great-circle distance between two coordinates.

Pure functions; NaN coordinates propagate as NaN and must be rejected by the
caller before they reach a geofence decision.
"""

from __future__ import annotations

import math

from presence.core.constants import EARTH_RADIUS_M
from presence.domain.models import Coordinate


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in metres on a sphere of radius 6,371 km."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push h a hair above 1 for antipodal points
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def format_distance(meters: float) -> str:
    """Human-readable distance: ``'12m'`` below a kilometre, ``'1.25km'`` above."""
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.2f}km"
