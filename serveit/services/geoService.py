"""
Geo Service
===========

Geographic utility functions for distance calculations between job sites
and provider positions. Used by the route optimizer and by job dispatch to
annotate inbox entries with a distance.

Uses the haversine formula for great-circle distance between two points
on Earth's surface. Accurate enough for in-city routing hints
(error < 0.5% for distances under 100 km).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# Earth's mean radius in kilometres
EARTH_RADIUS_KM: float = 6371.0


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    latitude: float
    longitude: float


def haversine_distance(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """Calculate the great-circle distance between two points using the
    haversine formula.

    Args:
        lat1: Latitude of point 1 in decimal degrees.
        lon1: Longitude of point 1 in decimal degrees.
        lat2: Latitude of point 2 in decimal degrees.
        lon2: Longitude of point 2 in decimal degrees.

    Returns:
        Distance in kilometres.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    # Clamp for floating point drift on antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance in km between two ``GeoPoint`` values."""
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def travel_minutes(distance_km: float, average_speed_kmh: float) -> float:
    """Estimated travel time for ``distance_km`` at a constant average speed."""
    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be positive")
    return distance_km / average_speed_kmh * 60.0
