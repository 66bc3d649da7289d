"""
Route Optimizer
===============

Orders a provider's accepted jobs into a visiting sequence using a greedy
nearest-neighbour heuristic over great-circle distances:

  1. Drop jobs without coordinates.
  2. From the current position, pick the closest unvisited job (ties keep
     input order), move there, and repeat.

The ``optimization_score`` is ``max(0, 1 - total / worst)`` where ``worst``
is the sum of direct distances from the start to every job. The score is a
quality hint for the UI, not a measure of optimality, and scores of routes
over different job sets are not comparable.

Durations assume a constant average urban speed
(``settings.route_average_speed_kmh``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import urlencode

from serveit.core.config import settings
from serveit.models.job import Job
from serveit.services.geoService import GeoPoint, distance_between, travel_minutes

logger = logging.getLogger(__name__)

_DIRECTIONS_BASE_URL = "https://www.google.com/maps/dir/"


@dataclass(frozen=True)
class RouteWaypoint:
    job: Job
    order: int
    distance_from_previous_km: float
    # None on the last waypoint
    distance_to_next_km: Optional[float] = None
    duration_to_next_minutes: Optional[float] = None

    @property
    def point(self) -> GeoPoint:
        coords = self.job.job_coordinates
        return GeoPoint(coords.latitude, coords.longitude)  # type: ignore[union-attr]


@dataclass(frozen=True)
class OptimizedRoute:
    waypoints: tuple[RouteWaypoint, ...]
    total_distance_km: float
    total_duration_minutes: float
    optimization_score: float
    # Jobs left out because they carry no coordinates
    skipped_booking_ids: tuple[str, ...] = ()


def _point(job: Job) -> GeoPoint:
    coords = job.job_coordinates
    return GeoPoint(coords.latitude, coords.longitude)  # type: ignore[union-attr]


def nearest_neighbor_order(jobs: Sequence[Job], start: GeoPoint) -> list[Job]:
    """Greedy visiting order. ``jobs`` must all carry coordinates."""
    remaining = list(jobs)
    ordered: list[Job] = []
    current = start
    while remaining:
        # min() returns the first of equal minima, so ties keep input order
        nearest = min(remaining, key=lambda job: distance_between(current, _point(job)))
        remaining.remove(nearest)
        ordered.append(nearest)
        current = _point(nearest)
    return ordered


def optimization_score(ordered: Sequence[Job], start: GeoPoint, total_km: float) -> float:
    if len(ordered) <= 1:
        return 1.0
    worst = sum(distance_between(start, _point(job)) for job in ordered)
    if worst <= 0:
        return 1.0
    return max(0.0, min(1.0, 1.0 - total_km / worst))


def optimize_route(
    jobs: Sequence[Job],
    current_position: GeoPoint,
    *,
    average_speed_kmh: Optional[float] = None,
) -> OptimizedRoute:
    """Build a visiting order for ``jobs`` starting at ``current_position``."""
    speed = average_speed_kmh or settings.route_average_speed_kmh
    routable = [job for job in jobs if job.job_coordinates is not None]
    skipped = tuple(job.booking_id for job in jobs if job.job_coordinates is None)
    if skipped:
        logger.info("Route optimization skipped %d job(s) without coordinates", len(skipped))

    ordered = nearest_neighbor_order(routable, current_position)

    legs: list[float] = []
    previous = current_position
    for job in ordered:
        legs.append(distance_between(previous, _point(job)))
        previous = _point(job)

    waypoints: list[RouteWaypoint] = []
    for idx, job in enumerate(ordered):
        is_last = idx == len(ordered) - 1
        to_next = None if is_last else legs[idx + 1]
        waypoints.append(RouteWaypoint(
            job=job,
            order=idx,
            distance_from_previous_km=legs[idx],
            distance_to_next_km=to_next,
            duration_to_next_minutes=None if to_next is None else travel_minutes(to_next, speed),
        ))

    total_km = sum(legs)
    return OptimizedRoute(
        waypoints=tuple(waypoints),
        total_distance_km=total_km,
        total_duration_minutes=travel_minutes(total_km, speed),
        optimization_score=optimization_score(ordered, current_position, total_km),
        skipped_booking_ids=skipped,
    )


def build_directions_url(route: OptimizedRoute, origin: GeoPoint) -> Optional[str]:
    """Google Maps directions link that visits the waypoints in order."""
    if not route.waypoints:
        return None
    fmt = "{0.latitude},{0.longitude}".format
    params = {
        "api": "1",
        "origin": fmt(origin),
        "destination": fmt(route.waypoints[-1].point),
        "travelmode": "driving",
    }
    if len(route.waypoints) > 1:
        params["waypoints"] = "|".join(fmt(w.point) for w in route.waypoints[:-1])
    return f"{_DIRECTIONS_BASE_URL}?{urlencode(params)}"
