"""
Pydantic v2 schemas for route optimization.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from serveit.api.schemas.job import CamelModel, JobOut
from serveit.services.routeOptimizer import OptimizedRoute


class RouteOptimizeRequest(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    # Defaults to the provider's ongoing jobs
    booking_ids: Optional[list[str]] = None
    average_speed_kmh: Optional[float] = Field(default=None, gt=0, le=200)


class WaypointOut(CamelModel):
    order: int
    job: JobOut
    distance_from_previous_km: float
    distance_to_next_km: Optional[float] = None
    duration_to_next_minutes: Optional[float] = None


class RouteOut(CamelModel):
    waypoints: list[WaypointOut]
    total_distance_km: float
    total_duration_minutes: float
    optimization_score: float
    skipped_booking_ids: list[str] = Field(default_factory=list)
    directions_url: Optional[str] = None

    @classmethod
    def from_route(cls, route: OptimizedRoute, directions_url: Optional[str]) -> "RouteOut":
        return cls(
            waypoints=[
                WaypointOut(
                    order=w.order,
                    job=JobOut.from_job(w.job),
                    distance_from_previous_km=round(w.distance_from_previous_km, 3),
                    distance_to_next_km=None if w.distance_to_next_km is None else round(w.distance_to_next_km, 3),
                    duration_to_next_minutes=(
                        None if w.duration_to_next_minutes is None else round(w.duration_to_next_minutes, 1)
                    ),
                )
                for w in route.waypoints
            ],
            total_distance_km=round(route.total_distance_km, 3),
            total_duration_minutes=round(route.total_duration_minutes, 1),
            optimization_score=round(route.optimization_score, 4),
            skipped_booking_ids=list(route.skipped_booking_ids),
            directions_url=directions_url,
        )
