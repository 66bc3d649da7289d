"""
Route Optimization Routes
=========================

Routes:
  POST   /api/v1/routes/optimize  -- Order my jobs into a visiting sequence
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from serveit.api.deps import CurrentProvider, Store
from serveit.api.schemas.route import RouteOptimizeRequest, RouteOut
from serveit.services import jobService
from serveit.services.geoService import GeoPoint
from serveit.services.matchingFeeds import snapshot_ongoing_jobs
from serveit.services.routeOptimizer import build_directions_url, optimize_route

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/routes", tags=["Routes"])


@router.post(
    "/optimize",
    response_model=RouteOut,
    summary="Optimize the visiting order of my jobs",
    description=(
        "Greedy nearest-neighbour ordering from the given position. Without "
        "'bookingIds' the caller's ongoing jobs are used. Jobs the caller "
        "cannot see are ignored; jobs without coordinates are reported in "
        "'skippedBookingIds'."
    ),
)
async def optimize(body: RouteOptimizeRequest, store: Store, provider_id: CurrentProvider) -> RouteOut:
    if body.booking_ids is None:
        jobs = list(await snapshot_ongoing_jobs(store, provider_id))
    else:
        jobs = []
        for booking_id in dict.fromkeys(body.booking_ids):
            job = await jobService.get_full_booking_details(store, booking_id, provider_id)
            if job is None:
                logger.info("Route request by %s ignored unknown booking %s", provider_id, booking_id)
                continue
            jobs.append(job)

    origin = GeoPoint(body.latitude, body.longitude)
    route = optimize_route(jobs, origin, average_speed_kmh=body.average_speed_kmh)
    return RouteOut.from_route(route, build_directions_url(route, origin))
