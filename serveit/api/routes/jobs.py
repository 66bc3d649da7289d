"""
Job API Routes
==============

REST endpoints for the provider side of the job lifecycle.

Routes:
  GET    /api/v1/jobs/{booking_id}                  -- Full booking details
  POST   /api/v1/jobs/{booking_id}/accept           -- Claim a pending job
  POST   /api/v1/jobs/{booking_id}/reject           -- Hide a job from my feed
  PATCH  /api/v1/jobs/{booking_id}/status           -- Advance one lifecycle step
  POST   /api/v1/jobs/{booking_id}/otp/regenerate   -- Issue a new completion code
  POST   /api/v1/jobs/{booking_id}/payment/cash     -- Record cash collected
  POST   /api/v1/jobs/{booking_id}/payment/upi      -- Generate a UPI QR request
  POST   /api/v1/jobs/{booking_id}/payment/confirm  -- Confirm payment received
  POST   /api/v1/jobs/{booking_id}/dispatch         -- Offer to providers (internal)

Business rejections (job taken, wrong code, ...) are returned as HTTP
errors whose ``detail`` carries a machine-readable ``outcome``.
"""

from __future__ import annotations

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, HTTPException, status

from serveit.api.deps import CurrentProvider, CurrentService, Inbox, Store
from serveit.api.schemas.job import (
    AcceptJobRequest,
    AcceptJobResponse,
    DispatchRequest,
    DispatchResponse,
    JobOut,
    OutcomeResponse,
    PaymentRequest,
    RejectJobResponse,
    StatusUpdateRequest,
)
from serveit.realtime.socketServer import send_to_user
from serveit.services import completionHandshake, jobService
from serveit.services.acceptanceCoordinator import accept_job_with_deadline
from serveit.services.completionHandshake import HandshakeResult
from serveit.services.inboxService import DispatchOutcome
from serveit.services.jobSuppression import reject_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


# ---------------------------------------------------------------------------
# Outcome -> HTTP status
# ---------------------------------------------------------------------------

_OUTCOME_HTTP_STATUS: dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_taken": status.HTTP_409_CONFLICT,
    "not_eligible": status.HTTP_403_FORBIDDEN,
    "not_assigned": status.HTTP_403_FORBIDDEN,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "otp_expired": status.HTTP_410_GONE,
    "otp_mismatch": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "payment_not_confirmed": status.HTTP_409_CONFLICT,
    "payment_already_confirmed": status.HTTP_409_CONFLICT,
    "no_payment_recorded": status.HTTP_409_CONFLICT,
    "not_pending": status.HTTP_409_CONFLICT,
    "unknown": status.HTTP_504_GATEWAY_TIMEOUT,
}


def _raise_outcome(outcome: str, message: str) -> NoReturn:
    raise HTTPException(
        status_code=_OUTCOME_HTTP_STATUS.get(outcome, status.HTTP_400_BAD_REQUEST),
        detail={"outcome": outcome, "message": message},
    )


def _handshake_response(result: HandshakeResult) -> OutcomeResponse:
    if not result.ok:
        _raise_outcome(result.outcome.value, result.message)
    return OutcomeResponse(
        outcome=result.outcome.value,
        message=result.message,
        job=JobOut.from_job(result.job) if result.job else None,
    )


# ---------------------------------------------------------------------------
# GET /api/v1/jobs/{booking_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{booking_id}",
    response_model=JobOut,
    summary="Get full booking details",
    description=(
        "Returns the authoritative booking. Visible only to the assigned "
        "provider, or to a notified provider while the job is still pending."
    ),
)
async def get_job(booking_id: str, store: Store, provider_id: CurrentProvider) -> JobOut:
    job = await jobService.get_full_booking_details(store, booking_id, provider_id)
    if job is None:
        _raise_outcome("not_found", f"Booking {booking_id} not found")
    return JobOut.from_job(job)


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{booking_id}/accept
# ---------------------------------------------------------------------------

@router.post(
    "/{booking_id}/accept",
    response_model=AcceptJobResponse,
    summary="Accept a pending job",
    description=(
        "Atomically claims the job. Exactly one of several concurrent "
        "providers wins; the others receive 409 with outcome "
        "'already_taken'. Repeating a successful accept returns 200 with "
        "duplicate=true."
    ),
)
async def accept(
    booking_id: str,
    store: Store,
    inbox: Inbox,
    provider_id: CurrentProvider,
    body: Optional[AcceptJobRequest] = None,
) -> AcceptJobResponse:
    body = body or AcceptJobRequest()
    result = await accept_job_with_deadline(
        store,
        booking_id,
        provider_id,
        provider_name=body.provider_name,
        provider_mobile_no=body.provider_mobile_no,
        inbox=inbox,
    )
    if not result.accepted:
        _raise_outcome(result.outcome.value, result.message)
    return AcceptJobResponse(
        outcome=result.outcome.value,
        booking_id=booking_id,
        duplicate=result.duplicate,
        message=result.message,
        job=JobOut.from_job(result.job) if result.job else None,
    )


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{booking_id}/reject
# ---------------------------------------------------------------------------

@router.post(
    "/{booking_id}/reject",
    response_model=RejectJobResponse,
    summary="Reject a job offer",
    description="Hides the job from the caller's new-jobs feed for a limited time.",
)
async def reject(booking_id: str, store: Store, provider_id: CurrentProvider) -> RejectJobResponse:
    if await store.get(booking_id) is None:
        _raise_outcome("not_found", f"Booking {booking_id} not found")
    expires_at = await reject_job(store, booking_id, provider_id)
    return RejectJobResponse(booking_id=booking_id, suppressed_until=expires_at)


# ---------------------------------------------------------------------------
# PATCH /api/v1/jobs/{booking_id}/status
# ---------------------------------------------------------------------------

@router.patch(
    "/{booking_id}/status",
    response_model=OutcomeResponse,
    summary="Advance job status",
    description=(
        "Moves the job exactly one step forward. Moving to 'completed' "
        "requires the customer's completion code in 'otp'."
    ),
)
async def update_status(
    booking_id: str,
    body: StatusUpdateRequest,
    store: Store,
    inbox: Inbox,
    provider_id: CurrentProvider,
) -> OutcomeResponse:
    result = await jobService.advance_status(
        store, booking_id, provider_id, body.status, body.otp, inbox=inbox,
    )
    if not result.ok:
        _raise_outcome(result.outcome.value, result.message)
    return OutcomeResponse(
        outcome=result.outcome.value,
        message=result.message,
        job=JobOut.from_job(result.job) if result.job else None,
    )


# ---------------------------------------------------------------------------
# Completion handshake
# ---------------------------------------------------------------------------

@router.post(
    "/{booking_id}/otp/regenerate",
    response_model=OutcomeResponse,
    summary="Regenerate the completion code",
)
async def regenerate_otp(booking_id: str, store: Store, provider_id: CurrentProvider) -> OutcomeResponse:
    result = await completionHandshake.regenerate_completion_otp(store, booking_id, provider_id)
    return _handshake_response(result)


@router.post(
    "/{booking_id}/payment/cash",
    response_model=OutcomeResponse,
    summary="Record a cash payment",
)
async def record_cash(
    booking_id: str,
    store: Store,
    provider_id: CurrentProvider,
    body: Optional[PaymentRequest] = None,
) -> OutcomeResponse:
    amount = body.amount if body else None
    result = await completionHandshake.record_cash_payment(store, booking_id, provider_id, amount)
    return _handshake_response(result)


@router.post(
    "/{booking_id}/payment/upi",
    response_model=OutcomeResponse,
    summary="Generate a UPI QR payment request",
    description="Returns the job with 'qrUpiUri' set. Payment stays pending until confirmed.",
)
async def record_upi(
    booking_id: str,
    store: Store,
    provider_id: CurrentProvider,
    body: Optional[PaymentRequest] = None,
) -> OutcomeResponse:
    amount = body.amount if body else None
    result = await completionHandshake.record_upi_payment(store, booking_id, provider_id, amount)
    return _handshake_response(result)


@router.post(
    "/{booking_id}/payment/confirm",
    response_model=OutcomeResponse,
    summary="Confirm payment received",
)
async def confirm_payment(booking_id: str, store: Store, provider_id: CurrentProvider) -> OutcomeResponse:
    result = await completionHandshake.confirm_payment_received(store, booking_id, provider_id)
    return _handshake_response(result)


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{booking_id}/dispatch (internal)
# ---------------------------------------------------------------------------

@router.post(
    "/{booking_id}/dispatch",
    response_model=DispatchResponse,
    summary="Offer a pending job to providers (internal)",
    description=(
        "Called by the matching pipeline. Marks each provider as notified, "
        "writes an inbox entry for them and pushes 'job:offered' to their "
        "connected sessions."
    ),
)
async def dispatch(
    booking_id: str,
    body: DispatchRequest,
    inbox: Inbox,
    caller: CurrentService,
) -> DispatchResponse:
    result = await inbox.dispatch_to_providers(
        booking_id, [(target.provider_id, target.distance_km) for target in body.providers],
    )
    if result.outcome == DispatchOutcome.NOT_FOUND:
        _raise_outcome("not_found", f"Booking {booking_id} not found")
    if result.outcome == DispatchOutcome.NOT_PENDING:
        _raise_outcome("not_pending", f"Booking {booking_id} is no longer pending")
    logger.info("Booking %s dispatched by %s", booking_id, caller.subject)
    for target in body.providers:
        await send_to_user(
            target.provider_id,
            "job:offered",
            {"bookingId": booking_id, "distanceKm": target.distance_km},
        )
    return DispatchResponse(
        outcome=result.outcome.value,
        notified_provider_ids=list(result.notified_provider_ids),
    )
