"""
Job Service
===========

Provider-facing operations on accepted bookings. All status changes go
through the state machine inside the store's atomic update, so two devices
signed in as the same provider cannot apply conflicting transitions.

Key functions:
  - advance_status           -- guarded single-step status change
  - get_completed_jobs       -- keyset-paginated completed history
  - get_full_booking_details -- authoritative booking for a provider
  - has_ongoing_job          -- whether the provider has active work

``advance_status`` routes ``accepted`` through the acceptance coordinator
and ``completed`` through the completion handshake; every other target is
a plain ownership-plus-guard compare-and-swap.
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from serveit.core.config import settings
from serveit.events.jobEvents import emit_job_status_changed
from serveit.models.job import Job, JobStatus
from serveit.services.acceptanceCoordinator import AcceptOutcome, accept_job
from serveit.services.bookingStore import (
    BookingQuery,
    BookingStore,
    UpdateStatus,
    completed_sort_key,
)
from serveit.services.completionHandshake import HandshakeOutcome, complete_job, otp_fields
from serveit.services.inboxService import InboxProjection
from serveit.services.jobNormalizer import MalformedRecordError, parse_timestamp, try_normalize
from serveit.services.jobStateManager import (
    ACTIVE_STATUSES,
    STAGE_TIMESTAMP_FIELDS,
    STATUS_ORDER,
    InvalidTransitionError,
    can_transition_to,
    stage_timestamp,
    status_rank,
    validate_transition,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results & errors
# ---------------------------------------------------------------------------

class StatusOutcome(str, enum.Enum):
    OK = "ok"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    NOT_ASSIGNED = "not_assigned"
    ALREADY_TAKEN = "already_taken"
    NOT_ELIGIBLE = "not_eligible"
    OTP_EXPIRED = "otp_expired"
    OTP_MISMATCH = "otp_mismatch"
    PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"


@dataclass(frozen=True)
class StatusResult:
    outcome: StatusOutcome
    booking_id: str
    job: Optional[Job] = None
    message: str = ""
    # Set when outcome is INVALID_TRANSITION
    error: Optional[InvalidTransitionError] = None

    @property
    def ok(self) -> bool:
        return self.outcome == StatusOutcome.OK


class InvalidPageTokenError(ValueError):
    """Raised when a completed-jobs page token cannot be decoded."""


@dataclass(frozen=True)
class CompletedJobsPage:
    jobs: Sequence[Job]
    next_page_token: Optional[str]


_ACCEPT_OUTCOMES: dict[AcceptOutcome, StatusOutcome] = {
    AcceptOutcome.ACCEPTED: StatusOutcome.OK,
    AcceptOutcome.ALREADY_TAKEN: StatusOutcome.ALREADY_TAKEN,
    AcceptOutcome.NOT_FOUND: StatusOutcome.NOT_FOUND,
    AcceptOutcome.NOT_ELIGIBLE: StatusOutcome.NOT_ELIGIBLE,
}

_HANDSHAKE_OUTCOMES: dict[HandshakeOutcome, StatusOutcome] = {
    HandshakeOutcome.COMPLETED: StatusOutcome.OK,
    HandshakeOutcome.OTP_EXPIRED: StatusOutcome.OTP_EXPIRED,
    HandshakeOutcome.OTP_MISMATCH: StatusOutcome.OTP_MISMATCH,
    HandshakeOutcome.PAYMENT_NOT_CONFIRMED: StatusOutcome.PAYMENT_NOT_CONFIRMED,
    HandshakeOutcome.INVALID_TRANSITION: StatusOutcome.INVALID_TRANSITION,
    HandshakeOutcome.NOT_ASSIGNED: StatusOutcome.NOT_ASSIGNED,
    HandshakeOutcome.NOT_FOUND: StatusOutcome.NOT_FOUND,
}


# ---------------------------------------------------------------------------
# Status advance
# ---------------------------------------------------------------------------

async def advance_status(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    target: JobStatus,
    otp: Optional[str] = None,
    *,
    inbox: Optional[InboxProjection] = None,
    now: Optional[datetime] = None,
) -> StatusResult:
    """Move a booking one step forward in its lifecycle.

    Args:
        store: The booking store.
        booking_id: Booking to advance.
        provider_id: The calling provider; must be the assigned provider
            for every target except ``accepted``.
        target: Requested next status.
        otp: Customer completion code, required when ``target`` is
            ``completed``.

    Raises:
        TransientStoreError: the store failed before the outcome was known.
    """
    now = now or datetime.now(timezone.utc)
    inbox = inbox or InboxProjection(store)

    if target == JobStatus.ACCEPTED:
        accepted = await accept_job(store, booking_id, provider_id, inbox=inbox, now=now)
        return StatusResult(
            _ACCEPT_OUTCOMES.get(accepted.outcome, StatusOutcome.NOT_FOUND),
            booking_id, job=accepted.job, message=accepted.message,
        )

    if target == JobStatus.COMPLETED:
        completed = await complete_job(store, booking_id, provider_id, otp or "", now=now)
        outcome = _HANDSHAKE_OUTCOMES.get(completed.outcome, StatusOutcome.INVALID_TRANSITION)
        error = None
        if outcome == StatusOutcome.INVALID_TRANSITION and completed.job is not None:
            error = InvalidTransitionError(completed.job.status, target)
        if outcome == StatusOutcome.OK:
            await _after_advance(inbox, booking_id, provider_id, JobStatus.PAYMENT_PENDING, target)
        return StatusResult(outcome, booking_id, job=completed.job, message=completed.message, error=error)

    def precondition(data: dict[str, Any]) -> bool:
        job = try_normalize(data)
        return (
            job is not None
            and job.provider_id == provider_id
            and can_transition_to(job.status, target)
        )

    def mutation(data: dict[str, Any]) -> dict[str, Any]:
        data["status"] = target.value
        data["bookingStatus"] = target.value
        data[STAGE_TIMESTAMP_FIELDS[target]] = stage_timestamp(data, target, now)
        if target == JobStatus.PAYMENT_PENDING:
            data.update(otp_fields(now))
        return data

    result = await store.atomic_update(booking_id, precondition, mutation)

    if result.status == UpdateStatus.NOT_FOUND or result.record is None:
        return StatusResult(StatusOutcome.NOT_FOUND, booking_id, message="Booking not found")

    try:
        job = result.record.to_job()
    except MalformedRecordError as exc:
        logger.warning("Booking %s is malformed: %s", booking_id, exc)
        return StatusResult(StatusOutcome.NOT_FOUND, booking_id, message="Booking not found")

    if result.status == UpdateStatus.PRECONDITION_FAILED:
        if job.provider_id != provider_id:
            logger.info("Provider %s tried to advance booking %s it does not own", provider_id, booking_id)
            return StatusResult(
                StatusOutcome.NOT_ASSIGNED, booking_id, job=job, message="Job is not assigned to you",
            )
        check = validate_transition(job.status, target)
        logger.info("Rejected transition on booking %s: %s", booking_id, check.reason)
        return StatusResult(
            StatusOutcome.INVALID_TRANSITION, booking_id, job=job,
            message=check.reason or "", error=InvalidTransitionError(job.status, target),
        )

    previous = STATUS_ORDER[status_rank(target) - 1]
    await _after_advance(inbox, booking_id, provider_id, previous, target)
    return StatusResult(StatusOutcome.OK, booking_id, job=job, message=f"Status updated to {target.value}")


async def _after_advance(
    inbox: InboxProjection,
    booking_id: str,
    provider_id: str,
    previous: JobStatus,
    target: JobStatus,
) -> None:
    try:
        await inbox.sync_status(booking_id, provider_id, target)
    except (SQLAlchemyError, RedisError, OSError) as exc:
        logger.error("Inbox status sync failed for booking %s: %s", booking_id, exc)
    emit_job_status_changed(booking_id, previous.value, target.value, actor_id=provider_id)
    logger.info(
        "Booking %s transitioned: %s -> %s (provider=%s)",
        booking_id, previous.value, target.value, provider_id,
    )


# ---------------------------------------------------------------------------
# Completed history
# ---------------------------------------------------------------------------

def encode_page_token(completed_at: datetime, booking_id: str) -> str:
    payload = json.dumps({"c": parse_timestamp(completed_at).isoformat(), "b": booking_id})  # type: ignore[union-attr]
    return base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")


def decode_page_token(token: str) -> tuple[datetime, str]:
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        completed_at = parse_timestamp(payload["c"])
        booking_id = payload["b"]
    except (binascii.Error, ValueError, KeyError, TypeError) as exc:
        raise InvalidPageTokenError("Malformed page token") from exc
    if completed_at is None or not isinstance(booking_id, str):
        raise InvalidPageTokenError("Malformed page token")
    return completed_at, booking_id


async def get_completed_jobs(
    store: BookingStore,
    provider_id: str,
    limit: Optional[int] = None,
    page_token: Optional[str] = None,
) -> CompletedJobsPage:
    """Return one page of the provider's completed jobs, newest first.

    Raises:
        InvalidPageTokenError: ``page_token`` was not produced by this function.
    """
    limit = min(max(1, limit or settings.default_page_size), settings.max_page_size)
    after = decode_page_token(page_token) if page_token else None

    # One extra row tells us whether another page exists
    records = await store.query_completed(provider_id, limit + 1, after)
    has_more = len(records) > limit
    records = records[:limit]

    jobs: list[Job] = []
    for record in records:
        job = try_normalize(record.data, record.customer_phone)
        if job is None:
            logger.warning("Skipping malformed completed booking %s", record.booking_id)
            continue
        jobs.append(job)

    next_token = None
    if has_more and records:
        last = records[-1]
        cursor = completed_sort_key(last.data)
        if cursor is not None:
            next_token = encode_page_token(cursor, last.booking_id)
    return CompletedJobsPage(jobs=jobs, next_page_token=next_token)


# ---------------------------------------------------------------------------
# Details & checks
# ---------------------------------------------------------------------------

async def get_full_booking_details(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
) -> Optional[Job]:
    """Authoritative booking as visible to ``provider_id``.

    Visible when the provider is assigned to it or it is still on offer to
    them. Everything else reads as None.
    """
    job = await store.get_job(booking_id)
    if job is None:
        return None
    if job.provider_id == provider_id or job.is_available(provider_id):
        return job
    return None


async def has_ongoing_job(store: BookingStore, provider_id: str) -> bool:
    jobs = await store.query_jobs(BookingQuery(statuses=ACTIVE_STATUSES, provider_id=provider_id))
    return any(job.is_ongoing(provider_id) for job in jobs)
