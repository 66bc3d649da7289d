"""
Acceptance Coordinator
======================

Decides which provider gets a pending booking. Many notified providers may
press "accept" at the same moment; exactly one of them wins.

The decision is a single compare-and-swap on the booking record:

  1. Read the record.
  2. Check ``status == pending``, no ``providerId`` yet, and the caller is in
     ``notifiedProviderIds``.
  3. Write ``status = accepted``, ``providerId``, ``acceptedByProviderId``
     and ``acceptedAt``, conditional on the version read in step 1.

A loser of the race re-reads, sees ``providerId`` set, and is told
``ALREADY_TAKEN``. Inbox cleanup, suppression cleanup and the
``job.accepted`` event run after the commit and are best-effort: their
failure is logged and never changes the outcome.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from serveit.core.config import settings
from serveit.events.jobEvents import emit_job_accepted
from serveit.models.job import Job, JobStatus
from serveit.services.bookingStore import (
    BookingStore,
    StoredBooking,
    TransientStoreError,
    UpdateStatus,
)
from serveit.services.inboxService import InboxProjection
from serveit.services.jobNormalizer import try_normalize
from serveit.services.jobStateManager import can_transition_to, stage_timestamp
from serveit.services.jobSuppression import clear_suppressions

logger = logging.getLogger(__name__)


class AcceptOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    ALREADY_TAKEN = "already_taken"
    NOT_FOUND = "not_found"
    NOT_ELIGIBLE = "not_eligible"
    # Deadline passed and the re-read could not attribute the booking
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AcceptResult:
    outcome: AcceptOutcome
    booking_id: str
    provider_id: str
    job: Optional[Job] = None
    message: str = ""
    # True when the winner repeated an accept it had already won
    duplicate: bool = False

    @property
    def accepted(self) -> bool:
        return self.outcome == AcceptOutcome.ACCEPTED


def _classify(record: Optional[StoredBooking], provider_id: str) -> tuple[AcceptOutcome, Optional[Job], bool]:
    """Explain why an accept did not apply, from the record that failed the check."""
    if record is None:
        return AcceptOutcome.NOT_FOUND, None, False
    job = try_normalize(record.data, record.customer_phone)
    if job is None:
        return AcceptOutcome.NOT_FOUND, None, False
    if job.provider_id == provider_id:
        return AcceptOutcome.ACCEPTED, job, True
    if job.provider_id or job.status != JobStatus.PENDING:
        return AcceptOutcome.ALREADY_TAKEN, job, False
    return AcceptOutcome.NOT_ELIGIBLE, job, False


_MESSAGES: dict[AcceptOutcome, str] = {
    AcceptOutcome.ACCEPTED: "Job accepted successfully",
    AcceptOutcome.ALREADY_TAKEN: "This job has already been accepted by another provider",
    AcceptOutcome.NOT_FOUND: "Booking not found",
    AcceptOutcome.NOT_ELIGIBLE: "You were not notified for this job",
    AcceptOutcome.UNKNOWN: "Accept outcome unknown, refresh the job list",
}


async def accept_job(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    *,
    provider_name: Optional[str] = None,
    provider_mobile_no: Optional[str] = None,
    inbox: Optional[InboxProjection] = None,
    now: Optional[datetime] = None,
) -> AcceptResult:
    """Try to claim ``booking_id`` for ``provider_id``.

    Returns an ``AcceptResult``; business outcomes are never raised.

    Raises:
        TransientStoreError: the store failed before the outcome was known.
    """
    if not booking_id or not provider_id:
        return AcceptResult(
            AcceptOutcome.NOT_FOUND, booking_id, provider_id,
            message="bookingId and providerId are required",
        )

    now = now or datetime.now(timezone.utc)

    def precondition(data: dict[str, Any]) -> bool:
        job = try_normalize(data)
        return (
            job is not None
            and can_transition_to(job.status, JobStatus.ACCEPTED)
            and job.provider_id is None
            and provider_id in job.notified_provider_ids
        )

    def mutation(data: dict[str, Any]) -> dict[str, Any]:
        data["status"] = JobStatus.ACCEPTED.value
        data["bookingStatus"] = JobStatus.ACCEPTED.value
        data["providerId"] = provider_id
        data["acceptedByProviderId"] = provider_id
        data["acceptedAt"] = stage_timestamp(data, JobStatus.ACCEPTED, now)
        if provider_name:
            data["providerName"] = provider_name
        if provider_mobile_no:
            data["providerMobileNo"] = provider_mobile_no
        return data

    result = await store.atomic_update(booking_id, precondition, mutation)

    if result.status != UpdateStatus.APPLIED:
        outcome, job, duplicate = _classify(result.record, provider_id)
        logger.info(
            "Accept of booking %s by provider %s rejected: %s%s",
            booking_id, provider_id, outcome.value, " (duplicate)" if duplicate else "",
        )
        return AcceptResult(
            outcome, booking_id, provider_id, job=job,
            message=_MESSAGES[outcome], duplicate=duplicate,
        )

    job = result.committed().to_job()
    logger.info("Provider %s accepted booking %s", provider_id, booking_id)

    await _after_accept(store, booking_id, provider_id, inbox or InboxProjection(store))
    return AcceptResult(
        AcceptOutcome.ACCEPTED, booking_id, provider_id, job=job,
        message=_MESSAGES[AcceptOutcome.ACCEPTED],
    )


async def _after_accept(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    inbox: InboxProjection,
) -> None:
    try:
        await inbox.cleanup_for_accepted_job(booking_id, provider_id)
    except (SQLAlchemyError, RedisError, OSError) as exc:
        logger.error("Inbox cleanup failed for booking %s: %s", booking_id, exc)
    try:
        await clear_suppressions(store.session_factory, booking_id)
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Suppression cleanup failed for booking %s: %s", booking_id, exc)
    emit_job_accepted(booking_id, provider_id)


async def resolve_accept_outcome(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
) -> AcceptResult:
    """Work out what happened to an accept whose reply never arrived."""
    try:
        record = await store.get(booking_id)
    except TransientStoreError as exc:
        logger.warning("Could not re-read booking %s after accept timeout: %s", booking_id, exc)
        return AcceptResult(
            AcceptOutcome.UNKNOWN, booking_id, provider_id,
            message=_MESSAGES[AcceptOutcome.UNKNOWN],
        )

    outcome, job, _ = _classify(record, provider_id)
    if outcome in (AcceptOutcome.NOT_ELIGIBLE, AcceptOutcome.NOT_FOUND):
        # Still pending or unreadable: the write may yet land
        outcome = AcceptOutcome.UNKNOWN
    return AcceptResult(outcome, booking_id, provider_id, job=job, message=_MESSAGES[outcome])


def _log_late_failure(task: "asyncio.Future[AcceptResult]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Timed-out accept failed after the deadline: %s", task.exception())


async def accept_job_with_deadline(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    *,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> AcceptResult:
    """``accept_job`` bounded by ``timeout`` seconds.

    The in-flight accept is shielded so a timeout never cancels a write
    that may already have committed. On timeout the booking is re-read and
    the outcome resolved from actual state; the write is not retried.
    """
    timeout = settings.accept_timeout_seconds if timeout is None else timeout
    task = asyncio.ensure_future(accept_job(store, booking_id, provider_id, **kwargs))
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Accept of booking %s by provider %s exceeded %.1fs, re-reading state",
            booking_id, provider_id, timeout,
        )
        task.add_done_callback(_log_late_failure)
        return await resolve_accept_outcome(store, booking_id, provider_id)
