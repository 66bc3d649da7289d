"""
Completion & Payment Handshake
==============================

Guards the final ``payment_pending -> completed`` step.

When a booking enters ``payment_pending`` a one-time numeric code
(``completionOTP``) and its generation time are written in the same atomic
update (see ``otp_fields``). The customer reads the code to the provider,
who submits it with ``complete_job``. Matching the code and writing
``completed`` happen in a single compare-and-swap, so two concurrent
completion attempts cannot both apply.

Rules checked, in order:
  1. The caller is the assigned provider        -> NOT_ASSIGNED
  2. The booking is in ``payment_pending``       -> INVALID_TRANSITION
  3. The code is younger than the validity window -> OTP_EXPIRED
  4. The code matches (constant-time compare)    -> OTP_MISMATCH
  5. UPI QR payments are confirmed received      -> PAYMENT_NOT_CONFIRMED

Payment details (cash or UPI QR) may only be written while the booking is
in ``payment_pending`` and before the payment is confirmed.
"""

from __future__ import annotations

import enum
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional
from urllib.parse import quote, quote_plus

from serveit.core.config import settings
from serveit.events.jobEvents import emit_job_completed, emit_payment_recorded
from serveit.models.job import Job, JobStatus, PaymentMode, PaymentStatus
from serveit.services.bookingStore import BookingStore, StoredBooking, UpdateStatus
from serveit.services.jobNormalizer import format_timestamp, try_normalize
from serveit.services.jobStateManager import stage_timestamp

logger = logging.getLogger(__name__)


class HandshakeOutcome(str, enum.Enum):
    OK = "ok"
    COMPLETED = "completed"
    OTP_EXPIRED = "otp_expired"
    OTP_MISMATCH = "otp_mismatch"
    PAYMENT_NOT_CONFIRMED = "payment_not_confirmed"
    PAYMENT_ALREADY_CONFIRMED = "payment_already_confirmed"
    NO_PAYMENT_RECORDED = "no_payment_recorded"
    INVALID_TRANSITION = "invalid_transition"
    NOT_ASSIGNED = "not_assigned"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class HandshakeResult:
    outcome: HandshakeOutcome
    booking_id: str
    job: Optional[Job] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (HandshakeOutcome.OK, HandshakeOutcome.COMPLETED)


_MESSAGES: dict[HandshakeOutcome, str] = {
    HandshakeOutcome.OK: "Payment details updated",
    HandshakeOutcome.COMPLETED: "Job completed",
    HandshakeOutcome.OTP_EXPIRED: "Completion code expired, generate a new one",
    HandshakeOutcome.OTP_MISMATCH: "Completion code does not match",
    HandshakeOutcome.PAYMENT_NOT_CONFIRMED: "UPI payment has not been confirmed yet",
    HandshakeOutcome.PAYMENT_ALREADY_CONFIRMED: "Payment is already confirmed",
    HandshakeOutcome.NO_PAYMENT_RECORDED: "No payment has been recorded for this job",
    HandshakeOutcome.INVALID_TRANSITION: "Job is not awaiting payment",
    HandshakeOutcome.NOT_ASSIGNED: "Job is not assigned to you",
    HandshakeOutcome.NOT_FOUND: "Booking not found",
}


def _result(outcome: HandshakeOutcome, booking_id: str, job: Optional[Job] = None) -> HandshakeResult:
    return HandshakeResult(outcome, booking_id, job=job, message=_MESSAGES[outcome])


# ---------------------------------------------------------------------------
# OTP generation
# ---------------------------------------------------------------------------

def generate_otp(length: Optional[int] = None) -> str:
    """Random numeric code of ``length`` digits (leading zeros kept)."""
    length = length or settings.completion_otp_length
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def otp_fields(now: datetime) -> dict[str, Any]:
    """Raw fields written alongside the transition into ``payment_pending``."""
    return {
        "completionOTP": generate_otp(),
        "otpGeneratedAt": format_timestamp(now),
    }


def otp_is_expired(job: Job, now: datetime) -> bool:
    """True when no code exists or it is older than the validity window.

    A generation time ahead of ``now`` (clock skew) counts as fresh.
    """
    if not job.completion_otp or job.otp_generated_at is None:
        return True
    validity = timedelta(minutes=settings.completion_otp_validity_minutes)
    return now - job.otp_generated_at > validity


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def _check_completion(job: Job, provider_id: str, otp: str, now: datetime) -> HandshakeOutcome:
    if job.provider_id != provider_id:
        return HandshakeOutcome.NOT_ASSIGNED
    if job.status != JobStatus.PAYMENT_PENDING:
        return HandshakeOutcome.INVALID_TRANSITION
    if otp_is_expired(job, now):
        return HandshakeOutcome.OTP_EXPIRED
    if not hmac.compare_digest(job.completion_otp.encode(), otp.strip().encode()):  # type: ignore[union-attr]
        return HandshakeOutcome.OTP_MISMATCH
    if job.payment_mode == PaymentMode.UPI_QR and job.payment_status != PaymentStatus.DONE:
        return HandshakeOutcome.PAYMENT_NOT_CONFIRMED
    return HandshakeOutcome.COMPLETED


async def complete_job(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    otp: str,
    now: Optional[datetime] = None,
) -> HandshakeResult:
    """Verify the customer's code and mark the booking completed.

    Raises:
        TransientStoreError: the store failed before the outcome was known.
    """
    now = now or datetime.now(timezone.utc)
    otp = otp or ""

    def precondition(data: dict[str, Any]) -> bool:
        job = try_normalize(data)
        return job is not None and _check_completion(job, provider_id, otp, now) == HandshakeOutcome.COMPLETED

    def mutation(data: dict[str, Any]) -> dict[str, Any]:
        data["status"] = JobStatus.COMPLETED.value
        data["bookingStatus"] = JobStatus.COMPLETED.value
        data["completedAt"] = stage_timestamp(data, JobStatus.COMPLETED, now)
        if not data.get("paymentMode"):
            data["paymentMode"] = PaymentMode.CASH.value
        data["paymentStatus"] = PaymentStatus.DONE.value
        return data

    result = await store.atomic_update(booking_id, precondition, mutation)
    if result.status == UpdateStatus.NOT_FOUND:
        return _result(HandshakeOutcome.NOT_FOUND, booking_id)
    if result.status == UpdateStatus.PRECONDITION_FAILED:
        job = _job_or_none(result.record)
        if job is None:
            return _result(HandshakeOutcome.NOT_FOUND, booking_id)
        outcome = _check_completion(job, provider_id, otp, now)
        logger.info(
            "Completion of booking %s by provider %s rejected: %s",
            booking_id, provider_id, outcome.value,
        )
        return _result(outcome, booking_id, job)

    job = result.record.to_job()  # type: ignore[union-attr]
    logger.info("Provider %s completed booking %s", provider_id, booking_id)
    emit_job_completed(booking_id, provider_id)
    return _result(HandshakeOutcome.COMPLETED, booking_id, job)


def _job_or_none(record: Optional[StoredBooking]) -> Optional[Job]:
    if record is None:
        return None
    return try_normalize(record.data, record.customer_phone)


# ---------------------------------------------------------------------------
# Payment-pending updates
# ---------------------------------------------------------------------------

def _check_payment_window(job: Job, provider_id: str) -> HandshakeOutcome:
    if job.provider_id != provider_id:
        return HandshakeOutcome.NOT_ASSIGNED
    if job.status != JobStatus.PAYMENT_PENDING:
        return HandshakeOutcome.INVALID_TRANSITION
    return HandshakeOutcome.OK


async def _guarded_payment_update(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    extra_check: Callable[[Job], HandshakeOutcome],
    apply: Callable[[Job, dict[str, Any]], None],
) -> HandshakeResult:
    def check(job: Job) -> HandshakeOutcome:
        outcome = _check_payment_window(job, provider_id)
        return outcome if outcome != HandshakeOutcome.OK else extra_check(job)

    def precondition(data: dict[str, Any]) -> bool:
        job = try_normalize(data)
        return job is not None and check(job) == HandshakeOutcome.OK

    def mutation(data: dict[str, Any]) -> dict[str, Any]:
        apply(try_normalize(data), data)  # type: ignore[arg-type]
        return data

    result = await store.atomic_update(booking_id, precondition, mutation)
    if result.status == UpdateStatus.NOT_FOUND:
        return _result(HandshakeOutcome.NOT_FOUND, booking_id)
    job = _job_or_none(result.record)
    if job is None:
        return _result(HandshakeOutcome.NOT_FOUND, booking_id)
    if result.status == UpdateStatus.PRECONDITION_FAILED:
        return _result(check(job), booking_id, job)
    return _result(HandshakeOutcome.OK, booking_id, job)


def _not_confirmed(job: Job) -> HandshakeOutcome:
    if job.payment_status == PaymentStatus.DONE:
        return HandshakeOutcome.PAYMENT_ALREADY_CONFIRMED
    return HandshakeOutcome.OK


async def regenerate_completion_otp(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    now: Optional[datetime] = None,
) -> HandshakeResult:
    """Replace an expired or lost completion code with a fresh one."""
    now = now or datetime.now(timezone.utc)
    result = await _guarded_payment_update(
        store, booking_id, provider_id,
        lambda job: HandshakeOutcome.OK,
        lambda job, data: data.update(otp_fields(now)),
    )
    if result.ok:
        logger.info("Regenerated completion code for booking %s", booking_id)
    return result


async def record_cash_payment(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    amount: Optional[Decimal] = None,
) -> HandshakeResult:
    """Record cash collected in hand. Cash is confirmed on receipt."""

    def apply(job: Job, data: dict[str, Any]) -> None:
        data["paymentMode"] = PaymentMode.CASH.value
        data["paymentAmount"] = str(amount if amount is not None else job.total_price)
        data["paymentStatus"] = PaymentStatus.DONE.value

    result = await _guarded_payment_update(store, booking_id, provider_id, _not_confirmed, apply)
    if result.ok and result.job is not None:
        emit_payment_recorded(
            booking_id, provider_id, PaymentMode.CASH.value, PaymentStatus.DONE.value,
            str(result.job.payment_amount),
        )
    return result


def build_upi_note(customer_name: str, service_name: str, provider_name: str, booking_id: str) -> str:
    return f"Payment for {service_name} - {customer_name} by {provider_name} (ID: {booking_id[-8:]})"


def build_upi_uri(
    amount: Decimal,
    note: str,
    *,
    payee_vpa: Optional[str] = None,
    payee_name: Optional[str] = None,
    currency: Optional[str] = None,
) -> str:
    """UPI deep link understood by payment apps when scanned as a QR code."""
    return (
        f"upi://pay?pa={payee_vpa or settings.upi_payee_vpa}"
        f"&pn={quote(payee_name or settings.upi_payee_name)}"
        f"&am={Decimal(amount):.2f}"
        f"&cu={currency or settings.upi_currency}"
        f"&tn={quote_plus(note)}"
    )


async def record_upi_payment(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    amount: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> HandshakeResult:
    """Attach a UPI QR payment request. Status stays PENDING until confirmed."""
    now = now or datetime.now(timezone.utc)

    def apply(job: Job, data: dict[str, Any]) -> None:
        payable = amount if amount is not None else job.total_price
        note = build_upi_note(
            job.user_name, job.service_name, job.provider_name or "Partner", job.booking_id,
        )
        data["paymentMode"] = PaymentMode.UPI_QR.value
        data["paymentAmount"] = str(payable)
        data["paymentStatus"] = PaymentStatus.PENDING.value
        data["upiNote"] = note
        data["qrUpiUri"] = build_upi_uri(payable, note)
        data["qrGeneratedAt"] = format_timestamp(now)

    result = await _guarded_payment_update(store, booking_id, provider_id, _not_confirmed, apply)
    if result.ok and result.job is not None:
        emit_payment_recorded(
            booking_id, provider_id, PaymentMode.UPI_QR.value, PaymentStatus.PENDING.value,
            str(result.job.payment_amount),
        )
    return result


async def confirm_payment_received(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
) -> HandshakeResult:
    """Mark a recorded payment as received."""

    def check(job: Job) -> HandshakeOutcome:
        if job.payment_mode is None:
            return HandshakeOutcome.NO_PAYMENT_RECORDED
        return _not_confirmed(job)

    def apply(job: Job, data: dict[str, Any]) -> None:
        data["paymentStatus"] = PaymentStatus.DONE.value

    result = await _guarded_payment_update(store, booking_id, provider_id, check, apply)
    if result.ok and result.job is not None and result.job.payment_mode is not None:
        emit_payment_recorded(
            booking_id, provider_id, result.job.payment_mode.value, PaymentStatus.DONE.value,
            str(result.job.payment_amount),
        )
    return result
