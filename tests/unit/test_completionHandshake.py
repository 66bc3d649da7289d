"""
Unit tests for the completion and payment handshake.
"""

import asyncio
import dataclasses
from datetime import timedelta
from decimal import Decimal

import pytest

from serveit.models.job import JobStatus, PaymentMode, PaymentStatus
from serveit.services.bookingStore import BookingStore
from serveit.services.completionHandshake import (
    HandshakeOutcome,
    build_upi_note,
    build_upi_uri,
    complete_job,
    confirm_payment_received,
    generate_otp,
    otp_is_expired,
    record_cash_payment,
    record_upi_payment,
    regenerate_completion_otp,
)
from serveit.services.jobNormalizer import normalize_booking
from tests.conftest import CUSTOMER_PHONE, PROVIDER_1, PROVIDER_2, T0, raw_booking, seed

OTP = "482913"


def awaiting_payment(booking_id="bk-1", **fields):
    defaults = {
        "status": "payment_pending",
        "providerId": PROVIDER_1,
        "acceptedByProviderId": PROVIDER_1,
        "providerName": "Ravi",
        "acceptedAt": T0.isoformat(),
        "paymentPendingAt": T0.isoformat(),
        "completionOTP": OTP,
        "otpGeneratedAt": T0.isoformat(),
    }
    defaults.update(fields)
    return raw_booking(booking_id, **defaults)


SOON = T0 + timedelta(minutes=5)


# ---------------------------------------------------------------------------
# Code helpers
# ---------------------------------------------------------------------------


class TestOtpHelpers:
    def test_generated_code_is_numeric_with_fixed_length(self):
        for _ in range(50):
            code = generate_otp(6)
            assert len(code) == 6
            assert code.isdigit()

    def test_expiry_window(self):
        job = normalize_booking(awaiting_payment(), CUSTOMER_PHONE)
        assert otp_is_expired(job, T0 + timedelta(minutes=29)) is False
        assert otp_is_expired(job, T0 + timedelta(minutes=31)) is True

    def test_future_generation_time_counts_as_fresh(self):
        job = normalize_booking(awaiting_payment(), CUSTOMER_PHONE)
        assert otp_is_expired(job, T0 - timedelta(minutes=10)) is False

    def test_missing_code_is_expired(self):
        job = normalize_booking(awaiting_payment(), CUSTOMER_PHONE)
        assert otp_is_expired(dataclasses.replace(job, completion_otp=None), SOON) is True


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCompleteJob:
    async def test_correct_code_completes(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await complete_job(store, "bk-1", PROVIDER_1, OTP, now=SOON)

        assert result.outcome == HandshakeOutcome.COMPLETED
        assert result.ok
        job = await store.get_job("bk-1")
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at == SOON
        assert job.payment_status == PaymentStatus.DONE
        # No payment recorded beforehand: cash is assumed
        assert job.payment_mode == PaymentMode.CASH

    async def test_surrounding_whitespace_is_ignored(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await complete_job(store, "bk-1", PROVIDER_1, f" {OTP}\n", now=SOON)
        assert result.outcome == HandshakeOutcome.COMPLETED

    async def test_stale_code_is_rejected_and_status_unchanged(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await complete_job(store, "bk-1", PROVIDER_1, OTP, now=T0 + timedelta(hours=2))

        assert result.outcome == HandshakeOutcome.OTP_EXPIRED
        assert (await store.get_job("bk-1")).status == JobStatus.PAYMENT_PENDING

    async def test_wrong_code(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await complete_job(store, "bk-1", PROVIDER_1, "000000", now=SOON)
        assert result.outcome == HandshakeOutcome.OTP_MISMATCH
        assert (await store.get_job("bk-1")).status == JobStatus.PAYMENT_PENDING

    async def test_only_assigned_provider_may_complete(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await complete_job(store, "bk-1", PROVIDER_2, OTP, now=SOON)
        assert result.outcome == HandshakeOutcome.NOT_ASSIGNED

    async def test_not_awaiting_payment(self, store: BookingStore):
        await seed(store, awaiting_payment(status="in_progress"))
        result = await complete_job(store, "bk-1", PROVIDER_1, OTP, now=SOON)
        assert result.outcome == HandshakeOutcome.INVALID_TRANSITION

    async def test_missing_booking(self, store: BookingStore):
        result = await complete_job(store, "nope", PROVIDER_1, OTP, now=SOON)
        assert result.outcome == HandshakeOutcome.NOT_FOUND

    async def test_concurrent_completions_apply_once(self, store: BookingStore):
        await seed(store, awaiting_payment())
        first, second = await asyncio.gather(
            complete_job(store, "bk-1", PROVIDER_1, OTP, now=SOON),
            complete_job(store, "bk-1", PROVIDER_1, OTP, now=SOON),
        )
        outcomes = {first.outcome, second.outcome}
        assert outcomes == {HandshakeOutcome.COMPLETED, HandshakeOutcome.INVALID_TRANSITION}

    async def test_regenerated_code_replaces_expired_one(self, store: BookingStore):
        await seed(store, awaiting_payment())
        later = T0 + timedelta(hours=2)

        regenerated = await regenerate_completion_otp(store, "bk-1", PROVIDER_1, now=later)
        assert regenerated.ok
        new_code = regenerated.job.completion_otp
        assert regenerated.job.otp_generated_at == later

        result = await complete_job(store, "bk-1", PROVIDER_1, new_code, now=later + timedelta(minutes=1))
        assert result.outcome == HandshakeOutcome.COMPLETED


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestPayments:
    async def test_cash_is_confirmed_on_receipt(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await record_cash_payment(store, "bk-1", PROVIDER_1)

        assert result.outcome == HandshakeOutcome.OK
        assert result.job.payment_mode == PaymentMode.CASH
        assert result.job.payment_status == PaymentStatus.DONE
        assert result.job.payment_amount == Decimal("499")
        assert result.job.status == JobStatus.PAYMENT_PENDING

    async def test_upi_requires_confirmation_before_completion(self, store: BookingStore):
        await seed(store, awaiting_payment())
        upi = await record_upi_payment(store, "bk-1", PROVIDER_1, amount=Decimal("520.5"), now=SOON)
        assert upi.outcome == HandshakeOutcome.OK
        assert upi.job.payment_status == PaymentStatus.PENDING
        assert upi.job.qr_upi_uri.startswith("upi://pay?")
        assert "am=520.50" in upi.job.qr_upi_uri
        assert upi.job.qr_generated_at == SOON

        blocked = await complete_job(store, "bk-1", PROVIDER_1, OTP, now=SOON)
        assert blocked.outcome == HandshakeOutcome.PAYMENT_NOT_CONFIRMED

        confirmed = await confirm_payment_received(store, "bk-1", PROVIDER_1)
        assert confirmed.job.payment_status == PaymentStatus.DONE

        done = await complete_job(store, "bk-1", PROVIDER_1, OTP, now=SOON)
        assert done.outcome == HandshakeOutcome.COMPLETED
        assert done.job.payment_mode == PaymentMode.UPI_QR

    async def test_payment_outside_payment_pending_is_rejected(self, store: BookingStore):
        await seed(store, awaiting_payment(status="in_progress"))
        result = await record_cash_payment(store, "bk-1", PROVIDER_1)
        assert result.outcome == HandshakeOutcome.INVALID_TRANSITION
        assert (await store.get_job("bk-1")).payment_mode is None

    async def test_payment_by_other_provider(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await record_upi_payment(store, "bk-1", PROVIDER_2)
        assert result.outcome == HandshakeOutcome.NOT_ASSIGNED

    async def test_confirmed_payment_cannot_be_rewritten(self, store: BookingStore):
        await seed(store, awaiting_payment())
        await record_cash_payment(store, "bk-1", PROVIDER_1)
        result = await record_upi_payment(store, "bk-1", PROVIDER_1)
        assert result.outcome == HandshakeOutcome.PAYMENT_ALREADY_CONFIRMED
        assert result.job.payment_mode == PaymentMode.CASH

    async def test_confirm_without_payment(self, store: BookingStore):
        await seed(store, awaiting_payment())
        result = await confirm_payment_received(store, "bk-1", PROVIDER_1)
        assert result.outcome == HandshakeOutcome.NO_PAYMENT_RECORDED

    async def test_payment_on_missing_booking(self, store: BookingStore):
        result = await record_cash_payment(store, "nope", PROVIDER_1)
        assert result.outcome == HandshakeOutcome.NOT_FOUND


class TestUpiLink:
    def test_uri_format(self):
        uri = build_upi_uri(
            Decimal("499"), "Payment for AC Repair",
            payee_vpa="shop@upi", payee_name="Serve It", currency="INR",
        )
        assert uri == "upi://pay?pa=shop@upi&pn=Serve%20It&am=499.00&cu=INR&tn=Payment+for+AC+Repair"

    def test_note_uses_booking_id_suffix(self):
        note = build_upi_note("Asha", "AC Repair", "Ravi", "booking-0012345678")
        assert note == "Payment for AC Repair - Asha by Ravi (ID: 12345678)"
