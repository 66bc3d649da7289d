"""
E2E: Job lifecycle through the HTTP API.

Walks one booking from ingest to completion:
ingest -> dispatch -> concurrent accept -> arrived -> in_progress ->
payment_pending -> UPI payment -> confirm -> completed (with code).

Validates the business rules the partner app relies on:
- Exactly one of several concurrent accepts wins; the rest get 409
- Statuses advance one step at a time
- The completion code is required, never returned to the provider, and
  UPI payments must be confirmed first
- Backend-only endpoints reject provider tokens
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from httpx import AsyncClient

from serveit.api.deps import get_store
from serveit.main import app
from serveit.services.auth_service import create_access_token
from serveit.services.bookingStore import BookingStore, TransientStoreError
from tests.conftest import CUSTOMER_PHONE, PROVIDER_1, PROVIDER_2, PROVIDER_3, raw_booking
from tests.e2e.conftest import (
    API,
    auth_headers,
    dispatch_via_api,
    ingest_via_api,
    system_headers,
    transition_via_api,
)

pytestmark = pytest.mark.asyncio


class TestIngestAndDispatch:
    async def test_ingest_then_read_back(self, client: AsyncClient):
        inserted = await ingest_via_api(client, raw_booking("bk-1"), raw_booking("bk-2"))
        assert inserted == ["bk-1", "bk-2"]

        again = await ingest_via_api(client, raw_booking("bk-1"))
        assert again == []

        resp = await client.get(f"{API}/bookings/{CUSTOMER_PHONE}", headers=system_headers())
        assert resp.status_code == 200
        assert [b["bookingId"] for b in resp.json()["data"]["bookings"]] == ["bk-1", "bk-2"]

    async def test_unknown_customer_document(self, client: AsyncClient):
        resp = await client.get(f"{API}/bookings/+910000000000", headers=system_headers())
        assert resp.status_code == 404

    async def test_providers_cannot_ingest_or_dispatch(self, client: AsyncClient):
        resp = await client.post(
            f"{API}/bookings/{CUSTOMER_PHONE}",
            json={"bookings": [raw_booking("bk-1")]},
            headers=auth_headers(PROVIDER_1),
        )
        assert resp.status_code == 403

        resp = await client.post(
            f"{API}/jobs/bk-1/dispatch",
            json={"providers": [{"providerId": PROVIDER_1}]},
            headers=auth_headers(PROVIDER_1),
        )
        assert resp.status_code == 403

    async def test_dispatch_fills_inbox(self, client: AsyncClient):
        await ingest_via_api(client, raw_booking("bk-1", notifiedProviderIds=[]))
        body = await dispatch_via_api(client, "bk-1", PROVIDER_1, PROVIDER_3)
        assert body["outcome"] == "dispatched"
        assert body["notifiedProviderIds"] == [PROVIDER_1, PROVIDER_3]

        resp = await client.get(f"{API}/provider/inbox", headers=auth_headers(PROVIDER_3))
        assert resp.status_code == 200
        [item] = resp.json()["items"]
        assert item["bookingId"] == "bk-1"
        assert item["bookingDocPath"] == f"Bookings/{CUSTOMER_PHONE}"
        assert item["distanceKm"] == 1.5

    async def test_dispatch_unknown_booking(self, client: AsyncClient):
        resp = await client.post(
            f"{API}/jobs/nope/dispatch",
            json={"providers": [{"providerId": PROVIDER_1}]},
            headers=system_headers(),
        )
        assert resp.status_code == 404
        assert resp.json()["detail"]["outcome"] == "not_found"


class TestAccept:
    async def test_concurrent_accepts_single_winner(self, client: AsyncClient, store: BookingStore):
        await ingest_via_api(client, raw_booking("bk-1"))

        responses = await asyncio.gather(
            client.post(f"{API}/jobs/bk-1/accept", headers=auth_headers(PROVIDER_1)),
            client.post(f"{API}/jobs/bk-1/accept", headers=auth_headers(PROVIDER_2)),
        )
        codes = sorted(r.status_code for r in responses)
        assert codes == [200, 409]

        winner = next(r for r in responses if r.status_code == 200).json()
        loser = next(r for r in responses if r.status_code == 409).json()
        assert winner["outcome"] == "accepted"
        assert winner["duplicate"] is False
        assert loser["detail"]["outcome"] == "already_taken"

        job = await store.get_job("bk-1")
        assert job.provider_id == winner["job"]["providerId"]

    async def test_repeat_accept_is_duplicate(self, client: AsyncClient):
        await ingest_via_api(client, raw_booking("bk-1"))
        first = await client.post(
            f"{API}/jobs/bk-1/accept",
            json={"providerName": "Ravi", "providerMobileNo": "+919811111111"},
            headers=auth_headers(PROVIDER_1),
        )
        assert first.status_code == 200
        assert first.json()["job"]["providerName"] == "Ravi"
        assert first.json()["job"]["nextStatus"] == "arrived"

        again = await client.post(f"{API}/jobs/bk-1/accept", headers=auth_headers(PROVIDER_1))
        assert again.status_code == 200
        assert again.json()["duplicate"] is True

    async def test_not_notified_provider(self, client: AsyncClient):
        await ingest_via_api(client, raw_booking("bk-1"))
        resp = await client.post(f"{API}/jobs/bk-1/accept", headers=auth_headers(PROVIDER_3))
        assert resp.status_code == 403
        assert resp.json()["detail"]["outcome"] == "not_eligible"

    async def test_unknown_booking(self, client: AsyncClient):
        resp = await client.post(f"{API}/jobs/nope/accept", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 404


class TestFullLifecycle:
    async def test_pending_to_completed(self, client: AsyncClient, store: BookingStore):
        await ingest_via_api(client, raw_booking("bk-1", notifiedProviderIds=[]))
        await dispatch_via_api(client, "bk-1", PROVIDER_1, PROVIDER_2)

        resp = await client.post(f"{API}/jobs/bk-1/accept", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 200

        # The loser no longer sees the job anywhere
        resp = await client.get(f"{API}/jobs/bk-1", headers=auth_headers(PROVIDER_2))
        assert resp.status_code == 404
        resp = await client.get(f"{API}/provider/inbox", headers=auth_headers(PROVIDER_2))
        assert resp.json()["items"] == []

        # Skipping a step is refused and changes nothing
        resp = await transition_via_api(client, "bk-1", PROVIDER_1, "in_progress")
        assert resp.status_code == 409
        assert resp.json()["detail"]["outcome"] == "invalid_transition"
        assert (await store.get_job("bk-1")).status.value == "accepted"

        # Only the assigned provider may advance
        resp = await transition_via_api(client, "bk-1", PROVIDER_2, "arrived")
        assert resp.status_code == 403

        for target, following in (("arrived", "in_progress"), ("in_progress", "payment_pending")):
            resp = await transition_via_api(client, "bk-1", PROVIDER_1, target)
            assert resp.status_code == 200, resp.text
            assert resp.json()["job"]["status"] == target
            assert resp.json()["job"]["nextStatus"] == following

        resp = await transition_via_api(client, "bk-1", PROVIDER_1, "payment_pending")
        assert resp.status_code == 200
        job_out = resp.json()["job"]
        assert job_out["otpGeneratedAt"] is not None
        assert "completionOtp" not in job_out
        assert "completionOTP" not in job_out

        otp = (await store.get_job("bk-1")).completion_otp

        resp = await client.post(f"{API}/jobs/bk-1/payment/upi", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 200
        assert resp.json()["job"]["qrUpiUri"].startswith("upi://pay?")
        assert resp.json()["job"]["paymentStatus"] == "PENDING"

        resp = await transition_via_api(client, "bk-1", PROVIDER_1, "completed", otp)
        assert resp.status_code == 409
        assert resp.json()["detail"]["outcome"] == "payment_not_confirmed"

        resp = await client.post(f"{API}/jobs/bk-1/payment/confirm", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 200
        assert resp.json()["job"]["paymentStatus"] == "DONE"

        wrong = "0000" if otp != "0000" else "1111"
        resp = await transition_via_api(client, "bk-1", PROVIDER_1, "completed", wrong)
        assert resp.status_code == 422
        assert resp.json()["detail"]["outcome"] == "otp_mismatch"

        resp = await transition_via_api(client, "bk-1", PROVIDER_1, "completed", otp)
        assert resp.status_code == 200
        assert resp.json()["job"]["status"] == "completed"
        assert resp.json()["job"]["nextStatus"] is None

        resp = await client.get(f"{API}/provider/jobs/completed", headers=auth_headers(PROVIDER_1))
        assert [j["bookingId"] for j in resp.json()["jobs"]] == ["bk-1"]

        resp = await client.get(f"{API}/provider/jobs/has-ongoing", headers=auth_headers(PROVIDER_1))
        assert resp.json() == {"hasOngoingJob": False}

    async def test_cash_payment_and_regenerated_code(self, client: AsyncClient, store: BookingStore):
        await ingest_via_api(client, raw_booking(
            "bk-1", status="in_progress", providerId=PROVIDER_1, acceptedByProviderId=PROVIDER_1,
        ))
        await transition_via_api(client, "bk-1", PROVIDER_1, "payment_pending")

        resp = await client.post(
            f"{API}/jobs/bk-1/payment/cash", json={"amount": "450"}, headers=auth_headers(PROVIDER_1),
        )
        assert resp.status_code == 200
        assert resp.json()["job"]["paymentMode"] == "CASH"

        resp = await client.post(f"{API}/jobs/bk-1/payment/upi", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 409
        assert resp.json()["detail"]["outcome"] == "payment_already_confirmed"

        resp = await client.post(f"{API}/jobs/bk-1/otp/regenerate", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 200
        otp = (await store.get_job("bk-1")).completion_otp

        resp = await transition_via_api(client, "bk-1", PROVIDER_1, "completed", otp)
        assert resp.status_code == 200

    async def test_payment_before_payment_pending(self, client: AsyncClient):
        await ingest_via_api(client, raw_booking(
            "bk-1", status="arrived", providerId=PROVIDER_1,
        ))
        resp = await client.post(f"{API}/jobs/bk-1/payment/cash", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 409
        assert resp.json()["detail"]["outcome"] == "invalid_transition"


class TestAuthAndErrors:
    async def test_missing_token(self, client: AsyncClient):
        resp = await client.get(f"{API}/provider/jobs/new")
        assert resp.status_code in (401, 403)

    async def test_expired_token(self, client: AsyncClient):
        token, _ = create_access_token(PROVIDER_1, expires_in=timedelta(seconds=-5))
        resp = await client.get(
            f"{API}/provider/jobs/new", headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401

    async def test_service_token_on_provider_endpoint(self, client: AsyncClient):
        resp = await client.get(f"{API}/provider/jobs/new", headers=system_headers())
        assert resp.status_code == 403

    async def test_store_outage_is_503(self, client: AsyncClient, store: BookingStore):
        class UnavailableStore(BookingStore):
            async def get_job(self, booking_id):
                raise TransientStoreError("database is locked")

        app.dependency_overrides[get_store] = lambda: UnavailableStore(
            store.session_factory, store.notifier,
        )
        resp = await client.get(f"{API}/jobs/bk-1", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "1"
        assert resp.json()["detail"]["outcome"] == "unavailable"

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.json()["status"] == "ok"
