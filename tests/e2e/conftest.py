"""
E2E test fixtures for the ServeIt partner backend.

Provides:
- The real FastAPI app with the booking store dependency overridden to use
  the per-test SQLite store from ``tests/conftest.py``
- httpx AsyncClient wired via ASGI transport (no network needed)
- Bearer-token helpers for provider and backend (system) callers
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from serveit.services.auth_service import create_access_token
from serveit.services.bookingStore import BookingStore
from tests.conftest import CUSTOMER_PHONE

API = "/api/v1"
SYSTEM_CALLER = "order-service"


def auth_headers(subject: str, role: str = "provider") -> dict[str, str]:
    token, _ = create_access_token(subject, role=role)
    return {"Authorization": f"Bearer {token}"}


def system_headers() -> dict[str, str]:
    return auth_headers(SYSTEM_CALLER, role="system")


async def ingest_via_api(client: AsyncClient, *bookings: dict, customer: str = CUSTOMER_PHONE) -> list[str]:
    resp = await client.post(
        f"{API}/bookings/{customer}",
        json={"bookings": list(bookings)},
        headers=system_headers(),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["insertedBookingIds"]


async def dispatch_via_api(client: AsyncClient, booking_id: str, *provider_ids: str) -> dict:
    resp = await client.post(
        f"{API}/jobs/{booking_id}/dispatch",
        json={"providers": [{"providerId": pid, "distanceKm": 1.5} for pid in provider_ids]},
        headers=system_headers(),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def transition_via_api(client: AsyncClient, booking_id: str, provider_id: str, target: str, otp: str | None = None):
    body = {"status": target}
    if otp is not None:
        body["otp"] = otp
    return await client.patch(
        f"{API}/jobs/{booking_id}/status", json=body, headers=auth_headers(provider_id),
    )


def _create_test_app(store: BookingStore):
    """The production app with the store dependency pointed at ``store``."""
    from serveit.api.deps import get_store
    from serveit.main import app

    app.dependency_overrides[get_store] = lambda: store
    return app


@pytest_asyncio.fixture
async def client(store: BookingStore) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the app via ASGI transport."""
    app = _create_test_app(store)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
