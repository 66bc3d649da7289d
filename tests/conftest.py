"""
Shared pytest fixtures for ServeIt backend tests.

Every test gets its own file-backed SQLite database (through aiosqlite) so
concurrent sessions behave like separate connections to a real server,
plus an in-process change notifier and a ``BookingStore`` bound to both.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from serveit.models import Base
from serveit.services.bookingStore import BookingStore
from serveit.services.changeFeed import LocalChangeNotifier
from serveit.services.inboxService import InboxProjection

# ---------------------------------------------------------------------------
# Test constants
# ---------------------------------------------------------------------------

CUSTOMER_PHONE = "+919800000001"
PROVIDER_1 = "prov-1"
PROVIDER_2 = "prov-2"
PROVIDER_3 = "prov-3"

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def raw_booking(booking_id: str, **fields: Any) -> dict[str, Any]:
    """A pending booking offered to PROVIDER_1 and PROVIDER_2."""
    raw: dict[str, Any] = {
        "bookingId": booking_id,
        "customerPhoneNumber": CUSTOMER_PHONE,
        "serviceName": "AC Repair",
        "status": "pending",
        "totalPrice": 499,
        "userName": "Asha",
        "notifiedProviderIds": [PROVIDER_1, PROVIDER_2],
        "createdAt": T0.isoformat(),
        "jobCoordinates": {"latitude": 12.9716, "longitude": 77.5946},
    }
    raw.update(fields)
    return raw


async def seed(store: BookingStore, *bookings: dict[str, Any], customer: str = CUSTOMER_PHONE) -> list[str]:
    return await store.ingest_document(customer, {"bookings": list(bookings)})


# ---------------------------------------------------------------------------
# Database & store
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'serveit.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def notifier() -> AsyncGenerator[LocalChangeNotifier, None]:
    notifier = LocalChangeNotifier()
    yield notifier
    await notifier.close()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession], notifier: LocalChangeNotifier) -> BookingStore:
    return BookingStore(session_factory, notifier)


@pytest.fixture
def inbox(store: BookingStore) -> InboxProjection:
    return InboxProjection(store)
