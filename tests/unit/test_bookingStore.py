"""
Unit tests for the Booking Store.

Exercises ingest of both document shapes, document re-assembly, the
compare-and-swap update protocol, denormalized queries, and live
subscriptions against a real (SQLite) database.
"""

import asyncio
import dataclasses
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from serveit.models.job import JobStatus
from serveit.services.bookingStore import (
    BookingQuery,
    BookingStore,
    StoredBooking,
    TransientStoreError,
    UpdateStatus,
    completed_sort_key,
)
from serveit.services.changeFeed import ChangeKind
from tests.conftest import CUSTOMER_PHONE, PROVIDER_1, T0, raw_booking, seed


def _set_status(status: str):
    def mutation(data):
        data["status"] = status
        return data
    return mutation


@pytest.mark.asyncio
class TestIngest:
    async def test_array_document_is_split_per_booking(self, store: BookingStore):
        inserted = await seed(store, raw_booking("bk-1"), raw_booking("bk-2"))
        assert inserted == ["bk-1", "bk-2"]

        record = await store.get("bk-2")
        assert record is not None
        assert record.position == 1
        assert record.version == 1
        assert record.customer_phone == CUSTOMER_PHONE

    async def test_legacy_root_document(self, store: BookingStore):
        inserted = await store.ingest_document("+919800000002", raw_booking("bk-root"))
        assert inserted == ["bk-root"]
        record = await store.get("bk-root")
        assert record.position is None

    async def test_existing_bookings_are_not_overwritten(self, store: BookingStore):
        await seed(store, raw_booking("bk-1"))
        inserted = await seed(store, raw_booking("bk-1", serviceName="Changed"), raw_booking("bk-2"))
        assert inserted == ["bk-2"]
        job = await store.get_job("bk-1")
        assert job.service_name == "AC Repair"

    async def test_malformed_entries_are_skipped(self, store: BookingStore):
        inserted = await seed(
            store,
            raw_booking("bk-1"),
            {"serviceName": "no id"},
            raw_booking("bk-3", status="exploded"),
        )
        assert inserted == ["bk-1"]

    async def test_ingest_publishes_booking_events(self, store: BookingStore, notifier):
        subscription = await notifier.subscribe()
        await seed(store, raw_booking("bk-1"))
        event = await subscription.get()
        assert event.kind == ChangeKind.BOOKING
        assert event.booking_id == "bk-1"
        assert event.customer_phone == CUSTOMER_PHONE

    async def test_read_document_reassembles_in_order(self, store: BookingStore):
        await seed(store, raw_booking("bk-b"), raw_booking("bk-a"))
        document = await store.read_document(CUSTOMER_PHONE)
        assert [b["bookingId"] for b in document["bookings"]] == ["bk-b", "bk-a"]
        assert await store.read_document("+910000000000") is None


@pytest.mark.asyncio
class TestAtomicUpdate:
    async def test_applies_mutation_and_bumps_version(self, store: BookingStore):
        await seed(store, raw_booking("bk-1"))
        result = await store.atomic_update("bk-1", lambda d: True, _set_status("accepted"))
        assert result.applied
        assert result.record.version == 2
        assert result.record.data["status"] == "accepted"
        assert result.committed() is result.record

        stored = await store.get("bk-1")
        assert stored.version == 2
        assert stored.to_job().status == JobStatus.ACCEPTED

    async def test_precondition_failure_returns_current_record(self, store: BookingStore):
        await seed(store, raw_booking("bk-1"))
        result = await store.atomic_update("bk-1", lambda d: False, _set_status("accepted"))
        assert result.status == UpdateStatus.PRECONDITION_FAILED
        assert result.record.version == 1
        assert (await store.get("bk-1")).data["status"] == "pending"
        with pytest.raises(ValueError):
            result.committed()

    async def test_missing_booking(self, store: BookingStore):
        result = await store.atomic_update("nope", lambda d: True, _set_status("accepted"))
        assert result.status == UpdateStatus.NOT_FOUND
        assert result.record is None
        with pytest.raises(ValueError):
            result.committed()

    async def test_callables_receive_private_copies(self, store: BookingStore):
        await seed(store, raw_booking("bk-1"))

        def sneaky_precondition(data):
            data["status"] = "completed"
            return False

        await store.atomic_update("bk-1", sneaky_precondition, _set_status("accepted"))
        assert (await store.get("bk-1")).data["status"] == "pending"

    async def test_concurrent_writers_are_serialized(self, store: BookingStore):
        await seed(store, raw_booking("bk-1", counter=0))

        def increment(data):
            data["counter"] = data["counter"] + 1
            return data

        store_with_retries = BookingStore(store.session_factory, store.notifier, max_cas_retries=20)
        results = await asyncio.gather(*[
            store_with_retries.atomic_update("bk-1", lambda d: True, increment) for _ in range(5)
        ])
        assert all(r.applied for r in results)
        stored = await store.get("bk-1")
        assert stored.data["counter"] == 5
        assert stored.version == 6

    async def test_exhausted_retries_raise_transient_error(self, store: BookingStore, monkeypatch):
        await seed(store, raw_booking("bk-1"))
        original_from_row = StoredBooking.from_row

        def stale_from_row(row):
            # Every read reports an outdated version, so every write loses the CAS
            record = original_from_row(row)
            return dataclasses.replace(record, version=record.version - 1)

        monkeypatch.setattr(StoredBooking, "from_row", stale_from_row)
        attempts = []

        def precondition(data):
            attempts.append(1)
            return True

        limited = BookingStore(store.session_factory, store.notifier, max_cas_retries=3)
        with pytest.raises(TransientStoreError):
            await limited.atomic_update("bk-1", precondition, _set_status("accepted"))
        assert len(attempts) == 3
        monkeypatch.undo()
        assert (await store.get("bk-1")).data["status"] == "pending"

    async def test_database_errors_become_transient(self, store: BookingStore):
        await seed(store, raw_booking("bk-1"))

        class BrokenSession:
            async def __aenter__(self):
                raise OperationalError("SELECT", {}, Exception("database is locked"))

            async def __aexit__(self, *exc):
                return False

        broken = BookingStore(lambda: BrokenSession(), store.notifier)
        with pytest.raises(TransientStoreError):
            await broken.atomic_update("bk-1", lambda d: True, lambda d: d)
        with pytest.raises(TransientStoreError):
            await broken.get("bk-1")

    async def test_update_publishes_event(self, store: BookingStore, notifier):
        await seed(store, raw_booking("bk-1"))
        subscription = await notifier.subscribe()
        await store.atomic_update("bk-1", lambda d: True, _set_status("accepted"))
        event = await subscription.get()
        assert event.booking_id == "bk-1"


@pytest.mark.asyncio
class TestQueries:
    async def test_query_by_status_and_provider(self, store: BookingStore):
        await seed(
            store,
            raw_booking("bk-1"),
            raw_booking("bk-2", status="accepted", providerId=PROVIDER_1),
            raw_booking("bk-3", status="arrived", providerId="prov-other"),
        )
        pending = await store.query_jobs(BookingQuery(statuses=frozenset({JobStatus.PENDING})))
        assert [j.booking_id for j in pending] == ["bk-1"]

        mine = await store.query_jobs(BookingQuery(provider_id=PROVIDER_1))
        assert [j.booking_id for j in mine] == ["bk-2"]

    async def test_completed_keyset_pages_newest_first(self, store: BookingStore):
        bookings = [
            raw_booking(
                f"bk-{i}",
                status="completed",
                providerId=PROVIDER_1,
                completedAt=(T0 + timedelta(hours=i)).isoformat(),
            )
            for i in range(5)
        ]
        await seed(store, *bookings)

        first = await store.query_completed(PROVIDER_1, 2)
        assert [r.booking_id for r in first] == ["bk-4", "bk-3"]

        cursor = (completed_sort_key(first[-1].data), first[-1].booking_id)
        second = await store.query_completed(PROVIDER_1, 2, cursor)
        assert [r.booking_id for r in second] == ["bk-2", "bk-1"]

    async def test_completed_ties_break_on_booking_id(self, store: BookingStore):
        same_time = {"status": "completed", "providerId": PROVIDER_1, "completedAt": T0.isoformat()}
        await seed(store, raw_booking("bk-a", **same_time), raw_booking("bk-b", **same_time))
        first = await store.query_completed(PROVIDER_1, 1)
        assert [r.booking_id for r in first] == ["bk-b"]
        second = await store.query_completed(PROVIDER_1, 1, (T0, "bk-b"))
        assert [r.booking_id for r in second] == ["bk-a"]


class TestCompletedSortKey:
    def test_uses_completed_at(self):
        data = {"status": "completed", "completedAt": T0.isoformat(), "createdAt": "2020-01-01T00:00:00Z"}
        assert completed_sort_key(data) == T0

    def test_falls_back_to_created_at(self):
        assert completed_sort_key({"status": "completed", "createdAt": T0.isoformat()}) == T0

    def test_not_completed_has_no_key(self):
        assert completed_sort_key({"status": "payment_pending", "completedAt": T0.isoformat()}) is None


@pytest.mark.asyncio
class TestSubscribe:
    async def test_yields_initial_result_then_changes(self, store: BookingStore, notifier):
        await seed(store, raw_booking("bk-1"))
        feed = store.subscribe(BookingQuery(statuses=frozenset({JobStatus.PENDING})))

        initial = await feed.__anext__()
        assert [j.booking_id for j in initial] == ["bk-1"]

        await store.atomic_update("bk-1", lambda d: True, _set_status("accepted"))
        updated = await asyncio.wait_for(feed.__anext__(), timeout=2)
        assert updated == []

        await feed.aclose()
        assert notifier.subscriber_count == 0

    async def test_ends_when_notifier_closes(self, store: BookingStore, notifier):
        feed = store.subscribe(BookingQuery())
        assert await feed.__anext__() == []
        await notifier.close()
        with pytest.raises(StopAsyncIteration):
            await feed.__anext__()
