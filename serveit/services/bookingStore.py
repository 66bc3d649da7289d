"""
Booking Store
=============

Authoritative store for booking records. Bookings live in an arena keyed by
``bookingId``; each row carries its own ``version`` used as a
compare-and-swap token, so a write to one booking never contends with a
write to another booking of the same customer.

Customer documents in either legacy shape (``{"bookings": [...]}`` or a
single booking at the document root) are split into arena rows on ingest
and re-assembled by ``read_document``.

Write protocol (``atomic_update``)::

    read row (version v) -> precondition(data)? -> mutation(data)
        -> UPDATE ... WHERE booking_id = :id AND version = :v
        -> 0 rows? re-read and re-check, up to store_cas_max_retries

Every committed write publishes a ``ChangeEvent`` so live subscriptions
re-derive. Infrastructure failures (SQLAlchemy, Redis, OS) surface as
``TransientStoreError``.
"""

from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Mapping, Optional

from redis.exceptions import RedisError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from serveit.core.config import settings
from serveit.models.booking import BookingRecord
from serveit.models.job import Job, JobStatus
from serveit.services.changeFeed import ChangeEvent, ChangeKind, ChangeNotifier
from serveit.services.jobNormalizer import (
    MalformedRecordError,
    iter_raw_bookings,
    normalize_booking,
    parse_timestamp,
    resolve_status,
)

logger = logging.getLogger(__name__)

# Sort key for completed bookings that never recorded completedAt
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Precondition = Callable[[dict[str, Any]], bool]
Mutation = Callable[[dict[str, Any]], dict[str, Any]]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TransientStoreError(Exception):
    """The store could not be reached or the write kept losing CAS races."""


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------

class UpdateStatus(str, enum.Enum):
    APPLIED = "applied"
    PRECONDITION_FAILED = "precondition_failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class StoredBooking:
    """Snapshot of one arena row."""

    booking_id: str
    customer_phone: str
    position: Optional[int]
    version: int
    data: dict[str, Any]

    @classmethod
    def from_row(cls, row: BookingRecord) -> "StoredBooking":
        return cls(
            booking_id=row.booking_id,
            customer_phone=row.customer_phone,
            position=row.position,
            version=row.version,
            data=copy.deepcopy(row.data),
        )

    def to_job(self) -> Job:
        """Normalize the raw map. Raises ``MalformedRecordError``."""
        return normalize_booking(self.data, self.customer_phone, booking_index=self.position)


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of ``atomic_update``.

    ``record`` is the committed snapshot when applied, the snapshot that
    failed the precondition when rejected, and None when not found.
    """

    status: UpdateStatus
    record: Optional[StoredBooking] = None

    @property
    def applied(self) -> bool:
        return self.status == UpdateStatus.APPLIED

    def committed(self) -> StoredBooking:
        """The committed snapshot of an applied update.

        Raises:
            ValueError: the update was not applied.
        """
        if self.status != UpdateStatus.APPLIED or self.record is None:
            raise ValueError(f"Update was not applied: {self.status.value}")
        return self.record


@dataclass(frozen=True)
class BookingQuery:
    """Filter over the denormalized columns. None means "any"."""

    statuses: Optional[frozenset[JobStatus]] = None
    provider_id: Optional[str] = None
    customer_phone: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _jsonable(value: Any) -> Any:
    """Convert a raw booking map into JSON-safe primitives for the data column."""
    if isinstance(value, datetime):
        return parse_timestamp(value).isoformat()  # type: ignore[union-attr]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def completed_sort_key(data: Mapping[str, Any]) -> Optional[datetime]:
    """History sort key of a completed booking; None while not completed."""
    try:
        if resolve_status(data) != JobStatus.COMPLETED:
            return None
    except MalformedRecordError:
        return None
    return (
        parse_timestamp(data.get("completedAt"))
        or parse_timestamp(data.get("createdAt"))
        or _EPOCH
    )


def _denormalized_columns(data: Mapping[str, Any]) -> dict[str, Any]:
    """Derive the query columns from a raw map. Raises ``MalformedRecordError``."""
    status = resolve_status(data)
    provider_id = data.get("providerId") or data.get("acceptedByProviderId")
    if not isinstance(provider_id, str) or not provider_id.strip():
        provider_id = None
    return {
        "status": status.value,
        "provider_id": provider_id.strip() if provider_id else None,
        "completed_at": completed_sort_key(data),
    }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class BookingStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ChangeNotifier,
        *,
        max_cas_retries: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._max_cas_retries = max_cas_retries or settings.store_cas_max_retries

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def publish(self, event: ChangeEvent) -> None:
        """Publish a change. Delivery failures are logged, never raised."""
        try:
            await self._notifier.publish(event)
        except (RedisError, OSError) as exc:
            logger.error("Failed to publish change event %s: %s", event, exc)

    # -- Ingest & document reads -------------------------------------------

    async def ingest_document(self, customer_key: str, document: Mapping[str, Any]) -> list[str]:
        """Split a customer document into arena rows.

        New bookings are inserted; bookings whose ``bookingId`` already
        exists are left untouched since stored records only change through
        guarded updates. Entries without a usable ``bookingId`` or with an
        unknown status are skipped with a warning.

        Returns:
            The booking IDs that were inserted.
        """
        inserted: list[str] = []
        try:
            async with self._session_factory() as session:
                for idx, entry in iter_raw_bookings(document):
                    if not isinstance(entry, Mapping):
                        logger.warning("Skipping non-map booking entry %s[%s]", customer_key, idx)
                        continue
                    booking_id = entry.get("bookingId")
                    if not isinstance(booking_id, str) or not booking_id.strip():
                        logger.warning("Skipping booking without bookingId in %s[%s]", customer_key, idx)
                        continue
                    booking_id = booking_id.strip()
                    data = _jsonable(dict(entry))
                    data["bookingId"] = booking_id
                    data.setdefault("customerPhoneNumber", customer_key)
                    try:
                        columns = _denormalized_columns(data)
                    except MalformedRecordError as exc:
                        logger.warning("Skipping booking %s in %s: %s", booking_id, customer_key, exc)
                        continue

                    if booking_id in inserted or await session.get(BookingRecord, booking_id) is not None:
                        logger.info("Booking %s already stored, ingest skipped", booking_id)
                        continue

                    session.add(BookingRecord(
                        booking_id=booking_id,
                        customer_phone=customer_key,
                        position=idx,
                        version=1,
                        data=data,
                        **columns,
                    ))
                    inserted.append(booking_id)
                await session.commit()
        except IntegrityError as exc:
            raise TransientStoreError(f"Concurrent ingest for {customer_key}") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Ingest failed for {customer_key}: {exc}") from exc

        logger.info("Ingested %d booking(s) for customer %s", len(inserted), customer_key)
        for booking_id in inserted:
            await self.publish(ChangeEvent(
                kind=ChangeKind.BOOKING, booking_id=booking_id, customer_phone=customer_key,
            ))
        return inserted

    async def read_document(self, customer_key: str) -> Optional[dict[str, Any]]:
        """Re-assemble a customer's bookings as ``{"bookings": [...]}``.

        Returns None when the customer has no bookings.
        """
        records = await self.query_documents(BookingQuery(customer_phone=customer_key))
        if not records:
            return None
        return {"bookings": [record.data for record in records]}

    async def get(self, booking_id: str) -> Optional[StoredBooking]:
        try:
            async with self._session_factory() as session:
                row = await session.get(BookingRecord, booking_id)
                return StoredBooking.from_row(row) if row is not None else None
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Read failed for booking {booking_id}: {exc}") from exc

    async def get_job(self, booking_id: str) -> Optional[Job]:
        """Fetch and normalize one booking. Malformed records read as missing."""
        record = await self.get(booking_id)
        if record is None:
            return None
        try:
            return record.to_job()
        except MalformedRecordError as exc:
            logger.warning("Booking %s is malformed: %s", booking_id, exc)
            return None

    # -- Atomic update ------------------------------------------------------

    async def atomic_update(
        self,
        booking_id: str,
        precondition: Precondition,
        mutation: Mutation,
    ) -> UpdateResult:
        """Apply ``mutation`` iff ``precondition`` holds on the current record.

        Both callables receive a private copy of the raw map. On a version
        conflict the record is re-read and the precondition re-checked, so
        the mutation is only ever applied to the state it was validated
        against.

        Raises:
            TransientStoreError: the store is unreachable or every attempt
                lost the compare-and-swap.
        """
        for attempt in range(1, self._max_cas_retries + 1):
            try:
                async with self._session_factory() as session:
                    row = await session.get(BookingRecord, booking_id)
                    if row is None:
                        return UpdateResult(UpdateStatus.NOT_FOUND)
                    current = StoredBooking.from_row(row)

                    if not precondition(copy.deepcopy(current.data)):
                        return UpdateResult(UpdateStatus.PRECONDITION_FAILED, current)

                    new_data = _jsonable(mutation(copy.deepcopy(current.data)))
                    new_data["bookingId"] = current.booking_id
                    columns = _denormalized_columns(new_data)

                    result = await session.execute(
                        update(BookingRecord)
                        .where(
                            BookingRecord.booking_id == booking_id,
                            BookingRecord.version == current.version,
                        )
                        .values(data=new_data, version=current.version + 1, **columns)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        await session.commit()
                        applied = StoredBooking(
                            booking_id=current.booking_id,
                            customer_phone=current.customer_phone,
                            position=current.position,
                            version=current.version + 1,
                            data=new_data,
                        )
                        break
                    await session.rollback()
            except (SQLAlchemyError, OSError) as exc:
                raise TransientStoreError(f"Update failed for booking {booking_id}: {exc}") from exc

            logger.info(
                "CAS conflict on booking %s (attempt %d/%d), re-reading",
                booking_id, attempt, self._max_cas_retries,
            )
        else:
            raise TransientStoreError(
                f"Booking {booking_id} changed concurrently {self._max_cas_retries} times"
            )

        await self.publish(ChangeEvent(
            kind=ChangeKind.BOOKING,
            booking_id=applied.booking_id,
            customer_phone=applied.customer_phone,
        ))
        return UpdateResult(UpdateStatus.APPLIED, applied)

    # -- Queries -------------------------------------------------------------

    async def query_documents(self, query: BookingQuery) -> list[StoredBooking]:
        stmt = select(BookingRecord)
        if query.statuses is not None:
            stmt = stmt.where(BookingRecord.status.in_([s.value for s in query.statuses]))
        if query.provider_id is not None:
            stmt = stmt.where(BookingRecord.provider_id == query.provider_id)
        if query.customer_phone is not None:
            stmt = stmt.where(BookingRecord.customer_phone == query.customer_phone)
        stmt = stmt.order_by(
            BookingRecord.customer_phone, BookingRecord.position, BookingRecord.booking_id
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [StoredBooking.from_row(row) for row in rows]
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Query failed: {exc}") from exc

    async def query_jobs(self, query: BookingQuery) -> list[Job]:
        """Run ``query`` and normalize the rows, skipping malformed ones."""
        jobs: list[Job] = []
        for record in await self.query_documents(query):
            try:
                jobs.append(record.to_job())
            except MalformedRecordError as exc:
                logger.warning("Skipping malformed booking %s: %s", record.booking_id, exc)
        return jobs

    async def query_completed(
        self,
        provider_id: str,
        limit: int,
        after: Optional[tuple[datetime, str]] = None,
    ) -> list[StoredBooking]:
        """Keyset page of a provider's completed bookings, newest first.

        ``after`` is the ``(completed_at, booking_id)`` of the last row of
        the previous page.
        """
        stmt = select(BookingRecord).where(
            BookingRecord.provider_id == provider_id,
            BookingRecord.status == JobStatus.COMPLETED.value,
        )
        if after is not None:
            completed_at, booking_id = after
            stmt = stmt.where(or_(
                BookingRecord.completed_at < completed_at,
                and_(
                    BookingRecord.completed_at == completed_at,
                    BookingRecord.booking_id < booking_id,
                ),
            ))
        stmt = stmt.order_by(
            BookingRecord.completed_at.desc(), BookingRecord.booking_id.desc()
        ).limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [StoredBooking.from_row(row) for row in rows]
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Completed-jobs query failed: {exc}") from exc

    # -- Live subscription ----------------------------------------------------

    async def subscribe(self, query: BookingQuery) -> AsyncIterator[list[Job]]:
        """Yield the query result now and again after every committed change.

        Events that queued up while a re-query ran are coalesced into the
        next re-query. Closing the iterator releases the subscription.

        Raises:
            TransientStoreError: the change feed or the database failed.
        """
        try:
            subscription = await self._notifier.subscribe()
        except (RedisError, OSError) as exc:
            raise TransientStoreError(f"Change feed unavailable: {exc}") from exc

        try:
            yield await self.query_jobs(query)
            while True:
                try:
                    await subscription.get()
                    await subscription.drain()
                except StopAsyncIteration:
                    return
                except (RedisError, OSError) as exc:
                    raise TransientStoreError(f"Change feed lost: {exc}") from exc
                yield await self.query_jobs(query)
        finally:
            try:
                await subscription.close()
            except (RedisError, OSError) as exc:
                logger.warning("Error closing change subscription: %s", exc)
