"""
Provider Inbox Projection
=========================

Per-provider lightweight pointers to bookings a provider was notified of.
Each entry caches display fields (service name, price, distance) and the
location of the booking inside its customer document, and expires after
``settings.inbox_ttl_minutes``.

The inbox is never authoritative: ``InboxProjection.resolve_entry`` always
re-reads the booking store, and acceptance is decided by the acceptance
coordinator against the booking record alone.

Lifecycle of an entry::

    dispatch_to_providers  -> pending
    another provider wins  -> deleted
    this provider wins     -> accepted, then mirrors booking status
    expires_at passes      -> purged by the inbox expiry job
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Sequence

from redis.exceptions import RedisError
from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from serveit.core.config import settings
from serveit.events.jobEvents import emit_job_dispatched
from serveit.models.booking import InboxEntry
from serveit.models.job import Job, JobStatus
from serveit.services.bookingStore import BookingStore, TransientStoreError, UpdateStatus
from serveit.services.changeFeed import ChangeEvent, ChangeKind
from serveit.services.jobNormalizer import parse_timestamp, try_normalize

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InboxItem:
    provider_id: str
    booking_id: str
    customer_phone: str
    booking_index: int
    service_name: str
    price_snapshot: Decimal
    status: str
    distance_km: Optional[float]
    created_at: datetime
    expires_at: datetime

    @property
    def booking_doc_path(self) -> str:
        return f"Bookings/{self.customer_phone}"

    @classmethod
    def from_row(cls, row: InboxEntry) -> "InboxItem":
        return cls(
            provider_id=row.provider_id,
            booking_id=row.booking_id,
            customer_phone=row.customer_phone,
            booking_index=row.booking_index,
            service_name=row.service_name,
            price_snapshot=Decimal(row.price_snapshot),
            status=row.status,
            distance_km=row.distance_km,
            # SQLite hands back naive datetimes
            created_at=parse_timestamp(row.created_at),  # type: ignore[arg-type]
            expires_at=parse_timestamp(row.expires_at),  # type: ignore[arg-type]
        )


class DispatchOutcome(str, enum.Enum):
    DISPATCHED = "dispatched"
    NOT_FOUND = "not_found"
    NOT_PENDING = "not_pending"


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    notified_provider_ids: tuple[str, ...] = ()


def _until_next_expiry(items: Sequence[InboxItem]) -> Optional[float]:
    """Seconds until the earliest entry in ``items`` expires, None if empty."""
    if not items:
        return None
    earliest = min(item.expires_at for item in items)
    return max(0.0, (earliest - datetime.now(timezone.utc)).total_seconds())


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------

class InboxProjection:
    def __init__(self, store: BookingStore) -> None:
        self._store = store
        self._session_factory = store.session_factory

    async def _publish(self, provider_id: Optional[str], booking_id: str) -> None:
        await self._store.publish(ChangeEvent(
            kind=ChangeKind.INBOX, booking_id=booking_id, provider_id=provider_id,
        ))

    # -- Dispatch --------------------------------------------------------------

    async def dispatch_to_providers(
        self,
        booking_id: str,
        providers: Sequence[tuple[str, Optional[float]]],
        *,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Notify ``providers`` of a pending booking.

        Adds each provider to the booking's ``notifiedProviderIds`` (the
        eligibility list the acceptance coordinator checks) and writes one
        inbox entry per provider. Push delivery is handled elsewhere.

        Args:
            booking_id: The booking to offer.
            providers: ``(provider_id, distance_km)`` pairs; distance may be None.
        """
        now = now or datetime.now(timezone.utc)
        provider_ids = list(dict.fromkeys(pid for pid, _ in providers if pid))

        def precondition(data: dict[str, Any]) -> bool:
            job = try_normalize(data)
            return job is not None and job.status == JobStatus.PENDING and not job.provider_id

        def mutation(data: dict[str, Any]) -> dict[str, Any]:
            existing = data.get("notifiedProviderIds")
            existing = list(existing) if isinstance(existing, list) else []
            data["notifiedProviderIds"] = list(dict.fromkeys(existing + provider_ids))
            return data

        result = await self._store.atomic_update(booking_id, precondition, mutation)
        if result.status == UpdateStatus.NOT_FOUND:
            logger.warning("Dispatch skipped: booking %s not found", booking_id)
            return DispatchResult(DispatchOutcome.NOT_FOUND)
        if result.status == UpdateStatus.PRECONDITION_FAILED:
            logger.info("Dispatch skipped: booking %s is no longer pending", booking_id)
            return DispatchResult(DispatchOutcome.NOT_PENDING)

        record = result.committed()
        job = record.to_job()
        expires_at = now + timedelta(minutes=settings.inbox_ttl_minutes)
        distances = {pid: distance for pid, distance in providers}

        try:
            async with self._session_factory() as session:
                for provider_id in provider_ids:
                    entry = await session.get(InboxEntry, (provider_id, booking_id))
                    if entry is None:
                        entry = InboxEntry(provider_id=provider_id, booking_id=booking_id)
                        session.add(entry)
                    entry.customer_phone = record.customer_phone
                    entry.booking_index = record.position if record.position is not None else 0
                    entry.service_name = job.service_name
                    entry.price_snapshot = job.total_price
                    entry.status = JobStatus.PENDING.value
                    entry.distance_km = distances.get(provider_id)
                    entry.created_at = now
                    entry.expires_at = expires_at
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Could not write inbox entries: {exc}") from exc

        logger.info(
            "Dispatched booking %s to %d provider(s)", booking_id, len(provider_ids),
        )
        for provider_id in provider_ids:
            await self._publish(provider_id, booking_id)
        emit_job_dispatched(booking_id, provider_ids)
        return DispatchResult(DispatchOutcome.DISPATCHED, job.notified_provider_ids)

    # -- Reads -----------------------------------------------------------------

    async def list_pending(
        self,
        provider_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> list[InboxItem]:
        """Unexpired pending entries for ``provider_id``, newest first."""
        now = now or datetime.now(timezone.utc)
        stmt = (
            select(InboxEntry)
            .where(
                InboxEntry.provider_id == provider_id,
                InboxEntry.status == JobStatus.PENDING.value,
                InboxEntry.expires_at > now,
            )
            .order_by(InboxEntry.created_at.desc(), InboxEntry.booking_id)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [InboxItem.from_row(row) for row in rows]
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Inbox query failed: {exc}") from exc

    async def subscribe(self, provider_id: str) -> AsyncIterator[list[InboxItem]]:
        """Yield the provider's pending entries now and after every change.

        Expiry is not a write, so the next expiry time also wakes the feed.
        """
        try:
            subscription = await self._store.notifier.subscribe()
        except (RedisError, OSError) as exc:
            raise TransientStoreError(f"Change feed unavailable: {exc}") from exc

        try:
            items = await self.list_pending(provider_id)
            yield items
            while True:
                try:
                    await asyncio.wait_for(subscription.get(), timeout=_until_next_expiry(items))
                    await subscription.drain()
                except asyncio.TimeoutError:
                    logger.debug("Inbox entry expired for provider %s, re-reading", provider_id)
                except StopAsyncIteration:
                    return
                except (RedisError, OSError) as exc:
                    raise TransientStoreError(f"Change feed lost: {exc}") from exc
                items = await self.list_pending(provider_id)
                yield items
        finally:
            try:
                await subscription.close()
            except (RedisError, OSError) as exc:
                logger.warning("Error closing inbox subscription: %s", exc)

    async def resolve_entry(self, provider_id: str, booking_id: str) -> Optional[Job]:
        """Follow an inbox pointer to the authoritative booking.

        Returns None when the entry or the booking is gone. The returned job
        reflects the store, not the cached entry, so callers must check
        ``job.is_available(provider_id)`` before offering it.
        """
        try:
            async with self._session_factory() as session:
                entry = await session.get(InboxEntry, (provider_id, booking_id))
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"Inbox read failed: {exc}") from exc
        if entry is None:
            return None

        job = await self._store.get_job(booking_id)
        if job is None:
            logger.warning(
                "Inbox entry %s/%s points at a missing booking", provider_id, booking_id,
            )
            return None
        if job.customer_phone_number != entry.customer_phone:
            logger.warning(
                "Inbox entry %s/%s cached customer %s but booking belongs to %s",
                provider_id, booking_id, entry.customer_phone, job.customer_phone_number,
            )
        return job

    # -- Maintenance -------------------------------------------------------------

    async def cleanup_for_accepted_job(self, booking_id: str, winner_id: str) -> int:
        """Remove the booking from every other provider's inbox.

        The winner's entry is kept and marked accepted. Returns the number
        of entries removed.
        """
        async with self._session_factory() as session:
            removed = await session.execute(
                delete(InboxEntry).where(
                    InboxEntry.booking_id == booking_id,
                    InboxEntry.provider_id != winner_id,
                    InboxEntry.status == JobStatus.PENDING.value,
                )
            )
            await session.execute(
                update(InboxEntry)
                .where(and_(InboxEntry.booking_id == booking_id, InboxEntry.provider_id == winner_id))
                .values(status=JobStatus.ACCEPTED.value)
            )
            await session.commit()
        count = removed.rowcount or 0
        logger.info(
            "Inbox cleanup for booking %s: removed %d entr(ies), winner %s",
            booking_id, count, winner_id,
        )
        await self._publish(None, booking_id)
        return count

    async def sync_status(self, booking_id: str, provider_id: str, status: JobStatus) -> bool:
        """Mirror the booking status onto the assigned provider's entry.

        Returns False when the entry no longer exists (expired or purged).
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(InboxEntry)
                .where(InboxEntry.booking_id == booking_id, InboxEntry.provider_id == provider_id)
                .values(status=status.value)
            )
            await session.commit()
        if not result.rowcount:
            logger.debug("No inbox entry for %s/%s, status sync skipped", provider_id, booking_id)
            return False
        await self._publish(provider_id, booking_id)
        return True

    async def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        """Delete pending entries past their expiry. Returns rows removed."""
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(InboxEntry).where(
                    InboxEntry.status == JobStatus.PENDING.value,
                    InboxEntry.expires_at <= now,
                )
            )
            await session.commit()
        return result.rowcount or 0
