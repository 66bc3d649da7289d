"""
Job Suppression
===============

A provider who declines a pending job does not want to see it again. The
rejection is stored as a per-provider suppression row with a TTL rather
than in device memory, so it survives restarts and follows the provider
across devices. Suppressions are cleared when the job is accepted by
anyone and purged once they expire.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from serveit.core.config import settings
from serveit.events.jobEvents import emit_job_rejected
from serveit.models.booking import JobSuppression
from serveit.services.bookingStore import BookingStore, TransientStoreError
from serveit.services.changeFeed import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)


async def reject_job(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    *,
    now: Optional[datetime] = None,
) -> datetime:
    """Hide ``booking_id`` from ``provider_id``'s new-jobs feed.

    Re-rejecting refreshes the expiry. Returns the expiry time.
    """
    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=settings.rejection_ttl_hours)
    try:
        async with store.session_factory() as session:
            row = await session.get(JobSuppression, (provider_id, booking_id))
            if row is None:
                session.add(JobSuppression(
                    provider_id=provider_id,
                    booking_id=booking_id,
                    created_at=now,
                    expires_at=expires_at,
                ))
            else:
                row.expires_at = expires_at
            await session.commit()
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not record rejection: {exc}") from exc

    logger.info(
        "Provider %s rejected booking %s (suppressed until %s)",
        provider_id, booking_id, expires_at.isoformat(),
    )
    await store.publish(ChangeEvent(
        kind=ChangeKind.SUPPRESSION, booking_id=booking_id, provider_id=provider_id,
    ))
    emit_job_rejected(booking_id, provider_id)
    return expires_at


async def suppressed_booking_ids(
    session_factory: async_sessionmaker[AsyncSession],
    provider_id: str,
    *,
    now: Optional[datetime] = None,
) -> frozenset[str]:
    """Booking IDs the provider rejected whose suppression has not expired."""
    now = now or datetime.now(timezone.utc)
    try:
        async with session_factory() as session:
            result = await session.execute(
                select(JobSuppression.booking_id).where(
                    JobSuppression.provider_id == provider_id,
                    JobSuppression.expires_at > now,
                )
            )
            return frozenset(result.scalars().all())
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not load suppressions: {exc}") from exc


async def clear_suppressions(
    session_factory: async_sessionmaker[AsyncSession],
    booking_id: str,
) -> int:
    """Drop every provider's suppression of ``booking_id``. Returns rows removed."""
    async with session_factory() as session:
        result = await session.execute(
            delete(JobSuppression).where(JobSuppression.booking_id == booking_id)
        )
        await session.commit()
        return result.rowcount or 0


async def purge_expired_suppressions(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: Optional[datetime] = None,
) -> int:
    now = now or datetime.now(timezone.utc)
    async with session_factory() as session:
        result = await session.execute(
            delete(JobSuppression).where(JobSuppression.expires_at <= now)
        )
        await session.commit()
        return result.rowcount or 0
