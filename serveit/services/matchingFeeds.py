"""
Real-time Matching Feeds
========================

Live, per-provider views over the booking store:

  - new jobs: pending, unassigned bookings the provider was notified of and
    has not rejected, newest first
  - ongoing jobs: bookings assigned to the provider in an active status

Each feed is an async iterator of ``FeedSnapshot``. A snapshot is re-derived
whenever the store reports a change, and identical consecutive snapshots
are not re-emitted. When an accept commits, the booking drops out of every
other provider's new-jobs feed on the next re-derivation.

Failure policy: a ``TransientStoreError`` never ends a feed. The last known
jobs are re-emitted with ``state=RECONNECTING`` and the subscription is
re-opened after an exponential backoff. After ``feed_max_retries``
consecutive failures the state becomes ``OFFLINE`` and retries continue at
the capped delay. The first successful re-derivation emits ``LIVE``.
Stop iterating (or ``aclose()`` the iterator) to cancel.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional

from serveit.core.config import settings
from serveit.models.job import Job, JobStatus
from serveit.services.bookingStore import BookingQuery, BookingStore, TransientStoreError
from serveit.services.inboxService import InboxProjection
from serveit.services.jobStateManager import ACTIVE_STATUSES
from serveit.services.jobSuppression import suppressed_booking_ids

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

Sleep = Callable[[float], Awaitable[Any]]


class FeedState(str, enum.Enum):
    LIVE = "live"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


@dataclass(frozen=True)
class FeedSnapshot:
    jobs: tuple[Any, ...]
    state: FeedState = FeedState.LIVE
    # Excluded from equality so repeated failures do not re-emit
    error: Optional[str] = field(default=None, compare=False)

    @property
    def is_stale(self) -> bool:
        return self.state != FeedState.LIVE


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

NEW_JOBS_QUERY = BookingQuery(statuses=frozenset({JobStatus.PENDING}))


def filter_new_jobs(
    jobs: Iterable[Job],
    provider_id: str,
    suppressed: frozenset[str] = frozenset(),
) -> tuple[Job, ...]:
    """Jobs on offer to ``provider_id``, newest first."""
    visible = [
        job for job in jobs
        if job.is_available(provider_id) and job.booking_id not in suppressed
    ]
    visible.sort(key=lambda job: job.created_at or _OLDEST, reverse=True)
    return tuple(visible)


def filter_ongoing_jobs(jobs: Iterable[Job], provider_id: str) -> tuple[Job, ...]:
    """Active jobs assigned to ``provider_id``, most recently accepted first."""
    ongoing = [job for job in jobs if job.is_ongoing(provider_id)]
    ongoing.sort(key=lambda job: job.accepted_at or _OLDEST, reverse=True)
    return tuple(ongoing)


def _ongoing_query(provider_id: str) -> BookingQuery:
    return BookingQuery(statuses=ACTIVE_STATUSES, provider_id=provider_id)


# ---------------------------------------------------------------------------
# One-shot reads
# ---------------------------------------------------------------------------

async def snapshot_new_jobs(store: BookingStore, provider_id: str) -> tuple[Job, ...]:
    jobs = await store.query_jobs(NEW_JOBS_QUERY)
    suppressed = await suppressed_booking_ids(store.session_factory, provider_id)
    return filter_new_jobs(jobs, provider_id, suppressed)


async def snapshot_ongoing_jobs(store: BookingStore, provider_id: str) -> tuple[Job, ...]:
    jobs = await store.query_jobs(_ongoing_query(provider_id))
    return filter_ongoing_jobs(jobs, provider_id)


# ---------------------------------------------------------------------------
# Resilient live feed
# ---------------------------------------------------------------------------

def _retry_delay(failures: int, base: float, cap: float) -> float:
    return min(base * (2 ** (failures - 1)), cap)


async def _resilient_feed(
    name: str,
    open_stream: Callable[[], AsyncIterator[Any]],
    derive: Callable[[Any], Awaitable[tuple[Any, ...]]],
    *,
    sleep: Sleep,
    max_retries: int,
    base_delay: float,
    max_delay: float,
) -> AsyncIterator[FeedSnapshot]:
    last_jobs: tuple[Any, ...] = ()
    last_emitted: Optional[FeedSnapshot] = None
    failures = 0

    while True:
        stream = open_stream()
        error: Optional[TransientStoreError] = None
        try:
            async for raw in stream:
                jobs = await derive(raw)
                if failures:
                    logger.info("Feed %s recovered after %d failure(s)", name, failures)
                failures = 0
                last_jobs = jobs
                snapshot = FeedSnapshot(jobs, FeedState.LIVE)
                if snapshot != last_emitted:
                    last_emitted = snapshot
                    yield snapshot
            # The change feed was shut down
            return
        except TransientStoreError as exc:
            error = exc
        finally:
            await stream.aclose()  # type: ignore[attr-defined]

        failures += 1
        state = FeedState.OFFLINE if failures >= max_retries else FeedState.RECONNECTING
        delay = max_delay if state == FeedState.OFFLINE else _retry_delay(failures, base_delay, max_delay)
        logger.warning(
            "Feed %s failed (attempt %d/%d, %s), retrying in %.1fs: %s",
            name, failures, max_retries, state.value, delay, error,
        )
        snapshot = FeedSnapshot(last_jobs, state, str(error))
        if snapshot != last_emitted:
            last_emitted = snapshot
            yield snapshot
        await sleep(delay)


def _feed_options(
    sleep: Optional[Sleep],
    max_retries: Optional[int],
    base_delay: Optional[float],
    max_delay: Optional[float],
) -> dict[str, Any]:
    return {
        "sleep": sleep or asyncio.sleep,
        "max_retries": max_retries if max_retries is not None else settings.feed_max_retries,
        "base_delay": base_delay if base_delay is not None else settings.feed_retry_base_delay_seconds,
        "max_delay": max_delay if max_delay is not None else settings.feed_retry_max_delay_seconds,
    }


def listen_new_jobs(
    store: BookingStore,
    provider_id: str,
    *,
    sleep: Optional[Sleep] = None,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> AsyncIterator[FeedSnapshot]:
    """Live feed of jobs on offer to ``provider_id``."""

    async def derive(jobs: list[Job]) -> tuple[Job, ...]:
        suppressed = await suppressed_booking_ids(store.session_factory, provider_id)
        return filter_new_jobs(jobs, provider_id, suppressed)

    return _resilient_feed(
        f"new_jobs:{provider_id}",
        lambda: store.subscribe(NEW_JOBS_QUERY),
        derive,
        **_feed_options(sleep, max_retries, base_delay, max_delay),
    )


def listen_ongoing_jobs(
    store: BookingStore,
    provider_id: str,
    *,
    sleep: Optional[Sleep] = None,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> AsyncIterator[FeedSnapshot]:
    """Live feed of active jobs assigned to ``provider_id``."""

    async def derive(jobs: list[Job]) -> tuple[Job, ...]:
        return filter_ongoing_jobs(jobs, provider_id)

    return _resilient_feed(
        f"ongoing_jobs:{provider_id}",
        lambda: store.subscribe(_ongoing_query(provider_id)),
        derive,
        **_feed_options(sleep, max_retries, base_delay, max_delay),
    )


def listen_inbox(
    inbox: InboxProjection,
    provider_id: str,
    *,
    sleep: Optional[Sleep] = None,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> AsyncIterator[FeedSnapshot]:
    """Live feed of the provider's pending inbox entries."""

    async def derive(items: list[Any]) -> tuple[Any, ...]:
        return tuple(items)

    return _resilient_feed(
        f"inbox:{provider_id}",
        lambda: inbox.subscribe(provider_id),
        derive,
        **_feed_options(sleep, max_retries, base_delay, max_delay),
    )
