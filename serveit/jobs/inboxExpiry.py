"""
Inbox & Suppression Expiry -- Scheduled Job.

This module provides a periodic job that:

1. Deletes pending provider inbox entries whose ``expires_at`` has passed.
2. Deletes job suppressions (rejections) whose TTL has elapsed, so the
   booking can reappear in the provider's feed if it is still on offer.

Booking records are never touched: an expired inbox entry only means the
provider is no longer prompted about the booking.

Intended to run every few minutes via cron or a similar scheduler.

Usage with a simple cron runner::

    python -m serveit.jobs.inboxExpiry
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from serveit.services.bookingStore import BookingStore
from serveit.services.inboxService import InboxProjection
from serveit.services.jobSuppression import purge_expired_suppressions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpiryRunResult:
    inbox_entries_purged: int
    suppressions_purged: int


async def run_inbox_expiry(
    store: BookingStore,
    reference_time: Optional[datetime] = None,
) -> ExpiryRunResult:
    """Purge expired inbox entries and suppressions.

    Args:
        store: Booking store whose session factory owns the inbox tables.
        reference_time: Optional "now" override (for testing).
    """
    now = reference_time or datetime.now(timezone.utc)
    logger.info("Starting inbox expiry run at %s", now.isoformat())

    inbox_purged = await InboxProjection(store).purge_expired(now=now)
    suppressions_purged = await purge_expired_suppressions(store.session_factory, now=now)

    logger.info(
        "Inbox expiry run completed. Inbox entries purged: %d. Suppressions purged: %d.",
        inbox_purged,
        suppressions_purged,
    )
    return ExpiryRunResult(
        inbox_entries_purged=inbox_purged,
        suppressions_purged=suppressions_purged,
    )


# ---------------------------------------------------------------------------
# CLI entry point (for manual runs / simple cron)
# ---------------------------------------------------------------------------

async def _cli_main() -> None:
    """Entry point for running the purge from the command line.

    Uses the application's store and session factory.
    """
    from serveit.api.deps import booking_store, engine

    try:
        result = await run_inbox_expiry(booking_store)
        print(f"Inbox expiry completed: {result}")  # noqa: T201
    except Exception:
        logger.exception("Inbox expiry failed")
        raise
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_cli_main())
