"""
Job Event Handler
=================

WebSocket handler for the ``/jobs`` namespace. Streams the provider's live
feeds to the connected session and lets the provider accept or reject
offers without a REST round-trip.

Events emitted TO clients:
  job:offered    ``{ "bookingId": "...", "distanceKm": float | null }`` (on dispatch)
  jobs:new, jobs:ongoing, jobs:inbox
    ``{ "state": "live" | "reconnecting" | "offline", "jobs": [...], "error": str | null }``

Events received FROM clients:
  jobs:watch     ``{ "feeds": ["new", "ongoing", "inbox"] }`` (default new + ongoing)
  jobs:unwatch
  job:accept     ``{ "bookingId": "...", "providerName": "...", "providerMobileNo": "..." }``
  job:reject     ``{ "bookingId": "..." }``
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from serveit.api.deps import get_store
from serveit.api.schemas.job import InboxItemOut, JobOut
from serveit.services.acceptanceCoordinator import accept_job_with_deadline
from serveit.services.bookingStore import BookingStore, TransientStoreError
from serveit.services.inboxService import InboxProjection, InboxItem
from serveit.services.jobSuppression import reject_job
from serveit.services.matchingFeeds import (
    FeedSnapshot,
    listen_inbox,
    listen_new_jobs,
    listen_ongoing_jobs,
)

from ..socketServer import NAMESPACE, cancel_tasks, get_sid_meta, sio, track_task

logger = logging.getLogger(__name__)

DEFAULT_FEEDS = ("new", "ongoing")


# ---------------------------------------------------------------------------
# Permission helpers
# ---------------------------------------------------------------------------

def _extract_provider_id(sid: str) -> str | None:
    """Provider ID for the session, or None for non-provider connections."""
    meta = get_sid_meta(sid)
    if not meta or meta.get("role") != "provider":
        return None
    return meta.get("user_id")


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _item_payload(item: Any) -> dict[str, Any]:
    if isinstance(item, InboxItem):
        return InboxItemOut.model_validate(item).model_dump(mode="json", by_alias=True)
    return JobOut.from_job(item).model_dump(mode="json", by_alias=True)


def snapshot_payload(snapshot: FeedSnapshot) -> dict[str, Any]:
    return {
        "state": snapshot.state.value,
        "jobs": [_item_payload(item) for item in snapshot.jobs],
        "error": snapshot.error,
    }


# ---------------------------------------------------------------------------
# Feed streaming
# ---------------------------------------------------------------------------

_FEEDS: dict[str, Callable[[BookingStore, str], AsyncIterator[FeedSnapshot]]] = {
    "new": listen_new_jobs,
    "ongoing": listen_ongoing_jobs,
    "inbox": lambda store, provider_id: listen_inbox(InboxProjection(store), provider_id),
}


async def stream_feed(sid: str, event: str, feed: AsyncIterator[FeedSnapshot]) -> None:
    """Forward every snapshot of ``feed`` to ``sid`` until cancelled."""
    try:
        async for snapshot in feed:
            await sio.emit(event, snapshot_payload(snapshot), to=sid, namespace=NAMESPACE)
    except asyncio.CancelledError:
        logger.debug("Feed %s for sid=%s cancelled", event, sid)
        raise
    finally:
        await feed.aclose()  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Inbound event handlers
# ---------------------------------------------------------------------------

@sio.on("jobs:watch", namespace=NAMESPACE)
async def handle_watch(sid: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    provider_id = _extract_provider_id(sid)
    if provider_id is None:
        return {"ok": False, "error": "Provider access required"}

    requested = (data or {}).get("feeds") or DEFAULT_FEEDS
    unknown = [name for name in requested if name not in _FEEDS]
    if unknown:
        return {"ok": False, "error": f"Unknown feeds: {', '.join(unknown)}"}

    # Restarting replaces any feeds already running for this session
    cancel_tasks(sid)
    store = get_store()
    for name in dict.fromkeys(requested):
        feed = _FEEDS[name](store, provider_id)
        track_task(sid, asyncio.create_task(stream_feed(sid, f"jobs:{name}", feed)))
    logger.info("sid=%s watching %s for provider %s", sid, list(requested), provider_id)
    return {"ok": True, "feeds": list(dict.fromkeys(requested))}


@sio.on("jobs:unwatch", namespace=NAMESPACE)
async def handle_unwatch(sid: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"ok": True, "cancelled": cancel_tasks(sid)}


@sio.on("job:accept", namespace=NAMESPACE)
async def handle_accept(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Provider accepts a job offer. Acks with the accept outcome."""
    provider_id = _extract_provider_id(sid)
    if provider_id is None:
        return {"ok": False, "error": "Provider access required"}
    booking_id = (data or {}).get("bookingId")
    if not booking_id:
        return {"ok": False, "error": "bookingId is required"}

    try:
        result = await accept_job_with_deadline(
            get_store(),
            booking_id,
            provider_id,
            provider_name=data.get("providerName"),
            provider_mobile_no=data.get("providerMobileNo"),
        )
    except TransientStoreError as exc:
        logger.error("Accept of %s over socket failed: %s", booking_id, exc)
        return {"ok": False, "outcome": "unavailable", "error": "Service temporarily unavailable"}

    return {
        "ok": result.accepted,
        "outcome": result.outcome.value,
        "duplicate": result.duplicate,
        "message": result.message,
        "job": JobOut.from_job(result.job).model_dump(mode="json", by_alias=True) if result.job else None,
    }


@sio.on("job:reject", namespace=NAMESPACE)
async def handle_reject(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    provider_id = _extract_provider_id(sid)
    if provider_id is None:
        return {"ok": False, "error": "Provider access required"}
    booking_id = (data or {}).get("bookingId")
    if not booking_id:
        return {"ok": False, "error": "bookingId is required"}
    store = get_store()
    try:
        if await store.get(booking_id) is None:
            return {"ok": False, "outcome": "not_found", "error": f"Booking {booking_id} not found"}
        expires_at = await reject_job(store, booking_id, provider_id)
    except TransientStoreError as exc:
        logger.error("Reject of %s over socket failed: %s", booking_id, exc)
        return {"ok": False, "error": "Service temporarily unavailable"}
    return {"ok": True, "suppressedUntil": expires_at.isoformat()}
