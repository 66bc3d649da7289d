"""
Job Lifecycle Events
====================

Structured events for booking lifecycle changes. Each function builds a
standard payload, logs it, and returns it so downstream consumers
(notifications, analytics, earnings) can pick it up from the log stream or
from the return value.

Push delivery and earnings bookkeeping are handled outside this service;
the payloads here are the contract they consume.

Events emitted:
  - job.dispatched
  - job.accepted
  - job.rejected
  - job.status_changed
  - job.payment_recorded
  - job.completed
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _build_event(
    event_type: str,
    booking_id: str,
    *,
    data: dict[str, Any] | None = None,
    actor_id: str | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "booking_id": booking_id,
        "actor_id": actor_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data or {},
    }


def emit_job_dispatched(booking_id: str, provider_ids: list[str]) -> dict[str, Any]:
    """Emit event when a pending booking is offered to providers."""
    event = _build_event(
        "job.dispatched",
        booking_id,
        data={"provider_ids": list(provider_ids)},
    )
    logger.info(
        "Event emitted: %s for booking %s (%d providers)",
        event["event_type"], booking_id, len(provider_ids),
    )
    return event


def emit_job_accepted(booking_id: str, provider_id: str) -> dict[str, Any]:
    """Emit event when a provider wins a booking."""
    event = _build_event("job.accepted", booking_id, actor_id=provider_id)
    logger.info("Event emitted: %s for booking %s by %s", event["event_type"], booking_id, provider_id)
    return event


def emit_job_rejected(booking_id: str, provider_id: str) -> dict[str, Any]:
    event = _build_event("job.rejected", booking_id, actor_id=provider_id)
    logger.info("Event emitted: %s for booking %s by %s", event["event_type"], booking_id, provider_id)
    return event


def emit_job_status_changed(
    booking_id: str,
    old_status: str,
    new_status: str,
    actor_id: str | None = None,
) -> dict[str, Any]:
    """Emit event when a booking transitions between states."""
    event = _build_event(
        "job.status_changed",
        booking_id,
        actor_id=actor_id,
        data={
            "old_status": old_status,
            "new_status": new_status,
        },
    )
    logger.info(
        "Event emitted: %s for booking %s (%s -> %s)",
        event["event_type"],
        booking_id,
        old_status,
        new_status,
    )
    return event


def emit_payment_recorded(
    booking_id: str,
    provider_id: str,
    payment_mode: str,
    payment_status: str,
    amount: str | None = None,
) -> dict[str, Any]:
    """Emit event when payment details are written to a booking."""
    event = _build_event(
        "job.payment_recorded",
        booking_id,
        actor_id=provider_id,
        data={
            "payment_mode": payment_mode,
            "payment_status": payment_status,
            "amount": amount,
        },
    )
    logger.info(
        "Event emitted: %s for booking %s (%s, %s)",
        event["event_type"], booking_id, payment_mode, payment_status,
    )
    return event


def emit_job_completed(
    booking_id: str,
    provider_id: str | None = None,
) -> dict[str, Any]:
    """Emit event when a booking reaches the completed state."""
    event = _build_event(
        "job.completed",
        booking_id,
        actor_id=provider_id,
        data={"provider_id": provider_id},
    )
    logger.info("Event emitted: %s for booking %s", event["event_type"], booking_id)
    return event
