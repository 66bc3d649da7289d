"""
Job State Manager
=================

Finite state machine governing all valid booking status transitions. Every
status change MUST be checked against this module before being persisted,
and the check MUST run inside the store's atomic update so two devices of
the same provider cannot apply conflicting transitions.

State machine overview::

    pending --> accepted --> arrived --> in_progress
        --> payment_pending --> completed

Only the immediate successor is a legal target. Nothing may be skipped and
nothing may go backwards. ``payment_pending`` is mandatory for every payment
mode; ``completed`` is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from serveit.models.job import JobStatus
from serveit.services.jobNormalizer import format_timestamp, parse_timestamp


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

STATUS_ORDER: tuple[JobStatus, ...] = (
    JobStatus.PENDING,
    JobStatus.ACCEPTED,
    JobStatus.ARRIVED,
    JobStatus.IN_PROGRESS,
    JobStatus.PAYMENT_PENDING,
    JobStatus.COMPLETED,
)

_RANK: dict[JobStatus, int] = {status: idx for idx, status in enumerate(STATUS_ORDER)}

# Statuses that make up a provider's "ongoing" work
ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.ACCEPTED,
    JobStatus.ARRIVED,
    JobStatus.IN_PROGRESS,
    JobStatus.PAYMENT_PENDING,
})

# Raw-record field stamped when a booking enters each stage
STAGE_TIMESTAMP_FIELDS: dict[JobStatus, str] = {
    JobStatus.PENDING: "createdAt",
    JobStatus.ACCEPTED: "acceptedAt",
    JobStatus.ARRIVED: "arrivedAt",
    JobStatus.IN_PROGRESS: "serviceStartedAt",
    JobStatus.PAYMENT_PENDING: "paymentPendingAt",
    JobStatus.COMPLETED: "completedAt",
}


# ---------------------------------------------------------------------------
# Results & errors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


class InvalidTransitionError(Exception):
    """Raised when a caller requests a status change the state machine forbids."""

    def __init__(self, current: JobStatus, target: JobStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid transition: '{current.value}' -> '{target.value}'."
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def status_rank(status: JobStatus) -> int:
    """Position of ``status`` in the lifecycle (pending == 0)."""
    return _RANK[status]


def next_status(current: JobStatus) -> JobStatus | None:
    """Return the immediate successor of ``current``, or None if terminal."""
    rank = _RANK[current]
    if rank + 1 >= len(STATUS_ORDER):
        return None
    return STATUS_ORDER[rank + 1]


def can_transition_to(current: JobStatus, target: JobStatus) -> bool:
    """True only if ``target`` is the immediate successor of ``current``."""
    return next_status(current) == target


def validate_transition(current: JobStatus, target: JobStatus) -> TransitionResult:
    """Validate whether a status transition is allowed.

    Returns a ``TransitionResult`` with ``allowed=True`` if the transition
    is permitted, or ``allowed=False`` with a human-readable ``reason``.
    """
    if can_transition_to(current, target):
        return TransitionResult(allowed=True)

    successor = next_status(current)
    if successor is None:
        reason = f"Invalid transition: '{current.value}' is terminal."
    elif _RANK[target] <= _RANK[current]:
        reason = (
            f"Invalid transition: '{current.value}' -> '{target.value}' goes backwards. "
            f"Next allowed status is '{successor.value}'."
        )
    else:
        reason = (
            f"Invalid transition: '{current.value}' -> '{target.value}' skips "
            f"'{successor.value}'."
        )
    return TransitionResult(allowed=False, reason=reason)


def require_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is legal."""
    if not can_transition_to(current, target):
        raise InvalidTransitionError(current, target)


def get_valid_transitions(current: JobStatus) -> list[JobStatus]:
    """Return the statuses reachable from ``current`` (zero or one entry).

    Useful for UI hints (e.g. which action button to show).
    """
    successor = next_status(current)
    return [successor] if successor is not None else []


def stage_timestamp(data: Mapping[str, Any], target: JobStatus, now: datetime) -> str:
    """Timestamp to record for ``target``, never earlier than the previous stage.

    Stage stamps must be non-decreasing even when the writing clock runs
    behind the clock that stamped the previous stage.
    """
    stamp = parse_timestamp(now) or now
    rank = _RANK[target]
    if rank > 0:
        previous = parse_timestamp(data.get(STAGE_TIMESTAMP_FIELDS[STATUS_ORDER[rank - 1]]))
        if previous is not None and previous > stamp:
            stamp = previous
    return format_timestamp(stamp)  # type: ignore[return-value]
