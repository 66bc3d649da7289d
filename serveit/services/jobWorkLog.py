"""
Job Work Log
============

On-site tools for the assigned provider: a pausable job timer, job notes
and a completion checklist built from the service type.

Every operation is guarded the same way:
  1. The booking exists                      -> NOT_FOUND
  2. The caller is the assigned provider      -> NOT_ASSIGNED
  3. Writes need a workable booking status    -> INVALID_TRANSITION

The timer starts once the provider has arrived. Notes may still be added
after completion; timer and checklist writes stop once the job leaves the
active statuses. Reads only check 1 and 2.

The work log never writes the booking record. Timer and checklist rows are
keyed by ``(provider_id, booking_id)`` and read with ``FOR UPDATE`` before
they change; two concurrent first writes race on the primary key.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from serveit.core.config import settings
from serveit.models.job import Job, JobStatus
from serveit.models.work_log import JobChecklist, JobNote, JobTimer
from serveit.services.bookingStore import BookingStore, TransientStoreError
from serveit.services.jobNormalizer import format_timestamp, parse_timestamp
from serveit.services.jobStateManager import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

TIMER_START_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.ARRIVED, JobStatus.IN_PROGRESS})
NOTE_STATUSES: frozenset[JobStatus] = ACTIVE_STATUSES | {JobStatus.COMPLETED}


class WorkLogOutcome(str, enum.Enum):
    OK = "ok"
    TIMER_NOT_STARTED = "timer_not_started"
    TIMER_ALREADY_STARTED = "timer_already_started"
    TIMER_NOT_RUNNING = "timer_not_running"
    TIMER_NOT_PAUSED = "timer_not_paused"
    TIMER_STOPPED = "timer_stopped"
    INVALID_NOTE = "invalid_note"
    CHECKLIST_NOT_FOUND = "checklist_not_found"
    ITEM_NOT_FOUND = "item_not_found"
    INVALID_TRANSITION = "invalid_transition"
    NOT_ASSIGNED = "not_assigned"
    NOT_FOUND = "not_found"


class NoteType(str, enum.Enum):
    NOTE = "note"
    UPDATE = "update"
    ISSUE = "issue"
    COMPLETION = "completion"


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimerPause:
    started_at: datetime
    ended_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at is None:
            return None
        return max(0, _ms(self.ended_at - self.started_at))

    def to_raw(self) -> dict[str, Any]:
        return {
            "startedAt": format_timestamp(self.started_at),
            "endedAt": format_timestamp(self.ended_at),
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "TimerPause":
        return cls(parse_timestamp(raw["startedAt"]), parse_timestamp(raw.get("endedAt")))


@dataclass(frozen=True)
class TimerSnapshot:
    booking_id: str
    provider_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    is_running: bool = True
    pauses: tuple[TimerPause, ...] = ()
    total_duration_ms: Optional[int] = None

    @property
    def is_paused(self) -> bool:
        return bool(self.pauses) and self.pauses[-1].ended_at is None

    @property
    def is_stopped(self) -> bool:
        return self.ended_at is not None

    def elapsed_ms(self, now: Optional[datetime] = None) -> int:
        """Worked time in milliseconds, pauses excluded."""
        if self.total_duration_ms is not None:
            return self.total_duration_ms
        now = now or datetime.now(timezone.utc)
        paused = sum(_ms((p.ended_at or now) - p.started_at) for p in self.pauses)
        return max(0, _ms(now - self.started_at) - paused)

    @classmethod
    def from_row(cls, row: JobTimer) -> "TimerSnapshot":
        # SQLite hands back naive datetimes
        return cls(
            booking_id=row.booking_id,
            provider_id=row.provider_id,
            started_at=parse_timestamp(row.started_at),
            ended_at=parse_timestamp(row.ended_at),
            is_running=row.is_running,
            pauses=tuple(TimerPause.from_raw(p) for p in row.pauses or ()),
            total_duration_ms=row.total_duration_ms,
        )


@dataclass(frozen=True)
class NoteEntry:
    id: int
    booking_id: str
    provider_id: str
    note: str
    note_type: NoteType
    visible_to_customer: bool
    created_at: datetime

    @classmethod
    def from_row(cls, row: JobNote) -> "NoteEntry":
        return cls(
            id=row.id,
            booking_id=row.booking_id,
            provider_id=row.provider_id,
            note=row.note,
            note_type=NoteType(row.note_type),
            visible_to_customer=row.visible_to_customer,
            created_at=parse_timestamp(row.created_at),
        )


@dataclass(frozen=True)
class ChecklistItem:
    id: str
    label: str
    completed: bool = False
    required: bool = True

    def to_raw(self) -> dict[str, Any]:
        return {"id": self.id, "label": self.label, "completed": self.completed, "required": self.required}


@dataclass(frozen=True)
class ChecklistSnapshot:
    booking_id: str
    provider_id: str
    items: tuple[ChecklistItem, ...]

    @property
    def all_required_completed(self) -> bool:
        return all(item.completed for item in self.items if item.required)

    @classmethod
    def from_row(cls, row: JobChecklist) -> "ChecklistSnapshot":
        return cls(
            booking_id=row.booking_id,
            provider_id=row.provider_id,
            items=tuple(ChecklistItem(**item) for item in row.items),
        )


@dataclass(frozen=True)
class WorkLogResult:
    outcome: WorkLogOutcome
    booking_id: str
    timer: Optional[TimerSnapshot] = None
    note: Optional[NoteEntry] = None
    notes: tuple[NoteEntry, ...] = ()
    checklist: Optional[ChecklistSnapshot] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == WorkLogOutcome.OK


_MESSAGES: dict[WorkLogOutcome, str] = {
    WorkLogOutcome.OK: "OK",
    WorkLogOutcome.TIMER_NOT_STARTED: "Timer has not been started",
    WorkLogOutcome.TIMER_ALREADY_STARTED: "Timer is already started",
    WorkLogOutcome.TIMER_NOT_RUNNING: "Timer is already paused",
    WorkLogOutcome.TIMER_NOT_PAUSED: "Timer is not paused",
    WorkLogOutcome.TIMER_STOPPED: "Timer has been stopped",
    WorkLogOutcome.INVALID_NOTE: (
        f"Note must be non-empty and at most {settings.job_note_max_length} characters"
    ),
    WorkLogOutcome.CHECKLIST_NOT_FOUND: "No checklist for this job",
    WorkLogOutcome.ITEM_NOT_FOUND: "Checklist item not found",
    WorkLogOutcome.INVALID_TRANSITION: "Job is not in a workable status",
    WorkLogOutcome.NOT_ASSIGNED: "Job is not assigned to you",
    WorkLogOutcome.NOT_FOUND: "Booking not found",
}


def _result(outcome: WorkLogOutcome, booking_id: str, **payload: Any) -> WorkLogResult:
    return WorkLogResult(outcome, booking_id, message=_MESSAGES[outcome], **payload)


async def _guard(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    statuses: Optional[frozenset[JobStatus]] = None,
) -> tuple[Optional[WorkLogOutcome], Optional[Job]]:
    """Blocking outcome (or None) and the job it was checked against."""
    job = await store.get_job(booking_id)
    if job is None:
        return WorkLogOutcome.NOT_FOUND, None
    if job.provider_id != provider_id:
        return WorkLogOutcome.NOT_ASSIGNED, job
    if statuses is not None and job.status not in statuses:
        return WorkLogOutcome.INVALID_TRANSITION, job
    return None, job


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------

TimerChange = Callable[[Optional[TimerSnapshot], datetime], tuple[WorkLogOutcome, Optional[TimerSnapshot]]]


def _pause(timer: Optional[TimerSnapshot], now: datetime):
    if timer is None:
        return WorkLogOutcome.TIMER_NOT_STARTED, None
    if timer.is_stopped:
        return WorkLogOutcome.TIMER_STOPPED, timer
    if timer.is_paused:
        return WorkLogOutcome.TIMER_NOT_RUNNING, timer
    return WorkLogOutcome.OK, replace(timer, is_running=False, pauses=timer.pauses + (TimerPause(now),))


def _resume(timer: Optional[TimerSnapshot], now: datetime):
    if timer is None:
        return WorkLogOutcome.TIMER_NOT_STARTED, None
    if timer.is_stopped:
        return WorkLogOutcome.TIMER_STOPPED, timer
    if not timer.is_paused:
        return WorkLogOutcome.TIMER_NOT_PAUSED, timer
    closed = replace(timer.pauses[-1], ended_at=now)
    return WorkLogOutcome.OK, replace(timer, is_running=True, pauses=timer.pauses[:-1] + (closed,))


def _stop(timer: Optional[TimerSnapshot], now: datetime):
    if timer is None:
        return WorkLogOutcome.TIMER_NOT_STARTED, None
    if timer.is_stopped:
        return WorkLogOutcome.TIMER_STOPPED, timer
    if timer.is_paused:
        timer = replace(timer, pauses=timer.pauses[:-1] + (replace(timer.pauses[-1], ended_at=now),))
    return WorkLogOutcome.OK, replace(
        timer, is_running=False, ended_at=now, total_duration_ms=timer.elapsed_ms(now),
    )


def _write_timer(row: JobTimer, timer: TimerSnapshot) -> None:
    row.started_at = timer.started_at
    row.ended_at = timer.ended_at
    row.is_running = timer.is_running
    # JSON columns only notice reassignment
    row.pauses = [pause.to_raw() for pause in timer.pauses]
    row.total_duration_ms = timer.total_duration_ms


async def _change_timer(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    change: TimerChange,
    statuses: frozenset[JobStatus],
    now: Optional[datetime],
) -> WorkLogResult:
    now = now or datetime.now(timezone.utc)
    blocked, _ = await _guard(store, booking_id, provider_id, statuses)
    if blocked is not None:
        return _result(blocked, booking_id)

    try:
        async with store.session_factory() as session:
            row = await session.get(JobTimer, (provider_id, booking_id), with_for_update=True)
            current = TimerSnapshot.from_row(row) if row is not None else None
            outcome, updated = change(current, now)
            if outcome != WorkLogOutcome.OK:
                return _result(outcome, booking_id, timer=current)
            if row is None:
                row = JobTimer(provider_id=provider_id, booking_id=booking_id)
                session.add(row)
            _write_timer(row, updated)
            await session.commit()
    except IntegrityError:
        logger.info("Timer for %s/%s was started concurrently", provider_id, booking_id)
        return _result(WorkLogOutcome.TIMER_ALREADY_STARTED, booking_id)
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not update timer: {exc}") from exc

    logger.info(
        "Timer for booking %s by %s: running=%s stopped=%s",
        booking_id, provider_id, updated.is_running, updated.is_stopped,
    )
    return _result(WorkLogOutcome.OK, booking_id, timer=updated)


async def start_timer(
    store: BookingStore, booking_id: str, provider_id: str, *, now: Optional[datetime] = None,
) -> WorkLogResult:
    """Start the job timer. A stopped timer is replaced by a fresh one."""

    def _start(timer: Optional[TimerSnapshot], at: datetime):
        if timer is not None and not timer.is_stopped:
            return WorkLogOutcome.TIMER_ALREADY_STARTED, timer
        return WorkLogOutcome.OK, TimerSnapshot(booking_id, provider_id, started_at=at)

    return await _change_timer(store, booking_id, provider_id, _start, TIMER_START_STATUSES, now)


async def pause_timer(
    store: BookingStore, booking_id: str, provider_id: str, *, now: Optional[datetime] = None,
) -> WorkLogResult:
    return await _change_timer(store, booking_id, provider_id, _pause, ACTIVE_STATUSES, now)


async def resume_timer(
    store: BookingStore, booking_id: str, provider_id: str, *, now: Optional[datetime] = None,
) -> WorkLogResult:
    return await _change_timer(store, booking_id, provider_id, _resume, ACTIVE_STATUSES, now)


async def stop_timer(
    store: BookingStore, booking_id: str, provider_id: str, *, now: Optional[datetime] = None,
) -> WorkLogResult:
    """Stop the timer, closing any open pause. Fixes ``total_duration_ms``."""
    return await _change_timer(store, booking_id, provider_id, _stop, ACTIVE_STATUSES, now)


async def get_timer(store: BookingStore, booking_id: str, provider_id: str) -> WorkLogResult:
    blocked, _ = await _guard(store, booking_id, provider_id)
    if blocked is not None:
        return _result(blocked, booking_id)
    try:
        async with store.session_factory() as session:
            row = await session.get(JobTimer, (provider_id, booking_id))
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not load timer: {exc}") from exc
    if row is None:
        return _result(WorkLogOutcome.TIMER_NOT_STARTED, booking_id)
    return _result(WorkLogOutcome.OK, booking_id, timer=TimerSnapshot.from_row(row))


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

async def add_note(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    note: str,
    *,
    note_type: NoteType = NoteType.NOTE,
    visible_to_customer: bool = True,
    now: Optional[datetime] = None,
) -> WorkLogResult:
    """Append a note to the job. Allowed while active and after completion."""
    now = now or datetime.now(timezone.utc)
    blocked, _ = await _guard(store, booking_id, provider_id, NOTE_STATUSES)
    if blocked is not None:
        return _result(blocked, booking_id)

    text = (note or "").strip()
    if not text or len(text) > settings.job_note_max_length:
        return _result(WorkLogOutcome.INVALID_NOTE, booking_id)

    row = JobNote(
        booking_id=booking_id,
        provider_id=provider_id,
        note=text,
        note_type=NoteType(note_type).value,
        visible_to_customer=visible_to_customer,
        created_at=now,
    )
    try:
        async with store.session_factory() as session:
            session.add(row)
            await session.commit()
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not add note: {exc}") from exc

    logger.info("Provider %s added a %s note to booking %s", provider_id, row.note_type, booking_id)
    return _result(WorkLogOutcome.OK, booking_id, note=NoteEntry.from_row(row))


async def _load_notes(
    session_factory: async_sessionmaker[AsyncSession],
    booking_id: str,
    *,
    provider_id: Optional[str] = None,
    customer_visible_only: bool = False,
) -> tuple[NoteEntry, ...]:
    stmt = select(JobNote).where(JobNote.booking_id == booking_id)
    if provider_id is not None:
        stmt = stmt.where(JobNote.provider_id == provider_id)
    if customer_visible_only:
        stmt = stmt.where(JobNote.visible_to_customer.is_(True))
    stmt = stmt.order_by(JobNote.created_at, JobNote.id)
    try:
        async with session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not load notes: {exc}") from exc
    return tuple(NoteEntry.from_row(row) for row in rows)


async def list_notes(store: BookingStore, booking_id: str, provider_id: str) -> WorkLogResult:
    """The assigned provider's notes on a job, oldest first."""
    blocked, _ = await _guard(store, booking_id, provider_id)
    if blocked is not None:
        return _result(blocked, booking_id)
    notes = await _load_notes(store.session_factory, booking_id, provider_id=provider_id)
    return _result(WorkLogOutcome.OK, booking_id, notes=notes)


async def list_customer_notes(
    session_factory: async_sessionmaker[AsyncSession],
    booking_id: str,
) -> tuple[NoteEntry, ...]:
    """Notes the customer may see, for the customer-side ordering service."""
    return await _load_notes(session_factory, booking_id, customer_visible_only=True)


# ---------------------------------------------------------------------------
# Completion checklist
# ---------------------------------------------------------------------------

_CLEANUP = ChecklistItem("cleanup", "Clean work area", required=False)

DEFAULT_CHECKLIST: tuple[ChecklistItem, ...] = (
    ChecklistItem("service_complete", "Service completed"),
    ChecklistItem("customer_satisfied", "Customer satisfied"),
    _CLEANUP,
)

# Keyed by lower-cased service name
CHECKLIST_TEMPLATES: dict[str, tuple[ChecklistItem, ...]] = {
    "ac repair": (
        ChecklistItem("ac_check", "Check AC unit condition"),
        ChecklistItem("filters_clean", "Clean/replace air filters"),
        ChecklistItem("refrigerant_check", "Check refrigerant levels"),
        ChecklistItem("test_operation", "Test AC operation"),
    ),
    "plumbing": (
        ChecklistItem("leak_check", "Check for leaks"),
        ChecklistItem("pressure_test", "Test water pressure"),
        ChecklistItem("fixtures_test", "Test all fixtures"),
        _CLEANUP,
    ),
}


def checklist_template(service_name: str) -> tuple[ChecklistItem, ...]:
    return CHECKLIST_TEMPLATES.get(service_name.strip().lower(), DEFAULT_CHECKLIST)


async def _read_checklist(
    session_factory: async_sessionmaker[AsyncSession], booking_id: str, provider_id: str,
) -> Optional[ChecklistSnapshot]:
    try:
        async with session_factory() as session:
            row = await session.get(JobChecklist, (provider_id, booking_id))
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not load checklist: {exc}") from exc
    return ChecklistSnapshot.from_row(row) if row is not None else None


async def create_checklist(
    store: BookingStore, booking_id: str, provider_id: str, *, now: Optional[datetime] = None,
) -> WorkLogResult:
    """Create the checklist for the job's service type.

    Idempotent: an existing checklist is returned unchanged, ticks included.
    """
    now = now or datetime.now(timezone.utc)
    blocked, job = await _guard(store, booking_id, provider_id, ACTIVE_STATUSES)
    if blocked is not None:
        return _result(blocked, booking_id)

    existing = await _read_checklist(store.session_factory, booking_id, provider_id)
    if existing is not None:
        return _result(WorkLogOutcome.OK, booking_id, checklist=existing)

    checklist = ChecklistSnapshot(booking_id, provider_id, checklist_template(job.service_name))
    try:
        async with store.session_factory() as session:
            session.add(JobChecklist(
                provider_id=provider_id,
                booking_id=booking_id,
                items=[item.to_raw() for item in checklist.items],
                all_required_completed=checklist.all_required_completed,
                created_at=now,
                updated_at=now,
            ))
            await session.commit()
    except IntegrityError:
        existing = await _read_checklist(store.session_factory, booking_id, provider_id)
        return _result(WorkLogOutcome.OK, booking_id, checklist=existing)
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not create checklist: {exc}") from exc

    logger.info(
        "Created %d-item checklist for booking %s (%s)",
        len(checklist.items), booking_id, job.service_name,
    )
    return _result(WorkLogOutcome.OK, booking_id, checklist=checklist)


async def update_checklist_item(
    store: BookingStore,
    booking_id: str,
    provider_id: str,
    item_id: str,
    completed: bool,
    *,
    now: Optional[datetime] = None,
) -> WorkLogResult:
    """Tick or untick one item and recompute ``all_required_completed``."""
    now = now or datetime.now(timezone.utc)
    blocked, _ = await _guard(store, booking_id, provider_id, ACTIVE_STATUSES)
    if blocked is not None:
        return _result(blocked, booking_id)

    try:
        async with store.session_factory() as session:
            row = await session.get(JobChecklist, (provider_id, booking_id), with_for_update=True)
            if row is None:
                return _result(WorkLogOutcome.CHECKLIST_NOT_FOUND, booking_id)
            current = ChecklistSnapshot.from_row(row)
            if not any(item.id == item_id for item in current.items):
                return _result(WorkLogOutcome.ITEM_NOT_FOUND, booking_id, checklist=current)
            updated = replace(current, items=tuple(
                replace(item, completed=completed) if item.id == item_id else item
                for item in current.items
            ))
            row.items = [item.to_raw() for item in updated.items]
            row.all_required_completed = updated.all_required_completed
            row.updated_at = now
            await session.commit()
    except (SQLAlchemyError, OSError) as exc:
        raise TransientStoreError(f"Could not update checklist: {exc}") from exc

    logger.info(
        "Checklist item %s on booking %s set to %s (all required done: %s)",
        item_id, booking_id, completed, updated.all_required_completed,
    )
    return _result(WorkLogOutcome.OK, booking_id, checklist=updated)


async def get_checklist(store: BookingStore, booking_id: str, provider_id: str) -> WorkLogResult:
    blocked, _ = await _guard(store, booking_id, provider_id)
    if blocked is not None:
        return _result(blocked, booking_id)
    checklist = await _read_checklist(store.session_factory, booking_id, provider_id)
    if checklist is None:
        return _result(WorkLogOutcome.CHECKLIST_NOT_FOUND, booking_id)
    return _result(WorkLogOutcome.OK, booking_id, checklist=checklist)
