"""
Pydantic v2 schemas for the provider work log (timer, notes, checklist).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from serveit.api.schemas.job import CamelModel
from serveit.services.jobWorkLog import (
    ChecklistSnapshot,
    NoteEntry,
    NoteType,
    TimerSnapshot,
)


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------

class TimerPauseOut(CamelModel):
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class TimerOut(CamelModel):
    booking_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    is_running: bool
    is_paused: bool
    pauses: list[TimerPauseOut]
    elapsed_ms: int
    total_duration_ms: Optional[int] = None

    @classmethod
    def from_timer(cls, timer: TimerSnapshot, now: Optional[datetime] = None) -> "TimerOut":
        return cls(
            booking_id=timer.booking_id,
            started_at=timer.started_at,
            ended_at=timer.ended_at,
            is_running=timer.is_running,
            is_paused=timer.is_paused,
            pauses=[TimerPauseOut.model_validate(p) for p in timer.pauses],
            elapsed_ms=timer.elapsed_ms(now),
            total_duration_ms=timer.total_duration_ms,
        )


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

class NoteCreate(CamelModel):
    note: str = Field(..., min_length=1)
    type: NoteType = NoteType.NOTE
    visible_to_customer: bool = True


class NoteOut(CamelModel):
    id: int
    note: str
    type: NoteType
    visible_to_customer: bool
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: NoteEntry) -> "NoteOut":
        return cls(
            id=entry.id,
            note=entry.note,
            type=entry.note_type,
            visible_to_customer=entry.visible_to_customer,
            created_at=entry.created_at,
        )


class NoteListResponse(CamelModel):
    booking_id: str
    notes: list[NoteOut]


# ---------------------------------------------------------------------------
# Checklist
# ---------------------------------------------------------------------------

class ChecklistItemOut(CamelModel):
    id: str
    label: str
    completed: bool
    required: bool


class ChecklistOut(CamelModel):
    booking_id: str
    items: list[ChecklistItemOut]
    all_required_completed: bool

    @classmethod
    def from_checklist(cls, checklist: ChecklistSnapshot) -> "ChecklistOut":
        return cls(
            booking_id=checklist.booking_id,
            items=[ChecklistItemOut.model_validate(item) for item in checklist.items],
            all_required_completed=checklist.all_required_completed,
        )


class ChecklistItemUpdate(CamelModel):
    completed: bool
