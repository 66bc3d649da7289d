"""
Work Log Routes
===============

On-site tools for the assigned provider.

Routes:
  GET    /api/v1/jobs/{booking_id}/timer                      -- Current timer
  POST   /api/v1/jobs/{booking_id}/timer/{action}             -- start | pause | resume | stop
  GET    /api/v1/jobs/{booking_id}/notes                      -- My notes on the job
  POST   /api/v1/jobs/{booking_id}/notes                      -- Add a note
  GET    /api/v1/jobs/{booking_id}/notes/customer             -- Customer-visible notes (internal)
  GET    /api/v1/jobs/{booking_id}/checklist                  -- Completion checklist
  POST   /api/v1/jobs/{booking_id}/checklist                  -- Create it for the service type
  PATCH  /api/v1/jobs/{booking_id}/checklist/items/{item_id}  -- Tick / untick an item

Rejections carry a machine-readable ``outcome`` in ``detail``, the same
way the job routes report them.
"""

from __future__ import annotations

import enum
from typing import NoReturn

from fastapi import APIRouter, HTTPException, status

from serveit.api.deps import CurrentProvider, CurrentService, Store
from serveit.api.schemas.worklog import (
    ChecklistItemUpdate,
    ChecklistOut,
    NoteCreate,
    NoteListResponse,
    NoteOut,
    TimerOut,
)
from serveit.services import jobWorkLog
from serveit.services.jobWorkLog import WorkLogResult

router = APIRouter(prefix="/jobs", tags=["Work log"])


class TimerAction(str, enum.Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


_TIMER_ACTIONS = {
    TimerAction.START: jobWorkLog.start_timer,
    TimerAction.PAUSE: jobWorkLog.pause_timer,
    TimerAction.RESUME: jobWorkLog.resume_timer,
    TimerAction.STOP: jobWorkLog.stop_timer,
}

_OUTCOME_HTTP_STATUS: dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "not_assigned": status.HTTP_403_FORBIDDEN,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "timer_not_started": status.HTTP_409_CONFLICT,
    "timer_already_started": status.HTTP_409_CONFLICT,
    "timer_not_running": status.HTTP_409_CONFLICT,
    "timer_not_paused": status.HTTP_409_CONFLICT,
    "timer_stopped": status.HTTP_409_CONFLICT,
    "invalid_note": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "checklist_not_found": status.HTTP_404_NOT_FOUND,
    "item_not_found": status.HTTP_404_NOT_FOUND,
}


def _check(result: WorkLogResult) -> WorkLogResult:
    if not result.ok:
        _raise_outcome(result)
    return result


def _raise_outcome(result: WorkLogResult) -> NoReturn:
    raise HTTPException(
        status_code=_OUTCOME_HTTP_STATUS.get(result.outcome.value, status.HTTP_400_BAD_REQUEST),
        detail={"outcome": result.outcome.value, "message": result.message},
    )


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------

@router.get("/{booking_id}/timer", response_model=TimerOut, summary="Get the job timer")
async def get_timer(booking_id: str, store: Store, provider_id: CurrentProvider) -> TimerOut:
    result = _check(await jobWorkLog.get_timer(store, booking_id, provider_id))
    return TimerOut.from_timer(result.timer)


@router.post(
    "/{booking_id}/timer/{action}",
    response_model=TimerOut,
    summary="Start, pause, resume or stop the job timer",
    description=(
        "The timer can be started once the provider has arrived. Pauses are "
        "excluded from the worked time; stopping fixes totalDurationMs."
    ),
)
async def change_timer(
    booking_id: str, action: TimerAction, store: Store, provider_id: CurrentProvider,
) -> TimerOut:
    result = _check(await _TIMER_ACTIONS[action](store, booking_id, provider_id))
    return TimerOut.from_timer(result.timer)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

@router.get("/{booking_id}/notes", response_model=NoteListResponse, summary="List my notes on a job")
async def list_notes(booking_id: str, store: Store, provider_id: CurrentProvider) -> NoteListResponse:
    result = _check(await jobWorkLog.list_notes(store, booking_id, provider_id))
    return NoteListResponse(booking_id=booking_id, notes=[NoteOut.from_entry(n) for n in result.notes])


@router.post(
    "/{booking_id}/notes",
    response_model=NoteOut,
    status_code=status.HTTP_201_CREATED,
    summary="Add a note to a job",
)
async def add_note(
    booking_id: str, body: NoteCreate, store: Store, provider_id: CurrentProvider,
) -> NoteOut:
    result = _check(await jobWorkLog.add_note(
        store,
        booking_id,
        provider_id,
        body.note,
        note_type=body.type,
        visible_to_customer=body.visible_to_customer,
    ))
    return NoteOut.from_entry(result.note)


@router.get(
    "/{booking_id}/notes/customer",
    response_model=NoteListResponse,
    summary="Customer-visible notes (internal)",
)
async def list_customer_notes(booking_id: str, store: Store, caller: CurrentService) -> NoteListResponse:
    notes = await jobWorkLog.list_customer_notes(store.session_factory, booking_id)
    return NoteListResponse(booking_id=booking_id, notes=[NoteOut.from_entry(n) for n in notes])


# ---------------------------------------------------------------------------
# Checklist
# ---------------------------------------------------------------------------

@router.get("/{booking_id}/checklist", response_model=ChecklistOut, summary="Get the completion checklist")
async def get_checklist(booking_id: str, store: Store, provider_id: CurrentProvider) -> ChecklistOut:
    result = _check(await jobWorkLog.get_checklist(store, booking_id, provider_id))
    return ChecklistOut.from_checklist(result.checklist)


@router.post(
    "/{booking_id}/checklist",
    response_model=ChecklistOut,
    summary="Create the completion checklist",
    description="Built from the job's service type. Repeating the call returns the existing checklist.",
)
async def create_checklist(booking_id: str, store: Store, provider_id: CurrentProvider) -> ChecklistOut:
    result = _check(await jobWorkLog.create_checklist(store, booking_id, provider_id))
    return ChecklistOut.from_checklist(result.checklist)


@router.patch(
    "/{booking_id}/checklist/items/{item_id}",
    response_model=ChecklistOut,
    summary="Tick or untick a checklist item",
)
async def update_checklist_item(
    booking_id: str,
    item_id: str,
    body: ChecklistItemUpdate,
    store: Store,
    provider_id: CurrentProvider,
) -> ChecklistOut:
    result = _check(await jobWorkLog.update_checklist_item(
        store, booking_id, provider_id, item_id, body.completed,
    ))
    return ChecklistOut.from_checklist(result.checklist)
