"""
Provider API Routes
===================

Read-only views of the calling provider's work. Live versions of these
feeds are served over Socket.IO (``jobs:watch``); these endpoints return
one snapshot.

Routes:
  GET    /api/v1/provider/jobs/new        -- Jobs on offer to me
  GET    /api/v1/provider/jobs/ongoing    -- My active jobs
  GET    /api/v1/provider/jobs/completed  -- My completed jobs (paged)
  GET    /api/v1/provider/jobs/has-ongoing
  GET    /api/v1/provider/inbox           -- Pending inbox entries
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from serveit.api.deps import CurrentProvider, Inbox, Store
from serveit.api.schemas.job import (
    CompletedJobsResponse,
    InboxItemOut,
    InboxResponse,
    JobFeedResponse,
    OngoingCheckResponse,
    jobs_out,
)
from serveit.core.config import settings
from serveit.services import jobService
from serveit.services.matchingFeeds import snapshot_new_jobs, snapshot_ongoing_jobs

router = APIRouter(prefix="/provider", tags=["Provider"])


@router.get(
    "/jobs/new",
    response_model=JobFeedResponse,
    summary="Jobs on offer",
    description="Pending, unassigned jobs the caller was notified of and has not rejected. Newest first.",
)
async def new_jobs(store: Store, provider_id: CurrentProvider) -> JobFeedResponse:
    jobs = await snapshot_new_jobs(store, provider_id)
    return JobFeedResponse(jobs=jobs_out(jobs), count=len(jobs))


@router.get(
    "/jobs/ongoing",
    response_model=JobFeedResponse,
    summary="Ongoing jobs",
    description="Accepted but not completed jobs assigned to the caller. Most recently accepted first.",
)
async def ongoing_jobs(store: Store, provider_id: CurrentProvider) -> JobFeedResponse:
    jobs = await snapshot_ongoing_jobs(store, provider_id)
    return JobFeedResponse(jobs=jobs_out(jobs), count=len(jobs))


@router.get(
    "/jobs/completed",
    response_model=CompletedJobsResponse,
    summary="Completed jobs",
    description="Completed jobs, newest first. Pass 'pageToken' from the previous page to continue.",
)
async def completed_jobs(
    store: Store,
    provider_id: CurrentProvider,
    limit: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
    page_token: Optional[str] = Query(default=None, alias="pageToken"),
) -> CompletedJobsResponse:
    try:
        page = await jobService.get_completed_jobs(store, provider_id, limit, page_token)
    except jobService.InvalidPageTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        )
    return CompletedJobsResponse(jobs=jobs_out(page.jobs), next_page_token=page.next_page_token)


@router.get(
    "/jobs/has-ongoing",
    response_model=OngoingCheckResponse,
    summary="Whether the caller has an active job",
)
async def has_ongoing(store: Store, provider_id: CurrentProvider) -> OngoingCheckResponse:
    return OngoingCheckResponse(has_ongoing_job=await jobService.has_ongoing_job(store, provider_id))


@router.get(
    "/inbox",
    response_model=InboxResponse,
    summary="Pending inbox entries",
)
async def inbox_entries(inbox: Inbox, provider_id: CurrentProvider) -> InboxResponse:
    items = await inbox.list_pending(provider_id)
    return InboxResponse(items=[InboxItemOut.model_validate(item) for item in items])
