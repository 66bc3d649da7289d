"""
Pydantic v2 schemas for the partner Job API
===========================================

These schemas define the public API contract for the provider feeds,
acceptance, status advances and the payment handshake. All output schemas
use camelCase aliases to match the partner app's expectations. The
completion code is never exposed to the provider.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from serveit.models.job import Job, JobStatus, PaymentMode, PaymentStatus
from serveit.services.jobStateManager import next_status


# ---------------------------------------------------------------------------
# Shared camelCase config
# ---------------------------------------------------------------------------

def _to_camel(snake: str) -> str:
    parts = snake.split("_")
    return parts[0] + "".join(w.capitalize() for w in parts[1:])


class CamelModel(BaseModel):
    """Base model that serialises field names to camelCase."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=_to_camel,
    )


class DataResponse(BaseModel):
    """Generic envelope for single-object responses."""
    data: Any
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Job output
# ---------------------------------------------------------------------------

class CoordinatesOut(CamelModel):
    latitude: float
    longitude: float


class JobOut(CamelModel):
    """Canonical job as shown in the partner app."""

    booking_id: str
    customer_phone_number: str
    service_name: str
    status: JobStatus
    next_status: Optional[JobStatus] = None
    total_price: Decimal
    user_name: str
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_mobile_no: Optional[str] = None
    job_coordinates: Optional[CoordinatesOut] = None

    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    service_started_at: Optional[datetime] = None
    payment_pending_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    sub_services_selected: dict[str, Any] = Field(default_factory=dict)
    location_name: Optional[str] = None
    customer_address: Optional[str] = None
    notes: Optional[str] = None
    customer_email: Optional[str] = None
    estimated_duration: Optional[int] = None

    payment_mode: Optional[PaymentMode] = None
    payment_amount: Optional[Decimal] = None
    payment_status: Optional[PaymentStatus] = None
    otp_generated_at: Optional[datetime] = None
    qr_upi_uri: Optional[str] = None
    upi_note: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        out = cls.model_validate(job)
        out.next_status = next_status(job.status)
        return out


def jobs_out(jobs: Any) -> list[JobOut]:
    return [JobOut.from_job(job) for job in jobs]


class JobFeedResponse(CamelModel):
    jobs: list[JobOut]
    count: int


class CompletedJobsResponse(CamelModel):
    jobs: list[JobOut]
    next_page_token: Optional[str] = None


class OngoingCheckResponse(CamelModel):
    has_ongoing_job: bool


# ---------------------------------------------------------------------------
# Acceptance & rejection
# ---------------------------------------------------------------------------

class AcceptJobRequest(CamelModel):
    provider_name: Optional[str] = Field(default=None, max_length=200)
    provider_mobile_no: Optional[str] = Field(default=None, max_length=32)


class AcceptJobResponse(CamelModel):
    outcome: str
    booking_id: str
    duplicate: bool = False
    message: str
    job: Optional[JobOut] = None


class RejectJobResponse(CamelModel):
    booking_id: str
    suppressed_until: datetime


# ---------------------------------------------------------------------------
# Status & handshake
# ---------------------------------------------------------------------------

class StatusUpdateRequest(CamelModel):
    status: JobStatus
    otp: Optional[str] = Field(default=None, min_length=4, max_length=8)


class OutcomeResponse(CamelModel):
    """Result of a status change or payment handshake step."""

    outcome: str
    message: str
    job: Optional[JobOut] = None


class PaymentRequest(CamelModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, description="Defaults to the job price")


# ---------------------------------------------------------------------------
# Inbox, dispatch & ingest
# ---------------------------------------------------------------------------

class InboxItemOut(CamelModel):
    booking_id: str
    customer_phone: str
    booking_index: int
    booking_doc_path: str
    service_name: str
    price_snapshot: Decimal
    status: str
    distance_km: Optional[float] = None
    created_at: datetime
    expires_at: datetime


class InboxResponse(CamelModel):
    items: list[InboxItemOut]


class DispatchTarget(CamelModel):
    provider_id: str = Field(min_length=1, max_length=64)
    distance_km: Optional[float] = Field(default=None, ge=0)


class DispatchRequest(CamelModel):
    providers: list[DispatchTarget] = Field(min_length=1)


class DispatchResponse(CamelModel):
    outcome: str
    notified_provider_ids: list[str]


class IngestResponse(CamelModel):
    customer_phone: str
    inserted_booking_ids: list[str]
