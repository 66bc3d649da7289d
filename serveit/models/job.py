"""
Canonical job read model.

A ``Job`` is the normalized, type-safe projection of a raw booking record.
It is never persisted: it is always re-derived from the stored record by
``serveit.services.jobNormalizer`` so the booking record stays the single
writable source of truth.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    PAYMENT_PENDING = "payment_pending"
    COMPLETED = "completed"


class PaymentMode(str, enum.Enum):
    CASH = "CASH"
    UPI_QR = "UPI_QR"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    DONE = "DONE"


@dataclass(frozen=True)
class JobCoordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Job:
    booking_id: str
    customer_phone_number: str
    service_name: str
    status: JobStatus
    total_price: Decimal
    user_name: str
    notified_provider_ids: tuple[str, ...] = ()
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_mobile_no: Optional[str] = None
    accepted_by_provider_id: Optional[str] = None
    job_coordinates: Optional[JobCoordinates] = None

    # Stage timestamps (append-only on the stored record)
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    service_started_at: Optional[datetime] = None
    payment_pending_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Excluded from hashing; dicts are unhashable
    sub_services_selected: dict[str, Any] = field(default_factory=dict, hash=False)
    location_name: Optional[str] = None
    customer_address: Optional[str] = None
    notes: Optional[str] = None
    customer_email: Optional[str] = None
    estimated_duration: Optional[int] = None

    # Payment
    payment_mode: Optional[PaymentMode] = None
    payment_amount: Optional[Decimal] = None
    payment_status: Optional[PaymentStatus] = None
    completion_otp: Optional[str] = None
    otp_generated_at: Optional[datetime] = None
    qr_upi_uri: Optional[str] = None
    upi_note: Optional[str] = None
    qr_generated_at: Optional[datetime] = None

    # Position inside the customer's bookings[] array. Storage detail only,
    # so it does not take part in equality.
    booking_index: Optional[int] = field(default=None, compare=False)

    def is_available(self, provider_id: str) -> bool:
        """True when the job is still open and ``provider_id`` was notified."""
        return (
            self.status == JobStatus.PENDING
            and bool(provider_id)
            and not self.provider_id
            and provider_id in self.notified_provider_ids
        )

    def is_ongoing(self, provider_id: str) -> bool:
        from serveit.services.jobStateManager import ACTIVE_STATUSES

        return self.provider_id == provider_id and self.status in ACTIVE_STATUSES
