"""
SQLAlchemy models for the booking arena, the provider job inbox projection,
and per-provider job suppressions.

``booking_records`` holds one row per booking keyed by ``booking_id``. The
raw booking map lives in ``data``; ``status``, ``provider_id`` and
``completed_at`` are denormalized copies written in the same statement so
feeds and history can filter without scanning JSON. ``version`` is the
compare-and-swap token bumped on every write.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class BookingRecord(TimestampMixin, Base):
    __tablename__ = "booking_records"

    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Secondary index: customer document key -> bookings
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # Index in the customer's bookings[] array; NULL for a legacy root booking
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # CAS token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Denormalized query columns
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    provider_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # History sort key, only set once status is completed
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Raw booking map (authoritative for all loose fields)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_booking_records_provider_status", "provider_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<BookingRecord(id={self.booking_id}, customer={self.customer_phone}, "
            f"status={self.status}, version={self.version})>"
        )


class InboxEntry(Base):
    """Lightweight per-provider pointer to a booking. Never authoritative."""

    __tablename__ = "provider_job_inbox"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    booking_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    service_name: Mapped[str] = mapped_column(String(200), nullable=False)
    price_snapshot: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    distance_km: Mapped[Optional[float]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_provider_job_inbox_booking", "booking_id"),
    )

    @property
    def booking_doc_path(self) -> str:
        return f"Bookings/{self.customer_phone}"

    def __repr__(self) -> str:
        return (
            f"<InboxEntry(provider={self.provider_id}, booking={self.booking_id}, "
            f"status={self.status})>"
        )


class JobSuppression(Base):
    """A provider's rejection of a pending booking, hidden from their feed until expiry."""

    __tablename__ = "job_suppressions"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_job_suppressions_booking", "booking_id"),
    )
