"""
SQLAlchemy models for the provider's on-site work log: the job timer, job
notes and the completion checklist.

These rows belong to the assigned provider and sit beside the booking
arena; they never change the booking record itself. Timers and checklists
are keyed by ``(provider_id, booking_id)``; notes are append-only.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class JobTimer(Base):
    __tablename__ = "job_timers"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # [{"startedAt": iso, "endedAt": iso | null, "durationMs": int | null}]
    # An entry with endedAt null is the open pause.
    pauses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    total_duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<JobTimer(provider={self.provider_id}, booking={self.booking_id}, "
            f"running={self.is_running})>"
        )


class JobNote(Base):
    __tablename__ = "job_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)

    note: Mapped[str] = mapped_column(Text, nullable=False)
    # note | update | issue | completion
    note_type: Mapped[str] = mapped_column(String(16), nullable=False, default="note")
    visible_to_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_job_notes_booking_created", "booking_id", "created_at"),
    )


class JobChecklist(Base):
    __tablename__ = "job_completion_checklists"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # [{"id", "label", "completed", "required"}]
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    all_required_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
