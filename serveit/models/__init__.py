"""
ServeIt models
==============

Central import point for the ORM tables and the canonical job read model.
Import ``Base`` from here for Alembic auto-generation and for the
``create_all`` convenience in tests.

Usage::

    from serveit.models import Base, BookingRecord, Job, JobStatus
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin

# -- Booking arena, inbox projection, suppressions --
from .booking import BookingRecord, InboxEntry, JobSuppression

# -- Provider work log --
from .work_log import JobChecklist, JobNote, JobTimer

# -- Canonical read model --
from .job import Job, JobCoordinates, JobStatus, PaymentMode, PaymentStatus

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Tables
    "BookingRecord",
    "InboxEntry",
    "JobSuppression",
    "JobTimer",
    "JobNote",
    "JobChecklist",
    # Read model
    "Job",
    "JobCoordinates",
    "JobStatus",
    "PaymentMode",
    "PaymentStatus",
]
