"""
Job Normalizer
==============

Pure mapping from loosely-typed raw booking maps into canonical ``Job``
values. Raw bookings arrive in two shapes:

  - array item: a customer document ``{"bookings": [ {...}, {...} ]}``
  - legacy root: a single booking stored at the document root

Both shapes produce identical ``Job`` values for identical field content.
Every optional field receives a default, status strings are canonicalized,
and coordinates are only kept when both latitude and longitude are numeric.

``job_to_raw`` is the inverse used when a ``Job`` must be re-serialized;
``normalize_booking(job_to_raw(job), ...)`` always yields an equal ``Job``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Mapping, Optional

from serveit.models.job import (
    Job,
    JobCoordinates,
    JobStatus,
    PaymentMode,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "Unknown Service"
DEFAULT_USER_NAME = "Customer"


class MalformedRecordError(ValueError):
    """Raised when a raw booking cannot be mapped to a ``Job``."""

    def __init__(self, message: str, booking_id: Any = None) -> None:
        self.booking_id = booking_id
        super().__init__(message)


# ---------------------------------------------------------------------------
# Scalar coercion helpers
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _clean_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def to_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """Coerce a number or numeric string to a finite ``Decimal``.

    Floats go through ``str`` so 99.9 stays 99.9 rather than its binary
    expansion. NaN and infinities are treated as missing.
    """
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, int):
        parsed = Decimal(value)
    elif isinstance(value, float):
        parsed = Decimal(str(value))
    elif isinstance(value, str) and value.strip():
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return default
    else:
        return default
    return parsed if parsed.is_finite() else default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC ``datetime``.

    Accepts ``datetime`` (naive values are taken as UTC), ISO-8601 strings,
    epoch milliseconds, and ``{"seconds": ...}`` / ``{"_seconds": ...}``
    maps written by older clients. Anything else yields None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if _is_number(value):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            return None
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if _is_number(seconds):
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0))
            nanos = nanos if _is_number(nanos) else 0
            return parse_timestamp(float(seconds) * 1000.0 + float(nanos) / 1_000_000.0)
    return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as ISO-8601 in UTC (the stored representation)."""
    if value is None:
        return None
    return parse_timestamp(value).isoformat()  # type: ignore[union-attr]


def resolve_status(raw: Mapping[str, Any]) -> JobStatus:
    """Resolve the canonical status of a raw booking.

    ``status`` wins over ``bookingStatus``; absence of both means pending.
    Values are lower-cased and ``-``/spaces become ``_`` so "In Progress",
    "in-progress" and "IN_PROGRESS" all resolve identically.
    """
    value = _clean_str(raw.get("status")) or _clean_str(raw.get("bookingStatus"))
    if value is None:
        return JobStatus.PENDING
    canonical = value.lower().replace("-", "_").replace(" ", "_")
    try:
        return JobStatus(canonical)
    except ValueError:
        raise MalformedRecordError(
            f"Unknown booking status {value!r}", booking_id=raw.get("bookingId")
        ) from None


def _coordinates(value: Any) -> Optional[JobCoordinates]:
    if not isinstance(value, Mapping):
        return None
    lat = value.get("latitude")
    lng = value.get("longitude")
    if not (_is_number(lat) and _is_number(lng)):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return JobCoordinates(latitude=float(lat), longitude=float(lng))


def _provider_ids(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    seen: dict[str, None] = {}
    for item in value:
        cleaned = _clean_str(item)
        if cleaned is not None:
            seen.setdefault(cleaned, None)
    return tuple(seen)


def _enum_or_none(enum_cls: Any, value: Any) -> Any:
    cleaned = _clean_str(value)
    if cleaned is None:
        return None
    try:
        return enum_cls(cleaned.upper())
    except ValueError:
        return None


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _otp(value: Any) -> Optional[str]:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return _clean_str(value)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_booking(
    raw: Mapping[str, Any],
    customer_key: str,
    *,
    booking_index: Optional[int] = None,
) -> Job:
    """Map one raw booking to a canonical ``Job``.

    Raises:
        MalformedRecordError: ``bookingId`` is absent or blank, or the
            status value is not a lifecycle status.
    """
    if not isinstance(raw, Mapping):
        raise MalformedRecordError(f"Booking entry is not a map: {type(raw).__name__}")

    booking_id = _clean_str(raw.get("bookingId"))
    if booking_id is None:
        raise MalformedRecordError("Booking is missing bookingId", booking_id=raw.get("bookingId"))

    status = resolve_status(raw)
    accepted_by = _clean_str(raw.get("acceptedByProviderId"))
    provider_id = _clean_str(raw.get("providerId")) or accepted_by

    location_name = None
    for key in ("locationName", "city", "locality", "address"):
        location_name = _clean_str(raw.get(key))
        if location_name is not None:
            break

    sub_services = raw.get("subServicesSelected")

    return Job(
        booking_id=booking_id,
        customer_phone_number=_clean_str(raw.get("customerPhoneNumber")) or customer_key,
        service_name=_clean_str(raw.get("serviceName")) or DEFAULT_SERVICE_NAME,
        status=status,
        total_price=to_decimal(raw.get("totalPrice")),  # type: ignore[arg-type]
        user_name=_clean_str(raw.get("userName")) or DEFAULT_USER_NAME,
        notified_provider_ids=_provider_ids(raw.get("notifiedProviderIds")),
        provider_id=provider_id,
        provider_name=_clean_str(raw.get("providerName")),
        provider_mobile_no=_clean_str(raw.get("providerMobileNo")),
        accepted_by_provider_id=accepted_by,
        job_coordinates=_coordinates(raw.get("jobCoordinates")),
        created_at=parse_timestamp(raw.get("createdAt")),
        accepted_at=parse_timestamp(raw.get("acceptedAt")),
        arrived_at=parse_timestamp(raw.get("arrivedAt")),
        service_started_at=parse_timestamp(raw.get("serviceStartedAt")),
        payment_pending_at=parse_timestamp(raw.get("paymentPendingAt")),
        completed_at=parse_timestamp(raw.get("completedAt")),
        sub_services_selected=dict(sub_services) if isinstance(sub_services, Mapping) else {},
        location_name=location_name,
        customer_address=_clean_str(raw.get("customerAddress")),
        notes=_clean_str(raw.get("notes")),
        customer_email=_clean_str(raw.get("customerEmail")),
        estimated_duration=_int_or_none(raw.get("estimatedDuration")),
        payment_mode=_enum_or_none(PaymentMode, raw.get("paymentMode")),
        payment_amount=to_decimal(raw.get("paymentAmount"), default=None),
        payment_status=_enum_or_none(PaymentStatus, raw.get("paymentStatus")),
        completion_otp=_otp(raw.get("completionOTP")),
        otp_generated_at=parse_timestamp(raw.get("otpGeneratedAt")),
        qr_upi_uri=_clean_str(raw.get("qrUpiUri")),
        upi_note=_clean_str(raw.get("upiNote")),
        qr_generated_at=parse_timestamp(raw.get("qrGeneratedAt")),
        booking_index=booking_index,
    )


def try_normalize(raw: Mapping[str, Any], customer_key: str = "") -> Optional[Job]:
    """``normalize_booking`` that reports malformed records as None.

    Used inside store preconditions, where a malformed record simply fails
    the check.
    """
    try:
        return normalize_booking(raw, customer_key)
    except MalformedRecordError:
        return None


def iter_raw_bookings(document: Any) -> Iterator[tuple[Optional[int], Any]]:
    """Yield ``(booking_index, raw_entry)`` for every booking in a customer document.

    Array-shaped documents yield each element with its array index; a legacy
    root booking yields the document itself with index None.
    """
    if not isinstance(document, Mapping):
        return
    bookings = document.get("bookings")
    if isinstance(bookings, list):
        for idx, entry in enumerate(bookings):
            yield idx, entry
    elif "bookingId" in document:
        yield None, document


def extract_jobs_from_document(document: Any, customer_key: str) -> list[Job]:
    """Normalize every booking in a customer document.

    Malformed entries are logged and skipped so one bad booking never hides
    the rest of the document.
    """
    jobs: list[Job] = []
    for idx, entry in iter_raw_bookings(document):
        try:
            jobs.append(normalize_booking(entry, customer_key, booking_index=idx))
        except MalformedRecordError as exc:
            logger.warning(
                "Skipping malformed booking in document %s at index %s: %s",
                customer_key, idx, exc,
            )
    return jobs


# ---------------------------------------------------------------------------
# Re-serialization
# ---------------------------------------------------------------------------

def job_to_raw(job: Job) -> dict[str, Any]:
    """Serialize a ``Job`` back into the stored raw booking shape."""
    raw: dict[str, Any] = {
        "bookingId": job.booking_id,
        "customerPhoneNumber": job.customer_phone_number,
        "serviceName": job.service_name,
        "status": job.status.value,
        "bookingStatus": job.status.value,
        "totalPrice": str(job.total_price),
        "userName": job.user_name,
        "notifiedProviderIds": list(job.notified_provider_ids),
        "subServicesSelected": dict(job.sub_services_selected),
    }

    optional: dict[str, Any] = {
        "providerId": job.provider_id,
        "acceptedByProviderId": job.accepted_by_provider_id,
        "providerName": job.provider_name,
        "providerMobileNo": job.provider_mobile_no,
        "locationName": job.location_name,
        "customerAddress": job.customer_address,
        "notes": job.notes,
        "customerEmail": job.customer_email,
        "estimatedDuration": job.estimated_duration,
        "paymentMode": job.payment_mode.value if job.payment_mode else None,
        "paymentAmount": str(job.payment_amount) if job.payment_amount is not None else None,
        "paymentStatus": job.payment_status.value if job.payment_status else None,
        "completionOTP": job.completion_otp,
        "qrUpiUri": job.qr_upi_uri,
        "upiNote": job.upi_note,
        "createdAt": format_timestamp(job.created_at),
        "acceptedAt": format_timestamp(job.accepted_at),
        "arrivedAt": format_timestamp(job.arrived_at),
        "serviceStartedAt": format_timestamp(job.service_started_at),
        "paymentPendingAt": format_timestamp(job.payment_pending_at),
        "completedAt": format_timestamp(job.completed_at),
        "otpGeneratedAt": format_timestamp(job.otp_generated_at),
        "qrGeneratedAt": format_timestamp(job.qr_generated_at),
    }
    raw.update({key: value for key, value in optional.items() if value is not None})

    if job.job_coordinates is not None:
        raw["jobCoordinates"] = {
            "latitude": job.job_coordinates.latitude,
            "longitude": job.job_coordinates.longitude,
        }
    return raw
