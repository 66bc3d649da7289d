"""
Booking Ingest Routes (internal)
================================

Used by the customer-side ordering service to hand over customer booking
documents. Both document shapes are accepted: ``{"bookings": [...]}`` and
the legacy single booking stored at the document root.

Routes:
  POST   /api/v1/bookings/{customer_phone}  -- Ingest a customer document
  GET    /api/v1/bookings/{customer_phone}  -- Re-assembled document
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, status

from serveit.api.deps import CurrentService, Store
from serveit.api.schemas.job import DataResponse, IngestResponse

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post(
    "/{customer_phone}",
    response_model=IngestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ingest a customer booking document",
    description="New bookings are stored; bookings that already exist are left untouched.",
)
async def ingest_document(
    customer_phone: str,
    store: Store,
    caller: CurrentService,
    document: dict[str, Any] = Body(...),
) -> IngestResponse:
    inserted = await store.ingest_document(customer_phone, document)
    return IngestResponse(customer_phone=customer_phone, inserted_booking_ids=inserted)


@router.get(
    "/{customer_phone}",
    response_model=DataResponse,
    summary="Read a customer booking document",
)
async def read_document(customer_phone: str, store: Store, caller: CurrentService) -> DataResponse:
    document = await store.read_document(customer_phone)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No bookings for customer {customer_phone}",
        )
    return DataResponse(data=document)
