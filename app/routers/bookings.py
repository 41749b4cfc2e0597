"""Booking endpoints.

WHAT:
    - POST /api/bookings: reserve a slot for a lead
    - GET /api/bookings/{booking_id}: booking details for the confirmation page

WHY:
    The booking row and its reminder job are committed before any side
    effect runs. Calendar, email and conversion tracking are best effort and
    only affect the status fields in the response.

ERRORS:
    400 invalid request, 403 phone not verified, 404 lead not found,
    409 slot taken, 500 unexpected

REFERENCES:
    - app/services/booking_service.py
    - app/services/slot_service.py
"""

import logging
from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import Settings, get_settings
from app.schemas import BookingCreate, BookingCreateResponse
from app.services.attribution_service import extract_attribution
from app.services.booking_service import (
    BookingConflictError,
    BookingRequest,
    BookingValidationError,
    LeadNotFoundError,
    PhoneVerificationRequiredError,
    create_booking,
    get_booking,
    run_booking_side_effects,
)
from app.telemetry import capture_exception
from app.utils.timezones import isoformat_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


@router.post("", response_model=BookingCreateResponse)
async def book_slot(
    payload: BookingCreate,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> BookingCreateResponse:
    """Create a booking, then run calendar/email/conversion side effects.

    A replayed idempotency_key returns the original booking without
    repeating side effects.
    """
    booking_request = BookingRequest(
        lead_id=payload.lead_id,
        booking_start_utc=payload.booking_start_utc,
        booking_end_utc=payload.booking_end_utc,
        booking_timezone=payload.booking_timezone,
        idempotency_key=payload.idempotency_key,
    )

    try:
        outcome = create_booking(db, booking_request, settings=settings)
    except BookingValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PhoneVerificationRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except LeadNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except BookingConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except SQLAlchemyError as e:
        db.rollback()
        capture_exception(e, extra={"endpoint": request.url.path})
        logger.error(f"[BOOKINGS] Failed to create booking: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create booking")

    booking = outcome.booking
    email_status = None
    if outcome.created:
        attribution = extract_attribution(request)
        if payload.attribution:
            attribution = attribution.merged_with(payload.attribution)
        effects = await run_booking_side_effects(db, booking, attribution=attribution, settings=settings)
        email_status = effects.email_status
        db.refresh(booking)

    return BookingCreateResponse(
        booking_id=booking.id,
        meet_url=booking.meet_url,
        calendar_status=booking.calendar_status.value if booking.calendar_status else None,
        local_start_display=booking.local_start_display,
        email_status=email_status,
    )


def _serialize_booking(booking) -> Dict[str, Any]:
    return {
        "id": str(booking.id),
        "lead_id": str(booking.lead_id),
        "selected_start": isoformat_utc(booking.selected_start),
        "selected_end": isoformat_utc(booking.selected_end),
        "booking_timezone": booking.booking_timezone,
        "local_start_display": booking.local_start_display,
        "status": booking.status.value,
        "customer_name": booking.customer_name,
        "meet_url": booking.meet_url,
        "calendar_status": booking.calendar_status.value if booking.calendar_status else None,
    }


@router.get("/{booking_id}")
async def booking_details(booking_id: str, db: Session = Depends(get_db)):
    try:
        booking_uuid = UUID(booking_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    booking = get_booking(db, booking_uuid)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return {"ok": True, "booking": _serialize_booking(booking)}
