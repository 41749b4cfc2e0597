"""Booking Service.

WHAT:
    Creates confirmed bookings for a lead and runs the post-commit side
    effects (calendar event, confirmation email, attribution, conversions).

WHY:
    The slot list a browser shows can be stale. Availability is re-checked
    here at write time, and a unique constraint on selected_start backs the
    check up when two requests race for the same slot.

HOW:
    create_booking():
        1. Validate fields, UTC instants, IANA zone, start not in the past
        2. Idempotency key already used -> return that booking unchanged
        3. Lead must exist (and be phone-verified when enforced)
        4. Overlap check against confirmed bookings -> 409
        5. Insert booking + ReminderJob(start - 1h) in one transaction;
           IntegrityError -> 409 (or idempotent return if the key won)
    run_booking_side_effects() (after commit, each step best effort except
    the confirmation email, whose failure is reported):
        calendar -> confirmation email (EmailSend dedupe) -> attribution ->
        booking_created conversions

NOTE:
    The database backstop only rejects an identical selected_start.
    Overlapping intervals with different starts are kept out by the fixed
    30 minute slot grid and the application check in step 4.

REFERENCES:
    - app/services/slot_service.py (slot grid)
    - app/services/reminder_service.py (consumes the ReminderJob)
    - app/routers/bookings.py
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.deps import Settings, get_settings
from app.models import (
    Booking,
    BookingStatusEnum,
    CalendarStatusEnum,
    ConversionEventTypeEnum,
    EmailSend,
    EmailTypeEnum,
    Lead,
    ReminderJob,
    ReminderStatusEnum,
)
from app.services.attribution_service import (
    CLICK_ID_PARAMS,
    AttributionData,
    get_latest_click_attribution,
    save_attribution_event,
)
from app.services.calendar_service import CalendarService
from app.services.conversion_service import enqueue_attributed_conversions
from app.services.email_service import EmailService, build_booking_email_details
from app.telemetry import capture_exception, capture_message
from app.utils.timezones import (
    ensure_utc,
    format_local_display,
    is_valid_timezone,
    parse_utc_iso,
)

logger = logging.getLogger(__name__)

REMINDER_LEAD_TIME = timedelta(hours=1)
SLOT_UNAVAILABLE_MESSAGE = "This time slot is no longer available. Please select another."
CALENDAR_EVENT_SUMMARY = "Google Ads Audit Call"


# =============================================================================
# ERRORS
# =============================================================================

class BookingValidationError(Exception):
    """Malformed or out-of-range booking request (400)."""


class BookingConflictError(Exception):
    """Requested slot overlaps a confirmed booking (409)."""

    def __init__(self, message: str = SLOT_UNAVAILABLE_MESSAGE):
        super().__init__(message)


class LeadNotFoundError(Exception):
    """Lead referenced by the booking does not exist (404)."""


class PhoneVerificationRequiredError(Exception):
    """Phone verification is enforced and the lead is not verified (403)."""


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class BookingRequest:
    lead_id: Optional[str]
    booking_start_utc: Optional[str]
    booking_end_utc: Optional[str]
    booking_timezone: Optional[str]
    idempotency_key: Optional[str] = None


@dataclass
class BookingOutcome:
    booking: Booking
    created: bool


@dataclass
class SideEffectsResult:
    calendar_status: CalendarStatusEnum
    email_status: str  # sent | duplicate | skipped | failed
    conversions_enqueued: int = 0


# =============================================================================
# VALIDATION
# =============================================================================

def parse_booking_request(request: BookingRequest, now: datetime) -> Tuple[UUID, datetime, datetime, str]:
    """Validate a booking request.

    Raises:
        BookingValidationError: Any field missing or invalid
    """
    if not (request.lead_id and request.booking_start_utc and request.booking_end_utc and request.booking_timezone):
        raise BookingValidationError(
            "Missing required fields: lead_id, booking_start_utc, booking_end_utc, booking_timezone"
        )

    try:
        lead_id = UUID(str(request.lead_id))
    except ValueError:
        raise BookingValidationError("Invalid lead_id")

    start = parse_utc_iso(request.booking_start_utc)
    end = parse_utc_iso(request.booking_end_utc)
    if start is None or end is None:
        raise BookingValidationError("Invalid date format. Expected UTC ISO 8601")
    if end <= start:
        raise BookingValidationError("Booking end must be after start")
    if not is_valid_timezone(request.booking_timezone):
        raise BookingValidationError(f"Invalid timezone: {request.booking_timezone}")
    if start < now:
        raise BookingValidationError("Cannot book a time in the past")

    return lead_id, start, end, request.booking_timezone


# =============================================================================
# QUERIES
# =============================================================================

def find_by_idempotency_key(db: Session, key: Optional[str]) -> Optional[Booking]:
    if not key:
        return None
    return db.query(Booking).filter(Booking.idempotency_key == key).first()


def has_overlap(db: Session, start: datetime, end: datetime) -> bool:
    """Any confirmed booking with booking_start < end and booking_end > start."""
    return (
        db.query(Booking.id)
        .filter(
            Booking.status == BookingStatusEnum.confirmed,
            Booking.selected_start < end,
            Booking.selected_end > start,
        )
        .first()
        is not None
    )


def get_booking(db: Session, booking_id: UUID) -> Optional[Booking]:
    return db.get(Booking, booking_id)


# =============================================================================
# CREATE
# =============================================================================

def create_booking(
    db: Session,
    request: BookingRequest,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> BookingOutcome:
    """Validate and persist a booking with its reminder job.

    Raises:
        BookingValidationError, LeadNotFoundError,
        PhoneVerificationRequiredError, BookingConflictError
    """
    settings = settings or get_settings()
    now = ensure_utc(now or datetime.now(timezone.utc))

    lead_id, start, end, tz_name = parse_booking_request(request, now)

    existing = find_by_idempotency_key(db, request.idempotency_key)
    if existing:
        logger.info(f"[BOOKINGS] Idempotent replay of booking {existing.id}")
        return BookingOutcome(booking=existing, created=False)

    lead = db.get(Lead, lead_id)
    if lead is None:
        raise LeadNotFoundError("Lead not found")

    if settings.ENFORCE_PHONE_VERIFICATION and lead.phone_verified_at is None:
        raise PhoneVerificationRequiredError("Phone verification required before booking")

    if has_overlap(db, start, end):
        logger.info("[BOOKINGS] Slot conflict on re-check", extra={"start": start.isoformat()})
        raise BookingConflictError()

    booking = Booking(
        id=uuid.uuid4(),
        lead_id=lead.id,
        selected_start=start,
        selected_end=end,
        booking_timezone=tz_name,
        local_start_display=format_local_display(start, tz_name),
        status=BookingStatusEnum.confirmed,
        customer_name=lead.full_name,
        customer_email=lead.email,
        idempotency_key=request.idempotency_key or None,
        created_at=now,
    )
    reminder = ReminderJob(
        booking_id=booking.id,
        scheduled_for=start - REMINDER_LEAD_TIME,
        status=ReminderStatusEnum.pending,
        attempts=0,
        created_at=now,
    )

    try:
        db.add(booking)
        db.flush()
        db.add(reminder)
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_by_idempotency_key(db, request.idempotency_key)
        if winner:
            logger.info(f"[BOOKINGS] Idempotency key won by concurrent request: {winner.id}")
            return BookingOutcome(booking=winner, created=False)
        logger.info("[BOOKINGS] Slot taken by concurrent booking", extra={"start": start.isoformat()})
        raise BookingConflictError()

    db.refresh(booking)
    logger.info(
        f"[BOOKINGS] Created booking {booking.id}",
        extra={"lead_id": str(lead.id), "local_start": booking.local_start_display},
    )
    return BookingOutcome(booking=booking, created=True)


# =============================================================================
# SIDE EFFECTS
# =============================================================================

async def _create_calendar_event(db: Session, booking: Booking, calendar: CalendarService) -> CalendarStatusEnum:
    try:
        event = await calendar.create_event(
            summary=CALENDAR_EVENT_SUMMARY,
            description=f"Google Ads audit consultation with {booking.customer_name}",
            start=ensure_utc(booking.selected_start),
            end=ensure_utc(booking.selected_end),
            attendee_email=booking.customer_email,
            request_id=f"meet-{booking.id}",
        )
    except Exception as e:
        capture_exception(e, extra={"booking_id": str(booking.id)})
        logger.error(f"[CALENDAR] Event creation failed for booking {booking.id}: {e}")
        status = CalendarStatusEnum.failed
    else:
        if event is None:
            status = CalendarStatusEnum.skipped
        else:
            booking.meet_url = event.meet_url
            booking.calendar_event_id = event.event_id
            status = CalendarStatusEnum.created

    booking.calendar_status = status
    db.commit()
    return status


def confirmation_idempotency_key(booking_id: UUID) -> str:
    return f"booking-confirmation-{booking_id}"


def record_email_send(
    db: Session,
    key: str,
    email_type: EmailTypeEnum,
    booking: Booking,
    provider_message_id: Optional[str],
) -> None:
    """Insert the EmailSend dedupe row; a concurrent duplicate is ignored."""
    try:
        with db.begin_nested():
            db.add(EmailSend(
                idempotency_key=key,
                email_type=email_type,
                recipient_email=booking.customer_email,
                booking_id=booking.id,
                provider_message_id=provider_message_id,
                created_at=datetime.now(timezone.utc),
            ))
            db.flush()
    except IntegrityError:
        logger.info(f"[EMAIL] EmailSend {key} already recorded")


async def _send_confirmation(db: Session, booking: Booking, email: EmailService, base_url: str) -> str:
    key = confirmation_idempotency_key(booking.id)
    if db.query(EmailSend.id).filter(EmailSend.idempotency_key == key).first():
        logger.info(f"[EMAIL] Confirmation already sent for booking {booking.id}")
        return "duplicate"

    result = await email.send_confirmation_email(build_booking_email_details(booking, base_url))
    if result.skipped:
        return "skipped"
    if not result.success:
        capture_message(
            f"Confirmation email failed: {result.error}",
            level="error",
            extra={"booking_id": str(booking.id)},
        )
        return "failed"

    record_email_send(db, key, EmailTypeEnum.confirmation, booking, result.email_id)
    booking.confirmation_sent_at = datetime.now(timezone.utc)
    db.commit()
    return "sent"


def effective_attribution(
    db: Session,
    attribution: Optional[AttributionData],
    lead_id: UUID,
) -> Optional[AttributionData]:
    """Request attribution, with click ids filled from the lead's stored attribution.

    The booking page is usually visited without the ad click parameters the
    lead form saw.
    """
    stored = get_latest_click_attribution(db, lead_id)
    if stored is None:
        return attribution
    stored_params = {name: getattr(stored, name) for name in CLICK_ID_PARAMS if getattr(stored, name)}
    if attribution is None:
        return AttributionData(session_id=stored.session_id, landing_path=stored.landing_path).merged_with(stored_params)
    # Organic booking visit: the ad landing page is the one the click went to
    if not (attribution.has_google_click_id or attribution.has_meta_click_id) and stored.landing_path:
        stored_params["landing_path"] = stored.landing_path
    return attribution.merged_with(stored_params)


async def run_booking_side_effects(
    db: Session,
    booking: Booking,
    attribution: Optional[AttributionData] = None,
    settings: Optional[Settings] = None,
    calendar: Optional[CalendarService] = None,
    email: Optional[EmailService] = None,
) -> SideEffectsResult:
    """Post-commit effects of a new booking. Never raises."""
    settings = settings or get_settings()
    calendar = calendar or CalendarService.from_settings(settings)
    email = email or EmailService.from_settings(settings)

    calendar_status = await _create_calendar_event(db, booking, calendar)

    try:
        email_status = await _send_confirmation(db, booking, email, settings.SITE_URL)
    except Exception as e:
        db.rollback()
        capture_exception(e, extra={"booking_id": str(booking.id)})
        logger.exception(f"[BOOKINGS] Confirmation email step failed for {booking.id}: {e}")
        email_status = "failed"

    enqueued = 0
    try:
        tracked = effective_attribution(db, attribution, booking.lead_id)
        if tracked is not None:
            save_attribution_event(db, tracked, lead_id=booking.lead_id, booking_id=booking.id)
        conversions = enqueue_attributed_conversions(
            db,
            tracked,
            ConversionEventTypeEnum.booking_created,
            lead_id=booking.lead_id,
            booking_id=booking.id,
        )
        db.commit()
        enqueued = conversions.enqueued
    except Exception as e:
        db.rollback()
        capture_exception(e, extra={"booking_id": str(booking.id)})
        logger.error(f"[BOOKINGS] Attribution/conversion tracking failed for {booking.id}: {e}")

    logger.info(
        f"[BOOKINGS] Side effects done for {booking.id}",
        extra={"calendar_status": calendar_status.value, "email_status": email_status, "conversions": enqueued},
    )
    return SideEffectsResult(calendar_status=calendar_status, email_status=email_status, conversions_enqueued=enqueued)
