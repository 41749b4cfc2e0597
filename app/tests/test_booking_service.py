"""Tests for booking creation and its side effects.

WHAT: Validation, idempotent replay, slot conflicts (check and race),
      phone verification gate, display string, side-effect isolation
WHY: Bookings are the primary operation; every side effect around them is
     best effort and must not undo or duplicate a confirmed booking

REFERENCES:
  - app/services/booking_service.py
  - app/routers/bookings.py
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models import (
    AttributionEvent,
    Booking,
    CalendarStatusEnum,
    ConversionEvent,
    ConversionEventTypeEnum,
    ConversionProviderEnum,
    ConversionStatusEnum,
    EmailSend,
    ReminderJob,
    ReminderStatusEnum,
)
from app.services import booking_service
from app.services.attribution_service import AttributionData, generate_session_id
from app.services.booking_service import (
    BookingConflictError,
    BookingRequest,
    BookingValidationError,
    LeadNotFoundError,
    PhoneVerificationRequiredError,
    create_booking,
    run_booking_side_effects,
)
from app.services.calendar_service import CalendarEvent
from app.services.conversion_adapters import AdapterResult
from app.services.conversion_worker import process_conversion_events
from app.services.email_service import EmailResult
from app.utils.timezones import ensure_utc, isoformat_utc

UTC = timezone.utc
NOW = datetime(2025, 12, 22, 4, 0, tzinfo=UTC)
START = datetime(2025, 12, 23, 9, 0, tzinfo=UTC)  # 1:00 PM in Dubai


def _request(lead_id, start=START, minutes=15, tz="Asia/Dubai", key=None) -> BookingRequest:
    return BookingRequest(
        lead_id=str(lead_id),
        booking_start_utc=isoformat_utc(start),
        booking_end_utc=isoformat_utc(start + timedelta(minutes=minutes)),
        booking_timezone=tz,
        idempotency_key=key,
    )


class FakeCalendar:
    def __init__(self, event=None, error=None):
        self.event = event
        self.error = error
        self.calls = 0

    async def create_event(self, **kwargs):
        self.calls += 1
        if self.error:
            raise self.error
        return self.event


class RecordingAdapter:
    def __init__(self):
        self.payloads = []

    async def send(self, payload):
        self.payloads.append(payload)
        return AdapterResult.ok(response={"ok": True})


class FakeEmail:
    def __init__(self, result=None):
        self.result = result or EmailResult(success=True, email_id="re_123")
        self.sent = []

    async def send_confirmation_email(self, details):
        self.sent.append(details)
        return self.result


# ============================================================================
# Creation
# ============================================================================

class TestCreateBooking:

    def test_creates_booking_and_reminder(self, test_db_session, test_lead, settings):
        outcome = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW)

        booking = outcome.booking
        assert outcome.created
        assert ensure_utc(booking.selected_start) == START
        assert booking.local_start_display == "Tuesday, December 23, 2025 at 1:00 PM"
        assert booking.customer_email == test_lead.email

        job = test_db_session.query(ReminderJob).filter_by(booking_id=booking.id).one()
        assert ensure_utc(job.scheduled_for) == START - timedelta(hours=1)
        assert job.status == ReminderStatusEnum.pending

    def test_display_uses_booking_timezone(self, test_db_session, test_lead, settings):
        outcome = create_booking(
            test_db_session, _request(test_lead.id, tz="America/New_York"), settings=settings, now=NOW
        )
        assert outcome.booking.local_start_display == "Tuesday, December 23, 2025 at 4:00 AM"

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"lead_id": None}, "Missing required fields"),
            ({"lead_id": "not-a-uuid"}, "Invalid lead_id"),
            ({"booking_start_utc": "tomorrow"}, "Invalid date format"),
            ({"booking_timezone": "Mars/Olympus"}, "Invalid timezone"),
        ],
    )
    def test_validation_errors(self, test_db_session, test_lead, settings, overrides, message):
        request = _request(test_lead.id)
        for name, value in overrides.items():
            setattr(request, name, value)

        with pytest.raises(BookingValidationError, match=message):
            create_booking(test_db_session, request, settings=settings, now=NOW)

    def test_rejects_past_start(self, test_db_session, test_lead, settings):
        with pytest.raises(BookingValidationError, match="past"):
            create_booking(test_db_session, _request(test_lead.id, start=NOW - timedelta(hours=1)), settings=settings, now=NOW)

    def test_rejects_end_before_start(self, test_db_session, test_lead, settings):
        with pytest.raises(BookingValidationError):
            create_booking(test_db_session, _request(test_lead.id, minutes=-15), settings=settings, now=NOW)

    def test_unknown_lead(self, test_db_session, settings):
        with pytest.raises(LeadNotFoundError):
            create_booking(test_db_session, _request(uuid.uuid4()), settings=settings, now=NOW)

    def test_phone_verification_enforced(self, test_db_session, test_lead, settings):
        settings.ENFORCE_PHONE_VERIFICATION = True
        with pytest.raises(PhoneVerificationRequiredError):
            create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW)

        test_lead.phone_verified_at = NOW
        test_db_session.commit()
        assert create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).created

    def test_idempotent_replay(self, test_db_session, test_lead, settings):
        first = create_booking(test_db_session, _request(test_lead.id, key="k-1"), settings=settings, now=NOW)
        second = create_booking(test_db_session, _request(test_lead.id, key="k-1"), settings=settings, now=NOW)

        assert first.created and not second.created
        assert second.booking.id == first.booking.id
        assert test_db_session.query(Booking).count() == 1
        assert test_db_session.query(ReminderJob).count() == 1

    def test_overlap_conflict(self, test_db_session, make_lead, settings):
        create_booking(test_db_session, _request(make_lead().id), settings=settings, now=NOW)
        other = make_lead(email="other@example.com")

        with pytest.raises(BookingConflictError):
            create_booking(
                test_db_session, _request(other.id, start=START + timedelta(minutes=5)), settings=settings, now=NOW
            )

    def test_concurrent_insert_hits_unique_start(self, test_db_session, make_lead, settings, monkeypatch):
        create_booking(test_db_session, _request(make_lead().id), settings=settings, now=NOW)
        # Simulate a request whose overlap check ran before the first commit
        monkeypatch.setattr(booking_service, "has_overlap", lambda db, start, end: False)
        other = make_lead(email="other@example.com")

        with pytest.raises(BookingConflictError):
            create_booking(test_db_session, _request(other.id), settings=settings, now=NOW)
        assert test_db_session.query(Booking).count() == 1


# ============================================================================
# Side effects
# ============================================================================

class TestSideEffects:

    @pytest.mark.asyncio
    async def test_all_effects(self, test_db_session, test_lead, settings):
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        calendar = FakeCalendar(CalendarEvent(event_id="evt", meet_url="https://meet.google.com/abc-defg-hij"))
        email = FakeEmail()
        attribution = AttributionData(session_id=generate_session_id(), gclid="Cj0KCQ")

        result = await run_booking_side_effects(
            test_db_session, booking, attribution=attribution, settings=settings, calendar=calendar, email=email
        )

        test_db_session.refresh(booking)
        assert result.calendar_status == CalendarStatusEnum.created
        assert result.email_status == "sent"
        assert result.conversions_enqueued == 1
        assert booking.meet_url == "https://meet.google.com/abc-defg-hij"
        assert booking.confirmation_sent_at is not None
        assert email.sent[0].date_time == "Tuesday, December 23, 2025 at 1:00 PM"
        assert email.sent[0].meeting_link == booking.meet_url
        assert test_db_session.query(EmailSend).count() == 1
        assert test_db_session.query(AttributionEvent).filter_by(booking_id=booking.id).count() == 1
        event = test_db_session.query(ConversionEvent).one()
        assert event.event_type == ConversionEventTypeEnum.booking_created
        assert event.booking_id == booking.id

    @pytest.mark.asyncio
    async def test_calendar_failure_does_not_block(self, test_db_session, test_lead, settings):
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking

        result = await run_booking_side_effects(
            test_db_session, booking, settings=settings,
            calendar=FakeCalendar(error=RuntimeError("calendar down")), email=FakeEmail(),
        )

        assert result.calendar_status == CalendarStatusEnum.failed
        assert result.email_status == "sent"

    @pytest.mark.asyncio
    async def test_unconfigured_providers_skip(self, test_db_session, test_lead, settings):
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking

        result = await run_booking_side_effects(test_db_session, booking, settings=settings)

        assert result.calendar_status == CalendarStatusEnum.skipped
        assert result.email_status == "skipped"
        assert result.conversions_enqueued == 0

    @pytest.mark.asyncio
    async def test_confirmation_not_sent_twice(self, test_db_session, test_lead, settings):
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        email = FakeEmail()

        await run_booking_side_effects(test_db_session, booking, settings=settings, calendar=FakeCalendar(), email=email)
        again = await run_booking_side_effects(
            test_db_session, booking, settings=settings, calendar=FakeCalendar(), email=email
        )

        assert again.email_status == "duplicate"
        assert len(email.sent) == 1

    @pytest.mark.asyncio
    async def test_email_failure_reported(self, test_db_session, test_lead, settings):
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        email = FakeEmail(EmailResult(success=False, error="Resend 500", retryable=True))

        result = await run_booking_side_effects(
            test_db_session, booking, settings=settings, calendar=FakeCalendar(), email=email
        )

        assert result.email_status == "failed"
        assert test_db_session.query(EmailSend).count() == 0

    @pytest.mark.asyncio
    async def test_conversion_uses_lead_click_ids(self, test_db_session, test_lead, settings):
        test_db_session.add(AttributionEvent(
            session_id=generate_session_id(), landing_path="/audit", fbclid="IwAR1", lead_id=test_lead.id,
        ))
        test_db_session.commit()
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        bare = AttributionData(session_id=generate_session_id(), landing_path="/book")

        result = await run_booking_side_effects(
            test_db_session, booking, attribution=bare, settings=settings, calendar=FakeCalendar(), email=FakeEmail()
        )

        assert result.conversions_enqueued == 1
        event = test_db_session.query(ConversionEvent).one()
        assert event.provider.value == "meta_capi"

    @pytest.mark.asyncio
    async def test_booking_attribution_carries_lead_click(self, test_db_session, test_lead, settings):
        test_db_session.add(AttributionEvent(
            session_id=generate_session_id(), landing_path="/audit", gclid="Cj0KCQ-lead", lead_id=test_lead.id,
        ))
        test_db_session.commit()
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        organic = AttributionData(session_id=generate_session_id(), landing_path="/api/bookings")

        await run_booking_side_effects(
            test_db_session, booking, attribution=organic, settings=settings, calendar=FakeCalendar(), email=FakeEmail()
        )

        row = test_db_session.query(AttributionEvent).filter_by(booking_id=booking.id).one()
        assert row.gclid == "Cj0KCQ-lead"
        assert row.landing_path == "/audit"

    @pytest.mark.asyncio
    async def test_booking_conversion_delivered_with_lead_click(self, test_db_session, test_lead, settings):
        test_db_session.add(AttributionEvent(
            session_id=generate_session_id(), landing_path="/audit", gclid="Cj0KCQ-lead", lead_id=test_lead.id,
        ))
        test_db_session.commit()
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        organic = AttributionData(session_id=generate_session_id(), landing_path="/api/bookings")
        await run_booking_side_effects(
            test_db_session, booking, attribution=organic, settings=settings, calendar=FakeCalendar(), email=FakeEmail()
        )
        google = RecordingAdapter()

        result = await process_conversion_events(test_db_session, {ConversionProviderEnum.google_ads: google})

        assert result.success == 1
        assert google.payloads[0].gclid == "Cj0KCQ-lead"
        assert google.payloads[0].event_type == "booking_created"
        event = test_db_session.query(ConversionEvent).one()
        test_db_session.refresh(event)
        assert event.status == ConversionStatusEnum.sent

    @pytest.mark.asyncio
    async def test_delivery_falls_back_to_lead_click_for_bare_booking_row(self, test_db_session, test_lead, settings):
        booking = create_booking(test_db_session, _request(test_lead.id), settings=settings, now=NOW).booking
        test_db_session.add(AttributionEvent(
            session_id=generate_session_id(), landing_path="/audit", fbclid="IwAR-lead", lead_id=test_lead.id,
            created_at=NOW,
        ))
        test_db_session.add(AttributionEvent(
            session_id=generate_session_id(), landing_path="/api/bookings", lead_id=test_lead.id,
            booking_id=booking.id, created_at=NOW + timedelta(minutes=1),
        ))
        test_db_session.add(ConversionEvent(
            event_type=ConversionEventTypeEnum.booking_created,
            provider=ConversionProviderEnum.meta_capi,
            lead_id=test_lead.id,
            booking_id=booking.id,
            dedupe_key=f"booking-{booking.id}-meta",
            status=ConversionStatusEnum.pending,
            attempts=0,
            currency="USD",
            created_at=NOW,
        ))
        test_db_session.commit()
        meta = RecordingAdapter()

        await process_conversion_events(test_db_session, {ConversionProviderEnum.meta_capi: meta})

        assert meta.payloads[0].fbclid == "IwAR-lead"
        assert meta.payloads[0].landing_path == "/audit"


# ============================================================================
# Endpoint
# ============================================================================

def _future_start(days=3, hour_utc=9) -> datetime:
    day = datetime.now(UTC).date() + timedelta(days=days)
    return datetime(day.year, day.month, day.day, hour_utc, 0, tzinfo=UTC)


def _body(lead_id, start, key=None):
    return {
        "lead_id": str(lead_id),
        "booking_start_utc": isoformat_utc(start),
        "booking_end_utc": isoformat_utc(start + timedelta(minutes=15)),
        "booking_timezone": "Asia/Dubai",
        "idempotency_key": key,
    }


class TestBookingEndpoint:

    def test_create_booking(self, client, test_lead):
        start = _future_start()
        response = client.post("/api/bookings", json=_body(test_lead.id, start))

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["calendar_status"] == "skipped"
        assert data["email_status"] == "skipped"
        assert data["local_start_display"].endswith("at 1:00 PM")

        details = client.get(f"/api/bookings/{data['booking_id']}")
        assert details.status_code == 200
        assert details.json()["booking"]["selected_start"] == isoformat_utc(start)

    def test_replay_returns_same_booking(self, client, test_lead):
        body = _body(test_lead.id, _future_start(), key="replay-1")
        first = client.post("/api/bookings", json=body).json()
        second = client.post("/api/bookings", json=body).json()

        assert second["booking_id"] == first["booking_id"]
        assert second["email_status"] is None

    def test_conflict(self, client, make_lead):
        start = _future_start()
        assert client.post("/api/bookings", json=_body(make_lead().id, start)).status_code == 200

        response = client.post("/api/bookings", json=_body(make_lead(email="x@example.com").id, start))
        assert response.status_code == 409
        assert response.json() == {"ok": False, "error": booking_service.SLOT_UNAVAILABLE_MESSAGE}

    def test_missing_fields(self, client):
        response = client.post("/api/bookings", json={})
        assert response.status_code == 400
        assert response.json()["ok"] is False

    def test_unknown_lead(self, client):
        response = client.post("/api/bookings", json=_body(uuid.uuid4(), _future_start()))
        assert response.status_code == 404

    def test_phone_verification_required(self, client, test_lead, settings):
        settings.ENFORCE_PHONE_VERIFICATION = True
        response = client.post("/api/bookings", json=_body(test_lead.id, _future_start()))
        assert response.status_code == 403

    def test_unknown_booking(self, client):
        assert client.get("/api/bookings/not-a-uuid").status_code == 404
