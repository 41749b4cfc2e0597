"""Tests for the calendar (.ics) file.

WHAT: RFC 5545 escaping/folding, event content, download endpoint
WHY: Calendar clients reject malformed files silently

REFERENCES:
  - app/services/ics_service.py
  - app/routers/ics.py
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models import Booking, BookingStatusEnum
from app.services.ics_service import build_ics, escape_ics_text, fold_line, quote_param, uid_domain

START = datetime(2025, 12, 23, 9, 0, tzinfo=timezone.utc)
NOW = datetime(2025, 12, 22, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def booking(test_db_session, test_lead):
    row = Booking(
        id=uuid.uuid4(),
        lead_id=test_lead.id,
        selected_start=START,
        selected_end=START + timedelta(minutes=15),
        booking_timezone="Asia/Dubai",
        status=BookingStatusEnum.confirmed,
        customer_name='Sara "S" Ahmed',
        customer_email=test_lead.email,
        meet_url="https://meet.google.com/abc-defg-hij",
    )
    test_db_session.add(row)
    test_db_session.commit()
    return row


def test_escape_text():
    assert escape_ics_text("a,b;c\\d\ne") == r"a\,b\;c\\d\ne"


def test_fold_long_lines():
    line = "DESCRIPTION:" + "x" * 200
    folded = fold_line(line)

    parts = folded.split("\r\n")
    assert all(len(part.encode("utf-8")) <= 75 for part in parts)
    assert all(part.startswith(" ") for part in parts[1:])
    assert "".join(part[1:] if i else part for i, part in enumerate(parts)) == line


def test_fold_keeps_short_lines():
    assert fold_line("SUMMARY:Call") == "SUMMARY:Call"


def test_quote_param_strips_quotes():
    assert quote_param('Sara "S" Ahmed') == '"Sara S Ahmed"'


def test_uid_domain():
    assert uid_domain("https://audits.example.com/book") == "audits.example.com"
    assert uid_domain(None) == "audit-booking-system.com"


def test_build_ics(booking):
    content = build_ics(
        booking, "hello@example.com", "Audit Team", site_url="https://audits.example.com", now=NOW
    )

    assert content.endswith("\r\n")
    unfolded = content.replace("\r\n ", "")
    assert "BEGIN:VCALENDAR\r\nVERSION:2.0" in unfolded
    assert f"UID:{booking.id}@audits.example.com" in unfolded
    assert "DTSTAMP:20251222T080000Z" in unfolded
    assert "DTSTART:20251223T090000Z" in unfolded
    assert "DTEND:20251223T091500Z" in unfolded
    assert 'ATTENDEE;CN="Sara S Ahmed";RSVP=TRUE:mailto:sara@example.com' in unfolded
    assert "LOCATION:https://meet.google.com/abc-defg-hij" in unfolded
    assert "TRIGGER:-PT1H" in unfolded


class TestICSEndpoint:

    def test_download(self, client, booking):
        response = client.get("/api/ics", params={"booking_id": str(booking.id)})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/calendar")
        assert f'filename="audit-call-{booking.id}.ics"' in response.headers["content-disposition"]
        assert "DTSTART:20251223T090000Z" in response.text

    def test_missing_id(self, client):
        assert client.get("/api/ics").status_code == 400

    @pytest.mark.parametrize("booking_id", ["nope", str(uuid.uuid4())])
    def test_unknown_booking(self, client, booking_id):
        assert client.get("/api/ics", params={"booking_id": booking_id}).status_code == 404
