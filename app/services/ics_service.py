"""ICS (RFC 5545) calendar file for a booking."""

from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlparse

from app.models import Booking
from app.utils.timezones import ensure_utc

PRODID = "-//Google Ads Audit//Booking System//EN"
EVENT_SUMMARY = "Google Ads Audit Call"
DEFAULT_UID_DOMAIN = "audit-booking-system.com"


def format_ics_datetime(value: datetime) -> str:
    """YYYYMMDDTHHMMSSZ in UTC."""
    return ensure_utc(value).strftime("%Y%m%dT%H%M%SZ")


def escape_ics_text(value: str) -> str:
    """Escape TEXT values (backslash, semicolon, comma, newline)."""
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def fold_line(line: str, limit: int = 75) -> str:
    """Fold content lines longer than 75 octets with CRLF + space."""
    encoded = line.encode("utf-8")
    if len(encoded) <= limit:
        return line
    parts: List[str] = []
    current = ""
    for char in line:
        size = len(current.encode("utf-8")) + len(char.encode("utf-8"))
        # Continuation lines lose one octet to the leading space
        if size > (limit if not parts else limit - 1):
            parts.append(current)
            current = ""
        current += char
    parts.append(current)
    return "\r\n ".join(parts)


def quote_param(value: str) -> str:
    """Parameter values are DQUOTE-wrapped and may not contain DQUOTE."""
    return '"' + value.replace('"', "").replace("\n", " ") + '"'


def uid_domain(site_url: Optional[str]) -> str:
    host = urlparse(site_url).hostname if site_url else None
    return host or DEFAULT_UID_DOMAIN


def build_ics(
    booking: Booking,
    organizer_email: str,
    organizer_name: str = "Audit Team",
    site_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Single-event VCALENDAR with a 1-hour display alarm."""
    now = now or datetime.now(timezone.utc)

    description = f"{EVENT_SUMMARY}\n\n"
    if booking.meet_url:
        description += f"Join meeting: {booking.meet_url}\n\n"
    description += "We look forward to helping you optimize your Google Ads campaigns!"

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{booking.id}@{uid_domain(site_url)}",
        f"DTSTAMP:{format_ics_datetime(now)}",
        f"DTSTART:{format_ics_datetime(booking.selected_start)}",
        f"DTEND:{format_ics_datetime(booking.selected_end)}",
        f"SUMMARY:{escape_ics_text(EVENT_SUMMARY)}",
        f"DESCRIPTION:{escape_ics_text(description)}",
        f"ORGANIZER;CN={quote_param(organizer_name)}:mailto:{organizer_email}",
        f"ATTENDEE;CN={quote_param(booking.customer_name)};RSVP=TRUE:mailto:{booking.customer_email}",
        "STATUS:CONFIRMED",
        "SEQUENCE:0",
    ]
    if booking.meet_url:
        lines.append(f"LOCATION:{escape_ics_text(booking.meet_url)}")
    lines += [
        "BEGIN:VALARM",
        "TRIGGER:-PT1H",
        "ACTION:DISPLAY",
        "DESCRIPTION:Meeting starts in 1 hour",
        "END:VALARM",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(fold_line(line) for line in lines) + "\r\n"
