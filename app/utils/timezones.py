"""UTC/IANA timezone helpers.

WHAT:
    Parsing of client-supplied UTC instants and formatting of instants in a
    business timezone.

WHY:
    Bookings store UTC instants as the only source of truth. Every string a
    customer sees is derived from (instant, IANA zone) by these functions,
    so a display computed at booking time and one computed later always agree.

NOTE:
    Formatting avoids platform-specific strftime flags (%-d, %-I).
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime.

    SQLite drops tzinfo on read, so naive values coming back from the
    database are UTC by convention.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_utc_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 instant ("2025-12-23T09:00:00.000Z").

    Returns None when the value is missing or unparseable. Naive inputs are
    treated as UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def isoformat_utc(value: datetime) -> str:
    """Format as "2025-12-23T09:00:00.000Z" (the shape browsers produce)."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def get_zone(tz_name: str) -> ZoneInfo:
    """Resolve an IANA zone name, raising ValueError when unknown."""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz_name}") from exc


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    if not tz_name:
        return False
    try:
        get_zone(tz_name)
    except ValueError:
        return False
    return True


def to_local(instant: datetime, tz_name: str) -> datetime:
    return ensure_utc(instant).astimezone(get_zone(tz_name))


def format_clock(local: datetime) -> str:
    """12-hour clock without leading zero: "1:00 PM"."""
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def format_local_time(instant: datetime, tz_name: str) -> str:
    """"1:15 PM" in the given zone."""
    return format_clock(to_local(instant, tz_name))


def format_local_display(instant: datetime, tz_name: str) -> str:
    """"Tuesday, December 23, 2025 at 1:00 PM" in the given zone."""
    local = to_local(instant, tz_name)
    return f"{local.strftime('%A, %B')} {local.day}, {local.year} at {format_clock(local)}"
