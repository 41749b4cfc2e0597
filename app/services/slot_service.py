"""Bookable slot generation.

WHAT:
    Computes the next available 15-minute consultation slots in the business
    timezone, skipping slots inside the minimum lead time and slots that
    overlap a confirmed booking.

WHY:
    The slot list is recomputed on every request and never cached; the
    booking creator re-checks availability at write time, so a stale list
    can at worst produce a 409.

HOW:
    1. earliest = now + MIN_LEAD_TIME (UTC)
    2. For each local calendar day starting at earliest's local date, walk
       WORK_START_HOUR..WORK_END_HOUR in MEETING+BUFFER steps
    3. Each local wall time is attached to the zone and converted to UTC
       (zoneinfo handles DST transitions)
    4. Keep slots starting at/after earliest that overlap no booking
       (booking_start < slot_end and booking_end > slot_start)
    5. Stop at MAX_SLOTS slots or MAX_DAYS days
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.models import Booking, BookingStatusEnum
from app.utils.timezones import ensure_utc, format_clock, get_zone, isoformat_utc

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Dubai"
MIN_LEAD_TIME = timedelta(hours=2)
WORK_START_HOUR = 10
WORK_END_HOUR = 18
MEETING_MINUTES = 15
BUFFER_MINUTES = 15
MAX_SLOTS = 8
MAX_DAYS = 7

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

Interval = Tuple[datetime, datetime]


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    label: str
    local_time: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "start": isoformat_utc(self.start),
            "end": isoformat_utc(self.end),
            "label": self.label,
            "localTime": self.local_time,
        }


def overlaps(start: datetime, end: datetime, booked: Iterable[Interval]) -> bool:
    """True if [start, end) intersects any booked [start, end)."""
    for booked_start, booked_end in booked:
        if ensure_utc(booked_start) < end and ensure_utc(booked_end) > start:
            return True
    return False


def format_slot_label(local_start: datetime, local_today: date) -> str:
    """"Today, 1:00 PM" / "Tomorrow, 10:30 AM" / "Wed, 4:00 PM"."""
    day_diff = (local_start.date() - local_today).days
    clock = format_clock(local_start)
    if day_diff == 0:
        return f"Today, {clock}"
    if day_diff == 1:
        return f"Tomorrow, {clock}"
    return f"{_WEEKDAYS[local_start.weekday()]}, {clock}"


def generate_slots(
    now_utc: datetime,
    bookings: Sequence[Interval],
    tz_name: str = DEFAULT_TIMEZONE,
) -> List[Slot]:
    """Pure slot computation.

    Args:
        now_utc: Current instant
        bookings: (start, end) UTC intervals of confirmed bookings
        tz_name: IANA business timezone

    Raises:
        ValueError: Unknown timezone
    """
    zone = get_zone(tz_name)
    now_utc = ensure_utc(now_utc)
    earliest = now_utc + MIN_LEAD_TIME
    local_today = now_utc.astimezone(zone).date()
    first_day = earliest.astimezone(zone).date()

    step = timedelta(minutes=MEETING_MINUTES + BUFFER_MINUTES)
    meeting = timedelta(minutes=MEETING_MINUTES)
    slots: List[Slot] = []

    for offset in range(MAX_DAYS):
        day = first_day + timedelta(days=offset)
        wall = datetime.combine(day, time(WORK_START_HOUR, 0))
        day_end = datetime.combine(day, time(WORK_END_HOUR, 0))

        while wall + meeting <= day_end:
            start = wall.replace(tzinfo=zone).astimezone(timezone.utc)
            end = start + meeting
            wall += step

            if start < earliest or overlaps(start, end, bookings):
                continue

            local_start = start.astimezone(zone)
            slots.append(Slot(
                start=start,
                end=end,
                label=format_slot_label(local_start, local_today),
                local_time=format_clock(local_start),
            ))
            if len(slots) >= MAX_SLOTS:
                return slots

    return slots


def get_available_slots(
    db: Session,
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> List[Slot]:
    """Load confirmed bookings in the lookahead window and generate slots."""
    now = ensure_utc(now or datetime.now(timezone.utc))
    tz_name = tz_name or DEFAULT_TIMEZONE
    window_end = now + timedelta(days=MAX_DAYS + 1)

    rows = (
        db.query(Booking.selected_start, Booking.selected_end)
        .filter(
            Booking.status == BookingStatusEnum.confirmed,
            Booking.selected_end > now,
            Booking.selected_start < window_end,
        )
        .all()
    )
    booked = [(ensure_utc(start), ensure_utc(end)) for start, end in rows]

    slots = generate_slots(now, booked, tz_name)
    logger.info(
        f"[SLOTS] Generated {len(slots)} slot(s)",
        extra={"timezone": tz_name, "booked": len(booked)},
    )
    return slots
