"""Timing policy: how far a booking is from its scheduled start."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Callable, Optional, Protocol

import pytz

Clock = Callable[[], datetime]

DEFAULT_CUTOFF_HOURS = 24


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class ScheduledBooking(Protocol):
    booking_date: date
    start_time: time
    timezone: Optional[str]


def _resolve_zone(name: Optional[str]) -> pytz.BaseTzInfo:
    if not name:
        return pytz.UTC
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def scheduled_start(booking: ScheduledBooking) -> datetime:
    """Timezone-aware start of the booking, from its local date, time and IANA zone."""
    zone = _resolve_zone(booking.timezone)
    return zone.localize(datetime.combine(booking.booking_date, booking.start_time))


def hours_until_booking(booking: ScheduledBooking, now: Optional[datetime] = None) -> float:
    """Hours from ``now`` to the scheduled start; negative once the booking has started."""
    current = now or utc_now()
    if current.tzinfo is None:
        current = pytz.UTC.localize(current)
    delta = scheduled_start(booking) - current
    return delta / timedelta(hours=1)


def is_within_cutoff(
    booking: ScheduledBooking,
    now: Optional[datetime] = None,
    cutoff_hours: int = DEFAULT_CUTOFF_HOURS,
) -> bool:
    """True when the booking starts in ``cutoff_hours`` or less (the boundary itself is inside)."""
    return hours_until_booking(booking, now) <= cutoff_hours


def is_within_24_hours(booking: ScheduledBooking, now: Optional[datetime] = None) -> bool:
    return is_within_cutoff(booking, now, DEFAULT_CUTOFF_HOURS)
