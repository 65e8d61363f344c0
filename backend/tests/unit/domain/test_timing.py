from datetime import date, datetime, time, timezone
from types import SimpleNamespace

from app.domain.timing import (
    hours_until_booking,
    is_within_24_hours,
    is_within_cutoff,
    scheduled_start,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _booking(booking_date: date, start_time: time, tz: str | None = "UTC") -> SimpleNamespace:
    return SimpleNamespace(booking_date=booking_date, start_time=start_time, timezone=tz)


def test_hours_until_booking_in_utc() -> None:
    booking = _booking(date(2026, 3, 3), time(18, 0))

    assert hours_until_booking(booking, NOW) == 30


def test_scheduled_start_uses_booking_timezone() -> None:
    booking = _booking(date(2026, 3, 3), time(9, 0), "America/New_York")

    start = scheduled_start(booking)

    assert start.astimezone(timezone.utc) == datetime(2026, 3, 3, 14, 0, tzinfo=timezone.utc)
    assert hours_until_booking(booking, NOW) == 26


def test_unknown_timezone_falls_back_to_utc() -> None:
    booking = _booking(date(2026, 3, 3), time(12, 0), "Not/AZone")

    assert hours_until_booking(booking, NOW) == 24


def test_exactly_twenty_four_hours_is_inside_the_window() -> None:
    booking = _booking(date(2026, 3, 3), time(12, 0))

    assert is_within_24_hours(booking, NOW) is True
    assert is_within_cutoff(booking, NOW, cutoff_hours=23) is False


def test_one_second_past_twenty_four_hours_is_outside_the_window() -> None:
    booking = _booking(date(2026, 3, 3), time(12, 0, 1))

    assert hours_until_booking(booking, NOW) > 24
    assert is_within_24_hours(booking, NOW) is False


def test_scheduled_start_uses_standard_offset_not_lmt() -> None:
    booking = _booking(date(2026, 7, 1), time(9, 0), "Europe/Berlin")

    start = scheduled_start(booking)

    assert start.utcoffset().total_seconds() == 2 * 3600
    assert start.astimezone(timezone.utc) == datetime(2026, 7, 1, 7, 0, tzinfo=timezone.utc)


def test_started_booking_has_negative_hours() -> None:
    booking = _booking(date(2026, 3, 2), time(10, 0))

    assert hours_until_booking(booking, NOW) == -2
    assert is_within_24_hours(booking, NOW) is True


def test_naive_now_is_treated_as_utc() -> None:
    booking = _booking(date(2026, 3, 3), time(12, 0))

    assert hours_until_booking(booking, datetime(2026, 3, 2, 0, 0)) == 36
