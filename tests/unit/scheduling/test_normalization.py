from datetime import UTC, date, datetime, timedelta

import pytest

from app.features.scheduling.domain.models import TimeWindow
from app.features.scheduling.domain.normalization import (
    business_date,
    business_dates_spanned,
    business_day_bounds,
    ensure_utc,
    format_duration,
    from_business_local,
    normalize_phone,
    parse_duration_to_minutes,
    unique_ordered,
)


def test_naive_timestamps_are_rejected():
    with pytest.raises(ValueError):
        ensure_utc(datetime(2026, 3, 2, 10, 0))


def test_time_window_is_stored_in_utc(at):
    window = TimeWindow(at(2, 10), at(2, 11))

    assert window.start_at.tzinfo is UTC
    assert window.start_at == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def test_wall_clock_input_is_read_in_business_timezone(tz):
    assert from_business_local(datetime(2026, 3, 2, 10, 0), tz) == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def test_business_date_uses_business_timezone(tz):
    # 23:30 UTC is already the next day in Jerusalem
    assert business_date(datetime(2026, 3, 1, 23, 30, tzinfo=UTC), tz) == date(2026, 3, 2)


def test_window_crossing_midnight_spans_two_business_dates(at, tz):
    assert business_dates_spanned(at(2, 22), at(3, 1), tz) == [date(2026, 3, 2), date(2026, 3, 3)]


def test_window_ending_at_midnight_stays_on_one_date(at, tz):
    assert business_dates_spanned(at(2, 22), at(3, 0), tz) == [date(2026, 3, 2)]


def test_day_bounds_follow_daylight_saving_change(tz):
    start, end = business_day_bounds(date(2026, 3, 27), tz)

    assert end - start == timedelta(hours=23)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("050-123-4567", "972501234567"),
        ("+1 (415) 555-0100", "14155550100"),
        ("00972501234567", "972501234567"),
        ("972501234567", "972501234567"),
        ("", None),
        ("n/a", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [("90", 90), ("1:30", 90), ("1:30:00", 90), (45, 45), ("  ", None), ("abc", None), ("1:75", None), (None, None)],
)
def test_parse_duration(raw, expected):
    assert parse_duration_to_minutes(raw) == expected


def test_format_duration():
    assert format_duration(90) == "1:30"
    assert format_duration(5) == "0:05"


def test_unique_ordered_keeps_first_occurrence():
    assert unique_ordered([" a", "b", "a", None, "", "c", "b"]) == ["a", "b", "c"]
