"""
Value normalization helpers shared by the scheduler and the API layer.

All scheduling state is held as absolute UTC timestamps. The business
timezone only appears here, when turning timestamps into business dates or
rendering them for display.
"""

import re
from collections.abc import Iterable, Iterator
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from app.config import settings

_NON_DIGITS = re.compile(r"\D")
_DURATION = re.compile(r"^(?P<hours>\d+):(?P<minutes>[0-5]?\d)(?::(?P<seconds>[0-5]?\d))?$")


def ensure_utc(value: datetime) -> datetime:
    """Return an aware datetime in UTC. Naive values are rejected."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"Timestamp {value.isoformat()} has no timezone")
    return value.astimezone(UTC)


def from_business_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Interpret a naive wall-clock time in the business timezone; aware values pass through."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(UTC)


def to_business_local(value: datetime, tz: ZoneInfo) -> datetime:
    return ensure_utc(value).astimezone(tz)


def business_date(value: datetime, tz: ZoneInfo) -> date:
    return to_business_local(value, tz).date()


def business_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC [start, end) of a business day. Not always 24h around DST changes."""
    start = datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz).astimezone(UTC)
    return start, end


def business_dates_spanned(start_at: datetime, end_at: datetime, tz: ZoneInfo) -> list[date]:
    """Every business date the half-open window [start_at, end_at) touches."""
    first = business_date(start_at, tz)
    if end_at <= start_at:
        return [first]
    last = business_date(end_at - timedelta(microseconds=1), tz)
    return list(iter_days(first, last))


def normalize_phone(raw: str | None, default_country_code: str | None = None) -> str | None:
    """
    Normalize a phone number for storage and lookups.

    Digits only. Numbers written with an explicit "+" keep their country code;
    ten-digit local numbers with a trunk "0" get the default country code
    (DEFAULT_PHONE_COUNTRY_CODE unless given).
    """
    if not raw:
        return None
    country_code = default_country_code or settings.DEFAULT_PHONE_COUNTRY_CODE

    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None

    stripped = raw.strip()
    if stripped.startswith("+"):
        return digits
    if digits.startswith("00"):
        return digits[2:] or None
    if len(digits) == 10 and digits.startswith("0"):
        return f"{country_code}{digits[1:]}"
    return digits


def sanitize_text(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def unique_ordered(values: Iterable[str | None]) -> list[str]:
    """Stable dedup: first occurrence wins, blanks are dropped."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        cleaned = sanitize_text(value)
        if cleaned is None or cleaned in seen:
            continue
        seen.add(cleaned)
        result.append(cleaned)
    return result


def parse_duration_to_minutes(value: str | int | None) -> int | None:
    """
    Parse durations as entered by staff: "90", "1:30" or "1:30:00".

    Returns None for blank or malformed input.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value if value >= 0 else None

    text = value.strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)

    match = _DURATION.match(text)
    if not match:
        return None
    hours = int(match.group("hours"))
    minutes = int(match.group("minutes"))
    return hours * 60 + minutes


def format_duration(minutes: int) -> str:
    hours, remainder = divmod(max(minutes, 0), 60)
    return f"{hours}:{remainder:02d}"


def iter_days(start: date, end: date) -> Iterator[date]:
    """Inclusive date range."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
