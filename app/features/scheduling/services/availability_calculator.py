"""
Availability Calculator - free booking slots for a station on a business day.

Opening hours minus full-block constraints minus booked appointments (each
extended by the station's break) leaves the free windows. Slots start at the
beginning of every free window and advance by the slot increment while the
requested duration still fits, so a slot can start right where an
appointment or a block ends instead of waiting for the next round hour.
"""

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from app.config import settings
from app.features.scheduling.domain.errors import InvalidSlotRequest
from app.features.scheduling.domain.models import Available, Station, TimeWindow
from app.features.scheduling.domain.timeline import StationTimeline
from app.features.scheduling.ports import AppointmentStore
from app.features.scheduling.services.constraint_store import ConstraintStore
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class OpeningHours:
    open_at: time
    close_at: time
    closed_weekdays: frozenset[int] = frozenset()

    @classmethod
    def from_settings(cls) -> "OpeningHours":
        return cls(
            open_at=settings.BUSINESS_OPEN_TIME,
            close_at=settings.BUSINESS_CLOSE_TIME,
            closed_weekdays=frozenset(settings.BUSINESS_CLOSED_WEEKDAYS),
        )

    def window_for(self, day: date, tz: ZoneInfo) -> TimeWindow | None:
        """Opening window of `day` in UTC, or None when the business is closed."""
        if day.weekday() in self.closed_weekdays:
            return None
        window = TimeWindow(
            datetime.combine(day, self.open_at, tzinfo=tz).astimezone(UTC),
            datetime.combine(day, self.close_at, tzinfo=tz).astimezone(UTC),
        )
        return window if window.is_valid else None


def merge_windows(windows: Iterable[TimeWindow]) -> list[TimeWindow]:
    """Sort, drop empty windows and merge overlapping or touching ones."""
    merged: list[TimeWindow] = []
    for window in sorted((w for w in windows if w.is_valid), key=lambda w: w.start_at):
        if merged and window.start_at <= merged[-1].end_at:
            last = merged[-1]
            merged[-1] = TimeWindow(last.start_at, max(last.end_at, window.end_at))
        else:
            merged.append(window)
    return merged


def subtract_windows(source: Iterable[TimeWindow], blocks: Iterable[TimeWindow]) -> list[TimeWindow]:
    """Parts of `source` not covered by any of `blocks`."""
    remaining = merge_windows(source)
    for block in merge_windows(blocks):
        pieces = []
        for window in remaining:
            if not window.overlaps(block):
                pieces.append(window)
                continue
            if block.start_at > window.start_at:
                pieces.append(TimeWindow(window.start_at, block.start_at))
            if block.end_at < window.end_at:
                pieces.append(TimeWindow(block.end_at, window.end_at))
        remaining = pieces
        if not remaining:
            break
    return remaining


def slot_windows(free: Sequence[TimeWindow], duration: timedelta, step: timedelta) -> list[TimeWindow]:
    slots = []
    for window in free:
        start = window.start_at
        while start + duration <= window.end_at:
            slots.append(TimeWindow(start, start + duration))
            start += step
    return slots


class AvailabilityCalculator:
    def __init__(
        self,
        constraints: ConstraintStore,
        appointments: AppointmentStore,
        tz: ZoneInfo,
        hours: OpeningHours | None = None,
        default_increment_minutes: int | None = None,
    ):
        self.constraints = constraints
        self.appointments = appointments
        self.tz = tz
        self.hours = hours or OpeningHours.from_settings()
        self.default_increment_minutes = (
            settings.SLOT_INCREMENT_MINUTES if default_increment_minutes is None else default_increment_minutes
        )

    async def free_windows(self, station: Station, day: date) -> list[TimeWindow]:
        opening = self.hours.window_for(day, self.tz)
        if opening is None:
            return []

        constraints, appointments = await asyncio.gather(
            self.constraints.constraints_for(station.id, day),
            self.appointments.list_appointments(station.id, day),
        )
        blocked = [constraint.window for constraint in constraints if constraint.is_blocking]

        # Look back far enough to see an earlier appointment whose break reaches into the day
        break_after = timedelta(minutes=station.break_minutes)
        timeline = StationTimeline(station.id, appointments)
        search = TimeWindow(opening.start_at - break_after, opening.end_at)
        booked = [
            TimeWindow(appointment.start_at, appointment.end_at + break_after)
            for appointment in timeline.overlapping(search)
        ]

        return subtract_windows([opening], blocked + booked)

    async def available_slots(
        self,
        station: Station,
        day: date,
        duration_minutes: int,
        increment_minutes: int | None = None,
    ) -> list[Available]:
        if duration_minutes <= 0:
            raise InvalidSlotRequest("Slot duration must be positive", detail={"duration": duration_minutes})

        increment = increment_minutes
        if increment is None:
            increment = station.slot_increment_minutes or self.default_increment_minutes
        if increment < 0:
            raise InvalidSlotRequest("Slot increment cannot be negative", detail={"increment": increment})

        duration = timedelta(minutes=duration_minutes)
        # A zero increment packs slots back to back
        step = timedelta(minutes=increment) if increment > 0 else duration

        free = await self.free_windows(station, day)
        slots = [Available(station_id=station.id, window=window) for window in slot_windows(free, duration, step)]
        logger.debug(
            "Computed available slots",
            station_id=station.id,
            day=day.isoformat(),
            duration_minutes=duration_minutes,
            free_windows=len(free),
            slots=len(slots),
        )
        return slots
