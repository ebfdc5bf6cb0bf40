"""
Sorted per-station index of booked windows.

Used by the conflict detector for pre-validation, by the slot calculator and
by the booking transactions for the commit-time recheck, so all of them
apply the same overlap rule.
"""

from bisect import bisect_left, insort
from collections.abc import Iterable, Iterator

from app.features.scheduling.domain.models import Appointment, TimeWindow


class StationTimeline:
    """Active appointments of one station ordered by start time."""

    __slots__ = ("station_id", "_starts", "_entries", "_max_duration")

    def __init__(self, station_id: str, appointments: Iterable[Appointment] = ()):
        self.station_id = station_id
        self._starts: list = []
        self._entries: list[Appointment] = []
        self._max_duration = None
        for appointment in appointments:
            self.add(appointment)

    def add(self, appointment: Appointment) -> None:
        if appointment.station_id != self.station_id or not appointment.is_active:
            return
        key = (appointment.start_at, appointment.id)
        index = bisect_left(self._starts, key)
        if index < len(self._starts) and self._starts[index] == key:
            return
        insort(self._starts, key)
        self._entries.insert(index, appointment)
        duration = appointment.end_at - appointment.start_at
        if self._max_duration is None or duration > self._max_duration:
            self._max_duration = duration

    def first_overlap(
        self,
        window: TimeWindow,
        *,
        exclude_ids: Iterable[str] = (),
    ) -> Appointment | None:
        """Earliest active appointment intersecting `window`, or None."""
        return next(self._scan(window, set(exclude_ids)), None)

    def overlapping(self, window: TimeWindow) -> list[Appointment]:
        """Every active appointment intersecting `window`, by start time."""
        return list(self._scan(window, set()))

    def _scan(self, window: TimeWindow, excluded: set[str]) -> Iterator[Appointment]:
        # Only entries starting within one max-duration before the window can reach into it
        if not self._entries:
            return
        lower = window.start_at - self._max_duration
        index = bisect_left(self._starts, (lower, ""))
        for appointment in self._entries[index:]:
            if appointment.start_at >= window.end_at:
                break
            if appointment.id in excluded:
                continue
            if appointment.end_at > window.start_at:
                yield appointment
