"""
Conflict Detector - is a station free for a window?

Full-block constraints are checked before appointments, so a window that
hits both reports the constraint. Windows crossing midnight are checked
against every business date they touch.
"""

import asyncio
from collections.abc import Sequence
from itertools import chain
from zoneinfo import ZoneInfo

from app.features.scheduling.domain.errors import NoStationAvailable
from app.features.scheduling.domain.models import Available, Conflict, ConflictReason, TimeWindow
from app.features.scheduling.domain.normalization import business_dates_spanned, unique_ordered
from app.features.scheduling.domain.timeline import StationTimeline
from app.features.scheduling.ports import AppointmentStore
from app.features.scheduling.services.constraint_store import ConstraintStore
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ConflictDetector:
    def __init__(self, constraints: ConstraintStore, appointments: AppointmentStore, tz: ZoneInfo):
        self.constraints = constraints
        self.appointments = appointments
        self.tz = tz

    async def check_availability(
        self,
        station_id: str,
        window: TimeWindow,
        exclude_appointment_id: str | None = None,
    ) -> Available | Conflict:
        days = business_dates_spanned(window.start_at, window.end_at, self.tz)

        constraint_days = await asyncio.gather(
            *(self.constraints.constraints_for(station_id, day) for day in days)
        )
        blocking = {
            constraint.id: constraint
            for constraint in chain.from_iterable(constraint_days)
            if constraint.is_blocking
        }
        for constraint in sorted(blocking.values(), key=lambda item: (item.start_at, item.id)):
            if constraint.window.overlaps(window):
                return Conflict(
                    station_id=station_id,
                    window=window,
                    reason=ConflictReason.CONSTRAINT,
                    conflicting_entity_id=constraint.id,
                    conflicting_window=constraint.window,
                )

        appointment_days = await asyncio.gather(
            *(self.appointments.list_appointments(station_id, day) for day in days)
        )
        timeline = StationTimeline(station_id, chain.from_iterable(appointment_days))
        clash = timeline.first_overlap(
            window, exclude_ids=[exclude_appointment_id] if exclude_appointment_id else []
        )
        if clash is not None:
            return Conflict(
                station_id=station_id,
                window=window,
                reason=ConflictReason.APPOINTMENT,
                conflicting_entity_id=clash.id,
                conflicting_window=clash.window,
            )

        return Available(station_id=station_id, window=window)

    async def find_available_station(
        self,
        candidates: Sequence[str],
        window: TimeWindow,
        exclude_appointment_id: str | None = None,
    ) -> Available:
        """First candidate that is free, in the given order. Raises NoStationAvailable."""
        conflicts: list[Conflict] = []
        for station_id in unique_ordered(candidates):
            result = await self.check_availability(station_id, window, exclude_appointment_id)
            if isinstance(result, Available):
                return result
            conflicts.append(result)

        logger.info(
            "No candidate station available",
            candidates=len(conflicts),
            start_at=window.start_at.isoformat(),
            end_at=window.end_at.isoformat(),
        )
        raise NoStationAvailable(conflicts)
