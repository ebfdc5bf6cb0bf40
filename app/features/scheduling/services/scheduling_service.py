"""
Scheduling service facade.

Wires the expansion resolver, constraint store, conflict detector, slot
calculator, resolver and reschedule linker over one set of persistence ports,
and exposes the operations used by the HTTP layer. A module-level instance
backed by the configured backend is provided together with convenience
functions.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

from app.config import settings
from app.features.scheduling.domain.errors import (
    AppointmentNotFound,
    AppointmentVersionConflict,
    InvalidSlotRequest,
    InvalidStatusTransition,
    InvalidTimeWindow,
    UnknownStation,
)
from app.features.scheduling.domain.models import (
    Appointment,
    AppointmentStatus,
    Available,
    Committed,
    Conflict,
    Constraint,
    ConstraintKind,
    ProposedMeeting,
    Rejected,
    Station,
    TimeWindow,
)
from app.features.scheduling.ports import (
    AppointmentStore,
    ConstraintRepository,
    CustomerDirectory,
    NotificationDispatcher,
)
from app.features.scheduling.services.availability_calculator import AvailabilityCalculator, OpeningHours
from app.features.scheduling.services.category_expansion import CategoryExpansionResolver
from app.features.scheduling.services.conflict_detector import ConflictDetector
from app.features.scheduling.services.constraint_store import ConstraintStore
from app.features.scheduling.services.meeting_resolver import ProposedMeetingResolver
from app.features.scheduling.services.reschedule_linker import RescheduleLinker
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class StationDaySchedule:
    station: Station
    day: date
    appointments: list[Appointment]
    constraints: list[Constraint]


class SchedulingService:
    def __init__(
        self,
        *,
        directory: CustomerDirectory,
        appointments: AppointmentStore,
        constraint_repository: ConstraintRepository,
        notifier: NotificationDispatcher,
        tz: ZoneInfo | None = None,
        station_priority: Sequence[str] | None = None,
        hours: OpeningHours | None = None,
        slot_increment_minutes: int | None = None,
    ):
        self.tz = tz or settings.business_tz()
        self.directory = directory
        self.appointments = appointments
        self.constraint_store = ConstraintStore(constraint_repository, self.tz)
        self.detector = ConflictDetector(self.constraint_store, appointments, self.tz)
        self.availability = AvailabilityCalculator(
            self.constraint_store,
            appointments,
            self.tz,
            hours=hours,
            default_increment_minutes=slot_increment_minutes,
        )
        self.expansion = CategoryExpansionResolver(directory)
        self.linker = RescheduleLinker()
        self.notifier = notifier
        self.resolver = ProposedMeetingResolver(
            expansion=self.expansion,
            detector=self.detector,
            constraints=self.constraint_store,
            appointments=appointments,
            directory=directory,
            linker=self.linker,
            notifier=notifier,
            tz=self.tz,
            station_priority=settings.STATION_PRIORITY if station_priority is None else station_priority,
        )

    async def submit_proposed_meeting(
        self,
        meeting: ProposedMeeting,
        *,
        station_priority: Sequence[str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Committed | Rejected:
        return await self.resolver.submit(meeting, station_priority=station_priority, cancel_event=cancel_event)

    async def check_station_availability(
        self, station_id: str, window: TimeWindow, exclude_appointment_id: str | None = None
    ) -> Available | Conflict:
        """Read-only pre-validation for the booking dialog."""
        if not window.is_valid:
            raise InvalidTimeWindow(window.start_at, window.end_at)
        await self._require_station(station_id)
        return await self.detector.check_availability(station_id, window, exclude_appointment_id)

    async def available_slots(
        self,
        station_id: str,
        day: date,
        duration_minutes: int,
        increment_minutes: int | None = None,
    ) -> list[Available]:
        """Bookable windows of `duration_minutes` on one station."""
        station = await self._require_station(station_id)
        return await self.availability.available_slots(station, day, duration_minutes, increment_minutes)

    async def available_times(
        self, day: date, duration_minutes: int, increment_minutes: int | None = None
    ) -> list[Available]:
        """
        Bookable windows across every active station.

        Ordered by start time, then by station display order.
        """
        if duration_minutes <= 0:
            raise InvalidSlotRequest("Slot duration must be positive", detail={"duration": duration_minutes})
        stations = await self.list_stations()
        per_station = await asyncio.gather(
            *(
                self.availability.available_slots(station, day, duration_minutes, increment_minutes)
                for station in stations
            )
        )
        order = {station.id: position for position, station in enumerate(stations)}
        slots = [slot for station_slots in per_station for slot in station_slots]
        return sorted(slots, key=lambda slot: (slot.window.start_at, order[slot.station_id]))

    # Constraints

    async def constraints_for(self, station_id: str, day: date) -> list[Constraint]:
        return await self.constraint_store.constraints_for(station_id, day)

    async def add_constraint(
        self,
        station_id: str,
        start_at: datetime,
        end_at: datetime,
        kind: ConstraintKind = ConstraintKind.FULL_BLOCK,
        note: str | None = None,
    ) -> Constraint:
        return await self.constraint_store.add(station_id, start_at, end_at, kind, note)

    async def add_constraint_for_stations(
        self,
        station_ids: Sequence[str],
        start_at: datetime,
        end_at: datetime,
        kind: ConstraintKind = ConstraintKind.FULL_BLOCK,
        note: str | None = None,
    ) -> list[Constraint]:
        return await self.constraint_store.add_for_stations(station_ids, start_at, end_at, kind, note)

    async def update_constraint(self, constraint_id: str, **changes) -> Constraint:
        return await self.constraint_store.update(constraint_id, **changes)

    async def remove_constraint(self, constraint_id: str) -> None:
        await self.constraint_store.remove(constraint_id)

    # Stations and appointments

    async def list_stations(self, *, active_only: bool = True) -> list[Station]:
        return await self.constraint_store.list_stations(active_only=active_only)

    async def station_day_schedule(self, station_id: str, day: date) -> StationDaySchedule:
        station = await self._require_station(station_id, active_only=False)
        appointments, constraints = await asyncio.gather(
            self.appointments.list_appointments(station_id, day),
            self.constraint_store.constraints_for(station_id, day),
        )
        return StationDaySchedule(station=station, day=day, appointments=appointments, constraints=constraints)

    async def transition_appointment_status(
        self,
        appointment_id: str,
        new_status: AppointmentStatus,
        expected_version: int | None = None,
    ) -> Appointment:
        current = await self.appointments.get_appointment(appointment_id)
        if current is None:
            raise AppointmentNotFound(appointment_id)
        if not current.status.can_transition_to(new_status):
            raise InvalidStatusTransition(appointment_id, current.status.value, new_status.value)

        updated = await self.appointments.transition_status(
            appointment_id, new_status, expected_version if expected_version is not None else current.version
        )
        if updated is None:
            raise AppointmentVersionConflict(appointment_id)

        logger.info(
            "Appointment status changed",
            appointment_id=appointment_id,
            from_status=current.status.value,
            to_status=new_status.value,
        )
        return updated

    async def _require_station(self, station_id: str, *, active_only: bool = True) -> Station:
        station = await self.constraint_store.get_station(station_id)
        if station is None or (active_only and not station.is_active):
            raise UnknownStation(station_id)
        return station


def build_scheduling_service(backend: str | None = None) -> SchedulingService:
    """Service over Postgres + Redis reminders, or fully in memory."""
    backend = backend or settings.SCHEDULING_BACKEND
    tz = settings.business_tz()

    if backend == "memory":
        from app.features.scheduling.repository.memory import (
            InMemoryAppointmentStore,
            InMemoryConstraintRepository,
            InMemoryCustomerDirectory,
        )
        from app.features.scheduling.services.notifications import LoggingReminderDispatcher

        return SchedulingService(
            directory=InMemoryCustomerDirectory(),
            appointments=InMemoryAppointmentStore(tz),
            constraint_repository=InMemoryConstraintRepository(),
            notifier=LoggingReminderDispatcher(),
            tz=tz,
        )

    from app.features.scheduling.repository.postgres import (
        PostgresAppointmentRepository,
        PostgresConstraintRepository,
        PostgresCustomerDirectory,
    )
    from app.features.scheduling.services.notifications import RedisReminderDispatcher

    return SchedulingService(
        directory=PostgresCustomerDirectory,
        appointments=PostgresAppointmentRepository,
        constraint_repository=PostgresConstraintRepository,
        notifier=RedisReminderDispatcher(tz=tz),
        tz=tz,
    )


# Global service instance
scheduling_service = build_scheduling_service()


def get_scheduling_service() -> SchedulingService:
    """FastAPI dependency; tests override it with an in-memory service."""
    return scheduling_service


# Convenience functions for easy imports
async def submit_proposed_meeting(meeting: ProposedMeeting, **kwargs) -> Committed | Rejected:
    return await scheduling_service.submit_proposed_meeting(meeting, **kwargs)


async def check_station_availability(
    station_id: str, window: TimeWindow, exclude_appointment_id: str | None = None
) -> Available | Conflict:
    return await scheduling_service.check_station_availability(station_id, window, exclude_appointment_id)
