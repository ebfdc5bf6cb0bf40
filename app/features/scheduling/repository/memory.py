"""
In-memory implementations of the scheduling ports.

Used by the test-suite and by local runs with SCHEDULING_BACKEND=memory.
Booking transactions serialize on one asyncio.Lock per (station, business
date), acquired in sorted order, buffer their writes and apply them in a
single synchronous step on a clean exit.
"""

import asyncio
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

from app.features.scheduling.domain.errors import ConcurrentBookingConflict, OriginalAlreadyResolved
from app.features.scheduling.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    Constraint,
    Station,
    TimeWindow,
)
from app.features.scheduling.domain.normalization import business_day_bounds, business_dates_spanned
from app.features.scheduling.domain.timeline import StationTimeline
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class InMemoryCustomerDirectory:
    def __init__(
        self,
        customers: Iterable[str] = (),
        categories: dict[str, Sequence[str]] | None = None,
    ):
        self.customers: set[str] = set(customers)
        self.categories: dict[str, list[str]] = {key: list(value) for key, value in (categories or {}).items()}
        for members in self.categories.values():
            self.customers.update(members)

    async def get_category_members(self, category_id: str) -> list[str] | None:
        members = self.categories.get(category_id)
        return list(members) if members is not None else None

    async def customer_exists(self, customer_id: str) -> bool:
        return customer_id in self.customers

    async def missing_customers(self, customer_ids: Sequence[str]) -> list[str]:
        return [customer_id for customer_id in customer_ids if customer_id not in self.customers]

    def remove_customer(self, customer_id: str) -> None:
        self.customers.discard(customer_id)
        for members in self.categories.values():
            if customer_id in members:
                members.remove(customer_id)


class _LockRegistry:
    """One lock per key, kept only while someone holds or waits for it."""

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._users: Counter[tuple] = Counter()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, keys: Iterable[tuple]) -> AsyncIterator[None]:
        registered: list[tuple] = []
        acquired: list[asyncio.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._users[key] += 1
                registered.append(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in registered:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class _MemoryBookingTransaction:
    def __init__(self, store: "InMemoryAppointmentStore", station_id: str):
        self._store = store
        self.station_id = station_id
        self.pending_inserts: list[Appointment] = []
        # appointment id -> version observed when the cancel was requested
        self.pending_cancels: dict[str, int] = {}

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        return await self._store.get_appointment(appointment_id)

    async def list_active(self, window: TimeWindow) -> list[Appointment]:
        return [
            appointment
            for appointment in self._store.appointments.values()
            if appointment.station_id == self.station_id
            and appointment.is_active
            and appointment.window.overlaps(window)
        ]

    async def insert(
        self, drafts: Sequence[AppointmentDraft], *, exclude_appointment_id: str | None = None
    ) -> list[Appointment]:
        timeline = StationTimeline(self.station_id, self._store.appointments.values())
        excluded = [exclude_appointment_id] if exclude_appointment_id else []
        for draft in drafts:
            clash = timeline.first_overlap(draft.window, exclude_ids=excluded)
            if clash is not None:
                raise ConcurrentBookingConflict(draft.station_id, clash.id)

        created = []
        now = datetime.now(UTC)
        for draft in drafts:
            appointment = Appointment(
                id=str(uuid.uuid4()),
                customer_id=draft.customer_id,
                station_id=draft.station_id,
                service_type=draft.service_type,
                start_at=draft.start_at,
                end_at=draft.end_at,
                superseded_appointment_id=draft.superseded_appointment_id,
                reschedule_original_start_at=draft.reschedule_original_start_at,
                reschedule_original_end_at=draft.reschedule_original_end_at,
                title=draft.title,
                customer_notes=draft.customer_notes,
                internal_notes=draft.internal_notes,
                meeting_id=draft.meeting_id,
                created_at=now,
            )
            created.append(appointment)
        self.pending_inserts.extend(created)
        return [replace(appointment) for appointment in created]

    async def cancel_if_version(self, appointment_id: str, expected_version: int) -> Appointment | None:
        current = self._store.appointments.get(appointment_id)
        if not _is_cancellable(current, expected_version):
            return None
        self.pending_cancels[appointment_id] = expected_version
        return replace(current, status=AppointmentStatus.CANCELLED, version=current.version + 1)

    def apply(self) -> None:
        """Validate buffered cancels against current state, then apply everything at once."""
        appointments = self._store.appointments
        for appointment_id, version in self.pending_cancels.items():
            current = appointments.get(appointment_id)
            if not _is_cancellable(current, version):
                raise OriginalAlreadyResolved(appointment_id)

        for appointment_id in self.pending_cancels:
            current = appointments[appointment_id]
            current.status = AppointmentStatus.CANCELLED
            current.version += 1
        for appointment in self.pending_inserts:
            appointments[appointment.id] = appointment


class InMemoryAppointmentStore:
    def __init__(self, tz: ZoneInfo, appointments: Iterable[Appointment] = ()):
        self.tz = tz
        self.appointments: dict[str, Appointment] = {}
        self._locks = _LockRegistry()
        for appointment in appointments:
            self.add(appointment)

    def add(self, appointment: Appointment) -> Appointment:
        """Seed an appointment directly, bypassing the booking path."""
        self.appointments[appointment.id] = appointment
        return appointment

    async def list_appointments(
        self, station_id: str, day: date, *, exclude_cancelled: bool = True
    ) -> list[Appointment]:
        day_window = TimeWindow(*business_day_bounds(day, self.tz))
        matches = [
            replace(appointment)
            for appointment in self.appointments.values()
            if appointment.station_id == station_id
            and appointment.window.overlaps(day_window)
            and (appointment.is_active or not exclude_cancelled)
        ]
        return sorted(matches, key=lambda appointment: (appointment.start_at, appointment.id))

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        appointment = self.appointments.get(appointment_id)
        return replace(appointment) if appointment else None

    @asynccontextmanager
    async def booking_transaction(
        self, station_id: str, days: Sequence[date]
    ) -> AsyncIterator[_MemoryBookingTransaction]:
        async with self._locks.hold((station_id, day) for day in days):
            tx = _MemoryBookingTransaction(self, station_id)
            yield tx
            tx.apply()
            logger.debug(
                "In-memory booking committed",
                station_id=station_id,
                inserted=len(tx.pending_inserts),
                cancelled=len(tx.pending_cancels),
            )

    async def commit_appointments(self, drafts: Sequence[AppointmentDraft]) -> list[Appointment]:
        if not drafts:
            return []
        station_id = drafts[0].station_id
        days = sorted({day for draft in drafts for day in business_dates_spanned(draft.start_at, draft.end_at, self.tz)})
        async with self.booking_transaction(station_id, days) as tx:
            return await tx.insert(drafts)

    async def transition_status(
        self, appointment_id: str, new_status: AppointmentStatus, expected_version: int | None = None
    ) -> Appointment | None:
        current = self.appointments.get(appointment_id)
        if current is None:
            return None
        if expected_version is not None and current.version != expected_version:
            return None
        current.status = new_status
        current.version += 1
        return replace(current)


class _MemoryConstraintWriter:
    def __init__(self, repository: "InMemoryConstraintRepository"):
        self._repository = repository
        self._staged: dict[str, Constraint | None] = {}

    def _current(self) -> dict[str, Constraint]:
        merged = dict(self._repository.constraints)
        for constraint_id, constraint in self._staged.items():
            if constraint is None:
                merged.pop(constraint_id, None)
            else:
                merged[constraint_id] = constraint
        return merged

    async def get(self, constraint_id: str) -> Constraint | None:
        constraint = self._current().get(constraint_id)
        return replace(constraint) if constraint else None

    async def list_for_station(self, station_id: str, start_at: datetime, end_at: datetime) -> list[Constraint]:
        return _constraints_in_range(self._current().values(), station_id, start_at, end_at)

    async def insert(self, constraints: Sequence[Constraint]) -> list[Constraint]:
        created = []
        for constraint in constraints:
            stored = replace(constraint, id=constraint.id or str(uuid.uuid4()))
            self._staged[stored.id] = stored
            created.append(replace(stored))
        return created

    async def update(self, constraint: Constraint) -> Constraint:
        self._staged[constraint.id] = replace(constraint)
        return replace(constraint)

    async def delete(self, constraint_id: str) -> bool:
        if constraint_id not in self._current():
            return False
        self._staged[constraint_id] = None
        return True

    def apply(self) -> None:
        for constraint_id, constraint in self._staged.items():
            if constraint is None:
                self._repository.constraints.pop(constraint_id, None)
            else:
                self._repository.constraints[constraint_id] = constraint


class InMemoryConstraintRepository:
    def __init__(self, stations: Iterable[Station] = (), constraints: Iterable[Constraint] = ()):
        self.stations: dict[str, Station] = {station.id: station for station in stations}
        self.constraints: dict[str, Constraint] = {constraint.id: constraint for constraint in constraints}
        self._locks = _LockRegistry()

    async def list_for_station(self, station_id: str, start_at: datetime, end_at: datetime) -> list[Constraint]:
        return _constraints_in_range(self.constraints.values(), station_id, start_at, end_at)

    async def get(self, constraint_id: str) -> Constraint | None:
        constraint = self.constraints.get(constraint_id)
        return replace(constraint) if constraint else None

    @asynccontextmanager
    async def write_transaction(self, station_ids: Sequence[str]) -> AsyncIterator[_MemoryConstraintWriter]:
        async with self._locks.hold((station_id,) for station_id in station_ids):
            writer = _MemoryConstraintWriter(self)
            yield writer
            writer.apply()

    async def list_stations(self, *, active_only: bool = True) -> list[Station]:
        stations = [station for station in self.stations.values() if station.is_active or not active_only]
        return sorted(stations, key=lambda station: (station.display_order, station.name))

    async def get_station(self, station_id: str) -> Station | None:
        return self.stations.get(station_id)


def _constraints_in_range(
    constraints: Iterable[Constraint], station_id: str, start_at: datetime, end_at: datetime
) -> list[Constraint]:
    window = TimeWindow(start_at, end_at)
    matches = [
        replace(constraint)
        for constraint in constraints
        if constraint.station_id == station_id and constraint.window.overlaps(window)
    ]
    return sorted(matches, key=lambda constraint: (constraint.start_at, constraint.id))


def _is_cancellable(appointment: Appointment | None, expected_version: int) -> bool:
    # Completed appointments are history and never move back to cancelled
    return (
        appointment is not None
        and appointment.status is AppointmentStatus.SCHEDULED
        and appointment.version == expected_version
    )
