"""
Collaborator interfaces consumed by the scheduling core.

Two implementations exist for every persistence port: Postgres
(repository/postgres.py) and in-memory (repository/memory.py).
"""

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from typing import Protocol

from app.features.scheduling.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    Constraint,
    Station,
    TimeWindow,
)


class CustomerDirectory(Protocol):
    async def get_category_members(self, category_id: str) -> list[str] | None:
        """Member customer ids in directory order, or None if the category does not exist."""

    async def customer_exists(self, customer_id: str) -> bool: ...

    async def missing_customers(self, customer_ids: Sequence[str]) -> list[str]:
        """Subset of `customer_ids` no longer present, in input order."""


class BookingTransaction(Protocol):
    """
    Writes for one station serialized per business date.

    Leaving the owning context normally commits every write; an exception
    discards all of them.
    """

    async def get_appointment(self, appointment_id: str) -> Appointment | None: ...

    async def list_active(self, window: TimeWindow) -> list[Appointment]: ...

    async def insert(
        self, drafts: Sequence[AppointmentDraft], *, exclude_appointment_id: str | None = None
    ) -> list[Appointment]:
        """Recheck overlap against committed appointments, then insert. Raises ConcurrentBookingConflict."""

    async def cancel_if_version(self, appointment_id: str, expected_version: int) -> Appointment | None:
        """Cancel only if still active at `expected_version`; None when the compare fails."""


class AppointmentStore(Protocol):
    async def list_appointments(
        self, station_id: str, day: date, *, exclude_cancelled: bool = True
    ) -> list[Appointment]: ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None: ...

    def booking_transaction(
        self, station_id: str, days: Sequence[date]
    ) -> AbstractAsyncContextManager[BookingTransaction]: ...

    async def commit_appointments(self, drafts: Sequence[AppointmentDraft]) -> list[Appointment]: ...

    async def transition_status(
        self, appointment_id: str, new_status: AppointmentStatus, expected_version: int | None = None
    ) -> Appointment | None:
        """Apply a status change; None when the version compare fails."""


class ConstraintWriter(Protocol):
    async def get(self, constraint_id: str) -> Constraint | None: ...

    async def list_for_station(self, station_id: str, start_at: datetime, end_at: datetime) -> list[Constraint]: ...

    async def insert(self, constraints: Sequence[Constraint]) -> list[Constraint]: ...

    async def update(self, constraint: Constraint) -> Constraint: ...

    async def delete(self, constraint_id: str) -> bool: ...


class ConstraintRepository(Protocol):
    async def list_for_station(self, station_id: str, start_at: datetime, end_at: datetime) -> list[Constraint]:
        """Constraints intersecting [start_at, end_at), ordered by start."""

    async def get(self, constraint_id: str) -> Constraint | None: ...

    def write_transaction(self, station_ids: Sequence[str]) -> AbstractAsyncContextManager[ConstraintWriter]: ...

    async def list_stations(self, *, active_only: bool = True) -> list[Station]: ...

    async def get_station(self, station_id: str) -> Station | None: ...


class NotificationDispatcher(Protocol):
    async def dispatch(self, appointments: Sequence[Appointment]) -> None: ...
