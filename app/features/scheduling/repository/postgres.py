"""
Postgres persistence for station scheduling.

Tables: stations, station_unavailability, grooming_appointments, customers,
customer_types. Booking commits serialize per (station, business date) with
transaction-scoped advisory locks and recheck overlap inside the same
transaction before inserting.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime

import psycopg

from app.config import settings
from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import db_pool
from app.features.scheduling.domain.errors import ConcurrentBookingConflict
from app.features.scheduling.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    Constraint,
    ConstraintKind,
    Station,
    TimeWindow,
)
from app.features.scheduling.domain.normalization import business_day_bounds, business_dates_spanned
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SchedulingRepositoryError(DatabaseError):
    """More specific exception for scheduling persistence failures."""


def booking_lock_key(station_id: str, day: date) -> str:
    return f"booking:{station_id}:{day.isoformat()}"


def constraint_lock_key(station_id: str) -> str:
    return f"constraints:{station_id}"


async def _advisory_locks(conn: psycopg.AsyncConnection, keys: Sequence[str]) -> None:
    # Sorted acquisition keeps concurrent multi-key transactions deadlock free
    for key in sorted(set(keys)):
        await execute_query("SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))", (key,), connection=conn)


class PostgresCustomerDirectory:
    """Category membership and customer existence from the customers tables."""

    @classmethod
    @with_db_retry()
    async def get_category_members(cls, category_id: str) -> list[str] | None:
        exists = await fetch_one("SELECT id FROM customer_types WHERE id::text = %s", (category_id,))
        if not exists:
            return None

        rows = await fetch_all(
            """
            SELECT id
            FROM customers
            WHERE customer_type_id::text = %s
            ORDER BY full_name NULLS LAST, id
            """,
            (category_id,),
        )
        return [str(row["id"]) for row in rows]

    @classmethod
    async def customer_exists(cls, customer_id: str) -> bool:
        return not await cls.missing_customers([customer_id])

    @classmethod
    @with_db_retry()
    async def missing_customers(cls, customer_ids: Sequence[str]) -> list[str]:
        if not customer_ids:
            return []
        rows = await fetch_all(
            "SELECT id::text AS id FROM customers WHERE id::text = ANY(%s)",
            (list(customer_ids),),
        )
        found = {row["id"] for row in rows}
        return [customer_id for customer_id in customer_ids if customer_id not in found]


class _PostgresBookingTransaction:
    def __init__(self, conn: psycopg.AsyncConnection, station_id: str):
        self.conn = conn
        self.station_id = station_id

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        row = await fetch_one(
            f"SELECT {PostgresAppointmentRepository.COLUMNS} FROM grooming_appointments WHERE id::text = %s",
            (appointment_id,),
            connection=self.conn,
        )
        return PostgresAppointmentRepository._row_to_appointment(row)

    async def list_active(self, window: TimeWindow) -> list[Appointment]:
        rows = await fetch_all(
            f"""
            SELECT {PostgresAppointmentRepository.COLUMNS}
            FROM grooming_appointments
            WHERE station_id::text = %s
              AND status <> 'cancelled'
              AND start_at < %s
              AND end_at > %s
            ORDER BY start_at, id
            """,
            (self.station_id, window.end_at, window.start_at),
            connection=self.conn,
        )
        return [PostgresAppointmentRepository._row_to_appointment(row) for row in rows]

    async def insert(
        self, drafts: Sequence[AppointmentDraft], *, exclude_appointment_id: str | None = None
    ) -> list[Appointment]:
        for draft in drafts:
            clash = await fetch_one(
                """
                SELECT id::text AS id
                FROM grooming_appointments
                WHERE station_id::text = %s
                  AND status <> 'cancelled'
                  AND start_at < %s
                  AND end_at > %s
                  AND (%s::text IS NULL OR id::text <> %s::text)
                ORDER BY start_at
                LIMIT 1
                """,
                (draft.station_id, draft.end_at, draft.start_at, exclude_appointment_id, exclude_appointment_id),
                connection=self.conn,
            )
            if clash:
                raise ConcurrentBookingConflict(draft.station_id, clash["id"])

        created = []
        for draft in drafts:
            row = await fetch_one(
                f"""
                INSERT INTO grooming_appointments (
                    customer_id, station_id, service_type, start_at, end_at, status,
                    superseded_appointment_id, reschedule_original_start_at,
                    reschedule_original_end_at, title, customer_notes, internal_notes,
                    meeting_id
                )
                VALUES (%s, %s, %s, %s, %s, 'scheduled', %s, %s, %s, %s, %s, %s, %s)
                RETURNING {PostgresAppointmentRepository.COLUMNS}
                """,
                (
                    draft.customer_id,
                    draft.station_id,
                    draft.service_type,
                    draft.start_at,
                    draft.end_at,
                    draft.superseded_appointment_id,
                    draft.reschedule_original_start_at,
                    draft.reschedule_original_end_at,
                    draft.title,
                    draft.customer_notes,
                    draft.internal_notes,
                    draft.meeting_id,
                ),
                connection=self.conn,
            )
            if not row:
                raise SchedulingRepositoryError("Appointment insert returned no row", operation="insert")
            created.append(PostgresAppointmentRepository._row_to_appointment(row))
        return created

    async def cancel_if_version(self, appointment_id: str, expected_version: int) -> Appointment | None:
        row = await fetch_one(
            f"""
            UPDATE grooming_appointments
            SET status = 'cancelled',
                version = version + 1,
                updated_at = NOW()
            WHERE id::text = %s
              AND version = %s
              AND status = 'scheduled'
            RETURNING {PostgresAppointmentRepository.COLUMNS}
            """,
            (appointment_id, expected_version),
            connection=self.conn,
        )
        return PostgresAppointmentRepository._row_to_appointment(row)


class PostgresAppointmentRepository:
    """Appointment reads, booking transactions and status transitions."""

    COLUMNS = """
        id, customer_id, station_id, service_type, start_at, end_at, status, version,
        superseded_appointment_id, reschedule_original_start_at, reschedule_original_end_at,
        title, customer_notes, internal_notes, meeting_id, created_at
    """

    @classmethod
    def _row_to_appointment(cls, row: dict | None) -> Appointment | None:
        if not row:
            return None

        superseded = row.get("superseded_appointment_id")
        meeting_id = row.get("meeting_id")
        return Appointment(
            id=str(row["id"]),
            customer_id=str(row["customer_id"]),
            station_id=str(row["station_id"]),
            service_type=row["service_type"],
            start_at=row["start_at"],
            end_at=row["end_at"],
            status=AppointmentStatus(row["status"]),
            version=row["version"],
            superseded_appointment_id=str(superseded) if superseded else None,
            reschedule_original_start_at=row.get("reschedule_original_start_at"),
            reschedule_original_end_at=row.get("reschedule_original_end_at"),
            title=row.get("title"),
            customer_notes=row.get("customer_notes"),
            internal_notes=row.get("internal_notes"),
            meeting_id=str(meeting_id) if meeting_id else None,
            created_at=row.get("created_at"),
        )

    @classmethod
    @with_db_retry()
    async def list_appointments(
        cls, station_id: str, day: date, *, exclude_cancelled: bool = True
    ) -> list[Appointment]:
        day_start, day_end = business_day_bounds(day, settings.business_tz())
        status_filter = "AND status <> 'cancelled'" if exclude_cancelled else ""
        rows = await fetch_all(
            f"""
            SELECT {cls.COLUMNS}
            FROM grooming_appointments
            WHERE station_id::text = %s
              AND start_at < %s
              AND end_at > %s
              {status_filter}
            ORDER BY start_at, id
            """,
            (station_id, day_end, day_start),
        )
        return [cls._row_to_appointment(row) for row in rows]

    @classmethod
    @with_db_retry()
    async def get_appointment(cls, appointment_id: str) -> Appointment | None:
        row = await fetch_one(
            f"SELECT {cls.COLUMNS} FROM grooming_appointments WHERE id::text = %s", (appointment_id,)
        )
        return cls._row_to_appointment(row)

    @classmethod
    @asynccontextmanager
    async def booking_transaction(
        cls, station_id: str, days: Sequence[date]
    ) -> AsyncIterator[_PostgresBookingTransaction]:
        async with db_pool.transaction() as conn:
            await _advisory_locks(conn, [booking_lock_key(station_id, day) for day in days])
            yield _PostgresBookingTransaction(conn, station_id)

    @classmethod
    async def commit_appointments(cls, drafts: Sequence[AppointmentDraft]) -> list[Appointment]:
        if not drafts:
            return []
        tz = settings.business_tz()
        days = sorted({day for draft in drafts for day in business_dates_spanned(draft.start_at, draft.end_at, tz)})
        async with cls.booking_transaction(drafts[0].station_id, days) as tx:
            return await tx.insert(drafts)

    @classmethod
    async def transition_status(
        cls, appointment_id: str, new_status: AppointmentStatus, expected_version: int | None = None
    ) -> Appointment | None:
        row = await fetch_one(
            f"""
            UPDATE grooming_appointments
            SET status = %s,
                version = version + 1,
                updated_at = NOW()
            WHERE id::text = %s
              AND (%s::int IS NULL OR version = %s::int)
            RETURNING {cls.COLUMNS}
            """,
            (new_status.value, appointment_id, expected_version, expected_version),
        )
        return cls._row_to_appointment(row)


class _PostgresConstraintWriter:
    def __init__(self, conn: psycopg.AsyncConnection):
        self.conn = conn

    async def get(self, constraint_id: str) -> Constraint | None:
        return await PostgresConstraintRepository.get(constraint_id, connection=self.conn)

    async def list_for_station(self, station_id: str, start_at: datetime, end_at: datetime) -> list[Constraint]:
        return await PostgresConstraintRepository.list_for_station(
            station_id, start_at, end_at, connection=self.conn
        )

    async def insert(self, constraints: Sequence[Constraint]) -> list[Constraint]:
        created = []
        for constraint in constraints:
            row = await fetch_one(
                f"""
                INSERT INTO station_unavailability (station_id, start_time, end_time, kind, notes, is_active)
                VALUES (%s, %s, %s, %s, %s, true)
                RETURNING {PostgresConstraintRepository.COLUMNS}
                """,
                (constraint.station_id, constraint.start_at, constraint.end_at, constraint.kind.value, constraint.note),
                connection=self.conn,
            )
            if not row:
                raise SchedulingRepositoryError("Constraint insert returned no row", operation="insert_constraint")
            created.append(PostgresConstraintRepository._row_to_constraint(row))
        return created

    async def update(self, constraint: Constraint) -> Constraint:
        row = await fetch_one(
            f"""
            UPDATE station_unavailability
            SET start_time = %s,
                end_time = %s,
                kind = %s,
                notes = %s,
                updated_at = NOW()
            WHERE id::text = %s
            RETURNING {PostgresConstraintRepository.COLUMNS}
            """,
            (constraint.start_at, constraint.end_at, constraint.kind.value, constraint.note, constraint.id),
            connection=self.conn,
        )
        if not row:
            raise SchedulingRepositoryError("Constraint update matched no row", operation="update_constraint")
        return PostgresConstraintRepository._row_to_constraint(row)

    async def delete(self, constraint_id: str) -> bool:
        # Soft delete keeps the history of manager-defined blocks
        affected = await execute_query(
            """
            UPDATE station_unavailability
            SET is_active = false,
                updated_at = NOW()
            WHERE id::text = %s AND is_active
            """,
            (constraint_id,),
            connection=self.conn,
        )
        return affected > 0


class PostgresConstraintRepository:
    """Stations and their unavailability windows."""

    COLUMNS = "id, station_id, start_time, end_time, kind, notes"
    STATION_COLUMNS = (
        "id, name, is_active, display_order, "
        "COALESCE(break_between_appointments, 0) AS break_minutes, slot_interval_minutes"
    )

    @classmethod
    def _row_to_constraint(cls, row: dict | None) -> Constraint | None:
        if not row:
            return None

        return Constraint(
            id=str(row["id"]),
            station_id=str(row["station_id"]),
            start_at=row["start_time"],
            end_at=row["end_time"],
            kind=ConstraintKind(row.get("kind") or ConstraintKind.FULL_BLOCK.value),
            note=row.get("notes"),
        )

    @classmethod
    async def list_for_station(
        cls,
        station_id: str,
        start_at: datetime,
        end_at: datetime,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> list[Constraint]:
        rows = await fetch_all(
            f"""
            SELECT {cls.COLUMNS}
            FROM station_unavailability
            WHERE station_id::text = %s
              AND is_active
              AND start_time < %s
              AND end_time > %s
            ORDER BY start_time, id
            """,
            (station_id, end_at, start_at),
            connection=connection,
        )
        return [cls._row_to_constraint(row) for row in rows]

    @classmethod
    async def get(cls, constraint_id: str, *, connection: psycopg.AsyncConnection | None = None) -> Constraint | None:
        row = await fetch_one(
            f"SELECT {cls.COLUMNS} FROM station_unavailability WHERE id::text = %s AND is_active",
            (constraint_id,),
            connection=connection,
        )
        return cls._row_to_constraint(row)

    @classmethod
    @asynccontextmanager
    async def write_transaction(cls, station_ids: Sequence[str]) -> AsyncIterator[_PostgresConstraintWriter]:
        async with db_pool.transaction() as conn:
            await _advisory_locks(conn, [constraint_lock_key(station_id) for station_id in station_ids])
            yield _PostgresConstraintWriter(conn)

    @classmethod
    @with_db_retry()
    async def list_stations(cls, *, active_only: bool = True) -> list[Station]:
        active_filter = "WHERE is_active" if active_only else ""
        rows = await fetch_all(
            f"""
            SELECT {cls.STATION_COLUMNS}
            FROM stations
            {active_filter}
            ORDER BY display_order NULLS LAST, name
            """
        )
        return [cls._row_to_station(row) for row in rows]

    @classmethod
    @with_db_retry()
    async def get_station(cls, station_id: str) -> Station | None:
        row = await fetch_one(
            f"SELECT {cls.STATION_COLUMNS} FROM stations WHERE id::text = %s", (station_id,)
        )
        return cls._row_to_station(row) if row else None

    @classmethod
    def _row_to_station(cls, row: dict) -> Station:
        return Station(
            id=str(row["id"]),
            name=row["name"],
            is_active=bool(row.get("is_active", True)),
            display_order=row.get("display_order") or 0,
            break_minutes=row.get("break_minutes") or 0,
            slot_increment_minutes=row.get("slot_interval_minutes"),
        )
