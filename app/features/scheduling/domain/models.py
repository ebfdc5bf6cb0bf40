"""
Domain models for station scheduling.

Plain dataclasses shared by the repositories, the resolver and the API
layer. Every timestamp is an aware UTC datetime; business-local rendering
happens at the API boundary.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import ClassVar
from zoneinfo import ZoneInfo

from app.features.scheduling.domain.normalization import business_date, ensure_utc


class ConstraintKind(str, Enum):
    FULL_BLOCK = "full_block"
    CAPACITY_LIMIT = "capacity_limit"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "AppointmentStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}


class InviteSource(str, Enum):
    MANUAL = "manual"
    CATEGORY = "category"


class ConflictReason(str, Enum):
    CONSTRAINT = "constraint"
    APPOINTMENT = "appointment"


class ResolutionState(str, Enum):
    RECEIVED = "received"
    EXPANDING = "expanding"
    VALIDATING = "validating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ResolutionState.COMMITTED, ResolutionState.REJECTED)


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Half-open [start_at, end_at) interval. Touching windows do not overlap."""

    start_at: datetime
    end_at: datetime

    def __post_init__(self):
        object.__setattr__(self, "start_at", ensure_utc(self.start_at))
        object.__setattr__(self, "end_at", ensure_utc(self.end_at))

    @property
    def is_valid(self) -> bool:
        return self.start_at < self.end_at

    @property
    def duration(self) -> timedelta:
        return self.end_at - self.start_at

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start_at < other.end_at and other.start_at < self.end_at


@dataclass(slots=True)
class Station:
    id: str
    name: str
    is_active: bool = True
    display_order: int = 0
    # Minutes kept free after each appointment
    break_minutes: int = 0
    slot_increment_minutes: int | None = None


@dataclass(slots=True)
class Constraint:
    """Manager-defined unavailability on one station."""

    id: str
    station_id: str
    start_at: datetime
    end_at: datetime
    kind: ConstraintKind = ConstraintKind.FULL_BLOCK
    note: str | None = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_at, self.end_at)

    @property
    def is_blocking(self) -> bool:
        return self.kind is ConstraintKind.FULL_BLOCK

    def business_day(self, tz: ZoneInfo) -> date:
        return business_date(self.start_at, tz)


@dataclass(slots=True)
class Appointment:
    id: str
    customer_id: str
    station_id: str
    service_type: str
    start_at: datetime
    end_at: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    version: int = 1
    superseded_appointment_id: str | None = None
    reschedule_original_start_at: datetime | None = None
    reschedule_original_end_at: datetime | None = None
    title: str | None = None
    customer_notes: str | None = None
    internal_notes: str | None = None
    meeting_id: str | None = None
    created_at: datetime | None = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_at, self.end_at)

    @property
    def is_active(self) -> bool:
        return self.status is not AppointmentStatus.CANCELLED


@dataclass(frozen=True, slots=True)
class RescheduleLink:
    """Ties a proposed meeting to the appointment it replaces."""

    appointment_id: str
    original_start_at: datetime | None = None
    original_end_at: datetime | None = None
    customer_id: str | None = None
    expected_version: int | None = None


@dataclass(frozen=True, slots=True)
class ProposedMeeting:
    id: str
    service_type: str
    window: TimeWindow
    station_id: str | None = None
    invites: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    reschedule: RescheduleLink | None = None
    title: str | None = None
    summary: str | None = None
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class ResolvedInvite:
    customer_id: str
    source: InviteSource
    source_category_id: str | None = None
    position: int = 0


@dataclass(slots=True)
class AppointmentDraft:
    """An appointment about to be written by a booking transaction."""

    customer_id: str
    station_id: str
    service_type: str
    start_at: datetime
    end_at: datetime
    meeting_id: str
    title: str | None = None
    customer_notes: str | None = None
    internal_notes: str | None = None
    superseded_appointment_id: str | None = None
    reschedule_original_start_at: datetime | None = None
    reschedule_original_end_at: datetime | None = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_at, self.end_at)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Available:
    outcome: ClassVar[str] = "available"

    station_id: str
    window: TimeWindow


@dataclass(frozen=True, slots=True)
class Conflict:
    outcome: ClassVar[str] = "conflict"

    station_id: str
    window: TimeWindow
    reason: ConflictReason
    conflicting_entity_id: str
    conflicting_window: TimeWindow | None = None


@dataclass(frozen=True, slots=True)
class Committed:
    outcome: ClassVar[str] = "committed"

    meeting_id: str
    station_id: str
    appointment_ids: tuple[str, ...]
    invites: tuple[ResolvedInvite, ...] = ()
    superseded_appointment_id: str | None = None


@dataclass(frozen=True, slots=True)
class Rejected:
    outcome: ClassVar[str] = "rejected"

    meeting_id: str
    reason: str
    message: str
    retryable: bool = False
    detail: dict = field(default_factory=dict)
    conflict: Conflict | None = None
    # Where the resolution stopped
    failed_in: ResolutionState | None = None
