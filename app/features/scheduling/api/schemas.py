"""
Scheduling API request/response models.

Requests accept the loose shapes the manager schedule UI sends (camelCase
keys, invites as bare ids or objects, a duration instead of an end time,
wall-clock times without an offset) and convert them into strict domain
objects right away. Times without an offset are read in the business
timezone.
"""

import uuid
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from app.features.scheduling.domain.errors import conflict_detail
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
    RescheduleLink,
    Station,
    TimeWindow,
)
from app.features.scheduling.domain.normalization import (
    from_business_local,
    format_duration,
    parse_duration_to_minutes,
    sanitize_text,
    to_business_local,
    unique_ordered,
)

_ID_KEYS = ("customerId", "customer_id", "customerTypeId", "customer_type_id", "categoryId", "category_id", "id")


def _coerce_ids(value: Any) -> list[str]:
    """Accept ids as strings, numbers or {"customerId": ...}-style objects."""
    if value is None:
        return []
    if isinstance(value, str | int):
        value = [value]
    ids = []
    for item in value:
        if isinstance(item, dict):
            item = next((item[key] for key in _ID_KEYS if item.get(key) is not None), None)
        if item is not None:
            ids.append(str(item))
    return unique_ordered(ids)


def _window(start_at: datetime, end_at: datetime | None, duration: str | int | None, tz: ZoneInfo) -> TimeWindow:
    start = from_business_local(start_at, tz)
    if end_at is not None:
        return TimeWindow(start, from_business_local(end_at, tz))
    minutes = parse_duration_to_minutes(duration)
    return TimeWindow(start, start + timedelta(minutes=minutes or 0))


class _WindowInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_at: datetime = Field(
        ..., validation_alias=AliasChoices("start_at", "startAt", "startTime"), description="Window start"
    )
    end_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("end_at", "endAt", "endTime"), description="Window end"
    )
    duration: str | int | None = Field(default=None, description='Alternative to end_at: minutes or "H:MM"')

    @model_validator(mode="after")
    def _require_end(self):
        if self.end_at is None:
            if self.duration is None:
                raise ValueError("Either end_at or duration is required")
            if not parse_duration_to_minutes(self.duration):
                raise ValueError(f"Invalid duration: {self.duration!r}")
        return self

    def window(self, tz: ZoneInfo) -> TimeWindow:
        return _window(self.start_at, self.end_at, self.duration, tz)


class RescheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: str = Field(..., validation_alias=AliasChoices("appointment_id", "appointmentId"))
    customer_id: str | None = Field(default=None, validation_alias=AliasChoices("customer_id", "customerId"))
    original_start_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("original_start_at", "originalStartAt")
    )
    original_end_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("original_end_at", "originalEndAt")
    )
    expected_version: int | None = Field(default=None, validation_alias=AliasChoices("expected_version", "version"))


class ProposedMeetingRequest(_WindowInput):
    """Request for booking a proposed meeting."""

    id: str | None = Field(default=None, description="Client meeting id; generated when absent")
    service_type: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("service_type", "serviceType"), description="Service booked"
    )
    station_id: str | None = Field(
        default=None, validation_alias=AliasChoices("station_id", "stationId"), description="Omit to auto-assign"
    )
    invites: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("invites", "customer_ids", "customerIds"),
        description="Manually invited customer ids",
    )
    categories: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("categories", "customer_type_ids", "customerTypeIds"),
        description="Customer categories expanded at booking time",
    )
    reschedule: RescheduleRequest | None = None
    station_priority: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("station_priority", "stationPriority")
    )
    title: str | None = Field(default=None, max_length=200)
    summary: str | None = Field(default=None, max_length=2000)
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_reschedule(cls, data: Any) -> Any:
        # The booking dialog sends rescheduleAppointmentId & co. at the top level
        if isinstance(data, dict) and data.get("rescheduleAppointmentId") and not data.get("reschedule"):
            data = dict(data)
            data["reschedule"] = {
                "appointment_id": data.pop("rescheduleAppointmentId"),
                "customer_id": data.pop("rescheduleCustomerId", None),
                "original_start_at": data.pop("rescheduleOriginalStartAt", None),
                "original_end_at": data.pop("rescheduleOriginalEndAt", None),
            }
        return data

    @field_validator("invites", "categories", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> list[str]:
        return _coerce_ids(value)

    @field_validator("station_id", "title", "summary", "notes")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return sanitize_text(value)

    @model_validator(mode="after")
    def _require_invitees(self):
        if not self.invites and not self.categories:
            raise ValueError("At least one invite or category is required")
        return self

    def to_domain(self, tz: ZoneInfo) -> ProposedMeeting:
        reschedule = None
        if self.reschedule:
            reschedule = RescheduleLink(
                appointment_id=self.reschedule.appointment_id,
                original_start_at=(
                    from_business_local(self.reschedule.original_start_at, tz)
                    if self.reschedule.original_start_at
                    else None
                ),
                original_end_at=(
                    from_business_local(self.reschedule.original_end_at, tz) if self.reschedule.original_end_at else None
                ),
                customer_id=self.reschedule.customer_id,
                expected_version=self.reschedule.expected_version,
            )

        return ProposedMeeting(
            id=self.id or str(uuid.uuid4()),
            service_type=self.service_type.strip(),
            window=self.window(tz),
            station_id=self.station_id,
            invites=tuple(self.invites),
            categories=tuple(self.categories),
            reschedule=reschedule,
            title=self.title,
            summary=self.summary,
            notes=self.notes,
        )


class AvailabilityRequest(_WindowInput):
    """Request for checking one station before submitting."""

    station_id: str = Field(..., validation_alias=AliasChoices("station_id", "stationId"))
    exclude_appointment_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("exclude_appointment_id", "excludeAppointmentId"),
        description="Appointment being rescheduled; ignored in the check",
    )


class ConstraintCreateRequest(_WindowInput):
    station_ids: list[str] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("station_ids", "stationIds", "station_id", "stationId"),
        description="One constraint is created per station",
    )
    kind: ConstraintKind = ConstraintKind.FULL_BLOCK
    note: str | None = Field(default=None, max_length=500, validation_alias=AliasChoices("note", "notes", "reason"))

    @field_validator("station_ids", mode="before")
    @classmethod
    def _station_ids(cls, value: Any) -> list[str]:
        return _coerce_ids(value)


class ConstraintUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_at: datetime | None = Field(default=None, validation_alias=AliasChoices("start_at", "startAt", "startTime"))
    end_at: datetime | None = Field(default=None, validation_alias=AliasChoices("end_at", "endAt", "endTime"))
    kind: ConstraintKind | None = None
    note: str | None = Field(default=None, max_length=500, validation_alias=AliasChoices("note", "notes", "reason"))

    def changes(self, tz: ZoneInfo) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if self.start_at is not None:
            changes["start_at"] = from_business_local(self.start_at, tz)
        if self.end_at is not None:
            changes["end_at"] = from_business_local(self.end_at, tz)
        if self.kind is not None:
            changes["kind"] = self.kind
        # An explicit null clears the note
        if "note" in self.model_fields_set:
            changes["note"] = self.note
        return changes


class StatusTransitionRequest(BaseModel):
    status: AppointmentStatus
    expected_version: int | None = Field(default=None, ge=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ConflictResponse(BaseModel):
    station_id: str
    reason: str
    conflicting_entity_id: str
    conflicting_start_at: datetime | None = None
    conflicting_end_at: datetime | None = None

    @classmethod
    def from_domain(cls, conflict: Conflict) -> "ConflictResponse":
        return cls(**conflict_detail(conflict))


class ResolvedInviteResponse(BaseModel):
    customer_id: str
    source: str
    source_category_id: str | None = None
    position: int


class MeetingOutcomeResponse(BaseModel):
    """Single structured outcome of a proposed meeting submission."""

    outcome: str = Field(..., description="committed or rejected")
    meeting_id: str
    station_id: str | None = None
    appointment_ids: list[str] = Field(default_factory=list)
    invites: list[ResolvedInviteResponse] = Field(default_factory=list)
    superseded_appointment_id: str | None = None
    reason: str | None = None
    message: str | None = None
    retryable: bool = False
    detail: dict[str, Any] = Field(default_factory=dict)
    conflict: ConflictResponse | None = None
    failed_in: str | None = None

    @classmethod
    def from_domain(cls, outcome: Committed | Rejected) -> "MeetingOutcomeResponse":
        if isinstance(outcome, Committed):
            return cls(
                outcome=outcome.outcome,
                meeting_id=outcome.meeting_id,
                station_id=outcome.station_id,
                appointment_ids=list(outcome.appointment_ids),
                invites=[
                    ResolvedInviteResponse(
                        customer_id=invite.customer_id,
                        source=invite.source.value,
                        source_category_id=invite.source_category_id,
                        position=invite.position,
                    )
                    for invite in outcome.invites
                ],
                superseded_appointment_id=outcome.superseded_appointment_id,
            )
        return cls(
            outcome=outcome.outcome,
            meeting_id=outcome.meeting_id,
            station_id=outcome.conflict.station_id if outcome.conflict else None,
            reason=outcome.reason,
            message=outcome.message,
            retryable=outcome.retryable,
            detail=outcome.detail,
            conflict=ConflictResponse.from_domain(outcome.conflict) if outcome.conflict else None,
            failed_in=outcome.failed_in.value if outcome.failed_in else None,
        )


class AvailabilityResponse(BaseModel):
    available: bool
    station_id: str
    start_at: datetime
    end_at: datetime
    conflict: ConflictResponse | None = None

    @classmethod
    def from_domain(cls, result: Available | Conflict) -> "AvailabilityResponse":
        return cls(
            available=isinstance(result, Available),
            station_id=result.station_id,
            start_at=result.window.start_at,
            end_at=result.window.end_at,
            conflict=ConflictResponse.from_domain(result) if isinstance(result, Conflict) else None,
        )


class StationResponse(BaseModel):
    id: str
    name: str
    is_active: bool
    display_order: int
    break_minutes: int = 0

    @classmethod
    def from_domain(cls, station: Station) -> "StationResponse":
        return cls(
            id=station.id,
            name=station.name,
            is_active=station.is_active,
            display_order=station.display_order,
            break_minutes=station.break_minutes,
        )


class AvailableSlotResponse(BaseModel):
    station_id: str
    time: str = Field(..., description="Local start, HH:MM")
    start_at: datetime
    end_at: datetime
    local_start: datetime

    @classmethod
    def from_domain(cls, slot: Available, tz: ZoneInfo) -> "AvailableSlotResponse":
        local_start = to_business_local(slot.window.start_at, tz)
        return cls(
            station_id=slot.station_id,
            time=local_start.strftime("%H:%M"),
            start_at=slot.window.start_at,
            end_at=slot.window.end_at,
            local_start=local_start,
        )


class AvailableTimesResponse(BaseModel):
    day: date
    timezone: str
    duration: str = Field(..., description="H:MM")
    slots: list[AvailableSlotResponse]


class ConstraintResponse(BaseModel):
    id: str
    station_id: str
    start_at: datetime
    end_at: datetime
    local_start: datetime
    local_end: datetime
    local_date: date
    kind: ConstraintKind
    note: str | None = None

    @classmethod
    def from_domain(cls, constraint: Constraint, tz: ZoneInfo) -> "ConstraintResponse":
        return cls(
            id=constraint.id,
            station_id=constraint.station_id,
            start_at=constraint.start_at,
            end_at=constraint.end_at,
            local_start=to_business_local(constraint.start_at, tz),
            local_end=to_business_local(constraint.end_at, tz),
            local_date=constraint.business_day(tz),
            kind=constraint.kind,
            note=constraint.note,
        )


class AppointmentResponse(BaseModel):
    id: str
    customer_id: str
    station_id: str
    service_type: str
    start_at: datetime
    end_at: datetime
    local_start: datetime
    local_end: datetime
    duration: str = Field(..., description="H:MM")
    status: AppointmentStatus
    version: int
    superseded_appointment_id: str | None = None
    reschedule_original_start_at: datetime | None = None
    reschedule_original_end_at: datetime | None = None
    title: str | None = None
    customer_notes: str | None = None
    internal_notes: str | None = None
    meeting_id: str | None = None

    @classmethod
    def from_domain(cls, appointment: Appointment, tz: ZoneInfo) -> "AppointmentResponse":
        return cls(
            id=appointment.id,
            customer_id=appointment.customer_id,
            station_id=appointment.station_id,
            service_type=appointment.service_type,
            start_at=appointment.start_at,
            end_at=appointment.end_at,
            local_start=to_business_local(appointment.start_at, tz),
            local_end=to_business_local(appointment.end_at, tz),
            duration=format_duration(int(appointment.window.duration.total_seconds() // 60)),
            status=appointment.status,
            version=appointment.version,
            superseded_appointment_id=appointment.superseded_appointment_id,
            reschedule_original_start_at=appointment.reschedule_original_start_at,
            reschedule_original_end_at=appointment.reschedule_original_end_at,
            title=appointment.title,
            customer_notes=appointment.customer_notes,
            internal_notes=appointment.internal_notes,
            meeting_id=appointment.meeting_id,
        )


class StationScheduleResponse(BaseModel):
    station: StationResponse
    day: date
    timezone: str
    appointments: list[AppointmentResponse]
    constraints: list[ConstraintResponse]
