"""
Scheduling error taxonomy.

Every error is terminal for the resolution attempt that raised it. The
`retryable` flag tells the caller whether resubmitting a fresh proposed
meeting after re-reading state can succeed without user correction.
"""

from datetime import datetime
from typing import Any

from app.features.scheduling.domain.models import Conflict


class SchedulingError(Exception):
    """Base class carrying a stable error code for API responses."""

    error_code = "scheduling_error"
    retryable = False

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvalidProposedMeeting(SchedulingError):
    error_code = "invalid_proposed_meeting"


class UnknownCategory(SchedulingError):
    error_code = "unknown_category"

    def __init__(self, category_id: str):
        super().__init__(f"Unknown customer category: {category_id}", detail={"category_id": category_id})
        self.category_id = category_id


class EmptyInviteSet(SchedulingError):
    error_code = "empty_invite_set"

    def __init__(self, meeting_id: str | None = None):
        super().__init__(
            "Proposed meeting resolves to no customers",
            detail={"meeting_id": meeting_id} if meeting_id else None,
        )


class UnknownStation(SchedulingError):
    error_code = "unknown_station"

    def __init__(self, station_id: str):
        super().__init__(f"Station {station_id} does not exist or is inactive", detail={"station_id": station_id})
        self.station_id = station_id


class InvalidTimeWindow(SchedulingError):
    error_code = "invalid_time_window"

    def __init__(self, start_at: datetime, end_at: datetime):
        super().__init__(
            "End time must be after start time",
            detail={"start_at": start_at.isoformat(), "end_at": end_at.isoformat()},
        )


class InvalidSlotRequest(SchedulingError):
    error_code = "invalid_slot_request"


class InvalidConstraintWindow(SchedulingError):
    error_code = "invalid_constraint_window"

    def __init__(self, start_at: datetime, end_at: datetime):
        super().__init__(
            "Constraint end time must be after its start time",
            detail={"start_at": start_at.isoformat(), "end_at": end_at.isoformat()},
        )


class OverlappingConstraint(SchedulingError):
    error_code = "overlapping_constraint"

    def __init__(self, station_id: str, existing_constraint_id: str):
        super().__init__(
            f"Full-block constraint overlaps existing constraint {existing_constraint_id}",
            detail={"station_id": station_id, "existing_constraint_id": existing_constraint_id},
        )
        self.station_id = station_id
        self.existing_constraint_id = existing_constraint_id


class ConstraintNotFound(SchedulingError):
    error_code = "constraint_not_found"

    def __init__(self, constraint_id: str):
        super().__init__(f"Constraint {constraint_id} not found", detail={"constraint_id": constraint_id})


class StationConflict(SchedulingError):
    """A single candidate station is unavailable for the requested window."""

    error_code = "conflict"

    def __init__(self, conflict: Conflict):
        super().__init__(
            f"Station {conflict.station_id} is unavailable: {conflict.reason.value} "
            f"{conflict.conflicting_entity_id}",
            detail=conflict_detail(conflict),
        )
        self.conflict = conflict


class NoStationAvailable(SchedulingError):
    error_code = "no_station_available"

    def __init__(self, conflicts: list[Conflict]):
        super().__init__(
            "No candidate station is available for the requested window",
            detail={"conflicts": [conflict_detail(conflict) for conflict in conflicts]},
        )
        self.conflicts = conflicts


class StaleInviteData(SchedulingError):
    error_code = "stale_invite_data"

    def __init__(self, customer_ids: list[str]):
        super().__init__(
            "Invited customers no longer exist in the directory",
            detail={"customer_ids": customer_ids},
        )
        self.customer_ids = customer_ids


class ConcurrentBookingConflict(SchedulingError):
    error_code = "concurrent_booking_conflict"
    retryable = True

    def __init__(self, station_id: str, conflicting_appointment_id: str):
        super().__init__(
            "Station was booked by a concurrent request; re-read availability and resubmit",
            detail={"station_id": station_id, "conflicting_appointment_id": conflicting_appointment_id},
        )
        self.station_id = station_id
        self.conflicting_appointment_id = conflicting_appointment_id


class OriginalAlreadyResolved(SchedulingError):
    error_code = "original_already_resolved"
    retryable = True

    def __init__(self, appointment_id: str):
        super().__init__(
            f"Appointment {appointment_id} is no longer scheduled",
            detail={"appointment_id": appointment_id},
        )
        self.appointment_id = appointment_id


class AppointmentVersionConflict(SchedulingError):
    error_code = "appointment_version_conflict"
    retryable = True

    def __init__(self, appointment_id: str):
        super().__init__(
            f"Appointment {appointment_id} changed since it was read",
            detail={"appointment_id": appointment_id},
        )


class AppointmentNotFound(SchedulingError):
    error_code = "appointment_not_found"

    def __init__(self, appointment_id: str):
        super().__init__(f"Appointment {appointment_id} not found", detail={"appointment_id": appointment_id})
        self.appointment_id = appointment_id


class RescheduleTargetMismatch(SchedulingError):
    error_code = "reschedule_target_mismatch"


class InvalidStatusTransition(SchedulingError):
    error_code = "invalid_status_transition"

    def __init__(self, appointment_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move appointment from {current} to {requested}",
            detail={"appointment_id": appointment_id, "current": current, "requested": requested},
        )


class ResolutionCancelled(SchedulingError):
    error_code = "resolution_cancelled"
    retryable = True

    def __init__(self, meeting_id: str):
        super().__init__("Resolution cancelled before commit", detail={"meeting_id": meeting_id})


def conflict_detail(conflict: Conflict) -> dict[str, Any]:
    detail = {
        "station_id": conflict.station_id,
        "reason": conflict.reason.value,
        "conflicting_entity_id": conflict.conflicting_entity_id,
    }
    if conflict.conflicting_window is not None:
        detail["conflicting_start_at"] = conflict.conflicting_window.start_at.isoformat()
        detail["conflicting_end_at"] = conflict.conflicting_window.end_at.isoformat()
    return detail
