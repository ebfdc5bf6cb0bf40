"""
Scheduling routes.

Proposed meeting submission, station availability and free slots, station
constraints and appointment status changes. Every route requires a Supabase JWT;
constraint edits additionally require the manager role.
"""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from app.auth.verify import auth_dependency, manager_dependency
from app.db.helpers import DatabaseError
from app.features.scheduling.api.schemas import (
    AppointmentResponse,
    AvailabilityRequest,
    AvailabilityResponse,
    AvailableSlotResponse,
    AvailableTimesResponse,
    ConstraintCreateRequest,
    ConstraintResponse,
    ConstraintUpdateRequest,
    MeetingOutcomeResponse,
    ProposedMeetingRequest,
    StationResponse,
    StationScheduleResponse,
    StatusTransitionRequest,
)
from app.features.scheduling.domain.errors import SchedulingError
from app.features.scheduling.domain.models import Available, Committed
from app.features.scheduling.domain.normalization import format_duration, parse_duration_to_minutes
from app.features.scheduling.services.scheduling_service import SchedulingService, get_scheduling_service
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/scheduling", tags=["scheduling"])

ERROR_STATUS = {
    "conflict": status.HTTP_409_CONFLICT,
    "no_station_available": status.HTTP_409_CONFLICT,
    "concurrent_booking_conflict": status.HTTP_409_CONFLICT,
    "original_already_resolved": status.HTTP_409_CONFLICT,
    "appointment_version_conflict": status.HTTP_409_CONFLICT,
    "overlapping_constraint": status.HTTP_409_CONFLICT,
    "invalid_status_transition": status.HTTP_409_CONFLICT,
    "resolution_cancelled": status.HTTP_409_CONFLICT,
    "unknown_category": status.HTTP_404_NOT_FOUND,
    "unknown_station": status.HTTP_404_NOT_FOUND,
    "appointment_not_found": status.HTTP_404_NOT_FOUND,
    "constraint_not_found": status.HTTP_404_NOT_FOUND,
    "empty_invite_set": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "stale_invite_data": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "reschedule_target_mismatch": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_proposed_meeting": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_constraint_window": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_time_window": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_slot_request": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def status_for(error_code: str) -> int:
    return ERROR_STATUS.get(error_code, status.HTTP_400_BAD_REQUEST)


def _scheduling_http_error(error: SchedulingError) -> HTTPException:
    return HTTPException(
        status_code=status_for(error.error_code),
        detail={
            "error_code": error.error_code,
            "message": error.message,
            "retryable": error.retryable,
            "detail": error.detail,
        },
    )


def _storage_unavailable(operation: str, error: Exception) -> HTTPException:
    logger.error("Scheduling storage error", operation=operation, error=str(error))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Scheduling storage unavailable, please retry",
    )


def _internal_error(operation: str, error: Exception) -> HTTPException:
    logger.error("Unexpected scheduling error", operation=operation, error=str(error), exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {operation.replace('_', ' ')}",
    )


@router.post("/proposed-meetings", response_model=MeetingOutcomeResponse, status_code=status.HTTP_201_CREATED)
async def submit_proposed_meeting(
    payload: ProposedMeetingRequest,
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Book a proposed meeting. Always answers with a single committed or rejected outcome."""
    meeting = payload.to_domain(service.tz)
    try:
        outcome = await service.submit_proposed_meeting(meeting, station_priority=payload.station_priority)
    except DatabaseError as e:
        raise _storage_unavailable("submit_proposed_meeting", e) from e
    except Exception as e:
        raise _internal_error("submit_proposed_meeting", e) from e

    body = MeetingOutcomeResponse.from_domain(outcome)
    if isinstance(outcome, Committed):
        logger.info(
            "Proposed meeting booked via API",
            user_id=claims.get("sub"),
            meeting_id=outcome.meeting_id,
            appointments=len(outcome.appointment_ids),
        )
        return body

    return JSONResponse(status_code=status_for(outcome.reason), content=body.model_dump(mode="json"))


@router.post("/availability", response_model=AvailabilityResponse)
async def check_availability(
    payload: AvailabilityRequest,
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Read-only station check used before submitting a meeting."""
    try:
        result = await service.check_station_availability(
            payload.station_id, payload.window(service.tz), payload.exclude_appointment_id
        )
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("check_availability", e) from e
    except Exception as e:
        raise _internal_error("check_availability", e) from e

    return AvailabilityResponse.from_domain(result)


def _available_times_response(
    day: date, minutes: int, slots: list[Available], service: SchedulingService
) -> AvailableTimesResponse:
    return AvailableTimesResponse(
        day=day,
        timezone=service.tz.key,
        duration=format_duration(minutes),
        slots=[AvailableSlotResponse.from_domain(slot, service.tz) for slot in slots],
    )


@router.get("/available-times", response_model=AvailableTimesResponse)
async def get_available_times(
    day: date = Query(..., description="Business date (YYYY-MM-DD)"),
    duration: str = Query(..., description='Minutes or "H:MM"'),
    increment: int | None = Query(default=None, ge=0, description="Minutes between slot starts"),
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Free slots on every active station, earliest first."""
    minutes = parse_duration_to_minutes(duration) or 0
    try:
        slots = await service.available_times(day, minutes, increment)
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("available_times", e) from e
    except Exception as e:
        raise _internal_error("available_times", e) from e
    return _available_times_response(day, minutes, slots, service)


@router.get("/stations", response_model=list[StationResponse])
async def list_stations(
    include_inactive: bool = Query(default=False, description="Include deactivated stations"),
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        stations = await service.list_stations(active_only=not include_inactive)
    except DatabaseError as e:
        raise _storage_unavailable("list_stations", e) from e
    except Exception as e:
        raise _internal_error("list_stations", e) from e
    return [StationResponse.from_domain(station) for station in stations]


@router.get("/stations/{station_id}/schedule", response_model=StationScheduleResponse)
async def get_station_schedule(
    station_id: str,
    day: date = Query(..., description="Business date (YYYY-MM-DD)"),
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Appointments and constraints for one station on one business day."""
    try:
        schedule = await service.station_day_schedule(station_id, day)
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("station_schedule", e) from e
    except Exception as e:
        raise _internal_error("station_schedule", e) from e

    return StationScheduleResponse(
        station=StationResponse.from_domain(schedule.station),
        day=schedule.day,
        timezone=service.tz.key,
        appointments=[AppointmentResponse.from_domain(item, service.tz) for item in schedule.appointments],
        constraints=[ConstraintResponse.from_domain(item, service.tz) for item in schedule.constraints],
    )


@router.get("/stations/{station_id}/available-times", response_model=AvailableTimesResponse)
async def get_station_available_times(
    station_id: str,
    day: date = Query(..., description="Business date (YYYY-MM-DD)"),
    duration: str = Query(..., description='Minutes or "H:MM"'),
    increment: int | None = Query(default=None, ge=0, description="Minutes between slot starts"),
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    minutes = parse_duration_to_minutes(duration) or 0
    try:
        slots = await service.available_slots(station_id, day, minutes, increment)
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("station_available_times", e) from e
    except Exception as e:
        raise _internal_error("station_available_times", e) from e
    return _available_times_response(day, minutes, slots, service)


@router.get("/stations/{station_id}/constraints", response_model=list[ConstraintResponse])
async def get_station_constraints(
    station_id: str,
    day: date = Query(..., description="Business date (YYYY-MM-DD)"),
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        constraints = await service.constraints_for(station_id, day)
    except DatabaseError as e:
        raise _storage_unavailable("constraints_for", e) from e
    except Exception as e:
        raise _internal_error("constraints_for", e) from e
    return [ConstraintResponse.from_domain(item, service.tz) for item in constraints]


@router.post("/constraints", response_model=list[ConstraintResponse], status_code=status.HTTP_201_CREATED)
async def create_constraints(
    payload: ConstraintCreateRequest,
    claims: dict = Depends(manager_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Create one unavailability window per selected station, all or nothing."""
    window = payload.window(service.tz)
    try:
        created = await service.add_constraint_for_stations(
            payload.station_ids, window.start_at, window.end_at, payload.kind, payload.note
        )
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("create_constraints", e) from e
    except Exception as e:
        raise _internal_error("create_constraints", e) from e

    logger.info("Constraints created via API", user_id=claims.get("sub"), count=len(created))
    return [ConstraintResponse.from_domain(item, service.tz) for item in created]


@router.patch("/constraints/{constraint_id}", response_model=ConstraintResponse)
async def update_constraint(
    constraint_id: str,
    payload: ConstraintUpdateRequest,
    claims: dict = Depends(manager_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        updated = await service.update_constraint(constraint_id, **payload.changes(service.tz))
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("update_constraint", e) from e
    except Exception as e:
        raise _internal_error("update_constraint", e) from e
    return ConstraintResponse.from_domain(updated, service.tz)


@router.delete("/constraints/{constraint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_constraint(
    constraint_id: str,
    claims: dict = Depends(manager_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        await service.remove_constraint(constraint_id)
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("delete_constraint", e) from e
    except Exception as e:
        raise _internal_error("delete_constraint", e) from e


@router.patch("/appointments/{appointment_id}/status", response_model=AppointmentResponse)
async def change_appointment_status(
    appointment_id: str,
    payload: StatusTransitionRequest,
    claims: dict = Depends(auth_dependency),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        updated = await service.transition_appointment_status(
            appointment_id, payload.status, payload.expected_version
        )
    except SchedulingError as e:
        raise _scheduling_http_error(e) from e
    except DatabaseError as e:
        raise _storage_unavailable("change_appointment_status", e) from e
    except Exception as e:
        raise _internal_error("change_appointment_status", e) from e
    return AppointmentResponse.from_domain(updated, service.tz)
