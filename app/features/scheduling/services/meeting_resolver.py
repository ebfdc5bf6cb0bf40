"""
Proposed Meeting Resolver.

Drives one proposed meeting through

    received -> expanding -> validating -> committing -> committed | rejected

and always returns a single outcome: Committed or Rejected. Nothing is
retried here; ConcurrentBookingConflict and OriginalAlreadyResolved come
back marked retryable so the caller can resubmit after re-reading state.

Cancellation is honoured up to the start of the commit. Once committing,
the booking transaction runs to completion even if the awaiting request
goes away.
"""

import asyncio
from collections.abc import Sequence
from zoneinfo import ZoneInfo

from app.features.scheduling.domain.errors import (
    AppointmentNotFound,
    InvalidProposedMeeting,
    OriginalAlreadyResolved,
    RescheduleTargetMismatch,
    ResolutionCancelled,
    SchedulingError,
    StaleInviteData,
    StationConflict,
    UnknownStation,
)
from app.features.scheduling.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    Available,
    Committed,
    Conflict,
    ProposedMeeting,
    Rejected,
    ResolutionState,
    ResolvedInvite,
)
from app.features.scheduling.domain.normalization import business_dates_spanned, sanitize_text, unique_ordered
from app.features.scheduling.ports import AppointmentStore, CustomerDirectory, NotificationDispatcher
from app.features.scheduling.services.category_expansion import CategoryExpansionResolver
from app.features.scheduling.services.conflict_detector import ConflictDetector
from app.features.scheduling.services.constraint_store import ConstraintStore
from app.features.scheduling.services.reschedule_linker import RescheduleLinker
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class _Resolution:
    """Tracks the state of one submission and logs every transition."""

    def __init__(self, meeting: ProposedMeeting):
        self.meeting = meeting
        self.state = ResolutionState.RECEIVED
        logger.info(
            "Proposed meeting received",
            meeting_id=meeting.id,
            station_id=meeting.station_id,
            invites=len(meeting.invites),
            categories=len(meeting.categories),
            reschedule=meeting.reschedule is not None,
        )

    def advance(self, target: ResolutionState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Resolution {self.meeting.id} already {self.state.value}")
        logger.info(
            "Proposed meeting state transition",
            meeting_id=self.meeting.id,
            from_state=self.state.value,
            to_state=target.value,
        )
        self.state = target


class ProposedMeetingResolver:
    def __init__(
        self,
        *,
        expansion: CategoryExpansionResolver,
        detector: ConflictDetector,
        constraints: ConstraintStore,
        appointments: AppointmentStore,
        directory: CustomerDirectory,
        linker: RescheduleLinker,
        notifier: NotificationDispatcher,
        tz: ZoneInfo,
        station_priority: Sequence[str] = (),
    ):
        self.expansion = expansion
        self.detector = detector
        self.constraints = constraints
        self.appointments = appointments
        self.directory = directory
        self.linker = linker
        self.notifier = notifier
        self.tz = tz
        self.station_priority = list(station_priority)

    async def submit(
        self,
        meeting: ProposedMeeting,
        *,
        station_priority: Sequence[str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Committed | Rejected:
        run = _Resolution(meeting)
        try:
            self._check_meeting(meeting)

            run.advance(ResolutionState.EXPANDING)
            invites = await self.expansion.resolve_invites(
                meeting.invites, meeting.categories, meeting_id=meeting.id
            )
            self._check_cancelled(meeting, cancel_event)

            run.advance(ResolutionState.VALIDATING)
            original, expected_version = await self._load_original(meeting, invites)
            available = await self._select_station(
                meeting, station_priority, exclude_appointment_id=original.id if original else None
            )
            self._check_cancelled(meeting, cancel_event)

            run.advance(ResolutionState.COMMITTING)
            commit = asyncio.ensure_future(
                self._commit(meeting, invites, available.station_id, original, expected_version)
            )
            created = await asyncio.shield(commit)

        except SchedulingError as e:
            failed_in = run.state
            run.advance(ResolutionState.REJECTED)
            logger.info(
                "Proposed meeting rejected",
                meeting_id=meeting.id,
                reason=e.error_code,
                retryable=e.retryable,
                failed_in=failed_in.value,
            )
            return Rejected(
                meeting_id=meeting.id,
                reason=e.error_code,
                message=e.message,
                retryable=e.retryable,
                detail=e.detail,
                conflict=e.conflict if isinstance(e, StationConflict) else None,
                failed_in=failed_in,
            )

        run.advance(ResolutionState.COMMITTED)
        logger.info(
            "Proposed meeting committed",
            meeting_id=meeting.id,
            station_id=available.station_id,
            appointment_count=len(created),
        )
        await self._notify(meeting, created)

        return Committed(
            meeting_id=meeting.id,
            station_id=available.station_id,
            appointment_ids=tuple(appointment.id for appointment in created),
            invites=tuple(invites),
            superseded_appointment_id=original.id if original else None,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_meeting(self, meeting: ProposedMeeting) -> None:
        if not meeting.window.is_valid:
            raise InvalidProposedMeeting(
                "Meeting end time must be after its start time",
                detail={"start_at": meeting.window.start_at.isoformat(), "end_at": meeting.window.end_at.isoformat()},
            )
        if not sanitize_text(meeting.service_type):
            raise InvalidProposedMeeting("Meeting has no service type")

    def _check_cancelled(self, meeting: ProposedMeeting, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ResolutionCancelled(meeting.id)

    async def _load_original(
        self, meeting: ProposedMeeting, invites: Sequence[ResolvedInvite]
    ) -> tuple[Appointment | None, int | None]:
        link = meeting.reschedule
        if link is None:
            return None, None

        original = await self.appointments.get_appointment(link.appointment_id)
        if original is None:
            raise AppointmentNotFound(link.appointment_id)
        if original.status is not AppointmentStatus.SCHEDULED:
            raise OriginalAlreadyResolved(original.id)
        if link.expected_version is not None and link.expected_version != original.version:
            raise OriginalAlreadyResolved(original.id)
        if link.original_start_at and link.original_start_at != original.start_at:
            raise OriginalAlreadyResolved(original.id)

        if link.customer_id and link.customer_id != original.customer_id:
            raise RescheduleTargetMismatch(
                "Reschedule customer does not match the original appointment",
                detail={"appointment_id": original.id, "customer_id": link.customer_id},
            )
        if original.customer_id not in {invite.customer_id for invite in invites}:
            raise RescheduleTargetMismatch(
                "Rescheduled appointment's customer is not among the meeting's invites",
                detail={"appointment_id": original.id, "customer_id": original.customer_id},
            )
        if original.service_type != meeting.service_type:
            raise RescheduleTargetMismatch(
                "Reschedule must keep the original service type",
                detail={"appointment_id": original.id, "service_type": original.service_type},
            )

        return original, link.expected_version or original.version

    async def _select_station(
        self,
        meeting: ProposedMeeting,
        station_priority: Sequence[str] | None,
        *,
        exclude_appointment_id: str | None,
    ) -> Available:
        active = await self.constraints.list_stations(active_only=True)
        active_ids = [station.id for station in active]

        if meeting.station_id:
            if meeting.station_id not in active_ids:
                raise UnknownStation(meeting.station_id)
            result = await self.detector.check_availability(
                meeting.station_id, meeting.window, exclude_appointment_id
            )
            if isinstance(result, Conflict):
                raise StationConflict(result)
            return result

        # Caller preference, then configured priority, then display order
        known = set(active_ids)
        ordered = unique_ordered([*(station_priority or ()), *self.station_priority, *active_ids])
        candidates = [station_id for station_id in ordered if station_id in known]
        return await self.detector.find_available_station(candidates, meeting.window, exclude_appointment_id)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _build_drafts(
        self, meeting: ProposedMeeting, invites: Sequence[ResolvedInvite], station_id: str
    ) -> list[AppointmentDraft]:
        return [
            AppointmentDraft(
                customer_id=invite.customer_id,
                station_id=station_id,
                service_type=meeting.service_type,
                start_at=meeting.window.start_at,
                end_at=meeting.window.end_at,
                meeting_id=meeting.id,
                title=sanitize_text(meeting.title),
                customer_notes=sanitize_text(meeting.summary),
                internal_notes=sanitize_text(meeting.notes),
            )
            for invite in invites
        ]

    async def _commit(
        self,
        meeting: ProposedMeeting,
        invites: Sequence[ResolvedInvite],
        station_id: str,
        original: Appointment | None,
        expected_version: int | None,
    ) -> list[Appointment]:
        missing = await self.directory.missing_customers([invite.customer_id for invite in invites])
        if missing:
            raise StaleInviteData(missing)

        drafts = self._build_drafts(meeting, invites, station_id)
        if original is not None:
            self.linker.link_drafts(drafts, original, meeting.reschedule)

        days = business_dates_spanned(meeting.window.start_at, meeting.window.end_at, self.tz)
        async with self.appointments.booking_transaction(station_id, days) as tx:
            created = await tx.insert(drafts, exclude_appointment_id=original.id if original else None)
            if original is not None:
                await self.linker.finalize(tx, created, original, expected_version)
        return created

    async def _notify(self, meeting: ProposedMeeting, appointments: Sequence[Appointment]) -> None:
        try:
            await self.notifier.dispatch(appointments)
        except Exception as e:
            logger.error("Reminder dispatch failed", meeting_id=meeting.id, error=str(e))
