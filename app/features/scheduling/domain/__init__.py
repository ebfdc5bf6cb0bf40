from app.features.scheduling.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    Available,
    Committed,
    Conflict,
    ConflictReason,
    Constraint,
    ConstraintKind,
    InviteSource,
    ProposedMeeting,
    Rejected,
    RescheduleLink,
    ResolutionState,
    ResolvedInvite,
    Station,
    TimeWindow,
)

__all__ = [
    "Appointment",
    "AppointmentDraft",
    "AppointmentStatus",
    "Available",
    "Committed",
    "Conflict",
    "ConflictReason",
    "Constraint",
    "ConstraintKind",
    "InviteSource",
    "ProposedMeeting",
    "Rejected",
    "RescheduleLink",
    "ResolutionState",
    "ResolvedInvite",
    "Station",
    "TimeWindow",
]
