"""
Reschedule Linker - supersedes the original appointment on commit.

The link is stamped on the new appointment that belongs to the original
appointment's customer before insertion, and the original is cancelled
with a version compare-and-swap inside the same booking transaction. If
either step fails the transaction rolls back and nothing changes.
"""

from collections.abc import Sequence

from app.features.scheduling.domain.errors import OriginalAlreadyResolved, RescheduleTargetMismatch
from app.features.scheduling.domain.models import Appointment, AppointmentDraft, RescheduleLink
from app.features.scheduling.ports import BookingTransaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RescheduleLinker:
    def link_drafts(
        self, drafts: Sequence[AppointmentDraft], original: Appointment, link: RescheduleLink
    ) -> AppointmentDraft:
        """Mark exactly one draft as superseding `original`; returns it."""
        target = next((draft for draft in drafts if draft.customer_id == original.customer_id), None)
        if target is None:
            raise RescheduleTargetMismatch(
                "Rescheduled appointment's customer is not among the meeting's invites",
                detail={"appointment_id": original.id, "customer_id": original.customer_id},
            )

        target.superseded_appointment_id = original.id
        target.reschedule_original_start_at = link.original_start_at or original.start_at
        target.reschedule_original_end_at = link.original_end_at or original.end_at
        return target

    async def finalize(
        self,
        tx: BookingTransaction,
        new_appointments: Sequence[Appointment],
        original: Appointment,
        expected_version: int,
    ) -> Appointment:
        """Cancel the original if it is still at `expected_version`. Raises OriginalAlreadyResolved."""
        linked = [appointment for appointment in new_appointments if appointment.superseded_appointment_id == original.id]
        if len(linked) != 1:
            raise RescheduleTargetMismatch(
                "Exactly one new appointment must supersede the original",
                detail={"appointment_id": original.id, "linked": len(linked)},
            )

        cancelled = await tx.cancel_if_version(original.id, expected_version)
        if cancelled is None:
            logger.info(
                "Reschedule lost version race",
                original_appointment_id=original.id,
                expected_version=expected_version,
            )
            raise OriginalAlreadyResolved(original.id)

        logger.info(
            "Original appointment superseded",
            original_appointment_id=original.id,
            new_appointment_id=linked[0].id,
        )
        return cancelled
