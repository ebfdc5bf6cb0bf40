import asyncio
import random
from datetime import timedelta

import pytest

from app.features.scheduling.domain.models import (
    Committed,
    ConflictReason,
    InviteSource,
    ProposedMeeting,
    Rejected,
    ResolutionState,
    TimeWindow,
)


def meeting(at, start, end, **kwargs) -> ProposedMeeting:
    kwargs.setdefault("id", "m-1")
    kwargs.setdefault("service_type", "full_groom")
    return ProposedMeeting(window=TimeWindow(at(*start), at(*end)), **kwargs)


@pytest.mark.asyncio
async def test_station_booked_over_existing_appointment_is_rejected(service, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 10, 30))

    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10, 15), (2, 10, 45), station_id="s1", invites=("c2",))
    )

    assert isinstance(outcome, Rejected)
    assert outcome.reason == "conflict"
    assert outcome.conflict.reason is ConflictReason.APPOINTMENT
    assert outcome.conflict.conflicting_entity_id == "a1"
    assert outcome.failed_in is ResolutionState.VALIDATING
    assert outcome.retryable is False


@pytest.mark.asyncio
async def test_station_blocked_by_constraint_is_rejected(service, at):
    await service.add_constraint("s1", at(2, 9), at(2, 12))

    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 10, 30), station_id="s1", invites=("c1",))
    )

    assert isinstance(outcome, Rejected)
    assert outcome.conflict.reason is ConflictReason.CONSTRAINT


@pytest.mark.asyncio
async def test_category_and_manual_invite_overlap_books_each_customer_once(service, appointment_store, at):
    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 11), station_id="s1", invites=("c4",), categories=("small-dogs",))
    )

    assert isinstance(outcome, Committed)
    assert [invite.customer_id for invite in outcome.invites] == ["c4", "c3"]
    assert outcome.invites[0].source is InviteSource.MANUAL
    assert len(outcome.appointment_ids) == 2
    booked = [appointment_store.appointments[appointment_id] for appointment_id in outcome.appointment_ids]
    assert {appointment.customer_id for appointment in booked} == {"c3", "c4"}
    assert all(appointment.meeting_id == "m-1" for appointment in booked)


@pytest.mark.asyncio
async def test_concurrent_submissions_for_same_slot_commit_once(service, appointment_store, at):
    first = meeting(at, (2, 14), (2, 14, 30), id="m-a", station_id="s1", invites=("c1",))
    second = meeting(at, (2, 14), (2, 14, 30), id="m-b", station_id="s1", invites=("c2",))

    outcomes = await asyncio.gather(service.submit_proposed_meeting(first), service.submit_proposed_meeting(second))

    committed = [outcome for outcome in outcomes if isinstance(outcome, Committed)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, Rejected)]
    assert len(committed) == 1
    assert len(rejected) == 1
    assert rejected[0].reason in {"concurrent_booking_conflict", "conflict"}
    assert len(appointment_store.appointments) == 1


@pytest.mark.asyncio
async def test_auto_assignment_follows_priority_then_display_order(service, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11))

    outcome = await service.submit_proposed_meeting(meeting(at, (2, 10), (2, 11), invites=("c2",)))
    assert isinstance(outcome, Committed)
    assert outcome.station_id == "s2"

    preferred = await service.submit_proposed_meeting(
        meeting(at, (2, 12), (2, 13), id="m-2", invites=("c2",)), station_priority=["s2"]
    )
    assert preferred.station_id == "s2"


@pytest.mark.asyncio
async def test_no_station_available(service, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11))
    seed_appointment("a2", "c2", "s2", at(2, 10), at(2, 11))

    outcome = await service.submit_proposed_meeting(meeting(at, (2, 10), (2, 11), invites=("c3",)))

    assert isinstance(outcome, Rejected)
    assert outcome.reason == "no_station_available"
    assert len(outcome.detail["conflicts"]) == 2


@pytest.mark.asyncio
async def test_inactive_or_unknown_station_is_rejected(service, at):
    inactive = await service.submit_proposed_meeting(meeting(at, (2, 10), (2, 11), station_id="s3", invites=("c1",)))
    unknown = await service.submit_proposed_meeting(meeting(at, (2, 10), (2, 11), station_id="s9", invites=("c1",)))

    assert inactive.reason == "unknown_station"
    assert unknown.reason == "unknown_station"


@pytest.mark.asyncio
async def test_unknown_category_is_rejected_while_expanding(service, appointment_store, at):
    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 11), station_id="s1", invites=("c1",), categories=("cats",))
    )

    assert outcome.reason == "unknown_category"
    assert outcome.failed_in is ResolutionState.EXPANDING
    assert appointment_store.appointments == {}


@pytest.mark.asyncio
async def test_empty_invite_set_is_rejected(service, at):
    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 11), station_id="s1", categories=("empty",))
    )

    assert outcome.reason == "empty_invite_set"


@pytest.mark.asyncio
async def test_inverted_window_is_rejected(service, at):
    outcome = await service.submit_proposed_meeting(meeting(at, (2, 11), (2, 10), station_id="s1", invites=("c1",)))

    assert outcome.reason == "invalid_proposed_meeting"
    assert outcome.failed_in is ResolutionState.RECEIVED


@pytest.mark.asyncio
async def test_customer_removed_before_commit_is_stale(service, directory, appointment_store, at, monkeypatch):
    original_select = service.resolver._select_station

    async def select_then_remove(*args, **kwargs):
        result = await original_select(*args, **kwargs)
        directory.remove_customer("c3")
        return result

    monkeypatch.setattr(service.resolver, "_select_station", select_then_remove)

    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 11), station_id="s1", invites=("c1",), categories=("small-dogs",))
    )

    assert outcome.reason == "stale_invite_data"
    assert outcome.detail["customer_ids"] == ["c3"]
    assert outcome.failed_in is ResolutionState.COMMITTING
    assert appointment_store.appointments == {}


@pytest.mark.asyncio
async def test_cancellation_before_commit_writes_nothing(service, appointment_store, at):
    cancel = asyncio.Event()
    cancel.set()

    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 11), station_id="s1", invites=("c1",)), cancel_event=cancel
    )

    assert outcome.reason == "resolution_cancelled"
    assert outcome.retryable is True
    assert appointment_store.appointments == {}


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_commit(service, notifier, appointment_store, at, monkeypatch):
    async def broken_dispatch(appointments):
        raise RuntimeError("queue down")

    monkeypatch.setattr(notifier, "dispatch", broken_dispatch)

    outcome = await service.submit_proposed_meeting(
        meeting(at, (2, 10), (2, 11), station_id="s1", invites=("c1",))
    )

    assert isinstance(outcome, Committed)
    assert outcome.appointment_ids[0] in appointment_store.appointments


@pytest.mark.asyncio
async def test_committed_meeting_dispatches_reminders(service, notifier, at):
    outcome = await service.submit_proposed_meeting(
        meeting(
            at,
            (2, 10),
            (2, 11),
            station_id="s1",
            invites=("c1", "c2"),
            title=" Bath ",
            summary="Short trim",
            notes="Nervous dog",
        )
    )

    assert isinstance(outcome, Committed)
    assert [appointment.customer_id for appointment in notifier.dispatched] == ["c1", "c2"]
    first = notifier.dispatched[0]
    assert first.title == "Bath"
    assert first.customer_notes == "Short trim"
    assert first.internal_notes == "Nervous dog"


@pytest.mark.asyncio
async def test_randomized_concurrent_submissions_never_overlap(service, appointment_store, at):
    rng = random.Random(7)
    quarter = timedelta(minutes=15)
    meetings = []
    for index in range(40):
        start = at(2, 8) + rng.randrange(0, 32) * quarter
        end = start + rng.choice([1, 2, 3, 4]) * quarter
        meetings.append(
            ProposedMeeting(
                id=f"m-{index}",
                service_type="full_groom",
                window=TimeWindow(start, end),
                station_id=rng.choice(["s1", "s2", None]),
                invites=(rng.choice(["c1", "c2", "c3", "c4", "c5"]),),
            )
        )

    outcomes = await asyncio.gather(*(service.submit_proposed_meeting(item) for item in meetings))

    assert any(isinstance(outcome, Committed) for outcome in outcomes)
    active = [appointment for appointment in appointment_store.appointments.values() if appointment.is_active]
    for station_id in ("s1", "s2"):
        booked = sorted(
            (appointment for appointment in active if appointment.station_id == station_id),
            key=lambda appointment: appointment.start_at,
        )
        for earlier, later in zip(booked, booked[1:]):
            assert earlier.end_at <= later.start_at
