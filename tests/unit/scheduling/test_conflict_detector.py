import random
from datetime import timedelta

import pytest

from app.features.scheduling.domain.errors import NoStationAvailable
from app.features.scheduling.domain.models import (
    AppointmentStatus,
    Available,
    Conflict,
    ConflictReason,
    ConstraintKind,
    TimeWindow,
)
from app.features.scheduling.services.conflict_detector import ConflictDetector
from app.features.scheduling.services.constraint_store import ConstraintStore

HALF_HOUR = timedelta(minutes=30)


@pytest.fixture
def constraint_store(constraint_repository, tz):
    return ConstraintStore(constraint_repository, tz)


@pytest.fixture
def detector(constraint_store, appointment_store, tz):
    return ConflictDetector(constraint_store, appointment_store, tz)


@pytest.mark.asyncio
async def test_overlapping_appointment_is_a_conflict(detector, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 10, 30))

    result = await detector.check_availability("s1", TimeWindow(at(2, 10, 15), at(2, 10, 45)))

    assert isinstance(result, Conflict)
    assert result.reason is ConflictReason.APPOINTMENT
    assert result.conflicting_entity_id == "a1"


@pytest.mark.asyncio
async def test_full_block_constraint_is_a_conflict(detector, constraint_store, at):
    block = await constraint_store.add("s1", at(2, 9), at(2, 12))

    result = await detector.check_availability("s1", TimeWindow(at(2, 10), at(2, 10, 30)))

    assert isinstance(result, Conflict)
    assert result.reason is ConflictReason.CONSTRAINT
    assert result.conflicting_entity_id == block.id


@pytest.mark.asyncio
async def test_constraint_is_reported_before_appointment(detector, constraint_store, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 10, 30))
    await constraint_store.add("s1", at(2, 9), at(2, 12))

    result = await detector.check_availability("s1", TimeWindow(at(2, 10), at(2, 10, 30)))

    assert result.reason is ConflictReason.CONSTRAINT


@pytest.mark.asyncio
async def test_touching_windows_do_not_conflict(detector, constraint_store, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 10, 30))
    await constraint_store.add("s1", at(2, 11), at(2, 12))

    result = await detector.check_availability("s1", TimeWindow(at(2, 10, 30), at(2, 11)))

    assert isinstance(result, Available)


@pytest.mark.asyncio
async def test_cancelled_appointments_and_capacity_limits_are_ignored(
    detector, constraint_store, seed_appointment, at
):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11), status=AppointmentStatus.CANCELLED)
    await constraint_store.add("s1", at(2, 10), at(2, 11), kind=ConstraintKind.CAPACITY_LIMIT)

    result = await detector.check_availability("s1", TimeWindow(at(2, 10), at(2, 11)))

    assert isinstance(result, Available)


@pytest.mark.asyncio
async def test_other_stations_do_not_conflict(detector, seed_appointment, at):
    seed_appointment("a1", "c1", "s2", at(2, 10), at(2, 11))

    assert isinstance(await detector.check_availability("s1", TimeWindow(at(2, 10), at(2, 11))), Available)


@pytest.mark.asyncio
async def test_excluded_appointment_is_ignored(detector, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11))

    result = await detector.check_availability("s1", TimeWindow(at(2, 10), at(2, 11)), exclude_appointment_id="a1")

    assert isinstance(result, Available)


@pytest.mark.asyncio
async def test_window_crossing_midnight_checks_next_day(detector, constraint_store, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(3, 0, 30), at(3, 1))

    result = await detector.check_availability("s1", TimeWindow(at(2, 23), at(3, 1)))
    assert isinstance(result, Conflict)
    assert result.conflicting_entity_id == "a1"

    block = await constraint_store.add("s2", at(3, 0), at(3, 6))
    result = await detector.check_availability("s2", TimeWindow(at(2, 23), at(3, 1)))
    assert result.conflicting_entity_id == block.id


@pytest.mark.asyncio
async def test_long_appointment_from_previous_day_is_found(detector, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(1, 20), at(2, 9))

    result = await detector.check_availability("s1", TimeWindow(at(2, 8), at(2, 8, 30)))

    assert isinstance(result, Conflict)


@pytest.mark.asyncio
async def test_find_available_station_respects_order(detector, seed_appointment, at):
    seed_appointment("a1", "c1", "s2", at(2, 10), at(2, 11))
    window = TimeWindow(at(2, 10), at(2, 11))

    result = await detector.find_available_station(["s2", "s1"], window)

    assert result.station_id == "s1"


@pytest.mark.asyncio
async def test_no_station_available_collects_conflicts(detector, seed_appointment, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11))
    seed_appointment("a2", "c2", "s2", at(2, 10), at(2, 11))

    with pytest.raises(NoStationAvailable) as exc:
        await detector.find_available_station(["s1", "s2"], TimeWindow(at(2, 10), at(2, 11)))

    assert [conflict.conflicting_entity_id for conflict in exc.value.conflicts] == ["a1", "a2"]


@pytest.mark.asyncio
async def test_conflict_iff_window_intersects_booking(detector, seed_appointment, at):
    rng = random.Random(20260302)
    booked = []
    for index in range(8):
        start = at(2, 8) + rng.randrange(0, 20) * HALF_HOUR
        end = start + rng.choice([1, 2]) * HALF_HOUR
        if any(start < other.end_at and other.start_at < end for other in booked):
            continue
        booked.append(TimeWindow(start, end))
        seed_appointment(f"a{index}", "c1", "s1", start, end)

    for _ in range(50):
        start = at(2, 7) + rng.randrange(0, 28) * HALF_HOUR
        window = TimeWindow(start, start + HALF_HOUR)
        expected = any(window.overlaps(other) for other in booked)

        result = await detector.check_availability("s1", window)

        assert isinstance(result, Conflict) is expected
