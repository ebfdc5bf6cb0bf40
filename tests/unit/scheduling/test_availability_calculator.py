from datetime import date

import pytest

from app.features.scheduling.domain.errors import InvalidSlotRequest, UnknownStation
from app.features.scheduling.domain.models import AppointmentStatus, ConstraintKind, TimeWindow
from app.features.scheduling.services.availability_calculator import merge_windows, subtract_windows

MONDAY = date(2026, 3, 2)
SATURDAY = date(2026, 3, 7)


def times(slots, tz) -> list[str]:
    return [slot.window.start_at.astimezone(tz).strftime("%H:%M") for slot in slots]


@pytest.mark.asyncio
async def test_free_day_offers_hourly_slots_within_opening_hours(service, tz):
    slots = await service.available_slots("s1", MONDAY, 60)

    assert times(slots, tz) == ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]
    assert all(slot.station_id == "s1" for slot in slots)


@pytest.mark.asyncio
async def test_appointment_in_the_middle_removes_its_slot(service, seed_appointment, tz, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11))

    slot_times = times(await service.available_slots("s1", MONDAY, 60), tz)

    assert "10:00" not in slot_times
    assert "09:00" in slot_times
    assert "11:00" in slot_times


@pytest.mark.asyncio
async def test_cancelled_appointments_do_not_block(service, seed_appointment, tz, at):
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11), status=AppointmentStatus.CANCELLED)

    assert "10:00" in times(await service.available_slots("s1", MONDAY, 60), tz)


@pytest.mark.asyncio
async def test_block_resumes_slots_at_its_end_without_rounding(service, tz, at):
    await service.add_constraint("s1", at(2, 9, 30), at(2, 11, 30))

    slot_times = times(await service.available_slots("s1", MONDAY, 60), tz)

    assert not {"09:00", "10:00", "11:00"} & set(slot_times)
    assert slot_times[0] == "11:30"
    assert "12:00" not in slot_times
    assert "12:30" in slot_times


@pytest.mark.asyncio
async def test_capacity_limits_leave_slots_open(service, tz, at):
    await service.add_constraint("s1", at(2, 9), at(2, 17), kind=ConstraintKind.CAPACITY_LIMIT)

    assert len(await service.available_slots("s1", MONDAY, 60)) == 8


@pytest.mark.asyncio
async def test_last_slot_still_ends_by_closing_time(service, tz):
    slots = await service.available_slots("s1", MONDAY, 90)

    assert times(slots, tz)[-1] == "15:00"
    assert slots[-1].window.end_at.astimezone(tz).strftime("%H:%M") == "16:30"


@pytest.mark.asyncio
async def test_fully_booked_station_leaves_the_other_station(service, seed_appointment, tz, at):
    seed_appointment("a1", "c1", "s1", at(2, 9), at(2, 17))

    slots = await service.available_times(MONDAY, 60)

    assert {slot.station_id for slot in slots} == {"s2"}
    assert times(slots, tz)[0] == "09:00"


@pytest.mark.asyncio
async def test_available_times_are_ordered_by_time_then_station(service, tz):
    slots = await service.available_times(MONDAY, 60)

    assert [(time, slot.station_id) for time, slot in zip(times(slots, tz), slots)][:4] == [
        ("09:00", "s1"),
        ("09:00", "s2"),
        ("10:00", "s1"),
        ("10:00", "s2"),
    ]
    # inactive station s3 never offers slots
    assert "s3" not in {slot.station_id for slot in slots}


@pytest.mark.asyncio
async def test_closed_weekday_has_no_slots(service):
    assert await service.available_slots("s1", SATURDAY, 60) == []
    assert await service.available_times(SATURDAY, 60) == []


@pytest.mark.asyncio
async def test_long_appointment_shifts_following_slots_to_its_end(service, seed_appointment, tz, at):
    seed_appointment("a1", "c1", "s1", at(2, 11), at(2, 14, 30))

    slot_times = times(await service.available_slots("s1", MONDAY, 60), tz)

    index = slot_times.index("14:30")
    assert slot_times[index + 1] == "15:30"
    assert slot_times[:2] == ["09:00", "10:00"]


@pytest.mark.asyncio
async def test_station_break_is_kept_after_each_appointment(
    service, constraint_repository, seed_appointment, tz, at
):
    constraint_repository.stations["s1"].break_minutes = 15
    seed_appointment("a1", "c1", "s1", at(2, 10), at(2, 11))

    slot_times = times(await service.available_slots("s1", MONDAY, 60), tz)

    assert slot_times == ["09:00", "11:15", "12:15", "13:15", "14:15", "15:15"]


@pytest.mark.asyncio
async def test_break_after_early_appointment_delays_opening(service, constraint_repository, seed_appointment, tz, at):
    constraint_repository.stations["s1"].break_minutes = 15
    seed_appointment("a1", "c1", "s1", at(2, 8), at(2, 8, 55))

    assert times(await service.available_slots("s1", MONDAY, 60), tz)[0] == "09:10"


@pytest.mark.asyncio
async def test_increments(service, constraint_repository, tz):
    packed = await service.available_slots("s1", MONDAY, 90, increment_minutes=0)
    assert times(packed, tz) == ["09:00", "10:30", "12:00", "13:30", "15:00"]

    constraint_repository.stations["s1"].slot_increment_minutes = 30
    half_hourly = await service.available_slots("s1", MONDAY, 60)
    assert len(half_hourly) == 15
    assert times(half_hourly, tz)[:3] == ["09:00", "09:30", "10:00"]


@pytest.mark.asyncio
async def test_slots_on_daylight_saving_day_follow_local_hours(service, tz, at):
    # Clocks move forward at 02:00 on Friday 27 March 2026
    slots = await service.available_slots("s1", date(2026, 3, 27), 60)

    assert slots[0].window.start_at == at(27, 9)
    assert times(slots, tz)[-1] == "16:00"


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", [0, -30])
async def test_duration_must_be_positive(service, duration):
    with pytest.raises(InvalidSlotRequest):
        await service.available_slots("s1", MONDAY, duration)
    with pytest.raises(InvalidSlotRequest):
        await service.available_times(MONDAY, duration)


@pytest.mark.asyncio
@pytest.mark.parametrize("station_id", ["s3", "nope"])
async def test_slots_require_an_active_station(service, station_id):
    with pytest.raises(UnknownStation):
        await service.available_slots(station_id, MONDAY, 60)


def test_merge_and_subtract_windows(at):
    merged = merge_windows(
        [
            TimeWindow(at(2, 12), at(2, 13)),
            TimeWindow(at(2, 9), at(2, 10)),
            TimeWindow(at(2, 10), at(2, 11)),
            TimeWindow(at(2, 14), at(2, 14)),
        ]
    )
    assert merged == [TimeWindow(at(2, 9), at(2, 11)), TimeWindow(at(2, 12), at(2, 13))]

    remaining = subtract_windows(
        [TimeWindow(at(2, 9), at(2, 17))],
        [TimeWindow(at(2, 10), at(2, 11)), TimeWindow(at(2, 16), at(2, 18))],
    )
    assert remaining == [TimeWindow(at(2, 9), at(2, 10)), TimeWindow(at(2, 11), at(2, 16))]
