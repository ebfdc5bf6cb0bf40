from datetime import date

import pytest

from app.features.scheduling.domain.errors import (
    ConstraintNotFound,
    InvalidConstraintWindow,
    OverlappingConstraint,
    UnknownStation,
)
from app.features.scheduling.domain.models import ConstraintKind
from app.features.scheduling.services.constraint_store import ConstraintStore


@pytest.fixture
def store(constraint_repository, tz):
    return ConstraintStore(constraint_repository, tz)


@pytest.mark.asyncio
async def test_add_and_list_for_business_day(store, at):
    created = await store.add("s1", at(2, 12), at(2, 14), note="  lunch  ")

    listed = await store.constraints_for("s1", date(2026, 3, 2))

    assert [constraint.id for constraint in listed] == [created.id]
    assert listed[0].note == "lunch"
    assert await store.constraints_for("s1", date(2026, 3, 3)) == []
    assert await store.constraints_for("s2", date(2026, 3, 2)) == []


@pytest.mark.asyncio
async def test_inverted_or_empty_window_is_rejected(store, at):
    with pytest.raises(InvalidConstraintWindow):
        await store.add("s1", at(2, 14), at(2, 12))
    with pytest.raises(InvalidConstraintWindow):
        await store.add("s1", at(2, 14), at(2, 14))


@pytest.mark.asyncio
async def test_overlapping_full_blocks_are_rejected(store, at):
    existing = await store.add("s1", at(2, 12), at(2, 14))

    with pytest.raises(OverlappingConstraint) as exc:
        await store.add("s1", at(2, 13), at(2, 15))

    assert exc.value.existing_constraint_id == existing.id


@pytest.mark.asyncio
async def test_touching_full_blocks_are_allowed(store, at):
    await store.add("s1", at(2, 12), at(2, 14))
    await store.add("s1", at(2, 14), at(2, 16))

    assert len(await store.constraints_for("s1", date(2026, 3, 2))) == 2


@pytest.mark.asyncio
async def test_capacity_limits_may_overlap_blocks(store, at):
    await store.add("s1", at(2, 12), at(2, 14))
    await store.add("s1", at(2, 13), at(2, 15), kind=ConstraintKind.CAPACITY_LIMIT)

    assert len(await store.constraints_for("s1", date(2026, 3, 2))) == 2


@pytest.mark.asyncio
async def test_multi_station_add_is_all_or_nothing(store, constraint_repository, at):
    await store.add("s2", at(2, 9), at(2, 10))

    with pytest.raises(OverlappingConstraint):
        await store.add_for_stations(["s1", "s2"], at(2, 9), at(2, 11))

    # Nothing was written for s1 either
    assert await store.constraints_for("s1", date(2026, 3, 2)) == []
    assert len(constraint_repository.constraints) == 1


@pytest.mark.asyncio
async def test_unknown_station_is_rejected(store, at):
    with pytest.raises(UnknownStation):
        await store.add_for_stations(["s1", "nope"], at(2, 9), at(2, 10))


@pytest.mark.asyncio
async def test_update_moves_window_and_rechecks_overlap(store, at):
    first = await store.add("s1", at(2, 9), at(2, 10))
    second = await store.add("s1", at(2, 12), at(2, 13))

    moved = await store.update(second.id, start_at=at(2, 11))
    assert moved.start_at == at(2, 11)
    assert moved.end_at == at(2, 13)

    with pytest.raises(OverlappingConstraint):
        await store.update(second.id, start_at=at(2, 9, 30))

    with pytest.raises(InvalidConstraintWindow):
        await store.update(first.id, end_at=at(2, 8))


@pytest.mark.asyncio
async def test_update_note_can_be_cleared(store, at):
    created = await store.add("s1", at(2, 9), at(2, 10), note="vet visit")

    unchanged = await store.update(created.id, kind=ConstraintKind.FULL_BLOCK)
    assert unchanged.note == "vet visit"

    cleared = await store.update(created.id, note=None)
    assert cleared.note is None


@pytest.mark.asyncio
async def test_remove(store, at):
    created = await store.add("s1", at(2, 9), at(2, 10))

    await store.remove(created.id)

    assert await store.constraints_for("s1", date(2026, 3, 2)) == []
    with pytest.raises(ConstraintNotFound):
        await store.remove(created.id)
