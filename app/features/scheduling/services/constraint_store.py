"""
Constraint Store - manager-defined unavailability per station.

Full-block constraints on one station may never overlap each other.
Capacity-limit constraints are stored alongside and may be layered freely.
"""

from collections.abc import Sequence
from dataclasses import replace
from datetime import date, datetime
from zoneinfo import ZoneInfo

from app.features.scheduling.domain.errors import (
    ConstraintNotFound,
    InvalidConstraintWindow,
    OverlappingConstraint,
    UnknownStation,
)
from app.features.scheduling.domain.models import Constraint, ConstraintKind, Station, TimeWindow
from app.features.scheduling.domain.normalization import business_day_bounds, ensure_utc, sanitize_text
from app.features.scheduling.ports import ConstraintRepository, ConstraintWriter
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UNSET = object()


class ConstraintStore:
    def __init__(self, repository: ConstraintRepository, tz: ZoneInfo):
        self.repository = repository
        self.tz = tz

    async def constraints_for(self, station_id: str, day: date) -> list[Constraint]:
        """Every constraint intersecting the business day, ordered by start time."""
        day_start, day_end = business_day_bounds(day, self.tz)
        return await self.repository.list_for_station(station_id, day_start, day_end)

    async def add(
        self,
        station_id: str,
        start_at: datetime,
        end_at: datetime,
        kind: ConstraintKind = ConstraintKind.FULL_BLOCK,
        note: str | None = None,
    ) -> Constraint:
        created = await self.add_for_stations([station_id], start_at, end_at, kind, note)
        return created[0]

    async def add_for_stations(
        self,
        station_ids: Sequence[str],
        start_at: datetime,
        end_at: datetime,
        kind: ConstraintKind = ConstraintKind.FULL_BLOCK,
        note: str | None = None,
    ) -> list[Constraint]:
        """Create the same window on several stations. All or nothing."""
        window = _checked_window(start_at, end_at)
        note = sanitize_text(note)
        targets = list(dict.fromkeys(station_ids))
        await self._require_stations(targets)

        async with self.repository.write_transaction(targets) as writer:
            drafts = []
            for station_id in targets:
                if kind is ConstraintKind.FULL_BLOCK:
                    await self._reject_overlap(writer, station_id, window)
                drafts.append(
                    Constraint(
                        id="",
                        station_id=station_id,
                        start_at=window.start_at,
                        end_at=window.end_at,
                        kind=kind,
                        note=note,
                    )
                )
            created = await writer.insert(drafts)

        logger.info(
            "Station constraints added",
            station_ids=targets,
            kind=kind.value,
            start_at=window.start_at.isoformat(),
            end_at=window.end_at.isoformat(),
        )
        return created

    async def update(
        self,
        constraint_id: str,
        *,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        kind: ConstraintKind | None = None,
        note=_UNSET,
    ) -> Constraint:
        existing = await self.repository.get(constraint_id)
        if existing is None:
            raise ConstraintNotFound(constraint_id)

        async with self.repository.write_transaction([existing.station_id]) as writer:
            current = await writer.get(constraint_id)
            if current is None:
                raise ConstraintNotFound(constraint_id)

            window = _checked_window(start_at or current.start_at, end_at or current.end_at)
            updated = replace(
                current,
                start_at=window.start_at,
                end_at=window.end_at,
                kind=kind or current.kind,
                note=current.note if note is _UNSET else sanitize_text(note),
            )
            if updated.is_blocking:
                await self._reject_overlap(writer, updated.station_id, window, ignore_id=constraint_id)
            saved = await writer.update(updated)

        logger.info("Station constraint updated", constraint_id=constraint_id, station_id=saved.station_id)
        return saved

    async def remove(self, constraint_id: str) -> None:
        existing = await self.repository.get(constraint_id)
        if existing is None:
            raise ConstraintNotFound(constraint_id)

        async with self.repository.write_transaction([existing.station_id]) as writer:
            if not await writer.delete(constraint_id):
                raise ConstraintNotFound(constraint_id)

        logger.info("Station constraint removed", constraint_id=constraint_id, station_id=existing.station_id)

    async def list_stations(self, *, active_only: bool = True) -> list[Station]:
        return await self.repository.list_stations(active_only=active_only)

    async def get_station(self, station_id: str) -> Station | None:
        return await self.repository.get_station(station_id)

    async def _require_stations(self, station_ids: Sequence[str]) -> None:
        for station_id in station_ids:
            if await self.repository.get_station(station_id) is None:
                raise UnknownStation(station_id)

    async def _reject_overlap(
        self,
        writer: ConstraintWriter,
        station_id: str,
        window: TimeWindow,
        ignore_id: str | None = None,
    ) -> None:
        for other in await writer.list_for_station(station_id, window.start_at, window.end_at):
            if other.id == ignore_id or not other.is_blocking:
                continue
            if other.window.overlaps(window):
                raise OverlappingConstraint(station_id, other.id)


def _checked_window(start_at: datetime, end_at: datetime) -> TimeWindow:
    start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
    if start_at >= end_at:
        raise InvalidConstraintWindow(start_at, end_at)
    return TimeWindow(start_at, end_at)
