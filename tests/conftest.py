import os
from datetime import datetime, time
from zoneinfo import ZoneInfo

# Tests never talk to Postgres or Redis unless they opt in
os.environ.setdefault("SCHEDULING_BACKEND", "memory")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Jerusalem")

import pytest  # noqa: E402

from app.auth.verify import auth_dependency  # noqa: E402
from app.features.scheduling.domain.models import Appointment, Station  # noqa: E402
from app.features.scheduling.repository.memory import (  # noqa: E402
    InMemoryAppointmentStore,
    InMemoryConstraintRepository,
    InMemoryCustomerDirectory,
)
from app.features.scheduling.services.availability_calculator import OpeningHours  # noqa: E402
from app.features.scheduling.services.notifications import LoggingReminderDispatcher  # noqa: E402
from app.features.scheduling.services.scheduling_service import SchedulingService  # noqa: E402

TZ = ZoneInfo("Asia/Jerusalem")


def local(day: int, hour: int, minute: int = 0, month: int = 3, year: int = 2026) -> datetime:
    """Business wall-clock time as an aware datetime (March 2026 is UTC+2 until the 27th)."""
    return datetime(year, month, day, hour, minute, tzinfo=TZ)


@pytest.fixture
def tz():
    return TZ


@pytest.fixture
def at():
    return local


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123", "app_metadata": {"role": "manager"}}

    return _override


@pytest.fixture
def staff_auth_override():
    def _override():
        return {"sub": "user-456", "app_metadata": {"role": "staff"}}

    return _override


class FakeRedis:
    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.fail = False

    async def rpush(self, key: str, *values: str) -> int | None:
        if self.fail:
            return None
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def ping(self) -> bool:
        return not self.fail


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def stations():
    return [
        Station(id="s1", name="Station 1", display_order=0),
        Station(id="s2", name="Station 2", display_order=1),
        Station(id="s3", name="Old table", is_active=False, display_order=2),
    ]


@pytest.fixture
def directory():
    return InMemoryCustomerDirectory(
        customers=["c1", "c2", "c3", "c4", "c5"],
        categories={
            "small-dogs": ["c3", "c4"],
            "regulars": ["c4", "c5"],
            "empty": [],
        },
    )


@pytest.fixture
def appointment_store(tz):
    return InMemoryAppointmentStore(tz)


@pytest.fixture
def constraint_repository(stations):
    return InMemoryConstraintRepository(stations=stations)


@pytest.fixture
def notifier():
    return LoggingReminderDispatcher()


@pytest.fixture
def service(directory, appointment_store, constraint_repository, notifier, tz):
    return SchedulingService(
        directory=directory,
        appointments=appointment_store,
        constraint_repository=constraint_repository,
        notifier=notifier,
        tz=tz,
        station_priority=[],
        # Sunday to Friday 09:00-17:00, closed Saturday
        hours=OpeningHours(time(9), time(17), frozenset({5})),
        slot_increment_minutes=60,
    )


@pytest.fixture
def seed_appointment(appointment_store):
    def _seed(appointment_id: str, customer_id: str, station_id: str, start_at, end_at, **kwargs) -> Appointment:
        return appointment_store.add(
            Appointment(
                id=appointment_id,
                customer_id=customer_id,
                station_id=station_id,
                service_type=kwargs.pop("service_type", "full_groom"),
                start_at=start_at,
                end_at=end_at,
                **kwargs,
            )
        )

    return _seed
