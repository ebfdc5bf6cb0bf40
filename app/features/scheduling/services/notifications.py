"""
Reminder dispatch after a booking commits.

Delivery is owned by a separate worker reading the Redis list; this side
only enqueues. Failures are logged and never reach the caller, so an
appointment is never rolled back because a reminder could not be queued.
"""

import json
from collections.abc import Sequence
from zoneinfo import ZoneInfo

from app.config import settings
from app.features.scheduling.domain.models import Appointment
from app.features.scheduling.domain.normalization import to_business_local
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


def reminder_payload(appointment: Appointment, tz: ZoneInfo) -> dict:
    local_start = to_business_local(appointment.start_at, tz)
    return {
        "type": "appointment_reminder",
        "appointment_id": appointment.id,
        "customer_id": appointment.customer_id,
        "station_id": appointment.station_id,
        "service_type": appointment.service_type,
        "start_at": appointment.start_at.isoformat(),
        "end_at": appointment.end_at.isoformat(),
        "local_date": local_start.date().isoformat(),
        "local_time": local_start.strftime("%H:%M"),
        "is_reschedule": appointment.superseded_appointment_id is not None,
    }


class RedisReminderDispatcher:
    def __init__(self, client: FastRedisClient | None = None, queue_key: str | None = None, tz: ZoneInfo | None = None):
        self.client = client or fast_redis
        self.queue_key = queue_key or settings.REMINDER_QUEUE_KEY
        self.tz = tz or settings.business_tz()

    async def dispatch(self, appointments: Sequence[Appointment]) -> None:
        if not appointments:
            return
        try:
            payloads = [json.dumps(reminder_payload(appointment, self.tz)) for appointment in appointments]
            queue_length = await self.client.rpush(self.queue_key, *payloads)
        except Exception as e:
            logger.error("Reminder enqueue raised", error=str(e), count=len(appointments))
            return

        if queue_length is None:
            logger.warning("Reminder enqueue failed", queue=self.queue_key, count=len(appointments))
        else:
            logger.info("Reminders enqueued", queue=self.queue_key, count=len(appointments), queue_length=queue_length)


class LoggingReminderDispatcher:
    """Used with the in-memory backend; records what would have been queued."""

    def __init__(self):
        self.dispatched: list[Appointment] = []

    async def dispatch(self, appointments: Sequence[Appointment]) -> None:
        self.dispatched.extend(appointments)
        for appointment in appointments:
            logger.info("Reminder (not queued)", appointment_id=appointment.id, customer_id=appointment.customer_id)
