"""
Post-commit appointment events.

The orchestrator publishes an event only after its transaction has committed.
Subscribers (reminders, calendar sync, notifications) run on the bus executor
and their failures are logged, never raised back into the booking call.
"""

import enum
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)


class AppointmentEventType(str, enum.Enum):
    CREATED = 'appointment.created'
    UPDATED = 'appointment.updated'
    RESCHEDULED = 'appointment.rescheduled'
    CONFIRMED = 'appointment.confirmed'
    CHECKED_IN = 'appointment.checked_in'
    STARTED = 'appointment.started'
    COMPLETED = 'appointment.completed'
    CANCELLED = 'appointment.cancelled'
    NO_SHOW = 'appointment.no_show'


# Events after which the appointment no longer occupies the provider's calendar.
RELEASING_EVENTS = frozenset({
    AppointmentEventType.COMPLETED,
    AppointmentEventType.CANCELLED,
    AppointmentEventType.NO_SHOW,
})


@dataclass(frozen=True)
class AppointmentEvent:
    type: AppointmentEventType
    appointment_id: int
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[AppointmentEvent], None]


class EventBus:
    def __init__(self, executor: Executor | None = None):
        self._executor = executor
        self._subscribers: list[tuple[frozenset[AppointmentEventType] | None, EventHandler]] = []

    def subscribe(self, handler: EventHandler, types: Iterable[AppointmentEventType] | None = None) -> None:
        self._subscribers.append((frozenset(types) if types is not None else None, handler))

    def publish(self, event: AppointmentEvent) -> None:
        for types, handler in list(self._subscribers):
            if types is not None and event.type not in types:
                continue

            if self._executor is None:
                self._run(handler, event)
                continue

            try:
                self._executor.submit(self._run, handler, event)
            except RuntimeError:
                logger.exception('Could not dispatch %s for appointment %s', event.type.value, event.appointment_id)

    @staticmethod
    def _run(handler: EventHandler, event: AppointmentEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception(
                'Handler %s failed for %s on appointment %s',
                getattr(handler, '__qualname__', repr(handler)),
                event.type.value,
                event.appointment_id,
            )
