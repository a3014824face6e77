"""Calendar gateway for syncing appointments to an external calendar provider."""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


class CalendarError(Exception):
    pass


@dataclass
class CalendarEvent:
    appointment_id: int
    title: str
    start: datetime
    end: datetime
    description: str = ''
    attendees: list[str] = field(default_factory=list)
    event_id: str | None = None


class CalendarGateway(ABC):
    @abstractmethod
    def create(self, event: CalendarEvent) -> str:
        """Create the event and return the provider's event id."""

    @abstractmethod
    def update(self, event: CalendarEvent) -> None:
        pass

    @abstractmethod
    def delete(self, event: CalendarEvent) -> None:
        pass


class LoggingCalendarGateway(CalendarGateway):
    """Keeps events in memory; stands in until a calendar provider account is connected."""

    def __init__(self):
        self.events: dict[str, CalendarEvent] = {}

    def create(self, event: CalendarEvent) -> str:
        event_id = f'local-{uuid.uuid4().hex[:12]}'
        event.event_id = event_id
        self.events[event_id] = event
        logger.info('Calendar event %s created for appointment %s', event_id, event.appointment_id)
        return event_id

    def update(self, event: CalendarEvent) -> None:
        if event.event_id not in self.events:
            raise CalendarError(f'Unknown calendar event {event.event_id}')
        self.events[event.event_id] = event
        logger.info('Calendar event %s updated for appointment %s', event.event_id, event.appointment_id)

    def delete(self, event: CalendarEvent) -> None:
        self.events.pop(event.event_id, None)
        logger.info('Calendar event %s deleted for appointment %s', event.event_id, event.appointment_id)
