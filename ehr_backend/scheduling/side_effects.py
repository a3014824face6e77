"""
Best-effort subscribers for calendar sync and appointment notices.

Each handler opens its own short session, reads the committed appointment, and
calls its gateway with no transaction open.
"""

import logging

from sqlalchemy.orm import sessionmaker

from ehr_backend.integrations.calendar_sync import CalendarEvent, CalendarGateway
from ehr_backend.integrations.notifications import NotificationGateway
from ehr_backend.models.appointment import Appointment
from ehr_backend.scheduling.events import AppointmentEvent, AppointmentEventType, EventBus
from ehr_backend.scheduling.lifecycle import ACTIVE_STATUSES, AppointmentStatus
from ehr_backend.scheduling.reminders import ReminderScheduler, enabled_channels

logger = logging.getLogger(__name__)

NOTICE_TEMPLATES = {
    AppointmentEventType.CREATED: 'appointment-confirmation',
    AppointmentEventType.RESCHEDULED: 'appointment-rescheduled',
    AppointmentEventType.CANCELLED: 'appointment-cancelled',
}

UPSERT_EVENTS = (
    AppointmentEventType.CREATED,
    AppointmentEventType.RESCHEDULED,
    AppointmentEventType.UPDATED,
)


def _load_snapshot(session_factory: sessionmaker, appointment_id: int) -> dict | None:
    db = session_factory()
    try:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if appointment is None:
            return None
        return {
            'id': appointment.id,
            'status': AppointmentStatus(appointment.status),
            'patient_id': appointment.patient_id,
            'provider_id': appointment.provider_id,
            'scheduled_at': appointment.scheduled_at,
            'end_time': appointment.end_time,
            'duration_minutes': appointment.duration_minutes,
            'appointment_type': appointment.appointment_type,
            'reason': appointment.reason,
            'cancellation_reason': appointment.cancellation_reason,
            'reminder_preferences': appointment.reminder_preferences,
            'calendar_event_id': appointment.calendar_event_id,
        }
    finally:
        db.close()


class CalendarSync:
    def __init__(self, session_factory: sessionmaker, gateway: CalendarGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    def handle_event(self, event: AppointmentEvent) -> None:
        snapshot = _load_snapshot(self.session_factory, event.appointment_id)
        if snapshot is None:
            logger.warning('Calendar sync skipped; appointment %s not found', event.appointment_id)
            return

        calendar_event = self._build_event(snapshot)

        if event.type in UPSERT_EVENTS and not snapshot['status'].is_active:
            # Delivered after the appointment left the active set.
            logger.info(
                'Calendar sync for %s ignored; appointment %s is %s',
                event.type.value,
                snapshot['id'],
                snapshot['status'].value,
            )
            if calendar_event.event_id:
                self.gateway.delete(calendar_event)
            return

        if event.type in UPSERT_EVENTS:
            if calendar_event.event_id:
                self.gateway.update(calendar_event)
            else:
                self._create(calendar_event)
        elif event.type in (AppointmentEventType.CANCELLED, AppointmentEventType.NO_SHOW):
            if calendar_event.event_id:
                self.gateway.delete(calendar_event)

    @staticmethod
    def _build_event(snapshot: dict) -> CalendarEvent:
        title = f"Appointment: patient {snapshot['patient_id']}"
        description = snapshot['appointment_type'] or 'appointment'
        if snapshot['reason']:
            description = f"{description} - {snapshot['reason']}"

        return CalendarEvent(
            appointment_id=snapshot['id'],
            title=title,
            start=snapshot['scheduled_at'],
            end=snapshot['end_time'],
            description=description,
            event_id=snapshot['calendar_event_id'],
        )

    def _create(self, calendar_event: CalendarEvent) -> None:
        calendar_event.event_id = self.gateway.create(calendar_event)
        if not self._store_event_id(calendar_event.appointment_id, calendar_event.event_id):
            # Cancelled while the event was being created; its own handler saw no event id.
            self.gateway.delete(calendar_event)

    def _store_event_id(self, appointment_id: int, event_id: str) -> bool:
        """Record the event id only while the appointment is still active."""
        db = self.session_factory()
        try:
            stored = db.query(Appointment).filter(
                Appointment.id == appointment_id,
                Appointment.status.in_(ACTIVE_STATUSES),
            ).update(
                {Appointment.calendar_event_id: event_id},
                synchronize_session=False,
            )
            db.commit()
            return stored > 0
        finally:
            db.close()


class AppointmentNotifier:
    """Immediate confirmation, reschedule and cancellation notices."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: NotificationGateway,
        default_channels: dict[str, bool],
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.default_channels = default_channels

    def handle_event(self, event: AppointmentEvent) -> None:
        template = NOTICE_TEMPLATES.get(event.type)
        if template is None:
            return

        snapshot = _load_snapshot(self.session_factory, event.appointment_id)
        if snapshot is None:
            return
        if event.type is not AppointmentEventType.CANCELLED and not snapshot['status'].is_active:
            logger.info('Skipping %s notice; appointment %s is %s', template, snapshot['id'], snapshot['status'].value)
            return

        context = {
            'appointment_id': snapshot['id'],
            'provider_id': snapshot['provider_id'],
            'scheduled_at': snapshot['scheduled_at'].isoformat(),
            'duration_minutes': snapshot['duration_minutes'],
            'cancellation_reason': snapshot['cancellation_reason'],
        }
        if 'previous_scheduled_at' in event.payload:
            context['previous_scheduled_at'] = event.payload['previous_scheduled_at']

        for channel in enabled_channels(snapshot['reminder_preferences'], self.default_channels):
            self.gateway.schedule_send(
                channel,
                str(snapshot['patient_id']),
                template,
                event.occurred_at,
                context=context,
                idempotency_key=f"{event.type.value}:{snapshot['id']}:{channel}:{event.occurred_at:%Y%m%dT%H%M%S}",
            )


def register_side_effects(
    bus: EventBus,
    reminders: ReminderScheduler,
    calendar: CalendarSync,
    notifier: AppointmentNotifier,
) -> None:
    bus.subscribe(reminders.handle_event)
    bus.subscribe(calendar.handle_event, types=[
        AppointmentEventType.CREATED,
        AppointmentEventType.RESCHEDULED,
        AppointmentEventType.UPDATED,
        AppointmentEventType.CANCELLED,
        AppointmentEventType.NO_SHOW,
    ])
    bus.subscribe(notifier.handle_event, types=list(NOTICE_TEMPLATES))
