"""
Reminder scheduling.

Reminders fire at fixed lead times before an appointment. Each (offset, channel)
pair becomes a ReminderJob row and a scheduled delivery at the notification
gateway. Offsets whose fire time has already passed are skipped without error.

Delivery happens out of band and may be attempted more than once, so the
gateway calls ``claim_for_delivery`` right before sending; it answers True at
most once per job and only while the appointment is still active.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from ehr_backend.integrations.notifications import CHANNELS, NotificationError, NotificationGateway
from ehr_backend.models.appointment import Appointment
from ehr_backend.models.reminder import ReminderJob
from ehr_backend.scheduling.events import AppointmentEvent, AppointmentEventType, RELEASING_EVENTS
from ehr_backend.scheduling.lifecycle import AppointmentStatus

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = CHANNELS

_OFFSET_PATTERN = re.compile(r'^(\d+)\s*([dhm])$')
_OFFSET_UNITS = {'d': 'days', 'h': 'hours', 'm': 'minutes'}


@dataclass(frozen=True)
class ReminderOffset:
    label: str
    lead_time: timedelta


def parse_reminder_offsets(value: str) -> list[ReminderOffset]:
    """Parse ``"24h,2h,30m"`` into offsets ordered from the longest lead time."""
    offsets: dict[str, ReminderOffset] = {}

    for raw in value.split(','):
        label = raw.strip().lower()
        if not label:
            continue

        match = _OFFSET_PATTERN.match(label)
        if match is None:
            raise ValueError(f'Unrecognised reminder offset {raw.strip()!r}; use forms like 24h, 2h or 30m.')

        amount = int(match.group(1))
        if amount <= 0:
            raise ValueError(f'Reminder offset {label!r} must be positive.')

        offsets[label] = ReminderOffset(label=label, lead_time=timedelta(**{_OFFSET_UNITS[match.group(2)]: amount}))

    return sorted(offsets.values(), key=lambda offset: offset.lead_time, reverse=True)


def enabled_channels(preferences: dict | None, default: dict[str, bool]) -> list[str]:
    chosen = preferences if preferences else default
    return [channel for channel in SUPPORTED_CHANNELS if chosen.get(channel)]


def retract_pending_jobs(db: Session, appointment_id: int) -> int:
    """Mark unsent jobs retracted inside the caller's transaction."""
    return db.query(ReminderJob).filter(
        ReminderJob.appointment_id == appointment_id,
        ReminderJob.sent.is_(False),
        ReminderJob.retracted.is_(False),
    ).update({ReminderJob.retracted: True}, synchronize_session=False)


class ReminderScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: NotificationGateway,
        offsets: list[ReminderOffset],
        template: str = 'appointment-reminder',
        default_channels: dict[str, bool] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.offsets = offsets
        self.template = template
        self.default_channels = default_channels or {'email': True}
        self.clock = clock

    def plan(self, scheduled_at: datetime, now: datetime) -> list[tuple[ReminderOffset, datetime]]:
        planned = []
        for offset in self.offsets:
            fire_at = scheduled_at - offset.lead_time
            if fire_at <= now:
                continue
            planned.append((offset, fire_at))
        return planned

    def schedule(self, appointment_id: int) -> list[int]:
        """Create and hand over the reminder jobs of an active appointment; returns the new job ids."""
        db = self.session_factory()
        try:
            appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
            if appointment is None or not AppointmentStatus(appointment.status).is_active:
                return []

            now = self.clock()
            channels = enabled_channels(appointment.reminder_preferences, self.default_channels)
            pending_keys = {
                job.idempotency_key
                for job in self._pending_jobs(db, appointment_id)
            }

            jobs: list[ReminderJob] = []
            for offset, fire_at in self.plan(appointment.scheduled_at, now):
                for channel in channels:
                    job = ReminderJob(
                        appointment_id=appointment_id,
                        offset_label=offset.label,
                        channel=channel,
                        fire_at=fire_at,
                        sent=False,
                        retracted=False,
                    )
                    if job.idempotency_key in pending_keys:
                        continue
                    db.add(job)
                    jobs.append(job)

            db.flush()
            deliveries = [
                (job.id, job.channel, job.offset_label, job.fire_at, job.idempotency_key)
                for job in jobs
            ]
            context = {
                'appointment_id': appointment.id,
                'provider_id': appointment.provider_id,
                'scheduled_at': appointment.scheduled_at.isoformat(),
                'duration_minutes': appointment.duration_minutes,
            }
            recipient = str(appointment.patient_id)
            db.commit()
        finally:
            db.close()

        # Gateway calls happen with no transaction open.
        gateway_ids: dict[int, str] = {}
        for job_id, channel, offset_label, fire_at, idempotency_key in deliveries:
            try:
                gateway_ids[job_id] = self.gateway.schedule_send(
                    channel,
                    recipient,
                    self.template,
                    fire_at,
                    context={**context, 'offset': offset_label, 'reminder_job_id': job_id},
                    idempotency_key=idempotency_key,
                )
            except NotificationError:
                logger.exception('Failed to schedule %s reminder %s for appointment %s', channel, offset_label, appointment_id)

        self._store_gateway_ids(gateway_ids)

        logger.info('Scheduled %s reminder(s) for appointment %s', len(deliveries), appointment_id)
        return [delivery[0] for delivery in deliveries]

    def retract(self, appointment_id: int) -> int:
        db = self.session_factory()
        try:
            retract_pending_jobs(db, appointment_id)
            retracted = db.query(ReminderJob).filter(
                ReminderJob.appointment_id == appointment_id,
                ReminderJob.sent.is_(False),
                ReminderJob.retracted.is_(True),
                ReminderJob.gateway_job_id.is_not(None),
            ).all()
            gateway_ids = [(job.id, job.gateway_job_id) for job in retracted]
            db.commit()
        finally:
            db.close()

        cleared: list[int] = []
        for job_id, gateway_job_id in gateway_ids:
            try:
                self.gateway.retract(gateway_job_id)
                cleared.append(job_id)
            except NotificationError:
                logger.exception('Failed to retract reminder %s for appointment %s', gateway_job_id, appointment_id)

        if cleared:
            db = self.session_factory()
            try:
                db.query(ReminderJob).filter(ReminderJob.id.in_(cleared)).update(
                    {ReminderJob.gateway_job_id: None},
                    synchronize_session=False,
                )
                db.commit()
            finally:
                db.close()

        return len(cleared)

    def reschedule(self, appointment_id: int) -> list[int]:
        self.retract(appointment_id)
        return self.schedule(appointment_id)

    def claim_for_delivery(self, job_id: int) -> bool:
        db = self.session_factory()
        try:
            job = db.query(ReminderJob).filter(ReminderJob.id == job_id).with_for_update().first()
            if job is None or job.sent or job.retracted:
                db.rollback()
                return False

            appointment = db.query(Appointment).filter(Appointment.id == job.appointment_id).first()
            if appointment is None or not AppointmentStatus(appointment.status).is_active:
                job.retracted = True
                db.commit()
                logger.info('Reminder %s dropped; appointment %s is no longer active', job_id, job.appointment_id)
                return False

            job.sent = True
            db.commit()
            return True
        finally:
            db.close()

    def pending_jobs(self, appointment_id: int) -> list[ReminderJob]:
        db = self.session_factory()
        try:
            jobs = self._pending_jobs(db, appointment_id)
            db.expunge_all()
            return jobs
        finally:
            db.close()

    def handle_event(self, event: AppointmentEvent) -> None:
        if event.type is AppointmentEventType.CREATED:
            self.schedule(event.appointment_id)
        elif event.type is AppointmentEventType.RESCHEDULED:
            self.reschedule(event.appointment_id)
        elif event.type is AppointmentEventType.UPDATED and event.payload.get('reminder_preferences_changed'):
            self.reschedule(event.appointment_id)
        elif event.type in RELEASING_EVENTS:
            self.retract(event.appointment_id)

    @staticmethod
    def _pending_jobs(db: Session, appointment_id: int) -> list[ReminderJob]:
        return db.query(ReminderJob).filter(
            ReminderJob.appointment_id == appointment_id,
            ReminderJob.sent.is_(False),
            ReminderJob.retracted.is_(False),
        ).order_by(ReminderJob.fire_at.asc()).all()

    def _store_gateway_ids(self, updates: dict[int, str]) -> None:
        if not updates:
            return

        db = self.session_factory()
        try:
            for job in db.query(ReminderJob).filter(ReminderJob.id.in_(list(updates))).all():
                job.gateway_job_id = updates[job.id]
            db.commit()
        finally:
            db.close()
