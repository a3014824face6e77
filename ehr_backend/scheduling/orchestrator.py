"""
Appointment orchestration.

The orchestrator owns every transaction that touches appointments. A booking
(or reschedule) runs the availability check, the conflict check, the write and
the slot claims inside one session; the claims table's unique constraint makes
the losing side of a concurrent race fail its flush, which surfaces as
ConflictError. Events are published only after commit.
"""

import logging
from concurrent.futures import Executor
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterator
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ehr_backend.core import config
from ehr_backend.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ehr_backend.integrations.calendar_sync import CalendarGateway, LoggingCalendarGateway
from ehr_backend.integrations.directories import (
    PatientDirectory,
    ProviderDirectory,
    SqlPatientDirectory,
    SqlProviderDirectory,
)
from ehr_backend.integrations.notifications import LoggingNotificationGateway, NotificationGateway
from ehr_backend.models.appointment import Appointment
from ehr_backend.models.availability import AvailabilityWindow
from ehr_backend.scheduling.conflicts import ConflictDetector
from ehr_backend.scheduling.events import AppointmentEvent, AppointmentEventType, EventBus
from ehr_backend.scheduling.lifecycle import AppointmentLifecycle, AppointmentStatus, ensure_not_terminal
from ehr_backend.scheduling.reminders import ReminderScheduler, parse_reminder_offsets, retract_pending_jobs
from ehr_backend.scheduling.side_effects import AppointmentNotifier, CalendarSync, register_side_effects
from ehr_backend.scheduling.slots import Slot, SlotGenerator
from ehr_backend.scheduling.stores import SqlAppointmentStore, SqlAvailabilityStore

logger = logging.getLogger(__name__)

DETAIL_FIELDS = {'appointment_type', 'reason', 'notes', 'is_urgent', 'reminder_preferences'}
TIME_FIELDS = {'scheduled_at', 'duration_minutes'}
UPDATABLE_FIELDS = DETAIL_FIELDS | TIME_FIELDS
NON_NULLABLE_FIELDS = {'is_urgent'}

TRANSITION_EVENTS = {
    AppointmentStatus.CONFIRMED: AppointmentEventType.CONFIRMED,
    AppointmentStatus.CHECKED_IN: AppointmentEventType.CHECKED_IN,
    AppointmentStatus.IN_PROGRESS: AppointmentEventType.STARTED,
    AppointmentStatus.COMPLETED: AppointmentEventType.COMPLETED,
    AppointmentStatus.CANCELLED: AppointmentEventType.CANCELLED,
    AppointmentStatus.NO_SHOW: AppointmentEventType.NO_SHOW,
}


def clinic_clock(timezone_name: str) -> Callable[[], datetime]:
    zone = ZoneInfo(timezone_name)

    def now() -> datetime:
        return datetime.now(zone).replace(tzinfo=None)

    return now


def to_clinic_time(value: datetime, timezone_name: str) -> datetime:
    """Naive clinic wall-clock time; aware values are converted first."""
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(timezone_name)).replace(tzinfo=None)
    return value


class AppointmentOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        patients: PatientDirectory,
        providers: ProviderDirectory,
        events: EventBus,
        lifecycle: AppointmentLifecycle | None = None,
        reminders: ReminderScheduler | None = None,
        clock: Callable[[], datetime] | None = None,
        timezone_name: str = 'UTC',
        increment_minutes: int = 5,
        default_duration_minutes: int = 30,
        max_duration_minutes: int = 480,
    ):
        self.session_factory = session_factory
        self.patients = patients
        self.providers = providers
        self.events = events
        self.lifecycle = lifecycle or AppointmentLifecycle()
        self.reminders = reminders
        self.timezone_name = timezone_name
        self.clock = clock or clinic_clock(timezone_name)
        self.increment_minutes = increment_minutes
        self.default_duration_minutes = default_duration_minutes
        self.max_duration_minutes = max_duration_minutes

    # ===== Exposed operations =====

    def create_appointment(
        self,
        patient_id: int,
        provider_id: int,
        scheduled_at: datetime,
        duration_minutes: int | None = None,
        appointment_type: str | None = None,
        reason: str | None = None,
        notes: str | None = None,
        is_urgent: bool = False,
        reminder_preferences: dict[str, bool] | None = None,
        actor=None,
    ) -> Appointment:
        now = self.clock()
        duration_minutes = self.default_duration_minutes if duration_minutes is None else duration_minutes
        start = to_clinic_time(scheduled_at, self.timezone_name)

        self._validate_interval(start, duration_minutes, now)
        end = start + timedelta(minutes=duration_minutes)

        if not self.patients.exists(patient_id):
            raise NotFoundError('Patient not found.')
        if not self.patients.has_access(actor, patient_id, provider_id):
            raise ForbiddenError('Cannot schedule appointments for this patient.')
        if not self.providers.exists(provider_id):
            raise NotFoundError('Provider not found.')

        with self._session() as db:
            appointments = SqlAppointmentStore(db, self.increment_minutes)
            self._ensure_within_availability(SqlAvailabilityStore(db), provider_id, start, end)
            self._ensure_no_conflict(appointments, provider_id, start, end)

            appointment = Appointment(
                patient_id=patient_id,
                provider_id=provider_id,
                scheduled_at=start,
                duration_minutes=duration_minutes,
                end_time=end,
                status=AppointmentStatus.SCHEDULED,
                appointment_type=appointment_type,
                reason=reason,
                notes=notes,
                is_urgent=is_urgent,
                reminder_preferences=reminder_preferences,
                created_by=getattr(actor, 'id', None),
                created_at=now,
                updated_at=now,
            )

            appointments.add(appointment)
            try:
                appointments.claim(appointment)
            except IntegrityError:
                db.rollback()
                logger.warning('Slot claim rejected for provider %s at %s; concurrent booking won', provider_id, start)
                raise self._conflict_after_race(db, provider_id, start, end, None)
            self._commit(db, appointment)

        logger.info(
            'Appointment %s created for patient %s with provider %s at %s',
            appointment.id,
            patient_id,
            provider_id,
            start.isoformat(),
        )
        self._publish(AppointmentEventType.CREATED, appointment.id, now)
        return appointment

    def get_available_slots(self, provider_id: int, day: date, duration_minutes: int | None = None) -> list[Slot]:
        if not self.providers.exists(provider_id):
            raise NotFoundError('Provider not found.')

        duration_minutes = self.default_duration_minutes if duration_minutes is None else duration_minutes
        self._validate_duration(duration_minutes)

        now = self.clock()
        with self._session() as db:
            generator = SlotGenerator(
                SqlAvailabilityStore(db),
                ConflictDetector(SqlAppointmentStore(db, self.increment_minutes)),
                increment_minutes=self.increment_minutes,
            )
            return [
                slot
                for slot in generator.generate_slots(provider_id, day, duration_minutes)
                if slot.start > now
            ]

    def availability_windows(self, provider_id: int) -> list[AvailabilityWindow]:
        if not self.providers.exists(provider_id):
            raise NotFoundError('Provider not found.')

        with self._session() as db:
            return SqlAvailabilityStore(db).weekly_windows(provider_id)

    def update_appointment(self, appointment_id: int, patch: dict[str, Any], actor=None) -> Appointment:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}.")
        nulled = sorted(field for field in NON_NULLABLE_FIELDS & set(patch) if patch[field] is None)
        if nulled:
            raise ValidationError(f"Field(s) cannot be cleared: {', '.join(nulled)}.")

        self.get_appointment(appointment_id, actor)
        now = self.clock()
        time_changed = bool(TIME_FIELDS & set(patch))

        with self._session() as db:
            appointments = SqlAppointmentStore(db, self.increment_minutes)
            appointment = self._load_for_update(db, appointment_id)
            ensure_not_terminal(appointment)

            previous_scheduled_at = appointment.scheduled_at
            preferences_changed = (
                'reminder_preferences' in patch
                and patch['reminder_preferences'] != appointment.reminder_preferences
            )
            start, end = appointment.scheduled_at, appointment.end_time

            if time_changed:
                if patch.get('scheduled_at') is not None:
                    start = to_clinic_time(patch['scheduled_at'], self.timezone_name)
                duration_minutes = appointment.duration_minutes
                if patch.get('duration_minutes') is not None:
                    duration_minutes = patch['duration_minutes']

                self._validate_interval(start, duration_minutes, now)
                end = start + timedelta(minutes=duration_minutes)
                self._ensure_within_availability(SqlAvailabilityStore(db), appointment.provider_id, start, end)
                self._ensure_no_conflict(appointments, appointment.provider_id, start, end, appointment.id)

            for field in DETAIL_FIELDS & set(patch):
                setattr(appointment, field, patch[field])
            appointment.updated_at = now

            if time_changed:
                appointments.release(appointment)
                appointment.scheduled_at = start
                appointment.duration_minutes = duration_minutes
                appointment.end_time = end
                db.flush()
                try:
                    appointments.claim(appointment)
                except IntegrityError:
                    db.rollback()
                    raise self._conflict_after_race(db, appointment.provider_id, start, end, appointment_id)
            self._commit(db, appointment)

        if time_changed:
            logger.info('Appointment %s rescheduled from %s to %s', appointment_id, previous_scheduled_at, appointment.scheduled_at)
            self._publish(
                AppointmentEventType.RESCHEDULED,
                appointment_id,
                now,
                previous_scheduled_at=previous_scheduled_at.isoformat(),
            )
        else:
            self._publish(
                AppointmentEventType.UPDATED,
                appointment_id,
                now,
                reminder_preferences_changed=preferences_changed,
            )
        return appointment

    def cancel_appointment(self, appointment_id: int, reason: str | None, actor=None) -> Appointment:
        return self._transition(appointment_id, AppointmentStatus.CANCELLED, actor, reason=reason)

    def check_in(self, appointment_id: int, actor=None) -> Appointment:
        return self._transition(appointment_id, AppointmentStatus.CHECKED_IN, actor)

    def confirm(self, appointment_id: int, actor=None) -> Appointment:
        return self._transition(appointment_id, AppointmentStatus.CONFIRMED, actor)

    def start(self, appointment_id: int, actor=None) -> Appointment:
        return self._transition(appointment_id, AppointmentStatus.IN_PROGRESS, actor)

    def complete(self, appointment_id: int, actor=None) -> Appointment:
        return self._transition(appointment_id, AppointmentStatus.COMPLETED, actor)

    def mark_no_show(self, appointment_id: int, actor=None) -> Appointment:
        return self._transition(appointment_id, AppointmentStatus.NO_SHOW, actor)

    def get_appointment(self, appointment_id: int, actor=None) -> Appointment:
        with self._session() as db:
            appointment = SqlAppointmentStore(db, self.increment_minutes).get(appointment_id)

        if appointment is None:
            raise NotFoundError('Appointment not found.')
        if not self.patients.has_access(actor, appointment.patient_id, appointment.provider_id):
            raise ForbiddenError('Access denied.')
        return appointment

    def list_appointments(
        self,
        actor=None,
        provider_id: int | None = None,
        patient_id: int | None = None,
        status: AppointmentStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Appointment]:
        with self._session() as db:
            found = SqlAppointmentStore(db, self.increment_minutes).search(
                provider_id=provider_id,
                patient_id=patient_id,
                status=status,
                start=self._optional_clinic_time(start),
                end=self._optional_clinic_time(end),
                limit=limit,
                offset=offset,
            )

        return [
            appointment
            for appointment in found
            if self.patients.has_access(actor, appointment.patient_id, appointment.provider_id)
        ]

    def appointment_stats(
        self,
        provider_id: int | None = None,
        patient_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        start = self._optional_clinic_time(start)
        end = self._optional_clinic_time(end)

        with self._session() as db:
            store = SqlAppointmentStore(db, self.increment_minutes)
            by_status = store.count_by_status(provider_id, patient_id, start, end)
            urgent = store.count_urgent(provider_id, patient_id, start, end)

        return {
            'total_appointments': sum(by_status.values()),
            'urgent_appointments': urgent,
            'appointments_by_status': {status.value: count for status, count in by_status.items()},
        }

    def overdue_appointment_ids(self) -> list[int]:
        now = self.clock()
        with self._session() as db:
            return [
                appointment.id
                for appointment in SqlAppointmentStore(db, self.increment_minutes).overdue_unattended(now)
            ]

    # ===== Internals =====

    def _transition(
        self,
        appointment_id: int,
        target: AppointmentStatus,
        actor,
        reason: str | None = None,
    ) -> Appointment:
        self.get_appointment(appointment_id, actor)
        now = self.clock()

        with self._session() as db:
            appointment = self._load_for_update(db, appointment_id)
            self.lifecycle.transition(appointment, target, now, reason=reason)

            if not target.is_active:
                SqlAppointmentStore(db, self.increment_minutes).release(appointment)
                retract_pending_jobs(db, appointment.id)

            self._commit(db, appointment)

        logger.info('Appointment %s moved to %s', appointment_id, target.value)
        self._publish(TRANSITION_EVENTS[target], appointment_id, now)
        return appointment

    def _validate_duration(self, duration_minutes: int) -> None:
        if duration_minutes is None or duration_minutes <= 0:
            raise ValidationError('Duration must be a positive number of minutes.')
        if duration_minutes > self.max_duration_minutes:
            raise ValidationError(f'Appointments cannot be longer than {self.max_duration_minutes} minutes.')
        if duration_minutes % self.increment_minutes != 0:
            raise ValidationError(f'Duration must be a multiple of {self.increment_minutes} minutes.')

    def _validate_interval(self, start: datetime, duration_minutes: int, now: datetime) -> None:
        self._validate_duration(duration_minutes)
        if start.second or start.microsecond or start.minute % self.increment_minutes != 0:
            raise ValidationError(f'Appointments must start on {self.increment_minutes}-minute boundaries.')
        if start <= now:
            raise ValidationError('Cannot schedule appointments in the past.')

    @staticmethod
    def _ensure_within_availability(
        availability: SqlAvailabilityStore,
        provider_id: int,
        start: datetime,
        end: datetime,
    ) -> None:
        windows = availability.windows_for(provider_id, start.weekday())
        if not windows:
            raise ValidationError('Provider is not available on this day.')

        for window in windows:
            window_start = datetime.combine(start.date(), window.start_time)
            window_end = datetime.combine(start.date(), window.end_time)
            if window_start <= start and end <= window_end:
                return

        raise ValidationError('Provider is not available at this time.')

    @staticmethod
    def _ensure_no_conflict(
        appointments: SqlAppointmentStore,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ) -> None:
        conflict = ConflictDetector(appointments).find_conflict(provider_id, start, end, exclude_appointment_id)
        if conflict is not None:
            raise ConflictError.for_interval(conflict.scheduled_at, conflict.end_time, conflict.id)

    def _conflict_after_race(
        self,
        db: Session,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None,
    ) -> ConflictError:
        winner = ConflictDetector(SqlAppointmentStore(db, self.increment_minutes)).find_conflict(
            provider_id,
            start,
            end,
            exclude_appointment_id,
        )
        if winner is None:
            return ConflictError('This time was booked by another request.', start=start, end=end)
        return ConflictError.for_interval(winner.scheduled_at, winner.end_time, winner.id)

    @staticmethod
    def _load_for_update(db: Session, appointment_id: int) -> Appointment:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).with_for_update().first()
        if appointment is None:
            raise NotFoundError('Appointment not found.')
        return appointment

    def _optional_clinic_time(self, value: datetime | None) -> datetime | None:
        return None if value is None else to_clinic_time(value, self.timezone_name)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _commit(db: Session, appointment: Appointment) -> None:
        db.commit()
        db.refresh(appointment)

    def _publish(self, event_type: AppointmentEventType, appointment_id: int, now: datetime, **payload) -> None:
        self.events.publish(
            AppointmentEvent(type=event_type, appointment_id=appointment_id, occurred_at=now, payload=payload)
        )


def build_orchestrator(
    session_factory: sessionmaker,
    executor: Executor | None = None,
    notifications: NotificationGateway | None = None,
    calendar: CalendarGateway | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AppointmentOrchestrator:
    """Wire the orchestrator with SQL directories, default gateways and side-effect subscribers."""
    clock = clock or clinic_clock(config.CLINIC_TIMEZONE)
    notifications = notifications or LoggingNotificationGateway()
    calendar = calendar or LoggingCalendarGateway()

    bus = EventBus(executor=executor)
    reminders = ReminderScheduler(
        session_factory,
        notifications,
        parse_reminder_offsets(config.REMINDER_OFFSETS),
        template=config.REMINDER_TEMPLATE,
        default_channels=config.DEFAULT_REMINDER_CHANNELS,
        clock=clock,
    )
    register_side_effects(
        bus,
        reminders,
        CalendarSync(session_factory, calendar),
        AppointmentNotifier(session_factory, notifications, config.DEFAULT_REMINDER_CHANNELS),
    )

    return AppointmentOrchestrator(
        session_factory,
        SqlPatientDirectory(session_factory),
        SqlProviderDirectory(session_factory),
        bus,
        reminders=reminders,
        clock=clock,
        timezone_name=config.CLINIC_TIMEZONE,
        increment_minutes=config.SLOT_INCREMENT_MINUTES,
        default_duration_minutes=config.DEFAULT_APPOINTMENT_DURATION_MINUTES,
        max_duration_minutes=config.MAX_APPOINTMENT_DURATION_MINUTES,
    )
