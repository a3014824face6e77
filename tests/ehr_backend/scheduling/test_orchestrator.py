import random
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from conftest import (
    INACTIVE_PROVIDER_ID,
    MONDAY,
    OTHER_PROVIDER_ID,
    PATIENT_A,
    PATIENT_B,
    PATIENT_C,
    PROVIDER_ID,
    TUESDAY,
    FixedClock,
    at,
    seed_directory,
)
from ehr_backend.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ehr_backend.database import Base
from ehr_backend.integrations.calendar_sync import CalendarError, LoggingCalendarGateway
from ehr_backend.integrations.directories import SqlPatientDirectory, SqlProviderDirectory
from ehr_backend.models.appointment import Appointment, AppointmentSlotClaim
from ehr_backend.models.reminder import ReminderJob
from ehr_backend.scheduling.conflicts import ConflictDetector, intervals_overlap
from ehr_backend.scheduling.events import AppointmentEventType, EventBus
from ehr_backend.scheduling.lifecycle import ACTIVE_STATUSES, AppointmentStatus
from ehr_backend.scheduling.orchestrator import AppointmentOrchestrator, build_orchestrator


def book(orchestrator, patient_id=PATIENT_A, start=None, minutes=30, provider_id=PROVIDER_ID, **kwargs):
    return orchestrator.create_appointment(
        patient_id=patient_id,
        provider_id=provider_id,
        scheduled_at=start or at(MONDAY, 10),
        duration_minutes=minutes,
        **kwargs,
    )


def claim_count(session_factory, appointment_id: int) -> int:
    db = session_factory()
    try:
        return db.query(AppointmentSlotClaim).filter(AppointmentSlotClaim.appointment_id == appointment_id).count()
    finally:
        db.close()


def templates(notifications) -> list[str]:
    return sorted(job['template'] for job in notifications.jobs.values())


class RecordingBus(EventBus):
    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, event) -> None:
        self.published.append(event)
        super().publish(event)


# ===== Booking =====

def test_create_appointment_books_and_claims_interval(orchestrator, session_factory, admin) -> None:
    appointment = book(orchestrator, reason='annual physical', actor=admin)

    assert appointment.status is AppointmentStatus.SCHEDULED
    assert appointment.end_time == at(MONDAY, 10, 30)
    assert appointment.created_by == admin.id
    assert claim_count(session_factory, appointment.id) == 6


def test_create_appointment_schedules_reminders_notice_and_calendar_event(
    orchestrator,
    notifications,
    calendar_gateway,
) -> None:
    appointment = book(orchestrator)

    # 24h before 10:00 has already passed at 07:00; the 2h and 30m reminders remain.
    assert templates(notifications) == ['appointment-confirmation', 'appointment-reminder', 'appointment-reminder']
    assert len(calendar_gateway.events) == 1
    assert orchestrator.get_appointment(appointment.id).calendar_event_id in calendar_gateway.events


def test_overlapping_booking_raises_conflict(orchestrator) -> None:
    existing = book(orchestrator, PATIENT_A)

    with pytest.raises(ConflictError) as exception_info:
        book(orchestrator, PATIENT_B)

    assert exception_info.value.appointment_id == existing.id
    assert exception_info.value.detail == 'Provider has a conflicting appointment from 2026-01-05 10:00 to 10:30.'
    assert exception_info.value.status_code == 409


def test_cancelled_interval_can_be_booked_again(orchestrator, session_factory) -> None:
    first = book(orchestrator, PATIENT_A)

    cancelled = orchestrator.cancel_appointment(first.id, 'patient request')
    second = book(orchestrator, PATIENT_B)

    assert cancelled.status is AppointmentStatus.CANCELLED
    assert cancelled.cancellation_reason == 'patient request'
    assert claim_count(session_factory, first.id) == 0
    assert second.status is AppointmentStatus.SCHEDULED


def test_booking_in_the_past_is_rejected(orchestrator) -> None:
    with pytest.raises(ValidationError) as exception_info:
        book(orchestrator, PATIENT_C, start=at(MONDAY - timedelta(days=1), 10))

    assert exception_info.value.detail == 'Cannot schedule appointments in the past.'


def test_back_to_back_and_other_provider_bookings_succeed(orchestrator) -> None:
    book(orchestrator, PATIENT_A, start=at(MONDAY, 10))
    book(orchestrator, PATIENT_B, start=at(MONDAY, 10, 30))
    book(orchestrator, PATIENT_C, start=at(MONDAY, 10), provider_id=OTHER_PROVIDER_ID)

    assert len(orchestrator.list_appointments()) == 3


@pytest.mark.parametrize(
    ('start', 'minutes', 'error_detail'),
    [
        (at(MONDAY, 10, 3), 30, 'Appointments must start on 5-minute boundaries.'),
        (at(MONDAY, 10), 0, 'Duration must be a positive number of minutes.'),
        (at(MONDAY, 10), 32, 'Duration must be a multiple of 5 minutes.'),
        (at(MONDAY, 10), 485, 'Appointments cannot be longer than 480 minutes.'),
        (at(MONDAY, 16, 45), 30, 'Provider is not available at this time.'),
        (at(MONDAY, 8, 30), 60, 'Provider is not available at this time.'),
        (at(TUESDAY, 10), 30, 'Provider is not available on this day.'),
    ],
)
def test_invalid_requests_are_rejected(orchestrator, start, minutes, error_detail) -> None:
    with pytest.raises(ValidationError) as exception_info:
        book(orchestrator, start=start, minutes=minutes)

    assert exception_info.value.detail == error_detail


def test_unknown_patient_and_inactive_provider_are_not_found(orchestrator) -> None:
    with pytest.raises(NotFoundError) as exception_info:
        book(orchestrator, patient_id=404)
    assert exception_info.value.detail == 'Patient not found.'

    with pytest.raises(NotFoundError) as exception_info:
        book(orchestrator, provider_id=INACTIVE_PROVIDER_ID)
    assert exception_info.value.detail == 'Provider not found.'


def test_patient_cannot_book_for_someone_else(orchestrator, patient_user) -> None:
    with pytest.raises(ForbiddenError):
        book(orchestrator, PATIENT_B, actor=patient_user)

    assert book(orchestrator, PATIENT_A, actor=patient_user).patient_id == PATIENT_A


def test_aware_start_is_stored_as_clinic_wall_time(orchestrator) -> None:
    appointment = book(orchestrator, start=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc))

    assert appointment.scheduled_at == at(MONDAY, 10)
    assert appointment.scheduled_at.tzinfo is None


def test_default_duration_is_applied(orchestrator) -> None:
    appointment = orchestrator.create_appointment(PATIENT_A, PROVIDER_ID, at(MONDAY, 11))

    assert appointment.duration_minutes == 30


def test_random_bookings_never_overlap(orchestrator) -> None:
    rng = random.Random(7)

    for index in range(60):
        start = at(MONDAY, 9) + timedelta(minutes=5 * rng.randrange(0, 90))
        try:
            book(orchestrator, PATIENT_A + index % 3, start=start, minutes=5 * rng.randrange(1, 13))
        except (ConflictError, ValidationError):
            continue

    active = [
        appointment
        for appointment in orchestrator.list_appointments(provider_id=PROVIDER_ID, limit=500)
        if appointment.status in ACTIVE_STATUSES
    ]
    assert active
    for index, first in enumerate(active):
        for second in active[index + 1:]:
            assert not intervals_overlap(first.scheduled_at, first.end_time, second.scheduled_at, second.end_time)


# ===== Concurrency =====

def test_lost_claim_race_surfaces_as_conflict(orchestrator, monkeypatch) -> None:
    winner = book(orchestrator, PATIENT_A)
    # Simulate a request whose conflict check ran before the winner committed.
    monkeypatch.setattr(AppointmentOrchestrator, '_ensure_no_conflict', staticmethod(lambda *args, **kwargs: None))

    with pytest.raises(ConflictError) as exception_info:
        book(orchestrator, PATIENT_B, start=at(MONDAY, 10, 15))

    assert exception_info.value.appointment_id == winner.id
    assert len(orchestrator.list_appointments()) == 1


def test_concurrent_bookings_for_same_interval_yield_one_winner(tmp_path, monkeypatch) -> None:
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={'check_same_thread': False, 'timeout': 15},
    )
    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    seed_directory(factory)

    orchestrator = AppointmentOrchestrator(
        factory,
        SqlPatientDirectory(factory),
        SqlProviderDirectory(factory),
        EventBus(),
        clock=FixedClock(at(MONDAY, 7)),
    )

    barrier = threading.Barrier(2)
    checked = threading.local()
    original_find_conflict = ConflictDetector.find_conflict

    def find_conflict_then_wait(self, *args, **kwargs):
        result = original_find_conflict(self, *args, **kwargs)
        if not getattr(checked, 'done', False):
            checked.done = True
            barrier.wait(timeout=10)
        return result

    monkeypatch.setattr(ConflictDetector, 'find_conflict', find_conflict_then_wait)

    outcomes = []
    lock = threading.Lock()

    def attempt(patient_id: int) -> None:
        try:
            appointment = book(orchestrator, patient_id)
            outcome = ('booked', appointment.id)
        except ConflictError as exc:
            outcome = ('conflict', exc.appointment_id)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(patient_id,)) for patient_id in (PATIENT_A, PATIENT_B)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    try:
        assert sorted(kind for kind, _ in outcomes) == ['booked', 'conflict']
        booked_id = next(value for kind, value in outcomes if kind == 'booked')
        assert next(value for kind, value in outcomes if kind == 'conflict') == booked_id

        db = factory()
        try:
            assert db.query(Appointment).count() == 1
        finally:
            db.close()
    finally:
        file_engine.dispose()


# ===== Updates =====

def test_reschedule_moves_claims_and_reminders(orchestrator, session_factory, notifications) -> None:
    appointment = book(orchestrator)

    moved = orchestrator.update_appointment(appointment.id, {'scheduled_at': at(MONDAY, 14)})

    assert moved.scheduled_at == at(MONDAY, 14)
    assert moved.end_time == at(MONDAY, 14, 30)
    assert claim_count(session_factory, appointment.id) == 6
    # The old 10:00 interval is free again.
    book(orchestrator, PATIENT_B)

    reminder_fire_times = sorted(
        job['fire_at'] for job in notifications.jobs.values() if job['template'] == 'appointment-reminder'
        and job['context']['appointment_id'] == appointment.id
    )
    assert reminder_fire_times == [at(MONDAY, 12), at(MONDAY, 13, 30)]
    assert 'appointment-rescheduled' in templates(notifications)


def test_reschedule_may_overlap_its_own_interval(orchestrator) -> None:
    appointment = book(orchestrator)

    moved = orchestrator.update_appointment(appointment.id, {'scheduled_at': at(MONDAY, 10, 15), 'duration_minutes': 45})

    assert moved.scheduled_at == at(MONDAY, 10, 15)
    assert moved.end_time == at(MONDAY, 11)


def test_reschedule_into_another_booking_conflicts(orchestrator) -> None:
    appointment = book(orchestrator, PATIENT_A, start=at(MONDAY, 10))
    book(orchestrator, PATIENT_B, start=at(MONDAY, 11))

    with pytest.raises(ConflictError):
        orchestrator.update_appointment(appointment.id, {'scheduled_at': at(MONDAY, 11, 15)})

    assert orchestrator.get_appointment(appointment.id).scheduled_at == at(MONDAY, 10)


def test_detail_update_publishes_plain_update(session_factory, clock) -> None:
    bus = RecordingBus()
    orchestrator = AppointmentOrchestrator(
        session_factory,
        SqlPatientDirectory(session_factory),
        SqlProviderDirectory(session_factory),
        bus,
        clock=clock,
    )
    appointment = book(orchestrator)

    updated = orchestrator.update_appointment(appointment.id, {'notes': 'bring imaging', 'is_urgent': True})

    assert updated.notes == 'bring imaging'
    assert updated.is_urgent is True
    assert [event.type for event in bus.published] == [AppointmentEventType.CREATED, AppointmentEventType.UPDATED]
    assert bus.published[-1].payload == {'reminder_preferences_changed': False}


def test_update_rejects_unknown_fields_and_terminal_appointments(orchestrator) -> None:
    appointment = book(orchestrator)

    with pytest.raises(ValidationError):
        orchestrator.update_appointment(appointment.id, {'status': 'COMPLETED'})

    orchestrator.cancel_appointment(appointment.id, 'provider sick')

    with pytest.raises(ValidationError) as exception_info:
        orchestrator.update_appointment(appointment.id, {'notes': 'too late'})
    assert exception_info.value.detail == 'terminal state'


def test_clearing_urgency_is_a_validation_error(orchestrator) -> None:
    appointment = book(orchestrator, is_urgent=True)

    with pytest.raises(ValidationError) as exception_info:
        orchestrator.update_appointment(appointment.id, {'is_urgent': None})

    assert exception_info.value.detail == 'Field(s) cannot be cleared: is_urgent.'
    assert orchestrator.get_appointment(appointment.id).is_urgent is True


def test_write_failure_outside_the_claim_is_not_reported_as_conflict(orchestrator, monkeypatch) -> None:
    appointment = book(orchestrator)
    monkeypatch.setattr('ehr_backend.scheduling.orchestrator.NON_NULLABLE_FIELDS', set())

    with pytest.raises(IntegrityError):
        orchestrator.update_appointment(appointment.id, {'is_urgent': None})

    assert claim_count(orchestrator.session_factory, appointment.id) == 6


# ===== Status transitions =====

def test_visit_flow_releases_interval_on_completion(orchestrator, session_factory, clock) -> None:
    appointment = book(orchestrator)

    orchestrator.confirm(appointment.id)
    clock.now = at(MONDAY, 9, 50)
    checked_in = orchestrator.check_in(appointment.id)
    clock.now = at(MONDAY, 10)
    orchestrator.start(appointment.id)
    assert claim_count(session_factory, appointment.id) == 6
    clock.now = at(MONDAY, 10, 25)
    completed = orchestrator.complete(appointment.id)

    assert checked_in.checked_in_at == at(MONDAY, 9, 50)
    assert completed.status is AppointmentStatus.COMPLETED
    assert completed.completed_at == at(MONDAY, 10, 25)
    assert claim_count(session_factory, appointment.id) == 0


@pytest.mark.parametrize('finish', ['complete', 'cancel'])
def test_cancelling_a_finished_appointment_fails(orchestrator, clock, finish) -> None:
    appointment = book(orchestrator)
    if finish == 'complete':
        clock.now = at(MONDAY, 9, 55)
        orchestrator.check_in(appointment.id)
        orchestrator.start(appointment.id)
        orchestrator.complete(appointment.id)
    else:
        orchestrator.cancel_appointment(appointment.id, 'schedule change')

    with pytest.raises(ValidationError) as exception_info:
        orchestrator.cancel_appointment(appointment.id, 'again')

    assert exception_info.value.detail == 'terminal state'


def test_cancel_without_reason_is_rejected(orchestrator) -> None:
    appointment = book(orchestrator)

    with pytest.raises(ValidationError):
        orchestrator.cancel_appointment(appointment.id, '  ')

    assert orchestrator.get_appointment(appointment.id).status is AppointmentStatus.SCHEDULED


def test_cancel_retracts_pending_reminders(orchestrator, session_factory, notifications, calendar_gateway) -> None:
    appointment = book(orchestrator)

    orchestrator.cancel_appointment(appointment.id, 'patient request')

    db = session_factory()
    try:
        jobs = db.query(ReminderJob).filter(ReminderJob.appointment_id == appointment.id).all()
        assert jobs
        assert all(job.retracted for job in jobs)
        assert all(job.gateway_job_id is None for job in jobs)
    finally:
        db.close()
    assert templates(notifications) == ['appointment-cancelled', 'appointment-confirmation']
    assert calendar_gateway.events == {}


def test_no_show_requires_start_time_to_pass(orchestrator, clock) -> None:
    appointment = book(orchestrator)

    with pytest.raises(ValidationError):
        orchestrator.mark_no_show(appointment.id)

    clock.now = at(MONDAY, 10, 40)
    marked = orchestrator.mark_no_show(appointment.id)

    assert marked.status is AppointmentStatus.NO_SHOW


def test_unknown_appointment_is_not_found(orchestrator) -> None:
    with pytest.raises(NotFoundError) as exception_info:
        orchestrator.check_in(12345)

    assert exception_info.value.detail == 'Appointment not found.'


# ===== Reads =====

def test_patient_only_sees_own_appointments(orchestrator, patient_user) -> None:
    own = book(orchestrator, PATIENT_A, start=at(MONDAY, 10))
    other = book(orchestrator, PATIENT_B, start=at(MONDAY, 11))

    assert [appointment.id for appointment in orchestrator.list_appointments(actor=patient_user)] == [own.id]
    with pytest.raises(ForbiddenError):
        orchestrator.get_appointment(other.id, actor=patient_user)


def test_list_filters_by_status_and_range(orchestrator) -> None:
    first = book(orchestrator, PATIENT_A, start=at(MONDAY, 10))
    second = book(orchestrator, PATIENT_B, start=at(MONDAY, 13))
    orchestrator.cancel_appointment(first.id, 'patient request')

    scheduled = orchestrator.list_appointments(status=AppointmentStatus.SCHEDULED)
    afternoon = orchestrator.list_appointments(start=at(MONDAY, 12), end=at(MONDAY, 17))

    assert [appointment.id for appointment in scheduled] == [second.id]
    assert [appointment.id for appointment in afternoon] == [second.id]


def test_appointment_stats_counts_by_status(orchestrator) -> None:
    first = book(orchestrator, PATIENT_A, start=at(MONDAY, 10), is_urgent=True)
    book(orchestrator, PATIENT_B, start=at(MONDAY, 11))
    book(orchestrator, PATIENT_C, start=at(MONDAY, 10), provider_id=OTHER_PROVIDER_ID)
    orchestrator.cancel_appointment(first.id, 'patient request')

    stats = orchestrator.appointment_stats(provider_id=PROVIDER_ID)

    assert stats['total_appointments'] == 2
    assert stats['urgent_appointments'] == 1
    assert stats['appointments_by_status']['CANCELLED'] == 1
    assert stats['appointments_by_status']['SCHEDULED'] == 1
    assert stats['appointments_by_status']['COMPLETED'] == 0


# ===== Side effects =====

class BrokenCalendarGateway(LoggingCalendarGateway):
    def create(self, event):
        raise CalendarError('calendar offline')


def test_side_effect_failure_does_not_undo_booking(session_factory, clock, notifications) -> None:
    orchestrator = build_orchestrator(
        session_factory,
        notifications=notifications,
        calendar=BrokenCalendarGateway(),
        clock=clock,
    )

    appointment = book(orchestrator)

    assert orchestrator.get_appointment(appointment.id).status is AppointmentStatus.SCHEDULED
    assert 'appointment-confirmation' in templates(notifications)
