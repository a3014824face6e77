"""
Appointment lifecycle.

SCHEDULED -> CONFIRMED -> CHECKED_IN -> IN_PROGRESS -> COMPLETED
SCHEDULED -> CHECKED_IN (walk-in, no prior confirmation)
SCHEDULED | CONFIRMED | CHECKED_IN -> CANCELLED (reason required)
SCHEDULED | CONFIRMED -> NO_SHOW (only after the start time, without check-in)

COMPLETED, CANCELLED and NO_SHOW are terminal. Every transition writes the
status and its timestamp field on the same object, so a single flush persists
both.
"""

import enum
from datetime import datetime

from ehr_backend.core.errors import ValidationError


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = 'SCHEDULED'
    CONFIRMED = 'CONFIRMED'
    CHECKED_IN = 'CHECKED_IN'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    NO_SHOW = 'NO_SHOW'

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.IN_PROGRESS,
})

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CHECKED_IN: frozenset({
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def ensure_not_terminal(appointment) -> None:
    if AppointmentStatus(appointment.status).is_terminal:
        raise ValidationError('terminal state')


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[AppointmentStatus(current)]


class AppointmentLifecycle:
    """Applies guarded status transitions to appointment records."""

    def transition(
        self,
        appointment,
        target: AppointmentStatus,
        now: datetime,
        reason: str | None = None,
    ):
        current = AppointmentStatus(appointment.status)
        target = AppointmentStatus(target)

        ensure_not_terminal(appointment)

        if not can_transition(current, target):
            raise ValidationError(
                f'Cannot change appointment status from {current.value} to {target.value}.'
            )

        guard = _GUARDS.get(target)
        if guard is not None:
            guard(appointment, now, reason)

        appointment.status = target
        appointment.updated_at = now

        if target is AppointmentStatus.CHECKED_IN:
            appointment.checked_in_at = now
        elif target is AppointmentStatus.CANCELLED:
            appointment.cancelled_at = now
            appointment.cancellation_reason = reason.strip()
        elif target is AppointmentStatus.COMPLETED:
            appointment.completed_at = now

        return appointment

    def confirm(self, appointment, now: datetime):
        return self.transition(appointment, AppointmentStatus.CONFIRMED, now)

    def check_in(self, appointment, now: datetime):
        return self.transition(appointment, AppointmentStatus.CHECKED_IN, now)

    def start(self, appointment, now: datetime):
        return self.transition(appointment, AppointmentStatus.IN_PROGRESS, now)

    def complete(self, appointment, now: datetime):
        return self.transition(appointment, AppointmentStatus.COMPLETED, now)

    def cancel(self, appointment, now: datetime, reason: str | None):
        return self.transition(appointment, AppointmentStatus.CANCELLED, now, reason=reason)

    def mark_no_show(self, appointment, now: datetime):
        return self.transition(appointment, AppointmentStatus.NO_SHOW, now)


def _guard_check_in(appointment, now: datetime, reason: str | None) -> None:
    if appointment.scheduled_at.date() != now.date():
        raise ValidationError("Can only check in for today's appointments.")


def _guard_cancel(appointment, now: datetime, reason: str | None) -> None:
    if reason is None or not reason.strip():
        raise ValidationError('A cancellation reason is required.')


def _guard_no_show(appointment, now: datetime, reason: str | None) -> None:
    if appointment.checked_in_at is not None:
        raise ValidationError('Checked-in appointments cannot be marked as no-show.')
    if now < appointment.scheduled_at:
        raise ValidationError('Appointments can only be marked as no-show after their start time.')


_GUARDS = {
    AppointmentStatus.CHECKED_IN: _guard_check_in,
    AppointmentStatus.CANCELLED: _guard_cancel,
    AppointmentStatus.NO_SHOW: _guard_no_show,
}
