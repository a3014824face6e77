"""
SQLAlchemy-backed stores used by the scheduling core.

Both stores wrap a caller-owned Session; they never commit. The orchestrator
decides transaction boundaries.
"""

from datetime import datetime, timedelta
from typing import Iterable, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from ehr_backend.models.appointment import Appointment, AppointmentSlotClaim
from ehr_backend.models.availability import AvailabilityWindow
from ehr_backend.scheduling.lifecycle import ACTIVE_STATUSES, AppointmentStatus


class AvailabilityStore(Protocol):
    def windows_for(self, provider_id: int, day_of_week: int) -> list[AvailabilityWindow]:
        ...


class AppointmentStore(Protocol):
    def get(self, appointment_id: int) -> Appointment | None:
        ...

    def active_overlapping(
        self,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ) -> Iterable[Appointment]:
        ...


class SqlAvailabilityStore:
    def __init__(self, db: Session):
        self.db = db

    def windows_for(self, provider_id: int, day_of_week: int) -> list[AvailabilityWindow]:
        return self.db.query(AvailabilityWindow).filter(
            AvailabilityWindow.provider_id == provider_id,
            AvailabilityWindow.day_of_week == day_of_week,
            AvailabilityWindow.is_active.is_(True),
        ).order_by(AvailabilityWindow.start_time.asc()).all()

    def weekly_windows(self, provider_id: int) -> list[AvailabilityWindow]:
        return self.db.query(AvailabilityWindow).filter(
            AvailabilityWindow.provider_id == provider_id,
            AvailabilityWindow.is_active.is_(True),
        ).order_by(AvailabilityWindow.day_of_week.asc(), AvailabilityWindow.start_time.asc()).all()


def iterate_bucket_starts(start: datetime, end: datetime, increment_minutes: int) -> list[datetime]:
    """Bucket starts covering [start, end), aligned down to the increment grid."""
    current = start.replace(second=0, microsecond=0)
    current -= timedelta(minutes=current.minute % increment_minutes)

    buckets: list[datetime] = []
    while current < end:
        buckets.append(current)
        current += timedelta(minutes=increment_minutes)

    return buckets


class SqlAppointmentStore:
    def __init__(self, db: Session, increment_minutes: int):
        self.db = db
        self.increment_minutes = increment_minutes

    def get(self, appointment_id: int) -> Appointment | None:
        return self.db.query(Appointment).filter(Appointment.id == appointment_id).first()

    def active_overlapping(
        self,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ) -> list[Appointment]:
        query = self.db.query(Appointment).filter(
            Appointment.provider_id == provider_id,
            Appointment.status.in_(sorted(ACTIVE_STATUSES)),
            Appointment.scheduled_at < end,
            Appointment.end_time > start,
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)

        return query.order_by(Appointment.scheduled_at.asc()).all()

    def add(self, appointment: Appointment) -> Appointment:
        self.db.add(appointment)
        self.db.flush()
        return appointment

    def claim(self, appointment: Appointment) -> None:
        """Reserve every bucket of the appointment's interval; a taken bucket fails the flush."""
        for bucket_start in iterate_bucket_starts(
            appointment.scheduled_at,
            appointment.end_time,
            self.increment_minutes,
        ):
            self.db.add(
                AppointmentSlotClaim(
                    provider_id=appointment.provider_id,
                    bucket_start=bucket_start,
                    appointment_id=appointment.id,
                )
            )
        self.db.flush()

    def release(self, appointment: Appointment) -> None:
        self.db.query(AppointmentSlotClaim).filter(
            AppointmentSlotClaim.appointment_id == appointment.id,
        ).delete(synchronize_session=False)
        self.db.flush()

    def search(
        self,
        provider_id: int | None = None,
        patient_id: int | None = None,
        status: AppointmentStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Appointment]:
        query = self._filtered(provider_id, patient_id, start, end)
        if status is not None:
            query = query.filter(Appointment.status == status)

        return query.order_by(Appointment.scheduled_at.asc()).offset(offset).limit(limit).all()

    def count_by_status(
        self,
        provider_id: int | None = None,
        patient_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[AppointmentStatus, int]:
        counts = {status: 0 for status in AppointmentStatus}
        rows = self._filtered(provider_id, patient_id, start, end).with_entities(
            Appointment.status,
            func.count(Appointment.id),
        ).group_by(Appointment.status).all()
        for appointment_status, total in rows:
            counts[AppointmentStatus(appointment_status)] = total
        return counts

    def count_urgent(
        self,
        provider_id: int | None = None,
        patient_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        return self._filtered(provider_id, patient_id, start, end).filter(
            Appointment.is_urgent.is_(True),
        ).count()

    def overdue_unattended(self, now: datetime) -> list[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.status.in_([AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED]),
            Appointment.checked_in_at.is_(None),
            Appointment.end_time <= now,
        ).order_by(Appointment.scheduled_at.asc()).all()

    def _filtered(
        self,
        provider_id: int | None,
        patient_id: int | None,
        start: datetime | None,
        end: datetime | None,
    ):
        query = self.db.query(Appointment)
        if provider_id is not None:
            query = query.filter(Appointment.provider_id == provider_id)
        if patient_id is not None:
            query = query.filter(Appointment.patient_id == patient_id)
        if start is not None:
            query = query.filter(Appointment.scheduled_at >= start)
        if end is not None:
            query = query.filter(Appointment.scheduled_at < end)
        return query
