"""
Conflict detection.

Two intervals conflict under half-open overlap: existing.start < end and
start < existing.end. Back-to-back appointments (one ends exactly when the next
starts) do not conflict. Only appointments in the active set are considered.
"""

from datetime import datetime

from ehr_backend.scheduling.stores import AppointmentStore


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


class ConflictDetector:
    def __init__(self, appointments: AppointmentStore):
        self.appointments = appointments

    def find_conflict(
        self,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ):
        for existing in self.appointments.active_overlapping(
            provider_id,
            start,
            end,
            exclude_appointment_id=exclude_appointment_id,
        ):
            if existing.id == exclude_appointment_id:
                continue
            if intervals_overlap(existing.scheduled_at, existing.end_time, start, end):
                return existing

        return None

    def has_conflict(
        self,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
    ) -> bool:
        return self.find_conflict(provider_id, start, end, exclude_appointment_id) is not None
