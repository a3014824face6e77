"""
Slot generation.

Turns a provider's weekly availability windows into the bookable intervals of a
given day. A slot reported as free is only a snapshot; booking re-validates.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator

from ehr_backend.core.errors import ValidationError
from ehr_backend.scheduling.conflicts import ConflictDetector
from ehr_backend.scheduling.stores import AvailabilityStore


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class AvailableSlots:
    """Lazy, finite and restartable: every iteration re-reads windows and appointments."""

    def __init__(
        self,
        generator: 'SlotGenerator',
        provider_id: int,
        day: date,
        slot_duration: timedelta,
    ):
        self._generator = generator
        self.provider_id = provider_id
        self.day = day
        self.slot_duration = slot_duration

    def __iter__(self) -> Iterator[Slot]:
        return self._generator.iter_slots(self.provider_id, self.day, self.slot_duration)


class SlotGenerator:
    def __init__(
        self,
        availability: AvailabilityStore,
        conflicts: ConflictDetector,
        increment_minutes: int | None = None,
    ):
        self.availability = availability
        self.conflicts = conflicts
        self.increment_minutes = increment_minutes

    def generate_slots(self, provider_id: int, day: date, slot_duration_minutes: int) -> AvailableSlots:
        if slot_duration_minutes <= 0:
            raise ValidationError('Slot duration must be a positive number of minutes.')

        return AvailableSlots(self, provider_id, day, timedelta(minutes=slot_duration_minutes))

    def iter_slots(self, provider_id: int, day: date, slot_duration: timedelta) -> Iterator[Slot]:
        windows = sorted(
            self.availability.windows_for(provider_id, day.weekday()),
            key=lambda window: window.start_time,
        )

        for window in windows:
            window_end = datetime.combine(day, window.end_time)
            candidate_start = self._align(datetime.combine(day, window.start_time))

            while candidate_start + slot_duration <= window_end:
                candidate_end = candidate_start + slot_duration
                if not self.conflicts.has_conflict(provider_id, candidate_start, candidate_end):
                    yield Slot(start=candidate_start, end=candidate_end)
                candidate_start = candidate_end

    def _align(self, value: datetime) -> datetime:
        """First grid boundary at or after value; windows may open off the grid."""
        if not self.increment_minutes:
            return value
        step = timedelta(minutes=self.increment_minutes)
        midnight = datetime.combine(value.date(), datetime.min.time())
        remainder = (value - midnight) % step
        return value + (step - remainder) if remainder else value
