"""Reminder job model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from ehr_backend.database import Base


class ReminderJob(Base):
    """A reminder handed to the notification gateway for one offset and channel."""
    __tablename__ = "reminder_jobs"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    offset_label = Column(String(16), nullable=False)
    channel = Column(String(16), nullable=False)
    fire_at = Column(DateTime, nullable=False)
    sent = Column(Boolean, nullable=False, default=False)
    retracted = Column(Boolean, nullable=False, default=False)
    gateway_job_id = Column(String(255))

    @property
    def idempotency_key(self) -> str:
        return f"appointment-{self.appointment_id}:{self.offset_label}:{self.channel}:{self.fire_at:%Y%m%dT%H%M}"
