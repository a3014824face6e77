"""Appointment model definitions."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from ehr_backend.database import Base
from ehr_backend.scheduling.lifecycle import AppointmentStatus


class Appointment(Base):
    """Represents a scheduled appointment. Rows are never deleted; terminal statuses mark the end."""
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_appointments_positive_duration"),
    )

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(
        Enum(AppointmentStatus, native_enum=False, length=32),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    appointment_type = Column(String(64))
    reason = Column(String(500))
    notes = Column(Text)
    is_urgent = Column(Boolean, nullable=False, default=False)
    reminder_preferences = Column(JSON)
    cancellation_reason = Column(String(500))
    checked_in_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    completed_at = Column(DateTime)
    calendar_event_id = Column(String(255))
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)



class AppointmentSlotClaim(Base):
    """One reserved bucket of a provider's calendar, held while the owning appointment is active."""
    __tablename__ = "appointment_slot_claims"
    __table_args__ = (
        UniqueConstraint("provider_id", "bucket_start", name="uq_slot_claims_provider_bucket"),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False)
    bucket_start = Column(DateTime, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)

