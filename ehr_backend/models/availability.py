"""Availability model definitions."""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, Time
from ehr_backend.database import Base


class AvailabilityWindow(Base):
    """A provider's weekly recurring open window (day_of_week uses Monday = 0)."""
    __tablename__ = "availability_windows"
    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_day_of_week"),
        CheckConstraint("start_time < end_time", name="ck_availability_window_order"),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
