"""Patient model definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from ehr_backend.database import Base


class Patient(Base):
    """Directory entry for a patient; records are maintained by the patient service."""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True)
    first_name = Column(String)
    last_name = Column(String)
    email = Column(String)
    phone = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
