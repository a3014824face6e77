"""Provider model definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from ehr_backend.database import Base


class Provider(Base):
    """Directory entry for a provider; records are maintained by provider management."""
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True)
    first_name = Column(String)
    last_name = Column(String)
    email = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
