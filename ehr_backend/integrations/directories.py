"""
Patient and provider directories.

Record maintenance and access policy belong to the patient and provider
services; the scheduling core only asks whether a record exists and whether the
acting user may book for a patient.
"""

from abc import ABC, abstractmethod

from sqlalchemy.orm import Session, sessionmaker

from ehr_backend.models.patient import Patient
from ehr_backend.models.provider import Provider

STAFF_ROLES = {'admin', 'staff'}


class PatientDirectory(ABC):
    @abstractmethod
    def exists(self, patient_id: int) -> bool:
        pass

    @abstractmethod
    def has_access(self, actor, patient_id: int, provider_id: int | None = None) -> bool:
        pass


class ProviderDirectory(ABC):
    @abstractmethod
    def exists(self, provider_id: int) -> bool:
        pass


class SqlPatientDirectory(PatientDirectory):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def exists(self, patient_id: int) -> bool:
        db: Session = self.session_factory()
        try:
            return db.query(Patient.id).filter(
                Patient.id == patient_id,
                Patient.is_active.is_(True),
            ).first() is not None
        finally:
            db.close()

    def has_access(self, actor, patient_id: int, provider_id: int | None = None) -> bool:
        # Internal callers (maintenance tasks) act without a user.
        if actor is None:
            return True

        role = (actor.role or '').strip().lower()
        if role in STAFF_ROLES:
            return True
        if role == 'patient':
            return actor.patient_id == patient_id
        if role == 'provider':
            return provider_id is None or actor.provider_id == provider_id

        return False


class SqlProviderDirectory(ProviderDirectory):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def exists(self, provider_id: int) -> bool:
        db: Session = self.session_factory()
        try:
            return db.query(Provider.id).filter(
                Provider.id == provider_id,
                Provider.is_active.is_(True),
            ).first() is not None
        finally:
            db.close()
