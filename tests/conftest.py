import os
from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from ehr_backend.database import Base  # noqa: E402
from ehr_backend.integrations.calendar_sync import LoggingCalendarGateway  # noqa: E402
from ehr_backend.integrations.notifications import LoggingNotificationGateway  # noqa: E402
from ehr_backend.models.appointment import Appointment, AppointmentSlotClaim  # noqa: E402,F401
from ehr_backend.models.availability import AvailabilityWindow  # noqa: E402
from ehr_backend.models.patient import Patient  # noqa: E402
from ehr_backend.models.provider import Provider  # noqa: E402
from ehr_backend.models.reminder import ReminderJob  # noqa: E402,F401
from ehr_backend.models.user import User  # noqa: E402
from ehr_backend.scheduling.orchestrator import build_orchestrator  # noqa: E402

MONDAY = date(2026, 1, 5)
TUESDAY = date(2026, 1, 6)
PROVIDER_ID = 1
OTHER_PROVIDER_ID = 2
INACTIVE_PROVIDER_ID = 3
PATIENT_A = 1
PATIENT_B = 2
PATIENT_C = 3


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute))


def seed_directory(session_factory) -> None:
    db = session_factory()
    try:
        db.add_all([
            Patient(id=PATIENT_A, first_name='Ada', last_name='Lane', email='ada@example.com', is_active=True),
            Patient(id=PATIENT_B, first_name='Ben', last_name='Moss', email='ben@example.com', is_active=True),
            Patient(id=PATIENT_C, first_name='Cy', last_name='Nash', email='cy@example.com', is_active=True),
            Provider(id=PROVIDER_ID, first_name='Dana', last_name='Reyes', is_active=True),
            Provider(id=OTHER_PROVIDER_ID, first_name='Eli', last_name='Shaw', is_active=True),
            Provider(id=INACTIVE_PROVIDER_ID, first_name='Fay', last_name='Tran', is_active=False),
            AvailabilityWindow(provider_id=PROVIDER_ID, day_of_week=0, start_time=time(9, 0), end_time=time(17, 0)),
            AvailabilityWindow(provider_id=OTHER_PROVIDER_ID, day_of_week=0, start_time=time(9, 0), end_time=time(12, 0)),
            User(id=1, email='admin@clinic.test', role='admin'),
            User(id=2, email='ada@example.com', role='patient', patient_id=PATIENT_A),
            User(id=3, email='dana@clinic.test', role='provider', provider_id=PROVIDER_ID),
        ])
        db.commit()
    finally:
        db.close()


@pytest.fixture
def engine():
    test_engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    seed_directory(factory)
    return factory


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(at(MONDAY, 7))


@pytest.fixture
def notifications() -> LoggingNotificationGateway:
    return LoggingNotificationGateway()


@pytest.fixture
def calendar_gateway() -> LoggingCalendarGateway:
    return LoggingCalendarGateway()


@pytest.fixture
def orchestrator(session_factory, clock, notifications, calendar_gateway):
    return build_orchestrator(
        session_factory,
        notifications=notifications,
        calendar=calendar_gateway,
        clock=clock,
    )


@pytest.fixture
def admin() -> User:
    return User(id=1, email='admin@clinic.test', role='admin')


@pytest.fixture
def patient_user() -> User:
    return User(id=2, email='ada@example.com', role='patient', patient_id=PATIENT_A)


@pytest.fixture
def provider_user() -> User:
    return User(id=3, email='dana@clinic.test', role='provider', provider_id=PROVIDER_ID)
