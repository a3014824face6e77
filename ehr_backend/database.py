from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ehr_backend.core import config


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith('sqlite'):
        # Sessions are handed to the event worker pool.
        connect_args['check_same_thread'] = False
    return create_engine(database_url, echo=config.SQL_ECHO, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_scheduling_schema_checked = False

SCHEDULING_INDEXES = [
    (
        'appointments',
        'CREATE INDEX IF NOT EXISTS idx_appointments_provider_range '
        'ON appointments(provider_id, scheduled_at, end_time)',
    ),
    (
        'appointments',
        'CREATE INDEX IF NOT EXISTS idx_appointments_patient_start ON appointments(patient_id, scheduled_at)',
    ),
    (
        'appointments',
        'CREATE INDEX IF NOT EXISTS idx_appointments_status_start ON appointments(status, scheduled_at)',
    ),
    (
        'availability_windows',
        'CREATE INDEX IF NOT EXISTS idx_availability_provider_day '
        'ON availability_windows(provider_id, day_of_week, start_time)',
    ),
    (
        'reminder_jobs',
        'CREATE INDEX IF NOT EXISTS idx_reminder_jobs_pending ON reminder_jobs(sent, retracted, fire_at)',
    ),
]


def ensure_scheduling_schema(bind: Engine | None = None) -> None:
    global _scheduling_schema_checked

    if _scheduling_schema_checked and bind is None:
        return

    target = bind or engine

    with _schema_lock:
        if _scheduling_schema_checked and bind is None:
            return

        existing_tables = set(inspect(target).get_table_names())

        with target.begin() as connection:
            for table_name, statement in SCHEDULING_INDEXES:
                if table_name in existing_tables:
                    connection.execute(text(statement))

        if bind is None:
            _scheduling_schema_checked = True
