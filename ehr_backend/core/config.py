import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SQL_ECHO = _get_bool(os.getenv("SQL_ECHO"), default=False)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ehr_scheduling.db")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = _get_int(os.getenv("JWT_EXPIRES_MINUTES"), 60)

CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:4200").split(",")
    if origin.strip()
]

# Wall-clock zone that availability windows and stored appointment times are expressed in.
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")

# Appointment starts and durations must land on this grid; it is also the reservation bucket size.
SLOT_INCREMENT_MINUTES = _get_int(os.getenv("SLOT_INCREMENT_MINUTES"), 5)
DEFAULT_APPOINTMENT_DURATION_MINUTES = _get_int(os.getenv("DEFAULT_APPOINTMENT_DURATION_MINUTES"), 30)
MAX_APPOINTMENT_DURATION_MINUTES = _get_int(os.getenv("MAX_APPOINTMENT_DURATION_MINUTES"), 480)

REMINDER_OFFSETS = os.getenv("REMINDER_OFFSETS", "24h,2h,30m")
REMINDER_TEMPLATE = os.getenv("REMINDER_TEMPLATE", "appointment-reminder")
DEFAULT_REMINDER_CHANNELS = {"email": True}

EVENT_WORKER_THREADS = _get_int(os.getenv("EVENT_WORKER_THREADS"), 4)


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")

    if SLOT_INCREMENT_MINUTES <= 0 or 60 % SLOT_INCREMENT_MINUTES != 0:
        raise RuntimeError("SLOT_INCREMENT_MINUTES must be a positive divisor of 60.")

    # Imported here so config stays importable before the scheduling package.
    from ehr_backend.scheduling.reminders import parse_reminder_offsets

    try:
        parse_reminder_offsets(REMINDER_OFFSETS)
    except ValueError as exc:
        raise RuntimeError(f"REMINDER_OFFSETS is invalid: {exc}") from exc
