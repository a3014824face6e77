from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from functools import lru_cache

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from ehr_backend.core import config
from ehr_backend.core.errors import SchedulingError
from ehr_backend.database import SessionLocal
from ehr_backend.scheduling.orchestrator import AppointmentOrchestrator, build_orchestrator


@lru_cache(maxsize=1)
def get_event_executor() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=config.EVENT_WORKER_THREADS, thread_name_prefix='appointment-events')


@lru_cache(maxsize=1)
def get_orchestrator() -> AppointmentOrchestrator:
    return build_orchestrator(SessionLocal, executor=get_event_executor())


@contextmanager
def scheduling_errors():
    """Translate core errors into HTTP responses."""
    try:
        yield
    except SchedulingError as exc:
        raise exc.to_http_exception() from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and database credentials.',
        ) from exc
