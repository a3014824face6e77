import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from ehr_backend.core import config
from ehr_backend.database import Base, engine, ensure_scheduling_schema
from ehr_backend.models import appointment, availability, patient, provider, reminder, user  # noqa: F401
from ehr_backend.routes import appointment_routes, availability_routes
from ehr_backend.routes.dependencies import get_event_executor

logging.basicConfig(level=config.LOG_LEVEL)

app = FastAPI(title='EHR Scheduling API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()

    try:
        Base.metadata.create_all(bind=engine)
        ensure_scheduling_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('shutdown')
def stop_event_workers() -> None:
    get_event_executor().shutdown(wait=True)


@app.get('/')
def root():
    return {'status': 'EHR Scheduling API Running'}


app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(availability_routes.router, prefix='/availability')
