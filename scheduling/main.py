import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from scheduling.core import config
from scheduling.database import Base, SessionLocal, engine, ensure_time_slot_schema
from scheduling.integrations.credentials import build_cipher
from scheduling.models import audit_log, doctor, doctor_lock, time_slot, unavailability  # noqa: F401
from scheduling.routes import availability_routes
from scheduling.services.availability_service import build_availability_service

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_scheduling() -> None:
    # Raises on a malformed key; startup must not continue past it.
    config.validate_runtime_config()
    cipher = build_cipher(config.REFRESH_TOKEN_ENCRYPTION_KEY)
    if cipher is None:
        logger.warning('REFRESH_TOKEN_ENCRYPTION_KEY is not set; calendar sync and export are disabled.')

    try:
        Base.metadata.create_all(bind=engine)
        ensure_time_slot_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL.')

    app.state.availability_service = build_availability_service(SessionLocal, cipher)


@app.on_event('shutdown')
def shutdown_scheduling() -> None:
    service = getattr(app.state, 'availability_service', None)
    if service is not None:
        service.close()


@app.get('/')
def root():
    return {'status': 'Scheduling API Running'}


app.include_router(availability_routes.router, prefix='/availability')


if __name__ == '__main__':
    import uvicorn

    uvicorn.run(app, host=config.APP_HOST, port=config.APP_PORT)
