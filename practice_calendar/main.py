import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from practice_calendar.core import config
from practice_calendar.core.config import Capabilities, load_capabilities, validate_runtime_config
from practice_calendar.database import (
    Base,
    engine,
    ensure_appointment_schema,
    ensure_clinician_schema,
    ensure_synced_event_schema,
)
from practice_calendar.models import appointment, availability_exception, clinician, synced_event  # noqa: F401
from practice_calendar.routes import appointment_routes, availability_routes
from practice_calendar.scheduling.cache import MaterializationCache

logger = logging.getLogger(__name__)


def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_clinician_schema()
        ensure_appointment_schema()
        ensure_synced_event_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


def create_app(capabilities: Capabilities | None = None, cache: MaterializationCache | None = None) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL)
    validate_runtime_config()

    app = FastAPI(title='Practice Calendar API')
    app.state.capabilities = capabilities if capabilities is not None else load_capabilities()
    app.state.cache = cache if cache is not None else MaterializationCache()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    @app.on_event('startup')
    def startup() -> None:
        initialize_database()

    @app.get('/')
    def root():
        return {
            'status': 'Practice Calendar API Running',
            'disabled_features': app.state.capabilities.disabled(),
        }

    app.include_router(availability_routes.router, prefix='/availability')
    app.include_router(appointment_routes.router, prefix='/appointments')

    disabled = app.state.capabilities.disabled()
    if disabled:
        logger.info('Disabled features: %s', ', '.join(disabled))

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        'practice_calendar.main:app',
        host=config.APP_HOST,
        port=config.APP_PORT,
        reload=config.APP_RELOAD,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == '__main__':
    run()
