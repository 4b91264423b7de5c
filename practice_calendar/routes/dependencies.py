import logging

from fastapi import HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from practice_calendar.core.config import CAPABILITY_EFFECTS, Capabilities
from practice_calendar.core.errors import (
    FetchFailed,
    InvalidTimeZone,
    NotFound,
    SchedulingConflict,
    SchedulingError,
    Timeout,
    ValidationError,
)
from practice_calendar.database import (
    SessionLocal,
    ensure_appointment_schema,
    ensure_clinician_schema,
    ensure_synced_event_schema,
)
from practice_calendar.scheduling.cache import MaterializationCache

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'

ERROR_STATUS_CODES = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTimeZone: status.HTTP_400_BAD_REQUEST,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    SchedulingConflict: status.HTTP_409_CONFLICT,
    FetchFailed: status.HTTP_503_SERVICE_UNAVAILABLE,
    Timeout: status.HTTP_504_GATEWAY_TIMEOUT,
}


def ensure_database_ready() -> None:
    try:
        ensure_clinician_schema()
        ensure_appointment_schema()
        ensure_synced_event_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def database_unavailable(exc: SQLAlchemyError) -> HTTPException:
    logger.error('Database error: %s', exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def to_http_exception(exc: SchedulingError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped_status in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = mapped_status
            break

    if isinstance(exc, SchedulingConflict):
        detail = {
            'message': exc.message,
            'conflicts': [conflict.model_dump(mode='json') for conflict in exc.conflicts],
        }
    elif exc.retryable:
        detail = {'message': exc.message, 'retryable': True}
    else:
        detail = exc.message

    return HTTPException(status_code=status_code, detail=detail)


def get_cache(request: Request) -> MaterializationCache | None:
    return getattr(request.app.state, 'cache', None)


def get_capabilities(request: Request) -> Capabilities:
    return getattr(request.app.state, 'capabilities', None) or Capabilities()


def require_capability(name: str):
    if name not in CAPABILITY_EFFECTS:
        raise KeyError(f'Unknown capability: {name}')

    def dependency(request: Request) -> None:
        if not get_capabilities(request).is_enabled(name):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f'The {name} feature is disabled.',
            )

    return dependency


def invalidate_clinician(cache: MaterializationCache | None, clinician_id: str) -> None:
    if cache is not None:
        cache.invalidate_clinician(clinician_id)
