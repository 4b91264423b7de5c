from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from practice_calendar.core.errors import SchedulingConflict, SchedulingError
from practice_calendar.models.appointment import Appointment
from practice_calendar.models.availability_exception import AvailabilityException
from practice_calendar.routes.dependencies import (
    database_unavailable,
    ensure_database_ready,
    get_cache,
    get_db,
    invalidate_clinician,
    require_capability,
    to_http_exception,
)
from practice_calendar.scheduling.busy_blocks import (
    BLOCKED_TIME_CLIENT_ID,
    BLOCKED_TIME_NOTES_PREFIX,
    BLOCKED_TIME_STATUS,
    INTERNAL_BLOCKED_TIME_TYPE,
    blocked_time_label,
    is_blocked_time_appointment,
)
from practice_calendar.scheduling.cache import MaterializationCache
from practice_calendar.scheduling.conflicts import blocking_conflicts, find_conflicts
from practice_calendar.scheduling.materializer import AvailabilityMaterializer, validate_range
from practice_calendar.scheduling.repository import ScheduleRepository
from practice_calendar.scheduling.schemas import (
    DAYS_BY_INDEX,
    SLOTS_PER_DAY,
    AvailabilityBlock,
    DayAvailability,
    WeeklyPattern,
    WeeklySlot,
)
from practice_calendar.scheduling.timezones import (
    day_bounds_utc,
    ensure_utc,
    resolve_zone,
    resolve_zone_or_default,
    to_naive_utc,
)
from practice_calendar.scheduling.weekly_pattern import encode_weekly_pattern

router = APIRouter(tags=['availability'])

DEFAULT_BLOCKED_TIME_NOTES = 'Blocked time slot'
MAX_BLOCKED_TIME_REASON_LENGTH = 200


class CreateExceptionRequest(BaseModel):
    specific_date: date
    start_time: time
    end_time: time

    @field_validator('end_time')
    @classmethod
    def validate_end_time(cls, value: time, info) -> time:
        start_time = info.data.get('start_time')
        if start_time is not None and value <= start_time:
            raise ValueError('end_time must be after start_time.')
        return value


class ExceptionResponse(BaseModel):
    id: int
    clinician_id: str
    specific_date: date
    start_time: time | None = None
    end_time: time | None = None
    is_deleted: bool

    class Config:
        from_attributes = True


class WeeklyPatternRequest(BaseModel):
    time_zone: str | None = None
    days: dict[str, list[WeeklySlot]]

    @field_validator('days')
    @classmethod
    def validate_days(cls, value: dict[str, list[WeeklySlot]]) -> dict[str, list[WeeklySlot]]:
        normalized = {}
        for day_name, slots in value.items():
            key = day_name.strip().lower()
            if key not in DAYS_BY_INDEX:
                raise ValueError(f'Unknown day of week: {day_name}.')
            if len(slots) > SLOTS_PER_DAY:
                raise ValueError(f'At most {SLOTS_PER_DAY} slots are allowed per day.')
            for slot in slots:
                if slot.start_time >= slot.end_time:
                    raise ValueError(f'Slot on {key} must end after it starts.')
            normalized[key] = slots
        return normalized

    def to_pattern(self, clinician_id: str) -> WeeklyPattern:
        days = {}
        for day_name in DAYS_BY_INDEX:
            slots = sorted(self.days.get(day_name, []), key=lambda slot: slot.start_time)
            days[day_name] = tuple(slots + [None] * (SLOTS_PER_DAY - len(slots)))
        return WeeklyPattern(clinician_id=clinician_id, time_zone=self.time_zone, days=days)


class CreateBlockedTimeRequest(BaseModel):
    start_at: datetime
    end_at: datetime
    reason: str | None = None

    @field_validator('end_at')
    @classmethod
    def validate_end_at(cls, value: datetime, info) -> datetime:
        start_at = info.data.get('start_at')
        if start_at is not None and ensure_utc(value) <= ensure_utc(start_at):
            raise ValueError('end_at must be after start_at.')
        return value

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_BLOCKED_TIME_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_BLOCKED_TIME_REASON_LENGTH} characters or fewer.')

        return normalized


class BlockedTimeResponse(BaseModel):
    id: int
    clinician_id: str
    start_at: datetime
    end_at: datetime
    label: str
    status: str
    notes: str | None = None


def blocked_time_response(appointment: Appointment) -> BlockedTimeResponse:
    return BlockedTimeResponse(
        id=appointment.id,
        clinician_id=appointment.clinician_id,
        start_at=ensure_utc(appointment.start_at),
        end_at=ensure_utc(appointment.end_at),
        label=blocked_time_label(appointment),
        status=appointment.status or BLOCKED_TIME_STATUS,
        notes=appointment.notes,
    )


@router.get(
    '/{clinician_id}',
    response_model=dict[str, DayAvailability],
    dependencies=[Depends(require_capability('calendar_view'))],
)
def get_availability(
    clinician_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    zone: str | None = Query(default=None),
    refresh: int = Query(default=0),
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    materializer = AvailabilityMaterializer(ScheduleRepository(db), cache)
    try:
        return materializer.materialize(clinician_id, start_date, end_date, zone, refresh)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get(
    '/{clinician_id}/blocks',
    response_model=list[AvailabilityBlock],
    dependencies=[Depends(require_capability('calendar_view'))],
)
def get_availability_blocks(
    clinician_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    zone: str | None = Query(default=None),
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    materializer = AvailabilityMaterializer(ScheduleRepository(db), cache)
    try:
        return materializer.materialize_availability_blocks(clinician_id, start_date, end_date, zone)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/{clinician_id}/weekly-pattern', response_model=WeeklyPattern)
def get_weekly_pattern(clinician_id: str, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return ScheduleRepository(db).get_weekly_pattern(clinician_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.put('/{clinician_id}/weekly-pattern', response_model=WeeklyPattern)
def update_weekly_pattern(
    clinician_id: str,
    data: WeeklyPatternRequest,
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    try:
        clinician = ScheduleRepository(db).require_clinician(clinician_id)
        if data.time_zone is not None:
            resolve_zone(data.time_zone)
            clinician.clinician_time_zone = data.time_zone

        pattern = data.to_pattern(clinician_id)
        for column, value in encode_weekly_pattern(pattern).items():
            setattr(clinician, column, value)

        db.commit()
        db.refresh(clinician)
        invalidate_clinician(cache, clinician_id)

        return ScheduleRepository(db).get_weekly_pattern(clinician_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/{clinician_id}/exceptions', response_model=ExceptionResponse, status_code=status.HTTP_201_CREATED)
def create_exception(
    clinician_id: str,
    data: CreateExceptionRequest,
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    try:
        ScheduleRepository(db).require_clinician(clinician_id)

        exception = AvailabilityException(
            clinician_id=clinician_id,
            specific_date=data.specific_date,
            start_time=data.start_time,
            end_time=data.end_time,
            is_deleted=False,
        )
        db.add(exception)
        db.commit()
        db.refresh(exception)
        invalidate_clinician(cache, clinician_id)

        return exception
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.get('/{clinician_id}/exceptions', response_model=list[ExceptionResponse])
def list_exceptions(
    clinician_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    include_deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        validate_range(start_date, end_date)
        exceptions = ScheduleRepository(db).list_exceptions(clinician_id, start_date, end_date)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    if include_deleted:
        return exceptions
    return [exception for exception in exceptions if not exception.is_deleted]


@router.delete('/exceptions/{exception_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_exception(
    exception_id: int,
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    try:
        exception = ScheduleRepository(db).get_exception(exception_id)
        if not exception or exception.is_deleted:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Exception not found.',
            )

        exception.is_deleted = True
        db.commit()
        invalidate_clinician(cache, exception.clinician_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post(
    '/{clinician_id}/blocked-times',
    response_model=BlockedTimeResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability('blocked_time'))],
)
def create_blocked_time(
    clinician_id: str,
    data: CreateBlockedTimeRequest,
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    repository = ScheduleRepository(db)
    start_at, end_at = ensure_utc(data.start_at), ensure_utc(data.end_at)
    try:
        repository.require_clinician(clinician_id)

        conflicts = blocking_conflicts(find_conflicts(
            start_at,
            end_at,
            appointments=repository.list_appointments(clinician_id, start_at, end_at),
        ))
        if conflicts:
            raise SchedulingConflict(
                'This time overlaps an existing appointment or blocked time.',
                clinician_id=clinician_id,
                conflicts=conflicts,
            )

        blocked_time = Appointment(
            client_id=BLOCKED_TIME_CLIENT_ID,
            clinician_id=clinician_id,
            start_at=to_naive_utc(start_at),
            end_at=to_naive_utc(end_at),
            type=INTERNAL_BLOCKED_TIME_TYPE,
            status=BLOCKED_TIME_STATUS,
            notes=f'{BLOCKED_TIME_NOTES_PREFIX}{data.reason}' if data.reason else DEFAULT_BLOCKED_TIME_NOTES,
        )
        db.add(blocked_time)
        db.commit()
        db.refresh(blocked_time)
        invalidate_clinician(cache, clinician_id)

        return blocked_time_response(blocked_time)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.get(
    '/{clinician_id}/blocked-times',
    response_model=list[BlockedTimeResponse],
    dependencies=[Depends(require_capability('blocked_time'))],
)
def list_blocked_times(
    clinician_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    repository = ScheduleRepository(db)
    try:
        validate_range(start_date, end_date)
        clinician = repository.require_clinician(clinician_id)
        zone = resolve_zone_or_default(clinician.clinician_time_zone, context=f'clinician {clinician_id}')
        range_start, _ = day_bounds_utc(start_date, zone)
        _, range_end = day_bounds_utc(end_date, zone)

        blocked_times = repository.list_blocked_time(clinician_id, range_start, range_end)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return [blocked_time_response(blocked_time) for blocked_time in blocked_times]


@router.delete(
    '/blocked-times/{appointment_id}',
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_capability('blocked_time'))],
)
def delete_blocked_time(
    appointment_id: int,
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    try:
        blocked_time = ScheduleRepository(db).get_appointment(appointment_id)
        if not is_blocked_time_appointment(blocked_time):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Blocked time not found.',
            )

        clinician_id = blocked_time.clinician_id
        db.delete(blocked_time)
        db.commit()
        invalidate_clinician(cache, clinician_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc
