import csv
import io
import logging
from collections import Counter
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from practice_calendar.core.errors import SchedulingConflict, SchedulingError, ValidationError
from practice_calendar.models.appointment import Appointment
from practice_calendar.models.clinician import Clinician
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
    INTERNAL_BLOCKED_TIME_TYPE,
    count_real_appointments,
    filter_real_appointments,
    is_blocked_time_appointment,
)
from practice_calendar.scheduling.cache import MaterializationCache
from practice_calendar.scheduling.conflicts import Conflict, blocking_conflicts, find_conflicts
from practice_calendar.scheduling.materializer import AvailabilityMaterializer, is_time_slot_available
from practice_calendar.scheduling.recurrence import expand_series, select_scope, shift_instances
from practice_calendar.scheduling.repository import ScheduleRepository
from practice_calendar.scheduling.schemas import AppointmentDraft, RecurrenceFrequency, SeriesScope
from practice_calendar.scheduling.timezones import ensure_utc, local_date_of, resolve_zone_or_default, to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 600
EXPORT_COLUMNS = ('id', 'client_id', 'clinician_id', 'start_at', 'end_at', 'type', 'status', 'series_id', 'notes')


def _normalize_type(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None
    if normalized == INTERNAL_BLOCKED_TIME_TYPE:
        raise ValueError('This appointment type is reserved.')
    return normalized


def _normalize_notes(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


class CreateAppointmentRequest(BaseModel):
    client_id: str
    clinician_id: str
    start_at: datetime
    end_at: datetime
    type: str | None = None
    notes: str | None = None
    frequency: RecurrenceFrequency | None = None
    occurrence_count: int | None = None

    @field_validator('client_id')
    @classmethod
    def validate_client_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Client id is required.')
        if normalized == BLOCKED_TIME_CLIENT_ID:
            raise ValueError('This client id is reserved.')
        return normalized

    @field_validator('end_at')
    @classmethod
    def validate_end_at(cls, value: datetime, info) -> datetime:
        start_at = info.data.get('start_at')
        if start_at is not None and ensure_utc(value) <= ensure_utc(start_at):
            raise ValueError('end_at must be after start_at.')
        return value

    @field_validator('type')
    @classmethod
    def validate_type(cls, value: str | None) -> str | None:
        return _normalize_type(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_notes(value)


class UpdateAppointmentRequest(BaseModel):
    start_at: datetime | None = None
    end_at: datetime | None = None
    status: str | None = None
    type: str | None = None
    notes: str | None = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError('Status cannot be blank.')
        return normalized

    @field_validator('type')
    @classmethod
    def validate_type(cls, value: str | None) -> str | None:
        return _normalize_type(value)

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_notes(value)


class AppointmentResponse(BaseModel):
    id: int
    client_id: str
    clinician_id: str
    start_at: datetime
    end_at: datetime
    type: str | None = None
    status: str
    notes: str | None = None
    series_id: str | None = None
    outside_availability: bool | None = None


class AppointmentCountResponse(BaseModel):
    clinician_id: str
    count: int


class AppointmentReportResponse(BaseModel):
    clinician_id: str
    start: datetime | None = None
    end: datetime | None = None
    total_appointments: int
    total_minutes: int
    distinct_clients: int
    by_status: dict[str, int]
    by_type: dict[str, int]


def appointment_response(appointment: Appointment, outside_availability: bool | None = None) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        client_id=appointment.client_id,
        clinician_id=appointment.clinician_id,
        start_at=ensure_utc(appointment.start_at),
        end_at=ensure_utc(appointment.end_at),
        type=appointment.type,
        status=appointment.status or 'scheduled',
        notes=appointment.notes,
        series_id=appointment.series_id,
        outside_availability=outside_availability,
    )


def _find_blocking_conflicts(
    repository: ScheduleRepository,
    clinician_id: str,
    intervals: list[tuple[datetime, datetime]],
    ignore_ids: set[int] | None = None,
) -> list[Conflict]:
    range_start = min(start_at for start_at, _ in intervals)
    range_end = max(end_at for _, end_at in intervals)
    appointments = repository.list_appointments(clinician_id, range_start, range_end)
    synced_events = repository.list_busy_synced_events(clinician_id, range_start, range_end)

    conflicts = []
    for start_at, end_at in intervals:
        conflicts.extend(blocking_conflicts(find_conflicts(
            start_at,
            end_at,
            appointments=appointments,
            synced_events=synced_events,
            ignore_ids=ignore_ids or (),
        )))
    return conflicts


def _outside_availability(
    repository: ScheduleRepository,
    cache: MaterializationCache | None,
    clinician: Clinician,
    intervals: list[tuple[datetime, datetime]],
) -> list[bool]:
    """Flag each interval that no materialized availability slot covers."""
    zone = resolve_zone_or_default(clinician.clinician_time_zone, context=f'clinician {clinician.id}')
    days = AvailabilityMaterializer(repository, cache).materialize_dates(
        clinician.id,
        [local_date_of(start_at, zone) for start_at, _ in intervals],
        clinician.clinician_time_zone,
    )

    flags = [not is_time_slot_available(days, start_at, end_at) for start_at, end_at in intervals]
    if any(flags):
        logger.info(
            '%s of %s booking(s) for clinician %s fall outside availability',
            sum(flags), len(flags), clinician.id,
        )
    return flags


def _load_client_appointment(repository: ScheduleRepository, appointment_id: int) -> Appointment:
    appointment = repository.get_appointment(appointment_id)
    if not appointment or is_blocked_time_appointment(appointment):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Appointment not found.',
        )
    return appointment


def _series_members(repository: ScheduleRepository, appointment: Appointment) -> list[Appointment]:
    if not appointment.series_id:
        return [appointment]
    return repository.list_series(appointment.series_id)


def _real_appointments(
    repository: ScheduleRepository,
    clinician_id: str,
    start: datetime | None,
    end: datetime | None,
) -> list[Appointment]:
    return filter_real_appointments(repository.list_appointments(clinician_id, start, end))


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    clinician_id: str = Query(...),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = _real_appointments(ScheduleRepository(db), clinician_id, start, end)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return [appointment_response(appointment) for appointment in appointments]


@router.get('/count', response_model=AppointmentCountResponse)
def count_appointments(clinician_id: str = Query(...), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointments = ScheduleRepository(db).list_appointments(clinician_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentCountResponse(clinician_id=clinician_id, count=count_real_appointments(appointments))


@router.post(
    '',
    response_model=list[AppointmentResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability('appointment_booking'))],
)
def create_appointment(
    data: CreateAppointmentRequest,
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    repository = ScheduleRepository(db)
    try:
        clinician = repository.require_clinician(data.clinician_id)

        anchor = AppointmentDraft(
            client_id=data.client_id,
            clinician_id=data.clinician_id,
            start_at=ensure_utc(data.start_at),
            end_at=ensure_utc(data.end_at),
            type=data.type,
            notes=data.notes,
        )
        if data.frequency is None:
            drafts = [anchor]
        elif data.occurrence_count is None:
            raise ValidationError('occurrence_count is required for recurring appointments.')
        else:
            drafts = expand_series(anchor, data.frequency, data.occurrence_count, clinician.clinician_time_zone)

        conflicts = _find_blocking_conflicts(
            repository,
            data.clinician_id,
            [(draft.start_at, draft.end_at) for draft in drafts],
        )
        if conflicts:
            raise SchedulingConflict(
                'This time overlaps an existing appointment, blocked time, or calendar event.',
                clinician_id=data.clinician_id,
                conflicts=conflicts,
            )

        outside = _outside_availability(
            repository, cache, clinician, [(draft.start_at, draft.end_at) for draft in drafts],
        )

        appointments = [
            Appointment(
                client_id=draft.client_id,
                clinician_id=draft.clinician_id,
                start_at=to_naive_utc(draft.start_at),
                end_at=to_naive_utc(draft.end_at),
                type=draft.type,
                status=draft.status,
                notes=draft.notes,
                series_id=draft.series_id,
            )
            for draft in drafts
        ]
        db.add_all(appointments)
        db.commit()
        for appointment in appointments:
            db.refresh(appointment)
        invalidate_clinician(cache, data.clinician_id)

        return [
            appointment_response(appointment, outside_availability)
            for appointment, outside_availability in zip(appointments, outside)
        ]
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.patch('/{appointment_id}', response_model=list[AppointmentResponse])
def update_appointment(
    appointment_id: int,
    data: UpdateAppointmentRequest,
    scope: SeriesScope = Query(default=SeriesScope.SINGLE),
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    repository = ScheduleRepository(db)
    try:
        target = _load_client_appointment(repository, appointment_id)
        selected = select_scope(target, _series_members(repository, target), scope)
        outside_by_id: dict[int, bool] = {}

        if data.start_at is not None or data.end_at is not None:
            new_start = ensure_utc(data.start_at) if data.start_at is not None else ensure_utc(target.start_at)
            if data.end_at is not None:
                new_end = ensure_utc(data.end_at)
            else:
                new_end = new_start + (target.end_at - target.start_at)

            clinician = repository.require_clinician(target.clinician_id)
            shifted = shift_instances(selected, target, new_start, new_end, clinician.clinician_time_zone)

            conflicts = _find_blocking_conflicts(
                repository,
                target.clinician_id,
                [(start_at, end_at) for _, start_at, end_at in shifted],
                ignore_ids={appointment.id for appointment in selected},
            )
            if conflicts:
                raise SchedulingConflict(
                    'The new time overlaps an existing appointment, blocked time, or calendar event.',
                    clinician_id=target.clinician_id,
                    conflicts=conflicts,
                )

            outside = _outside_availability(
                repository, cache, clinician, [(start_at, end_at) for _, start_at, end_at in shifted],
            )
            outside_by_id = {appointment.id: flag for (appointment, _, _), flag in zip(shifted, outside)}

            for appointment, start_at, end_at in shifted:
                appointment.start_at = to_naive_utc(start_at)
                appointment.end_at = to_naive_utc(end_at)

        for appointment in selected:
            if data.status is not None:
                appointment.status = data.status
            if data.type is not None:
                appointment.type = data.type
            if data.notes is not None:
                appointment.notes = data.notes

        db.commit()
        for appointment in selected:
            db.refresh(appointment)
        invalidate_clinician(cache, target.clinician_id)

        return [appointment_response(appointment, outside_by_id.get(appointment.id)) for appointment in selected]
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.delete('/{appointment_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: int,
    scope: SeriesScope = Query(default=SeriesScope.SINGLE),
    db: Session = Depends(get_db),
    cache: MaterializationCache | None = Depends(get_cache),
):
    ensure_database_ready()

    repository = ScheduleRepository(db)
    try:
        target = _load_client_appointment(repository, appointment_id)
        clinician_id = target.clinician_id

        for appointment in select_scope(target, _series_members(repository, target), scope):
            db.delete(appointment)
        db.commit()
        invalidate_clinician(cache, clinician_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.get(
    '/search',
    response_model=list[AppointmentResponse],
    dependencies=[Depends(require_capability('search'))],
)
def search_appointments(
    clinician_id: str = Query(...),
    q: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = _real_appointments(ScheduleRepository(db), clinician_id, None, None)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    needle = q.strip().lower()
    matches = [
        appointment
        for appointment in appointments
        if any(needle in (value or '').lower() for value in (
            appointment.client_id, appointment.type, appointment.status, appointment.notes,
        ))
    ]
    return [appointment_response(appointment) for appointment in matches]


@router.get(
    '/report',
    response_model=AppointmentReportResponse,
    dependencies=[Depends(require_capability('reports'))],
)
def appointment_report(
    clinician_id: str = Query(...),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = _real_appointments(ScheduleRepository(db), clinician_id, start, end)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    total_minutes = sum(
        int((appointment.end_at - appointment.start_at).total_seconds() // 60)
        for appointment in appointments
    )
    return AppointmentReportResponse(
        clinician_id=clinician_id,
        start=start,
        end=end,
        total_appointments=len(appointments),
        total_minutes=total_minutes,
        distinct_clients=len({appointment.client_id for appointment in appointments}),
        by_status=dict(Counter(appointment.status or 'scheduled' for appointment in appointments)),
        by_type=dict(Counter(appointment.type or 'unspecified' for appointment in appointments)),
    )


@router.get('/export', dependencies=[Depends(require_capability('exports'))])
def export_appointments(
    clinician_id: str = Query(...),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = _real_appointments(ScheduleRepository(db), clinician_id, start, end)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for appointment in appointments:
        row = appointment_response(appointment).model_dump(mode='json')
        writer.writerow([row[column] if row[column] is not None else '' for column in EXPORT_COLUMNS])

    return Response(
        content=buffer.getvalue(),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename="appointments-{clinician_id}.csv"'},
    )
