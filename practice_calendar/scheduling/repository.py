"""Database reads used by the availability engine."""

from datetime import date, datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from practice_calendar.core.errors import NotFound
from practice_calendar.models.appointment import Appointment
from practice_calendar.models.availability_exception import AvailabilityException
from practice_calendar.models.clinician import Clinician
from practice_calendar.models.synced_event import SyncedEvent
from practice_calendar.scheduling.busy_blocks import BLOCKED_TIME_CLIENT_ID, INTERNAL_BLOCKED_TIME_TYPE
from practice_calendar.scheduling.retry import run_with_retry
from practice_calendar.scheduling.schemas import WeeklyPattern
from practice_calendar.scheduling.timezones import to_naive_utc
from practice_calendar.scheduling.weekly_pattern import decode_weekly_pattern

T = TypeVar('T')


def blocked_time_condition():
    return or_(
        Appointment.client_id == BLOCKED_TIME_CLIENT_ID,
        Appointment.type == INTERNAL_BLOCKED_TIME_TYPE,
    )


class ScheduleRepository:
    def __init__(self, db: Session, **retry_options):
        self.db = db
        self.retry_options = retry_options

    def _fetch(self, description: str, query: Callable[[], T], clinician_id: Optional[str] = None) -> T:
        def guarded() -> T:
            try:
                return query()
            except SQLAlchemyError:
                self.db.rollback()
                raise

        return run_with_retry(guarded, description=description, clinician_id=clinician_id, **self.retry_options)

    def get_clinician(self, clinician_id: str) -> Optional[Clinician]:
        return self._fetch(
            f'Clinician lookup for {clinician_id}',
            lambda: self.db.query(Clinician).filter(Clinician.id == clinician_id).first(),
            clinician_id,
        )

    def require_clinician(self, clinician_id: str) -> Clinician:
        clinician = self.get_clinician(clinician_id)
        if clinician is None:
            raise NotFound(f'Clinician {clinician_id} not found.', clinician_id=clinician_id)
        return clinician

    def get_weekly_pattern(self, clinician_id: str) -> WeeklyPattern:
        return decode_weekly_pattern(self.require_clinician(clinician_id))

    def list_exceptions(self, clinician_id: str, start_date: date, end_date: date) -> list[AvailabilityException]:
        """Every exception row in range, soft-deleted ones included."""
        return self._fetch(
            f'Exception fetch for {clinician_id}',
            lambda: self.db.query(AvailabilityException).filter(
                AvailabilityException.clinician_id == clinician_id,
                AvailabilityException.specific_date >= start_date,
                AvailabilityException.specific_date <= end_date,
            ).order_by(AvailabilityException.specific_date.asc(), AvailabilityException.id.asc()).all(),
            clinician_id,
        )

    def get_exception(self, exception_id: int) -> Optional[AvailabilityException]:
        return self._fetch(
            f'Exception lookup for {exception_id}',
            lambda: self.db.query(AvailabilityException).filter(AvailabilityException.id == exception_id).first(),
        )

    def list_busy_synced_events(self, clinician_id: str, range_start: datetime, range_end: datetime) -> list[SyncedEvent]:
        start, end = to_naive_utc(range_start), to_naive_utc(range_end)
        return self._fetch(
            f'Synced event fetch for {clinician_id}',
            lambda: self.db.query(SyncedEvent).filter(
                SyncedEvent.clinician_id == clinician_id,
                SyncedEvent.is_busy.is_(True),
                SyncedEvent.start_at < end,
                SyncedEvent.end_at > start,
            ).order_by(SyncedEvent.start_at.asc(), SyncedEvent.id.asc()).all(),
            clinician_id,
        )

    def list_blocked_time(self, clinician_id: str, range_start: datetime, range_end: datetime) -> list[Appointment]:
        start, end = to_naive_utc(range_start), to_naive_utc(range_end)
        return self._fetch(
            f'Blocked time fetch for {clinician_id}',
            lambda: self.db.query(Appointment).filter(
                Appointment.clinician_id == clinician_id,
                blocked_time_condition(),
                Appointment.start_at < end,
                Appointment.end_at > start,
            ).order_by(Appointment.start_at.asc(), Appointment.id.asc()).all(),
            clinician_id,
        )

    def list_appointments(
        self,
        clinician_id: str,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
    ) -> list[Appointment]:
        """All appointment rows for a clinician, blocked time included."""
        def query():
            statement = self.db.query(Appointment).filter(Appointment.clinician_id == clinician_id)
            if range_end is not None:
                statement = statement.filter(Appointment.start_at < to_naive_utc(range_end))
            if range_start is not None:
                statement = statement.filter(Appointment.end_at > to_naive_utc(range_start))
            return statement.order_by(Appointment.start_at.asc(), Appointment.id.asc()).all()

        return self._fetch(f'Appointment fetch for {clinician_id}', query, clinician_id)

    def get_appointment(self, appointment_id: int) -> Optional[Appointment]:
        return self._fetch(
            f'Appointment lookup for {appointment_id}',
            lambda: self.db.query(Appointment).filter(Appointment.id == appointment_id).first(),
        )

    def list_series(self, series_id: str) -> list[Appointment]:
        return self._fetch(
            f'Series fetch for {series_id}',
            lambda: self.db.query(Appointment).filter(
                Appointment.series_id == series_id,
            ).order_by(Appointment.start_at.asc(), Appointment.id.asc()).all(),
        )
