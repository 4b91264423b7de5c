"""
Availability Materializer

Public entry point of the engine. For a clinician and an inclusive date range
it produces ``{"YYYY-MM-DD": DayAvailability}``:

    1. Decode the weekly pattern once (repository boundary)
    2. Fetch exceptions, busy synced events and internal blocked time
    3. Per day: weekly baseline -> exception overlay (replace, never merge)
    4. Anchor each slot's wall-clock times on that day in the clinician zone
    5. Attach busy intervals for display and conflict checks

Each day is converted independently so ranges crossing a DST transition get
the offset in force on each day.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from practice_calendar.core import config
from practice_calendar.core.errors import FetchFailed, SchedulingError, ValidationError
from practice_calendar.scheduling.busy_blocks import merge_busy_blocks
from practice_calendar.scheduling.cache import MaterializationCache, range_signature
from practice_calendar.scheduling.exception_overlay import group_exceptions_by_date, overlay_day
from practice_calendar.scheduling.repository import ScheduleRepository
from practice_calendar.scheduling.retry import fetch_budget
from practice_calendar.scheduling.schemas import (
    AvailabilityBlock,
    AvailabilitySlot,
    DayAvailability,
    WeeklyPattern,
    day_name_for,
)
from practice_calendar.scheduling.timezones import (
    ZoneLike,
    day_bounds_utc,
    ensure_utc,
    resolve_zone_or_default,
    to_utc,
)
from practice_calendar.scheduling.weekly_pattern import slots_for_date

logger = logging.getLogger(__name__)


def iter_days(start_date: date, end_date: date) -> Iterator[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def validate_range(start_date: date, end_date: date) -> None:
    if start_date > end_date:
        raise ValidationError(f'start_date {start_date} is after end_date {end_date}.')
    span = (end_date - start_date).days + 1
    if span > config.MAX_MATERIALIZE_DAYS:
        raise ValidationError(f'Range of {span} days exceeds the {config.MAX_MATERIALIZE_DAYS}-day limit.')


def anchor_slot(slot: AvailabilitySlot, day: date, zone: ZoneLike) -> AvailabilitySlot:
    return slot.model_copy(update={
        'start_at': to_utc(day, slot.start_time, zone),
        'end_at': to_utc(day, slot.end_time, zone),
    })


def materialize_from_records(
    pattern: WeeklyPattern,
    exceptions: Iterable[Any],
    synced_events: Iterable[Any],
    blocked_appointments: Iterable[Any],
    start_date: date,
    end_date: date,
    zone: ZoneLike,
) -> dict[str, DayAvailability]:
    """Pure materialization over already-fetched records."""
    days = list(iter_days(start_date, end_date))
    grouped_exceptions = group_exceptions_by_date(exceptions)
    busy = merge_busy_blocks(days, synced_events, blocked_appointments, zone)

    result = {}
    for day in days:
        slots = overlay_day(slots_for_date(pattern, day), day, grouped_exceptions)
        result[day.isoformat()] = DayAvailability(
            date=day,
            day_of_week=day_name_for(day),
            slots=[anchor_slot(slot, day, zone) for slot in slots],
            blocked=busy[day],
        )
    return result


def slot_for_interval(
    days: dict[str, DayAvailability],
    start_at: datetime,
    end_at: datetime,
) -> Optional[AvailabilitySlot]:
    """The materialized slot that covers all of ``[start_at, end_at)``, if any."""
    start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
    for day in days.values():
        for slot in day.slots:
            if slot.start_at <= start_at and end_at <= slot.end_at:
                return slot
    return None


def is_time_slot_available(days: dict[str, DayAvailability], start_at: datetime, end_at: datetime) -> bool:
    slot = slot_for_interval(days, start_at, end_at)
    if slot is None:
        return False

    start_at, end_at = ensure_utc(start_at), ensure_utc(end_at)
    blocked = days[slot.date.isoformat()].blocked
    return not any(interval.start_at < end_at and start_at < interval.end_at for interval in blocked)


class AvailabilityMaterializer:
    def __init__(
        self,
        repository: ScheduleRepository,
        cache: Optional[MaterializationCache] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.timeout_seconds = timeout_seconds or config.FETCH_TIMEOUT_SECONDS

    def materialize(
        self,
        clinician_id: str,
        start_date: date,
        end_date: date,
        zone: Optional[str] = None,
        refresh_trigger: int = 0,
    ) -> dict[str, DayAvailability]:
        """
        Materialize ``start_date..end_date`` for one clinician.

        Every fetch made for one call shares a single ``timeout_seconds``
        budget. Failures are logged with the clinician and range, then raised.
        """
        try:
            validate_range(start_date, end_date)

            cache_key = (clinician_id, range_signature(start_date, end_date, zone), refresh_trigger)
            if self.cache is not None:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    return _copy_days(cached)

            with fetch_budget(self.timeout_seconds):
                result = self._compute(clinician_id, start_date, end_date, zone)
        except SchedulingError as exc:
            exc.clinician_id = exc.clinician_id or clinician_id
            logger.error(
                'Materialization failed for clinician %s (%s..%s): %s: %s',
                clinician_id, start_date, end_date, type(exc).__name__, exc.message,
            )
            raise
        except SQLAlchemyError as exc:
            logger.error(
                'Materialization failed for clinician %s (%s..%s): %s',
                clinician_id, start_date, end_date, exc,
            )
            raise FetchFailed(f'Availability fetch failed: {exc}', clinician_id=clinician_id) from exc

        if self.cache is not None:
            self.cache.set(cache_key, _copy_days(result))
        return result

    def materialize_dates(
        self,
        clinician_id: str,
        dates: Iterable[date],
        zone: Optional[str] = None,
    ) -> dict[str, DayAvailability]:
        """Materialize only the given dates, grouped into as few ranges as the day limit allows."""
        ordered = sorted(set(dates))
        result: dict[str, DayAvailability] = {}

        index = 0
        while index < len(ordered):
            first = last = ordered[index]
            while index < len(ordered) and (ordered[index] - first).days < config.MAX_MATERIALIZE_DAYS:
                last = ordered[index]
                index += 1

            days = self.materialize(clinician_id, first, last, zone)
            result.update(
                (day.isoformat(), days[day.isoformat()])
                for day in ordered
                if first <= day <= last
            )
        return result

    def _compute(self, clinician_id: str, start_date: date, end_date: date, zone: Optional[str]) -> dict[str, DayAvailability]:
        pattern = self.repository.get_weekly_pattern(clinician_id)
        tz = resolve_zone_or_default(zone or pattern.time_zone, context=f'clinician {clinician_id}')

        range_start, _ = day_bounds_utc(start_date, tz)
        _, range_end = day_bounds_utc(end_date, tz)

        exceptions = self.repository.list_exceptions(clinician_id, start_date, end_date)
        synced_events = self.repository.list_busy_synced_events(clinician_id, range_start, range_end)
        blocked_time = self.repository.list_blocked_time(clinician_id, range_start, range_end)

        return materialize_from_records(pattern, exceptions, synced_events, blocked_time, start_date, end_date, tz)

    def materialize_availability_blocks(
        self,
        clinician_id: str,
        start_date: date,
        end_date: date,
        zone: Optional[str] = None,
        refresh_trigger: int = 0,
    ) -> list[AvailabilityBlock]:
        days = self.materialize(clinician_id, start_date, end_date, zone, refresh_trigger)
        return [
            AvailabilityBlock(
                id=f'exception-{slot.id}' if slot.is_exception else f'{clinician_id}-{slot.day_of_week}-{slot.slot_number}-{slot.date.isoformat()}',
                clinician_id=clinician_id,
                day_of_week=slot.day_of_week,
                start_at=slot.start_at,
                end_at=slot.end_at,
            )
            for day in days.values()
            for slot in day.slots
        ]


def _copy_days(days: dict[str, DayAvailability]) -> dict[str, DayAvailability]:
    return {key: day.model_copy(deep=True) for key, day in days.items()}
