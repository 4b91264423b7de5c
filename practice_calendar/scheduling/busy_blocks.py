"""
Busy-Block Merger

Blocked time reaches the calendar from two places: busy events imported from an
external calendar, and internal blocked-time rows stored in the appointments
table. Both are attached to each day as opaque, non-bookable intervals next to
the availability slots; slots are never carved.

Internal blocked time has two historical encodings (a sentinel client id and a
sentinel appointment type). ``classify_appointment`` is the only place that
knows about them; everything else asks it.
"""

import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Iterable, TypeVar

from practice_calendar.models.synced_event import PERSONAL_BLOCK_LABEL
from practice_calendar.scheduling.schemas import BlockedInterval
from practice_calendar.scheduling.timezones import ZoneLike, ensure_utc, local_date_of

logger = logging.getLogger(__name__)

BLOCKED_TIME_CLIENT_ID = '00000000-0000-0000-0000-000000000001'
INTERNAL_BLOCKED_TIME_TYPE = 'INTERNAL_BLOCKED_TIME'
BLOCKED_TIME_STATUS = 'hidden'
BLOCKED_TIME_LABEL = 'Blocked'
BLOCKED_TIME_NOTES_PREFIX = 'Blocked time: '
INACTIVE_STATUSES = frozenset({'cancelled'})

T = TypeVar('T')


class AppointmentKind(str, Enum):
    CLIENT = 'client'
    BLOCKED_TIME = 'blocked_time'


def _field(record: Any, key: str) -> Any:
    if isinstance(record, dict):
        return record.get(key)
    return getattr(record, key, None)


def classify_appointment(appointment: Any) -> AppointmentKind:
    if _field(appointment, 'client_id') == BLOCKED_TIME_CLIENT_ID:
        return AppointmentKind.BLOCKED_TIME
    if _field(appointment, 'type') == INTERNAL_BLOCKED_TIME_TYPE:
        return AppointmentKind.BLOCKED_TIME
    return AppointmentKind.CLIENT


def is_inactive(appointment: Any) -> bool:
    return _field(appointment, 'status') in INACTIVE_STATUSES


def is_blocked_time_appointment(appointment: Any) -> bool:
    if appointment is None:
        return False
    return classify_appointment(appointment) is AppointmentKind.BLOCKED_TIME


def filter_real_appointments(appointments: Iterable[T]) -> list[T]:
    """Drop blocked time (either encoding) and rows without a client id."""
    appointments = list(appointments or [])
    real = []
    for appointment in appointments:
        if not _field(appointment, 'client_id'):
            logger.warning('Appointment %s has no client_id; excluding it', _field(appointment, 'id'))
            continue
        if classify_appointment(appointment) is AppointmentKind.CLIENT:
            real.append(appointment)

    logger.debug('Filtered %s blocked time appointments from %s', len(appointments) - len(real), len(appointments))
    return real


def count_real_appointments(appointments: Iterable[Any]) -> int:
    return len(filter_real_appointments(appointments))


def filter_real_clients(clients: Iterable[T]) -> list[T]:
    real = []
    for client in clients or []:
        client_id = _field(client, 'id')
        if not client_id:
            logger.warning('Client record without id; excluding it')
            continue
        if client_id != BLOCKED_TIME_CLIENT_ID:
            real.append(client)
    return real


def count_real_clients(clients: Iterable[Any]) -> int:
    return len(filter_real_clients(clients))


def blocked_time_label(appointment: Any) -> str:
    notes = _field(appointment, 'notes') or ''
    if notes.startswith(BLOCKED_TIME_NOTES_PREFIX) and notes[len(BLOCKED_TIME_NOTES_PREFIX):].strip():
        return notes[len(BLOCKED_TIME_NOTES_PREFIX):].strip()
    return BLOCKED_TIME_LABEL


def _touched_dates(start_at: datetime, end_at: datetime, zone: ZoneLike) -> list[date]:
    # end_at is exclusive: an interval ending exactly at midnight does not touch the next day.
    first = local_date_of(start_at, zone)
    last = local_date_of(end_at - timedelta(microseconds=1), zone)
    days = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def synced_event_interval(event: Any) -> BlockedInterval:
    return BlockedInterval(
        id=f'synced-{event.id}',
        source='synced_event',
        label=PERSONAL_BLOCK_LABEL,
        start_at=ensure_utc(event.start_at),
        end_at=ensure_utc(event.end_at),
    )


def blocked_time_interval(appointment: Any) -> BlockedInterval:
    return BlockedInterval(
        id=f'blocked-{appointment.id}',
        source='blocked_time',
        label=blocked_time_label(appointment),
        start_at=ensure_utc(appointment.start_at),
        end_at=ensure_utc(appointment.end_at),
    )


def merge_busy_blocks(
    days: Iterable[date],
    synced_events: Iterable[Any],
    blocked_appointments: Iterable[Any],
    zone: ZoneLike,
) -> dict[date, list[BlockedInterval]]:
    """
    Index busy intervals by the local calendar days they touch.

    Only busy synced events and active (not cancelled) blocked time take
    part; the result has an entry (possibly empty) for every requested day.
    """
    merged: dict[date, list[BlockedInterval]] = {day: [] for day in days}

    intervals = [synced_event_interval(event) for event in synced_events if event.is_busy]
    intervals.extend(
        blocked_time_interval(appointment)
        for appointment in blocked_appointments
        if is_blocked_time_appointment(appointment) and not is_inactive(appointment)
    )

    for interval in intervals:
        if interval.end_at <= interval.start_at:
            logger.warning('Skipping empty busy interval %s', interval.id)
            continue
        for day in _touched_dates(interval.start_at, interval.end_at, zone):
            if day in merged:
                merged[day].append(interval)

    for day_intervals in merged.values():
        day_intervals.sort(key=lambda interval: (interval.start_at, interval.end_at, interval.id))

    return merged
