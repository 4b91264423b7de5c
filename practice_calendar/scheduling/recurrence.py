"""
Recurring-Appointment Expander

A series is a weekly recurrence with an N-week stride and a bounded number of
occurrences. It is expanded eagerly into independent appointments that share a
``series_id``; edits and deletes then pick members by scope.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Union

from practice_calendar.core.errors import ValidationError
from practice_calendar.scheduling.schemas import AppointmentDraft, RecurrenceFrequency, SeriesScope
from practice_calendar.scheduling.timezones import ZoneLike, ensure_utc, from_utc, resolve_zone_or_default, to_utc

logger = logging.getLogger(__name__)

MIN_OCCURRENCES = 4
MAX_OCCURRENCES = 50


def parse_frequency(value: Union[str, RecurrenceFrequency]) -> RecurrenceFrequency:
    try:
        return RecurrenceFrequency(value)
    except ValueError as exc:
        allowed = ', '.join(frequency.value for frequency in RecurrenceFrequency)
        raise ValidationError(f'Unsupported frequency {value!r}. Expected one of: {allowed}.') from exc


def parse_scope(value: Union[str, SeriesScope, None]) -> SeriesScope:
    if value is None:
        return SeriesScope.SINGLE
    try:
        return SeriesScope(value)
    except ValueError as exc:
        allowed = ', '.join(scope.value for scope in SeriesScope)
        raise ValidationError(f'Unsupported scope {value!r}. Expected one of: {allowed}.') from exc


def validate_occurrence_count(occurrence_count: int) -> int:
    if not MIN_OCCURRENCES <= occurrence_count <= MAX_OCCURRENCES:
        raise ValidationError(
            f'occurrence_count must be between {MIN_OCCURRENCES} and {MAX_OCCURRENCES}; got {occurrence_count}.'
        )
    return occurrence_count


def expand_series(
    anchor: AppointmentDraft,
    frequency: Union[str, RecurrenceFrequency],
    occurrence_count: int,
    zone: Optional[ZoneLike],
    series_id: Optional[str] = None,
) -> list[AppointmentDraft]:
    """
    Expand ``anchor`` into ``occurrence_count`` drafts, ``stride`` days apart.

    Each occurrence keeps the anchor's local wall-clock start and end and is
    resolved to UTC on its own date, so a series crossing a DST change stays at
    the same local time.
    """
    frequency = parse_frequency(frequency)
    validate_occurrence_count(occurrence_count)

    tz = resolve_zone_or_default(zone, context=f'series for clinician {anchor.clinician_id}')
    local_start = from_utc(anchor.start_at, tz)
    local_end = from_utc(anchor.end_at, tz)
    end_day_offset = local_end.date() - local_start.date()
    series_id = series_id or anchor.series_id or str(uuid.uuid4())

    drafts = []
    for index in range(occurrence_count):
        occurrence_date = local_start.date() + timedelta(days=index * frequency.stride_days)
        drafts.append(anchor.model_copy(update={
            'start_at': to_utc(occurrence_date, local_start.time(), tz),
            'end_at': to_utc(occurrence_date + end_day_offset, local_end.time(), tz),
            'series_id': series_id,
        }))

    logger.debug(
        'Expanded series %s: %s x %s from %s',
        series_id, occurrence_count, frequency.value, local_start.isoformat(),
    )
    return drafts


def select_scope(target: Any, series_members: Iterable[Any], scope: Union[str, SeriesScope, None]) -> list[Any]:
    """Pick the members of ``target``'s series affected by an edit at ``scope``."""
    scope = parse_scope(scope)
    if scope is SeriesScope.SINGLE or not getattr(target, 'series_id', None):
        return [target]

    members = [member for member in series_members if member.series_id == target.series_id]
    if scope is SeriesScope.THIS_AND_FUTURE:
        target_start = ensure_utc(target.start_at)
        members = [member for member in members if ensure_utc(member.start_at) >= target_start]

    selected = {member.id: member for member in members}
    selected.setdefault(target.id, target)
    return sorted(selected.values(), key=lambda member: (ensure_utc(member.start_at), member.id))


def shift_instances(
    instances: Iterable[Any],
    target: Any,
    new_start: datetime,
    new_end: datetime,
    zone: Optional[ZoneLike],
) -> list[tuple[Any, datetime, datetime]]:
    """
    Move every instance the way ``target`` is being moved.

    Instances shift by the target's calendar-day offset and take the target's
    new local start time and duration. Returns ``(instance, start_at, end_at)``
    with UTC-aware datetimes; nothing is written.
    """
    new_start, new_end = ensure_utc(new_start), ensure_utc(new_end)
    if new_end <= new_start:
        raise ValidationError('end_at must be after start_at.')

    tz = resolve_zone_or_default(zone, context='series reschedule')
    new_local_start = from_utc(new_start, tz)
    day_offset = new_local_start.date() - from_utc(target.start_at, tz).date()
    duration = new_end - new_start

    shifted = []
    for instance in instances:
        occurrence_date = from_utc(instance.start_at, tz).date() + day_offset
        start_at = to_utc(occurrence_date, new_local_start.time(), tz)
        shifted.append((instance, start_at, start_at + duration))
    return shifted
