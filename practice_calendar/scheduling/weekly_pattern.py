"""
Weekly Pattern Decoder

Reads the clinician's column-encoded recurring availability
(``clinician_availability_{start|end}_{weekday}_{1..3}``) once, at the
repository boundary, and answers "which slots apply on this date" from the
decoded structure.
"""

import logging
from datetime import date
from typing import Any, Optional

from practice_calendar.scheduling.schemas import (
    DAYS_BY_INDEX,
    SLOTS_PER_DAY,
    AvailabilitySlot,
    WeeklyPattern,
    WeeklySlot,
    day_name_for,
)
from practice_calendar.scheduling.timezones import to_wall_clock

logger = logging.getLogger(__name__)


def _column_names(day_name: str, slot_number: int) -> tuple[str, str]:
    return (
        f'clinician_availability_start_{day_name}_{slot_number}',
        f'clinician_availability_end_{day_name}_{slot_number}',
    )


def _read(record: Any, key: str) -> Any:
    if isinstance(record, dict):
        return record.get(key)
    return getattr(record, key, None)


def _decode_slot(clinician_id: str, day_name: str, slot_number: int, raw_start: Any, raw_end: Any) -> Optional[WeeklySlot]:
    if not raw_start and not raw_end:
        return None

    if not raw_start or not raw_end:
        logger.warning(
            'Dropping partial slot %s #%s for clinician %s (start=%r, end=%r)',
            day_name, slot_number, clinician_id, raw_start, raw_end,
        )
        return None

    try:
        start_time = to_wall_clock(raw_start)
        end_time = to_wall_clock(raw_end)
    except ValueError:
        logger.warning(
            'Dropping unparseable slot %s #%s for clinician %s (start=%r, end=%r)',
            day_name, slot_number, clinician_id, raw_start, raw_end,
        )
        return None

    if start_time >= end_time:
        logger.warning(
            'Dropping inverted slot %s #%s for clinician %s (%s-%s)',
            day_name, slot_number, clinician_id, start_time, end_time,
        )
        return None

    return WeeklySlot(start_time=start_time, end_time=end_time)


def decode_weekly_pattern(record: Any) -> WeeklyPattern:
    """Build a WeeklyPattern from a clinician row (ORM object or mapping)."""
    clinician_id = str(_read(record, 'id'))
    days = {}

    for day_name in DAYS_BY_INDEX:
        days[day_name] = tuple(
            _decode_slot(clinician_id, day_name, slot_number, *(_read(record, key) for key in _column_names(day_name, slot_number)))
            for slot_number in range(1, SLOTS_PER_DAY + 1)
        )

    return WeeklyPattern(
        clinician_id=clinician_id,
        time_zone=_read(record, 'clinician_time_zone'),
        days=days,
    )


def encode_weekly_pattern(pattern: WeeklyPattern) -> dict[str, Any]:
    """Column values for a pattern, the inverse of decode_weekly_pattern."""
    columns = {}
    for day_name in DAYS_BY_INDEX:
        for slot_number, slot in enumerate(pattern.slots_for(day_name), start=1):
            start_key, end_key = _column_names(day_name, slot_number)
            columns[start_key] = slot.start_time if slot else None
            columns[end_key] = slot.end_time if slot else None
    return columns


def slots_for_date(pattern: WeeklyPattern, target_date: date) -> list[AvailabilitySlot]:
    """Weekly-pattern slots for ``target_date`` in slot-number order (0 to 3 entries)."""
    day_name = day_name_for(target_date)
    date_key = target_date.isoformat()

    return [
        AvailabilitySlot(
            id=f'{date_key}-{slot_number}',
            date=target_date,
            day_of_week=day_name,
            start_time=slot.start_time,
            end_time=slot.end_time,
            is_exception=False,
            slot_number=slot_number,
        )
        for slot_number, slot in enumerate(pattern.slots_for(day_name), start=1)
        if slot is not None
    ]
