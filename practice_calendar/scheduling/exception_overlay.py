"""
Exception Overlay

Date-specific exceptions replace the weekly pattern for their date; they are
never merged with it. A date whose exception rows are all soft-deleted still
counts as covered and resolves to zero availability.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Any, Iterable

from practice_calendar.scheduling.schemas import AvailabilitySlot, day_name_for
from practice_calendar.scheduling.timezones import to_wall_clock

logger = logging.getLogger(__name__)


def _exception_slot(exception: Any) -> AvailabilitySlot | None:
    if not exception.start_time or not exception.end_time:
        logger.warning('Exception %s on %s has no time range; ignoring it', exception.id, exception.specific_date)
        return None

    start_time = to_wall_clock(exception.start_time)
    end_time = to_wall_clock(exception.end_time)
    if start_time >= end_time:
        logger.warning('Exception %s on %s has an inverted range; ignoring it', exception.id, exception.specific_date)
        return None

    return AvailabilitySlot(
        id=str(exception.id),
        date=exception.specific_date,
        day_of_week=day_name_for(exception.specific_date),
        start_time=start_time,
        end_time=end_time,
        is_exception=True,
    )


def group_exceptions_by_date(exceptions: Iterable[Any]) -> dict[date, list[AvailabilitySlot]]:
    """
    Group exception rows by date.

    Every date with at least one row appears in the result, deleted or not; its
    value holds only the non-deleted rows as slots, ordered by start time.
    """
    grouped: dict[date, list[AvailabilitySlot]] = defaultdict(list)

    for exception in exceptions:
        day_slots = grouped[exception.specific_date]
        if exception.is_deleted:
            continue
        slot = _exception_slot(exception)
        if slot is not None:
            day_slots.append(slot)

    return {
        specific_date: sorted(day_slots, key=lambda slot: (slot.start_time, slot.end_time, slot.id))
        for specific_date, day_slots in grouped.items()
    }


def overlay_day(
    baseline: list[AvailabilitySlot],
    target_date: date,
    grouped_exceptions: dict[date, list[AvailabilitySlot]],
) -> list[AvailabilitySlot]:
    if target_date in grouped_exceptions:
        return list(grouped_exceptions[target_date])
    return baseline
