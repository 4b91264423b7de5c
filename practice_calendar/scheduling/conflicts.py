import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel

from practice_calendar.scheduling.busy_blocks import AppointmentKind, classify_appointment, is_inactive
from practice_calendar.scheduling.timezones import ensure_utc

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    OVERLAP = 'overlap'
    CONTAINS = 'contains'
    CONTAINED = 'contained'
    BACK_TO_BACK = 'back_to_back'


BLOCKING_CONFLICTS = frozenset({ConflictType.OVERLAP, ConflictType.CONTAINS, ConflictType.CONTAINED})


class Conflict(BaseModel):
    type: ConflictType
    source: Literal['appointment', 'blocked_time', 'synced_event']
    existing_id: str
    start_at: datetime
    end_at: datetime
    overlap_minutes: int

    @property
    def is_blocking(self) -> bool:
        return self.type in BLOCKING_CONFLICTS


def intervals_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    return start1 < end2 and start2 < end1


def overlap_minutes(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> int:
    if not intervals_overlap(start1, end1, start2, end2):
        return 0
    return int((min(end1, end2) - max(start1, start2)).total_seconds() // 60)


def determine_conflict_type(
    proposed_start: datetime,
    proposed_end: datetime,
    existing_start: datetime,
    existing_end: datetime,
) -> Optional[ConflictType]:
    """Classify how a proposed interval relates to an existing one, or None."""
    if proposed_start == existing_start and proposed_end == existing_end:
        return ConflictType.OVERLAP
    if proposed_start <= existing_start and proposed_end >= existing_end:
        return ConflictType.CONTAINS
    if existing_start <= proposed_start and existing_end >= proposed_end:
        return ConflictType.CONTAINED
    if intervals_overlap(proposed_start, proposed_end, existing_start, existing_end):
        return ConflictType.OVERLAP
    if proposed_start == existing_end or proposed_end == existing_start:
        return ConflictType.BACK_TO_BACK
    return None


def _conflict(source: str, existing_id: str, start_at: datetime, end_at: datetime,
              proposed_start: datetime, proposed_end: datetime) -> Optional[Conflict]:
    conflict_type = determine_conflict_type(proposed_start, proposed_end, start_at, end_at)
    if conflict_type is None:
        return None
    return Conflict(
        type=conflict_type,
        source=source,
        existing_id=existing_id,
        start_at=start_at,
        end_at=end_at,
        overlap_minutes=overlap_minutes(proposed_start, proposed_end, start_at, end_at),
    )


def find_conflicts(
    proposed_start: datetime,
    proposed_end: datetime,
    appointments: Iterable[Any] = (),
    synced_events: Iterable[Any] = (),
    ignore_ids: Iterable[Any] = (),
) -> list[Conflict]:
    """
    Every existing interval the proposed one touches.

    ``appointments`` may mix client bookings and blocked time; busy synced
    events are the only external events considered. Rows in ``ignore_ids``
    (the appointments being moved) are skipped.
    """
    proposed_start, proposed_end = ensure_utc(proposed_start), ensure_utc(proposed_end)
    ignored = set(ignore_ids)
    conflicts = []

    for appointment in appointments:
        if appointment.id in ignored or is_inactive(appointment):
            continue
        source = 'blocked_time' if classify_appointment(appointment) is AppointmentKind.BLOCKED_TIME else 'appointment'
        conflict = _conflict(
            source, str(appointment.id),
            ensure_utc(appointment.start_at), ensure_utc(appointment.end_at),
            proposed_start, proposed_end,
        )
        if conflict is not None:
            conflicts.append(conflict)

    for event in synced_events:
        if not event.is_busy:
            continue
        conflict = _conflict(
            'synced_event', str(event.id),
            ensure_utc(event.start_at), ensure_utc(event.end_at),
            proposed_start, proposed_end,
        )
        if conflict is not None:
            conflicts.append(conflict)

    logger.debug('Found %s conflict(s) for %s..%s', len(conflicts), proposed_start, proposed_end)
    return conflicts


def blocking_conflicts(conflicts: Iterable[Conflict]) -> list[Conflict]:
    return [conflict for conflict in conflicts if conflict.is_blocking]
