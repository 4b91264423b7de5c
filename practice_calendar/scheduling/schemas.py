"""Value types produced and consumed by the availability engine."""

from datetime import date, datetime, time
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

DAYS_BY_INDEX = ('sunday', 'monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday')
SLOTS_PER_DAY = 3


def day_name_for(value: date) -> str:
    # date.weekday() is Monday=0; the platform convention is Sunday=0.
    return DAYS_BY_INDEX[(value.weekday() + 1) % 7]


class WeeklySlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: time
    end_time: time


class WeeklyPattern(BaseModel):
    """A clinician's recurring availability, weekday -> three optional slots."""

    model_config = ConfigDict(frozen=True)

    clinician_id: str
    time_zone: Optional[str] = None
    days: dict[str, tuple[Optional[WeeklySlot], Optional[WeeklySlot], Optional[WeeklySlot]]]

    def slots_for(self, day_name: str) -> tuple[Optional[WeeklySlot], ...]:
        return self.days.get(day_name.strip().lower(), (None,) * SLOTS_PER_DAY)


class AvailabilitySlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    date: date
    day_of_week: str
    start_time: time
    end_time: time
    is_exception: bool
    slot_number: Optional[int] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


class BlockedInterval(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: Literal['synced_event', 'blocked_time']
    label: str
    start_at: datetime
    end_at: datetime


class DayAvailability(BaseModel):
    date: date
    day_of_week: str
    slots: list[AvailabilitySlot]
    blocked: list[BlockedInterval]

    @property
    def is_day_off(self) -> bool:
        return not self.slots


class AvailabilityBlock(BaseModel):
    """Flattened, per-occurrence view of a weekly-pattern or exception slot."""

    id: str
    clinician_id: str
    day_of_week: str
    start_at: datetime
    end_at: datetime
    is_active: bool = True
    is_deleted: bool = False


class RecurrenceFrequency(str, Enum):
    WEEKLY = 'weekly'
    EVERY_2_WEEKS = 'every_2_weeks'
    EVERY_3_WEEKS = 'every_3_weeks'
    EVERY_4_WEEKS = 'every_4_weeks'

    @property
    def stride_days(self) -> int:
        return 7 * FREQUENCY_WEEKS[self]


FREQUENCY_WEEKS = {
    RecurrenceFrequency.WEEKLY: 1,
    RecurrenceFrequency.EVERY_2_WEEKS: 2,
    RecurrenceFrequency.EVERY_3_WEEKS: 3,
    RecurrenceFrequency.EVERY_4_WEEKS: 4,
}


class SeriesScope(str, Enum):
    SINGLE = 'single'
    THIS_AND_FUTURE = 'this_and_future'
    SERIES = 'series'


class AppointmentDraft(BaseModel):
    """An appointment instance that has not been persisted yet."""

    client_id: str
    clinician_id: str
    start_at: datetime
    end_at: datetime
    type: Optional[str] = None
    status: str = 'scheduled'
    notes: Optional[str] = None
    series_id: Optional[str] = None

    @field_validator('end_at')
    @classmethod
    def validate_end_after_start(cls, value: datetime, info) -> datetime:
        start_at = info.data.get('start_at')
        if start_at is not None and value <= start_at:
            raise ValueError('end_at must be after start_at.')
        return value
