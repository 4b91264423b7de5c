"""
Time Zone Normalizer

Converts between clinician/client wall-clock time and the UTC instants kept in
storage. All conversions go through pytz so that "09:00" in a zone resolves to
the offset that is actually in force on that calendar day.

Conventions:
    - Stored datetimes are naive UTC; ``ensure_utc`` re-attaches the zone.
    - Wall-clock times inside a spring-forward gap resolve with standard-time
      semantics and are normalized forward (02:30 becomes 03:30).
    - Ambiguous fall-back times resolve to the standard-time occurrence.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Union

import pytz
from pytz.tzinfo import BaseTzInfo

from practice_calendar.core import config
from practice_calendar.core.errors import InvalidTimeZone

logger = logging.getLogger(__name__)

ZoneLike = Union[str, BaseTzInfo]


def resolve_zone(zone_name: ZoneLike) -> BaseTzInfo:
    """Return the pytz zone for an IANA name, raising InvalidTimeZone otherwise."""
    if isinstance(zone_name, BaseTzInfo):
        return zone_name
    if not isinstance(zone_name, str) or not zone_name.strip():
        raise InvalidTimeZone(zone_name)
    try:
        return pytz.timezone(zone_name.strip())
    except pytz.UnknownTimeZoneError as exc:
        raise InvalidTimeZone(zone_name) from exc


def resolve_zone_or_default(zone_name: ZoneLike | None, *, context: str = "") -> BaseTzInfo:
    """
    Resolve a zone, substituting the configured default when it is unusable.

    The substitution is logged so a bad clinician record can be traced; it never
    propagates as an error.
    """
    try:
        return resolve_zone(zone_name)
    except InvalidTimeZone:
        logger.warning(
            "Invalid time zone %r%s; substituting %s",
            zone_name,
            f" ({context})" if context else "",
            config.DEFAULT_TIME_ZONE,
        )
        return pytz.timezone(config.DEFAULT_TIME_ZONE)


def to_wall_clock(value: Union[time, timedelta, str]) -> time:
    """Coerce a stored time value (time, timedelta since midnight, or 'HH:MM[:SS]')."""
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    if isinstance(value, timedelta):
        return (datetime.min + value).time()
    if isinstance(value, str):
        parts = value.strip().split(":")
        if len(parts) not in (2, 3):
            raise ValueError(f"Cannot parse wall-clock time {value!r}")
        hour, minute = int(parts[0]), int(parts[1])
        second = int(float(parts[2])) if len(parts) == 3 else 0
        return time(hour, minute, second)
    raise ValueError(f"Cannot convert {type(value)} to time")


def ensure_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return pytz.UTC.localize(instant)
    return instant.astimezone(pytz.UTC)


def to_naive_utc(instant: datetime) -> datetime:
    """Storage form of an instant: UTC with the zone stripped."""
    return ensure_utc(instant).replace(tzinfo=None)


def to_utc(local_date: date, wall_clock: Union[time, str], zone: ZoneLike) -> datetime:
    """Anchor a wall-clock time on a calendar day in ``zone`` and return the UTC instant."""
    tz = resolve_zone(zone)
    naive = datetime.combine(local_date, to_wall_clock(wall_clock))
    localized = tz.normalize(tz.localize(naive, is_dst=False))
    return localized.astimezone(pytz.UTC)


def from_utc(instant: datetime, zone: ZoneLike) -> datetime:
    """Return the zoned wall-clock datetime for a UTC (or naive-UTC) instant."""
    tz = resolve_zone(zone)
    return tz.normalize(ensure_utc(instant).astimezone(tz))


def local_date_of(instant: datetime, zone: ZoneLike) -> date:
    return from_utc(instant, zone).date()


def day_bounds_utc(local_date: date, zone: ZoneLike) -> tuple[datetime, datetime]:
    """UTC instants of local midnight at the start and end of ``local_date``."""
    return (
        to_utc(local_date, time.min, zone),
        to_utc(local_date + timedelta(days=1), time.min, zone),
    )


def format_time(zoned: datetime) -> str:
    return zoned.strftime("%H:%M")
