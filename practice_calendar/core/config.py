import os
from dataclasses import dataclass, fields

import pytz


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
APP_RELOAD = _get_bool(os.getenv("APP_RELOAD"), default=APP_ENV == "development")

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:4200"])

DEFAULT_TIME_ZONE = os.getenv("DEFAULT_TIME_ZONE", "America/Chicago")

FETCH_MAX_ATTEMPTS = int(os.getenv("FETCH_MAX_ATTEMPTS", "3"))
FETCH_BACKOFF_SECONDS = float(os.getenv("FETCH_BACKOFF_SECONDS", "0.5"))
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "10"))

CACHE_DEBOUNCE_SECONDS = float(os.getenv("CACHE_DEBOUNCE_SECONDS", "30"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "256"))

MAX_MATERIALIZE_DAYS = int(os.getenv("MAX_MATERIALIZE_DAYS", "366"))


@dataclass(frozen=True)
class Capabilities:
    """Feature switches handed to the app at construction time."""

    search: bool = False
    reports: bool = False
    exports: bool = False
    blocked_time: bool = True
    calendar_view: bool = True
    appointment_booking: bool = True

    def is_enabled(self, name: str) -> bool:
        if name not in CAPABILITY_EFFECTS:
            raise KeyError(f"Unknown capability: {name}")
        return getattr(self, name)

    def disabled(self) -> list[str]:
        return [field.name for field in fields(self) if not getattr(self, field.name)]


CAPABILITY_EFFECTS = {
    "search": "GET /appointments/search answers 403 when disabled.",
    "reports": "GET /appointments/report answers 403 when disabled.",
    "exports": "GET /appointments/export answers 403 when disabled.",
    "blocked_time": "Blocked-time create/list/delete routes answer 403 when disabled.",
    "calendar_view": "Materialized availability routes answer 403 when disabled.",
    "appointment_booking": "POST /appointments answers 403 when disabled.",
}


def load_capabilities() -> Capabilities:
    return Capabilities(
        search=_get_bool(os.getenv("FEATURE_SEARCH"), default=False),
        reports=_get_bool(os.getenv("FEATURE_REPORTS"), default=False),
        exports=_get_bool(os.getenv("FEATURE_EXPORTS"), default=False),
        blocked_time=_get_bool(os.getenv("FEATURE_BLOCKED_TIME"), default=True),
        calendar_view=_get_bool(os.getenv("FEATURE_CALENDAR_VIEW"), default=True),
        appointment_booking=_get_bool(os.getenv("FEATURE_APPOINTMENT_BOOKING"), default=True),
    )


def validate_runtime_config() -> None:
    if DEFAULT_TIME_ZONE not in pytz.all_timezones_set:
        raise RuntimeError(f"DEFAULT_TIME_ZONE '{DEFAULT_TIME_ZONE}' is not a known IANA zone.")
    if FETCH_MAX_ATTEMPTS < 1:
        raise RuntimeError("FETCH_MAX_ATTEMPTS must be at least 1.")
    if FETCH_TIMEOUT_SECONDS <= 0:
        raise RuntimeError("FETCH_TIMEOUT_SECONDS must be positive.")
    if CACHE_DEBOUNCE_SECONDS < 0:
        raise RuntimeError("CACHE_DEBOUNCE_SECONDS cannot be negative.")
