"""Failure taxonomy shared by the availability engine and the routes."""


class SchedulingError(Exception):
    """Base class for every typed scheduling failure."""

    retryable = False

    def __init__(self, message: str, *, clinician_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.clinician_id = clinician_id


class InvalidTimeZone(SchedulingError):
    def __init__(self, zone_name: str | None):
        super().__init__(f"Unrecognized time zone: {zone_name!r}")
        self.zone_name = zone_name


class FetchFailed(SchedulingError):
    retryable = True


class Timeout(SchedulingError):
    retryable = True


class NotFound(SchedulingError):
    pass


class ValidationError(SchedulingError):
    pass


class SchedulingConflict(SchedulingError):
    def __init__(self, message: str, *, clinician_id: str | None = None, conflicts=None):
        super().__init__(message, clinician_id=clinician_id)
        self.conflicts = list(conflicts or [])
