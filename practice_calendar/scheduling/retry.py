import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from practice_calendar.core import config
from practice_calendar.core.errors import FetchFailed, Timeout

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRANSIENT_ERRORS = (OperationalError, DisconnectionError)

# Postgres query_canceled, raised when statement_timeout fires
QUERY_CANCELED_SQLSTATE = '57014'

_fetch_deadline: ContextVar[Optional[float]] = ContextVar('fetch_deadline', default=None)


def current_deadline() -> Optional[float]:
    """Monotonic time by which the running fetch must finish, if one is set."""
    return _fetch_deadline.get()


@contextmanager
def fetch_budget(seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> Iterator[float]:
    """
    Share one deadline across every fetch made inside the block.

    Nested budgets never extend an enclosing one.
    """
    deadline = clock() + (seconds or config.FETCH_TIMEOUT_SECONDS)
    outer = _fetch_deadline.get()
    if outer is not None:
        deadline = min(deadline, outer)

    token = _fetch_deadline.set(deadline)
    try:
        yield deadline
    finally:
        _fetch_deadline.reset(token)


def is_statement_timeout(exc: SQLAlchemyError) -> bool:
    original = getattr(exc, 'orig', None)
    if getattr(original, 'pgcode', None) == QUERY_CANCELED_SQLSTATE:
        return True
    return str(original).strip().lower() == 'interrupted'


def backoff_delay(attempt: int, base_seconds: float) -> float:
    return base_seconds * (2 ** (attempt - 1))


def run_with_retry(
    operation: Callable[[], T],
    *,
    description: str,
    clinician_id: str | None = None,
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
    timeout_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Run a database read with bounded retries and an overall deadline.

    Transient connection errors are retried with exponential backoff up to
    ``max_attempts``. The deadline is the sooner of ``timeout_seconds`` from
    now and any enclosing ``fetch_budget``; statements still running when it
    passes are cancelled by the database guard. Pool checkout timeouts,
    cancelled statements and a blown deadline surface as Timeout; anything
    else from SQLAlchemy surfaces as FetchFailed at once.
    """
    max_attempts = max_attempts or config.FETCH_MAX_ATTEMPTS
    backoff_seconds = config.FETCH_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    timeout_seconds = timeout_seconds or config.FETCH_TIMEOUT_SECONDS

    with fetch_budget(timeout_seconds, clock) as deadline:
        last_error: FetchFailed | Timeout | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = operation()
            except PoolTimeoutError as exc:
                last_error = Timeout(f'{description} timed out waiting for a connection.', clinician_id=clinician_id)
                last_error.__cause__ = exc
            except TRANSIENT_ERRORS as exc:
                if is_statement_timeout(exc):
                    raise Timeout(f'{description} was cancelled at its deadline.', clinician_id=clinician_id) from exc
                last_error = FetchFailed(f'{description} failed: {exc}', clinician_id=clinician_id)
                last_error.__cause__ = exc
            except SQLAlchemyError as exc:
                raise FetchFailed(f'{description} failed: {exc}', clinician_id=clinician_id) from exc
            else:
                if clock() > deadline:
                    raise Timeout(f'{description} ran past its deadline.', clinician_id=clinician_id)
                return result

            if attempt == max_attempts:
                break

            delay = backoff_delay(attempt, backoff_seconds)
            if clock() + delay > deadline:
                raise Timeout(
                    f'{description} ran past its deadline after {attempt} attempt(s).',
                    clinician_id=clinician_id,
                ) from last_error

            logger.warning(
                '%s failed (attempt %s/%s); retrying in %.2fs',
                description, attempt, max_attempts, delay,
            )
            sleep(delay)

    raise last_error
