import os
import sqlite3
import time
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import Pool

from practice_calendar.core import config
from practice_calendar.scheduling.retry import current_deadline


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL")

# SQLite VM instructions between deadline checks
SQLITE_PROGRESS_STEPS = 1000


def _engine_options(url: str) -> dict:
    options = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options["pool_timeout"] = config.FETCH_TIMEOUT_SECONDS
    return options


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


@event.listens_for(Engine, "before_cursor_execute")
def _apply_fetch_deadline(conn, cursor, statement, parameters, context, executemany):
    """Cancel statements that are still running when the current fetch deadline passes."""
    deadline = current_deadline()
    dialect = conn.dialect.name

    if dialect == "sqlite":
        driver_connection = conn.connection.driver_connection
        if deadline is None:
            driver_connection.set_progress_handler(None, 0)
        else:
            driver_connection.set_progress_handler(lambda: time.monotonic() > deadline, SQLITE_PROGRESS_STEPS)
    elif dialect == "postgresql":
        if deadline is not None:
            remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
            cursor.execute(f"SET LOCAL statement_timeout = {remaining_ms}")
            conn.info["fetch_deadline_applied"] = True
        elif conn.info.pop("fetch_deadline_applied", False):
            cursor.execute("SET LOCAL statement_timeout = 0")


def _clear_fetch_deadline(driver_connection, info: dict) -> None:
    if isinstance(driver_connection, sqlite3.Connection):
        driver_connection.set_progress_handler(None, 0)
    info.pop("fetch_deadline_applied", None)


@event.listens_for(Engine, "commit")
@event.listens_for(Engine, "rollback")
def _release_fetch_deadline(conn):
    if not conn.invalidated:
        _clear_fetch_deadline(conn.connection.driver_connection, conn.info)


@event.listens_for(Pool, "reset")
def _release_fetch_deadline_on_return(dbapi_connection, connection_record, reset_state):
    _clear_fetch_deadline(dbapi_connection, connection_record.info)


_schema_lock = Lock()
_clinician_schema_checked = False
_appointment_schema_checked = False
_synced_event_schema_checked = False


def ensure_clinician_schema() -> None:
    global _clinician_schema_checked

    if _clinician_schema_checked:
        return

    with _schema_lock:
        if _clinician_schema_checked:
            return

        inspector = inspect(engine)

        if 'clinicians' not in inspector.get_table_names():
            _clinician_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('clinicians')}
        migration_steps = [
            ('clinician_time_zone', 'ALTER TABLE clinicians ADD COLUMN clinician_time_zone VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            if 'availability_exceptions' in inspector.get_table_names():
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS idx_availability_exceptions_clinician_date '
                        'ON availability_exceptions(clinician_id, specific_date)'
                    )
                )

        _clinician_schema_checked = True


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('series_id', 'ALTER TABLE appointments ADD COLUMN series_id VARCHAR'),
            ('type', 'ALTER TABLE appointments ADD COLUMN type VARCHAR'),
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_clinician_range '
                    'ON appointments(clinician_id, start_at, end_at)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_series_start ON appointments(series_id, start_at)')
            )

        _appointment_schema_checked = True


def ensure_synced_event_schema() -> None:
    global _synced_event_schema_checked

    if _synced_event_schema_checked:
        return

    with _schema_lock:
        if _synced_event_schema_checked:
            return

        inspector = inspect(engine)

        if 'synced_events' not in inspector.get_table_names():
            _synced_event_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('synced_events')}
        migration_steps = [
            ('is_busy', 'ALTER TABLE synced_events ADD COLUMN is_busy BOOLEAN DEFAULT TRUE'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_synced_events_clinician_range '
                    'ON synced_events(clinician_id, start_at, end_at)'
                )
            )

        _synced_event_schema_checked = True
