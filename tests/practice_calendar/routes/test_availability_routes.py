import os
from datetime import date, datetime, time
from types import SimpleNamespace

import pytest
import pytz
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from practice_calendar.core.config import Capabilities  # noqa: E402
from practice_calendar.core.errors import FetchFailed, NotFound, SchedulingConflict, Timeout  # noqa: E402
from practice_calendar.database import Base  # noqa: E402
from practice_calendar.models.appointment import Appointment  # noqa: E402
from practice_calendar.models.availability_exception import AvailabilityException  # noqa: E402
from practice_calendar.models.clinician import Clinician  # noqa: E402
from practice_calendar.routes.availability_routes import (  # noqa: E402
    CreateBlockedTimeRequest,
    CreateExceptionRequest,
    WeeklyPatternRequest,
    create_blocked_time,
    create_exception,
    delete_blocked_time,
    delete_exception,
    get_availability,
    get_availability_blocks,
    get_weekly_pattern,
    list_blocked_times,
    list_exceptions,
    update_weekly_pattern,
)
from practice_calendar.routes.dependencies import require_capability, to_http_exception  # noqa: E402
from practice_calendar.scheduling.busy_blocks import BLOCKED_TIME_CLIENT_ID, INTERNAL_BLOCKED_TIME_TYPE  # noqa: E402
from practice_calendar.scheduling.cache import MaterializationCache  # noqa: E402

MONDAY = date(2024, 6, 3)


@pytest.fixture
def scheduling_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clinician(scheduling_db) -> Clinician:
    clinician = Clinician(
        id='clin-1',
        clinician_email='clinician@example.com',
        clinician_time_zone='America/Chicago',
        clinician_availability_start_monday_1=time(13, 0),
        clinician_availability_end_monday_1=time(15, 0),
    )
    scheduling_db.add(clinician)
    scheduling_db.commit()
    return clinician


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('practice_calendar.routes.availability_routes.ensure_database_ready', lambda: None)


def fetch_week(db, cache=None, refresh: int = 0):
    return get_availability(
        clinician_id='clin-1',
        start_date=date(2024, 6, 1),
        end_date=date(2024, 6, 7),
        zone=None,
        refresh=refresh,
        db=db,
        cache=cache,
    )


def make_request(capabilities: Capabilities):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(capabilities=capabilities)))


def test_create_exception_request_rejects_inverted_times() -> None:
    with pytest.raises(ValidationError):
        CreateExceptionRequest(specific_date=MONDAY, start_time=time(10, 0), end_time=time(9, 0))


def test_create_blocked_time_request_normalizes_reason() -> None:
    request = CreateBlockedTimeRequest(
        start_at=datetime(2024, 6, 3, 15, 0),
        end_at=datetime(2024, 6, 3, 16, 0),
        reason='   ',
    )

    assert request.reason is None


def test_weekly_pattern_request_rejects_unknown_day() -> None:
    with pytest.raises(ValidationError):
        WeeklyPatternRequest(days={'funday': [{'start_time': '09:00', 'end_time': '10:00'}]})


def test_weekly_pattern_request_rejects_fourth_slot() -> None:
    slot = {'start_time': '09:00', 'end_time': '10:00'}
    with pytest.raises(ValidationError):
        WeeklyPatternRequest(days={'monday': [slot, slot, slot, slot]})


def test_get_availability_returns_materialized_week(scheduling_db, clinician) -> None:
    days = fetch_week(scheduling_db)

    assert len(days) == 7
    assert days['2024-06-02'].slots == []
    assert days['2024-06-03'].slots[0].start_at == datetime(2024, 6, 3, 18, 0, tzinfo=pytz.UTC)


def test_get_availability_unknown_clinician_is_404(scheduling_db) -> None:
    with pytest.raises(HTTPException) as exception_info:
        fetch_week(scheduling_db)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Clinician clin-1 not found.'


def test_get_availability_reversed_range_is_400(scheduling_db, clinician) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_availability(
            clinician_id='clin-1',
            start_date=date(2024, 6, 7),
            end_date=date(2024, 6, 1),
            zone=None,
            refresh=0,
            db=scheduling_db,
            cache=None,
        )

    assert exception_info.value.status_code == 400


def test_get_availability_blocks(scheduling_db, clinician) -> None:
    blocks = get_availability_blocks(
        clinician_id='clin-1',
        start_date=date(2024, 6, 1),
        end_date=date(2024, 6, 14),
        zone=None,
        db=scheduling_db,
        cache=None,
    )

    assert [block.id for block in blocks] == ['clin-1-monday-1-2024-06-03', 'clin-1-monday-1-2024-06-10']


def test_get_weekly_pattern(scheduling_db, clinician) -> None:
    pattern = get_weekly_pattern(clinician_id='clin-1', db=scheduling_db)

    assert pattern.time_zone == 'America/Chicago'
    assert pattern.slots_for('monday')[0].start_time == time(13, 0)


def test_update_weekly_pattern_rewrites_columns_and_invalidates(scheduling_db, clinician) -> None:
    cache = MaterializationCache(ttl_seconds=30)
    fetch_week(scheduling_db, cache)

    pattern = update_weekly_pattern(
        clinician_id='clin-1',
        data=WeeklyPatternRequest(
            time_zone='America/New_York',
            days={'Tuesday': [{'start_time': '14:00', 'end_time': '16:00'}, {'start_time': '09:00', 'end_time': '10:00'}]},
        ),
        db=scheduling_db,
        cache=cache,
    )

    assert len(cache) == 0
    assert pattern.time_zone == 'America/New_York'
    assert pattern.slots_for('monday') == (None, None, None)
    assert [slot.start_time for slot in pattern.slots_for('tuesday') if slot] == [time(9, 0), time(14, 0)]

    days = fetch_week(scheduling_db, cache)
    assert days['2024-06-03'].slots == []
    assert days['2024-06-04'].slots[0].start_at == datetime(2024, 6, 4, 13, 0, tzinfo=pytz.UTC)


def test_update_weekly_pattern_rejects_unknown_zone(scheduling_db, clinician) -> None:
    with pytest.raises(HTTPException) as exception_info:
        update_weekly_pattern(
            clinician_id='clin-1',
            data=WeeklyPatternRequest(time_zone='Mars/Base', days={}),
            db=scheduling_db,
            cache=None,
        )

    assert exception_info.value.status_code == 400


def test_create_exception_overrides_cached_availability(scheduling_db, clinician) -> None:
    cache = MaterializationCache(ttl_seconds=30)
    assert len(fetch_week(scheduling_db, cache)['2024-06-03'].slots) == 1

    exception = create_exception(
        clinician_id='clin-1',
        data=CreateExceptionRequest(specific_date=MONDAY, start_time=time(9, 0), end_time=time(11, 0)),
        db=scheduling_db,
        cache=cache,
    )

    assert exception.id is not None
    slots = fetch_week(scheduling_db, cache)['2024-06-03'].slots
    assert [(slot.start_time, slot.is_exception) for slot in slots] == [(time(9, 0), True)]


def test_create_exception_for_unknown_clinician_is_404(scheduling_db) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_exception(
            clinician_id='nobody',
            data=CreateExceptionRequest(specific_date=MONDAY, start_time=time(9, 0), end_time=time(11, 0)),
            db=scheduling_db,
            cache=None,
        )

    assert exception_info.value.status_code == 404


def test_delete_exception_soft_deletes_and_leaves_day_off(scheduling_db, clinician) -> None:
    exception = AvailabilityException(
        clinician_id='clin-1',
        specific_date=MONDAY,
        start_time=time(9, 0),
        end_time=time(11, 0),
    )
    scheduling_db.add(exception)
    scheduling_db.commit()

    delete_exception(exception_id=exception.id, db=scheduling_db, cache=None)

    stored = scheduling_db.query(AvailabilityException).filter(AvailabilityException.id == exception.id).first()
    assert stored is not None
    assert stored.is_deleted
    assert fetch_week(scheduling_db)['2024-06-03'].slots == []

    with pytest.raises(HTTPException) as exception_info:
        delete_exception(exception_id=exception.id, db=scheduling_db, cache=None)
    assert exception_info.value.status_code == 404


def test_list_exceptions_hides_deleted_by_default(scheduling_db, clinician) -> None:
    scheduling_db.add_all([
        AvailabilityException(clinician_id='clin-1', specific_date=MONDAY, start_time=time(9, 0), end_time=time(10, 0)),
        AvailabilityException(
            clinician_id='clin-1',
            specific_date=date(2024, 6, 4),
            start_time=time(9, 0),
            end_time=time(10, 0),
            is_deleted=True,
        ),
    ])
    scheduling_db.commit()

    visible = list_exceptions(
        clinician_id='clin-1',
        start_date=date(2024, 6, 1),
        end_date=date(2024, 6, 7),
        include_deleted=False,
        db=scheduling_db,
    )
    everything = list_exceptions(
        clinician_id='clin-1',
        start_date=date(2024, 6, 1),
        end_date=date(2024, 6, 7),
        include_deleted=True,
        db=scheduling_db,
    )

    assert [exception.specific_date for exception in visible] == [MONDAY]
    assert len(everything) == 2


def test_create_blocked_time_uses_both_sentinels(scheduling_db, clinician) -> None:
    response = create_blocked_time(
        clinician_id='clin-1',
        data=CreateBlockedTimeRequest(start_at=datetime(2024, 6, 3, 15, 0), end_at=datetime(2024, 6, 3, 16, 0)),
        db=scheduling_db,
        cache=None,
    )

    stored = scheduling_db.query(Appointment).filter(Appointment.id == response.id).one()
    assert stored.client_id == BLOCKED_TIME_CLIENT_ID
    assert stored.type == INTERNAL_BLOCKED_TIME_TYPE
    assert stored.status == 'hidden'
    assert stored.notes == 'Blocked time slot'
    assert response.label == 'Blocked'
    assert response.start_at == datetime(2024, 6, 3, 15, 0, tzinfo=pytz.UTC)


def test_create_blocked_time_with_reason_shows_it_as_label(scheduling_db, clinician) -> None:
    response = create_blocked_time(
        clinician_id='clin-1',
        data=CreateBlockedTimeRequest(
            start_at=datetime(2024, 6, 3, 15, 0),
            end_at=datetime(2024, 6, 3, 16, 0),
            reason='Supervision',
        ),
        db=scheduling_db,
        cache=None,
    )

    assert response.notes == 'Blocked time: Supervision'
    assert response.label == 'Supervision'
    blocked = fetch_week(scheduling_db)['2024-06-03'].blocked
    assert [interval.label for interval in blocked] == ['Supervision']


def test_create_blocked_time_over_booked_appointment_is_409(scheduling_db, clinician) -> None:
    scheduling_db.add(Appointment(
        client_id='client-1',
        clinician_id='clin-1',
        start_at=datetime(2024, 6, 3, 15, 30),
        end_at=datetime(2024, 6, 3, 16, 30),
        type='therapy',
    ))
    scheduling_db.commit()

    with pytest.raises(HTTPException) as exception_info:
        create_blocked_time(
            clinician_id='clin-1',
            data=CreateBlockedTimeRequest(start_at=datetime(2024, 6, 3, 15, 0), end_at=datetime(2024, 6, 3, 16, 0)),
            db=scheduling_db,
            cache=None,
        )

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail['conflicts'][0]['source'] == 'appointment'


def test_list_blocked_times_uses_clinician_days(scheduling_db, clinician) -> None:
    scheduling_db.add_all([
        Appointment(
            client_id=BLOCKED_TIME_CLIENT_ID,
            clinician_id='clin-1',
            start_at=datetime(2024, 6, 3, 15, 0),
            end_at=datetime(2024, 6, 3, 16, 0),
            status='hidden',
        ),
        Appointment(
            client_id='client-1',
            clinician_id='clin-1',
            start_at=datetime(2024, 6, 3, 17, 0),
            end_at=datetime(2024, 6, 3, 18, 0),
            type=INTERNAL_BLOCKED_TIME_TYPE,
        ),
        Appointment(
            client_id='client-1',
            clinician_id='clin-1',
            start_at=datetime(2024, 6, 3, 19, 0),
            end_at=datetime(2024, 6, 3, 20, 0),
            type='therapy',
        ),
    ])
    scheduling_db.commit()

    blocked = list_blocked_times(clinician_id='clin-1', start_date=MONDAY, end_date=MONDAY, db=scheduling_db)

    assert [item.start_at.hour for item in blocked] == [15, 17]


def test_delete_blocked_time_only_matches_blocked_rows(scheduling_db, clinician) -> None:
    real = Appointment(
        client_id='client-1',
        clinician_id='clin-1',
        start_at=datetime(2024, 6, 3, 19, 0),
        end_at=datetime(2024, 6, 3, 20, 0),
    )
    blocked = Appointment(
        client_id=BLOCKED_TIME_CLIENT_ID,
        clinician_id='clin-1',
        start_at=datetime(2024, 6, 3, 15, 0),
        end_at=datetime(2024, 6, 3, 16, 0),
        type=INTERNAL_BLOCKED_TIME_TYPE,
    )
    scheduling_db.add_all([real, blocked])
    scheduling_db.commit()

    with pytest.raises(HTTPException) as exception_info:
        delete_blocked_time(appointment_id=real.id, db=scheduling_db, cache=None)
    assert exception_info.value.status_code == 404

    blocked_id = blocked.id
    delete_blocked_time(appointment_id=blocked_id, db=scheduling_db, cache=None)
    assert scheduling_db.query(Appointment).filter(Appointment.id == blocked_id).first() is None
    assert scheduling_db.query(Appointment).count() == 1


def test_require_capability_blocks_disabled_feature() -> None:
    dependency = require_capability('blocked_time')

    with pytest.raises(HTTPException) as exception_info:
        dependency(make_request(Capabilities(blocked_time=False)))

    assert exception_info.value.status_code == 403
    assert dependency(make_request(Capabilities())) is None


def test_require_capability_rejects_unknown_names() -> None:
    with pytest.raises(KeyError):
        require_capability('telepathy')


@pytest.mark.parametrize(
    ('error', 'status_code'),
    [
        (NotFound('missing'), 404),
        (FetchFailed('db down'), 503),
        (Timeout('too slow'), 504),
        (SchedulingConflict('taken'), 409),
    ],
)
def test_scheduling_errors_map_to_http_status(error, status_code: int) -> None:
    assert to_http_exception(error).status_code == status_code


def test_retryable_errors_say_so() -> None:
    assert to_http_exception(FetchFailed('db down')).detail == {'message': 'db down', 'retryable': True}
