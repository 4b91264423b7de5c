import os
from datetime import date, datetime, time, timedelta

import pytest
import pytz
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from practice_calendar.database import Base  # noqa: E402
from practice_calendar.models.appointment import Appointment  # noqa: E402
from practice_calendar.models.availability_exception import AvailabilityException  # noqa: E402
from practice_calendar.models.clinician import Clinician  # noqa: E402
from practice_calendar.models.synced_event import SyncedEvent  # noqa: E402
from practice_calendar.routes.appointment_routes import (  # noqa: E402
    CreateAppointmentRequest,
    UpdateAppointmentRequest,
    appointment_report,
    count_appointments,
    create_appointment,
    delete_appointment,
    export_appointments,
    list_appointments,
    search_appointments,
    update_appointment,
)
from practice_calendar.scheduling.busy_blocks import BLOCKED_TIME_CLIENT_ID, INTERNAL_BLOCKED_TIME_TYPE  # noqa: E402
from practice_calendar.scheduling.cache import MaterializationCache  # noqa: E402
from practice_calendar.scheduling.schemas import SeriesScope  # noqa: E402

# Monday 2024-06-03, 13:00-14:00 in America/Chicago
SESSION_START = datetime(2024, 6, 3, 18, 0, tzinfo=pytz.UTC)
SESSION_END = datetime(2024, 6, 3, 19, 0, tzinfo=pytz.UTC)


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
        clinician_availability_start_monday_1=time(9, 0),
        clinician_availability_end_monday_1=time(17, 0),
    )
    scheduling_db.add(clinician)
    scheduling_db.commit()
    return clinician


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('practice_calendar.routes.appointment_routes.ensure_database_ready', lambda: None)


def book(db, cache=None, **overrides):
    fields = {
        'client_id': 'client-1',
        'clinician_id': 'clin-1',
        'start_at': SESSION_START,
        'end_at': SESSION_END,
        'type': 'therapy',
    }
    fields.update(overrides)
    return create_appointment(data=CreateAppointmentRequest(**fields), db=db, cache=cache)


def add_appointment(db, start_at: datetime, end_at: datetime, **overrides) -> Appointment:
    fields = {'client_id': 'client-9', 'clinician_id': 'clin-1', 'type': 'therapy', 'status': 'scheduled'}
    fields.update(overrides)
    appointment = Appointment(start_at=start_at, end_at=end_at, **fields)
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def test_create_request_rejects_reserved_client_and_type() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(client_id=BLOCKED_TIME_CLIENT_ID, clinician_id='clin-1', start_at=SESSION_START, end_at=SESSION_END)

    with pytest.raises(ValidationError):
        CreateAppointmentRequest(
            client_id='client-1',
            clinician_id='clin-1',
            start_at=SESSION_START,
            end_at=SESSION_END,
            type=INTERNAL_BLOCKED_TIME_TYPE,
        )


def test_create_request_rejects_inverted_range() -> None:
    with pytest.raises(ValidationError):
        CreateAppointmentRequest(client_id='client-1', clinician_id='clin-1', start_at=SESSION_END, end_at=SESSION_START)


def test_create_single_appointment(scheduling_db, clinician) -> None:
    created = book(scheduling_db)

    assert len(created) == 1
    assert created[0].start_at == SESSION_START
    assert created[0].status == 'scheduled'
    assert created[0].series_id is None
    stored = scheduling_db.query(Appointment).one()
    assert stored.start_at == datetime(2024, 6, 3, 18, 0)
    assert created[0].outside_availability is False


def test_booking_outside_availability_is_flagged_not_rejected(scheduling_db, clinician) -> None:
    # 20:00-21:00 Chicago, after the 09:00-17:00 Monday slot
    created = book(
        scheduling_db,
        start_at=datetime(2024, 6, 4, 1, 0, tzinfo=pytz.UTC),
        end_at=datetime(2024, 6, 4, 2, 0, tzinfo=pytz.UTC),
    )

    assert [appointment.outside_availability for appointment in created] == [True]
    assert scheduling_db.query(Appointment).count() == 1


def test_booking_over_an_exception_day_off_is_flagged(scheduling_db, clinician) -> None:
    scheduling_db.add(AvailabilityException(
        clinician_id='clin-1',
        specific_date=date(2024, 6, 17),
        start_time=time(7, 0),
        end_time=time(8, 0),
    ))
    scheduling_db.commit()

    created = book(scheduling_db, frequency='weekly', occurrence_count=4)

    assert [appointment.outside_availability for appointment in created] == [False, False, True, False]


    assert stored.start_at == datetime(2024, 6, 3, 18, 0)


def test_create_appointment_invalidates_cached_availability(scheduling_db, clinician) -> None:
    cache = MaterializationCache(ttl_seconds=30)
    cache.set(('clin-1', 'range', 0), {})

    book(scheduling_db, cache=cache)

    assert len(cache) == 0


def test_create_recurring_series(scheduling_db, clinician) -> None:
    created = book(scheduling_db, frequency='every_2_weeks', occurrence_count=6)

    assert len(created) == 6
    assert len({appointment.series_id for appointment in created}) == 1
    assert [(appointment.start_at - SESSION_START).days for appointment in created] == [0, 14, 28, 42, 56, 70]


@pytest.mark.parametrize('occurrence_count', [None, 3, 51])
def test_create_recurring_series_requires_bounded_count(scheduling_db, clinician, occurrence_count) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book(scheduling_db, frequency='weekly', occurrence_count=occurrence_count)

    assert exception_info.value.status_code == 400
    assert scheduling_db.query(Appointment).count() == 0


def test_create_for_unknown_clinician_is_404(scheduling_db) -> None:
    with pytest.raises(HTTPException) as exception_info:
        book(scheduling_db)

    assert exception_info.value.status_code == 404


def test_overlapping_booking_is_409(scheduling_db, clinician) -> None:
    add_appointment(scheduling_db, datetime(2024, 6, 3, 18, 30), datetime(2024, 6, 3, 19, 30))

    with pytest.raises(HTTPException) as exception_info:
        book(scheduling_db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail['conflicts'][0]['type'] == 'overlap'


def test_booking_over_blocked_time_is_409(scheduling_db, clinician) -> None:
    add_appointment(
        scheduling_db,
        datetime(2024, 6, 3, 17, 0),
        datetime(2024, 6, 3, 20, 0),
        client_id=BLOCKED_TIME_CLIENT_ID,
        type=INTERNAL_BLOCKED_TIME_TYPE,
        status='hidden',
    )

    with pytest.raises(HTTPException) as exception_info:
        book(scheduling_db)

    conflict = exception_info.value.detail['conflicts'][0]
    assert (conflict['source'], conflict['type']) == ('blocked_time', 'contained')


def test_booking_over_busy_calendar_event_is_409(scheduling_db, clinician) -> None:
    scheduling_db.add(SyncedEvent(
        clinician_id='clin-1',
        google_calendar_event_id='evt-1',
        start_at=datetime(2024, 6, 3, 18, 15),
        end_at=datetime(2024, 6, 3, 18, 45),
        is_busy=True,
    ))
    scheduling_db.commit()

    with pytest.raises(HTTPException) as exception_info:
        book(scheduling_db)

    assert exception_info.value.detail['conflicts'][0]['source'] == 'synced_event'


def test_free_calendar_event_and_back_to_back_do_not_block(scheduling_db, clinician) -> None:
    scheduling_db.add(SyncedEvent(
        clinician_id='clin-1',
        google_calendar_event_id='evt-1',
        start_at=datetime(2024, 6, 3, 18, 0),
        end_at=datetime(2024, 6, 3, 19, 0),
        is_busy=False,
    ))
    scheduling_db.commit()
    add_appointment(scheduling_db, datetime(2024, 6, 3, 17, 0), datetime(2024, 6, 3, 18, 0))

    assert len(book(scheduling_db)) == 1


def test_recurring_conflict_rejects_whole_series(scheduling_db, clinician) -> None:
    add_appointment(scheduling_db, datetime(2024, 6, 17, 18, 0), datetime(2024, 6, 17, 19, 0))

    with pytest.raises(HTTPException) as exception_info:
        book(scheduling_db, frequency='weekly', occurrence_count=4)

    assert exception_info.value.status_code == 409
    assert scheduling_db.query(Appointment).count() == 1


def test_list_and_count_exclude_blocked_time(scheduling_db, clinician) -> None:
    book(scheduling_db)
    add_appointment(scheduling_db, datetime(2024, 6, 4, 15, 0), datetime(2024, 6, 4, 16, 0), client_id=BLOCKED_TIME_CLIENT_ID)
    add_appointment(scheduling_db, datetime(2024, 6, 5, 15, 0), datetime(2024, 6, 5, 16, 0), type=INTERNAL_BLOCKED_TIME_TYPE)

    listed = list_appointments(clinician_id='clin-1', start=None, end=None, db=scheduling_db)
    counted = count_appointments(clinician_id='clin-1', db=scheduling_db)

    assert [appointment.client_id for appointment in listed] == ['client-1']
    assert counted.count == 1


def test_list_appointments_filters_by_range(scheduling_db, clinician) -> None:
    book(scheduling_db, frequency='weekly', occurrence_count=4)

    listed = list_appointments(
        clinician_id='clin-1',
        start=datetime(2024, 6, 9, tzinfo=pytz.UTC),
        end=datetime(2024, 6, 20, tzinfo=pytz.UTC),
        db=scheduling_db,
    )

    assert [appointment.start_at.day for appointment in listed] == [10, 17]


def test_delete_this_and_future_from_third_of_six(scheduling_db, clinician) -> None:
    created = book(scheduling_db, frequency='weekly', occurrence_count=6)

    delete_appointment(appointment_id=created[2].id, scope=SeriesScope.THIS_AND_FUTURE, db=scheduling_db, cache=None)

    remaining = scheduling_db.query(Appointment).order_by(Appointment.start_at.asc()).all()
    assert [appointment.id for appointment in remaining] == [created[0].id, created[1].id]


@pytest.mark.parametrize(('scope', 'remaining'), [(SeriesScope.SINGLE, 5), (SeriesScope.SERIES, 0)])
def test_delete_scopes(scheduling_db, clinician, scope: SeriesScope, remaining: int) -> None:
    created = book(scheduling_db, frequency='weekly', occurrence_count=6)

    delete_appointment(appointment_id=created[2].id, scope=scope, db=scheduling_db, cache=None)

    assert scheduling_db.query(Appointment).count() == remaining


def test_delete_blocked_time_through_appointments_is_404(scheduling_db, clinician) -> None:
    blocked = add_appointment(
        scheduling_db,
        datetime(2024, 6, 4, 15, 0),
        datetime(2024, 6, 4, 16, 0),
        client_id=BLOCKED_TIME_CLIENT_ID,
    )

    with pytest.raises(HTTPException) as exception_info:
        delete_appointment(appointment_id=blocked.id, scope=SeriesScope.SINGLE, db=scheduling_db, cache=None)

    assert exception_info.value.status_code == 404


def test_update_series_moves_every_member(scheduling_db, clinician) -> None:
    created = book(scheduling_db, frequency='weekly', occurrence_count=4)

    updated = update_appointment(
        appointment_id=created[0].id,
        data=UpdateAppointmentRequest(start_at=SESSION_START + timedelta(hours=1)),
        scope=SeriesScope.SERIES,
        db=scheduling_db,
        cache=None,
    )

    assert [appointment.start_at.hour for appointment in updated] == [19, 19, 19, 19]
    assert all(appointment.outside_availability is False for appointment in updated)
    assert all(appointment.end_at - appointment.start_at == timedelta(hours=1) for appointment in updated)


def test_update_this_and_future_keeps_earlier_members(scheduling_db, clinician) -> None:
    created = book(scheduling_db, frequency='weekly', occurrence_count=4)

    update_appointment(
        appointment_id=created[2].id,
        data=UpdateAppointmentRequest(start_at=created[2].start_at + timedelta(days=1)),
        scope=SeriesScope.THIS_AND_FUTURE,
        db=scheduling_db,
        cache=None,
    )

    days = [appointment.start_at.day for appointment in scheduling_db.query(Appointment).order_by(Appointment.start_at).all()]
    assert days == [3, 10, 18, 25]


def test_update_into_conflict_is_409(scheduling_db, clinician) -> None:
    created = book(scheduling_db)
    add_appointment(scheduling_db, datetime(2024, 6, 3, 20, 0), datetime(2024, 6, 3, 21, 0))

    with pytest.raises(HTTPException) as exception_info:
        update_appointment(
            appointment_id=created[0].id,
            data=UpdateAppointmentRequest(start_at=datetime(2024, 6, 3, 20, 30, tzinfo=pytz.UTC)),
            scope=SeriesScope.SINGLE,
            db=scheduling_db,
            cache=None,
        )

    assert exception_info.value.status_code == 409
    stored = scheduling_db.query(Appointment).filter(Appointment.id == created[0].id).one()
    assert stored.start_at == datetime(2024, 6, 3, 18, 0)


def test_update_status_and_notes_for_single_member(scheduling_db, clinician) -> None:
    created = book(scheduling_db, frequency='weekly', occurrence_count=4)

    updated = update_appointment(
        appointment_id=created[1].id,
        data=UpdateAppointmentRequest(status=' Cancelled ', notes='Client travelling'),
        scope=SeriesScope.SINGLE,
        db=scheduling_db,
        cache=None,
    )

    assert [(appointment.id, appointment.status, appointment.notes) for appointment in updated] == [
        (created[1].id, 'cancelled', 'Client travelling'),
    ]
    statuses = [appointment.status for appointment in scheduling_db.query(Appointment).order_by(Appointment.start_at).all()]
    assert statuses == ['scheduled', 'cancelled', 'scheduled', 'scheduled']


def test_search_matches_real_appointments_only(scheduling_db, clinician) -> None:
    book(scheduling_db, notes='Intake paperwork')
    add_appointment(
        scheduling_db,
        datetime(2024, 6, 4, 15, 0),
        datetime(2024, 6, 4, 16, 0),
        client_id=BLOCKED_TIME_CLIENT_ID,
        notes='Blocked time: intake prep',
    )

    results = search_appointments(clinician_id='clin-1', q='INTAKE', db=scheduling_db)

    assert [appointment.notes for appointment in results] == ['Intake paperwork']


def test_report_summarizes_real_appointments(scheduling_db, clinician) -> None:
    book(scheduling_db, frequency='weekly', occurrence_count=4)
    add_appointment(scheduling_db, datetime(2024, 6, 4, 15, 0), datetime(2024, 6, 4, 15, 30), client_id='client-2', type='intake')
    add_appointment(scheduling_db, datetime(2024, 6, 5, 15, 0), datetime(2024, 6, 5, 16, 0), client_id=BLOCKED_TIME_CLIENT_ID)

    report = appointment_report(clinician_id='clin-1', start=None, end=None, db=scheduling_db)

    assert report.total_appointments == 5
    assert report.total_minutes == 4 * 60 + 30
    assert report.distinct_clients == 2
    assert report.by_type == {'therapy': 4, 'intake': 1}
    assert report.by_status == {'scheduled': 5}


def test_export_writes_csv(scheduling_db, clinician) -> None:
    book(scheduling_db)

    response = export_appointments(clinician_id='clin-1', start=None, end=None, db=scheduling_db)

    lines = response.body.decode().splitlines()
    assert lines[0] == 'id,client_id,clinician_id,start_at,end_at,type,status,series_id,notes'
    assert lines[1].startswith('1,client-1,clin-1,2024-06-03T18:00:00')
    assert response.media_type == 'text/csv'


def test_reschedule_outside_availability_is_flagged(scheduling_db, clinician) -> None:
    created = book(scheduling_db)

    updated = update_appointment(
        appointment_id=created[0].id,
        data=UpdateAppointmentRequest(start_at=SESSION_START + timedelta(days=1)),
        scope=SeriesScope.SINGLE,
        db=scheduling_db,
        cache=None,
    )

    assert [appointment.outside_availability for appointment in updated] == [True]


def test_status_only_update_leaves_availability_unevaluated(scheduling_db, clinician) -> None:
    created = book(scheduling_db)

    updated = update_appointment(
        appointment_id=created[0].id,
        data=UpdateAppointmentRequest(status='confirmed'),
        scope=SeriesScope.SINGLE,
        db=scheduling_db,
        cache=None,
    )

    assert updated[0].outside_availability is None
