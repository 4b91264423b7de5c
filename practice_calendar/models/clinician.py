"""Clinician model definitions."""

from sqlalchemy import Column, String, Time
from practice_calendar.database import Base


class Clinician(Base):
    """A clinician profile carrying the column-encoded weekly availability."""
    __tablename__ = "clinicians"

    id = Column(String, primary_key=True)
    clinician_first_name = Column(String)
    clinician_last_name = Column(String)
    clinician_email = Column(String, unique=True, index=True)
    clinician_time_zone = Column(String)

    # Up to three (start, end) pairs per weekday, in the clinician's local time.
    clinician_availability_start_monday_1 = Column(Time)
    clinician_availability_end_monday_1 = Column(Time)
    clinician_availability_start_monday_2 = Column(Time)
    clinician_availability_end_monday_2 = Column(Time)
    clinician_availability_start_monday_3 = Column(Time)
    clinician_availability_end_monday_3 = Column(Time)
    clinician_availability_start_tuesday_1 = Column(Time)
    clinician_availability_end_tuesday_1 = Column(Time)
    clinician_availability_start_tuesday_2 = Column(Time)
    clinician_availability_end_tuesday_2 = Column(Time)
    clinician_availability_start_tuesday_3 = Column(Time)
    clinician_availability_end_tuesday_3 = Column(Time)
    clinician_availability_start_wednesday_1 = Column(Time)
    clinician_availability_end_wednesday_1 = Column(Time)
    clinician_availability_start_wednesday_2 = Column(Time)
    clinician_availability_end_wednesday_2 = Column(Time)
    clinician_availability_start_wednesday_3 = Column(Time)
    clinician_availability_end_wednesday_3 = Column(Time)
    clinician_availability_start_thursday_1 = Column(Time)
    clinician_availability_end_thursday_1 = Column(Time)
    clinician_availability_start_thursday_2 = Column(Time)
    clinician_availability_end_thursday_2 = Column(Time)
    clinician_availability_start_thursday_3 = Column(Time)
    clinician_availability_end_thursday_3 = Column(Time)
    clinician_availability_start_friday_1 = Column(Time)
    clinician_availability_end_friday_1 = Column(Time)
    clinician_availability_start_friday_2 = Column(Time)
    clinician_availability_end_friday_2 = Column(Time)
    clinician_availability_start_friday_3 = Column(Time)
    clinician_availability_end_friday_3 = Column(Time)
    clinician_availability_start_saturday_1 = Column(Time)
    clinician_availability_end_saturday_1 = Column(Time)
    clinician_availability_start_saturday_2 = Column(Time)
    clinician_availability_end_saturday_2 = Column(Time)
    clinician_availability_start_saturday_3 = Column(Time)
    clinician_availability_end_saturday_3 = Column(Time)
    clinician_availability_start_sunday_1 = Column(Time)
    clinician_availability_end_sunday_1 = Column(Time)
    clinician_availability_start_sunday_2 = Column(Time)
    clinician_availability_end_sunday_2 = Column(Time)
    clinician_availability_start_sunday_3 = Column(Time)
    clinician_availability_end_sunday_3 = Column(Time)
