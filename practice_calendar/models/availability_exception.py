"""Availability exception model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Time
from practice_calendar.database import Base


class AvailabilityException(Base):
    """A date-specific override of a clinician's weekly pattern."""
    __tablename__ = "availability_exceptions"

    id = Column(Integer, primary_key=True)
    clinician_id = Column(String, ForeignKey("clinicians.id"), nullable=False, index=True)
    specific_date = Column(Date, nullable=False)
    start_time = Column(Time)
    end_time = Column(Time)
    is_deleted = Column(Boolean, default=False, nullable=False)
