"""Appointment model definitions."""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, String
from practice_calendar.database import Base


class Appointment(Base):
    """Represents a scheduled appointment or an internal blocked-time row.

    start_at/end_at hold naive UTC instants.
    """
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    client_id = Column(String, nullable=False, index=True)
    clinician_id = Column(String, ForeignKey("clinicians.id"), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    type = Column(String)
    status = Column(String, default="scheduled")
    notes = Column(String)
    series_id = Column(String, index=True)
