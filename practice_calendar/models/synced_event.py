"""Synced external calendar event model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from practice_calendar.database import Base

PERSONAL_BLOCK_LABEL = "Personal Block"


class SyncedEvent(Base):
    """Read-only projection of an event imported from an external calendar."""
    __tablename__ = "synced_events"
    __table_args__ = (
        UniqueConstraint("clinician_id", "google_calendar_event_id", name="uq_synced_events_clinician_event"),
    )

    id = Column(Integer, primary_key=True)
    clinician_id = Column(String, ForeignKey("clinicians.id"), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    google_calendar_event_id = Column(String, nullable=False)
    original_title = Column(String)
    original_description = Column(String)
    display_title = Column(String, default=PERSONAL_BLOCK_LABEL, nullable=False)
    is_busy = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime)
