"""Time slot model definitions."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Index, String

from scheduling.database import Base

SLOT_STATUS_AVAILABLE = 'available'
SLOT_STATUS_BOOKED = 'booked'
SLOT_STATUS_UNAVAILABLE = 'unavailable'
SLOT_STATUSES = (SLOT_STATUS_AVAILABLE, SLOT_STATUS_BOOKED, SLOT_STATUS_UNAVAILABLE)


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeSlot(Base):
    """A bookable or blocked interval for one doctor on one day."""
    __tablename__ = "time_slots"
    __table_args__ = (
        Index('idx_time_slots_doctor_date', 'doctor_id', 'date', 'start_time'),
        Index('uq_time_slots_doctor_event', 'doctor_id', 'external_event_id', unique=True),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    doctor_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)  # HH:MM
    status = Column(String(16), nullable=False, default=SLOT_STATUS_AVAILABLE)
    patient_id = Column(String(64), nullable=True)
    external_event_id = Column(String(255), nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
