"""Unavailability period model definitions."""

from sqlalchemy import Column, Date, DateTime, String

from scheduling.database import Base
from scheduling.models.time_slot import new_id, utcnow


class UnavailabilityPeriod(Base):
    """Days on which no slot may be generated for a doctor."""
    __tablename__ = "unavailability_periods"

    id = Column(String(32), primary_key=True, default=new_id)
    doctor_id = Column(String(64), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)  # inclusive
    reason = Column(String(255), nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
