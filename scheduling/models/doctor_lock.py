"""Doctor lock lease model definitions."""

from sqlalchemy import Column, DateTime, String

from scheduling.database import Base


class DoctorLockLease(Base):
    """At most one row per doctor; the row is the lock, shared by every process."""
    __tablename__ = "doctor_lock_leases"

    doctor_id = Column(String(64), primary_key=True)
    holder = Column(String(32), nullable=False)
    operation = Column(String(64), nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
