"""Audit log model definitions."""

from sqlalchemy import JSON, Column, DateTime, String

from scheduling.database import Base
from scheduling.models.time_slot import new_id, utcnow


class AuditLog(Base):
    """Append-only record of a scheduling mutation."""
    __tablename__ = "audit_logs"

    id = Column(String(32), primary_key=True, default=new_id)
    actor_id = Column(String(64), nullable=True)
    action = Column(String(32), nullable=False)
    resource = Column(String(32), nullable=False)
    resource_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
