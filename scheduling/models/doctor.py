"""Doctor model definitions."""

from sqlalchemy import Column, String, Text

from scheduling.database import Base


class Doctor(Base):
    """Local projection of a doctor owned by the identity service."""
    __tablename__ = "doctors"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=True)
    calendar_id = Column(String(255), nullable=True)
    encrypted_refresh_token = Column(Text, nullable=True)
