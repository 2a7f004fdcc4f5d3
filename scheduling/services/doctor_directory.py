"""Read-only view of doctors owned by the identity service."""

from sqlalchemy.exc import SQLAlchemyError

from scheduling.core.errors import PersistenceError
from scheduling.database import SessionLocal
from scheduling.models.doctor import Doctor
from scheduling.models.records import DoctorRecord

DEFAULT_CALENDAR_ID = 'primary'


class DoctorDirectory:
    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def _load(self, doctor_id: str) -> Doctor | None:
        session = self._session_factory()
        try:
            row = session.get(Doctor, doctor_id)
            if row is not None:
                session.expunge(row)
            return row
        except SQLAlchemyError as exc:
            raise PersistenceError('Doctor directory is unavailable.') from exc
        finally:
            session.close()

    def get_doctor(self, doctor_id: str) -> DoctorRecord | None:
        row = self._load(doctor_id)
        if row is None:
            return None

        return DoctorRecord(
            id=row.id,
            display_name=row.display_name,
            calendar_id=row.calendar_id or DEFAULT_CALENDAR_ID,
            has_credential=bool((row.encrypted_refresh_token or '').strip()),
        )

    def get_encrypted_refresh_token(self, doctor_id: str) -> str | None:
        row = self._load(doctor_id)
        return row.encrypted_refresh_token if row else None
