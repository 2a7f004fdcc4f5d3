import copy
import os
from itertools import count

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from scheduling.core.errors import ExternalServiceError, RemoteEventNotFound  # noqa: E402
from scheduling.database import Base  # noqa: E402
from scheduling.integrations.calendar_events import SLOT_ID_KEY, private_properties  # noqa: E402
from scheduling.integrations.credentials import CredentialCipher  # noqa: E402
from scheduling.models.audit_log import AuditLog  # noqa: E402
from scheduling.models.doctor import Doctor  # noqa: E402
from scheduling.models.doctor_lock import DoctorLockLease  # noqa: E402
from scheduling.models.time_slot import TimeSlot  # noqa: E402
from scheduling.models.unavailability import UnavailabilityPeriod  # noqa: E402
from scheduling.services.availability_service import build_availability_service  # noqa: E402

TEST_ENCRYPTION_KEY = '000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f'
TEST_REFRESH_TOKEN = 'refresh-token-for-tests'
TABLES = [
    Doctor.__table__,
    TimeSlot.__table__,
    UnavailabilityPeriod.__table__,
    AuditLog.__table__,
    DoctorLockLease.__table__,
]


class FakeCalendarClient:
    """In-memory calendar with the same surface as ``GoogleCalendarClient``."""

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.mutations: list[tuple[str, str]] = []
        self.failing_slot_ids: set[str] = set()
        self.failing_event_ids: set[str] = set()
        self.list_error: Exception | None = None
        self.connected_with: dict | None = None
        self._ids = count(1)

    def connect(self, **kwargs):
        self.connected_with = kwargs
        return self

    def add_event(self, event_id: str, payload: dict) -> dict:
        self.events[event_id] = {**copy.deepcopy(payload), 'id': event_id}
        return self.events[event_id]

    def list_events(self, time_min, time_max) -> list[dict]:
        if self.list_error is not None:
            raise self.list_error
        return [copy.deepcopy(event) for event in self.events.values()]

    def insert_event(self, body: dict) -> dict:
        slot_id = private_properties(body).get(SLOT_ID_KEY)
        if slot_id in self.failing_slot_ids:
            raise ExternalServiceError('Google Calendar insert_event failed with HTTP 500.', 500)
        event_id = f'evt-{next(self._ids)}'
        self.mutations.append(('insert', event_id))
        return copy.deepcopy(self.add_event(event_id, body))

    def update_event(self, event_id: str, body: dict) -> dict:
        if event_id in self.failing_event_ids:
            raise ExternalServiceError('Google Calendar update_event failed with HTTP 500.', 500)
        if event_id not in self.events:
            raise RemoteEventNotFound(f'Remote event {event_id} no longer exists.', 404)
        self.events[event_id].update(copy.deepcopy(body))
        self.mutations.append(('update', event_id))
        return copy.deepcopy(self.events[event_id])

    def delete_event(self, event_id: str) -> bool:
        if event_id in self.failing_event_ids:
            raise ExternalServiceError('Google Calendar delete_event failed with HTTP 500.', 500)
        self.mutations.append(('delete', event_id))
        return self.events.pop(event_id, None) is not None


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine, tables=TABLES)
        engine.dispose()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def add_doctor(session_factory, cipher):
    def _add_doctor(doctor_id: str = 'doc-1', refresh_token: str | None = TEST_REFRESH_TOKEN, calendar_id=None) -> str:
        db = session_factory()
        try:
            db.add(
                Doctor(
                    id=doctor_id,
                    display_name=f'Dr. {doctor_id}',
                    calendar_id=calendar_id,
                    encrypted_refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
                )
            )
            db.commit()
        finally:
            db.close()
        return doctor_id

    return _add_doctor


@pytest.fixture
def calendar() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def service(session_factory, cipher, calendar):
    return build_availability_service(
        session_factory,
        cipher,
        client_class=calendar.connect,
        lock_timeout=0.1,
        background_audit=False,
    )
