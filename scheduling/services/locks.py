"""Per-doctor single-writer serialization.

Two layers guard each doctor. A ``threading.Lock`` settles contention between
threads of one process without touching the database; a lease row in
``doctor_lock_leases`` settles it between processes (several API workers, a
worker and a job runner) that share the database.
"""

import logging
import time
from contextlib import contextmanager
from datetime import timedelta, timezone
from threading import Lock

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from scheduling.core import config
from scheduling.core.errors import ConcurrencyError, PersistenceError
from scheduling.database import SessionLocal
from scheduling.models.doctor_lock import DoctorLockLease
from scheduling.models.time_slot import new_id, utcnow

logger = logging.getLogger(__name__)

LEASE_POLL_SECONDS = 0.05


class _LocalEntry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = Lock()
        self.users = 0


class DoctorLockRegistry:
    """Hands out one lock per doctor id.

    Operations for different doctors never contend; a writer that cannot get
    its doctor's lock within ``timeout`` seconds loses with ``ConcurrencyError``.
    A lease left behind by a crashed process is taken over once it expires.
    """

    def __init__(self, session_factory=SessionLocal, timeout: float | None = None, lease_seconds: int | None = None):
        self._session_factory = session_factory
        self._timeout = config.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._lease_seconds = config.LOCK_LEASE_SECONDS if lease_seconds is None else lease_seconds
        self._guard = Lock()
        self._entries: dict[str, _LocalEntry] = {}

    @contextmanager
    def _local_entry(self, doctor_id: str):
        with self._guard:
            entry = self._entries.get(doctor_id)
            if entry is None:
                entry = self._entries[doctor_id] = _LocalEntry()
            entry.users += 1
        try:
            yield entry
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[doctor_id]

    def _busy(self, doctor_id: str, operation: str) -> ConcurrencyError:
        logger.info('Doctor slot set is busy.', extra={'doctor_id': doctor_id, 'operation': operation})
        return ConcurrencyError(f'Another scheduling operation is already running for doctor {doctor_id}; retry shortly.')

    @contextmanager
    def hold(self, doctor_id: str, operation: str = 'write'):
        deadline = time.monotonic() + max(self._timeout, 0)
        with self._local_entry(doctor_id) as entry:
            acquired = entry.lock.acquire(timeout=self._timeout) if self._timeout > 0 else entry.lock.acquire(blocking=False)
            if not acquired:
                raise self._busy(doctor_id, operation)
            try:
                holder = new_id()
                while not self._claim_lease(doctor_id, holder, operation):
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise self._busy(doctor_id, operation)
                    time.sleep(min(LEASE_POLL_SECONDS, remaining))
                try:
                    yield
                finally:
                    self._release_lease(doctor_id, holder)
            finally:
                entry.lock.release()

    def _claim_lease(self, doctor_id: str, holder: str, operation: str) -> bool:
        session = self._session_factory()
        try:
            now = utcnow()
            expires_at = now + timedelta(seconds=self._lease_seconds)
            taken_over = session.query(DoctorLockLease).filter(
                DoctorLockLease.doctor_id == doctor_id,
                DoctorLockLease.expires_at <= now,
            ).update(
                {'holder': holder, 'operation': operation, 'acquired_at': now, 'expires_at': expires_at},
                synchronize_session=False,
            )
            if taken_over:
                logger.warning('Took over an expired doctor lock lease.', extra={'doctor_id': doctor_id})
            else:
                session.add(
                    DoctorLockLease(
                        doctor_id=doctor_id,
                        holder=holder,
                        operation=operation,
                        acquired_at=now,
                        expires_at=expires_at,
                    )
                )
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception('Doctor lock lease could not be claimed.', extra={'doctor_id': doctor_id})
            raise PersistenceError('Doctor lock storage is unavailable.') from exc
        finally:
            session.close()

    def _release_lease(self, doctor_id: str, holder: str) -> None:
        session = self._session_factory()
        try:
            session.query(DoctorLockLease).filter(
                DoctorLockLease.doctor_id == doctor_id,
                DoctorLockLease.holder == holder,
            ).delete(synchronize_session=False)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            # The lease still expires after LOCK_LEASE_SECONDS.
            logger.exception('Doctor lock lease could not be released.', extra={'doctor_id': doctor_id})
        finally:
            session.close()

    def is_locked(self, doctor_id: str) -> bool:
        with self._guard:
            entry = self._entries.get(doctor_id)
            if entry is not None and entry.lock.locked():
                return True

        session = self._session_factory()
        try:
            lease = session.get(DoctorLockLease, doctor_id)
            return lease is not None and _as_utc(lease.expires_at) > utcnow()
        except SQLAlchemyError as exc:
            raise PersistenceError('Doctor lock storage is unavailable.') from exc
        finally:
            session.close()

    def tracked_doctors(self) -> int:
        with self._guard:
            return len(self._entries)


def _as_utc(value):
    # SQLite hands timestamps back without their offset.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
