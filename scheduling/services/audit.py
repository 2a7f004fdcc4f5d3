"""Best-effort audit trail for scheduling mutations and sync runs."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from scheduling.database import SessionLocal
from scheduling.models.audit_log import AuditLog
from scheduling.models.records import SyncAuditRecord

logger = logging.getLogger(__name__)

RESOURCE_TIME_SLOT = 'timeslot'
RESOURCE_UNAVAILABILITY = 'unavailability'


class AuditSink(Protocol):
    def record_audit(self, entry: dict) -> None:
        ...


class SqlAuditSink:
    """Writes audit entries to ``audit_logs`` in their own session."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def record_audit(self, entry: dict) -> None:
        session = self._session_factory()
        try:
            session.add(
                AuditLog(
                    actor_id=entry.get('actor_id'),
                    action=entry['action'],
                    resource=entry['resource'],
                    resource_id=entry.get('resource_id'),
                    details=entry.get('details') or {},
                )
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception('Audit entry could not be stored.', extra={'action': entry.get('action')})
        finally:
            session.close()


class SyncAuditRecorder:
    """Hands audit entries to the sink.

    With ``background=True`` entries are written on a single worker thread in
    submission order, so the caller never waits on the audit store. ``flush``
    waits for everything submitted so far.
    """

    def __init__(self, sink: AuditSink, background: bool = False):
        self._sink = sink
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='audit') if background else None
        self._pending: set[Future] = set()
        self._pending_lock = Lock()

    def record(
        self,
        actor_id: str | None,
        action: str,
        resource: str,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        entry = {
            'actor_id': actor_id,
            'action': action,
            'resource': resource,
            'resource_id': resource_id,
            'details': details or {},
        }
        if self._executor is None:
            self._write(entry)
            return

        future = self._executor.submit(self._write, entry)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _write(self, entry: dict) -> None:
        # An audit failure must never fail the scheduling operation itself.
        try:
            self._sink.record_audit(entry)
        except Exception:
            logger.exception('Audit sink rejected entry.', extra={'action': entry['action'], 'resource': entry['resource']})

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def flush(self, timeout: float | None = None) -> bool:
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def record_sync(self, record: SyncAuditRecord) -> None:
        details = record.model_dump(mode='json', exclude={'actor_id', 'operation'})
        self.record(record.actor_id, record.operation, RESOURCE_TIME_SLOT, record.doctor_id, details)
