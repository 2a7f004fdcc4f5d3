"""Persistence boundary for time slots and unavailability periods."""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from scheduling.core.errors import PersistenceError
from scheduling.database import SessionLocal
from scheduling.models.records import TimeSlotRecord, UnavailabilityPeriodRecord
from scheduling.models.time_slot import SLOT_STATUS_BOOKED, TimeSlot, utcnow
from scheduling.models.unavailability import UnavailabilityPeriod

logger = logging.getLogger(__name__)

SLOT_FIELDS = ('date', 'start_time', 'end_time', 'status', 'patient_id')
UNAVAILABILITY_FIELDS = ('start_date', 'end_date', 'reason')

CandidateBuilder = Callable[[list[TimeSlotRecord]], Iterable[dict]]


class TimeSlotStore:
    """Every method runs in its own short session; nothing is held across calls."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception('Time slot storage operation failed.')
            raise PersistenceError('Time slot storage is unavailable.') from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_slots(
        self,
        doctor_id: str,
        start_date: date,
        end_date: date,
        status: str | None = None,
    ) -> list[TimeSlotRecord]:
        with self.transaction() as session:
            query = session.query(TimeSlot).filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.date >= start_date,
                TimeSlot.date < end_date,
            )
            if status is not None:
                query = query.filter(TimeSlot.status == status)

            rows = query.order_by(TimeSlot.date.asc(), TimeSlot.start_time.asc()).all()
            return [TimeSlotRecord.model_validate(row) for row in rows]

    def get_slot(self, slot_id: str) -> TimeSlotRecord | None:
        with self.transaction() as session:
            row = session.get(TimeSlot, slot_id)
            return TimeSlotRecord.model_validate(row) if row else None

    def slots_on_date(self, doctor_id: str, day: date, exclude_slot_id: str | None = None) -> list[TimeSlotRecord]:
        with self.transaction() as session:
            query = session.query(TimeSlot).filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.date == day,
            )
            if exclude_slot_id is not None:
                query = query.filter(TimeSlot.id != exclude_slot_id)

            rows = query.order_by(TimeSlot.start_time.asc()).all()
            return [TimeSlotRecord.model_validate(row) for row in rows]

    def referenced_event_ids(self, doctor_id: str, event_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``event_ids`` mirrored by any of the doctor's slots."""
        wanted = {event_id for event_id in event_ids if event_id}
        if not wanted:
            return set()

        with self.transaction() as session:
            rows = session.query(TimeSlot.external_event_id).filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.external_event_id.in_(wanted),
            ).all()
            return {event_id for (event_id,) in rows}

    def insert_slot(self, **fields) -> TimeSlotRecord:
        with self.transaction() as session:
            now = utcnow()
            row = TimeSlot(created_at=now, updated_at=now, **fields)
            session.add(row)
            session.flush()
            return TimeSlotRecord.model_validate(row)

    def update_slot(self, slot_id: str, changes: dict) -> TimeSlotRecord | None:
        with self.transaction() as session:
            row = session.get(TimeSlot, slot_id)
            if row is None:
                return None

            for field, value in changes.items():
                if field not in SLOT_FIELDS:
                    raise ValueError(f'Field {field!r} cannot be updated directly.')
                setattr(row, field, value)
            row.updated_at = utcnow()
            session.flush()
            return TimeSlotRecord.model_validate(row)

    def delete_slot(self, slot_id: str) -> bool:
        with self.transaction() as session:
            row = session.get(TimeSlot, slot_id)
            if row is None:
                return False
            session.delete(row)
            return True

    def replace_unbooked(
        self,
        doctor_id: str,
        start_date: date,
        end_date: date,
        build_candidates: CandidateBuilder,
        created_by: str | None = None,
    ) -> tuple[list[TimeSlotRecord], list[TimeSlotRecord], int]:
        """Delete non-booked slots in ``[start_date, end_date)`` and insert replacements.

        ``build_candidates`` receives the retained booked slots and returns the
        field dicts to insert. Both phases share one transaction.
        """
        with self.transaction() as session:
            rows = session.query(TimeSlot).filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.date >= start_date,
                TimeSlot.date < end_date,
            ).all()

            retained_rows = [row for row in rows if row.status == SLOT_STATUS_BOOKED]
            doomed_rows = [row for row in rows if row.status != SLOT_STATUS_BOOKED]
            for row in doomed_rows:
                session.delete(row)
            session.flush()

            retained = [TimeSlotRecord.model_validate(row) for row in retained_rows]

            now = utcnow()
            new_rows = [
                TimeSlot(doctor_id=doctor_id, created_by=created_by, created_at=now, updated_at=now, **candidate)
                for candidate in build_candidates(retained)
            ]
            session.add_all(new_rows)
            session.flush()

            created = [TimeSlotRecord.model_validate(row) for row in new_rows]
            return retained, created, len(doomed_rows)

    def insert_slots(self, doctor_id: str, candidates: Iterable[dict], created_by: str | None = None) -> list[TimeSlotRecord]:
        """Insert many slots for one doctor in a single transaction."""
        with self.transaction() as session:
            now = utcnow()
            rows = [
                TimeSlot(doctor_id=doctor_id, created_by=created_by, created_at=now, updated_at=now, **candidate)
                for candidate in candidates
            ]
            if not rows:
                return []
            session.add_all(rows)
            session.flush()
            return [TimeSlotRecord.model_validate(row) for row in rows]

    def set_external_event_ids(self, doctor_id: str, updates: dict[str, str]) -> int:
        """Write remote event ids for many slots in a single transaction."""
        if not updates:
            return 0

        with self.transaction() as session:
            written = 0
            now = utcnow()
            for slot_id, event_id in updates.items():
                row = session.get(TimeSlot, slot_id)
                if row is None or row.doctor_id != doctor_id:
                    logger.warning(
                        'Slot disappeared before its remote event id could be stored.',
                        extra={'doctor_id': doctor_id, 'slot_id': slot_id, 'event_id': event_id},
                    )
                    continue
                if row.external_event_id == event_id:
                    continue
                row.external_event_id = event_id
                row.updated_at = now
                written += 1
            return written

    def list_unavailability(
        self,
        doctor_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[UnavailabilityPeriodRecord]:
        """Periods for a doctor, optionally only those touching ``[start_date, end_date)``."""
        with self.transaction() as session:
            query = session.query(UnavailabilityPeriod).filter(UnavailabilityPeriod.doctor_id == doctor_id)
            if start_date is not None:
                query = query.filter(UnavailabilityPeriod.end_date >= start_date)
            if end_date is not None:
                query = query.filter(UnavailabilityPeriod.start_date < end_date)

            rows = query.order_by(UnavailabilityPeriod.start_date.asc()).all()
            return [UnavailabilityPeriodRecord.model_validate(row) for row in rows]

    def get_unavailability(self, period_id: str) -> UnavailabilityPeriodRecord | None:
        with self.transaction() as session:
            row = session.get(UnavailabilityPeriod, period_id)
            return UnavailabilityPeriodRecord.model_validate(row) if row else None

    def insert_unavailability(self, **fields) -> UnavailabilityPeriodRecord:
        with self.transaction() as session:
            now = utcnow()
            row = UnavailabilityPeriod(created_at=now, updated_at=now, **fields)
            session.add(row)
            session.flush()
            return UnavailabilityPeriodRecord.model_validate(row)

    def update_unavailability(self, period_id: str, changes: dict) -> UnavailabilityPeriodRecord | None:
        with self.transaction() as session:
            row = session.get(UnavailabilityPeriod, period_id)
            if row is None:
                return None

            for field, value in changes.items():
                if field not in UNAVAILABILITY_FIELDS:
                    raise ValueError(f'Field {field!r} cannot be updated directly.')
                setattr(row, field, value)
            row.updated_at = utcnow()
            session.flush()
            return UnavailabilityPeriodRecord.model_validate(row)

    def delete_unavailability(self, period_id: str) -> bool:
        with self.transaction() as session:
            row = session.get(UnavailabilityPeriod, period_id)
            if row is None:
                return False
            session.delete(row)
            return True
