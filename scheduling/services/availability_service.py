"""Operations exposed to booking flows, admin actions and the HTTP routes.

The service holds no mutable state of its own; every collaborator is injected
once at startup by ``build_availability_service``.
"""

import logging
from datetime import date

from scheduling.core import config
from scheduling.core.errors import ConflictError, LockedResourceError, NotFoundError, ValidationError
from scheduling.database import SessionLocal
from scheduling.integrations.calendar_events import resolve_zone
from scheduling.integrations.client_factory import CalendarClientFactory
from scheduling.integrations.credentials import CredentialCipher
from scheduling.integrations.google_calendar import GoogleCalendarClient
from scheduling.models.records import (
    CalendarImportResult,
    GenerationResult,
    SyncAuditRecord,
    TimeSlotRecord,
    UnavailabilityPeriodRecord,
)
from scheduling.models.time_slot import SLOT_STATUS_AVAILABLE, SLOT_STATUS_BOOKED, SLOT_STATUSES
from scheduling.services.audit import RESOURCE_TIME_SLOT, RESOURCE_UNAVAILABILITY, SqlAuditSink, SyncAuditRecorder
from scheduling.services.calendar_sync import CalendarSyncEngine
from scheduling.services.doctor_directory import DoctorDirectory
from scheduling.services.locks import DoctorLockRegistry
from scheduling.services.overlap import OverlapDetector
from scheduling.services.slot_generator import SlotGenerator
from scheduling.services.slot_store import SLOT_FIELDS, UNAVAILABILITY_FIELDS, TimeSlotStore
from scheduling.services.time_utils import (
    default_window,
    ensure_wall_clock_exists,
    normalize_time,
    parse_date,
    validate_interval,
)

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 255


def _normalize_status(value) -> str:
    normalized = (value or '').strip().lower() if isinstance(value, str) else value
    if normalized not in SLOT_STATUSES:
        raise ValidationError(f'Status must be one of: {", ".join(SLOT_STATUSES)}.')
    return normalized


def _normalize_patient(status: str, patient_id) -> str | None:
    patient_id = patient_id.strip() if isinstance(patient_id, str) else patient_id
    if status == SLOT_STATUS_BOOKED:
        if not patient_id:
            raise ValidationError('A booked slot requires a patient id.')
        return patient_id
    if patient_id:
        raise ValidationError('Only booked slots can carry a patient id.')
    return None


def _normalize_reason(reason) -> str | None:
    if reason is None:
        return None
    normalized = str(reason).strip()
    if len(normalized) > MAX_REASON_LENGTH:
        raise ValidationError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')
    return normalized or None


def _audit_value(value):
    return value.isoformat() if isinstance(value, date) else value


class AvailabilityService:
    def __init__(self, store, directory, generator, sync_engine, overlap, recorder, locks, timezone: str | None = None):
        self._store = store
        self._directory = directory
        self._generator = generator
        self._sync_engine = sync_engine
        self._overlap = overlap
        self._recorder = recorder
        self._locks = locks
        self._timezone = timezone or config.CALENDAR_TIMEZONE

    def _require_doctor(self, doctor_id: str) -> None:
        if not doctor_id or self._directory.get_doctor(doctor_id) is None:
            raise NotFoundError(f'Doctor {doctor_id} not found.')

    def _require_slot(self, slot_id: str) -> TimeSlotRecord:
        slot = self._store.get_slot(slot_id)
        if slot is None:
            raise NotFoundError(f'Time slot {slot_id} not found.')
        return slot

    def _ensure_times_exist(self, day: date, start_time: str, end_time: str) -> None:
        zone = resolve_zone(self._timezone)
        ensure_wall_clock_exists(day, start_time, zone)
        ensure_wall_clock_exists(day, end_time, zone)

    def _require_period(self, period_id: str) -> UnavailabilityPeriodRecord:
        period = self._store.get_unavailability(period_id)
        if period is None:
            raise NotFoundError(f'Unavailability period {period_id} not found.')
        return period

    def close(self) -> None:
        """Wait for queued audit entries; call once on shutdown."""
        self._recorder.close()

    # Slots

    def get_time_slots(self, doctor_id: str, start_date=None, end_date=None) -> list[TimeSlotRecord]:
        window_start, window_end = default_window(start_date, end_date, config.DEFAULT_LIST_DAYS)
        return self._store.list_slots(doctor_id, window_start, window_end)

    def get_available_time_slots(self, doctor_id: str, start_date=None, end_date=None) -> list[TimeSlotRecord]:
        window_start, window_end = default_window(start_date, end_date, config.DEFAULT_LIST_DAYS)
        return self._store.list_slots(doctor_id, window_start, window_end, status=SLOT_STATUS_AVAILABLE)

    def get_time_slot_by_id(self, slot_id: str) -> TimeSlotRecord:
        return self._require_slot(slot_id)

    def check_overlapping_time_slots(
        self,
        doctor_id: str,
        slot_date,
        start_time: str,
        end_time: str,
        exclude_slot_id: str | None = None,
    ) -> TimeSlotRecord | None:
        """Return the first slot overlapping the interval, or ``None``."""
        return self._overlap.find_conflict(
            doctor_id,
            parse_date(slot_date),
            normalize_time(start_time),
            normalize_time(end_time),
            exclude_slot_id=exclude_slot_id,
        )

    def create_time_slot(
        self,
        doctor_id: str,
        slot_date,
        start_time: str,
        end_time: str,
        status: str = SLOT_STATUS_AVAILABLE,
        patient_id: str | None = None,
        actor_id: str | None = None,
    ) -> TimeSlotRecord:
        day = parse_date(slot_date)
        start_time = normalize_time(start_time)
        end_time = normalize_time(end_time)
        validate_interval(start_time, end_time)
        self._ensure_times_exist(day, start_time, end_time)
        status = _normalize_status(status)
        patient_id = _normalize_patient(status, patient_id)
        self._require_doctor(doctor_id)

        with self._locks.hold(doctor_id, operation='create_time_slot'):
            conflict = self._overlap.find_conflict(doctor_id, day, start_time, end_time)
            if conflict is not None:
                raise ConflictError(
                    f'Time slot overlaps existing slot {conflict.start_time}-{conflict.end_time} on {day}.',
                    conflicting_slot_id=conflict.id,
                )

            slot = self._store.insert_slot(
                doctor_id=doctor_id,
                date=day,
                start_time=start_time,
                end_time=end_time,
                status=status,
                patient_id=patient_id,
                created_by=actor_id,
            )

        self._recorder.record(
            actor_id,
            'create',
            RESOURCE_TIME_SLOT,
            slot.id,
            {'doctor_id': doctor_id, 'date': day.isoformat(), 'start_time': start_time, 'end_time': end_time, 'status': status},
        )
        return slot

    def update_time_slot(self, slot_id: str, changes: dict, actor_id: str | None = None) -> TimeSlotRecord:
        """Apply ``changes`` to a slot.

        Booked slots keep their date and times; only ``status`` and
        ``patient_id`` may move. A slot leaving the booked state loses its
        patient unless a new one is given, which is then rejected.
        """
        changes = dict(changes or {})
        unknown = sorted(set(changes) - set(SLOT_FIELDS))
        if unknown:
            raise ValidationError(f'Cannot update fields: {", ".join(unknown)}.')

        doctor_id = self._require_slot(slot_id).doctor_id

        with self._locks.hold(doctor_id, operation='update_time_slot'):
            slot = self._require_slot(slot_id)

            new_date = parse_date(changes['date']) if 'date' in changes else slot.date
            new_start = normalize_time(changes['start_time']) if 'start_time' in changes else slot.start_time
            new_end = normalize_time(changes['end_time']) if 'end_time' in changes else slot.end_time
            time_changed = (new_date, new_start, new_end) != (slot.date, slot.start_time, slot.end_time)

            if time_changed and slot.status == SLOT_STATUS_BOOKED:
                raise LockedResourceError('Booked time slots cannot be moved; cancel the booking first.')
            validate_interval(new_start, new_end)
            if time_changed:
                self._ensure_times_exist(new_date, new_start, new_end)

            new_status = _normalize_status(changes['status']) if 'status' in changes else slot.status
            if 'patient_id' in changes:
                new_patient = changes['patient_id']
            else:
                new_patient = slot.patient_id if new_status == SLOT_STATUS_BOOKED else None
            new_patient = _normalize_patient(new_status, new_patient)

            if time_changed:
                conflict = self._overlap.find_conflict(doctor_id, new_date, new_start, new_end, exclude_slot_id=slot_id)
                if conflict is not None:
                    raise ConflictError(
                        f'Time slot overlaps existing slot {conflict.start_time}-{conflict.end_time} on {new_date}.',
                        conflicting_slot_id=conflict.id,
                    )

            resulting = {
                'date': new_date,
                'start_time': new_start,
                'end_time': new_end,
                'status': new_status,
                'patient_id': new_patient,
            }
            updates = {field: value for field, value in resulting.items() if getattr(slot, field) != value}
            if not updates:
                return slot

            updated = self._store.update_slot(slot_id, updates)
            if updated is None:
                raise NotFoundError(f'Time slot {slot_id} not found.')

        self._recorder.record(
            actor_id,
            'update',
            RESOURCE_TIME_SLOT,
            slot_id,
            {'doctor_id': doctor_id, 'changes': {field: _audit_value(value) for field, value in updates.items()}},
        )
        return updated

    def delete_time_slot(self, slot_id: str, actor_id: str | None = None) -> None:
        doctor_id = self._require_slot(slot_id).doctor_id

        with self._locks.hold(doctor_id, operation='delete_time_slot'):
            slot = self._require_slot(slot_id)
            if slot.status == SLOT_STATUS_BOOKED:
                raise LockedResourceError('Booked time slots cannot be deleted; cancel the booking first.')
            if not self._store.delete_slot(slot_id):
                raise NotFoundError(f'Time slot {slot_id} not found.')

        self._recorder.record(
            actor_id,
            'delete',
            RESOURCE_TIME_SLOT,
            slot_id,
            {'doctor_id': doctor_id, 'date': slot.date.isoformat(), 'start_time': slot.start_time, 'end_time': slot.end_time},
        )

    # Generation

    def generate_standard_time_slots(
        self,
        doctor_id: str,
        start_date,
        end_date,
        slot_duration_minutes: int | None,
        working_hours,
        actor_id: str | None = None,
    ) -> GenerationResult:
        if slot_duration_minutes is None:
            slot_duration_minutes = config.DEFAULT_SLOT_DURATION_MINUTES
        return self._generator.generate_standard(
            doctor_id,
            start_date,
            end_date,
            slot_duration_minutes,
            working_hours,
            actor_id=actor_id,
        )

    def generate_recurring_time_slots(
        self,
        doctor_id: str,
        start_date,
        end_date,
        recurring_days,
        time_blocks,
        actor_id: str | None = None,
    ) -> GenerationResult:
        return self._generator.generate_recurring(
            doctor_id,
            start_date,
            end_date,
            recurring_days,
            time_blocks,
            actor_id=actor_id,
        )

    # Calendar

    def export_to_calendar(self, doctor_id: str, start_date=None, end_date=None, actor_id: str | None = None) -> SyncAuditRecord:
        window_start, window_end = default_window(start_date, end_date, config.DEFAULT_EXPORT_DAYS)
        return self._sync_engine.export(doctor_id, window_start, window_end, actor_id=actor_id)

    def sync_with_calendar(self, doctor_id: str, start_date=None, end_date=None, actor_id: str | None = None) -> SyncAuditRecord:
        window_start, window_end = default_window(start_date, end_date, config.DEFAULT_SYNC_DAYS)
        return self._sync_engine.sync(doctor_id, window_start, window_end, actor_id=actor_id)

    def import_from_calendar(
        self,
        doctor_id: str,
        start_date=None,
        end_date=None,
        actor_id: str | None = None,
    ) -> CalendarImportResult:
        window_start, window_end = default_window(start_date, end_date, config.DEFAULT_IMPORT_DAYS)
        return self._sync_engine.import_events(doctor_id, window_start, window_end, actor_id=actor_id)

    # Unavailability

    def list_unavailability_periods(self, doctor_id: str, start_date=None, end_date=None) -> list[UnavailabilityPeriodRecord]:
        return self._store.list_unavailability(
            doctor_id,
            parse_date(start_date) if start_date is not None else None,
            parse_date(end_date) if end_date is not None else None,
        )

    def create_unavailability_period(
        self,
        doctor_id: str,
        start_date,
        end_date,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> UnavailabilityPeriodRecord:
        first_day = parse_date(start_date)
        last_day = parse_date(end_date)
        if first_day > last_day:
            raise ValidationError('Unavailability end date cannot be before its start date.')
        reason = _normalize_reason(reason)
        self._require_doctor(doctor_id)

        with self._locks.hold(doctor_id, operation='create_unavailability'):
            period = self._store.insert_unavailability(
                doctor_id=doctor_id,
                start_date=first_day,
                end_date=last_day,
                reason=reason,
                created_by=actor_id,
            )

        self._recorder.record(
            actor_id,
            'create',
            RESOURCE_UNAVAILABILITY,
            period.id,
            {'doctor_id': doctor_id, 'start_date': first_day.isoformat(), 'end_date': last_day.isoformat(), 'reason': reason},
        )
        return period

    def update_unavailability_period(
        self,
        period_id: str,
        changes: dict,
        actor_id: str | None = None,
    ) -> UnavailabilityPeriodRecord:
        changes = dict(changes or {})
        unknown = sorted(set(changes) - set(UNAVAILABILITY_FIELDS))
        if unknown:
            raise ValidationError(f'Cannot update fields: {", ".join(unknown)}.')

        doctor_id = self._require_period(period_id).doctor_id

        with self._locks.hold(doctor_id, operation='update_unavailability'):
            period = self._require_period(period_id)
            resulting = {
                'start_date': parse_date(changes['start_date']) if 'start_date' in changes else period.start_date,
                'end_date': parse_date(changes['end_date']) if 'end_date' in changes else period.end_date,
                'reason': _normalize_reason(changes['reason']) if 'reason' in changes else period.reason,
            }
            if resulting['start_date'] > resulting['end_date']:
                raise ValidationError('Unavailability end date cannot be before its start date.')

            updates = {field: value for field, value in resulting.items() if getattr(period, field) != value}
            if not updates:
                return period

            updated = self._store.update_unavailability(period_id, updates)
            if updated is None:
                raise NotFoundError(f'Unavailability period {period_id} not found.')

        self._recorder.record(
            actor_id,
            'update',
            RESOURCE_UNAVAILABILITY,
            period_id,
            {'doctor_id': doctor_id, 'changes': {field: _audit_value(value) for field, value in updates.items()}},
        )
        return updated

    def delete_unavailability_period(self, period_id: str, actor_id: str | None = None) -> None:
        doctor_id = self._require_period(period_id).doctor_id

        with self._locks.hold(doctor_id, operation='delete_unavailability'):
            if not self._store.delete_unavailability(period_id):
                raise NotFoundError(f'Unavailability period {period_id} not found.')

        self._recorder.record(actor_id, 'delete', RESOURCE_UNAVAILABILITY, period_id, {'doctor_id': doctor_id})


def build_availability_service(
    session_factory=SessionLocal,
    cipher: CredentialCipher | None = None,
    client_class=GoogleCalendarClient,
    audit_sink=None,
    lock_timeout: float | None = None,
    timezone: str | None = None,
    background_audit: bool = True,
) -> AvailabilityService:
    store = TimeSlotStore(session_factory)
    directory = DoctorDirectory(session_factory)
    recorder = SyncAuditRecorder(audit_sink or SqlAuditSink(session_factory), background=background_audit)
    locks = DoctorLockRegistry(session_factory, timeout=lock_timeout)
    client_factory = CalendarClientFactory(directory, cipher, client_class=client_class)

    return AvailabilityService(
        store=store,
        directory=directory,
        generator=SlotGenerator(store, directory, recorder, locks, timezone=timezone),
        sync_engine=CalendarSyncEngine(store, directory, client_factory, recorder, locks, timezone=timezone),
        overlap=OverlapDetector(store),
        recorder=recorder,
        locks=locks,
        timezone=timezone,
    )
