"""Reconciliation between a doctor's local slots and their remote calendar.

The local slot set is authoritative; the remote calendar is a mirror. A run
derives everything it does from the current local and remote state, so a run
interrupted at any point is repaired by the next one, and a run with nothing
to change performs no remote calls and no local writes.
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time

from scheduling.core import config
from scheduling.core.errors import (
    CredentialMissing,
    EventParseError,
    ExternalServiceError,
    NotFoundError,
    RemoteEventNotFound,
)
from scheduling.integrations.calendar_events import (
    RemoteEvent,
    Timed,
    build_event_body,
    decode_remote_event,
    event_differs,
    has_system_marker,
    owner_doctor_id,
    resolve_zone,
)
from scheduling.models.records import (
    CalendarImportResult,
    DoctorRecord,
    ImportedEventOutcome,
    SyncAuditRecord,
    SyncFailure,
    TimeSlotRecord,
)
from scheduling.models.time_slot import SLOT_STATUS_AVAILABLE, utcnow
from scheduling.services.audit import RESOURCE_TIME_SLOT
from scheduling.services.overlap import first_conflict
from scheduling.services.time_utils import intervals_overlap, time_to_minutes, validate_window

logger = logging.getLogger(__name__)

OPERATION_SYNC = 'sync'
OPERATION_EXPORT = 'export'
OPERATION_IMPORT = 'import'
IMPORT_SOURCE = 'google_calendar'

IMPORT_IMPORTED = 'imported'
IMPORT_SKIPPED = 'skipped'
IMPORT_ERROR = 'error'

SKIP_MANAGED = 'managed by the scheduling system'
SKIP_LINKED = 'already linked to a slot'
SKIP_ALL_DAY = 'all-day event'
SKIP_MULTI_DAY = 'spans multiple days'
SKIP_OUTSIDE_WINDOW = 'starts outside the window'
SKIP_EMPTY = 'does not end after it starts'
SKIP_OVERLAP = 'overlaps an existing slot'


@dataclass
class SyncPlan:
    creates: list[TimeSlotRecord] = field(default_factory=list)
    recreates: list[TimeSlotRecord] = field(default_factory=list)
    updates: list[TimeSlotRecord] = field(default_factory=list)
    adoptions: list[tuple[TimeSlotRecord, RemoteEvent]] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)


@dataclass
class ApplyOutcome:
    event_ids: dict[str, str] = field(default_factory=dict)
    remote_created: int = 0
    remote_updated: int = 0
    remote_deleted: int = 0
    failures: list[SyncFailure] = field(default_factory=list)
    aborted_by: CredentialMissing | None = None


class CalendarSyncEngine:
    def __init__(self, store, directory, client_factory, recorder, locks, timezone: str | None = None, workers=None):
        self._store = store
        self._directory = directory
        self._client_factory = client_factory
        self._recorder = recorder
        self._locks = locks
        self._timezone = timezone or config.CALENDAR_TIMEZONE
        self._workers = max(2, workers or config.SYNC_WORKERS)

    def sync(self, doctor_id: str, start_date, end_date, actor_id: str | None = None) -> SyncAuditRecord:
        window_start, window_end = validate_window(start_date, end_date)
        zone = resolve_zone(self._timezone)
        doctor = self._resolve_doctor(doctor_id)

        with self._locks.hold(doctor_id, operation=OPERATION_SYNC):
            client = self._client_factory.create(doctor)
            slots, payloads = self._collect(client, doctor_id, window_start, window_end, zone)
            plan = self._partition(doctor_id, slots, payloads, zone)
            outcome = self._apply(client, doctor, plan)
            local_updated = self._store.set_external_event_ids(doctor_id, outcome.event_ids)

        return self._finish(OPERATION_SYNC, doctor_id, window_start, window_end, actor_id, outcome, local_updated)

    def export(self, doctor_id: str, start_date, end_date, actor_id: str | None = None) -> SyncAuditRecord:
        """Create remote events for slots that have none; never update or delete remote events."""
        window_start, window_end = validate_window(start_date, end_date)
        zone = resolve_zone(self._timezone)
        doctor = self._resolve_doctor(doctor_id)

        with self._locks.hold(doctor_id, operation=OPERATION_EXPORT):
            client = self._client_factory.create(doctor)
            slots = self._store.list_slots(doctor_id, window_start, window_end)
            plan = SyncPlan(creates=[slot for slot in slots if not slot.external_event_id])
            outcome = self._apply(client, doctor, plan)
            local_updated = self._store.set_external_event_ids(doctor_id, outcome.event_ids)

        return self._finish(OPERATION_EXPORT, doctor_id, window_start, window_end, actor_id, outcome, local_updated)

    def import_events(self, doctor_id: str, start_date, end_date, actor_id: str | None = None) -> CalendarImportResult:
        """Create available slots for the doctor's own timed remote events in the window.

        Events written by this system, events already linked to a slot,
        all-day and multi-day events, and events overlapping an existing slot
        are skipped. Imported slots keep the event id, so a later sync patches
        the event instead of creating a duplicate.
        """
        window_start, window_end = validate_window(start_date, end_date)
        zone = resolve_zone(self._timezone)
        doctor = self._resolve_doctor(doctor_id)

        with self._locks.hold(doctor_id, operation=OPERATION_IMPORT):
            client = self._client_factory.create(doctor)
            slots, payloads = self._collect(client, doctor_id, window_start, window_end, zone)
            event_ids = [payload.get('id') for payload in payloads if isinstance(payload, dict)]
            linked = self._store.referenced_event_ids(
                doctor_id,
                [event_id for event_id in event_ids if isinstance(event_id, str)],
            )
            candidates, details = self._plan_import(
                doctor_id,
                payloads,
                slots,
                linked,
                window_start,
                window_end,
                zone,
            )
            created = self._store.insert_slots(doctor_id, candidates, created_by=actor_id)

        slot_ids = {slot.external_event_id: slot.id for slot in created}
        details = [
            detail.model_copy(update={'slot_id': slot_ids.get(detail.event_id)})
            if detail.status == IMPORT_IMPORTED
            else detail
            for detail in details
        ]
        result = CalendarImportResult(
            doctor_id=doctor_id,
            window_start=window_start,
            window_end=window_end,
            imported=len(created),
            skipped=sum(1 for detail in details if detail.status == IMPORT_SKIPPED),
            errors=sum(1 for detail in details if detail.status == IMPORT_ERROR),
            slots=created,
            details=details,
            timestamp=utcnow(),
            actor_id=actor_id or doctor_id,
        )

        audit_details = {
            'source': IMPORT_SOURCE,
            'start_date': window_start.isoformat(),
            'end_date': window_end.isoformat(),
            'imported': result.imported,
            'skipped': result.skipped,
            'errors': result.errors,
        }
        self._recorder.record(result.actor_id, OPERATION_IMPORT, RESOURCE_TIME_SLOT, doctor_id, audit_details)
        logger.info('Calendar import finished.', extra={'doctor_id': doctor_id, **audit_details})
        return result

    @staticmethod
    def _plan_import(
        doctor_id: str,
        payloads: list[dict],
        slots: list[TimeSlotRecord],
        linked: set[str],
        window_start: date,
        window_end: date,
        zone,
    ) -> tuple[list[dict], list[ImportedEventOutcome]]:
        slots_by_day: dict[date, list[TimeSlotRecord]] = defaultdict(list)
        for slot in slots:
            slots_by_day[slot.date].append(slot)
        accepted_by_day: dict[date, list[tuple[int, int]]] = defaultdict(list)

        candidates: list[dict] = []
        details: list[ImportedEventOutcome] = []
        seen: set[str] = set()

        def skip(event_id, reason: str) -> None:
            details.append(ImportedEventOutcome(event_id=event_id, status=IMPORT_SKIPPED, reason=reason))

        for payload in payloads:
            try:
                event = decode_remote_event(payload, zone)
            except EventParseError as exc:
                event_id = payload.get('id') if isinstance(payload, dict) else None
                logger.warning(
                    'Remote event could not be imported.',
                    extra={'doctor_id': doctor_id, 'event_id': event_id, 'reason': exc.message},
                )
                details.append(
                    ImportedEventOutcome(
                        event_id=event_id if isinstance(event_id, str) else None,
                        status=IMPORT_ERROR,
                        reason=exc.message,
                    )
                )
                continue

            if event.event_id in seen:
                continue
            seen.add(event.event_id)

            if event.is_system:
                skip(event.event_id, SKIP_MANAGED)
                continue
            if event.event_id in linked:
                skip(event.event_id, SKIP_LINKED)
                continue
            if not isinstance(event.start, Timed) or not isinstance(event.end, Timed):
                skip(event.event_id, SKIP_ALL_DAY)
                continue

            day = event.start.at.date()
            if event.end.at.date() != day:
                skip(event.event_id, SKIP_MULTI_DAY)
                continue
            if not window_start <= day < window_end:
                skip(event.event_id, SKIP_OUTSIDE_WINDOW)
                continue

            start_time = event.start.at.strftime('%H:%M')
            end_time = event.end.at.strftime('%H:%M')
            start_minutes = time_to_minutes(start_time)
            end_minutes = time_to_minutes(end_time)
            if start_minutes >= end_minutes:
                skip(event.event_id, SKIP_EMPTY)
                continue

            if first_conflict(slots_by_day[day], start_minutes, end_minutes) is not None or any(
                intervals_overlap(start_minutes, end_minutes, start, end) for start, end in accepted_by_day[day]
            ):
                skip(event.event_id, SKIP_OVERLAP)
                continue

            accepted_by_day[day].append((start_minutes, end_minutes))
            candidates.append(
                {
                    'date': day,
                    'start_time': start_time,
                    'end_time': end_time,
                    'status': SLOT_STATUS_AVAILABLE,
                    'external_event_id': event.event_id,
                }
            )
            details.append(ImportedEventOutcome(event_id=event.event_id, status=IMPORT_IMPORTED))

        return candidates, details

    def _resolve_doctor(self, doctor_id: str) -> DoctorRecord:
        doctor = self._directory.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError(f'Doctor {doctor_id} not found.')
        if not doctor.has_credential:
            raise CredentialMissing(f'Doctor {doctor_id} has not connected a calendar.')
        return doctor

    def _collect(self, client, doctor_id: str, window_start: date, window_end: date, zone):
        time_min = datetime.combine(window_start, time.min, tzinfo=zone)
        time_max = datetime.combine(window_end, time.min, tzinfo=zone)

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix='calendar-sync') as executor:
            local_future = executor.submit(self._store.list_slots, doctor_id, window_start, window_end)
            remote_future = executor.submit(client.list_events, time_min, time_max)
            return local_future.result(), remote_future.result()

    def _partition(self, doctor_id: str, slots: list[TimeSlotRecord], payloads: list[dict], zone) -> SyncPlan:
        raw_by_id: dict[str, dict] = {}
        events: dict[str, RemoteEvent] = {}
        for payload in payloads:
            event_id = payload.get('id')
            if not isinstance(event_id, str) or not event_id:
                continue
            raw_by_id[event_id] = payload
            try:
                events[event_id] = decode_remote_event(payload, zone)
            except EventParseError as exc:
                logger.warning(
                    'Remote event could not be decoded.',
                    extra={'doctor_id': doctor_id, 'event_id': event_id, 'reason': exc.message},
                )

        plan = SyncPlan()
        for slot in slots:
            event_id = slot.external_event_id
            if not event_id:
                plan.creates.append(slot)
            elif event_id not in raw_by_id:
                plan.recreates.append(slot)
            elif event_id not in events or event_differs(slot, events[event_id]):
                # An undecodable event is overwritten with the slot's fields.
                plan.updates.append(slot)

        referenced_in_window = {slot.external_event_id for slot in slots if slot.external_event_id}
        orphans = [
            event_id
            for event_id, payload in raw_by_id.items()
            if event_id not in referenced_in_window
            and has_system_marker(payload)
            and owner_doctor_id(payload) in (None, doctor_id)
        ]
        referenced_elsewhere = self._store.referenced_event_ids(doctor_id, orphans)
        orphans = [event_id for event_id in orphans if event_id not in referenced_elsewhere]

        # An event whose id never reached its slot (crash after the remote create)
        # is linked back instead of being deleted and created again.
        pending = {slot.id: slot for slot in plan.creates}
        for event_id in list(orphans):
            event = events.get(event_id)
            if event is None or event.slot_id not in pending:
                continue
            plan.adoptions.append((pending.pop(event.slot_id), event))
            orphans.remove(event_id)
        plan.creates = [slot for slot in plan.creates if slot.id in pending]
        plan.deletes = orphans

        return plan

    def _apply(self, client, doctor: DoctorRecord, plan: SyncPlan) -> ApplyOutcome:
        outcome = ApplyOutcome()
        steps = (
            [(self._create_remote, slot, 'create') for slot in plan.creates]
            + [(self._create_remote, slot, 'recreate') for slot in plan.recreates]
            + [(self._adopt_remote, adoption, 'adopt') for adoption in plan.adoptions]
            + [(self._update_remote, slot, 'update') for slot in plan.updates]
            + [(self._delete_remote, event_id, 'delete') for event_id in plan.deletes]
        )

        for handler, target, operation in steps:
            try:
                handler(client, doctor, target, outcome)
            except CredentialMissing as exc:
                # Every later call would fail the same way; keep what already succeeded.
                outcome.aborted_by = exc
                outcome.failures.append(SyncFailure(operation=operation, message=exc.message))
                break
            except ExternalServiceError as exc:
                slot_id, event_id = self._describe(target)
                logger.warning(
                    'Remote calendar call failed; continuing with the rest of the run.',
                    extra={'doctor_id': doctor.id, 'operation': operation, 'slot_id': slot_id, 'event_id': event_id},
                )
                outcome.failures.append(
                    SyncFailure(operation=operation, message=exc.message, slot_id=slot_id, event_id=event_id)
                )

        return outcome

    @staticmethod
    def _describe(target) -> tuple[str | None, str | None]:
        if isinstance(target, TimeSlotRecord):
            return target.id, target.external_event_id
        if isinstance(target, tuple):
            slot, event = target
            return slot.id, event.event_id
        return None, target

    def _create_remote(self, client, doctor: DoctorRecord, slot: TimeSlotRecord, outcome: ApplyOutcome) -> None:
        created = client.insert_event(build_event_body(slot, self._timezone, doctor.display_name))
        event_id = created.get('id') if isinstance(created, dict) else None
        if not event_id:
            raise ExternalServiceError('Calendar service accepted an event but returned no id.')
        outcome.event_ids[slot.id] = event_id
        outcome.remote_created += 1

    def _adopt_remote(self, client, doctor: DoctorRecord, adoption, outcome: ApplyOutcome) -> None:
        slot, event = adoption
        outcome.event_ids[slot.id] = event.event_id
        if event_differs(slot, event):
            client.update_event(event.event_id, build_event_body(slot, self._timezone, doctor.display_name))
            outcome.remote_updated += 1

    def _update_remote(self, client, doctor: DoctorRecord, slot: TimeSlotRecord, outcome: ApplyOutcome) -> None:
        body = build_event_body(slot, self._timezone, doctor.display_name)
        try:
            client.update_event(slot.external_event_id, body)
        except RemoteEventNotFound:
            # Deleted remotely between listing and patching.
            self._create_remote(client, doctor, slot, outcome)
            return
        outcome.remote_updated += 1

    def _delete_remote(self, client, doctor: DoctorRecord, event_id: str, outcome: ApplyOutcome) -> None:
        if client.delete_event(event_id):
            outcome.remote_deleted += 1

    def _finish(
        self,
        operation: str,
        doctor_id: str,
        window_start: date,
        window_end: date,
        actor_id: str | None,
        outcome: ApplyOutcome,
        local_updated: int,
    ) -> SyncAuditRecord:
        record = SyncAuditRecord(
            doctor_id=doctor_id,
            operation=operation,
            window_start=window_start,
            window_end=window_end,
            local_updated=local_updated,
            remote_created=outcome.remote_created,
            remote_updated=outcome.remote_updated,
            remote_deleted=outcome.remote_deleted,
            timestamp=utcnow(),
            actor_id=actor_id or doctor_id,
            errors=outcome.failures,
        )
        self._recorder.record_sync(record)
        logger.info(
            'Calendar %s finished.',
            operation,
            extra={
                'doctor_id': doctor_id,
                'local_updated': record.local_updated,
                'remote_created': record.remote_created,
                'remote_updated': record.remote_updated,
                'remote_deleted': record.remote_deleted,
                'failures': len(record.errors),
            },
        )

        if outcome.aborted_by is not None:
            raise outcome.aborted_by
        return record
