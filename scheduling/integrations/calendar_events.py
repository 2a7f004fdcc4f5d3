"""Mapping between local time slots and remote calendar event payloads.

Remote ``start``/``end`` values come in exactly two shapes: ``{"dateTime": ...}``
for timed events and ``{"date": ...}`` for all-day events. Anything else is
rejected with ``EventParseError``.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from scheduling.core.errors import EventParseError
from scheduling.models.records import TimeSlotRecord
from scheduling.models.time_slot import SLOT_STATUS_AVAILABLE, SLOT_STATUSES
from scheduling.services.time_utils import time_to_minutes

MARKER_KEY = 'scheduling.source'
MARKER_VALUE = 'timeslot-sync'
SLOT_ID_KEY = 'scheduling.slotId'
SLOT_STATUS_KEY = 'scheduling.slotStatus'
DOCTOR_ID_KEY = 'scheduling.doctorId'

EVENT_DESCRIPTION = 'Managed by the clinic scheduling system. Changes made here are overwritten on the next sync.'
STATUS_SUMMARIES = {
    'available': 'Available',
    'booked': 'Booked appointment',
    'unavailable': 'Unavailable',
}
STATUS_COLORS = {
    'available': '2',
    'booked': '9',
    'unavailable': '8',
}


@dataclass(frozen=True)
class AllDay:
    day: date


@dataclass(frozen=True)
class Timed:
    at: datetime


EventTime = AllDay | Timed


@dataclass(frozen=True)
class SlotEventFields:
    """The fields a remote event mirrors from its slot."""

    date: date
    start_time: str
    end_time: str
    status: str


@dataclass(frozen=True)
class RemoteEvent:
    event_id: str
    start: EventTime
    end: EventTime
    is_system: bool
    slot_id: str | None
    slot_status: str | None

    def mirrored_fields(self) -> SlotEventFields | None:
        """Fields comparable with a slot, or ``None`` for all-day/multi-day events."""
        if not isinstance(self.start, Timed) or not isinstance(self.end, Timed):
            return None
        if self.start.at.date() != self.end.at.date():
            return None
        return SlotEventFields(
            date=self.start.at.date(),
            start_time=self.start.at.strftime('%H:%M'),
            end_time=self.end.at.strftime('%H:%M'),
            status=self.slot_status or '',
        )


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise EventParseError(f'Unknown time zone "{name}".') from exc


def decode_event_time(value, zone: ZoneInfo) -> EventTime:
    if not isinstance(value, dict):
        raise EventParseError('Event time must be an object.')

    has_date_time = 'dateTime' in value
    has_date = 'date' in value
    if has_date_time == has_date:
        raise EventParseError('Event time must have exactly one of "dateTime" or "date".')

    if has_date:
        raw = value['date']
        if not isinstance(raw, str):
            raise EventParseError('Event "date" must be a string.')
        try:
            return AllDay(date.fromisoformat(raw))
        except ValueError as exc:
            raise EventParseError(f'Invalid event date "{raw}".') from exc

    raw = value['dateTime']
    if not isinstance(raw, str) or not raw.strip():
        raise EventParseError('Event "dateTime" must be a non-empty string.')
    try:
        parsed = datetime.fromisoformat(raw.strip().replace('Z', '+00:00'))
    except ValueError as exc:
        raise EventParseError(f'Invalid event dateTime "{raw}".') from exc

    if parsed.tzinfo is None:
        event_zone = resolve_zone(value['timeZone']) if isinstance(value.get('timeZone'), str) else zone
        parsed = parsed.replace(tzinfo=event_zone)
    return Timed(parsed.astimezone(zone))


def private_properties(payload: dict) -> dict:
    extended = payload.get('extendedProperties')
    if not isinstance(extended, dict):
        return {}
    private = extended.get('private')
    return private if isinstance(private, dict) else {}


def has_system_marker(payload: dict) -> bool:
    return private_properties(payload).get(MARKER_KEY) == MARKER_VALUE


def owner_doctor_id(payload: dict) -> str | None:
    owner = private_properties(payload).get(DOCTOR_ID_KEY)
    return owner if isinstance(owner, str) and owner else None


def decode_remote_event(payload, zone: ZoneInfo) -> RemoteEvent:
    if not isinstance(payload, dict):
        raise EventParseError('Event payload must be an object.')

    event_id = payload.get('id')
    if not isinstance(event_id, str) or not event_id:
        raise EventParseError('Event payload has no id.')

    properties = private_properties(payload)
    slot_status = properties.get(SLOT_STATUS_KEY)
    return RemoteEvent(
        event_id=event_id,
        start=decode_event_time(payload.get('start'), zone),
        end=decode_event_time(payload.get('end'), zone),
        is_system=properties.get(MARKER_KEY) == MARKER_VALUE,
        slot_id=properties.get(SLOT_ID_KEY),
        slot_status=slot_status if slot_status in SLOT_STATUSES else None,
    )


def slot_fields(slot: TimeSlotRecord) -> SlotEventFields:
    return SlotEventFields(
        date=slot.date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        status=slot.status,
    )


def event_differs(slot: TimeSlotRecord, event: RemoteEvent) -> bool:
    return event.mirrored_fields() != slot_fields(slot)


def _slot_datetime(day: date, value: str, zone: ZoneInfo) -> datetime:
    minutes = time_to_minutes(value)
    return datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=zone)


def build_event_body(slot: TimeSlotRecord, zone_name: str, doctor_name: str | None = None) -> dict:
    """Event body mirroring ``slot``; carries the system marker."""
    zone = resolve_zone(zone_name)
    start = _slot_datetime(slot.date, slot.start_time, zone)
    end = _slot_datetime(slot.date, slot.end_time, zone)

    summary = STATUS_SUMMARIES.get(slot.status, slot.status.title())
    if doctor_name:
        summary = f'{summary}: {doctor_name}'

    return {
        'summary': summary,
        'description': EVENT_DESCRIPTION,
        'start': {'dateTime': start.isoformat(), 'timeZone': zone_name},
        'end': {'dateTime': end.isoformat(), 'timeZone': zone_name},
        'colorId': STATUS_COLORS.get(slot.status, STATUS_COLORS[SLOT_STATUS_AVAILABLE]),
        # Open slots must not show the doctor as busy.
        'transparency': 'transparent' if slot.status == SLOT_STATUS_AVAILABLE else 'opaque',
        'extendedProperties': {
            'private': {
                MARKER_KEY: MARKER_VALUE,
                SLOT_ID_KEY: slot.id,
                DOCTOR_ID_KEY: slot.doctor_id,
                SLOT_STATUS_KEY: slot.status,
            }
        },
    }
