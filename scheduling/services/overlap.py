"""Conflict detection between a candidate interval and a doctor's slots."""

from datetime import date
from typing import Iterable

from scheduling.models.records import TimeSlotRecord
from scheduling.services.time_utils import intervals_overlap, time_to_minutes, validate_interval


def first_conflict(
    slots: Iterable[TimeSlotRecord],
    start_minutes: int,
    end_minutes: int,
    exclude_slot_id: str | None = None,
) -> TimeSlotRecord | None:
    """Return the first slot in ``slots`` overlapping ``[start_minutes, end_minutes)``."""
    for slot in slots:
        if exclude_slot_id is not None and slot.id == exclude_slot_id:
            continue
        if intervals_overlap(
            start_minutes,
            end_minutes,
            time_to_minutes(slot.start_time),
            time_to_minutes(slot.end_time),
        ):
            return slot
    return None


class OverlapDetector:
    def __init__(self, store):
        self._store = store

    def find_conflict(
        self,
        doctor_id: str,
        day: date,
        start_time: str,
        end_time: str,
        exclude_slot_id: str | None = None,
    ) -> TimeSlotRecord | None:
        start_minutes, end_minutes = validate_interval(start_time, end_time)
        slots_on_date = self._store.slots_on_date(doctor_id, day, exclude_slot_id=exclude_slot_id)
        return first_conflict(slots_on_date, start_minutes, end_minutes, exclude_slot_id)
