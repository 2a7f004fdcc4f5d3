"""Fixed-grid and recurring-template slot generation."""

import logging
from collections import defaultdict
from datetime import date
from typing import Callable, Iterable

from scheduling.core import config
from scheduling.core.errors import NotFoundError, ValidationError
from scheduling.integrations.calendar_events import resolve_zone
from scheduling.models.records import (
    GenerationResult,
    SkippedCandidate,
    TimeBlock,
    TimeSlotRecord,
    UnavailabilityPeriodRecord,
    WorkingHours,
)
from scheduling.models.time_slot import SLOT_STATUS_AVAILABLE
from scheduling.services.audit import RESOURCE_TIME_SLOT
from scheduling.services.overlap import first_conflict
from scheduling.services.time_utils import (
    intervals_overlap,
    iterate_days,
    minutes_to_time,
    wall_clock_exists,
    validate_interval,
    validate_window,
)

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')

SKIP_BOOKED_CONFLICT = 'overlaps booked slot'
SKIP_BLOCK_CONFLICT = 'overlaps another time block'
SKIP_MISSING_TIME = 'time skipped by a clock change'

DayPlan = Callable[[date], list[tuple[int, int]]]


def _coerce_block(block) -> tuple[int, int]:
    if isinstance(block, (WorkingHours, TimeBlock)):
        return validate_interval(block.start_time, block.end_time)
    if isinstance(block, dict):
        return validate_interval(
            block.get('start_time') or block.get('startTime'),
            block.get('end_time') or block.get('endTime'),
        )
    if isinstance(block, (tuple, list)) and len(block) == 2:
        return validate_interval(block[0], block[1])
    raise ValidationError('Time blocks need a start_time and an end_time.')


def _coerce_weekday(value) -> int:
    if isinstance(value, str):
        normalized = value.strip().lower()
        for index, name in enumerate(WEEKDAY_NAMES):
            if normalized in (name, name[:3]):
                return index
        raise ValidationError(f'Unknown weekday "{value}".')
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
        raise ValidationError('Recurring days must be weekday numbers from 0 (Monday) to 6 (Sunday).')
    return value


def grid_intervals(start_minutes: int, end_minutes: int, duration_minutes: int) -> list[tuple[int, int]]:
    intervals = []
    current = start_minutes
    while current + duration_minutes <= end_minutes:
        intervals.append((current, current + duration_minutes))
        current += duration_minutes
    return intervals


class SlotGenerator:
    def __init__(self, store, directory, recorder, locks, timezone: str | None = None):
        self._store = store
        self._directory = directory
        self._recorder = recorder
        self._locks = locks
        self._timezone = timezone or config.CALENDAR_TIMEZONE

    def generate_standard(
        self,
        doctor_id: str,
        start_date,
        end_date,
        slot_duration_minutes: int,
        working_hours,
        actor_id: str | None = None,
    ) -> GenerationResult:
        if isinstance(slot_duration_minutes, bool) or not isinstance(slot_duration_minutes, int):
            raise ValidationError('Slot duration must be a whole number of minutes.')
        if slot_duration_minutes <= 0:
            raise ValidationError('Slot duration must be greater than zero.')

        day_start, day_end = _coerce_block(working_hours)
        intervals = grid_intervals(day_start, day_end, slot_duration_minutes)

        return self._generate(
            doctor_id,
            start_date,
            end_date,
            lambda _day: intervals,
            actor_id,
            mode='standard',
            extra={'slot_duration_minutes': slot_duration_minutes},
        )

    def generate_recurring(
        self,
        doctor_id: str,
        start_date,
        end_date,
        recurring_days: Iterable,
        time_blocks: Iterable,
        actor_id: str | None = None,
    ) -> GenerationResult:
        weekdays = {_coerce_weekday(day) for day in recurring_days or []}
        if not weekdays:
            raise ValidationError('At least one recurring day is required.')

        blocks = sorted(_coerce_block(block) for block in time_blocks or [])
        if not blocks:
            raise ValidationError('At least one time block is required.')

        return self._generate(
            doctor_id,
            start_date,
            end_date,
            lambda day: blocks if day.weekday() in weekdays else [],
            actor_id,
            mode='recurring',
            extra={'recurring_days': sorted(weekdays)},
        )

    def _generate(
        self,
        doctor_id: str,
        start_date,
        end_date,
        plan: DayPlan,
        actor_id: str | None,
        mode: str,
        extra: dict,
    ) -> GenerationResult:
        window_start, window_end = validate_window(start_date, end_date)
        zone = resolve_zone(self._timezone)

        if self._directory.get_doctor(doctor_id) is None:
            raise NotFoundError(f'Doctor {doctor_id} not found.')

        skipped: list[SkippedCandidate] = []

        with self._locks.hold(doctor_id, operation=f'generate_{mode}'):
            periods = self._store.list_unavailability(doctor_id, window_start, window_end)

            def build_candidates(retained: list[TimeSlotRecord]) -> list[dict]:
                skipped.clear()
                return self._plan_candidates(window_start, window_end, plan, retained, periods, skipped, zone)

            retained, created, deleted_count = self._store.replace_unbooked(
                doctor_id,
                window_start,
                window_end,
                build_candidates,
                created_by=actor_id,
            )

        result = GenerationResult(
            doctor_id=doctor_id,
            created=created,
            retained=retained,
            skipped=skipped,
            deleted_count=deleted_count,
        )

        details = {
            'mode': mode,
            'start_date': window_start.isoformat(),
            'end_date': window_end.isoformat(),
            'slots_generated': len(created),
            'slots_deleted': deleted_count,
            'slots_retained': len(retained),
            'slots_skipped': len(skipped),
            **extra,
        }
        self._recorder.record(actor_id or doctor_id, 'generate', RESOURCE_TIME_SLOT, doctor_id, details)
        logger.info('Generated time slots.', extra={'doctor_id': doctor_id, **details})

        return result

    @staticmethod
    def _plan_candidates(
        window_start: date,
        window_end: date,
        plan: DayPlan,
        retained: list[TimeSlotRecord],
        periods: list[UnavailabilityPeriodRecord],
        skipped: list[SkippedCandidate],
        zone,
    ) -> list[dict]:
        retained_by_day: dict[date, list[TimeSlotRecord]] = defaultdict(list)
        for slot in retained:
            retained_by_day[slot.date].append(slot)

        candidates: list[dict] = []
        for day in iterate_days(window_start, window_end):
            if any(period.covers(day) for period in periods):
                continue

            accepted: list[tuple[int, int]] = []
            for start_minutes, end_minutes in plan(day):
                start_time = minutes_to_time(start_minutes)
                end_time = minutes_to_time(end_minutes)

                if not (wall_clock_exists(day, start_minutes, zone) and wall_clock_exists(day, end_minutes, zone)):
                    skipped.append(
                        SkippedCandidate(date=day, start_time=start_time, end_time=end_time, reason=SKIP_MISSING_TIME)
                    )
                    continue

                conflict = first_conflict(retained_by_day[day], start_minutes, end_minutes)
                if conflict is not None:
                    skipped.append(
                        SkippedCandidate(
                            date=day,
                            start_time=start_time,
                            end_time=end_time,
                            conflicting_slot_id=conflict.id,
                            reason=SKIP_BOOKED_CONFLICT,
                        )
                    )
                    continue

                if any(intervals_overlap(start_minutes, end_minutes, s, e) for s, e in accepted):
                    skipped.append(
                        SkippedCandidate(date=day, start_time=start_time, end_time=end_time, reason=SKIP_BLOCK_CONFLICT)
                    )
                    continue

                accepted.append((start_minutes, end_minutes))
                candidates.append(
                    {
                        'date': day,
                        'start_time': start_time,
                        'end_time': end_time,
                        'status': SLOT_STATUS_AVAILABLE,
                    }
                )

        return candidates
