"""Time-string parsing shared by overlap detection and slot generation."""

import re
from datetime import date, datetime, time, timedelta, timezone

from scheduling.core import config
from scheduling.core.errors import ValidationError

MINUTES_PER_DAY = 24 * 60
_TIME_PATTERN = re.compile(r'^(\d{1,2}):(\d{1,2})$', re.ASCII)


def time_to_minutes(value: str) -> int:
    """Convert ``HH:MM`` to minutes since midnight.

    Rejects empty strings, anything that is not exactly two colon-separated
    integers, hours outside 0-23 and minutes outside 0-59.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('Time is required in HH:MM format.')

    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        raise ValidationError(f'Invalid time "{value}"; expected HH:MM.')

    hours, minutes = int(match.group(1)), int(match.group(2))
    if not 0 <= hours <= 23 or not 0 <= minutes <= 59:
        raise ValidationError(f'Time "{value}" is out of range.')

    return hours * 60 + minutes


def minutes_to_time(minutes: int) -> str:
    if isinstance(minutes, bool) or not isinstance(minutes, int) or not 0 <= minutes < MINUTES_PER_DAY:
        raise ValidationError(f'Minute offset {minutes!r} is outside a single day.')
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def normalize_time(value: str) -> str:
    return minutes_to_time(time_to_minutes(value))


def validate_interval(start_time: str, end_time: str) -> tuple[int, int]:
    start_minutes = time_to_minutes(start_time)
    end_minutes = time_to_minutes(end_time)
    if start_minutes >= end_minutes:
        raise ValidationError('End time must be after start time.')
    return start_minutes, end_minutes


def intervals_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open overlap test; touching boundaries do not overlap."""
    return start_a < end_b and start_b < end_a


def wall_clock_exists(day: date, minutes: int, zone) -> bool:
    """False for a local time skipped by a daylight-saving jump in ``zone``."""
    local = datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=zone)
    round_trip = local.astimezone(timezone.utc).astimezone(zone)
    return round_trip.replace(tzinfo=None) == local.replace(tzinfo=None)


def ensure_wall_clock_exists(day: date, value: str, zone) -> None:
    if not wall_clock_exists(day, time_to_minutes(value), zone):
        raise ValidationError(f'Time "{value}" does not exist on {day.isoformat()} in {zone}; clocks skip it.')


def parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('Date is required in YYYY-MM-DD format.')
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f'Invalid date "{value}"; expected YYYY-MM-DD.') from exc


def validate_window(start, end) -> tuple[date, date]:
    """Validate a half-open ``[start, end)`` window of calendar days."""
    if start is None or end is None:
        raise ValidationError('Both window start and end dates are required.')

    start_date = parse_date(start)
    end_date = parse_date(end)
    if start_date >= end_date:
        raise ValidationError('Window end must be after window start.')
    if (end_date - start_date).days > config.MAX_WINDOW_DAYS:
        raise ValidationError(f'Window cannot exceed {config.MAX_WINDOW_DAYS} days.')

    return start_date, end_date


def default_window(start, end, days: int, today: date | None = None) -> tuple[date, date]:
    start_date = parse_date(start) if start is not None else (today or date.today())
    end_date = parse_date(end) if end is not None else start_date + timedelta(days=days)
    return validate_window(start_date, end_date)


def iterate_days(start_date: date, end_date: date):
    current = start_date
    while current < end_date:
        yield current
        current += timedelta(days=1)
