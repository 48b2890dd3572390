"""Recurrence expansion for reminders.

Turns a reminder's recurrence rule into the concrete UTC instants at which it
fires inside a half-open window [window_start, window_end). The rule itself is
unbounded; an expansion never is.

Calendar stepping happens on wall-clock fields in the reminder's timezone and
is converted to UTC at the end, so a 09:00 daily reminder stays at 09:00 local
time on both sides of a DST change.
"""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

from timezone_utils import (
    LocalParts,
    as_utc,
    build_localized_metadata,
    convert_local_parts_to_utc,
    ensure_timezone,
    parse_date_input_to_utc,
    to_local_parts,
)
from logger_config import setup_logger

logger = setup_logger(__name__, 'scheduler.log')

MIN_INTERVAL = 1
MAX_INTERVAL = 365

# Upper bound on the size of a single expansion, whatever the window.
MAX_OCCURRENCES = 400


class Cadence(enum.Enum):
    """Recurrence families"""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Recurrence:
    """Recurrence rule of a reminder.

    days_of_week uses 0 for Sunday through 6 for Saturday and only matters for
    weekly cadence. anchor_date defaults to the reminder's scheduled_at.
    """

    cadence: Cadence = Cadence.NONE
    interval: int = 1
    days_of_week: Tuple[int, ...] = ()
    custom_rule: str = ""
    anchor_date: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping) -> "Recurrence":
        return cls(
            cadence=parse_cadence(data.get("cadence")),
            interval=data.get("interval") or 1,
            days_of_week=tuple(data.get("days_of_week") or ()),
            custom_rule=data.get("custom_rule") or "",
            anchor_date=data.get("anchor_date"),
        )

    @property
    def is_recurring(self) -> bool:
        return self.cadence is not Cadence.NONE


@dataclass(frozen=True)
class Occurrence:
    """One firing instant of a reminder."""

    reminder_id: str
    occurrence_date: datetime
    local: dict = field(default_factory=dict, compare=False, hash=False)


CustomHandler = Callable[[object, Recurrence, datetime, datetime], Iterable[datetime]]

_custom_handler: Optional[CustomHandler] = None


def register_custom_handler(handler: Optional[CustomHandler]) -> None:
    """Install (or clear with None) the expansion used for the custom cadence.

    The handler receives (reminder, recurrence, window_start, window_end) and
    returns UTC datetimes; its output is clipped, sorted and deduplicated like
    any other cadence.
    """
    global _custom_handler
    _custom_handler = handler


def parse_cadence(value) -> Cadence:
    if isinstance(value, Cadence):
        return value
    if not value:
        return Cadence.NONE
    try:
        return Cadence(str(value).lower())
    except ValueError:
        logger.warning(f"Unknown cadence {value!r}, treating reminder as non-recurring")
        return Cadence.NONE


def recurrence_from_reminder(reminder) -> Recurrence:
    rule = getattr(reminder, "recurrence", None)
    if rule is None:
        return Recurrence()
    if isinstance(rule, Recurrence):
        return rule
    if isinstance(rule, Mapping):
        return Recurrence.from_mapping(rule)
    raise TypeError(f"Unsupported recurrence value: {type(rule).__name__}")


def _clamp_interval(interval) -> int:
    return min(MAX_INTERVAL, max(MIN_INTERVAL, int(interval or 1)))


def _weekday(day: date) -> int:
    """Weekday with Sunday as 0."""
    return day.isoweekday() % 7


def _at(day: date, clock: LocalParts, time_zone: str) -> datetime:
    return convert_local_parts_to_utc(
        LocalParts(day.year, day.month, day.day, clock.hour, clock.minute, clock.second, clock.microsecond),
        time_zone,
    )


def _expand_daily(anchor: datetime, interval: int, time_zone: str,
                  window_start: datetime, window_end: datetime) -> List[datetime]:
    clock = to_local_parts(anchor, time_zone)
    anchor_day = date(clock.year, clock.month, clock.day)

    # Start one local day before the window; nothing earlier can land inside it.
    start = to_local_parts(window_start, time_zone)
    days_before = (date(start.year, start.month, start.day) - anchor_day).days - 1
    step = max(0, -(-days_before // interval))

    results = []
    while len(results) < MAX_OCCURRENCES:
        candidate = _at(anchor_day + timedelta(days=step * interval), clock, time_zone)
        if candidate >= window_end:
            break
        if candidate >= window_start:
            results.append(candidate)
        step += 1
    return results


def _expand_weekly(anchor: datetime, interval: int, days_of_week: Tuple[int, ...], time_zone: str,
                   window_start: datetime, window_end: datetime) -> List[datetime]:
    clock = to_local_parts(anchor, time_zone)
    anchor_day = date(clock.year, clock.month, clock.day)
    weekdays = sorted({d for d in days_of_week if 0 <= d <= 6}) or [_weekday(anchor_day)]

    first_week = anchor_day - timedelta(days=_weekday(anchor_day))
    start = to_local_parts(window_start, time_zone)
    days_before = (date(start.year, start.month, start.day) - timedelta(days=1) - first_week).days
    week = max(0, days_before // 7 // interval)

    results = []
    while len(results) < MAX_OCCURRENCES:
        week_start = first_week + timedelta(weeks=week * interval)
        for weekday in weekdays:
            day = week_start + timedelta(days=weekday)
            if day < anchor_day:
                continue
            candidate = _at(day, clock, time_zone)
            if candidate >= window_end:
                return results
            if candidate >= window_start:
                results.append(candidate)
        week += 1
    return results


def expand_occurrences(
    reminder,
    window_start: datetime,
    window_end: datetime,
    custom_handler: Optional[CustomHandler] = None,
) -> List[Occurrence]:
    """Expand a reminder into its occurrences in [window_start, window_end).

    Deterministic for a given reminder and window; the result is strictly
    ascending, free of duplicates and never longer than MAX_OCCURRENCES.

    Args:
        reminder: Object exposing id, scheduled_at, timezone and recurrence
            (a Recurrence, a mapping, or None for a one-off reminder)
        window_start: Inclusive lower bound (naive values are UTC)
        window_end: Exclusive upper bound
        custom_handler: Expansion for the custom cadence; falls back to the
            registered handler, then to one-off behaviour

    Returns:
        List of Occurrence in chronological order
    """
    window_start, window_end = as_utc(window_start), as_utc(window_end)
    if window_end <= window_start:
        return []

    rule = recurrence_from_reminder(reminder)
    time_zone = ensure_timezone(getattr(reminder, "timezone", None))
    scheduled_at = getattr(reminder, "scheduled_at", None)
    anchor_value = rule.anchor_date or scheduled_at
    if anchor_value is None:
        return []
    anchor = parse_date_input_to_utc(anchor_value, time_zone)
    single = parse_date_input_to_utc(scheduled_at, time_zone) if scheduled_at is not None else anchor
    interval = _clamp_interval(rule.interval)

    if rule.cadence is Cadence.DAILY:
        candidates = _expand_daily(anchor, interval, time_zone, window_start, window_end)
    elif rule.cadence is Cadence.WEEKLY:
        candidates = _expand_weekly(anchor, interval, rule.days_of_week, time_zone, window_start, window_end)
    elif rule.cadence is Cadence.CUSTOM and (custom_handler or _custom_handler):
        handler = custom_handler or _custom_handler
        candidates = [as_utc(c) for c in handler(reminder, rule, window_start, window_end)]
    else:
        candidates = [single]

    instants = sorted({c for c in candidates if window_start <= c < window_end})[:MAX_OCCURRENCES]
    reminder_id = str(getattr(reminder, "id", ""))
    return [
        Occurrence(reminder_id, instant, build_localized_metadata(instant, time_zone))
        for instant in instants
    ]
