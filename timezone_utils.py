"""Timezone helpers for the Reminder Scheduling Service.

Every conversion between a wall-clock time in a reminder's timezone and an
absolute UTC instant goes through this module, both when occurrences are
scheduled and when jobs fire. All returned instants are timezone-aware UTC.

Offsets are expressed as local minus UTC, in minutes (New York in winter is
-300, Berlin in summer is +120).
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Mapping, NamedTuple, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from exceptions import DateParseError
from logger_config import setup_logger

logger = setup_logger(__name__, 'scheduler.log')

DEFAULT_TIMEZONE = "UTC"

DATE_ONLY_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class LocalParts(NamedTuple):
    """Wall-clock fields of an instant in some timezone (month is 1-based)."""

    year: int
    month: int
    day: int
    hour: int = 0
    minute: int = 0
    second: int = 0
    microsecond: int = 0


ZoneLike = Union[str, ZoneInfo, None]
PartsLike = Union[LocalParts, Mapping[str, int]]


def ensure_timezone(time_zone: Optional[str]) -> str:
    """Return the zone name if it is a known IANA identifier, otherwise "UTC".

    Never raises. Untrusted timezone input must pass through here before it is
    used for any date arithmetic.
    """
    if not time_zone:
        return DEFAULT_TIMEZONE
    try:
        ZoneInfo(time_zone)
        return time_zone
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        logger.warning(f"Invalid timezone {time_zone!r}, falling back to UTC")
        return DEFAULT_TIMEZONE


def _zone(time_zone: ZoneLike) -> ZoneInfo:
    if isinstance(time_zone, ZoneInfo):
        return time_zone
    return ZoneInfo(ensure_timezone(time_zone))


def as_utc(instant: datetime) -> datetime:
    """Normalise a datetime to aware UTC; naive values are taken as UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def _offset(zone: ZoneInfo, instant: datetime) -> timedelta:
    instant = as_utc(instant)
    wall_clock = instant.astimezone(zone).replace(tzinfo=timezone.utc)
    return wall_clock - instant


def get_timezone_offset(time_zone: ZoneLike, instant: Optional[datetime] = None) -> int:
    """Offset in minutes (local minus UTC) of a timezone at a given instant.

    Computed for the instant itself since offsets change across DST boundaries.
    """
    if instant is None:
        instant = datetime.now(timezone.utc)
    return round(_offset(_zone(time_zone), instant).total_seconds() / 60)


def to_local_parts(instant: datetime, time_zone: ZoneLike) -> LocalParts:
    """Wall-clock fields of an absolute instant as seen in a timezone."""
    local = as_utc(instant).astimezone(_zone(time_zone))
    return LocalParts(
        local.year, local.month, local.day,
        local.hour, local.minute, local.second, local.microsecond,
    )


def _coerce_parts(parts: PartsLike) -> LocalParts:
    if isinstance(parts, LocalParts):
        return parts
    values = {field: int(parts[field]) for field in LocalParts._fields if field in parts}
    return LocalParts(**values)


def convert_local_parts_to_utc(parts: PartsLike, time_zone: ZoneLike = DEFAULT_TIMEZONE) -> datetime:
    """Interpret wall-clock fields in a timezone and return the UTC instant.

    The fields are first read as if they were UTC, and the zone's offset at
    that naive guess is subtracted. When the offset at the result differs from
    the offset at the guess (the guess and the answer straddle a transition),
    the second offset is used if it reproduces the requested wall clock.

    Wall-clock times inside a DST gap do not exist; for those the first-pass
    result is returned, which lands after the gap.

    Args:
        parts: LocalParts or a mapping with year, month, day and optional
            hour, minute, second, microsecond
        time_zone: IANA timezone name (validated through ensure_timezone)

    Returns:
        Timezone-aware UTC datetime
    """
    local = _coerce_parts(parts)
    zone = _zone(time_zone)

    naive = datetime(*local, tzinfo=timezone.utc)
    guess = naive - _offset(zone, naive)

    corrected = naive - _offset(zone, guess)
    if corrected != guess and to_local_parts(corrected, zone) == local:
        return corrected
    return guess


def is_date_only_string(value) -> bool:
    """True if value is exactly YYYY-MM-DD (surrounding whitespace ignored)."""
    if not isinstance(value, str):
        return False
    return bool(DATE_ONLY_PATTERN.match(value.strip()))


def _date_to_utc(day: date, time_zone: ZoneLike, override_parts: Optional[Mapping[str, int]]) -> datetime:
    parts = {"year": day.year, "month": day.month, "day": day.day}
    if override_parts:
        parts.update(override_parts)
    return convert_local_parts_to_utc(parts, time_zone)


def parse_date_input_to_utc(
    value,
    time_zone: ZoneLike = DEFAULT_TIMEZONE,
    override_parts: Optional[Mapping[str, int]] = None,
) -> datetime:
    """Convert arbitrary date input into an aware UTC datetime.

    Accepted input:
    - datetime: returned as the same instant in UTC (naive values are UTC)
    - date / "YYYY-MM-DD": local midnight in time_zone, or the time of day in
      override_parts (hour, minute, second, microsecond)
    - int / float: POSIX timestamp in seconds, not JavaScript-style
      milliseconds; divide millisecond epochs by 1000 before passing them
    - any other ISO-8601 string: "2025-10-26T15:00:00Z", "...+05:30"; strings
      without an offset are UTC

    Raises:
        DateParseError: If the value is missing or cannot be interpreted
    """
    if value is None:
        raise DateParseError("Date value is required.")

    if isinstance(value, datetime):
        return as_utc(value)

    if isinstance(value, date):
        return _date_to_utc(value, time_zone, override_parts)

    if isinstance(value, bool):
        raise DateParseError(f"Unsupported date input type: {type(value).__name__}")

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise DateParseError(f"Invalid timestamp provided: {value}") from e

    if isinstance(value, str):
        text = value.strip()
        try:
            if is_date_only_string(text):
                return _date_to_utc(date.fromisoformat(text), time_zone, override_parts)
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError as e:
            raise DateParseError(f"Unable to parse date string: {value!r}") from e
        return as_utc(parsed)

    raise DateParseError(f"Unsupported date input type: {type(value).__name__}")


def get_start_of_day_utc(time_zone: ZoneLike, reference: Optional[datetime] = None) -> datetime:
    """UTC instant of local midnight, in time_zone, of the day containing reference."""
    if reference is None:
        reference = datetime.now(timezone.utc)
    local = to_local_parts(reference, time_zone)
    return convert_local_parts_to_utc(LocalParts(local.year, local.month, local.day), time_zone)


def get_end_of_day_utc(time_zone: ZoneLike, reference: Optional[datetime] = None) -> datetime:
    """UTC instant of 23:59:59.999999 local time on the day containing reference."""
    if reference is None:
        reference = datetime.now(timezone.utc)
    local = to_local_parts(reference, time_zone)
    return convert_local_parts_to_utc(
        LocalParts(local.year, local.month, local.day, 23, 59, 59, 999999),
        time_zone,
    )


def build_localized_metadata(instant: datetime, time_zone: ZoneLike) -> dict:
    """Describe an instant in a timezone for notifications and API previews."""
    zone_name = ensure_timezone(time_zone) if not isinstance(time_zone, ZoneInfo) else time_zone.key
    local = as_utc(instant).astimezone(_zone(zone_name))
    return {
        "local_timezone": zone_name,
        "local_date": local.strftime("%Y-%m-%d"),
        "local_time": local.strftime("%H:%M"),
        "local_datetime_iso": local.strftime("%Y-%m-%dT%H:%M:%S"),
        "local_display": f"{local.strftime('%b')} {local.day}, {local.year}, {local.strftime('%I:%M %p')}",
    }
