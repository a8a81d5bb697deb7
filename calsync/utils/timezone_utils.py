"""
Timezone Utilities

UTC is the storage discipline: every instant the core persists is an aware
UTC datetime. Wall-clock values only exist at the edges (timeslot dates and
HH:MM strings, iCalendar TZID values) and are converted through here.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Optional, Tuple
import logging

from calsync.exceptions import ValidationError

logger = logging.getLogger(__name__)

UTC = timezone.utc


def get_zone(timezone_str: Optional[str]) -> ZoneInfo:
    """
    Resolve an IANA zone name.

    Raises:
        ValidationError: If the zone is unknown
    """
    try:
        return ZoneInfo(timezone_str or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError("timezone", f"Unknown timezone: {timezone_str}") from e


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime, field: str = "datetime") -> datetime:
    """
    Normalize an aware datetime to UTC.

    Raises:
        ValidationError: If the datetime is naive
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValidationError(field, f"{field} must be timezone-aware")
    return dt.astimezone(UTC)


def utc_to_local(utc_dt: datetime, timezone_str: str) -> datetime:
    """
    Convert a UTC instant to wall-clock time in a zone.

    Args:
        utc_dt: Aware datetime
        timezone_str: Target timezone string

    Returns:
        Aware datetime in the target zone
    """
    return ensure_utc(utc_dt).astimezone(get_zone(timezone_str))


def resolve_local(naive: datetime, timezone_str: str) -> Tuple[datetime, str]:
    """
    Attach a zone to a wall-clock datetime, resolving DST edge cases.

    A nonexistent local time (spring-forward gap) advances by the size of
    the gap. An ambiguous local time (fall-back overlap) resolves to its
    first occurrence. Both follow from fold=0 under PEP 495.

    Returns:
        (aware UTC datetime, resolution) where resolution is one of
        "exact", "gap" or "ambiguous"
    """
    zone = get_zone(timezone_str)
    first = naive.replace(tzinfo=zone, fold=0)
    second = naive.replace(tzinfo=zone, fold=1)
    utc_dt = first.astimezone(UTC)

    if first.utcoffset() == second.utcoffset():
        return utc_dt, "exact"

    round_trip = utc_dt.astimezone(zone).replace(tzinfo=None)
    if round_trip != naive:
        logger.debug(f"Local time {naive} does not exist in {timezone_str}; advanced to {round_trip}")
        return utc_dt, "gap"
    return utc_dt, "ambiguous"


def local_to_utc(local_dt: datetime, timezone_str: str) -> datetime:
    """
    Convert wall-clock time in a zone to a UTC instant.

    Naive input is interpreted in ``timezone_str``; aware input is simply
    normalized.
    """
    if local_dt.tzinfo is not None:
        return ensure_utc(local_dt)
    utc_dt, _ = resolve_local(local_dt, timezone_str)
    return utc_dt


def combine_local(day: date, wall: time, timezone_str: str) -> datetime:
    """Combine a local date and time-of-day into a UTC instant."""
    return local_to_utc(datetime.combine(day, wall), timezone_str)


def parse_hhmm(value: str, field: str = "time") -> time:
    """
    Parse a HH:MM string.

    Raises:
        ValidationError: If the value is not a valid 24h HH:MM time
    """
    try:
        hours, minutes = value.split(":")
        if len(hours) != 2 or len(minutes) != 2:
            raise ValueError(value)
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError) as e:
        raise ValidationError(field, f"{field} must be HH:MM, got {value!r}") from e


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start) / timedelta(minutes=1))
