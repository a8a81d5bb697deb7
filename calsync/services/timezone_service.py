"""
Timezone Service

UTC-canonical conversions, DST-safe recurrence expansion and zone
auto-detection with confidence scores.

Recurrences are expanded in local wall-clock time (so a 09:00 weekly
meeting stays at 09:00 across DST changes) and only then mapped to UTC:
- a nonexistent local time (spring-forward gap) advances by the gap
- an ambiguous local time (fall-back overlap) takes its first occurrence
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rrulestr

from calsync import config
from calsync.exceptions import ValidationError
from calsync.utils.timezone_utils import ensure_utc, resolve_local, utc_to_local

logger = logging.getLogger(__name__)

# Common abbreviations mapped to a representative IANA zone
ABBREVIATIONS: Dict[str, str] = {
    "EST": "America/New_York",
    "EDT": "America/New_York",
    "CST": "America/Chicago",
    "CDT": "America/Chicago",
    "MST": "America/Denver",
    "MDT": "America/Denver",
    "PST": "America/Los_Angeles",
    "PDT": "America/Los_Angeles",
    "GMT": "Europe/London",
    "BST": "Europe/London",
    "CET": "Europe/Paris",
    "CEST": "Europe/Paris",
    "JST": "Asia/Tokyo",
    "IST": "Asia/Kolkata",
    "AEST": "Australia/Sydney",
    "AEDT": "Australia/Sydney",
}

# UTC offset (minutes, negative west of Greenwich) to a likely zone
OFFSET_ZONES: Dict[int, str] = {
    0: "UTC",
    -300: "America/New_York",
    -360: "America/Chicago",
    -420: "America/Denver",
    -480: "America/Los_Angeles",
    60: "Europe/London",
    120: "Europe/Paris",
    330: "Asia/Kolkata",
    540: "Asia/Tokyo",
    600: "Australia/Sydney",
}

# Country (ISO 3166 alpha-2) and optional region to zone
GEO_ZONES: Dict[str, Dict[str, str]] = {
    "US": {"NY": "America/New_York", "CA": "America/Los_Angeles", "TX": "America/Chicago",
           "IL": "America/Chicago", "CO": "America/Denver", "WA": "America/Los_Angeles",
           "default": "America/New_York"},
    "GB": {"default": "Europe/London"},
    "DE": {"default": "Europe/Berlin"},
    "FR": {"default": "Europe/Paris"},
    "ES": {"default": "Europe/Madrid"},
    "JP": {"default": "Asia/Tokyo"},
    "IN": {"default": "Asia/Kolkata"},
    "AU": {"NSW": "Australia/Sydney", "VIC": "Australia/Melbourne", "default": "Australia/Sydney"},
}

# Confidence per detection source
SOURCE_CONFIDENCE: Dict[str, float] = {
    "user_preference": 0.95,
    "client_zone": 0.9,
    "geolocation": 0.8,
    "client_offset": 0.7,
    "default": 0.5,
}

WEEKDAY_CODES = ["SU", "MO", "TU", "WE", "TH", "FR", "SA"]  # 0=Sunday


@dataclass
class ZoneDetection:
    """Auto-detection result; never a bare guess."""
    timezone: str
    confidence: float
    source: str
    alternatives: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timezone": self.timezone,
            "confidence": self.confidence,
            "source": self.source,
            "alternatives": self.alternatives,
        }


@dataclass(frozen=True)
class Occurrence:
    """One expanded recurrence instance."""
    start: datetime
    end: datetime
    local_start: datetime
    resolution: str = "exact"


class TimezoneService:
    """Zone resolution, conversion and recurrence expansion."""

    def __init__(self, default_timezone: str = config.DEFAULT_TIMEZONE, max_instances: int = 1000):
        self.default_timezone = default_timezone
        self.max_instances = max_instances

    def normalize_zone(self, name: Optional[str]) -> str:
        """
        Resolve an IANA name or common abbreviation to an IANA zone.

        Raises:
            ValidationError: If the name cannot be resolved
        """
        if not name:
            return self.default_timezone
        candidate = name.strip()
        if candidate.upper() in ("UTC", "Z", "ETC/UTC"):
            return "UTC"
        if candidate.upper() in ABBREVIATIONS:
            return ABBREVIATIONS[candidate.upper()]
        try:
            ZoneInfo(candidate)
            return candidate
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationError("timezone", f"Unknown timezone: {name}") from e

    def is_valid_zone(self, name: str) -> bool:
        try:
            self.normalize_zone(name)
            return True
        except ValidationError:
            return False

    def to_utc(self, local: datetime, zone: str) -> datetime:
        """Wall-clock time in ``zone`` to a UTC instant."""
        if local.tzinfo is not None:
            return ensure_utc(local)
        utc_dt, _ = resolve_local(local, self.normalize_zone(zone))
        return utc_dt

    def from_utc(self, instant: datetime, zone: str) -> datetime:
        """UTC instant to aware wall-clock time in ``zone``."""
        return utc_to_local(instant, self.normalize_zone(zone))

    def convert(self, local: datetime, from_zone: str, to_zone: str) -> datetime:
        return self.from_utc(self.to_utc(local, from_zone), to_zone)

    def build_rrule(
        self,
        rule_type: str,
        until: Optional[date] = None,
        days_of_week: Optional[List[int]] = None,
        day_of_month: Optional[int] = None,
    ) -> Optional[str]:
        """
        Build RRULE text from a simple recurrence definition.

        Weekdays are 0=Sunday..6=Saturday. Returns None for "none".
        """
        if rule_type == "none":
            return None
        parts = [f"FREQ={rule_type.upper()}"]
        if rule_type == "weekly" and days_of_week:
            parts.append("BYDAY=" + ",".join(WEEKDAY_CODES[d] for d in sorted(days_of_week)))
        if rule_type == "monthly" and day_of_month:
            parts.append(f"BYMONTHDAY={day_of_month}")
        if until:
            parts.append(f"UNTIL={until.strftime('%Y%m%d')}T235959")
        return ";".join(parts)

    def expand_recurrence(
        self,
        local_start: datetime,
        duration: timedelta,
        zone: str,
        rrule: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[Occurrence]:
        """
        Expand an RRULE into concrete UTC instances.

        Args:
            local_start: Naive wall-clock start of the first instance
            duration: Instance length
            zone: Zone the wall-clock values live in
            rrule: RRULE value (with or without the "RRULE:" prefix)
            window_start: Only return instances ending after this instant
            window_end: Only return instances starting before this instant

        Returns:
            Occurrences ordered by start
        """
        if local_start.tzinfo is not None:
            raise ValidationError("local_start", "Recurrence start must be wall-clock (naive) time")
        zone = self.normalize_zone(zone)
        rule_text = rrule[6:] if rrule.upper().startswith("RRULE:") else rrule

        try:
            rule = rrulestr(rule_text, dtstart=local_start)
        except (ValueError, TypeError) as e:
            raise ValidationError("recurrence", f"Invalid recurrence rule: {rrule}") from e

        occurrences: List[Occurrence] = []
        for scanned, local in enumerate(rule):
            if scanned >= self.max_instances:
                logger.warning(f"Recurrence expansion capped at {self.max_instances} instances: {rule_text}")
                break
            start_utc, resolution = resolve_local(local, zone)
            end_utc, _ = resolve_local(local + duration, zone)
            if end_utc <= start_utc:
                end_utc = start_utc + duration
            if window_end is not None and start_utc >= window_end:
                break
            if window_start is not None and end_utc <= window_start:
                continue
            occurrences.append(Occurrence(start=start_utc, end=end_utc, local_start=local, resolution=resolution))
        return occurrences

    def detect_zone(
        self,
        client_zone: Optional[str] = None,
        utc_offset_minutes: Optional[int] = None,
        country: Optional[str] = None,
        region: Optional[str] = None,
        user_preference: Optional[str] = None,
    ) -> ZoneDetection:
        """
        Guess the caller's zone from whatever signals are available.

        The strongest signal wins; the others are returned as alternatives.
        With no usable signal the result is the default zone at low
        confidence.
        """
        candidates: List[Tuple[str, str]] = []

        if user_preference and self.is_valid_zone(user_preference):
            candidates.append((self.normalize_zone(user_preference), "user_preference"))
        if client_zone and self.is_valid_zone(client_zone):
            candidates.append((self.normalize_zone(client_zone), "client_zone"))
        if country:
            regions = GEO_ZONES.get(country.upper())
            if regions:
                zone = regions.get((region or "").upper(), regions["default"])
                candidates.append((zone, "geolocation"))
        if utc_offset_minutes is not None and utc_offset_minutes in OFFSET_ZONES:
            candidates.append((OFFSET_ZONES[utc_offset_minutes], "client_offset"))

        if not candidates:
            return ZoneDetection(
                timezone=self.default_timezone,
                confidence=SOURCE_CONFIDENCE["default"],
                source="default",
            )

        candidates.sort(key=lambda c: SOURCE_CONFIDENCE[c[1]], reverse=True)
        best_zone, best_source = candidates[0]
        alternatives = [
            {"timezone": zone, "source": source, "confidence": SOURCE_CONFIDENCE[source]}
            for zone, source in candidates[1:]
        ]
        return ZoneDetection(
            timezone=best_zone,
            confidence=SOURCE_CONFIDENCE[best_source],
            source=best_source,
            alternatives=alternatives,
        )

    def business_hours_utc(self, day: date, zone: str, start_hour: int, end_hour: int) -> Tuple[datetime, datetime]:
        """Business-hours window of a local day as UTC instants."""
        zone = self.normalize_zone(zone)
        start, _ = resolve_local(datetime.combine(day, time(start_hour)), zone)
        end, _ = resolve_local(datetime.combine(day, time(end_hour)), zone)
        return start, end
