"""
Event Normalizer

Bidirectional mapping between iCalendar VEVENT components (RFC 5545) and
CanonicalEvent, built on the ``icalendar`` package. Escaping, line folding
and parameter quoting are left to the library.

Encoding rules:
- all-day events use DTSTART;VALUE=DATE / DTEND;VALUE=DATE
- timed events in UTC use the "Z" form, others use TZID=<IANA zone>
- the second pass through a fall-back hour is written in UTC

Decoding accepts UTC, TZID and floating (interpreted in the calendar's
default zone) date-times, and DURATION in place of DTEND. A timed event
with neither DTEND nor DURATION is an instant; it becomes an event of
INSTANT_EVENT_MINUTES.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from icalendar import Calendar as ICalendar
from icalendar import Event as IEvent
from icalendar import vCalAddress, vRecur
from pydantic import ValidationError as PydanticValidationError

from calsync import config
from calsync.exceptions import ValidationError
from calsync.models.calendar import Attendee, CanonicalEvent, EventStatus, Organizer
from calsync.services.timezone_service import TimezoneService
from calsync.utils.timezone_utils import ensure_utc

logger = logging.getLogger(__name__)

PRODID = "-//calsync//Calendar Sync Core//EN"

STATUS_TO_ICAL = {
    EventStatus.CONFIRMED: "CONFIRMED",
    EventStatus.TENTATIVE: "TENTATIVE",
    EventStatus.CANCELLED: "CANCELLED",
}
ICAL_TO_STATUS = {v: k for k, v in STATUS_TO_ICAL.items()}


def _mailto(value: str) -> str:
    value = str(value)
    return value[7:] if value.lower().startswith("mailto:") else value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _text(vevent: IEvent, name: str) -> Optional[str]:
    value = vevent.get(name)
    return str(value) if value is not None else None


def _duration(prop: Any) -> timedelta:
    # vDuration exposes ``td``; vDDDTypes exposes ``dt``
    value = getattr(prop, "td", None)
    return value if value is not None else prop.dt


class EventNormalizer:
    """Converts between iCalendar text and CanonicalEvent."""

    def __init__(self, timezone_service: Optional[TimezoneService] = None, default_timezone: str = "UTC",
                 prodid: str = PRODID, instant_minutes: int = config.INSTANT_EVENT_MINUTES):
        self.timezones = timezone_service or TimezoneService()
        self.default_timezone = default_timezone
        self.prodid = prodid
        self.instant_minutes = instant_minutes

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode_instant(self, instant: datetime, zone: str, all_day: bool):
        if all_day:
            return instant.astimezone(timezone.utc).date()
        instant = instant.replace(microsecond=0)
        if zone in ("UTC", "Etc/UTC"):
            return instant.astimezone(timezone.utc)
        local = self.timezones.from_utc(instant, zone)
        if self.timezones.to_utc(local.replace(tzinfo=None), zone) != instant:
            # second pass through a fall-back hour; only UTC is unambiguous
            return instant.astimezone(timezone.utc)
        return local

    def to_ical(self, event: CanonicalEvent, dtstamp: Optional[datetime] = None) -> str:
        """Encode a CanonicalEvent as a complete VCALENDAR object."""
        dtstamp = dtstamp or datetime.now(timezone.utc)
        zone = self.timezones.normalize_zone(event.timezone)

        cal = ICalendar()
        cal.add("prodid", self.prodid)
        cal.add("version", "2.0")
        cal.add("calscale", "GREGORIAN")

        vevent = IEvent()
        vevent.add("uid", event.uid)
        vevent.add("dtstamp", dtstamp.astimezone(timezone.utc).replace(microsecond=0))
        vevent.add("dtstart", self._encode_instant(event.start, zone, event.all_day))
        vevent.add("dtend", self._encode_instant(event.end, zone, event.all_day))
        vevent.add("summary", event.title)
        if event.description:
            vevent.add("description", event.description)
        if event.location:
            vevent.add("location", event.location)
        if event.organizer:
            organizer = vCalAddress(f"mailto:{event.organizer.email}")
            if event.organizer.name:
                organizer.params["CN"] = event.organizer.name
            vevent.add("organizer", organizer, encode=0)
        for attendee in event.attendees:
            address = vCalAddress(f"mailto:{attendee.email}")
            if attendee.name:
                address.params["CN"] = attendee.name
            address.params["PARTSTAT"] = attendee.partstat
            if attendee.rsvp:
                address.params["RSVP"] = "TRUE"
            vevent.add("attendee", address, encode=0)
        if event.recurrence:
            rule = event.recurrence
            if rule.upper().startswith("RRULE:"):
                rule = rule[6:]
            vevent.add("rrule", vRecur.from_ical(rule))
        vevent.add("status", STATUS_TO_ICAL[event.status])
        if event.last_modified:
            vevent.add("last-modified", event.last_modified.astimezone(timezone.utc).replace(microsecond=0))

        cal.add_component(vevent)
        return cal.to_ical().decode("utf-8")

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode_instant(self, prop: Any, default_zone: str) -> Tuple[datetime, bool, str]:
        """
        Returns:
            (aware UTC datetime, is_date, source zone)
        """
        value = prop.dt
        if not isinstance(value, datetime):
            return datetime.combine(value, time(0), tzinfo=timezone.utc), True, default_zone

        tzid = prop.params.get("TZID")
        if tzid:
            zone = default_zone
            try:
                zone = self.timezones.normalize_zone(str(tzid))
            except ValidationError:
                logger.warning(f"Unknown TZID {tzid!r}; using {default_zone}")
            # wall clock goes through resolve_local so DST gaps and folds follow one rule
            return self.timezones.to_utc(value.replace(tzinfo=None), zone), False, zone
        if value.tzinfo is not None:
            return ensure_utc(value, "start"), False, "UTC"
        return self.timezones.to_utc(value, default_zone), False, default_zone

    def _parse(self, text: str) -> ICalendar:
        try:
            return ICalendar.from_ical(text)
        except ValueError as e:
            raise ValidationError("icalendar", f"Malformed iCalendar data: {e}") from e

    def from_ical(
        self,
        text: str,
        etag: Optional[str] = None,
        calendar_id: Optional[str] = None,
        provider: Optional[str] = None,
        href: Optional[str] = None,
        default_timezone: Optional[str] = None,
    ) -> List[CanonicalEvent]:
        """
        Decode every master VEVENT in a VCALENDAR object.

        Overridden instances (RECURRENCE-ID) are not separate canonical
        events and are skipped.

        Raises:
            ValidationError: If a VEVENT is missing required properties or
                violates the CanonicalEvent invariants
        """
        default_zone = default_timezone or self.default_timezone
        events: List[CanonicalEvent] = []

        for vevent in self._parse(text).walk("VEVENT"):
            if "RECURRENCE-ID" in vevent:
                logger.debug("Skipping overridden recurrence instance")
                continue
            if vevent.errors:
                logger.warning(f"Ignoring unparseable properties {vevent.errors} in {href or 'event'}")
            events.append(self._build_event(vevent, etag, calendar_id, provider, href, default_zone))

        return events

    def from_ical_single(self, text: str, **kwargs) -> CanonicalEvent:
        events = self.from_ical(text, **kwargs)
        if not events:
            raise ValidationError("icalendar", "No VEVENT component found")
        return events[0]

    def _build_event(
        self,
        vevent: IEvent,
        etag: Optional[str],
        calendar_id: Optional[str],
        provider: Optional[str],
        href: Optional[str],
        default_zone: str,
    ) -> CanonicalEvent:
        uid = _text(vevent, "UID")
        if not uid:
            raise ValidationError("uid", "VEVENT has no UID")
        if vevent.get("DTSTART") is None:
            raise ValidationError("start", f"VEVENT {uid} has no DTSTART")

        start, all_day, zone = self._decode_instant(vevent["DTSTART"], default_zone)
        if vevent.get("DTEND") is not None:
            end = self._decode_instant(vevent["DTEND"], default_zone)[0]
        elif vevent.get("DURATION") is not None:
            end = start + _duration(vevent["DURATION"])
        elif all_day:
            end = start + timedelta(days=1)
        else:
            logger.debug(f"VEVENT {uid} is an instant; giving it {self.instant_minutes} minute(s)")
            end = start + timedelta(minutes=self.instant_minutes)

        data: Dict[str, Any] = {
            "uid": uid,
            "etag": etag,
            "calendar_id": calendar_id,
            "provider": provider,
            "href": href,
            "start": start,
            "end": end,
            "all_day": all_day,
            "timezone": zone,
            "attendees": [],
        }
        for name, key in (("SUMMARY", "title"), ("DESCRIPTION", "description"), ("LOCATION", "location")):
            value = _text(vevent, name)
            if value is not None:
                data[key] = value

        status = _text(vevent, "STATUS")
        if status:
            data["status"] = ICAL_TO_STATUS.get(status.strip().upper(), EventStatus.CONFIRMED)
        rrule = vevent.get("RRULE")
        if rrule is not None:
            data["recurrence"] = _as_list(rrule)[0].to_ical().decode("utf-8")
        if vevent.get("LAST-MODIFIED") is not None:
            data["last_modified"] = self._decode_instant(vevent["LAST-MODIFIED"], "UTC")[0]

        organizer = vevent.get("ORGANIZER")
        if organizer is not None:
            cn = organizer.params.get("CN")
            data["organizer"] = Organizer(email=_mailto(organizer), name=str(cn) if cn else None)
        for address in _as_list(vevent.get("ATTENDEE")):
            cn = address.params.get("CN")
            data["attendees"].append(Attendee(
                email=_mailto(address),
                name=str(cn) if cn else None,
                partstat=str(address.params.get("PARTSTAT", "NEEDS-ACTION")).upper(),
                rsvp=str(address.params.get("RSVP", "")).upper() == "TRUE",
            ))

        try:
            return CanonicalEvent(**data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "event"
            raise ValidationError(field, f"Invalid event {uid}: {first.get('msg')}") from e


def all_day_bounds(day: date, days: int = 1) -> Tuple[datetime, datetime]:
    """UTC-midnight boundaries used for all-day CanonicalEvents."""
    start = datetime.combine(day, time(0), tzinfo=timezone.utc)
    return start, start + timedelta(days=days)
