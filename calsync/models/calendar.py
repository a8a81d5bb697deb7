"""
Calendar-side models: canonical events, remote calendars and provider sessions.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EventStatus(str, Enum):
    """Event status as carried by iCalendar STATUS."""
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AccessRole(str, Enum):
    OWNER = "owner"
    WRITER = "writer"
    READER = "reader"


class Attendee(BaseModel):
    """Event attendee."""
    email: str = Field(..., description="Attendee email address")
    name: Optional[str] = Field(None, description="Common name (CN)")
    partstat: str = Field("NEEDS-ACTION", description="Participation status")
    rsvp: bool = Field(False, description="Whether a reply is requested")


class Organizer(BaseModel):
    """Event organizer."""
    email: str = Field(..., description="Organizer email address")
    name: Optional[str] = Field(None, description="Common name (CN)")


# Provider bookkeeping, not event content
VERSION_FIELDS = {"etag", "provider", "calendar_id", "last_modified", "href"}


class CanonicalEvent(BaseModel):
    """
    Provider-agnostic calendar entry.

    start/end are always aware UTC instants; ``timezone`` records the zone
    the event was authored in. All-day events keep midnight-UTC boundaries
    and set ``all_day``; the date is what matters for them.
    """
    model_config = ConfigDict(populate_by_name=True)

    uid: str = Field(..., min_length=1, description="Globally unique event id")
    title: str = Field("", description="SUMMARY")
    description: Optional[str] = Field(None, description="DESCRIPTION")
    start: datetime = Field(..., description="Start instant (UTC)")
    end: datetime = Field(..., description="End instant (UTC)")
    timezone: str = Field("UTC", description="Source timezone name")
    all_day: bool = Field(False, alias="allDay", description="Date-only event")
    location: Optional[str] = Field(None, description="LOCATION")
    attendees: List[Attendee] = Field(default_factory=list)
    organizer: Optional[Organizer] = None
    recurrence: Optional[str] = Field(None, description="RRULE value")
    status: EventStatus = EventStatus.CONFIRMED
    etag: Optional[str] = None
    provider: Optional[str] = None
    calendar_id: Optional[str] = Field(None, alias="calendarId")
    last_modified: Optional[datetime] = Field(None, alias="lastModified")
    href: Optional[str] = Field(None, exclude=True, description="Resource URL on the provider")

    @field_validator("start", "end", "last_modified")
    @classmethod
    def _aware_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("datetime must be timezone-aware")
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _start_before_end(self) -> "CanonicalEvent":
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self

    def to_json(self) -> Dict[str, Any]:
        """Canonical Event JSON with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    def content_hash(self) -> str:
        """Digest of the event content, without provider bookkeeping."""
        content = self.model_dump(mode="json", exclude=VERSION_FIELDS)
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Calendar(BaseModel):
    """A remote calendar collection."""
    id: str = Field(..., description="Remote calendar id (last path segment)")
    url: str = Field(..., description="Absolute collection URL")
    display_name: str = ""
    description: Optional[str] = None
    access_role: AccessRole = AccessRole.OWNER
    supports_sync_collection: bool = False
    supported_components: List[str] = Field(default_factory=lambda: ["VEVENT"])
    provider: Optional[str] = None


@dataclass
class ProviderSession:
    """Cached credential for a provider identity."""
    key: str
    credentials: Dict[str, Any]
    expires_at: datetime
    profile: Any = None

    def is_expired(self, now: datetime = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    @classmethod
    def for_ttl(cls, key: str, credentials: Dict[str, Any], ttl_seconds: int, profile: Any = None,
                now: datetime = None) -> "ProviderSession":
        now = now or datetime.now(timezone.utc)
        return cls(key=key, credentials=credentials, expires_at=now + timedelta(seconds=ttl_seconds), profile=profile)


@dataclass
class EventListing:
    """Result of a list-events call."""
    events: List[CanonicalEvent] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    sync_token: Optional[str] = None
    is_full_snapshot: bool = False


@dataclass
class WriteResult:
    """Result of a create/update write."""
    uid: str
    href: str
    etag: Optional[str] = None
