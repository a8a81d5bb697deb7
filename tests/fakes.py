"""
In-memory calendar provider for sync tests.

Keeps a change log keyed by a monotonically increasing sync token so
incremental listings behave like a CalDAV sync-collection report.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from calsync.exceptions import ConcurrencyError, SyncTokenInvalid
from calsync.models.calendar import (
    AccessRole,
    Calendar,
    CanonicalEvent,
    EventListing,
    ProviderSession,
    WriteResult,
)
from calsync.providers.base import CalendarProvider


def make_calendar(calendar_id: str = "work", access_role: AccessRole = AccessRole.OWNER) -> Calendar:
    return Calendar(
        id=calendar_id,
        url=f"https://dav.example.com/calendars/user-1/{calendar_id}/",
        display_name=calendar_id.title(),
        access_role=access_role,
        supports_sync_collection=True,
        provider="fake",
    )


class FakeCalendarProvider(CalendarProvider):
    name = "fake"

    def __init__(self, calendars: Optional[List[Calendar]] = None):
        self.calendars = calendars or [make_calendar()]
        self.events: Dict[str, CanonicalEvent] = {}
        self.invalid_tokens: Set[str] = set()
        self.list_calls: List[Optional[str]] = []
        self.writes: List[Tuple[str, str]] = []
        self.fail_on_list: Optional[Exception] = None
        self.closed = False
        self._etags = 0
        self._token = 0
        self._changes: List[Tuple[int, str, str]] = []

    # -- test helpers ---------------------------------------------------

    @property
    def current_token(self) -> str:
        return f"tok-{self._token}"

    def href_for(self, calendar: Calendar, uid: str) -> str:
        return f"{calendar.url}{uid}.ics"

    def _store(self, calendar: Calendar, event: CanonicalEvent) -> CanonicalEvent:
        self._etags += 1
        stored = event.model_copy(update={
            "etag": f'"etag-{self._etags}"',
            "href": self.href_for(calendar, event.uid),
            "calendar_id": calendar.id,
            "provider": self.name,
        })
        self.events[event.uid] = stored
        self._token += 1
        self._changes.append((self._token, event.uid, stored.href))
        return stored

    def add_remote(self, calendar: Calendar, event: CanonicalEvent) -> CanonicalEvent:
        """Simulate an edit made directly at the provider."""
        return self._store(calendar, event)

    def remove_remote(self, uid: str) -> None:
        removed = self.events.pop(uid)
        self._token += 1
        self._changes.append((self._token, uid, removed.href))

    # -- CalendarProvider -------------------------------------------------

    async def authenticate(self) -> ProviderSession:
        return ProviderSession.for_ttl("fake:user-1", {"username": "user-1"}, 3600)

    async def discover_calendars(self) -> List[Calendar]:
        return list(self.calendars)

    async def list_events(self, calendar, sync_token=None, time_range=None) -> EventListing:
        self.list_calls.append(sync_token)
        if self.fail_on_list is not None:
            raise self.fail_on_list

        if sync_token:
            if sync_token in self.invalid_tokens:
                raise SyncTokenInvalid(calendar.id)
            since = int(sync_token.split("-", 1)[1])
            listing = EventListing(sync_token=self.current_token, is_full_snapshot=False)
            seen = set()
            for token, uid, href in reversed(self._changes):
                if token <= since or uid in seen:
                    continue
                seen.add(uid)
                if uid in self.events:
                    listing.events.append(self.events[uid].model_copy())
                else:
                    listing.deleted.append(href)
            return listing

        return EventListing(
            events=[e.model_copy() for e in self.events.values()],
            sync_token=self.current_token,
            is_full_snapshot=True,
        )

    async def get_event(self, calendar, uid, href=None) -> Optional[CanonicalEvent]:
        event = self.events.get(uid)
        return event.model_copy() if event else None

    async def create_event(self, calendar, event) -> WriteResult:
        if event.uid in self.events:
            raise ConcurrencyError(f"Event {event.uid} already exists")
        stored = self._store(calendar, event)
        self.writes.append(("create", event.uid))
        return WriteResult(uid=stored.uid, href=stored.href, etag=stored.etag)

    async def update_event(self, calendar, event, etag) -> WriteResult:
        current = self.events.get(event.uid)
        if current is None or current.etag != etag:
            raise ConcurrencyError("Stale etag", current_etag=current.etag if current else None)
        stored = self._store(calendar, event)
        self.writes.append(("update", event.uid))
        return WriteResult(uid=stored.uid, href=stored.href, etag=stored.etag)

    async def delete_event(self, calendar, uid, etag, href=None) -> None:
        current = self.events.get(uid)
        if current is None:
            return
        if etag and current.etag != etag:
            raise ConcurrencyError("Stale etag", current_etag=current.etag)
        self.remove_remote(uid)
        self.writes.append(("delete", uid))

    async def aclose(self) -> None:
        self.closed = True


def remote_event(uid: str, start: datetime, minutes: int = 60, **fields) -> CanonicalEvent:
    return CanonicalEvent(
        uid=uid,
        title=fields.pop("title", f"Remote {uid}"),
        start=start,
        end=start + timedelta(minutes=minutes),
        last_modified=fields.pop("last_modified", datetime.now(timezone.utc)),
        **fields,
    )
