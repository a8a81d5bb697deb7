"""
Calendar provider interface.

Every back-end exposes the same capability surface so the sync
orchestrator never branches on which provider it is talking to.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from calsync.models.calendar import Calendar, CanonicalEvent, EventListing, ProviderSession, WriteResult


class CalendarProvider(ABC):
    """Abstract calendar back-end."""

    name: str = "unknown"

    @abstractmethod
    async def authenticate(self) -> ProviderSession:
        """Verify credentials and return a (possibly cached) session."""

    @abstractmethod
    async def discover_calendars(self) -> List[Calendar]:
        """List calendar collections that hold events."""

    @abstractmethod
    async def list_events(
        self,
        calendar: Calendar,
        sync_token: Optional[str] = None,
        time_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> EventListing:
        """
        Incremental listing when ``sync_token`` is given and the calendar
        supports it; otherwise a full snapshot of ``time_range``.

        Raises:
            SyncTokenInvalid: If the provider rejects the token
        """

    @abstractmethod
    async def get_event(self, calendar: Calendar, uid: str, href: Optional[str] = None) -> Optional[CanonicalEvent]:
        ...

    @abstractmethod
    async def create_event(self, calendar: Calendar, event: CanonicalEvent) -> WriteResult:
        """
        Raises:
            ConcurrencyError: If a resource with this uid already exists
        """

    @abstractmethod
    async def update_event(self, calendar: Calendar, event: CanonicalEvent, etag: str) -> WriteResult:
        """
        Raises:
            ConcurrencyError: If ``etag`` is stale
        """

    @abstractmethod
    async def delete_event(self, calendar: Calendar, uid: str, etag: Optional[str], href: Optional[str] = None) -> None:
        """
        Raises:
            ConcurrencyError: If ``etag`` is stale
        """

    async def aclose(self) -> None:
        return None
