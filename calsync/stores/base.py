"""
Persistence interfaces.

Services depend on these ABCs only; ``memory`` backs tests and local runs,
``supabase_store`` backs production.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

from calsync.models.calendar import CanonicalEvent
from calsync.models.conflicts import Conflict
from calsync.models.scheduling import Appointment, SyncState, Timeslot, TimeslotFilters


class TimeslotStore(ABC):
    """Timeslot persistence with an atomic reservation primitive."""

    @abstractmethod
    async def get(self, slot_id: str) -> Optional[Timeslot]:
        ...

    @abstractmethod
    async def insert(self, slot: Timeslot) -> Timeslot:
        ...

    @abstractmethod
    async def update(self, slot: Timeslot) -> Timeslot:
        ...

    @abstractmethod
    async def delete(self, slot_id: str) -> None:
        ...

    @abstractmethod
    async def list_for_owner_date(self, owner_id: str, day: date) -> List[Timeslot]:
        ...

    @abstractmethod
    async def query(self, filters: TimeslotFilters) -> Tuple[List[Timeslot], int]:
        """Return one page of matches ordered by (date, start_time) and the total count."""

    @abstractmethod
    async def compare_and_reserve(self, slot_id: str, observed_bookings: int) -> Optional[Timeslot]:
        """
        Add one booking iff the slot is available and still has
        ``observed_bookings`` bookings. The slot flips to booked when it
        reaches capacity.

        Returns:
            The updated slot, or None when the condition did not hold
        """

    @abstractmethod
    async def release(self, slot_id: str) -> Optional[Timeslot]:
        """Remove one booking; a booked slot becomes available again."""


class AppointmentStore(ABC):

    @abstractmethod
    async def get(self, appointment_id: str) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def insert(self, appointment: Appointment) -> Appointment:
        ...

    @abstractmethod
    async def update(self, appointment: Appointment) -> Appointment:
        ...

    @abstractmethod
    async def list_for_owner(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_cancelled: bool = False,
    ) -> List[Appointment]:
        ...

    @abstractmethod
    async def find_by_external_uid(self, owner_id: str, uid: str) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def count_active_for_timeslot(self, slot_id: str) -> int:
        ...

    @abstractmethod
    async def list_changed_since(self, owner_id: str, since: Optional[datetime]) -> List[Appointment]:
        ...


class EventMirrorStore(ABC):
    """Local copy of remote events, one namespace per (user, calendar)."""

    @abstractmethod
    async def list(self, namespace: str) -> List[CanonicalEvent]:
        ...

    @abstractmethod
    async def get(self, namespace: str, uid: str) -> Optional[CanonicalEvent]:
        ...

    @abstractmethod
    async def apply(
        self,
        namespace: str,
        upserts: Iterable[CanonicalEvent],
        deletes: Iterable[str],
        replace: bool = False,
    ) -> None:
        """
        Apply a staged batch in one step. ``deletes`` may contain uids or
        hrefs. With ``replace`` the namespace is reset to ``upserts``.
        """

    @abstractmethod
    async def namespaces(self, prefix: str = "") -> List[str]:
        """Known namespaces starting with ``prefix``."""


class SyncStateStore(ABC):

    @abstractmethod
    async def get(self, user_id: str, provider: str, calendar_id: str) -> Optional[SyncState]:
        ...

    @abstractmethod
    async def commit(self, state: SyncState) -> None:
        """Replace the state for its key in one write."""


class ConflictStore(ABC):

    @abstractmethod
    async def save(self, conflict: Conflict) -> Conflict:
        ...

    @abstractmethod
    async def get(self, conflict_id: str) -> Optional[Conflict]:
        ...

    @abstractmethod
    async def list_for_owner(self, owner_id: str, include_closed: bool = False) -> List[Conflict]:
        ...
