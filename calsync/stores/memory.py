"""
In-memory stores.

All mutations run without an await between the read and the write, so on a
single event loop each method is atomic; that is what makes
``compare_and_reserve`` a real compare-and-set here.
"""

import copy
import logging
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from calsync.models.calendar import CanonicalEvent
from calsync.models.conflicts import Conflict, ConflictState
from calsync.models.scheduling import (
    Appointment,
    AppointmentStatus,
    SyncState,
    Timeslot,
    TimeslotFilters,
    TimeslotStatus,
)
from calsync.stores.base import (
    AppointmentStore,
    ConflictStore,
    EventMirrorStore,
    SyncStateStore,
    TimeslotStore,
)

logger = logging.getLogger(__name__)


class InMemoryTimeslotStore(TimeslotStore):

    def __init__(self):
        self._slots: Dict[str, Timeslot] = {}

    async def get(self, slot_id: str) -> Optional[Timeslot]:
        slot = self._slots.get(slot_id)
        return replace(slot) if slot else None

    async def insert(self, slot: Timeslot) -> Timeslot:
        self._slots[slot.id] = replace(slot)
        return slot

    async def update(self, slot: Timeslot) -> Timeslot:
        slot.updated_at = datetime.now(timezone.utc)
        self._slots[slot.id] = replace(slot)
        return slot

    async def delete(self, slot_id: str) -> None:
        self._slots.pop(slot_id, None)

    async def list_for_owner_date(self, owner_id: str, day: date) -> List[Timeslot]:
        return [
            replace(s) for s in self._slots.values()
            if s.owner_id == owner_id and s.date == day
        ]

    async def query(self, filters: TimeslotFilters) -> Tuple[List[Timeslot], int]:
        matches = []
        for slot in self._slots.values():
            if filters.owner_id and slot.owner_id != filters.owner_id:
                continue
            if filters.start_date and slot.date < filters.start_date:
                continue
            if filters.end_date and slot.date > filters.end_date:
                continue
            if filters.statuses and slot.status not in filters.statuses:
                continue
            if filters.type and slot.type != filters.type:
                continue
            matches.append(slot)

        matches.sort(key=lambda s: (s.date, s.start_time, s.id))
        offset = (filters.page - 1) * filters.limit
        page = matches[offset:offset + filters.limit]
        return [replace(s) for s in page], len(matches)

    async def compare_and_reserve(self, slot_id: str, observed_bookings: int) -> Optional[Timeslot]:
        slot = self._slots.get(slot_id)
        if (
            slot is None
            or slot.status != TimeslotStatus.AVAILABLE
            or slot.current_bookings != observed_bookings
            or slot.current_bookings >= slot.max_bookings
        ):
            return None

        bookings = slot.current_bookings + 1
        updated = replace(
            slot,
            current_bookings=bookings,
            status=TimeslotStatus.BOOKED if bookings >= slot.max_bookings else TimeslotStatus.AVAILABLE,
            updated_at=datetime.now(timezone.utc),
        )
        self._slots[slot_id] = updated
        return replace(updated)

    async def release(self, slot_id: str) -> Optional[Timeslot]:
        slot = self._slots.get(slot_id)
        if slot is None or slot.current_bookings == 0:
            return None

        status = slot.status
        if status == TimeslotStatus.BOOKED:
            status = TimeslotStatus.AVAILABLE
        updated = replace(
            slot,
            current_bookings=slot.current_bookings - 1,
            status=status,
            updated_at=datetime.now(timezone.utc),
        )
        self._slots[slot_id] = updated
        return replace(updated)


class InMemoryAppointmentStore(AppointmentStore):

    def __init__(self):
        self._appointments: Dict[str, Appointment] = {}

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        appt = self._appointments.get(appointment_id)
        return replace(appt) if appt else None

    async def insert(self, appointment: Appointment) -> Appointment:
        self._appointments[appointment.id] = replace(appointment)
        return appointment

    async def update(self, appointment: Appointment) -> Appointment:
        self._appointments[appointment.id] = replace(appointment)
        return appointment

    async def list_for_owner(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_cancelled: bool = False,
    ) -> List[Appointment]:
        result = []
        for appt in self._appointments.values():
            if appt.owner_id != owner_id:
                continue
            if not include_cancelled and appt.status == AppointmentStatus.CANCELLED:
                continue
            if start and appt.end <= start:
                continue
            if end and appt.start >= end:
                continue
            result.append(replace(appt))
        return sorted(result, key=lambda a: (a.start, a.id))

    async def find_by_external_uid(self, owner_id: str, uid: str) -> Optional[Appointment]:
        for appt in self._appointments.values():
            if appt.owner_id == owner_id and appt.external_uid == uid:
                return replace(appt)
        return None

    async def count_active_for_timeslot(self, slot_id: str) -> int:
        return sum(
            1 for a in self._appointments.values()
            if a.timeslot_id == slot_id and a.status != AppointmentStatus.CANCELLED
        )

    async def list_changed_since(self, owner_id: str, since: Optional[datetime]) -> List[Appointment]:
        return [
            replace(a) for a in self._appointments.values()
            if a.owner_id == owner_id and (since is None or a.updated_at > since)
        ]


class InMemoryEventMirrorStore(EventMirrorStore):

    def __init__(self):
        self._events: Dict[str, Dict[str, CanonicalEvent]] = {}

    async def list(self, namespace: str) -> List[CanonicalEvent]:
        return [e.model_copy() for e in self._events.get(namespace, {}).values()]

    async def get(self, namespace: str, uid: str) -> Optional[CanonicalEvent]:
        event = self._events.get(namespace, {}).get(uid)
        return event.model_copy() if event else None

    async def apply(
        self,
        namespace: str,
        upserts: Iterable[CanonicalEvent],
        deletes: Iterable[str],
        replace: bool = False,
    ) -> None:
        current = {} if replace else dict(self._events.get(namespace, {}))
        doomed = set(deletes)
        for uid, event in list(current.items()):
            if uid in doomed or (event.href and event.href in doomed):
                del current[uid]
        for event in upserts:
            current[event.uid] = event.model_copy()
        self._events[namespace] = current

    async def namespaces(self, prefix: str = "") -> List[str]:
        return sorted(ns for ns in self._events if ns.startswith(prefix))


class InMemorySyncStateStore(SyncStateStore):

    def __init__(self):
        self._states: Dict[str, SyncState] = {}

    async def get(self, user_id: str, provider: str, calendar_id: str) -> Optional[SyncState]:
        return self._states.get(f"{user_id}:{provider}:{calendar_id}")

    async def commit(self, state: SyncState) -> None:
        # SyncState is frozen, so a single dict assignment swaps it whole
        self._states[state.key] = state
        logger.debug(f"Committed sync state {state.key} token={state.sync_token}")


class InMemoryConflictStore(ConflictStore):

    def __init__(self):
        self._conflicts: Dict[str, Conflict] = {}

    async def save(self, conflict: Conflict) -> Conflict:
        self._conflicts[conflict.id] = copy.deepcopy(conflict)
        return conflict

    async def get(self, conflict_id: str) -> Optional[Conflict]:
        conflict = self._conflicts.get(conflict_id)
        return copy.deepcopy(conflict) if conflict else None

    async def list_for_owner(self, owner_id: str, include_closed: bool = False) -> List[Conflict]:
        closed = {ConflictState.RESOLVED, ConflictState.DISMISSED}
        return [
            copy.deepcopy(c) for c in self._conflicts.values()
            if c.subject.owner_id == owner_id and (include_closed or c.state not in closed)
        ]
