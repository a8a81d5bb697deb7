"""
Supabase-backed stores.

Supabase REST does not give us multi-statement transactions, so the
reservation compare-and-set is a single conditional UPDATE filtered on the
observed row state; zero returned rows means another writer got there first.

Tables: ``timeslots``, ``appointments``, ``calendar_sync_states``.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from calsync.models.scheduling import (
    Appointment,
    AppointmentStatus,
    BufferStrategy,
    BufferWindow,
    MeetingType,
    RecurrenceRule,
    SyncState,
    Timeslot,
    TimeslotFilters,
    TimeslotStatus,
    TimeslotType,
)
from calsync.stores.base import AppointmentStore, SyncStateStore, TimeslotStore

logger = logging.getLogger(__name__)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_time(value: str) -> time:
    return time.fromisoformat(value[:5])


def timeslot_to_row(slot: Timeslot) -> Dict[str, Any]:
    row = slot.to_dict()
    row.pop("duration")
    row["duration_minutes"] = slot.duration
    return row


def timeslot_from_row(row: Dict[str, Any]) -> Timeslot:
    return Timeslot(
        id=row["id"],
        owner_id=row["owner_id"],
        date=date.fromisoformat(row["date"]),
        start_time=_parse_time(row["start_time"]),
        end_time=_parse_time(row["end_time"]),
        timezone=row.get("timezone") or "UTC",
        type=TimeslotType(row.get("type") or "pharma"),
        status=TimeslotStatus(row.get("status") or "available"),
        max_bookings=row.get("max_bookings") or 1,
        current_bookings=row.get("current_bookings") or 0,
        notes=row.get("notes"),
        recurrence=RecurrenceRule(**row["recurrence"]) if row.get("recurrence") else None,
        parent_id=row.get("parent_id"),
        is_recurring_instance=bool(row.get("is_recurring_instance")),
        created_at=_parse_dt(row.get("created_at")) or datetime.now(timezone.utc),
        updated_at=_parse_dt(row.get("updated_at")) or datetime.now(timezone.utc),
    )


def appointment_to_row(appt: Appointment) -> Dict[str, Any]:
    row = appt.to_dict()
    row["external_etag"] = appt.external_etag
    return row


def appointment_from_row(row: Dict[str, Any]) -> Appointment:
    buffer = None
    if row.get("buffer"):
        data = row["buffer"]
        buffer = BufferWindow(
            before_minutes=data["before_minutes"],
            after_minutes=data["after_minutes"],
            effective_start=_parse_dt(data["effective_start"]),
            effective_end=_parse_dt(data["effective_end"]),
            strategy=BufferStrategy(data["strategy"]),
            factors=tuple(data.get("factors") or ()),
        )
    return Appointment(
        id=row["id"],
        timeslot_id=row.get("timeslot_id"),
        owner_id=row["owner_id"],
        start=_parse_dt(row["start"]),
        end=_parse_dt(row["end"]),
        timezone=row.get("timezone") or "UTC",
        participants=row.get("participants") or [],
        purpose=row.get("purpose"),
        meeting_type=MeetingType(row.get("meeting_type") or "in_person"),
        appointment_type=row.get("appointment_type") or "consultation",
        status=AppointmentStatus(row.get("status") or "scheduled"),
        location=row.get("location"),
        priority=row.get("priority") or 0,
        buffer=buffer,
        external_uid=row.get("external_uid"),
        external_etag=row.get("external_etag"),
        calendar_id=row.get("calendar_id"),
        created_at=_parse_dt(row.get("created_at")) or datetime.now(timezone.utc),
        updated_at=_parse_dt(row.get("updated_at")) or datetime.now(timezone.utc),
    )


class SupabaseTimeslotStore(TimeslotStore):

    def __init__(self, client: Client, table: str = "timeslots"):
        self.client = client
        self.table = table

    async def get(self, slot_id: str) -> Optional[Timeslot]:
        result = self.client.table(self.table).select("*").eq("id", slot_id).limit(1).execute()
        return timeslot_from_row(result.data[0]) if result.data else None

    async def insert(self, slot: Timeslot) -> Timeslot:
        self.client.table(self.table).insert(timeslot_to_row(slot)).execute()
        return slot

    async def update(self, slot: Timeslot) -> Timeslot:
        slot.updated_at = datetime.now(timezone.utc)
        self.client.table(self.table).update(timeslot_to_row(slot)).eq("id", slot.id).execute()
        return slot

    async def delete(self, slot_id: str) -> None:
        self.client.table(self.table).delete().eq("id", slot_id).execute()

    async def list_for_owner_date(self, owner_id: str, day: date) -> List[Timeslot]:
        result = (
            self.client.table(self.table)
            .select("*")
            .eq("owner_id", owner_id)
            .eq("date", day.isoformat())
            .execute()
        )
        return [timeslot_from_row(r) for r in result.data or []]

    async def query(self, filters: TimeslotFilters) -> Tuple[List[Timeslot], int]:
        query = self.client.table(self.table).select("*", count="exact")
        if filters.owner_id:
            query = query.eq("owner_id", filters.owner_id)
        if filters.start_date:
            query = query.gte("date", filters.start_date.isoformat())
        if filters.end_date:
            query = query.lte("date", filters.end_date.isoformat())
        if filters.statuses:
            query = query.in_("status", [s.value for s in filters.statuses])
        if filters.type:
            query = query.eq("type", filters.type.value)

        offset = (filters.page - 1) * filters.limit
        result = (
            query.order("date")
            .order("start_time")
            .range(offset, offset + filters.limit - 1)
            .execute()
        )
        total = result.count if result.count is not None else len(result.data or [])
        return [timeslot_from_row(r) for r in result.data or []], total

    async def compare_and_reserve(self, slot_id: str, observed_bookings: int) -> Optional[Timeslot]:
        current = await self.get(slot_id)
        if current is None or current.current_bookings != observed_bookings:
            return None
        if current.status != TimeslotStatus.AVAILABLE or observed_bookings >= current.max_bookings:
            return None

        bookings = observed_bookings + 1
        status = TimeslotStatus.BOOKED if bookings >= current.max_bookings else TimeslotStatus.AVAILABLE
        result = (
            self.client.table(self.table)
            .update({
                "current_bookings": bookings,
                "status": status.value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
            .eq("id", slot_id)
            .eq("status", TimeslotStatus.AVAILABLE.value)
            .eq("current_bookings", observed_bookings)
            .execute()
        )
        if not result.data:
            logger.info(f"Reservation CAS lost for timeslot {slot_id} (observed {observed_bookings})")
            return None
        return timeslot_from_row(result.data[0])

    async def release(self, slot_id: str) -> Optional[Timeslot]:
        current = await self.get(slot_id)
        if current is None or current.current_bookings == 0:
            return None

        status = current.status
        if status == TimeslotStatus.BOOKED:
            status = TimeslotStatus.AVAILABLE
        result = (
            self.client.table(self.table)
            .update({
                "current_bookings": current.current_bookings - 1,
                "status": status.value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
            .eq("id", slot_id)
            .eq("current_bookings", current.current_bookings)
            .execute()
        )
        return timeslot_from_row(result.data[0]) if result.data else None


class SupabaseAppointmentStore(AppointmentStore):

    def __init__(self, client: Client, table: str = "appointments"):
        self.client = client
        self.table = table

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        result = self.client.table(self.table).select("*").eq("id", appointment_id).limit(1).execute()
        return appointment_from_row(result.data[0]) if result.data else None

    async def insert(self, appointment: Appointment) -> Appointment:
        self.client.table(self.table).insert(appointment_to_row(appointment)).execute()
        return appointment

    async def update(self, appointment: Appointment) -> Appointment:
        self.client.table(self.table).update(appointment_to_row(appointment)).eq("id", appointment.id).execute()
        return appointment

    async def list_for_owner(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_cancelled: bool = False,
    ) -> List[Appointment]:
        query = self.client.table(self.table).select("*").eq("owner_id", owner_id)
        if start:
            query = query.gt("end", start.isoformat())
        if end:
            query = query.lt("start", end.isoformat())
        if not include_cancelled:
            query = query.neq("status", AppointmentStatus.CANCELLED.value)
        result = query.order("start").execute()
        return [appointment_from_row(r) for r in result.data or []]

    async def find_by_external_uid(self, owner_id: str, uid: str) -> Optional[Appointment]:
        result = (
            self.client.table(self.table)
            .select("*")
            .eq("owner_id", owner_id)
            .eq("external_uid", uid)
            .limit(1)
            .execute()
        )
        return appointment_from_row(result.data[0]) if result.data else None

    async def count_active_for_timeslot(self, slot_id: str) -> int:
        result = (
            self.client.table(self.table)
            .select("id", count="exact")
            .eq("timeslot_id", slot_id)
            .neq("status", AppointmentStatus.CANCELLED.value)
            .execute()
        )
        return result.count if result.count is not None else len(result.data or [])

    async def list_changed_since(self, owner_id: str, since: Optional[datetime]) -> List[Appointment]:
        query = self.client.table(self.table).select("*").eq("owner_id", owner_id)
        if since:
            query = query.gt("updated_at", since.isoformat())
        result = query.execute()
        return [appointment_from_row(r) for r in result.data or []]


class SupabaseSyncStateStore(SyncStateStore):
    """Sync cursors; ``commit`` is one upsert on the (user, provider, calendar) key."""

    def __init__(self, client: Client, table: str = "calendar_sync_states"):
        self.client = client
        self.table = table

    async def get(self, user_id: str, provider: str, calendar_id: str) -> Optional[SyncState]:
        result = (
            self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .eq("provider", provider)
            .eq("calendar_id", calendar_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        row = result.data[0]
        return SyncState(
            user_id=row["user_id"],
            provider=row["provider"],
            calendar_id=row["calendar_id"],
            sync_token=row.get("sync_token"),
            last_full_sync=_parse_dt(row.get("last_full_sync")),
            last_sync=_parse_dt(row.get("last_sync")),
        )

    async def commit(self, state: SyncState) -> None:
        self.client.table(self.table).upsert(
            state.to_dict(),
            on_conflict="user_id,provider,calendar_id",
        ).execute()
