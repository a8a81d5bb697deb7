"""
Timeslot Engine

Owns availability windows: validation, overlap checks, recurrence
expansion and booking-state transitions.

Overlap rule: two non-cancelled timeslots of the same owner on the same
date overlap iff ``start < other.end and other.start < end``.

Booking uses the store's compare-and-set; a caller that loses the race gets
SlotUnavailableError, never a double-booked slot.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from calsync import config
from calsync.exceptions import (
    CalendarSyncError,
    InvalidStateError,
    NotFoundError,
    OverlapError,
    PermissionDeniedError,
    SlotUnavailableError,
    ValidationError,
)
from calsync.models.scheduling import (
    RecurrenceRule,
    RecurrenceType,
    Timeslot,
    TimeslotCreate,
    TimeslotFilters,
    TimeslotStatus,
    TimeslotUpdate,
)
from calsync.services.collaborators import Actor, AuditEventType, Collaborators
from calsync.services.timezone_service import TimezoneService
from calsync.stores.base import AppointmentStore, TimeslotStore
from calsync.utils.intervals import intervals_overlap
from calsync.utils.timezone_utils import parse_hhmm

logger = logging.getLogger(__name__)

MIN_BOOKINGS = 1
MAX_BOOKINGS = 10
MAX_NOTES_LENGTH = 500
RESERVE_ATTEMPTS = 2

# Allowed manual status changes; booked is only reached through reserve()
STATUS_TRANSITIONS = {
    TimeslotStatus.AVAILABLE: {TimeslotStatus.BLOCKED, TimeslotStatus.CANCELLED},
    TimeslotStatus.BLOCKED: {TimeslotStatus.AVAILABLE, TimeslotStatus.CANCELLED},
    TimeslotStatus.BOOKED: {TimeslotStatus.CANCELLED},
    TimeslotStatus.CANCELLED: set(),
}


@dataclass
class TimeslotCreation:
    """Result of create(): the parent slot plus generated instances."""
    timeslot: Timeslot
    instances: List[Timeslot] = field(default_factory=list)
    skipped: int = 0
    skipped_dates: List[date] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeslot": self.timeslot.to_dict(),
            "instances": [s.to_dict() for s in self.instances],
            "recurring_instances_created": len(self.instances),
            "recurring_instances_skipped": self.skipped,
            "skipped_dates": [d.isoformat() for d in self.skipped_dates],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeslotService:
    """Timeslot CRUD, recurrence and reservation."""

    def __init__(
        self,
        store: TimeslotStore,
        appointments: Optional[AppointmentStore] = None,
        timezones: Optional[TimezoneService] = None,
        collaborators: Optional[Collaborators] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.appointments = appointments
        self.timezones = timezones or TimezoneService()
        self.collaborators = collaborators or Collaborators()
        self.clock = clock

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _authorize(self, actor: Actor, owner_id: str) -> None:
        if not actor.can_manage(owner_id):
            raise PermissionDeniedError(
                f"{actor.user_id} ({actor.role}) cannot manage timeslots of {owner_id}",
                {"actor": actor.user_id, "owner_id": owner_id},
            )

    @staticmethod
    def _validate_capacity(max_bookings: int, current_bookings: int = 0) -> None:
        if not MIN_BOOKINGS <= max_bookings <= MAX_BOOKINGS:
            raise ValidationError("max_bookings", f"max_bookings must be between {MIN_BOOKINGS} and {MAX_BOOKINGS}")
        if max_bookings < current_bookings:
            raise ValidationError("max_bookings", "max_bookings cannot drop below current bookings")

    @staticmethod
    def _validate_notes(notes: Optional[str]) -> None:
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError("notes", f"notes must be at most {MAX_NOTES_LENGTH} characters")

    @staticmethod
    def _validate_times(start: time, end: time) -> None:
        if start >= end:
            raise ValidationError("end_time", "start_time must be before end_time")

    def _validate_future(self, slot: Timeslot) -> None:
        if slot.start_utc <= self.clock():
            raise ValidationError("start_time", "Timeslot cannot start in the past")

    async def _find_overlap(self, candidate: Timeslot) -> Optional[Timeslot]:
        """First non-cancelled slot of the same owner/date that overlaps ``candidate``."""
        existing = await self.store.list_for_owner_date(candidate.owner_id, candidate.date)
        start, end = candidate.start_utc, candidate.end_utc
        for other in existing:
            if other.id == candidate.id or other.status == TimeslotStatus.CANCELLED:
                continue
            if other.date != candidate.date or other.owner_id != candidate.owner_id:
                continue
            if intervals_overlap(start, end, other.start_utc, other.end_utc):
                return other
        return None

    # ------------------------------------------------------------------
    # Create / recurrence
    # ------------------------------------------------------------------

    def _build(self, owner_id: str, data: TimeslotCreate) -> Timeslot:
        start = parse_hhmm(data.start_time, "start_time")
        end = parse_hhmm(data.end_time, "end_time")
        self._validate_times(start, end)
        self._validate_capacity(data.max_bookings)
        self._validate_notes(data.notes)
        zone = self.timezones.normalize_zone(data.timezone)

        recurrence = data.recurrence
        if recurrence and recurrence.type != RecurrenceType.NONE:
            if recurrence.end_date is None:
                raise ValidationError("recurrence.end_date", "Recurring timeslots need an end date")
            if recurrence.end_date <= data.date:
                raise ValidationError("recurrence.end_date", "Recurrence end date must be after the slot date")

        return Timeslot(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            date=data.date,
            start_time=start,
            end_time=end,
            timezone=zone,
            type=data.type,
            max_bookings=data.max_bookings,
            notes=data.notes,
            recurrence=recurrence,
        )

    async def create(self, actor: Actor, data: TimeslotCreate, owner_id: Optional[str] = None) -> TimeslotCreation:
        """
        Create a timeslot and, for recurring rules, its instances.

        Raises:
            ValidationError: Malformed times, capacity, notes or a past start
            OverlapError: The parent slot overlaps an existing one
            PermissionDeniedError: The actor cannot manage the owner's slots
        """
        owner_id = owner_id or actor.user_id
        self._authorize(actor, owner_id)

        slot = self._build(owner_id, data)
        self._validate_future(slot)

        conflict = await self._find_overlap(slot)
        if conflict:
            raise OverlapError(conflict.id)

        await self.store.insert(slot)
        result = TimeslotCreation(timeslot=slot)

        if slot.recurrence and slot.recurrence.type != RecurrenceType.NONE:
            await self._expand(slot, result)

        logger.info(
            f"Created timeslot {slot.id} for {owner_id} on {slot.date} "
            f"({len(result.instances)} instances, {result.skipped} skipped)"
        )
        self.collaborators.audit_event(
            AuditEventType.TIMESLOT_CREATED,
            actor,
            slot.id,
            {"instances": len(result.instances), "skipped": result.skipped},
        )
        return result

    def recurrence_dates(self, parent: Timeslot, rule: RecurrenceRule) -> List[date]:
        """Candidate dates from the day after the parent through the horizon."""
        rrule = self.timezones.build_rrule(
            rule.type.value,
            until=rule.end_date,
            days_of_week=rule.days_of_week or None,
            day_of_month=rule.day_of_month,
        )
        if rrule is None:
            return []
        duration = timedelta(minutes=parent.duration)
        local_start = datetime.combine(parent.date, parent.start_time)
        occurrences = self.timezones.expand_recurrence(local_start, duration, parent.timezone, rrule)
        return [o.local_start.date() for o in occurrences if o.local_start.date() > parent.date]

    async def _expand(self, parent: Timeslot, result: TimeslotCreation) -> None:
        for day in self.recurrence_dates(parent, parent.recurrence):
            instance = Timeslot(
                id=str(uuid.uuid4()),
                owner_id=parent.owner_id,
                date=day,
                start_time=parent.start_time,
                end_time=parent.end_time,
                timezone=parent.timezone,
                type=parent.type,
                max_bookings=parent.max_bookings,
                notes=parent.notes,
                parent_id=parent.id,
                is_recurring_instance=True,
            )
            conflict = await self._find_overlap(instance)
            if conflict:
                logger.info(f"Skipping recurring instance on {day}: overlaps {conflict.id}")
                result.skipped += 1
                result.skipped_dates.append(day)
                continue
            await self.store.insert(instance)
            result.instances.append(instance)

    async def bulk_create(self, actor: Actor, items: List[Dict[str, Any]], owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create many timeslots; each item succeeds or fails on its own.

        Returns:
            {"created": [...], "errors": [{"index", "error", "slot"}], "summary": {...}}
        """
        if len(items) > config.BULK_CREATE_LIMIT:
            raise ValidationError("timeslots", f"At most {config.BULK_CREATE_LIMIT} timeslots per bulk request")

        created: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for index, raw in enumerate(items):
            try:
                data = raw if isinstance(raw, TimeslotCreate) else TimeslotCreate(**raw)
                result = await self.create(actor, data, owner_id=owner_id)
                created.append(result.to_dict())
            except PydanticValidationError as e:
                first = e.errors()[0]
                errors.append({
                    "index": index,
                    "error": {
                        "kind": "validation",
                        "message": first.get("msg", "invalid timeslot"),
                        "detail": {"field": ".".join(str(p) for p in first.get("loc", ()))},
                    },
                    "slot": raw if isinstance(raw, dict) else raw.model_dump(mode="json"),
                })
            except CalendarSyncError as e:
                errors.append({
                    "index": index,
                    "error": e.to_dict(),
                    "slot": raw.model_dump(mode="json") if isinstance(raw, TimeslotCreate) else raw,
                })

        return {
            "created": created,
            "errors": errors,
            "summary": {"total": len(items), "created": len(created), "failed": len(errors)},
        }

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, slot_id: str) -> Timeslot:
        slot = await self.store.get(slot_id)
        if slot is None:
            raise NotFoundError("Timeslot", slot_id)
        return slot

    async def list(self, filters: TimeslotFilters) -> Dict[str, Any]:
        if filters.start_date and filters.end_date and filters.start_date > filters.end_date:
            raise ValidationError("start_date", "start_date must not be after end_date")
        items, total = await self.store.query(filters)
        return {
            "items": items,
            "pagination": {
                "page": filters.page,
                "limit": filters.limit,
                "total": total,
                "pages": math.ceil(total / filters.limit) if total else 0,
            },
        }

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update(self, actor: Actor, slot_id: str, changes: TimeslotUpdate) -> Timeslot:
        """
        Apply a partial update.

        A booked slot may only be cancelled (or have its notes edited);
        date/time changes re-run the overlap check excluding the slot itself.
        """
        slot = await self.get(slot_id)
        self._authorize(actor, slot.owner_id)

        fields = changes.model_dump(exclude_unset=True)
        time_fields = {"date", "start_time", "end_time"} & set(fields)

        if slot.status == TimeslotStatus.BOOKED:
            allowed = {"status", "notes"}
            if time_fields or set(fields) - allowed:
                raise InvalidStateError(
                    slot.status.value,
                    "edited",
                    "A booked timeslot can only be cancelled, not edited",
                )
        if slot.status == TimeslotStatus.CANCELLED and fields:
            raise InvalidStateError(slot.status.value, "edited", "A cancelled timeslot cannot be changed")

        if "notes" in fields:
            self._validate_notes(changes.notes)
            slot.notes = changes.notes
        if changes.type is not None:
            slot.type = changes.type
        if changes.max_bookings is not None:
            self._validate_capacity(changes.max_bookings, slot.current_bookings)
            slot.max_bookings = changes.max_bookings

        if time_fields:
            slot.date = changes.date or slot.date
            slot.start_time = parse_hhmm(changes.start_time, "start_time") if changes.start_time else slot.start_time
            slot.end_time = parse_hhmm(changes.end_time, "end_time") if changes.end_time else slot.end_time
            self._validate_times(slot.start_time, slot.end_time)
            self._validate_future(slot)
            conflict = await self._find_overlap(slot)
            if conflict:
                raise OverlapError(conflict.id)

        if changes.status is not None and changes.status != slot.status:
            if changes.status not in STATUS_TRANSITIONS[slot.status]:
                raise InvalidStateError(slot.status.value, changes.status.value)
            previous = slot.status
            slot.status = changes.status
            if previous == TimeslotStatus.BOOKED:
                self.collaborators.notify(slot.owner_id, "timeslot.cancelled", {"timeslot_id": slot.id})

        await self.store.update(slot)
        self.collaborators.audit_event(AuditEventType.TIMESLOT_UPDATED, actor, slot.id, {"fields": sorted(fields)})
        return slot

    async def delete(self, actor: Actor, slot_id: str, force: bool = False) -> None:
        """
        Delete a timeslot.

        Raises:
            InvalidStateError: While the slot is booked, or while it still has
                active appointments and ``force`` is not set
        """
        slot = await self.get(slot_id)
        self._authorize(actor, slot.owner_id)

        if slot.status == TimeslotStatus.BOOKED:
            raise InvalidStateError(slot.status.value, "deleted", "A booked timeslot cannot be deleted")
        if self.appointments is not None and not force:
            active = await self.appointments.count_active_for_timeslot(slot_id)
            if active:
                raise InvalidStateError(
                    slot.status.value,
                    "deleted",
                    f"Timeslot has {active} active appointment(s); pass force to delete",
                )

        await self.store.delete(slot_id)
        logger.info(f"Deleted timeslot {slot_id}")
        self.collaborators.audit_event(AuditEventType.TIMESLOT_DELETED, actor, slot_id, {"force": force})

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def reserve(self, slot_id: str) -> Timeslot:
        """
        Atomically take one booking on a slot.

        A lost compare-and-set is retried once against fresh state; if the
        slot is then full or no longer available the caller gets a
        definitive SlotUnavailableError.
        """
        for _ in range(RESERVE_ATTEMPTS):
            slot = await self.get(slot_id)
            if slot.status != TimeslotStatus.AVAILABLE or slot.current_bookings >= slot.max_bookings:
                raise SlotUnavailableError(slot_id)
            if slot.start_utc <= self.clock():
                raise SlotUnavailableError(slot_id, f"Timeslot {slot_id} has already started")

            updated = await self.store.compare_and_reserve(slot_id, slot.current_bookings)
            if updated is not None:
                return updated
            logger.debug(f"Reservation race lost on {slot_id}; re-reading")

        raise SlotUnavailableError(slot_id)

    async def release(self, slot_id: str) -> Optional[Timeslot]:
        """Give back one booking, reopening a booked slot."""
        return await self.store.release(slot_id)
