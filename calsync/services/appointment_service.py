"""
Appointment booking on top of the timeslot engine.

Booking = atomic reserve on the timeslot + an Appointment record carrying
its buffer window. If the record cannot be written the reservation is
released again.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, time, timedelta, timezone
from typing import Dict, List, Optional

from calsync.exceptions import InvalidStateError, NotFoundError, PermissionDeniedError
from calsync.models.calendar import CanonicalEvent, EventStatus
from calsync.models.scheduling import (
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    BufferPreference,
    BufferStrategy,
    DynamicBufferTuning,
    ScheduleContext,
)
from calsync.services.buffer_time import calculate_buffer_window, schedule_density
from calsync.services.collaborators import Actor, AuditEventType, Collaborators
from calsync.services.timeslot_service import TimeslotService
from calsync.stores.base import AppointmentStore
from calsync.utils.timezone_utils import combine_local, utc_to_local

logger = logging.getLogger(__name__)


class AppointmentService:
    """Book, cancel and look up appointments."""

    def __init__(
        self,
        store: AppointmentStore,
        timeslots: TimeslotService,
        collaborators: Optional[Collaborators] = None,
        buffer_preferences: Optional[Dict[str, BufferPreference]] = None,
        tuning: Optional[DynamicBufferTuning] = None,
    ):
        self.store = store
        self.timeslots = timeslots
        self.collaborators = collaborators or timeslots.collaborators
        self.buffer_preferences = buffer_preferences if buffer_preferences is not None else {}
        self.tuning = tuning or DynamicBufferTuning()

    def preference_for(self, owner_id: str) -> BufferPreference:
        return self.buffer_preferences.get(owner_id, BufferPreference())

    async def schedule_context(self, owner_id: str, at: datetime, zone: str) -> ScheduleContext:
        """Density of the owner's local working day around ``at``."""
        local_day = utc_to_local(at, zone).date()
        day_start = combine_local(local_day, time(9), zone)
        day_end = combine_local(local_day, time(17), zone)
        booked = await self.store.list_for_owner(owner_id, day_start, day_end)
        busy = [(max(a.start, day_start), min(a.end, day_end)) for a in booked]
        return ScheduleContext(density=schedule_density(busy))

    async def book(self, actor: Actor, request: AppointmentCreate) -> Appointment:
        """
        Reserve the timeslot and record the appointment.

        Raises:
            SlotUnavailableError: The slot is full, not available, or the
                reservation lost a race
            NotFoundError: Unknown timeslot
        """
        slot = await self.timeslots.reserve(request.timeslot_id)

        participants = list(request.participants)
        if actor.user_id not in participants and actor.user_id != slot.owner_id:
            participants.append(actor.user_id)

        appointment = Appointment(
            id=str(uuid.uuid4()),
            timeslot_id=slot.id,
            owner_id=slot.owner_id,
            start=slot.start_utc,
            end=slot.end_utc,
            timezone=slot.timezone,
            participants=participants,
            purpose=request.purpose,
            meeting_type=request.meeting_type,
            appointment_type=request.appointment_type,
            location=request.location,
            priority=request.priority,
        )

        preference = self.preference_for(slot.owner_id)
        context = None
        if preference.strategy == BufferStrategy.DYNAMIC:
            context = await self.schedule_context(slot.owner_id, appointment.start, slot.timezone)
        appointment.buffer = calculate_buffer_window(appointment, preference, context, self.tuning)

        try:
            await self.store.insert(appointment)
        except Exception:
            logger.exception(f"Failed to record appointment for timeslot {slot.id}; releasing reservation")
            await self.timeslots.release(slot.id)
            raise

        logger.info(f"Booked appointment {appointment.id} on timeslot {slot.id}")
        self.collaborators.notify(slot.owner_id, "appointment.booked", appointment.to_dict())
        self.collaborators.audit_event(AuditEventType.APPOINTMENT_BOOKED, actor, appointment.id,
                                       {"timeslot_id": slot.id})
        return appointment

    async def get(self, appointment_id: str) -> Appointment:
        appointment = await self.store.get(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    async def list(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_cancelled: bool = False,
    ) -> List[Appointment]:
        return await self.store.list_for_owner(owner_id, start, end, include_cancelled)

    async def cancel(self, actor: Actor, appointment_id: str, reason: Optional[str] = None) -> Appointment:
        """
        Cancel an appointment and give its booking back to the timeslot.

        Raises:
            InvalidStateError: Already cancelled or completed
            PermissionDeniedError: Caller is neither owner nor participant
        """
        appointment = await self.get(appointment_id)
        if not (actor.can_manage(appointment.owner_id) or actor.user_id in appointment.participants):
            raise PermissionDeniedError(f"{actor.user_id} cannot cancel appointment {appointment_id}")
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED):
            raise InvalidStateError(appointment.status.value, AppointmentStatus.CANCELLED.value)

        appointment.status = AppointmentStatus.CANCELLED
        appointment.updated_at = datetime.now(timezone.utc)
        await self.store.update(appointment)
        if appointment.timeslot_id:
            await self.timeslots.release(appointment.timeslot_id)

        logger.info(f"Cancelled appointment {appointment_id}")
        self.collaborators.notify(appointment.owner_id, "appointment.cancelled",
                                  {"appointment_id": appointment_id, "reason": reason})
        self.collaborators.audit_event(AuditEventType.APPOINTMENT_CANCELLED, actor, appointment_id,
                                       {"reason": reason})
        return appointment

    async def reschedule(self, appointment_id: str, start: datetime, end: datetime) -> Appointment:
        """Move an appointment off its timeslot (used by conflict resolution)."""
        appointment = await self.get(appointment_id)
        if appointment.status == AppointmentStatus.CANCELLED:
            raise InvalidStateError(appointment.status.value, "rescheduled")
        if appointment.timeslot_id:
            await self.timeslots.release(appointment.timeslot_id)
            appointment.timeslot_id = None
        appointment.start, appointment.end = start, end
        appointment.buffer = calculate_buffer_window(appointment, self.preference_for(appointment.owner_id),
                                                     tuning=self.tuning)
        appointment.updated_at = datetime.now(timezone.utc)
        await self.store.update(appointment)
        logger.info(f"Rescheduled appointment {appointment_id} to {start.isoformat()}")
        return appointment

    async def apply_remote_change(self, appointment: Appointment, event: CanonicalEvent) -> Appointment:
        """
        Take time, location and status from the remote copy of a pushed
        appointment. ``updated_at`` is left alone so the change is not pushed
        straight back.
        """
        if event.status == EventStatus.CANCELLED:
            appointment.status = AppointmentStatus.CANCELLED
            if appointment.timeslot_id:
                await self.timeslots.release(appointment.timeslot_id)
        elif (event.start, event.end) != (appointment.start, appointment.end):
            if appointment.timeslot_id:
                await self.timeslots.release(appointment.timeslot_id)
                appointment.timeslot_id = None
            appointment.start, appointment.end = event.start, event.end
            if appointment.buffer:
                appointment.buffer = replace(
                    appointment.buffer,
                    effective_start=event.start - timedelta(minutes=appointment.buffer.before_minutes),
                    effective_end=event.end + timedelta(minutes=appointment.buffer.after_minutes),
                )
        if event.location is not None:
            appointment.location = event.location
        appointment.external_etag = event.etag
        await self.store.update(appointment)
        logger.info(f"Applied remote change {event.uid} to appointment {appointment.id}")
        return appointment

    async def claim_local_version(self, appointment: Appointment, remote_etag: Optional[str]) -> Appointment:
        """Keep the local version; the next push overwrites the remote copy."""
        appointment.external_etag = remote_etag
        appointment.updated_at = datetime.now(timezone.utc)
        await self.store.update(appointment)
        return appointment
