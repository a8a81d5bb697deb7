"""
Appointment service tests: buffers at booking time, rescheduling and
remote changes
"""

from datetime import timedelta

import pytest

from calsync.exceptions import InvalidStateError, PermissionDeniedError
from calsync.models.calendar import EventStatus
from calsync.models.scheduling import (
    AppointmentCreate,
    AppointmentStatus,
    BufferPreference,
    BufferStrategy,
    TimeslotCreate,
    TimeslotStatus,
)
from calsync.services.appointment_service import AppointmentService
from calsync.services.collaborators import Actor

from tests.conftest import NEXT_MONDAY, OWNER_ID, make_appointment, utc
from tests.fakes import remote_event

PATIENT = Actor("patient-1", role="patient")


async def book_slot(timeslot_service, appointment_service, owner, start="09:00", end="10:00", **fields):
    created = await timeslot_service.create(
        owner, TimeslotCreate(date=NEXT_MONDAY, start_time=start, end_time=end)
    )
    return await appointment_service.book(PATIENT, AppointmentCreate(timeslot_id=created.timeslot.id, **fields))


class TestBookingBuffers:

    async def test_patient_becomes_participant(self, timeslot_service, appointment_service, owner):
        appointment = await book_slot(timeslot_service, appointment_service, owner, participants=["rep-1"])
        assert appointment.owner_id == OWNER_ID
        assert appointment.participants == ["rep-1", "patient-1"]

    async def test_schedule_density(self, appointment_service, appointment_store):
        for hour in (9, 11):
            await appointment_store.insert(make_appointment(utc(2030, 1, 14, hour), minutes=120))

        context = await appointment_service.schedule_context(OWNER_ID, utc(2030, 1, 14, 15), "UTC")

        assert context.density == 0.5

    async def test_dynamic_strategy_sees_the_day(
        self, appointment_store, timeslot_service, collaborators, owner
    ):
        service = AppointmentService(
            appointment_store,
            timeslot_service,
            collaborators,
            buffer_preferences={OWNER_ID: BufferPreference(strategy=BufferStrategy.DYNAMIC)},
        )
        await appointment_store.insert(make_appointment(utc(2030, 1, 14, 10), minutes=7 * 60))

        appointment = await book_slot(timeslot_service, service, owner)

        assert appointment.buffer.strategy == BufferStrategy.DYNAMIC
        assert appointment.buffer.before_minutes < 15


class TestReschedule:

    async def test_reschedule_frees_the_slot(self, timeslot_service, appointment_service, owner):
        appointment = await book_slot(timeslot_service, appointment_service, owner)
        slot_id = appointment.timeslot_id

        moved = await appointment_service.reschedule(appointment.id, utc(2030, 1, 14, 12), utc(2030, 1, 14, 13))

        assert moved.timeslot_id is None
        assert moved.buffer.effective_start == utc(2030, 1, 14, 11, 45)
        slot = await timeslot_service.get(slot_id)
        assert (slot.status, slot.current_bookings) == (TimeslotStatus.AVAILABLE, 0)

    async def test_cancelled_appointments_stay_put(self, timeslot_service, appointment_service, owner):
        appointment = await book_slot(timeslot_service, appointment_service, owner)
        await appointment_service.cancel(owner, appointment.id)

        with pytest.raises(InvalidStateError):
            await appointment_service.reschedule(appointment.id, utc(2030, 1, 14, 12), utc(2030, 1, 14, 13))

    async def test_strangers_cannot_cancel(self, timeslot_service, appointment_service, owner):
        appointment = await book_slot(timeslot_service, appointment_service, owner)

        with pytest.raises(PermissionDeniedError):
            await appointment_service.cancel(Actor("someone"), appointment.id)

    async def test_participant_can_cancel(self, timeslot_service, appointment_service, owner, collaborators):
        appointment = await book_slot(timeslot_service, appointment_service, owner)

        cancelled = await appointment_service.cancel(PATIENT, appointment.id, reason="conflict")

        assert cancelled.status == AppointmentStatus.CANCELLED
        await collaborators.drain()
        assert collaborators.audit.recent_events[-1].details == {"reason": "conflict"}


class TestRemoteChanges:

    async def test_moved_event_shifts_buffer(self, timeslot_service, appointment_service, owner):
        appointment = await book_slot(timeslot_service, appointment_service, owner)
        before = appointment.updated_at
        event = remote_event("evt-1", utc(2030, 1, 14, 15), etag='"e2"')

        updated = await appointment_service.apply_remote_change(appointment, event)

        assert updated.start == utc(2030, 1, 14, 15)
        assert updated.buffer.effective_end == utc(2030, 1, 14, 16) + timedelta(minutes=15)
        assert updated.timeslot_id is None
        assert updated.external_etag == '"e2"'
        assert updated.updated_at == before

    async def test_cancelled_event_cancels_and_releases(self, timeslot_service, appointment_service, owner):
        appointment = await book_slot(timeslot_service, appointment_service, owner)
        slot_id = appointment.timeslot_id
        event = remote_event("evt-1", appointment.start, status=EventStatus.CANCELLED)

        updated = await appointment_service.apply_remote_change(appointment, event)

        assert updated.status == AppointmentStatus.CANCELLED
        assert (await timeslot_service.get(slot_id)).status == TimeslotStatus.AVAILABLE
