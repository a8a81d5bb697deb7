"""
Shared fixtures: in-memory stores, services wired the way the API wires
them, and a fixed clock for anything that checks "in the future".
"""

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from calsync.models.conflicts import ScheduleItem
from calsync.models.scheduling import Appointment, BufferPreference, BufferWindow, BufferStrategy
from calsync.services.alternative_slots import AlternativeSlotFinder
from calsync.services.appointment_service import AppointmentService
from calsync.services.collaborators import Actor, Collaborators
from calsync.services.conflict_detector import BaseConflictDetector
from calsync.services.conflict_service import ConflictService
from calsync.services.smart_conflicts import EnhancedConflictDetector
from calsync.services.sync_guard import InMemorySyncGuard
from calsync.services.timeslot_service import TimeslotService
from calsync.services.timezone_service import TimezoneService
from calsync.stores.memory import (
    InMemoryAppointmentStore,
    InMemoryConflictStore,
    InMemoryEventMirrorStore,
    InMemorySyncStateStore,
    InMemoryTimeslotStore,
)

# Monday
FIXED_NOW = datetime(2030, 1, 7, 8, 0, tzinfo=timezone.utc)
NEXT_MONDAY = date(2030, 1, 14)
OWNER_ID = "owner-1"


def fixed_clock() -> datetime:
    return FIXED_NOW


def utc(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_item(item_id: str, start: datetime, minutes: int = 60, **fields) -> ScheduleItem:
    fields.setdefault("owner_id", OWNER_ID)
    return ScheduleItem(id=item_id, start=start, end=start + timedelta(minutes=minutes), **fields)


def make_appointment(start: datetime, minutes: int = 60, buffer_minutes: int = 0, **fields) -> Appointment:
    fields.setdefault("owner_id", OWNER_ID)
    end = start + timedelta(minutes=minutes)
    appointment = Appointment(
        id=fields.pop("id", str(uuid.uuid4())),
        timeslot_id=fields.pop("timeslot_id", None),
        start=start,
        end=end,
        **fields,
    )
    if buffer_minutes:
        appointment.buffer = BufferWindow(
            before_minutes=buffer_minutes,
            after_minutes=buffer_minutes,
            effective_start=start - timedelta(minutes=buffer_minutes),
            effective_end=end + timedelta(minutes=buffer_minutes),
            strategy=BufferStrategy.FIXED,
        )
    return appointment


@pytest.fixture
def owner():
    return Actor(user_id=OWNER_ID, role="owner")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role="admin")


@pytest.fixture
def collaborators():
    return Collaborators()


@pytest.fixture
def timezones():
    return TimezoneService()


@pytest.fixture
def slot_store():
    return InMemoryTimeslotStore()


@pytest.fixture
def appointment_store():
    return InMemoryAppointmentStore()


@pytest.fixture
def timeslot_service(slot_store, appointment_store, timezones, collaborators):
    return TimeslotService(slot_store, appointment_store, timezones, collaborators, clock=fixed_clock)


@pytest.fixture
def appointment_service(appointment_store, timeslot_service, collaborators):
    return AppointmentService(
        appointment_store,
        timeslot_service,
        collaborators,
        buffer_preferences={OWNER_ID: BufferPreference()},
    )


@pytest.fixture
def mirror():
    return InMemoryEventMirrorStore()


@pytest.fixture
def sync_states():
    return InMemorySyncStateStore()


@pytest.fixture
def conflict_store():
    return InMemoryConflictStore()


@pytest.fixture
def base_detector():
    return BaseConflictDetector(AlternativeSlotFinder(), clock=fixed_clock)


@pytest.fixture
def detector(base_detector):
    return EnhancedConflictDetector(base_detector)


@pytest.fixture
def conflict_service(detector, conflict_store, appointment_service, mirror, collaborators):
    return ConflictService(detector, conflict_store, appointment_service, mirror, collaborators)


@pytest.fixture
def guard():
    return InMemorySyncGuard()
