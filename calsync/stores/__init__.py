"""Persistence layer."""
from calsync.stores.base import AppointmentStore, ConflictStore, EventMirrorStore, SyncStateStore, TimeslotStore
from calsync.stores.memory import (
    InMemoryAppointmentStore,
    InMemoryConflictStore,
    InMemoryEventMirrorStore,
    InMemorySyncStateStore,
    InMemoryTimeslotStore,
)

__all__ = [
    "AppointmentStore",
    "ConflictStore",
    "EventMirrorStore",
    "SyncStateStore",
    "TimeslotStore",
    "InMemoryAppointmentStore",
    "InMemoryConflictStore",
    "InMemoryEventMirrorStore",
    "InMemorySyncStateStore",
    "InMemoryTimeslotStore",
]
