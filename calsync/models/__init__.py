"""Data models for the calendar sync core."""
from calsync.models.calendar import CanonicalEvent, Calendar, EventListing, ProviderSession, WriteResult
from calsync.models.conflicts import Conflict, ConflictSeverity, ConflictState, ConflictType, ScheduleItem
from calsync.models.scheduling import Appointment, BufferWindow, SyncState, Timeslot

__all__ = [
    "CanonicalEvent",
    "Calendar",
    "EventListing",
    "ProviderSession",
    "WriteResult",
    "Conflict",
    "ConflictSeverity",
    "ConflictState",
    "ConflictType",
    "ScheduleItem",
    "Appointment",
    "BufferWindow",
    "SyncState",
    "Timeslot",
]
