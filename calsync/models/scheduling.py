"""
Scheduling models: timeslots, appointments, buffers and sync bookkeeping.

Request bodies are pydantic models; stored records are dataclasses that the
stores and services pass around.
"""

import datetime as dt
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from calsync import config
from calsync.utils.timezone_utils import combine_local


class TimeslotStatus(str, Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


class TimeslotType(str, Enum):
    PHARMA = "pharma"
    PATIENT = "patient"
    GENERAL = "general"


class RecurrenceType(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class MeetingType(str, Enum):
    IN_PERSON = "in_person"
    VIRTUAL = "virtual"
    PHONE = "phone"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BufferStrategy(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    ADAPTIVE = "adaptive"
    DYNAMIC = "dynamic"


class SyncDirection(str, Enum):
    """Which way changes flow for a calendar integration."""
    BIDIRECTIONAL = "bidirectional"
    PULL_ONLY = "pull_only"
    PUSH_ONLY = "push_only"


class UpdatePolicy(str, Enum):
    """What to do when both sides changed the same appointment."""
    MANUAL = "manual"
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    NEWEST_WINS = "newest_wins"


class RecurrenceRule(BaseModel):
    """Recurrence definition for timeslot expansion."""
    type: RecurrenceType = RecurrenceType.NONE
    end_date: Optional[date] = Field(None, description="Horizon date (inclusive)")
    days_of_week: List[int] = Field(default_factory=list, description="0=Sunday .. 6=Saturday")
    day_of_month: Optional[int] = Field(None, ge=1, le=31)

    @field_validator("days_of_week")
    @classmethod
    def _valid_weekdays(cls, v: List[int]) -> List[int]:
        for day in v:
            if day < 0 or day > 6:
                raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(v))


class TimeslotCreate(BaseModel):
    """Request body for timeslot creation."""
    date: dt.date = Field(..., description="Local date of the slot")
    start_time: str = Field(..., description="HH:MM local start")
    end_time: str = Field(..., description="HH:MM local end")
    timezone: str = Field("UTC", description="Owner timezone")
    type: TimeslotType = TimeslotType.PHARMA
    max_bookings: int = Field(1, description="Capacity (1-10)")
    notes: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None


class TimeslotUpdate(BaseModel):
    """Request body for timeslot updates; only provided fields change."""
    date: Optional[dt.date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    type: Optional[TimeslotType] = None
    status: Optional[TimeslotStatus] = None
    max_bookings: Optional[int] = None
    notes: Optional[str] = None


class TimeslotFilters(BaseModel):
    """List filters."""
    owner_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    statuses: List[TimeslotStatus] = Field(default_factory=list)
    type: Optional[TimeslotType] = None
    page: int = Field(1, ge=1)
    limit: int = Field(config.DEFAULT_PAGE_SIZE, ge=1, le=200)


@dataclass
class Timeslot:
    """An owner-published availability window."""
    id: str
    owner_id: str
    date: date
    start_time: time
    end_time: time
    timezone: str = "UTC"
    type: TimeslotType = TimeslotType.PHARMA
    status: TimeslotStatus = TimeslotStatus.AVAILABLE
    max_bookings: int = 1
    current_bookings: int = 0
    notes: Optional[str] = None
    recurrence: Optional[RecurrenceRule] = None
    parent_id: Optional[str] = None
    is_recurring_instance: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def duration(self) -> int:
        start = self.start_time.hour * 60 + self.start_time.minute
        end = self.end_time.hour * 60 + self.end_time.minute
        return end - start

    @property
    def start_utc(self) -> datetime:
        return combine_local(self.date, self.start_time, self.timezone)

    @property
    def end_utc(self) -> datetime:
        return combine_local(self.date, self.end_time, self.timezone)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "timezone": self.timezone,
            "duration": self.duration,
            "type": self.type.value,
            "status": self.status.value,
            "max_bookings": self.max_bookings,
            "current_bookings": self.current_bookings,
            "notes": self.notes,
            "recurrence": self.recurrence.model_dump(mode="json") if self.recurrence else None,
            "parent_id": self.parent_id,
            "is_recurring_instance": self.is_recurring_instance,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class BufferPreference:
    """Owner's buffer configuration."""
    strategy: BufferStrategy = BufferStrategy.FIXED
    before_minutes: int = config.DEFAULT_BUFFER_BEFORE
    after_minutes: int = config.DEFAULT_BUFFER_AFTER
    min_minutes: int = config.MIN_BUFFER_MINUTES
    max_minutes: int = config.MAX_BUFFER_MINUTES
    percentage: float = 0.1
    apply_type_minimums: bool = True


@dataclass(frozen=True)
class DynamicBufferTuning:
    """Density/overrun multipliers for the dynamic strategy."""
    high_density: float = config.DYNAMIC_HIGH_DENSITY
    low_density: float = config.DYNAMIC_LOW_DENSITY
    high_density_multiplier: float = config.DYNAMIC_HIGH_DENSITY_MULTIPLIER
    low_density_multiplier: float = config.DYNAMIC_LOW_DENSITY_MULTIPLIER
    overrun_threshold: float = config.DYNAMIC_OVERRUN_THRESHOLD
    overrun_multiplier: float = config.DYNAMIC_OVERRUN_MULTIPLIER


@dataclass(frozen=True)
class ScheduleContext:
    """Caller-supplied schedule signals for the dynamic strategy."""
    density: Optional[float] = None
    average_overrun: Optional[float] = None


@dataclass(frozen=True)
class BufferWindow:
    """Padding reserved around an appointment."""
    before_minutes: int
    after_minutes: int
    effective_start: datetime
    effective_end: datetime
    strategy: BufferStrategy
    factors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "before_minutes": self.before_minutes,
            "after_minutes": self.after_minutes,
            "effective_start": self.effective_start.isoformat(),
            "effective_end": self.effective_end.isoformat(),
            "strategy": self.strategy.value,
            "factors": list(self.factors),
        }


class AppointmentCreate(BaseModel):
    """Request body for booking a timeslot."""
    timeslot_id: str
    participants: List[str] = Field(default_factory=list)
    purpose: Optional[str] = None
    meeting_type: MeetingType = MeetingType.IN_PERSON
    appointment_type: str = "consultation"
    location: Optional[str] = None
    priority: int = Field(0, description="Higher wins priority-based resolution")


@dataclass
class Appointment:
    """A booking against a timeslot."""
    id: str
    timeslot_id: Optional[str]
    owner_id: str
    start: datetime
    end: datetime
    timezone: str = "UTC"
    participants: List[str] = field(default_factory=list)
    purpose: Optional[str] = None
    meeting_type: MeetingType = MeetingType.IN_PERSON
    appointment_type: str = "consultation"
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    location: Optional[str] = None
    priority: int = 0
    buffer: Optional[BufferWindow] = None
    external_uid: Optional[str] = None
    external_etag: Optional[str] = None
    calendar_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timeslot_id": self.timeslot_id,
            "owner_id": self.owner_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "timezone": self.timezone,
            "participants": list(self.participants),
            "purpose": self.purpose,
            "meeting_type": self.meeting_type.value,
            "appointment_type": self.appointment_type,
            "status": self.status.value,
            "location": self.location,
            "priority": self.priority,
            "buffer": self.buffer.to_dict() if self.buffer else None,
            "external_uid": self.external_uid,
            "calendar_id": self.calendar_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class SyncState:
    """Per (user, provider, calendar) sync cursor; replaced as a whole."""
    user_id: str
    provider: str
    calendar_id: str
    sync_token: Optional[str] = None
    last_full_sync: Optional[datetime] = None
    last_sync: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.provider}:{self.calendar_id}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("last_full_sync", "last_sync"):
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data


@dataclass
class SyncResult:
    """Outcome of one sync pass for a calendar."""
    calendar_id: str
    mode: str = "incremental"
    created: int = 0
    updated: int = 0
    deleted: int = 0
    pushed: int = 0
    conflicts: List[Any] = field(default_factory=list)
    full_resync_triggered: bool = False
    sync_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "mode": self.mode,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "pushed": self.pushed,
            "conflicts": [c.to_dict() if hasattr(c, "to_dict") else c for c in self.conflicts],
            "full_resync_triggered": self.full_resync_triggered,
            "sync_token": self.sync_token,
        }
