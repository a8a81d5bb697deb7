"""
Conflict models and the conflict lifecycle.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from calsync.exceptions import InvalidStateError


class ConflictType(str, Enum):
    TIME_OVERLAP = "time_overlap"
    BUFFER_VIOLATION = "buffer_violation"
    TRAVEL_INFEASIBLE = "travel_infeasible"
    UPDATE_CONFLICT = "update_conflict"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_RANK = {ConflictSeverity.HIGH: 3, ConflictSeverity.MEDIUM: 2, ConflictSeverity.LOW: 1}


class ConflictState(str, Enum):
    DETECTED = "detected"
    SUGGESTED = "suggested"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


ALLOWED_TRANSITIONS = {
    ConflictState.DETECTED: {ConflictState.SUGGESTED},
    ConflictState.SUGGESTED: {ConflictState.RESOLVED, ConflictState.DISMISSED},
    ConflictState.RESOLVED: set(),
    ConflictState.DISMISSED: set(),
}


class ResolutionStrategy(str, Enum):
    USER_CHOICE = "user_choice"
    PRIORITY_BASED = "priority_based"
    TIME_BASED = "time_based"
    AUTOMATIC = "automatic"


class BufferSide(str, Enum):
    BEFORE = "before"
    AFTER = "after"


@dataclass
class ScheduleItem:
    """
    Anything that occupies time for an owner: an appointment, a booked
    timeslot or a synced remote event.
    """
    id: str
    owner_id: str
    start: datetime
    end: datetime
    kind: str = "appointment"
    status: str = "scheduled"
    title: Optional[str] = None
    priority: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    buffer_before: int = 0
    buffer_after: int = 0
    location: Optional[str] = None
    meeting_type: str = "in_person"
    appointment_type: str = "consultation"
    timezone: str = "UTC"

    @property
    def effective_start(self) -> datetime:
        return self.start - timedelta(minutes=self.buffer_before)

    @property
    def effective_end(self) -> datetime:
        return self.end + timedelta(minutes=self.buffer_after)

    @property
    def is_active(self) -> bool:
        return self.status != "cancelled"

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "owner_id": self.owner_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status,
            "title": self.title,
            "priority": self.priority,
        }


@dataclass
class AlternativeSlot:
    """A scored candidate time for rescheduling."""
    start: datetime
    end: datetime
    score: float
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "score": self.score,
            "reasons": list(self.reasons),
        }


@dataclass
class ResolutionSuggestion:
    """A possible way out of a conflict."""
    action: str
    description: str
    target_id: Optional[str] = None
    proposed_start: Optional[datetime] = None
    proposed_end: Optional[datetime] = None
    score: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "description": self.description,
            "target_id": self.target_id,
            "proposed_start": self.proposed_start.isoformat() if self.proposed_start else None,
            "proposed_end": self.proposed_end.isoformat() if self.proposed_end else None,
            "score": self.score,
            "metadata": dict(self.metadata),
        }


@dataclass
class Conflict:
    """A detected scheduling conflict and its resolution state."""
    type: ConflictType
    severity: ConflictSeverity
    subject: ScheduleItem
    conflicting: ScheduleItem
    overlap_minutes: int = 0
    intrusion_minutes: int = 0
    buffer_side: Optional[BufferSide] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ConflictState = ConflictState.DETECTED
    suggestions: List[ResolutionSuggestion] = field(default_factory=list)
    enrichment: Dict[str, Any] = field(default_factory=dict)
    resolution: Optional[Dict[str, Any]] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def _transition(self, target: ConflictState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateError(self.state.value, target.value)
        self.state = target

    def suggest(self, suggestions: List[ResolutionSuggestion]) -> None:
        self._transition(ConflictState.SUGGESTED)
        self.suggestions = list(suggestions)

    def resolve(self, resolution: Dict[str, Any]) -> None:
        self._transition(ConflictState.RESOLVED)
        self.resolution = resolution

    def dismiss(self, reason: Optional[str] = None) -> None:
        self._transition(ConflictState.DISMISSED)
        self.resolution = {"action": "dismissed", "reason": reason}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "state": self.state.value,
            "subject": self.subject.to_dict(),
            "conflicting": self.conflicting.to_dict(),
            "overlap_minutes": self.overlap_minutes,
            "intrusion_minutes": self.intrusion_minutes,
            "buffer_side": self.buffer_side.value if self.buffer_side else None,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "enrichment": {key: _serialize(value) for key, value in self.enrichment.items()},
            "resolution": self.resolution,
        }


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value
