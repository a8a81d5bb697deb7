"""
Enhanced conflict detection.

EnhancedConflictDetector wraps any ConflictDetector and adds optional
enrichment stages on top of the wrapped detector's results:

- travel: flags adjacent meetings that cannot be reached in time
- preference: predicts the owner's preferred resolution from past decisions
- alternatives: attaches the best alternative times for the subject

A failing stage is logged at WARNING and skipped; the conflict is returned
without that enrichment. Errors from the wrapped detector propagate.
"""

import logging
import re
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from calsync import config
from calsync.models.conflicts import (
    Conflict,
    ConflictType,
    ResolutionStrategy,
    ScheduleItem,
)
from calsync.services.conflict_detector import ConflictDetector, severity_for, sort_conflicts
from calsync.utils.intervals import gap_minutes
from calsync.utils.timezone_utils import utc_to_local

logger = logging.getLogger(__name__)

VIRTUAL_MEETING_TYPES = {"virtual", "phone", "telemedicine"}

# Minutes
SAME_LOCATION_MINUTES = 5
VIRTUAL_WRAP_UP_MINUTES = 15
PHYSICAL_TO_VIRTUAL_MINUTES = 10
DEFAULT_TRAVEL_MINUTES = 30

# Traffic multipliers by local hour range [start, end)
TRAFFIC_MULTIPLIERS: List[Tuple[int, int, float]] = [
    (0, 6, 1.0),
    (6, 9, 1.8),
    (9, 16, 1.2),
    (16, 19, 1.7),
    (19, 24, 1.1),
]

DistanceLookup = Callable[[str, str], Awaitable[float]]


@dataclass
class TravelEstimate:
    minutes: int
    mode: str
    confidence: float

    def to_dict(self) -> Dict[str, object]:
        return {"minutes": self.minutes, "mode": self.mode, "confidence": self.confidence}


def _normalize_address(address: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (address or "").lower()).strip()


def same_location(first: Optional[str], second: Optional[str]) -> bool:
    a, b = _normalize_address(first), _normalize_address(second)
    if not a or not b:
        return False
    return a == b or a in b or b in a


def traffic_multiplier(hour: int) -> float:
    for start, end, multiplier in TRAFFIC_MULTIPLIERS:
        if start <= hour < end:
            return multiplier
    return 1.0


class TravelTimeEstimator:
    """
    Heuristic travel time between two consecutive meetings.

    ``lookup`` is an optional async callable returning travel minutes between
    two addresses (a maps integration); without it physical-to-physical
    travel uses a default adjusted for traffic at the departure hour.
    """

    def __init__(self, lookup: Optional[DistanceLookup] = None, default_minutes: int = DEFAULT_TRAVEL_MINUTES):
        self.lookup = lookup
        self.default_minutes = default_minutes

    @staticmethod
    def is_virtual(item: ScheduleItem) -> bool:
        return item.meeting_type in VIRTUAL_MEETING_TYPES

    async def estimate(self, origin: ScheduleItem, destination: ScheduleItem) -> TravelEstimate:
        from_virtual, to_virtual = self.is_virtual(origin), self.is_virtual(destination)

        if from_virtual and to_virtual:
            return TravelEstimate(0, "none", 1.0)
        if from_virtual:
            return TravelEstimate(VIRTUAL_WRAP_UP_MINUTES + self.default_minutes, "transition", 0.7)
        if to_virtual:
            return TravelEstimate(PHYSICAL_TO_VIRTUAL_MINUTES, "setup", 0.7)
        if same_location(origin.location, destination.location):
            return TravelEstimate(SAME_LOCATION_MINUTES, "walking", 0.9)

        if self.lookup and origin.location and destination.location:
            try:
                minutes = await self.lookup(origin.location, destination.location)
                return TravelEstimate(int(round(minutes)), "driving", 0.8)
            except Exception as e:
                logger.warning(f"Travel lookup failed ({origin.location} -> {destination.location}): {e}")
                return TravelEstimate(self.default_minutes, "unknown", 0.1)

        departure_hour = utc_to_local(origin.end, origin.timezone).hour
        minutes = int(round(self.default_minutes * traffic_multiplier(departure_hour)))
        return TravelEstimate(minutes, "driving", 0.5)


class PreferencePredictor:
    """
    Learns which resolution an owner picks for similar conflicts.

    Similar = same conflict type and severity. Confidence is the share of the
    most frequent action, scaled down until ``min_samples`` decisions exist.
    """

    DEFAULT_ACTION = ResolutionStrategy.USER_CHOICE.value
    DEFAULT_CONFIDENCE = 0.3

    def __init__(self, history_size: int = 200, min_samples: int = 5):
        self.min_samples = min_samples
        self._history: Dict[str, Deque[Tuple[str, str, str]]] = defaultdict(lambda: deque(maxlen=history_size))

    def record_decision(self, owner_id: str, conflict: Conflict, action: str) -> None:
        self._history[owner_id].append((conflict.type.value, conflict.severity.value, action))

    def predict(self, owner_id: str, conflict: Conflict) -> Dict[str, object]:
        matching = [
            action for kind, severity, action in self._history.get(owner_id, ())
            if kind == conflict.type.value and severity == conflict.severity.value
        ]
        if not matching:
            return {"action": self.DEFAULT_ACTION, "confidence": self.DEFAULT_CONFIDENCE, "samples": 0}

        action, count = Counter(matching).most_common(1)[0]
        confidence = (count / len(matching)) * min(1.0, len(matching) / self.min_samples)
        return {"action": action, "confidence": round(confidence, 3), "samples": len(matching)}


class EnhancedConflictDetector(ConflictDetector):
    """Decorates a ConflictDetector with travel, preference and alternative enrichment."""

    def __init__(
        self,
        inner: ConflictDetector,
        travel: Optional[TravelTimeEstimator] = None,
        preferences: Optional[PreferencePredictor] = None,
        alternatives: Optional[Callable[[ScheduleItem, Sequence[ScheduleItem]], list]] = None,
        travel_margin_minutes: int = config.TRAVEL_MARGIN_MINUTES,
        max_alternatives: int = config.ALTERNATIVE_MAX_RESULTS,
    ):
        self.inner = inner
        self.travel = travel or TravelTimeEstimator()
        self.preferences = preferences or PreferencePredictor()
        self.alternatives = alternatives or getattr(inner, "alternatives_for", None)
        self.travel_margin_minutes = travel_margin_minutes
        self.max_alternatives = max_alternatives

    @staticmethod
    def neighbours(subject: ScheduleItem, timeline: Sequence[ScheduleItem]) -> List[ScheduleItem]:
        """
        The meetings immediately before and after ``subject`` on its owner's
        timeline. A side is empty when the nearest meeting there overlaps the
        subject, since nothing has to be travelled.
        """
        others = [
            i for i in timeline
            if i.id != subject.id and i.owner_id == subject.owner_id and i.is_active
        ]
        result = []
        earlier = [i for i in others if i.start < subject.start]
        if earlier:
            previous = max(earlier, key=lambda i: (i.end, i.start, i.id))
            if previous.end <= subject.start:
                result.append(previous)
        later = [i for i in others if i.end > subject.end]
        if later:
            following = min(later, key=lambda i: (i.start, i.end, i.id))
            if following.start >= subject.end:
                result.append(following)
        return result

    async def _travel_conflicts(self, subject: ScheduleItem, adjacent: Sequence[ScheduleItem]) -> List[Conflict]:
        """Adjacent meetings that cannot be reached in time."""
        conflicts = []
        if not subject.is_active:
            return conflicts
        for other in adjacent:
            first, second = (other, subject) if other.end <= subject.start else (subject, other)

            gap = gap_minutes(first.end, second.start)
            estimate = await self.travel.estimate(first, second)
            required = estimate.minutes + self.travel_margin_minutes if estimate.minutes else 0
            if required > gap:
                conflict = Conflict(
                    type=ConflictType.TRAVEL_INFEASIBLE,
                    severity=severity_for(required - gap),
                    subject=subject,
                    conflicting=other,
                )
                conflict.enrichment["travel"] = {
                    **estimate.to_dict(),
                    "gap_minutes": gap,
                    "required_minutes": required,
                    "shortfall_minutes": required - gap,
                }
                conflicts.append(conflict)
        return conflicts

    async def _enrich(self, conflict: Conflict, items: Sequence[ScheduleItem]) -> Conflict:
        try:
            conflict.enrichment["predicted_preference"] = self.preferences.predict(
                conflict.subject.owner_id, conflict
            )
        except Exception as e:
            logger.warning(f"Preference stage failed for conflict {conflict.id}: {e}")

        if self.alternatives is not None:
            try:
                found = self.alternatives(conflict.subject, items)
                conflict.enrichment["alternatives"] = list(found)[: self.max_alternatives]
            except Exception as e:
                logger.warning(f"Alternative stage failed for conflict {conflict.id}: {e}")
        return conflict

    async def _detect_against(
        self,
        subject: ScheduleItem,
        candidates: Sequence[ScheduleItem],
        timeline: Sequence[ScheduleItem],
    ) -> List[Conflict]:
        """
        Conflicts between ``subject`` and ``candidates``. Adjacency for the
        travel stage is judged on the whole ``timeline``.
        """
        conflicts = await self.inner.detect(subject, candidates)

        # a pair already reported (e.g. as a buffer violation) is not reported again for travel
        covered = {c.conflicting.id for c in conflicts}
        allowed = {c.id for c in candidates}
        try:
            adjacent = [
                n for n in self.neighbours(subject, timeline)
                if n.id in allowed and n.id not in covered
            ]
            conflicts.extend(await self._travel_conflicts(subject, adjacent))
        except Exception as e:
            logger.warning(f"Travel stage failed for {subject.id}: {e}")

        for conflict in conflicts:
            await self._enrich(conflict, timeline)
        return sort_conflicts(conflicts)

    async def detect(self, subject: ScheduleItem, items: Sequence[ScheduleItem]) -> List[Conflict]:
        return await self._detect_against(subject, items, items)

    async def detect_all(self, items: Sequence[ScheduleItem]) -> List[Conflict]:
        ordered = sorted(items, key=lambda i: (i.created_at, i.id))
        conflicts: List[Conflict] = []
        for index, subject in enumerate(ordered):
            conflicts.extend(await self._detect_against(subject, ordered[:index], ordered))
        return sort_conflicts(conflicts)

    async def resolve(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        items: Sequence[ScheduleItem],
    ) -> Conflict:
        if strategy == ResolutionStrategy.AUTOMATIC:
            # history may have grown since detection
            try:
                conflict.enrichment["predicted_preference"] = self.preferences.predict(
                    conflict.subject.owner_id, conflict
                )
            except Exception as e:
                logger.warning(f"Preference stage failed for conflict {conflict.id}: {e}")

        resolved = await self.inner.resolve(conflict, strategy, items)
        if resolved.resolution:
            self.record_outcome(resolved)
        return resolved

    def record_outcome(self, conflict: Conflict) -> None:
        """
        Feed a resolved conflict back into the preference history.

        Only actions that appear in the conflict's suggestion catalogue are
        learned; anything else could never be replayed automatically.
        """
        action = (conflict.resolution or {}).get("action")
        if action not in {s.action for s in conflict.suggestions}:
            return
        try:
            self.preferences.record_decision(conflict.subject.owner_id, conflict, action)
        except Exception as e:
            logger.warning(f"Could not record decision for conflict {conflict.id}: {e}")
