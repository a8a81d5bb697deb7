"""
Conflict Detector & Resolver

Detects overlap and buffer conflicts between schedule items of the same
owner, attaches resolution suggestions and applies a resolution strategy.

Detection rules:
- time_overlap: the core intervals of two active items intersect
- buffer_violation: one core interval reaches into the other's buffer zone
  without touching its core; tagged with the side of the buffer hit

Severity is taken from core overlap minutes (<=5 low, <=15 medium,
otherwise high), so a pure buffer violation is always low.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from calsync import config
from calsync.exceptions import InvalidStateError, ValidationError
from calsync.models.conflicts import (
    SEVERITY_RANK,
    AlternativeSlot,
    BufferSide,
    Conflict,
    ConflictSeverity,
    ConflictState,
    ConflictType,
    ResolutionStrategy,
    ResolutionSuggestion,
    ScheduleItem,
)
from calsync.services.alternative_slots import AlternativeSlotFinder
from calsync.utils.intervals import intervals_overlap, overlap_minutes
from calsync.utils.timezone_utils import now_utc

logger = logging.getLogger(__name__)

LOW_SEVERITY_MAX_MINUTES = 5
MEDIUM_SEVERITY_MAX_MINUTES = 15
MIN_SHORTENED_MINUTES = 15


def severity_for(minutes: int) -> ConflictSeverity:
    if minutes <= LOW_SEVERITY_MAX_MINUTES:
        return ConflictSeverity.LOW
    if minutes <= MEDIUM_SEVERITY_MAX_MINUTES:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.HIGH


def sort_conflicts(conflicts: Iterable[Conflict]) -> List[Conflict]:
    """Most severe first, then chronologically."""
    return sorted(
        conflicts,
        key=lambda c: (-SEVERITY_RANK[c.severity], c.subject.start, c.conflicting.start, c.conflicting.id),
    )


def priority_order(item: ScheduleItem) -> Tuple[int, datetime, str]:
    """Sort key that puts the item that should be kept first."""
    return (-item.priority, item.created_at, item.id)


class ConflictDetector(ABC):
    """Detector/resolver interface shared by the base and enhanced layers."""

    @abstractmethod
    async def detect(self, subject: ScheduleItem, items: Sequence[ScheduleItem]) -> List[Conflict]:
        """Conflicts between ``subject`` and each of ``items``."""

    @abstractmethod
    async def detect_all(self, items: Sequence[ScheduleItem]) -> List[Conflict]:
        """Every conflicting pair in ``items``, each pair reported once."""

    @abstractmethod
    async def resolve(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        items: Sequence[ScheduleItem],
    ) -> Conflict:
        """Attach suggestions and apply ``strategy``."""

    def record_outcome(self, conflict: Conflict) -> None:
        """Hook for detectors that learn from resolved conflicts."""


class BaseConflictDetector(ConflictDetector):
    """Rule-based detection plus the four resolution strategies."""

    def __init__(
        self,
        finder: Optional[AlternativeSlotFinder] = None,
        auto_confidence: float = config.AUTO_RESOLVE_CONFIDENCE,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.finder = finder or AlternativeSlotFinder()
        self.auto_confidence = auto_confidence
        self.clock = clock

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _compare(self, subject: ScheduleItem, other: ScheduleItem) -> Optional[Conflict]:
        if other.id == subject.id or other.owner_id != subject.owner_id:
            return None
        if not (subject.is_active and other.is_active):
            return None

        if intervals_overlap(subject.start, subject.end, other.start, other.end):
            minutes = overlap_minutes(subject.start, subject.end, other.start, other.end)
            return Conflict(
                type=ConflictType.TIME_OVERLAP,
                severity=severity_for(minutes),
                subject=subject,
                conflicting=other,
                overlap_minutes=minutes,
                detected_at=self.clock(),
            )

        into_other = overlap_minutes(subject.start, subject.end, other.effective_start, other.effective_end)
        into_subject = overlap_minutes(other.start, other.end, subject.effective_start, subject.effective_end)
        if into_other or into_subject:
            side = BufferSide.AFTER if subject.start >= other.end else BufferSide.BEFORE
            return Conflict(
                type=ConflictType.BUFFER_VIOLATION,
                severity=severity_for(0),
                subject=subject,
                conflicting=other,
                intrusion_minutes=max(into_other, into_subject),
                buffer_side=side,
                detected_at=self.clock(),
            )
        return None

    async def detect(self, subject: ScheduleItem, items: Sequence[ScheduleItem]) -> List[Conflict]:
        conflicts = []
        for other in items:
            conflict = self._compare(subject, other)
            if conflict:
                conflicts.append(conflict)
        return sort_conflicts(conflicts)

    async def detect_all(self, items: Sequence[ScheduleItem]) -> List[Conflict]:
        # Later-created item of each pair is the subject
        ordered = sorted(items, key=lambda i: (i.created_at, i.id))
        conflicts: List[Conflict] = []
        for index, subject in enumerate(ordered):
            conflicts.extend(await self.detect(subject, ordered[:index]))
        logger.debug(f"Evaluated {len(ordered)} items, {len(conflicts)} conflicts")
        return sort_conflicts(conflicts)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def alternatives_for(self, item: ScheduleItem, items: Sequence[ScheduleItem]) -> List[AlternativeSlot]:
        return self.finder.find(item, items, not_before=self.clock())

    def _reschedule(
        self,
        action: str,
        item: ScheduleItem,
        items: Sequence[ScheduleItem],
        score: float,
    ) -> Optional[ResolutionSuggestion]:
        alternatives = self.alternatives_for(item, items)
        if not alternatives:
            return None
        best = alternatives[0]
        return ResolutionSuggestion(
            action=action,
            description=f"Move '{item.title or item.id}' to {best.start.isoformat()}",
            target_id=item.id,
            proposed_start=best.start,
            proposed_end=best.end,
            score=score,
            metadata={"alternative_score": best.score},
        )

    def _shorten(self, conflict: Conflict) -> Optional[ResolutionSuggestion]:
        subject, other = conflict.subject, conflict.conflicting
        if subject.start < other.start:
            start, end = subject.start, other.start
        elif subject.end > other.end:
            start, end = other.end, subject.end
        else:
            return None
        if end - start < timedelta(minutes=MIN_SHORTENED_MINUTES):
            return None
        return ResolutionSuggestion(
            action="shorten_duration",
            description=f"Shorten '{subject.title or subject.id}' to avoid the overlap",
            target_id=subject.id,
            proposed_start=start,
            proposed_end=end,
            score=0.5,
        )

    def _buffer_suggestions(self, conflict: Conflict) -> List[ResolutionSuggestion]:
        subject, other = conflict.subject, conflict.conflicting
        if conflict.buffer_side == BufferSide.AFTER:
            current = other.buffer_after
            start = max(other.effective_end, other.end + timedelta(minutes=subject.buffer_before))
            end = start + subject.duration
        else:
            current = other.buffer_before
            end = min(other.effective_start, other.start - timedelta(minutes=subject.buffer_after))
            start = end - subject.duration
        side = conflict.buffer_side.value if conflict.buffer_side else BufferSide.BEFORE.value

        return [
            ResolutionSuggestion(
                action="adjust_buffer",
                description=f"Reduce the {side} buffer of '{other.title or other.id}' "
                            f"by {conflict.intrusion_minutes} minutes",
                target_id=other.id,
                score=0.8,
                metadata={
                    "side": side,
                    "current_minutes": current,
                    "new_minutes": max(0, current - conflict.intrusion_minutes),
                },
            ),
            ResolutionSuggestion(
                action="reschedule_new",
                description=f"Shift '{subject.title or subject.id}' clear of the buffer",
                target_id=subject.id,
                proposed_start=start,
                proposed_end=end,
                score=0.7,
            ),
        ]

    async def suggestions_for(self, conflict: Conflict, items: Sequence[ScheduleItem]) -> List[ResolutionSuggestion]:
        """Suggestion catalogue for the conflict's type, best first."""
        suggestions: List[Optional[ResolutionSuggestion]] = []
        if conflict.type == ConflictType.TIME_OVERLAP:
            suggestions.append(self._reschedule("reschedule_new", conflict.subject, items, 0.9))
            suggestions.append(self._reschedule("reschedule_existing", conflict.conflicting, items, 0.7))
            suggestions.append(self._shorten(conflict))
        elif conflict.type == ConflictType.BUFFER_VIOLATION:
            suggestions.extend(self._buffer_suggestions(conflict))
        elif conflict.type == ConflictType.TRAVEL_INFEASIBLE:
            if conflict.subject.meeting_type == "in_person":
                suggestions.append(ResolutionSuggestion(
                    action="change_to_virtual",
                    description=f"Hold '{conflict.subject.title or conflict.subject.id}' virtually",
                    target_id=conflict.subject.id,
                    score=0.8,
                ))
            suggestions.append(self._reschedule("reschedule_new", conflict.subject, items, 0.6))
        elif conflict.type == ConflictType.UPDATE_CONFLICT:
            suggestions.append(ResolutionSuggestion(
                action="keep_local",
                description="Keep the local appointment and overwrite the remote event",
                target_id=conflict.subject.id,
                score=0.6,
            ))
            suggestions.append(ResolutionSuggestion(
                action="keep_remote",
                description="Take the remote event's time and location",
                target_id=conflict.subject.id,
                score=0.6,
            ))

        result = [s for s in suggestions if s is not None]
        result.sort(key=lambda s: -s.score)
        return result

    async def _ensure_suggested(self, conflict: Conflict, items: Sequence[ScheduleItem]) -> None:
        if conflict.state == ConflictState.DETECTED:
            conflict.suggest(await self.suggestions_for(conflict, items))
        elif conflict.state != ConflictState.SUGGESTED:
            raise InvalidStateError(conflict.state.value, ConflictState.RESOLVED.value)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _reschedule_action(conflict: Conflict, item: ScheduleItem) -> str:
        # Same names as the suggestion catalogue so outcomes can be learned
        return "reschedule_new" if item.id == conflict.subject.id else "reschedule_existing"

    def _reschedule_resolution(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        winner: ScheduleItem,
        loser: ScheduleItem,
        slot: Optional[AlternativeSlot],
    ) -> Dict[str, object]:
        return {
            "strategy": strategy.value,
            "action": self._reschedule_action(conflict, loser) if slot else "keep_winner",
            "winner_id": winner.id,
            "loser_id": loser.id,
            "target_id": loser.id,
            "proposed_start": slot.start.isoformat() if slot else None,
            "proposed_end": slot.end.isoformat() if slot else None,
        }

    def _resolve_by_priority(self, conflict: Conflict, items: Sequence[ScheduleItem]) -> None:
        winner, loser = sorted((conflict.subject, conflict.conflicting), key=priority_order)
        alternatives = self.alternatives_for(loser, items)
        slot = alternatives[0] if alternatives else None
        conflict.resolve(self._reschedule_resolution(conflict, ResolutionStrategy.PRIORITY_BASED, winner, loser, slot))

    def _resolve_by_time(self, conflict: Conflict, items: Sequence[ScheduleItem]) -> None:
        winner, loser = sorted(
            (conflict.subject, conflict.conflicting),
            key=lambda i: (i.start, i.created_at, i.id),
        )
        slot = self.finder.next_free(loser, items, after=max(winner.end, self.clock()))
        conflict.resolve(self._reschedule_resolution(conflict, ResolutionStrategy.TIME_BASED, winner, loser, slot))

    def _predicted_suggestion(self, conflict: Conflict) -> Optional[ResolutionSuggestion]:
        """The suggestion matching a confident prediction, if there is one."""
        prediction = conflict.enrichment.get("predicted_preference") or {}
        if float(prediction.get("confidence", 0.0)) < self.auto_confidence:
            return None
        predicted = prediction.get("action")
        return next((s for s in conflict.suggestions if s.action == predicted), None)

    def _resolve_automatically(self, conflict: Conflict, items: Sequence[ScheduleItem]) -> None:
        chosen = self._predicted_suggestion(conflict)
        if chosen is not None:
            resolution = {
                "strategy": ResolutionStrategy.AUTOMATIC.value,
                "action": chosen.action,
                "basis": "predicted_preference",
                "confidence": float(conflict.enrichment["predicted_preference"]["confidence"]),
            }
            resolution.update(_suggestion_fields(chosen))
            conflict.resolve(resolution)
            return

        alternatives = conflict.enrichment.get("alternatives")
        top: Optional[AlternativeSlot] = None
        if alternatives:
            top = alternatives[0] if isinstance(alternatives[0], AlternativeSlot) else None
        if top is None:
            found = self.alternatives_for(conflict.subject, items)
            top = found[0] if found else None
        if top is not None:
            conflict.resolve({
                "strategy": ResolutionStrategy.AUTOMATIC.value,
                "action": "reschedule_new",
                "basis": "top_alternative",
                "target_id": conflict.subject.id,
                "proposed_start": top.start.isoformat(),
                "proposed_end": top.end.isoformat(),
            })
            return

        self._resolve_by_priority(conflict, items)
        conflict.resolution["basis"] = "priority_fallback"

    async def resolve(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        items: Sequence[ScheduleItem],
    ) -> Conflict:
        """
        Apply a resolution strategy.

        ``user_choice`` only attaches suggestions and leaves the conflict in
        the suggested state; the other strategies resolve it.

        Raises:
            InvalidStateError: The conflict is already resolved or dismissed
        """
        await self._ensure_suggested(conflict, items)

        if strategy == ResolutionStrategy.PRIORITY_BASED:
            self._resolve_by_priority(conflict, items)
        elif strategy == ResolutionStrategy.TIME_BASED:
            self._resolve_by_time(conflict, items)
        elif strategy == ResolutionStrategy.AUTOMATIC:
            self._resolve_automatically(conflict, items)

        if conflict.resolution:
            logger.info(f"Conflict {conflict.id} resolved via {strategy.value}: {conflict.resolution.get('action')}")
        return conflict


def _suggestion_fields(suggestion: ResolutionSuggestion) -> Dict[str, object]:
    return {
        "target_id": suggestion.target_id,
        "proposed_start": suggestion.proposed_start.isoformat() if suggestion.proposed_start else None,
        "proposed_end": suggestion.proposed_end.isoformat() if suggestion.proposed_end else None,
        "metadata": dict(suggestion.metadata),
    }


def choose_suggestion(conflict: Conflict, action: str, target_id: Optional[str] = None) -> Conflict:
    """
    Resolve a suggested conflict with one of its own suggestions (user choice).

    Raises:
        InvalidStateError: Conflict is not awaiting a choice
        ValidationError: No suggestion matches ``action``/``target_id``
    """
    if conflict.state != ConflictState.SUGGESTED:
        raise InvalidStateError(conflict.state.value, ConflictState.RESOLVED.value)
    chosen = next(
        (s for s in conflict.suggestions
         if s.action == action and (target_id is None or s.target_id == target_id)),
        None,
    )
    if chosen is None:
        raise ValidationError("action", f"No '{action}' suggestion on conflict {conflict.id}")
    resolution = {"strategy": ResolutionStrategy.USER_CHOICE.value, "action": chosen.action}
    resolution.update(_suggestion_fields(chosen))
    conflict.resolve(resolution)
    return conflict
