"""
Tests for rule-based conflict detection and the resolution strategies
"""

import pytest

from calsync.exceptions import InvalidStateError, ValidationError
from calsync.models.conflicts import (
    BufferSide,
    Conflict,
    ConflictSeverity,
    ConflictState,
    ConflictType,
    ResolutionStrategy,
)
from calsync.services.alternative_slots import AlternativeSlotFinder, SlotSearchSettings
from calsync.services.conflict_detector import BaseConflictDetector, choose_suggestion, sort_conflicts

from tests.conftest import fixed_clock, make_item, utc


class TestDetection:
    """Overlap and buffer rules"""

    async def test_buffer_violation_after_existing(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10), buffer_before=15, buffer_after=15)
        new = make_item("b", utc(2030, 1, 14, 11, 5))

        conflicts = await base_detector.detect(new, [existing])

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.type == ConflictType.BUFFER_VIOLATION
        assert conflict.severity == ConflictSeverity.LOW
        assert conflict.buffer_side == BufferSide.AFTER
        assert conflict.intrusion_minutes == 10
        assert conflict.overlap_minutes == 0

    async def test_buffer_violation_before_existing(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10), buffer_before=15, buffer_after=15)
        new = make_item("b", utc(2030, 1, 14, 8, 55))

        conflict = (await base_detector.detect(new, [existing]))[0]

        assert conflict.buffer_side == BufferSide.BEFORE
        assert conflict.intrusion_minutes == 10

    async def test_own_buffer_counts_too(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10))
        new = make_item("b", utc(2030, 1, 14, 11, 10), buffer_before=20)

        conflict = (await base_detector.detect(new, [existing]))[0]

        assert conflict.type == ConflictType.BUFFER_VIOLATION
        assert conflict.intrusion_minutes == 10

    @pytest.mark.parametrize("offset_minutes,severity", [
        (55, ConflictSeverity.LOW),
        (45, ConflictSeverity.MEDIUM),
        (30, ConflictSeverity.HIGH),
    ])
    async def test_overlap_severity(self, base_detector, offset_minutes, severity):
        existing = make_item("a", utc(2030, 1, 14, 10))
        new = make_item("b", utc(2030, 1, 14, 10, offset_minutes))

        conflict = (await base_detector.detect(new, [existing]))[0]

        assert conflict.type == ConflictType.TIME_OVERLAP
        assert conflict.overlap_minutes == 60 - offset_minutes
        assert conflict.severity == severity

    async def test_adjacent_items_do_not_conflict(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10))
        assert await base_detector.detect(make_item("b", utc(2030, 1, 14, 11)), [existing]) == []

    async def test_other_owners_and_cancelled_items_are_ignored(self, base_detector):
        new = make_item("b", utc(2030, 1, 14, 10))
        items = [
            make_item("a", utc(2030, 1, 14, 10), owner_id="owner-2"),
            make_item("c", utc(2030, 1, 14, 10), status="cancelled"),
            new,
        ]
        assert await base_detector.detect(new, items) == []

    async def test_detect_all_reports_each_pair_once(self, base_detector):
        first = make_item("first", utc(2030, 1, 14, 10), created_at=utc(2030, 1, 1))
        second = make_item("second", utc(2030, 1, 14, 10, 50), created_at=utc(2030, 1, 2))
        third = make_item("third", utc(2030, 1, 14, 10, 30), created_at=utc(2030, 1, 3))

        conflicts = await base_detector.detect_all([third, first, second])

        pairs = [(c.subject.id, c.conflicting.id) for c in conflicts]
        assert sorted(pairs) == [("second", "first"), ("third", "first"), ("third", "second")]
        assert conflicts[0].severity == ConflictSeverity.HIGH

    def test_sort_conflicts_most_severe_first(self):
        low = make_item("x", utc(2030, 1, 14, 9))
        conflicts = [
            Conflict(type=ConflictType.BUFFER_VIOLATION, severity=ConflictSeverity.LOW, subject=low, conflicting=low),
            Conflict(type=ConflictType.TIME_OVERLAP, severity=ConflictSeverity.HIGH, subject=low, conflicting=low),
        ]
        assert [c.severity for c in sort_conflicts(conflicts)] == [ConflictSeverity.HIGH, ConflictSeverity.LOW]


class TestSuggestions:

    async def test_overlap_catalogue(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10, 30))
        new = make_item("b", utc(2030, 1, 14, 10))
        conflict = (await base_detector.detect(new, [existing]))[0]

        suggestions = await base_detector.suggestions_for(conflict, [existing, new])

        assert [s.action for s in suggestions] == ["reschedule_new", "reschedule_existing", "shorten_duration"]
        shorten = suggestions[-1]
        assert (shorten.proposed_start, shorten.proposed_end) == (utc(2030, 1, 14, 10), utc(2030, 1, 14, 10, 30))

    async def test_buffer_catalogue(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10), buffer_before=15, buffer_after=15)
        new = make_item("b", utc(2030, 1, 14, 11, 5))
        conflict = (await base_detector.detect(new, [existing]))[0]

        adjust, shift = await base_detector.suggestions_for(conflict, [existing, new])

        assert adjust.action == "adjust_buffer"
        assert adjust.metadata == {"side": "after", "current_minutes": 15, "new_minutes": 5}
        assert shift.action == "reschedule_new"
        assert shift.proposed_start == utc(2030, 1, 14, 11, 15)


class TestResolution:

    async def test_user_choice_waits_for_a_pick(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10))
        new = make_item("b", utc(2030, 1, 14, 10, 30))
        conflict = (await base_detector.detect(new, [existing]))[0]

        await base_detector.resolve(conflict, ResolutionStrategy.USER_CHOICE, [existing, new])
        assert conflict.state == ConflictState.SUGGESTED

        with pytest.raises(ValidationError):
            choose_suggestion(conflict, "teleport")

        choose_suggestion(conflict, "reschedule_existing")
        assert conflict.state == ConflictState.RESOLVED
        assert conflict.resolution["strategy"] == "user_choice"
        assert conflict.resolution["target_id"] == "a"

        with pytest.raises(InvalidStateError):
            await base_detector.resolve(conflict, ResolutionStrategy.PRIORITY_BASED, [existing, new])

    async def test_priority_keeps_higher_priority(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10), priority=1)
        new = make_item("b", utc(2030, 1, 14, 10, 30), priority=5)
        conflict = (await base_detector.detect(new, [existing]))[0]

        await base_detector.resolve(conflict, ResolutionStrategy.PRIORITY_BASED, [existing, new])

        assert conflict.resolution["winner_id"] == "b"
        assert conflict.resolution["loser_id"] == "a"
        assert conflict.resolution["action"] == "reschedule_existing"

    async def test_priority_tie_keeps_earlier_created(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10), created_at=utc(2030, 1, 1))
        new = make_item("b", utc(2030, 1, 14, 10, 30), created_at=utc(2030, 1, 2))
        conflict = (await base_detector.detect(new, [existing]))[0]

        await base_detector.resolve(conflict, ResolutionStrategy.PRIORITY_BASED, [existing, new])

        assert conflict.resolution["winner_id"] == "a"

    async def test_time_based_moves_later_item_after_winner(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10))
        new = make_item("b", utc(2030, 1, 14, 10, 30))
        conflict = (await base_detector.detect(new, [existing]))[0]

        await base_detector.resolve(conflict, ResolutionStrategy.TIME_BASED, [existing, new])

        assert conflict.resolution["winner_id"] == "a"
        assert conflict.resolution["proposed_start"] == "2030-01-14T11:00:00+00:00"

    async def test_automatic_follows_confident_prediction(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10))
        new = make_item("b", utc(2030, 1, 14, 10, 30))
        conflict = (await base_detector.detect(new, [existing]))[0]
        conflict.enrichment["predicted_preference"] = {"action": "reschedule_existing", "confidence": 0.8}

        await base_detector.resolve(conflict, ResolutionStrategy.AUTOMATIC, [existing, new])

        assert conflict.resolution["basis"] == "predicted_preference"
        assert conflict.resolution["action"] == "reschedule_existing"
        assert conflict.resolution["target_id"] == "a"

    @pytest.mark.parametrize("prediction", [
        {"action": "reschedule_existing", "confidence": 0.5},
        {"action": "user_choice", "confidence": 0.95},
    ])
    async def test_automatic_uses_top_alternative_otherwise(self, base_detector, prediction):
        existing = make_item("a", utc(2030, 1, 14, 10))
        new = make_item("b", utc(2030, 1, 14, 10, 30))
        conflict = (await base_detector.detect(new, [existing]))[0]
        conflict.enrichment["predicted_preference"] = prediction

        await base_detector.resolve(conflict, ResolutionStrategy.AUTOMATIC, [existing, new])

        assert conflict.resolution["basis"] == "top_alternative"
        assert conflict.resolution["target_id"] == "b"

    async def test_automatic_falls_back_to_priority(self):
        detector = BaseConflictDetector(
            AlternativeSlotFinder(SlotSearchSettings(horizon_days=1)), clock=fixed_clock
        )
        # Saturday: nothing to move to inside the horizon
        existing = make_item("a", utc(2030, 1, 19, 10), priority=2)
        new = make_item("b", utc(2030, 1, 19, 10, 30))
        conflict = (await detector.detect(new, [existing]))[0]

        await detector.resolve(conflict, ResolutionStrategy.AUTOMATIC, [existing, new])

        assert conflict.resolution["basis"] == "priority_fallback"
        assert conflict.resolution["action"] == "keep_winner"
        assert conflict.resolution["winner_id"] == "a"

    async def test_dismiss_needs_suggested_state(self, base_detector):
        existing = make_item("a", utc(2030, 1, 14, 10))
        conflict = (await base_detector.detect(make_item("b", utc(2030, 1, 14, 10)), [existing]))[0]

        with pytest.raises(InvalidStateError):
            conflict.dismiss("not now")
