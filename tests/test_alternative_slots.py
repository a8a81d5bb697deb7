"""
Tests for alternative slot search
"""

from calsync.services.alternative_slots import AlternativeSlotFinder, SlotSearchSettings

from tests.conftest import FIXED_NOW, make_item, utc


class TestFind:

    def test_closest_free_slots_rank_first(self):
        item = make_item("new", utc(2030, 1, 14, 10))
        busy = [item, make_item("existing", utc(2030, 1, 14, 10))]

        slots = AlternativeSlotFinder().find(item, busy, not_before=FIXED_NOW)

        assert [s.start for s in slots] == [utc(2030, 1, 14, 9), utc(2030, 1, 14, 11), utc(2030, 1, 14, 11, 15)]
        assert slots[0].score == 113.0
        assert slots[2].score == 112.5
        assert "within business hours" in slots[0].reasons
        assert all(s.end - s.start == item.duration for s in slots)

    def test_buffers_are_respected(self):
        item = make_item("new", utc(2030, 1, 14, 10))
        existing = make_item("existing", utc(2030, 1, 14, 10), buffer_before=15, buffer_after=15)

        slots = AlternativeSlotFinder().find(item, [existing], not_before=FIXED_NOW)

        assert [s.start for s in slots] == [utc(2030, 1, 14, 11, 15), utc(2030, 1, 14, 11, 30), utc(2030, 1, 14, 11, 45)]

    def test_inactive_and_foreign_items_do_not_block(self):
        item = make_item("new", utc(2030, 1, 14, 10))
        busy = [
            make_item("cancelled", utc(2030, 1, 14, 9), status="cancelled"),
            make_item("someone-else", utc(2030, 1, 14, 9), owner_id="owner-2"),
        ]

        slots = AlternativeSlotFinder().find(item, busy, not_before=FIXED_NOW, limit=1)

        assert [s.start for s in slots] == [utc(2030, 1, 14, 9)]

    def test_never_suggests_the_past(self):
        item = make_item("new", utc(2030, 1, 14, 10))
        slots = AlternativeSlotFinder().find(item, [], not_before=utc(2030, 1, 14, 12))
        assert all(s.start >= utc(2030, 1, 14, 12) for s in slots)

    def test_no_candidates_inside_horizon(self):
        # Saturday, weekends excluded and no days beyond it searched
        item = make_item("new", utc(2030, 1, 19, 10))
        finder = AlternativeSlotFinder(SlotSearchSettings(horizon_days=1))
        assert finder.find(item, [], not_before=FIXED_NOW) == []


class TestNextFree:

    def test_skips_weekend(self):
        item = make_item("late", utc(2030, 1, 18, 16))
        slot = AlternativeSlotFinder().next_free(item, [], after=utc(2030, 1, 18, 16, 30))
        assert slot.start == utc(2030, 1, 21, 9)

    def test_business_hours_are_local(self):
        item = make_item("ny", utc(2030, 1, 14, 15), timezone="America/New_York")
        slot = AlternativeSlotFinder().next_free(item, [], after=utc(2030, 1, 14, 0))
        # 09:00 EST
        assert slot.start == utc(2030, 1, 14, 14)

    def test_first_gap_after_busy_block(self):
        item = make_item("loser", utc(2030, 1, 14, 10, 30))
        busy = [
            make_item("winner", utc(2030, 1, 14, 10)),
            make_item("next", utc(2030, 1, 14, 11, 30), minutes=30),
        ]
        slot = AlternativeSlotFinder().next_free(item, busy, after=utc(2030, 1, 14, 11))
        assert slot.start == utc(2030, 1, 14, 12)
