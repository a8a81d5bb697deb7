"""
Alternative slot search for conflict resolution.

Candidates are laid on a fixed grid inside the owner's local business
hours, filtered against everything already on the calendar (buffers
included) and scored by closeness to the original time.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Iterable, Iterator, List, Optional

from calsync import config
from calsync.models.conflicts import AlternativeSlot, ScheduleItem
from calsync.utils.intervals import intervals_overlap
from calsync.utils.timezone_utils import combine_local, utc_to_local

logger = logging.getLogger(__name__)

BASE_SCORE = 100.0
DISTANCE_PENALTY_PER_HOUR = 2.0
BUSINESS_HOURS_BONUS = 10.0
WEEKDAY_BONUS = 5.0


@dataclass
class SlotSearchSettings:
    granularity_minutes: int = 15
    horizon_days: int = config.ALTERNATIVE_SEARCH_DAYS
    max_results: int = config.ALTERNATIVE_MAX_RESULTS
    business_start_hour: int = config.BUSINESS_HOURS_START
    business_end_hour: int = config.BUSINESS_HOURS_END
    weekdays_only: bool = True


class AlternativeSlotFinder:
    """Finds free, buffer-respecting times for an item that has to move."""

    def __init__(self, settings: Optional[SlotSearchSettings] = None):
        self.settings = settings or SlotSearchSettings()

    def _candidates(self, item: ScheduleItem, search_from: datetime) -> Iterator[datetime]:
        s = self.settings
        step = timedelta(minutes=s.granularity_minutes)
        first_day = utc_to_local(search_from, item.timezone).date()

        for offset in range(s.horizon_days + 1):
            day = first_day + timedelta(days=offset)
            if s.weekdays_only and day.weekday() >= 5:
                continue
            cursor = combine_local(day, time(s.business_start_hour), item.timezone)
            day_close = combine_local(day, time(s.business_end_hour), item.timezone)
            while cursor + item.duration <= day_close:
                if cursor >= search_from:
                    yield cursor
                cursor += step

    def _is_free(self, item: ScheduleItem, start: datetime, busy: List[ScheduleItem]) -> bool:
        end = start + item.duration
        effective_start = start - timedelta(minutes=item.buffer_before)
        effective_end = end + timedelta(minutes=item.buffer_after)
        for other in busy:
            if intervals_overlap(start, end, other.effective_start, other.effective_end):
                return False
            if intervals_overlap(effective_start, effective_end, other.start, other.end):
                return False
        return True

    def _score(self, item: ScheduleItem, start: datetime) -> AlternativeSlot:
        s = self.settings
        local = utc_to_local(start, item.timezone)
        local_end = utc_to_local(start + item.duration, item.timezone)
        hours_away = abs((start - item.start).total_seconds()) / 3600

        score = BASE_SCORE - DISTANCE_PENALTY_PER_HOUR * hours_away
        reasons = [f"{hours_away:.2f}h from original time"]
        if s.business_start_hour <= local.hour and (
            local_end.hour < s.business_end_hour
            or (local_end.hour == s.business_end_hour and local_end.minute == 0)
        ):
            score += BUSINESS_HOURS_BONUS
            reasons.append("within business hours")
        if local.weekday() < 5:
            score += WEEKDAY_BONUS
            reasons.append("weekday")

        return AlternativeSlot(start=start, end=start + item.duration, score=round(score, 2), reasons=reasons)

    def _busy_for(self, item: ScheduleItem, busy: Iterable[ScheduleItem]) -> List[ScheduleItem]:
        return [
            other for other in busy
            if other.id != item.id and other.owner_id == item.owner_id and other.is_active
        ]

    def find(
        self,
        item: ScheduleItem,
        busy: Iterable[ScheduleItem],
        not_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AlternativeSlot]:
        """
        Best-scoring alternatives for ``item``.

        Args:
            item: The item to move (its duration, buffers and zone are kept)
            busy: Everything else on the calendar
            not_before: Earliest allowed start, usually "now"
            limit: Number of results (defaults to the configured maximum)

        Returns:
            Slots ordered by score descending, ties broken by earlier start
        """
        others = self._busy_for(item, busy)
        origin_day_start = combine_local(
            utc_to_local(item.start, item.timezone).date(), time(0), item.timezone
        )
        search_from = max(origin_day_start, not_before) if not_before else origin_day_start

        slots = [
            self._score(item, start)
            for start in self._candidates(item, search_from)
            if start != item.start and self._is_free(item, start, others)
        ]
        slots.sort(key=lambda slot: (-slot.score, slot.start))
        result = slots[: limit or self.settings.max_results]
        logger.debug(f"Found {len(slots)} alternatives for {item.id}, returning {len(result)}")
        return result

    def next_free(
        self,
        item: ScheduleItem,
        busy: Iterable[ScheduleItem],
        after: datetime,
    ) -> Optional[AlternativeSlot]:
        """Earliest free slot starting at or after ``after`` (forward search)."""
        others = self._busy_for(item, busy)
        for start in self._candidates(item, after):
            if self._is_free(item, start, others):
                return self._score(item, start)
        return None
