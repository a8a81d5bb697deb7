"""Half-open interval helpers shared by the timeslot and conflict engines."""
from datetime import datetime
from typing import Union

Point = Union[datetime, int, float]


def intervals_overlap(start1: Point, end1: Point, start2: Point, end2: Point) -> bool:
    """True when [start1, end1) and [start2, end2) intersect."""
    return start1 < end2 and start2 < end1


def overlap_minutes(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> int:
    """Minutes of intersection between two datetime intervals (0 if disjoint)."""
    latest_start = max(start1, start2)
    earliest_end = min(end1, end2)
    if earliest_end <= latest_start:
        return 0
    return int((earliest_end - latest_start).total_seconds() // 60)


def gap_minutes(end1: datetime, start2: datetime) -> int:
    """Minutes between the end of one interval and the start of the next."""
    return int((start2 - end1).total_seconds() // 60)
