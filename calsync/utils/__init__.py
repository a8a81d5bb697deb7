"""
Utility modules for the calendar sync core.
"""
from calsync.utils.intervals import intervals_overlap, overlap_minutes
from calsync.utils.timezone_utils import ensure_utc, local_to_utc, utc_to_local

__all__ = [
    "intervals_overlap",
    "overlap_minutes",
    "ensure_utc",
    "local_to_utc",
    "utc_to_local",
]
