"""
Buffer Time Calculator

Pure function from (appointment, preference, context) to a BufferWindow.

Order of application:
1. strategy (fixed / percentage / adaptive / dynamic)
2. appointment-type minimums as a floor
3. clamp to [min, max]

Rounding is half-up at every multiplication step so results do not depend
on banker's rounding.
"""

import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from calsync.models.scheduling import (
    Appointment,
    BufferPreference,
    BufferStrategy,
    BufferWindow,
    DynamicBufferTuning,
    ScheduleContext,
)
from calsync.utils.timezone_utils import utc_to_local

# Minimum (before, after) minutes per appointment type
TYPE_MINIMUMS: Dict[str, Tuple[int, int]] = {
    "consultation": (10, 10),
    "procedure": (30, 20),
    "surgery": (60, 30),
    "emergency": (5, 5),
    "follow-up": (10, 10),
    "telemedicine": (5, 5),
}

# (before, after) multipliers per appointment type for adaptive strategies
TYPE_MULTIPLIERS: Dict[str, Tuple[float, float]] = {
    "consultation": (1.0, 1.0),
    "procedure": (1.5, 1.3),
    "surgery": (2.0, 1.5),
    "emergency": (0.5, 0.7),
    "follow-up": (0.8, 0.8),
    "telemedicine": (0.6, 0.6),
}

LONG_APPOINTMENT_MINUTES = 60
SHORT_APPOINTMENT_MINUTES = 30
EARLY_HOUR = 9
LATE_HOUR = 17
OFF_HOURS_MULTIPLIER = 1.2

# Working day used to compute schedule density (09:00-17:00)
WORKDAY_MINUTES = 480


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _normalize_type(appointment_type: Optional[str]) -> str:
    return (appointment_type or "").strip().lower().replace("_", "-")


def _adaptive(appointment: Appointment, before: int, after: int, factors: List[str]) -> Tuple[int, int]:
    duration = appointment.duration_minutes
    if duration > LONG_APPOINTMENT_MINUTES:
        before = round_half_up(before * 1.5)
        after = round_half_up(after * 1.3)
        factors.append("long_duration")
    elif duration < SHORT_APPOINTMENT_MINUTES:
        before = round_half_up(before * 0.8)
        after = round_half_up(after * 0.8)
        factors.append("short_duration")

    local_hour = utc_to_local(appointment.start, appointment.timezone).hour
    if local_hour < EARLY_HOUR or local_hour > LATE_HOUR:
        before = round_half_up(before * OFF_HOURS_MULTIPLIER)
        after = round_half_up(after * OFF_HOURS_MULTIPLIER)
        factors.append("off_hours")

    multiplier = TYPE_MULTIPLIERS.get(_normalize_type(appointment.appointment_type))
    if multiplier:
        before = round_half_up(before * multiplier[0])
        after = round_half_up(after * multiplier[1])
        factors.append(f"type:{_normalize_type(appointment.appointment_type)}")
    return before, after


def _dynamic(
    before: int,
    after: int,
    context: ScheduleContext,
    tuning: DynamicBufferTuning,
    factors: List[str],
) -> Tuple[int, int]:
    if context.density is not None:
        if context.density > tuning.high_density:
            before = round_half_up(before * tuning.high_density_multiplier)
            after = round_half_up(after * tuning.high_density_multiplier)
            factors.append("high_density")
        elif context.density < tuning.low_density:
            before = round_half_up(before * tuning.low_density_multiplier)
            after = round_half_up(after * tuning.low_density_multiplier)
            factors.append("low_density")

    if context.average_overrun is not None and context.average_overrun > tuning.overrun_threshold:
        after = round_half_up(after * tuning.overrun_multiplier)
        factors.append("overrun")
    return before, after


def calculate_buffer_window(
    appointment: Appointment,
    preference: Optional[BufferPreference] = None,
    context: Optional[ScheduleContext] = None,
    tuning: Optional[DynamicBufferTuning] = None,
) -> BufferWindow:
    """
    Compute the buffer window around an appointment.

    Identical inputs always produce identical output; nothing outside the
    arguments is read.

    Args:
        appointment: Appointment with aware UTC start/end and its local zone
        preference: Owner buffer preference (defaults: fixed 15/15, clamp 5-60)
        context: Schedule density and average overrun for the dynamic strategy
        tuning: Dynamic strategy thresholds and multipliers

    Returns:
        BufferWindow with effective_start <= start <= end <= effective_end
    """
    preference = preference or BufferPreference()
    context = context or ScheduleContext()
    tuning = tuning or DynamicBufferTuning()
    factors: List[str] = []

    before, after = preference.before_minutes, preference.after_minutes

    if preference.strategy == BufferStrategy.PERCENTAGE:
        before = after = round_half_up(appointment.duration_minutes * preference.percentage)
        factors.append(f"percentage:{preference.percentage}")
    elif preference.strategy == BufferStrategy.ADAPTIVE:
        before, after = _adaptive(appointment, before, after, factors)
    elif preference.strategy == BufferStrategy.DYNAMIC:
        before, after = _adaptive(appointment, before, after, factors)
        before, after = _dynamic(before, after, context, tuning, factors)

    if preference.apply_type_minimums:
        minimum = TYPE_MINIMUMS.get(_normalize_type(appointment.appointment_type))
        if minimum and (before < minimum[0] or after < minimum[1]):
            before = max(before, minimum[0])
            after = max(after, minimum[1])
            factors.append("type_minimum")

    clamped_before = min(max(before, preference.min_minutes), preference.max_minutes)
    clamped_after = min(max(after, preference.min_minutes), preference.max_minutes)
    if (clamped_before, clamped_after) != (before, after):
        factors.append("clamped")

    return BufferWindow(
        before_minutes=clamped_before,
        after_minutes=clamped_after,
        effective_start=appointment.start - timedelta(minutes=clamped_before),
        effective_end=appointment.end + timedelta(minutes=clamped_after),
        strategy=preference.strategy,
        factors=tuple(factors),
    )


def schedule_density(busy: Iterable[Tuple[datetime, datetime]], workday_minutes: int = WORKDAY_MINUTES) -> float:
    """Booked minutes over the working day, capped at 1.0."""
    booked = sum(max(0.0, (end - start).total_seconds() / 60) for start, end in busy)
    return min(1.0, booked / workday_minutes) if workday_minutes else 0.0


def average_overrun(samples: Iterable[Tuple[datetime, datetime]]) -> Optional[float]:
    """
    Mean overrun in minutes from (scheduled_end, actual_end) pairs; early
    finishes count as zero. None when there is no history.
    """
    overruns = [max(0.0, (actual - scheduled).total_seconds() / 60) for scheduled, actual in samples]
    if not overruns:
        return None
    return sum(overruns) / len(overruns)
