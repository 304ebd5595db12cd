# loop_forecast/core/retrospective_correction.py
from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np

from loop_forecast import config
from loop_forecast.core.date_math import ceil_to_interval, floor_to_interval, minutes
from loop_forecast.forecast_structs import (
    GlucoseChange,
    GlucoseEffect,
    GlucoseEffectVelocity,
    GlucoseSample,
    RCDecayCurve,
    TargetRange,
)

logger = logging.getLogger(__name__)

# exponential decay keeps exp(-3) of the starting velocity at the end of the effect
_EXPONENTIAL_DECAY_CONSTANT = 3.0


@dataclass(frozen=True)
class RetrospectiveCorrectionResult:
    effects: list[GlucoseEffect] = field(default_factory=list)
    discrepancies: list[GlucoseChange] = field(default_factory=list)
    total_correction: float | None = None  # mg/dL, after clamping


def _interpolator(effects: Sequence[GlucoseEffect]):
    xs = np.array([e.time.timestamp() for e in effects])
    ys = np.array([e.value for e in effects])

    def at(t: datetime) -> float:
        return float(np.interp(t.timestamp(), xs, ys))

    return at


def subtract_carb_effects(
    velocities: Sequence[GlucoseEffectVelocity],
    carb_effects: Sequence[GlucoseEffect],
) -> list[GlucoseChange]:
    """Counteraction change over each interval minus what the carb curve explains over it."""
    if not carb_effects:
        return [GlucoseChange(v.start, v.end, v.effect) for v in velocities]
    carb_at = _interpolator(carb_effects)
    return [GlucoseChange(v.start, v.end, v.effect - (carb_at(v.end) - carb_at(v.start))) for v in velocities]


def combined_sums(changes: Sequence[GlucoseChange], duration: timedelta) -> list[GlucoseChange]:
    """
    For each change, the sum of it and every earlier change ending no more than
    `duration` before it. Input must be ordered by end time.
    """
    out: list[GlucoseChange] = []
    lo = 0
    for i, change in enumerate(changes):
        while changes[lo].end + duration < change.end:
            lo += 1
        window = changes[lo : i + 1]
        out.append(GlucoseChange(window[0].start, change.end, sum(c.value for c in window)))
    return out


def decay_effect(
    start: datetime,
    rate: float,
    duration: timedelta,
    delta: timedelta = config.DEFAULT_DELTA,
    curve: RCDecayCurve = RCDecayCurve.LINEAR,
) -> list[GlucoseEffect]:
    """
    Effect of a velocity (mg/dL/min) that decays to 0 over `duration`,
    starting at 0 on the grid point at or before `start`.
    """
    grid_start = floor_to_interval(start, delta)
    end = ceil_to_interval(start + duration, delta)
    step = minutes(delta)
    total = minutes(duration)

    values = [GlucoseEffect(grid_start, 0.0)]
    date = grid_start + delta
    last = 0.0
    while date < end:
        elapsed = minutes(date - grid_start)
        if curve is RCDecayCurve.EXPONENTIAL:
            velocity = rate * math.exp(-_EXPONENTIAL_DECAY_CONSTANT * elapsed / total)
        else:
            velocity = rate - rate / (total - step) * elapsed
        last += velocity * step
        values.append(GlucoseEffect(date, last))
        date += delta
    return values


def clamp_correction(value: float, latest_glucose: float, isf: float, basal_rate: float, target: TargetRange) -> float:
    """
    Bound the summed discrepancy: never below what one hour at zero delivery
    would raise glucose, never above the larger of that and the current
    distance from the target midpoint.
    """
    zero_temp_effect = abs(isf * basal_rate)
    glucose_error = latest_glucose - target.midpoint
    upper = max(glucose_error, zero_temp_effect)
    return min(max(value, -zero_temp_effect), upper)


def retrospective_correction(
    latest_glucose: GlucoseSample,
    velocities: Sequence[GlucoseEffectVelocity],
    carb_effects: Sequence[GlucoseEffect],
    isf: float,
    basal_rate: float,
    target: TargetRange,
    delta: timedelta = config.DEFAULT_DELTA,
    grouping_interval: timedelta = config.RC_GROUPING_INTERVAL,
    recency_interval: timedelta = config.RC_RECENCY_INTERVAL,
    effect_duration: timedelta = config.RC_EFFECT_DURATION,
    decay_curve: RCDecayCurve = RCDecayCurve.LINEAR,
) -> RetrospectiveCorrectionResult:
    discrepancies = subtract_carb_effects(velocities, carb_effects)
    summed = combined_sums(discrepancies, grouping_interval * config.RC_GROUPING_TOLERANCE)
    if not summed:
        return RetrospectiveCorrectionResult(discrepancies=discrepancies)

    current = summed[-1]
    if latest_glucose.time - current.end > recency_interval:
        logger.debug("retrospective_correction: last discrepancy at %s is stale", current.end)
        return RetrospectiveCorrectionResult(discrepancies=discrepancies)

    total = clamp_correction(current.value, latest_glucose.value, isf, basal_rate, target)
    if total != current.value:
        logger.debug("retrospective_correction: clamped %.2f -> %.2f mg/dL", current.value, total)
    discrepancy_time = max(current.end - current.start, grouping_interval)
    velocity = total / minutes(discrepancy_time)
    effects = decay_effect(latest_glucose.time, velocity, effect_duration, delta, decay_curve)
    return RetrospectiveCorrectionResult(effects=effects, discrepancies=discrepancies, total_correction=total)
