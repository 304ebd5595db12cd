# loop_forecast/core/glucose_math.py
from __future__ import annotations

import logging
import math
from bisect import bisect_left
from collections.abc import Sequence
from datetime import datetime, timedelta

import numpy as np

from loop_forecast import config
from loop_forecast.core.date_math import ceil_to_interval, floor_to_interval, minutes
from loop_forecast.forecast_structs import GlucoseEffect, GlucoseEffectVelocity, GlucoseSample

logger = logging.getLogger(__name__)


def counteraction_effects(
    glucose: Sequence[GlucoseSample],
    effects: Sequence[GlucoseEffect],
    delta: timedelta = config.DEFAULT_DELTA,
    min_interval: timedelta = config.COUNTERACTION_MIN_INTERVAL,
    max_gap: timedelta | None = None,
) -> list[GlucoseEffectVelocity]:
    """
    Observed glucose velocity minus the velocity of `effects`, per glucose interval.

    Intervals of min_interval or less are merged into the next one. Intervals
    longer than max_gap (default 3 * delta) are dropped and the walk restarts
    at the far sample. The walk stops once the effect curve no longer covers
    an interval.
    """
    if max_gap is None:
        max_gap = delta * config.COUNTERACTION_MAX_GAP_FACTOR
    velocities: list[GlucoseEffectVelocity] = []
    if len(glucose) < 2 or not effects:
        return velocities

    effect_times = [e.time for e in effects]

    def effect_at_or_after(t: datetime) -> GlucoseEffect | None:
        idx = bisect_left(effect_times, t)
        return effects[idx] if idx < len(effects) else None

    start_sample = glucose[0]
    skipped = 0
    for end_sample in glucose[1:]:
        interval = end_sample.time - start_sample.time
        if interval <= min_interval:
            continue
        if interval > max_gap:
            skipped += 1
            start_sample = end_sample
            continue

        start_effect = effect_at_or_after(start_sample.time)
        end_effect = effect_at_or_after(end_sample.time)
        if start_effect is None or end_effect is None:
            break

        glucose_change = end_sample.value - start_sample.value
        effect_change = end_effect.value - start_effect.value
        discrepancy = glucose_change - effect_change
        velocities.append(GlucoseEffectVelocity(start_sample.time, end_sample.time, discrepancy / minutes(interval)))
        start_sample = end_sample

    if skipped:
        logger.debug("counteraction_effects: omitted %d intervals longer than %s", skipped, max_gap)
    return velocities


def _is_continuous(samples: Sequence[GlucoseSample], interval: timedelta) -> bool:
    if not samples:
        return False
    return abs(samples[0].time - samples[-1].time) < interval * len(samples)


def linear_momentum_effect(
    glucose: Sequence[GlucoseSample],
    delta: timedelta = config.DEFAULT_DELTA,
    duration: timedelta = config.MOMENTUM_DURATION,
    data_interval: timedelta = config.MOMENTUM_DATA_INTERVAL,
) -> list[GlucoseEffect]:
    """
    Project the least-squares trend of the samples in the last `data_interval`
    forward over `duration`.

    The curve starts at the grid point at or before the latest sample and is
    0 there; it needs more than two recent, regularly spaced samples.
    """
    if not glucose:
        return []
    last = glucose[-1]
    recent = [g for g in glucose if g.time >= last.time - data_interval]
    if len(recent) <= 2 or not _is_continuous(recent, delta):
        return []

    x = np.array([minutes(g.time - recent[0].time) for g in recent])
    y = np.array([g.value for g in recent])
    if np.ptp(x) == 0:
        return []
    slope = float(np.polyfit(x, y, 1)[0])  # mg/dL/min
    if not math.isfinite(slope):
        return []

    date = floor_to_interval(last.time, delta)
    end = ceil_to_interval(last.time + duration, delta)
    values: list[GlucoseEffect] = []
    while date <= end:
        values.append(GlucoseEffect(date, max(0.0, minutes(date - last.time)) * slope))
        date += delta
    return values
