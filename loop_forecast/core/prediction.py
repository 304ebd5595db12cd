# loop_forecast/core/prediction.py
from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from loop_forecast.forecast_structs import GlucoseEffect, GlucoseSample, PredictedGlucoseValue


def _effect_increments(effects: Sequence[Sequence[GlucoseEffect]]) -> dict[datetime, float]:
    increments: dict[datetime, float] = {}
    for timeline in effects:
        if not timeline:
            continue
        previous = timeline[0].value
        for effect in timeline:
            increments[effect.time] = increments.get(effect.time, 0.0) + effect.value - previous
            previous = effect.value
    return increments


def _blend_momentum(
    increments: dict[datetime, float],
    momentum: Sequence[GlucoseEffect],
    starting_glucose: GlucoseSample,
) -> None:
    """
    Fade from the momentum trend to the summed effects: momentum owns the first
    step after the latest glucose and hands over linearly to the other effects
    by the last momentum point.
    """
    if len(momentum) <= 2:
        return
    blend_count = len(momentum) - 2
    time_delta = (momentum[1].time - momentum[0].time).total_seconds()
    momentum_offset = (starting_glucose.time - momentum[0].time).total_seconds()
    blend_slope = 1.0 / blend_count
    blend_offset = momentum_offset / time_delta * blend_slope

    previous = momentum[0].value
    for index, effect in enumerate(momentum):
        change = effect.value - previous
        split = min(1.0, max(0.0, (len(momentum) - index) / blend_count - blend_slope + blend_offset))
        increments[effect.time] = (1.0 - split) * increments.get(effect.time, 0.0) + split * change
        previous = effect.value


def predict_glucose(
    starting_glucose: GlucoseSample,
    effects: Sequence[Sequence[GlucoseEffect]],
    momentum: Sequence[GlucoseEffect] = (),
    horizon_end: datetime | None = None,
    minimum_glucose: float | None = None,
) -> list[PredictedGlucoseValue]:
    """
    Accumulate the per-step changes of every effect curve onto the latest glucose.

    The first value is the starting sample itself; the rest follow the effect
    grid. Values are only clamped when `minimum_glucose` is given.
    """
    increments = _effect_increments(effects)
    if momentum:
        _blend_momentum(increments, momentum, starting_glucose)

    prediction = [PredictedGlucoseValue(starting_glucose.time, starting_glucose.value)]
    value = starting_glucose.value
    for time in sorted(increments):
        if time <= starting_glucose.time:
            continue
        if horizon_end is not None and time > horizon_end:
            break
        value += increments[time]
        prediction.append(PredictedGlucoseValue(time, value))

    if minimum_glucose is not None:
        prediction = [PredictedGlucoseValue(p.time, max(p.value, minimum_glucose)) for p in prediction]
    return prediction
