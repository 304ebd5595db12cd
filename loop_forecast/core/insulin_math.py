# loop_forecast/core/insulin_math.py
from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from loop_forecast import config
from loop_forecast.core.date_math import ceil_to_interval, floor_to_interval, grid
from loop_forecast.core.insulin_models import ExponentialInsulinModel, insulin_model
from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import AnnotatedDose, GlucoseEffect, InsulinValue

logger = logging.getLogger(__name__)

# doses shorter than this many deltas are treated as a single momentary delivery
MOMENTARY_DELIVERY_FACTOR = 1.05


def model_for(dose: AnnotatedDose, default_model: ExponentialInsulinModel) -> ExponentialInsulinModel:
    if dose.dose.insulin_type is None:
        return default_model
    return insulin_model(dose.dose.insulin_type)


def _continuous_delivery(
    dose_seconds: float,
    time_seconds: float,
    model: ExponentialInsulinModel,
    delta_seconds: float,
    curve: Callable[[timedelta], float],
) -> float:
    """
    Weighted sum of `curve` over delta-wide slices of a dose delivered at a
    constant rate. Each slice is weighted by its share of the dose.
    """
    delay = model.delay.total_seconds()
    limit = min(math.floor((time_seconds + delay) / delta_seconds) * delta_seconds, dose_seconds)
    total = 0.0
    dose_date = 0.0
    while True:
        if dose_seconds > 0:
            segment = max(0.0, min(dose_date + delta_seconds, dose_seconds) - dose_date) / dose_seconds
        else:
            segment = 1.0
        total += segment * curve(timedelta(seconds=time_seconds - dose_date))
        dose_date += delta_seconds
        if dose_date > limit:
            break
    return total


def _dose_fraction(
    dose: AnnotatedDose,
    at: datetime,
    model: ExponentialInsulinModel,
    delta: timedelta,
    curve: Callable[[timedelta], float],
) -> float:
    elapsed = at - dose.start
    if dose.end - dose.start <= delta * MOMENTARY_DELIVERY_FACTOR:
        return curve(elapsed)
    return _continuous_delivery(
        (dose.end - dose.start).total_seconds(),
        elapsed.total_seconds(),
        model,
        delta.total_seconds(),
        curve,
    )


def glucose_effect_of_dose(
    dose: AnnotatedDose,
    at: datetime,
    model: ExponentialInsulinModel,
    isf: float,
    delta: timedelta = config.DEFAULT_DELTA,
) -> float:
    """Cumulative mg/dL change caused by one dose at time `at` (negative lowers glucose)."""
    if at < dose.start:
        return 0.0
    return dose.net_basal_units * -isf * _dose_fraction(dose, at, model, delta, model.percent_absorbed)


def insulin_on_board_of_dose(
    dose: AnnotatedDose,
    at: datetime,
    model: ExponentialInsulinModel,
    delta: timedelta = config.DEFAULT_DELTA,
) -> float:
    if at < dose.start:
        return 0.0
    return dose.net_basal_units * _dose_fraction(dose, at, model, delta, model.percent_effect_remaining)


def _longest_effect(doses: Sequence[AnnotatedDose], default_model: ExponentialInsulinModel) -> timedelta:
    return max((model_for(d, default_model).effect_duration for d in doses), default=default_model.effect_duration)


def glucose_effects(
    doses: Sequence[AnnotatedDose],
    default_model: ExponentialInsulinModel,
    sensitivity: Schedule[float],
    start: datetime,
    end: datetime | None = None,
    delta: timedelta = config.DEFAULT_DELTA,
    use_mid_absorption_isf: bool = False,
) -> list[GlucoseEffect]:
    """
    Cumulative insulin effect on the delta grid from floor(start) to ceil(end),
    zeroed at the first sample.

    ISF is taken at each dose's start. With use_mid_absorption_isf the effect
    accrued in each grid step is scaled by the ISF in force at that step instead.
    """
    if end is None:
        end = start + config.INSULIN_ACTIVITY_DURATION
    times = list(grid(floor_to_interval(start, delta), ceil_to_interval(end, delta), delta))
    values = [0.0] * len(times)

    used = 0
    for dose in doses:
        model = model_for(dose, default_model)
        if dose.end + model.effect_duration <= times[0] or dose.start > times[-1]:
            # fully absorbed before the curve starts or not yet given
            continue
        used += 1
        if use_mid_absorption_isf:
            prev = glucose_effect_of_dose(dose, times[0], model, 1.0, delta)
            acc = 0.0
            for i in range(1, len(times)):
                cur = glucose_effect_of_dose(dose, times[i], model, 1.0, delta)
                acc += (cur - prev) * sensitivity.require_closest_prior(times[i])
                values[i] += acc
                prev = cur
        else:
            isf = sensitivity.require_closest_prior(dose.start)
            base = glucose_effect_of_dose(dose, times[0], model, isf, delta)
            for i in range(1, len(times)):
                values[i] += glucose_effect_of_dose(dose, times[i], model, isf, delta) - base

    logger.debug("glucose_effects: %d of %d doses over %d grid points", used, len(doses), len(times))
    return [GlucoseEffect(t, v) for t, v in zip(times, values, strict=True)]


def insulin_on_board_at(
    doses: Sequence[AnnotatedDose],
    default_model: ExponentialInsulinModel,
    at: datetime,
    delta: timedelta = config.DEFAULT_DELTA,
) -> float:
    return sum(insulin_on_board_of_dose(d, at, model_for(d, default_model), delta) for d in doses)


def insulin_on_board(
    doses: Sequence[AnnotatedDose],
    default_model: ExponentialInsulinModel,
    start: datetime,
    end: datetime | None = None,
    delta: timedelta = config.DEFAULT_DELTA,
) -> list[InsulinValue]:
    if end is None:
        end = start + _longest_effect(doses, default_model)
    return [
        InsulinValue(t, insulin_on_board_at(doses, default_model, t, delta))
        for t in grid(floor_to_interval(start, delta), ceil_to_interval(end, delta), delta)
    ]
