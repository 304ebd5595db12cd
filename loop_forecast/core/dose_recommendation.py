# loop_forecast/core/dose_recommendation.py
from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from loop_forecast import config
from loop_forecast.core.date_math import hours
from loop_forecast.core.insulin_models import ExponentialInsulinModel
from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import (
    DoseRecommendation,
    DosingLimits,
    DosingStrategy,
    PredictedGlucoseValue,
    RecommendationType,
    TargetRange,
    TempBasalRecommendation,
)

logger = logging.getLogger(__name__)

# fraction of the effect duration during which the correction aims at the low bound
USE_MIN_TARGET_UNTIL_PERCENT = 0.5

NOTICE_BELOW_SUSPEND_THRESHOLD = "predicted glucose at or below suspend threshold"
NOTICE_CURRENT_BELOW_TARGET = "current glucose below target"
NOTICE_PREDICTED_BELOW_TARGET = "predicted glucose below target"


class CorrectionKind(str, Enum):
    SUSPEND = "suspend"
    IN_RANGE = "inRange"
    ABOVE_RANGE = "aboveRange"
    ENTIRELY_BELOW_RANGE = "entirelyBelowRange"


@dataclass(frozen=True)
class InsulinCorrection:
    kind: CorrectionKind
    units: float = 0.0  # U, negative asks for less than scheduled delivery
    min_glucose: PredictedGlucoseValue | None = None
    correcting_glucose: PredictedGlucoseValue | None = None


def target_glucose_value(percent_effect_duration: float, min_value: float, max_value: float) -> float:
    """Aim at min_value for the first half of the effect, then blend linearly to max_value."""
    if percent_effect_duration <= USE_MIN_TARGET_UNTIL_PERCENT or min_value >= max_value:
        return min_value
    slope = (max_value - min_value) / (1 - USE_MIN_TARGET_UNTIL_PERCENT)
    return min_value + slope * (percent_effect_duration - USE_MIN_TARGET_UNTIL_PERCENT)


def insulin_correction(
    prediction: Sequence[PredictedGlucoseValue],
    at: datetime,
    target: Schedule[TargetRange],
    suspend_threshold: float,
    sensitivity: Schedule[float],
    model: ExponentialInsulinModel,
) -> InsulinCorrection:
    if not prediction:
        return InsulinCorrection(CorrectionKind.IN_RANGE)

    lowest = min(prediction, key=lambda p: p.value)
    if lowest.value <= suspend_threshold:
        return InsulinCorrection(CorrectionKind.SUSPEND, min_glucose=lowest)

    effect_seconds = model.effect_duration.total_seconds()
    window_end = at + model.effect_duration
    min_glucose: PredictedGlucoseValue | None = None
    min_units: float | None = None
    correcting: PredictedGlucoseValue | None = None

    for p in prediction:
        if not at <= p.time <= window_end:
            continue
        if min_glucose is None or p.value < min_glucose.value:
            min_glucose = p
        elapsed = p.time - at
        target_range = target.require_closest_prior(p.time)
        target_value = target_glucose_value(
            elapsed.total_seconds() / effect_seconds,
            suspend_threshold,
            target_range.midpoint,
        )
        effected_sensitivity = model.percent_absorbed(elapsed) * sensitivity.require_closest_prior(p.time)
        if effected_sensitivity <= 1e-12:
            continue
        units = (p.value - target_value) / effected_sensitivity
        if min_units is None or units < min_units:
            min_units = units
            correcting = p

    eventual = prediction[-1]
    if min_glucose is None:
        return InsulinCorrection(CorrectionKind.IN_RANGE)

    min_targets = target.require_closest_prior(min_glucose.time)
    eventual_targets = target.require_closest_prior(eventual.time)

    if min_glucose.value < min_targets.min_value and eventual.value < eventual_targets.min_value:
        # near the start only a sliver of the effect is realized; still recommend
        percent = max(1e-12, model.percent_absorbed(min_glucose.time - at))
        isf = sensitivity.require_closest_prior(min_glucose.time)
        units = (min_glucose.value - min_targets.midpoint) / (isf * percent)
        return InsulinCorrection(CorrectionKind.ENTIRELY_BELOW_RANGE, units, min_glucose, min_glucose)

    if eventual.value > eventual_targets.max_value and min_units is not None:
        return InsulinCorrection(CorrectionKind.ABOVE_RANGE, min_units, min_glucose, correcting)

    return InsulinCorrection(CorrectionKind.IN_RANGE, 0.0, min_glucose)


def as_temp_basal(
    correction: InsulinCorrection,
    scheduled_basal_rate: float,
    max_basal_rate: float,
    duration: timedelta = config.TEMP_BASAL_DURATION,
) -> TempBasalRecommendation:
    """Temp basal that delivers the correction over `duration`; the scheduled rate means cancel."""
    if correction.kind is CorrectionKind.SUSPEND:
        return TempBasalRecommendation(0.0, duration)
    if correction.kind is CorrectionKind.IN_RANGE:
        return TempBasalRecommendation.cancel()

    rate = scheduled_basal_rate + correction.units / hours(duration)
    rate = min(max(0.0, rate), max(0.0, max_basal_rate))
    if math.isclose(rate, scheduled_basal_rate, abs_tol=1e-9):
        return TempBasalRecommendation.cancel()
    return TempBasalRecommendation(rate, duration)


def round_down_to_increment(units: float, increment: float | None) -> float:
    if not increment or increment <= 0:
        return units
    return math.floor(units / increment + 1e-9) * increment


def as_partial_bolus(
    correction: InsulinCorrection,
    max_bolus: float,
    factor: float = config.BOLUS_PARTIAL_APPLICATION_FACTOR,
    increment: float | None = None,
) -> float:
    if correction.kind is not CorrectionKind.ABOVE_RANGE:
        return 0.0
    units = min(max(0.0, correction.units * factor), max(0.0, max_bolus))
    return round_down_to_increment(units, increment)


def recommend_automatic_dose(
    correction: InsulinCorrection,
    scheduled_basal_rate: float,
    limits: DosingLimits,
) -> DoseRecommendation:
    if limits.dosing_strategy is DosingStrategy.AUTOMATIC_BOLUS:
        bolus = as_partial_bolus(correction, limits.max_bolus, increment=limits.bolus_increment)
        # with automatic boluses the temp basal never goes above the scheduled rate
        max_rate = min(scheduled_basal_rate, limits.max_basal_rate)
        temp_basal = as_temp_basal(correction, scheduled_basal_rate, max_rate)
    else:
        bolus = 0.0
        temp_basal = as_temp_basal(correction, scheduled_basal_rate, limits.max_basal_rate)

    notice = NOTICE_BELOW_SUSPEND_THRESHOLD if correction.kind is CorrectionKind.SUSPEND else None
    return DoseRecommendation(RecommendationType.AUTOMATIC, temp_basal, bolus, notice)


def recommend_manual_bolus(
    correction: InsulinCorrection,
    prediction: Sequence[PredictedGlucoseValue],
    current_target: TargetRange,
    limits: DosingLimits,
) -> DoseRecommendation:
    notice = None
    if correction.kind is CorrectionKind.SUSPEND:
        notice = NOTICE_BELOW_SUSPEND_THRESHOLD
    elif prediction and prediction[0].value < current_target.min_value:
        notice = NOTICE_CURRENT_BELOW_TARGET
    elif correction.min_glucose is not None and correction.min_glucose.value < current_target.min_value:
        notice = NOTICE_PREDICTED_BELOW_TARGET

    units = correction.units if correction.kind is CorrectionKind.ABOVE_RANGE else 0.0
    units = min(max(0.0, units), max(0.0, limits.max_bolus))
    units = round_down_to_increment(units, limits.bolus_increment)
    return DoseRecommendation(RecommendationType.MANUAL, None, units, notice)


def recommend_dose(
    prediction: Sequence[PredictedGlucoseValue],
    at: datetime,
    target: Schedule[TargetRange],
    sensitivity: Schedule[float],
    basal: Schedule[float],
    limits: DosingLimits,
    model: ExponentialInsulinModel,
) -> DoseRecommendation:
    current_target = target.require(at)
    scheduled_rate = basal.require(at)
    suspend_threshold = limits.suspend_threshold
    if suspend_threshold is None:
        suspend_threshold = current_target.min_value

    correction = insulin_correction(prediction, at, target, suspend_threshold, sensitivity, model)
    logger.debug("recommend_dose: %s %.3f U", correction.kind.value, correction.units)

    if limits.recommendation_type is RecommendationType.MANUAL:
        return recommend_manual_bolus(correction, prediction, current_target, limits)
    return recommend_automatic_dose(correction, scheduled_rate, limits)
