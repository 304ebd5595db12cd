# loop_forecast/core/loop_algorithm.py
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from loop_forecast import config
from loop_forecast.core.carb_math import (
    CarbAbsorption,
    carb_glucose_effects,
    carbs_on_board_at,
    map_carb_absorption,
    static_carb_absorption,
)
from loop_forecast.core.date_math import ceil_to_interval, floor_to_interval
from loop_forecast.core.dose_math import annotate_doses, filter_doses
from loop_forecast.core.dose_recommendation import recommend_dose
from loop_forecast.core.errors import MissingGlucoseHistoryError
from loop_forecast.core.glucose_math import counteraction_effects, linear_momentum_effect
from loop_forecast.core.insulin_math import glucose_effects, insulin_on_board_at
from loop_forecast.core.insulin_models import insulin_model
from loop_forecast.core.prediction import predict_glucose
from loop_forecast.core.retrospective_correction import RetrospectiveCorrectionResult, retrospective_correction
from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import (
    CarbRecord,
    DoseRecord,
    EffectsOptions,
    ForecastEffects,
    ForecastInput,
    ForecastOutput,
    GlucoseEffectVelocity,
    InsulinType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectsSummary:
    time: datetime
    net_insulin_effect: float  # mg/dL still to come from insulin delivered so far
    insulin_on_board: float  # U


def carb_absorptions(
    entries: Sequence[CarbRecord],
    velocities: Sequence[GlucoseEffectVelocity],
    at: datetime,
    carb_ratio: Schedule[float],
    sensitivity: Schedule[float],
) -> list[CarbAbsorption]:
    """
    Entries known at `at` absorb dynamically against the counteraction history.
    Entries recorded later but eaten at or before `at` only follow the static model.
    """
    known = [e for e in entries if e.entry_time <= at]
    late = [e for e in entries if e.entry_time > at and e.time <= at]
    return map_carb_absorption(known, velocities, carb_ratio, sensitivity) + static_carb_absorption(
        late, carb_ratio, sensitivity
    )


def get_forecast(inp: ForecastInput) -> ForecastOutput:
    """
    Run the full pipeline for one ForecastInput.

    Raises MissingGlucoseHistoryError without glucose at or before the
    prediction start and IncompleteScheduleCoverageError when basal,
    sensitivity or target do not cover it.
    """
    start = inp.prediction_start
    delta = inp.delta
    options = inp.effects_options

    glucose = [g for g in inp.glucose_history if g.time <= start]
    if not glucose:
        raise MissingGlucoseHistoryError()
    latest = glucose[-1]

    isf = inp.sensitivity.require(start)
    basal_rate = inp.basal.require(start)
    target_range = inp.target.require(start)

    model = insulin_model(inp.insulin_type)
    history_start = floor_to_interval(start - config.MAX_CARB_ABSORPTION_TIME, delta)
    horizon_end = ceil_to_interval(start + inp.insulin_activity_duration, delta)

    # doses begun after the prediction start are not known yet
    annotated = annotate_doses([d for d in inp.doses if d.start <= start], inp.basal)
    insulin_effects = glucose_effects(
        annotated,
        model,
        inp.sensitivity,
        history_start,
        horizon_end,
        delta,
        use_mid_absorption_isf=inp.use_mid_absorption_isf,
    )
    ice = counteraction_effects(glucose, insulin_effects, delta)

    absorptions = carb_absorptions(inp.carb_entries, ice, start, inp.carb_ratio, inp.sensitivity)
    carb_effects = carb_glucose_effects(absorptions, history_start, horizon_end, delta) if absorptions else []

    rc = RetrospectiveCorrectionResult()
    if EffectsOptions.RETROSPECTION in options:
        rc = retrospective_correction(
            latest,
            ice,
            carb_effects if EffectsOptions.CARBS in options else [],
            isf,
            basal_rate,
            target_range,
            delta,
            decay_curve=inp.rc_decay_curve,
        )

    momentum = []
    if EffectsOptions.MOMENTUM in options:
        # a sensor that went quiet before the window carries no trend
        recent = [g for g in glucose if g.time >= start - config.MOMENTUM_DATA_INTERVAL]
        momentum = linear_momentum_effect(recent, delta)

    combined = []
    if EffectsOptions.INSULIN in options:
        combined.append(insulin_effects)
    if EffectsOptions.CARBS in options:
        combined.append(carb_effects)
    if EffectsOptions.RETROSPECTION in options:
        combined.append(rc.effects)

    prediction = predict_glucose(
        latest,
        combined,
        momentum,
        horizon_end=horizon_end,
        minimum_glucose=inp.minimum_predicted_glucose,
    )
    logger.debug(
        "get_forecast: %d predicted values from %.1f mg/dL at %s",
        len(prediction),
        latest.value,
        latest.time,
    )

    recommendation = None
    if inp.limits is not None:
        recommendation = recommend_dose(
            prediction, start, inp.target, inp.sensitivity, inp.basal, inp.limits, model
        )

    effects = ForecastEffects(
        insulin=insulin_effects,
        carbs=carb_effects,
        retrospective_correction=rc.effects,
        momentum=momentum,
        insulin_counteraction=ice,
        retrospective_glucose_discrepancies=rc.discrepancies,
        total_retrospective_correction=rc.total_correction,
    )
    return ForecastOutput(
        prediction=prediction,
        effects=effects,
        recommendation=recommendation,
        active_insulin=insulin_on_board_at(annotated, model, start, delta),
        active_carbs=carbs_on_board_at(absorptions, start),
    )


def effects_timeline(
    doses: Sequence[DoseRecord],
    basal: Schedule[float],
    sensitivity: Schedule[float],
    start: datetime,
    end: datetime,
    insulin_type: InsulinType | None = None,
    stride: timedelta | None = None,
    delta: timedelta = config.DEFAULT_DELTA,
    insulin_activity_duration: timedelta = config.INSULIN_ACTIVITY_DURATION,
) -> list[EffectsSummary]:
    """
    Net insulin effect still to come and insulin on board at every `stride`
    across [start, end].
    """
    if stride is None:
        stride = config.SETTINGS.timeline_stride
    model = insulin_model(insulin_type)
    annotated = annotate_doses(doses, basal)

    summaries: list[EffectsSummary] = []
    t = floor_to_interval(start, delta)
    last = ceil_to_interval(end, delta)
    while t <= last:
        relevant = filter_doses(annotated, t - insulin_activity_duration, t)
        if relevant:
            curve = glucose_effects(relevant, model, sensitivity, t, t + insulin_activity_duration, delta)
            net = curve[-1].value - curve[0].value
        else:
            net = 0.0
        summaries.append(EffectsSummary(t, net, insulin_on_board_at(relevant, model, t, delta)))
        t += stride
    return summaries
