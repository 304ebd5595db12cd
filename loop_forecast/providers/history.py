# loop_forecast/providers/history.py
"""
History Provider seam: where glucose, doses, carbs and settings come from.

Fetching may be asynchronous and concurrent; everything handed to the core is
first snapshotted into immutable tuples / schedules so the synchronous
forecast never sees data change underneath it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from loop_forecast import config
from loop_forecast.core.carb_math import carbs_on_board, map_carb_absorption
from loop_forecast.core.date_math import ceil_to_interval, floor_to_interval
from loop_forecast.core.dose_math import annotate_doses
from loop_forecast.core.glucose_math import counteraction_effects
from loop_forecast.core.insulin_math import glucose_effects, insulin_on_board
from loop_forecast.core.insulin_models import insulin_model
from loop_forecast.core.loop_algorithm import EffectsSummary, effects_timeline
from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import (
    CarbRecord,
    CarbValue,
    DoseKind,
    DoseRecord,
    DosingLimits,
    EffectsOptions,
    ForecastInput,
    GlucoseSample,
    InsulinType,
    InsulinValue,
    TargetRange,
)

logger = logging.getLogger(__name__)


class HistoryProvider(Protocol):
    """Time-ranged queries; every result is sorted ascending by start time."""

    async def get_glucose_values(self, start: datetime, end: datetime) -> Sequence[GlucoseSample]: ...

    async def get_doses(self, start: datetime, end: datetime) -> Sequence[DoseRecord]: ...

    async def get_carb_entries(self, start: datetime, end: datetime) -> Sequence[CarbRecord]: ...

    async def get_basal_history(self, start: datetime, end: datetime) -> Schedule[float]: ...

    async def get_sensitivity_history(self, start: datetime, end: datetime) -> Schedule[float]: ...

    async def get_carb_ratio_history(self, start: datetime, end: datetime) -> Schedule[float]: ...

    async def get_target_history(self, start: datetime, end: datetime) -> Schedule[TargetRange]: ...

    async def get_dosing_limits(self, at: datetime) -> DosingLimits | None: ...


class InMemoryHistoryProvider:
    """HistoryProvider over records already held in memory (tests, fixtures, replays)."""

    def __init__(
        self,
        glucose: Iterable[GlucoseSample] = (),
        doses: Iterable[DoseRecord] = (),
        carbs: Iterable[CarbRecord] = (),
        basal: Schedule[float] | None = None,
        sensitivity: Schedule[float] | None = None,
        carb_ratio: Schedule[float] | None = None,
        target: Schedule[TargetRange] | None = None,
        limits: DosingLimits | None = None,
    ) -> None:
        self.glucose = sorted(glucose, key=lambda g: g.time)
        self.doses = sorted(doses, key=lambda d: d.start)
        self.carbs = sorted(carbs, key=lambda c: c.time)
        self.basal = basal or Schedule(name="basal")
        self.sensitivity = sensitivity or Schedule(name="sensitivity")
        self.carb_ratio = carb_ratio or Schedule(name="carbRatio")
        self.target = target or Schedule(name="target")
        self.limits = limits

    @staticmethod
    def _window(schedule: Schedule, start: datetime, end: datetime) -> Schedule:
        return Schedule(schedule.between(start, end), name=schedule.name)

    async def get_glucose_values(self, start: datetime, end: datetime) -> Sequence[GlucoseSample]:
        return [g for g in self.glucose if start <= g.time <= end]

    async def get_doses(self, start: datetime, end: datetime) -> Sequence[DoseRecord]:
        return [d for d in self.doses if d.end >= start and d.start <= end]

    async def get_carb_entries(self, start: datetime, end: datetime) -> Sequence[CarbRecord]:
        return [c for c in self.carbs if start <= c.time <= end]

    async def get_basal_history(self, start: datetime, end: datetime) -> Schedule[float]:
        return self._window(self.basal, start, end)

    async def get_sensitivity_history(self, start: datetime, end: datetime) -> Schedule[float]:
        return self._window(self.sensitivity, start, end)

    async def get_carb_ratio_history(self, start: datetime, end: datetime) -> Schedule[float]:
        return self._window(self.carb_ratio, start, end)

    async def get_target_history(self, start: datetime, end: datetime) -> Schedule[TargetRange]:
        return self._window(self.target, start, end)

    async def get_dosing_limits(self, at: datetime) -> DosingLimits | None:
        return self.limits


async def fetch_forecast_input(
    provider: HistoryProvider,
    prediction_start: datetime,
    effects_options: EffectsOptions = EffectsOptions.ALL,
    insulin_type: InsulinType = InsulinType.NOVOLOG,
    treatment_history: timedelta | None = None,
    insulin_activity_duration: timedelta | None = None,
) -> ForecastInput:
    """Query every history concurrently and snapshot the results into a ForecastInput."""
    if treatment_history is None:
        treatment_history = config.SETTINGS.treatment_history_interval
    if insulin_activity_duration is None:
        insulin_activity_duration = config.SETTINGS.insulin_activity_duration

    history_start = prediction_start - treatment_history
    settings_end = prediction_start + insulin_activity_duration
    carb_start = prediction_start - config.MAX_CARB_ABSORPTION_TIME

    glucose, doses, carbs, basal, sensitivity, carb_ratio, target, limits = await asyncio.gather(
        provider.get_glucose_values(carb_start, prediction_start),
        provider.get_doses(history_start, prediction_start),
        provider.get_carb_entries(carb_start, prediction_start),
        provider.get_basal_history(history_start, settings_end),
        provider.get_sensitivity_history(history_start, settings_end),
        provider.get_carb_ratio_history(history_start, settings_end),
        provider.get_target_history(history_start, settings_end),
        provider.get_dosing_limits(prediction_start),
    )
    logger.debug(
        "fetch_forecast_input: %d glucose, %d doses, %d carbs for %s",
        len(glucose),
        len(doses),
        len(carbs),
        prediction_start,
    )
    return ForecastInput(
        prediction_start=prediction_start,
        glucose_history=tuple(glucose),
        doses=tuple(doses),
        carb_entries=tuple(carbs),
        basal=basal,
        sensitivity=sensitivity,
        carb_ratio=carb_ratio,
        target=target,
        limits=limits,
        effects_options=effects_options,
        insulin_type=insulin_type,
        insulin_activity_duration=insulin_activity_duration,
    )


async def fetch_effects_timeline(
    provider: HistoryProvider,
    start: datetime,
    end: datetime,
    stride: timedelta | None = None,
    insulin_type: InsulinType | None = None,
    insulin_activity_duration: timedelta = config.INSULIN_ACTIVITY_DURATION,
) -> list[EffectsSummary]:
    dose_start = start - insulin_activity_duration
    settings_end = end + insulin_activity_duration
    doses, basal, sensitivity = await asyncio.gather(
        provider.get_doses(dose_start, end),
        provider.get_basal_history(dose_start, settings_end),
        provider.get_sensitivity_history(dose_start, settings_end),
    )
    return effects_timeline(
        tuple(doses),
        basal,
        sensitivity,
        start,
        end,
        insulin_type=insulin_type,
        stride=stride,
        insulin_activity_duration=insulin_activity_duration,
    )


@dataclass(frozen=True)
class LoopChartsData:
    """Everything a diagnostic chart of [start, end] needs, already computed."""

    glucose: list[GlucoseSample] = field(default_factory=list)
    doses: list[DoseRecord] = field(default_factory=list)  # basal-like and automatic boluses
    manual_boluses: list[DoseRecord] = field(default_factory=list)
    carb_entries: list[CarbRecord] = field(default_factory=list)
    basal_history: Schedule[float] = field(default_factory=lambda: Schedule(name="basal"))
    target_ranges: Schedule[TargetRange] = field(default_factory=lambda: Schedule(name="target"))
    insulin_on_board: list[InsulinValue] = field(default_factory=list)
    active_carbs: list[CarbValue] = field(default_factory=list)


async def fetch_loop_charts_data(
    provider: HistoryProvider,
    start: datetime,
    end: datetime,
    delta: timedelta = config.DEFAULT_DELTA,
    insulin_type: InsulinType | None = None,
) -> LoopChartsData:
    # dynamic carbs need insulin effects back to start - (max absorption + activity duration)
    dose_start = start - config.MAX_CARB_ABSORPTION_TIME - config.INSULIN_ACTIVITY_DURATION
    effects_start = floor_to_interval(start - config.MAX_CARB_ABSORPTION_TIME, delta)
    effects_end = ceil_to_interval(end, delta)

    doses, basal, sensitivity, carb_ratio, target, glucose, carbs = await asyncio.gather(
        provider.get_doses(dose_start, end),
        provider.get_basal_history(dose_start, end),
        provider.get_sensitivity_history(dose_start, end),
        provider.get_carb_ratio_history(effects_start, effects_end),
        provider.get_target_history(start, end),
        provider.get_glucose_values(effects_start, effects_end),
        provider.get_carb_entries(effects_start, effects_end),
    )

    model = insulin_model(insulin_type)
    annotated = annotate_doses(doses, basal)
    insulin_effects = glucose_effects(annotated, model, sensitivity, effects_start, effects_end, delta)
    ice = counteraction_effects(glucose, insulin_effects, delta)
    absorptions = map_carb_absorption(carbs, ice, carb_ratio, sensitivity)

    viewable = [d for d in doses if d.end >= start and d.start <= end]
    return LoopChartsData(
        glucose=[g for g in glucose if start <= g.time <= end],
        doses=[d for d in viewable if d.kind is not DoseKind.BOLUS or d.is_automatic],
        manual_boluses=[d for d in viewable if d.kind is DoseKind.BOLUS and not d.is_automatic],
        carb_entries=[c for c in carbs if start <= c.time <= end],
        basal_history=Schedule(basal.between(start, end), name=basal.name),
        target_ranges=target,
        insulin_on_board=insulin_on_board(annotated, model, start, end, delta),
        active_carbs=carbs_on_board(absorptions, start, end, delta),
    )
