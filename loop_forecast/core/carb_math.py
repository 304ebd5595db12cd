# loop_forecast/core/carb_math.py
from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from loop_forecast import config
from loop_forecast.core.date_math import ceil_to_interval, floor_to_interval, grid, minutes
from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import CarbRecord, CarbValue, GlucoseEffect, GlucoseEffectVelocity

logger = logging.getLogger(__name__)

_OVERRUN_EPSILON = 1e-7


class PiecewiseLinearAbsorption:
    """
    Absorption rate rises linearly to a plateau, holds, then falls linearly to 0.

    All inputs and outputs are fractions: percent of absorption time elapsed
    and percent of the carbs absorbed.
    """

    percent_end_of_rise = 0.15
    percent_start_of_fall = 0.5
    scale = 2.0 / (1.0 + percent_start_of_fall - percent_end_of_rise)

    @classmethod
    def percent_absorbed_at(cls, percent_time: float) -> float:
        eor, sof, scale = cls.percent_end_of_rise, cls.percent_start_of_fall, cls.scale
        if percent_time <= 0:
            return 0.0
        if percent_time < eor:
            return 0.5 * scale * percent_time * percent_time / eor
        if percent_time < sof:
            return scale * (percent_time - 0.5 * eor)
        if percent_time < 1:
            u = percent_time - sof
            return scale * (sof - 0.5 * eor + u * (1 - 0.5 * u / (1 - sof)))
        return 1.0

    @classmethod
    def percent_rate_at(cls, percent_time: float) -> float:
        eor, sof, scale = cls.percent_end_of_rise, cls.percent_start_of_fall, cls.scale
        if percent_time <= 0 or percent_time >= 1:
            return 0.0
        if percent_time < eor:
            return scale * percent_time / eor
        if percent_time < sof:
            return scale
        return scale * (1 - percent_time) / (1 - sof)

    @classmethod
    def percent_time_at(cls, percent_absorbed: float) -> float:
        """Inverse of percent_absorbed_at."""
        eor, sof, scale = cls.percent_end_of_rise, cls.percent_start_of_fall, cls.scale
        if percent_absorbed <= 0:
            return 0.0
        if percent_absorbed <= 0.5 * scale * eor:
            return math.sqrt(2 * eor * percent_absorbed / scale)
        if percent_absorbed <= scale * (sof - 0.5 * eor):
            return percent_absorbed / scale + 0.5 * eor
        if percent_absorbed < 1:
            # k*u^2 - u + c = 0, u = t - sof
            k = 0.5 / (1 - sof)
            c = percent_absorbed / scale - sof + 0.5 * eor
            u = (1 - math.sqrt(max(0.0, 1 - 4 * k * c))) / (2 * k)
            return sof + u
        return 1.0


@dataclass(frozen=True)
class CarbAbsorption:
    """
    Absorption timeline of one carb entry.

    Without an observation window the entry follows the static model over
    `absorption_time`. With one, absorption up to `observation_end` is what
    the counteraction effects showed (never slower than the minimum rate) and
    afterwards the static curve shape continues from the same fraction over
    `estimated_absorption_time`.
    """

    entry: CarbRecord
    csf: float  # mg/dL per g
    absorption_time: timedelta
    delay: timedelta
    min_absorption_rate: float  # g/min
    observed: tuple[tuple[datetime, datetime, float], ...] = ()  # (start, end, grams)
    observation_end: datetime | None = None
    estimated_absorption_time: timedelta | None = None
    percent_time_at_observation_end: float = 0.0

    @property
    def observed_grams(self) -> float:
        return sum(g for _, _, g in self.observed)

    def _observed_until(self, date: datetime) -> float:
        total = 0.0
        for start, end, grams in self.observed:
            if end <= date:
                total += grams
            elif start < date:
                total += grams * ((date - start) / (end - start))
        return total

    def _observed_absorbed(self, date: datetime) -> float:
        floor_grams = self.min_absorption_rate * minutes(date - self.entry.time - self.delay)
        return min(self.entry.grams, max(self._observed_until(date), floor_grams))

    def absorbed_at(self, date: datetime) -> float:
        grams = self.entry.grams
        if date <= self.entry.time or grams <= 0:
            return 0.0
        if self.observation_end is None or self.estimated_absorption_time is None:
            elapsed = minutes(date - self.entry.time - self.delay)
            return grams * PiecewiseLinearAbsorption.percent_absorbed_at(elapsed / minutes(self.absorption_time))
        if date <= self.observation_end:
            return self._observed_absorbed(date)
        progress = minutes(date - self.observation_end) / minutes(self.estimated_absorption_time)
        return grams * PiecewiseLinearAbsorption.percent_absorbed_at(self.percent_time_at_observation_end + progress)

    def on_board_at(self, date: datetime) -> float:
        if date < self.entry.time:
            return 0.0
        return max(0.0, self.entry.grams - self.absorbed_at(date))

    def effect_at(self, date: datetime) -> float:
        return self.csf * self.absorbed_at(date)


class _AbsorptionBuilder:
    def __init__(
        self,
        entry: CarbRecord,
        csf: float,
        absorption_time: timedelta,
        overrun: float,
        delay: timedelta,
        max_absorption_time: timedelta,
    ) -> None:
        self.entry = entry
        self.csf = csf
        self.absorption_time = absorption_time
        self.delay = delay
        self.max_absorption_time = max_absorption_time
        self.max_end = entry.time + delay + max_absorption_time
        self.min_absorption_rate = entry.grams / minutes(absorption_time * overrun)
        self.observed_effect = 0.0
        self.observed: list[tuple[datetime, datetime, float]] = []

    @property
    def remaining_effect(self) -> float:
        return max(0.0, self.entry.grams * self.csf - self.observed_effect)

    def add_effect(self, effect: float, start: datetime, end: datetime) -> None:
        self.observed_effect += effect
        self.observed.append((start, end, effect / self.csf if self.csf else 0.0))

    def build(self, last_observation: datetime | None) -> CarbAbsorption:
        status = CarbAbsorption(
            entry=self.entry,
            csf=self.csf,
            absorption_time=self.absorption_time,
            delay=self.delay,
            min_absorption_rate=self.min_absorption_rate,
            observed=tuple(self.observed),
        )
        if last_observation is None:
            return status
        observation_end = min(last_observation, self.max_end)
        if observation_end <= self.entry.time:
            return status

        elapsed = minutes(observation_end - self.entry.time - self.delay)
        absorbed = status._observed_absorbed(observation_end)
        fraction = absorbed / self.entry.grams if self.entry.grams > 0 else 1.0
        percent_time = PiecewiseLinearAbsorption.percent_time_at(fraction)
        if elapsed > 0 and percent_time > 0:
            total_minutes = elapsed / percent_time
        else:
            total_minutes = minutes(self.absorption_time)
        total_minutes = min(max(total_minutes, elapsed), minutes(self.max_absorption_time))

        return CarbAbsorption(
            entry=self.entry,
            csf=self.csf,
            absorption_time=self.absorption_time,
            delay=self.delay,
            min_absorption_rate=self.min_absorption_rate,
            observed=tuple(self.observed),
            observation_end=observation_end,
            estimated_absorption_time=timedelta(minutes=total_minutes),
            percent_time_at_observation_end=percent_time,
        )


def carb_sensitivity_factor(entry: CarbRecord, sensitivity: Schedule[float], carb_ratio: Schedule[float]) -> float:
    """mg/dL rise per gram: ISF / carb ratio at the entry's time."""
    return sensitivity.require_closest_prior(entry.time) / carb_ratio.require_closest_prior(entry.time)


def map_carb_absorption(
    entries: Sequence[CarbRecord],
    velocities: Sequence[GlucoseEffectVelocity],
    carb_ratio: Schedule[float],
    sensitivity: Schedule[float],
    default_absorption_time: timedelta = config.DEFAULT_CARB_ABSORPTION_TIME,
    absorption_time_overrun: float = config.CARB_ABSORPTION_TIME_OVERRUN,
    delay: timedelta = config.CARB_EFFECT_DELAY,
    max_absorption_time: timedelta = config.MAX_CARB_ABSORPTION_TIME,
) -> list[CarbAbsorption]:
    """
    Distribute positive counteraction among the carb entries active in each
    interval, proportionally to their minimum absorption rates and capped at
    each entry's remaining effect. Whatever is left goes to the newest active
    entry as overrun.
    """
    builders = [
        _AbsorptionBuilder(
            entry,
            carb_sensitivity_factor(entry, sensitivity, carb_ratio),
            entry.absorption_time or default_absorption_time,
            absorption_time_overrun,
            delay,
            max_absorption_time,
        )
        for entry in sorted(entries, key=lambda e: e.time)
        if entry.grams > 0
    ]
    if not builders:
        return []

    for dx in velocities:
        if dx.end <= dx.start:
            continue
        active = [b for b in builders if b.entry.time <= dx.start < b.max_end]
        if not active:
            continue
        effect_value = max(0.0, dx.effect)
        total_rate = sum(b.min_absorption_rate for b in active)
        for b in active:
            if total_rate > 0:
                partial = min(b.remaining_effect, b.min_absorption_rate / total_rate * effect_value)
            else:
                partial = 0.0
            total_rate -= b.min_absorption_rate
            effect_value -= partial
            b.add_effect(partial, dx.start, dx.end)
            if b is active[-1] and effect_value > _OVERRUN_EPSILON:
                b.add_effect(effect_value, dx.start, dx.end)

    last_observation = velocities[-1].end if velocities else None
    return [b.build(last_observation) for b in builders]


def static_carb_absorption(
    entries: Sequence[CarbRecord],
    carb_ratio: Schedule[float],
    sensitivity: Schedule[float],
    default_absorption_time: timedelta = config.DEFAULT_CARB_ABSORPTION_TIME,
    delay: timedelta = config.CARB_EFFECT_DELAY,
) -> list[CarbAbsorption]:
    out = []
    for entry in sorted(entries, key=lambda e: e.time):
        if entry.grams <= 0:
            continue
        absorption_time = entry.absorption_time or default_absorption_time
        out.append(
            CarbAbsorption(
                entry=entry,
                csf=carb_sensitivity_factor(entry, sensitivity, carb_ratio),
                absorption_time=absorption_time,
                delay=delay,
                min_absorption_rate=entry.grams / minutes(absorption_time),
            )
        )
    return out


def carb_glucose_effects(
    absorptions: Sequence[CarbAbsorption],
    start: datetime,
    end: datetime,
    delta: timedelta = config.DEFAULT_DELTA,
) -> list[GlucoseEffect]:
    """Cumulative carb effect on the delta grid, zeroed at the first sample."""
    times = list(grid(floor_to_interval(start, delta), ceil_to_interval(end, delta), delta))
    raw = [sum(a.effect_at(t) for a in absorptions) for t in times]
    base = raw[0]
    return [GlucoseEffect(t, 0.0 if i == 0 else v - base) for i, (t, v) in enumerate(zip(times, raw, strict=True))]


def carbs_on_board_at(absorptions: Sequence[CarbAbsorption], at: datetime) -> float:
    return sum(a.on_board_at(at) for a in absorptions)


def carbs_on_board(
    absorptions: Sequence[CarbAbsorption],
    start: datetime,
    end: datetime,
    delta: timedelta = config.DEFAULT_DELTA,
) -> list[CarbValue]:
    return [
        CarbValue(t, carbs_on_board_at(absorptions, t))
        for t in grid(floor_to_interval(start, delta), ceil_to_interval(end, delta), delta)
    ]
