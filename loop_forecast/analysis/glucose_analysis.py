# loop_forecast/analysis/glucose_analysis.py
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import numpy as np

from loop_forecast import config
from loop_forecast.forecast_structs import GlucoseSample


def resample_nearest(
    samples: Sequence[GlucoseSample],
    start: datetime,
    end: datetime,
    delta: timedelta = config.DEFAULT_DELTA,
) -> list[float | None]:
    """
    Nearest-neighbour resampling onto start, start + delta, ... end.

    A grid point gets None when its nearest sample is further than delta away.
    Samples must be sorted ascending.
    """
    out: list[float | None] = []
    idx = 0
    t = start
    while t <= end:
        if idx >= len(samples):
            out.append(None)
            t += delta
            continue
        here = abs(samples[idx].time - t)
        if idx < len(samples) - 1 and abs(samples[idx + 1].time - t) <= here:
            idx += 1
            continue
        out.append(samples[idx].value if here <= delta else None)
        t += delta
    return out


def pearson_correlation(x: Sequence[float | None], y: Sequence[float | None]) -> float | None:
    """Correlation over the positions where both values exist; None when undefined."""
    if len(x) != len(y):
        return None
    pairs = [(a, b) for a, b in zip(x, y) if a is not None and b is not None]
    if len(pairs) < 2:
        return None
    arr = np.array(pairs, dtype=float)
    xs, ys = arr[:, 0], arr[:, 1]
    n = float(len(arr))
    numerator = n * float(np.sum(xs * ys)) - float(np.sum(xs)) * float(np.sum(ys))
    spread = (n * float(np.sum(xs * xs)) - float(np.sum(xs)) ** 2) * (n * float(np.sum(ys * ys)) - float(np.sum(ys)) ** 2)
    if spread <= 0:
        return None
    r = numerator / float(np.sqrt(spread))
    return max(-1.0, min(1.0, r))


def autocorrelation(values: Sequence[float | None], max_lag: int) -> list[float | None]:
    n = len(values)
    out: list[float | None] = []
    for lag in range(max_lag):
        if lag >= n:
            out.append(None)
            continue
        out.append(pearson_correlation(values[: n - lag], values[lag:]))
    return out


def mean_and_standard_deviation(values: Sequence[float]) -> tuple[float, float] | None:
    """Population mean and standard deviation, None for empty input."""
    if not values:
        return None
    arr = np.asarray(values, dtype=float)
    return float(arr.mean()), float(arr.std())


def lag_pairs(samples: Sequence[GlucoseSample], max_gap: timedelta = timedelta(minutes=10)) -> list[tuple[float, float]]:
    """(previous, next) values of consecutive samples closer than max_gap."""
    return [(a.value, b.value) for a, b in zip(samples, samples[1:]) if b.time - a.time < max_gap]


# -----------------------------
# Kalman smoothing
# -----------------------------
@dataclass(frozen=True)
class ScalarKalmanFilter:
    state_estimate: float
    error_covariance: float

    def predict(self, process_noise: float, transition: float = 1.0, control: float = 0.0) -> ScalarKalmanFilter:
        state = transition * self.state_estimate + control
        covariance = transition * self.error_covariance * transition + process_noise
        return ScalarKalmanFilter(state, covariance)

    def update(self, measurement: float, observation_noise: float, observation: float = 1.0) -> ScalarKalmanFilter:
        gain = self.error_covariance * observation / (observation * self.error_covariance * observation + observation_noise)
        state = self.state_estimate + gain * (measurement - observation * self.state_estimate)
        covariance = (1 - gain * observation) * self.error_covariance
        return ScalarKalmanFilter(state, covariance)


def kalman_smooth(
    values: Sequence[float],
    process_noise: float = 2.5,
    observation_noise: float = 1.5,
    initial_state: float = 1.0,
    initial_covariance: float = 100.0,
) -> list[float]:
    kf = ScalarKalmanFilter(initial_state, initial_covariance)
    out = []
    for v in values:
        kf = kf.predict(process_noise).update(v, observation_noise)
        out.append(kf.state_estimate)
    return out


# -----------------------------
# Distribution / ranges
# -----------------------------
def glucose_distribution(
    values: Sequence[float],
    bin_count: int = 37,
    limits: tuple[float, float] = (40.0, 400.0),
    log_scale: bool = False,
) -> list[tuple[float, int]]:
    """
    Histogram with bin centres spread evenly over `limits` (in log space when
    log_scale); each value counts toward its nearest centre.
    """
    lo, hi = limits
    if log_scale:
        lo, hi = float(np.log(lo)), float(np.log(hi))
    size = (hi - lo) / (bin_count - 1)
    counts = [0] * bin_count
    for v in values:
        x = float(np.log(v)) if log_scale else float(v)
        idx = int(round((x - lo) / size))
        counts[min(max(idx, 0), bin_count - 1)] += 1
    centres = [lo + i * size for i in range(bin_count)]
    if log_scale:
        centres = [float(np.exp(c)) for c in centres]
    return list(zip(centres, counts))


class TargetRangeCategory(str, Enum):
    VERY_LOW = "veryLow"
    LOW = "low"
    IN_RANGE = "inRange"
    HIGH = "high"
    VERY_HIGH = "veryHigh"


@dataclass(frozen=True)
class TargetRangeThresholds:
    low: float = 70.0
    high: float = 180.0
    very_low: float = 54.0
    very_high: float = 250.0

    @classmethod
    def standard(cls, mmol: bool = False) -> TargetRangeThresholds:
        if mmol:
            return cls(low=3.9, high=10.0, very_low=3.0, very_high=13.9)
        return cls()

    def category(self, value: float) -> TargetRangeCategory:
        if value <= self.very_low:
            return TargetRangeCategory.VERY_LOW
        if value <= self.low:
            return TargetRangeCategory.LOW
        if value >= self.very_high:
            return TargetRangeCategory.VERY_HIGH
        if value >= self.high:
            return TargetRangeCategory.HIGH
        return TargetRangeCategory.IN_RANGE


def time_in_range(values: Sequence[float], thresholds: TargetRangeThresholds | None = None) -> dict[str, float]:
    """Share of values per category, 0..1."""
    thresholds = thresholds or TargetRangeThresholds()
    out = {c.value: 0.0 for c in TargetRangeCategory}
    if not values:
        return out
    for v in values:
        out[thresholds.category(v).value] += 1
    return {k: v / len(values) for k, v in out.items()}
