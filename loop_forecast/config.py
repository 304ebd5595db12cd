"""Default constants and environment-driven settings for the forecast engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

# -----------------------------
# Grid / horizons
# -----------------------------
DEFAULT_DELTA = timedelta(minutes=5)
INSULIN_ACTIVITY_DURATION = timedelta(hours=6, minutes=10)
TREATMENT_HISTORY_INTERVAL = timedelta(hours=24)

# -----------------------------
# Counteraction
# -----------------------------
COUNTERACTION_MIN_INTERVAL = timedelta(minutes=4)
# intervals longer than delta * factor carry no usable velocity
COUNTERACTION_MAX_GAP_FACTOR = 3

# -----------------------------
# Momentum
# -----------------------------
MOMENTUM_DATA_INTERVAL = timedelta(minutes=15)
MOMENTUM_DURATION = timedelta(minutes=30)

# -----------------------------
# Retrospective correction
# -----------------------------
RC_GROUPING_INTERVAL = timedelta(minutes=30)
RC_GROUPING_TOLERANCE = 1.01
RC_EFFECT_DURATION = timedelta(hours=1)
RC_RECENCY_INTERVAL = timedelta(minutes=15)

# -----------------------------
# Carbs
# -----------------------------
DEFAULT_CARB_ABSORPTION_TIME = timedelta(hours=3)
CARB_ABSORPTION_TIME_OVERRUN = 1.5
CARB_EFFECT_DELAY = timedelta(minutes=10)
MAX_CARB_ABSORPTION_TIME = timedelta(hours=10)

# -----------------------------
# Dosing
# -----------------------------
TEMP_BASAL_DURATION = timedelta(minutes=30)
BOLUS_PARTIAL_APPLICATION_FACTOR = 0.4

MG_DL_PER_MMOL = 18.0


def _int_from_env(var_name: str, default: int) -> int:
    raw_value = os.getenv(var_name)
    if raw_value is None or raw_value.strip() == "":
        return default
    return int(raw_value)


def _bool_from_env(var_name: str, default: bool = False) -> bool:
    """Interpret common truthy/falsey strings from the environment."""

    raw_value = os.getenv(var_name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ForecastSettings:
    """Process-wide defaults, overridable with LOOP_FORECAST_* variables."""

    delta_minutes: int = _int_from_env("LOOP_FORECAST_DELTA_MINUTES", 5)
    insulin_activity_minutes: int = _int_from_env("LOOP_FORECAST_INSULIN_ACTIVITY_MINUTES", 370)
    treatment_history_hours: int = _int_from_env("LOOP_FORECAST_TREATMENT_HISTORY_HOURS", 24)
    timeline_stride_minutes: int = _int_from_env("LOOP_FORECAST_TIMELINE_STRIDE_MINUTES", 30)
    use_mid_absorption_isf: bool = _bool_from_env("LOOP_FORECAST_MID_ABSORPTION_ISF", default=False)

    @property
    def delta(self) -> timedelta:
        return timedelta(minutes=self.delta_minutes)

    @property
    def insulin_activity_duration(self) -> timedelta:
        return timedelta(minutes=self.insulin_activity_minutes)

    @property
    def treatment_history_interval(self) -> timedelta:
        return timedelta(hours=self.treatment_history_hours)

    @property
    def timeline_stride(self) -> timedelta:
        return timedelta(minutes=self.timeline_stride_minutes)


SETTINGS = ForecastSettings()


def mgdl_to_mmol(value: float) -> float:
    return value / MG_DL_PER_MMOL


def mmol_to_mgdl(value: float) -> float:
    return value * MG_DL_PER_MMOL
