from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, Flag, auto

from loop_forecast import config
from loop_forecast.core.schedule import Schedule


# -----------------------------
# Glucose (mg/dL)
# -----------------------------
@dataclass(frozen=True)
class GlucoseSample:
    time: datetime
    value: float  # mg/dL
    trend_rate: float | None = None  # mg/dL/min, as reported by the sensor


# -----------------------------
# Insulin doses
# -----------------------------
class DoseKind(str, Enum):
    BOLUS = "bolus"
    SCHEDULED_BASAL = "scheduledBasal"
    TEMP_BASAL = "temporaryBasal"
    SUSPEND = "suspend"

    @property
    def is_basal_like(self) -> bool:
        return self is not DoseKind.BOLUS


class InsulinType(str, Enum):
    NOVOLOG = "novolog"
    HUMALOG = "humalog"
    APIDRA = "apidra"
    FIASP = "fiasp"
    LYUMJEV = "lyumjev"
    AFREZZA = "afrezza"


@dataclass(frozen=True)
class DoseRecord:
    kind: DoseKind
    start: datetime
    end: datetime
    programmed_volume: float  # U
    delivered_volume: float | None = None  # U, None while unknown
    is_automatic: bool = False
    insulin_type: InsulinType | None = None

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"dose ends before it starts: {self.start} -> {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def effective_volume(self) -> float:
        if self.delivered_volume is not None:
            return self.delivered_volume
        return self.programmed_volume

    @property
    def programmed_rate(self) -> float:
        """U/h over the dose interval; 0 for instantaneous doses."""
        hrs = self.duration.total_seconds() / 3600.0
        return self.programmed_volume / hrs if hrs > 0 else 0.0

    @classmethod
    def bolus(cls, time: datetime, units: float, delivered: float | None = None, automatic: bool = False) -> DoseRecord:
        return cls(DoseKind.BOLUS, time, time, units, delivered, automatic)

    @classmethod
    def temp_basal(
        cls,
        start: datetime,
        duration: timedelta,
        rate: float,
        delivered: float | None = None,
        automatic: bool = True,
    ) -> DoseRecord:
        volume = rate * duration.total_seconds() / 3600.0
        kind = DoseKind.SUSPEND if rate == 0 else DoseKind.TEMP_BASAL
        return cls(kind, start, start + duration, volume, delivered, automatic)


@dataclass(frozen=True)
class AnnotatedDose:
    """A dose (or a piece of one) together with the basal rate scheduled over it."""

    dose: DoseRecord
    scheduled_basal_rate: float | None = None  # U/h, None for boluses or uncovered pieces

    @property
    def start(self) -> datetime:
        return self.dose.start

    @property
    def end(self) -> datetime:
        return self.dose.end

    @property
    def net_basal_units(self) -> float:
        """Insulin delivered relative to what the basal schedule would have delivered."""
        dose = self.dose
        if dose.kind is DoseKind.BOLUS or self.scheduled_basal_rate is None:
            return dose.effective_volume
        hrs = dose.duration.total_seconds() / 3600.0
        if hrs == 0:
            return dose.effective_volume
        return dose.effective_volume - self.scheduled_basal_rate * hrs


@dataclass(frozen=True)
class InsulinValue:
    time: datetime
    value: float  # U


# -----------------------------
# Carbs
# -----------------------------
@dataclass(frozen=True)
class CarbRecord:
    time: datetime
    grams: float
    absorption_time: timedelta | None = None
    entered_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.absorption_time is not None and self.absorption_time <= timedelta(0):
            raise ValueError(f"carb absorption time must be positive, got {self.absorption_time}")

    @property
    def entry_time(self) -> datetime:
        return self.entered_at if self.entered_at is not None else self.time


@dataclass(frozen=True)
class CarbValue:
    time: datetime
    value: float  # g


# -----------------------------
# Targets
# -----------------------------
@dataclass(frozen=True)
class TargetRange:
    min_value: float  # mg/dL
    max_value: float  # mg/dL

    def __post_init__(self) -> None:
        if self.max_value < self.min_value:
            raise ValueError(f"target range is inverted: {self.min_value} > {self.max_value}")

    @property
    def midpoint(self) -> float:
        return (self.min_value + self.max_value) / 2.0


# -----------------------------
# Effects
# -----------------------------
@dataclass(frozen=True)
class GlucoseEffect:
    time: datetime
    value: float  # cumulative mg/dL


@dataclass(frozen=True)
class GlucoseEffectVelocity:
    start: datetime
    end: datetime
    rate: float  # mg/dL/min

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def effect(self) -> float:
        """Total mg/dL change over the interval."""
        return self.rate * self.duration.total_seconds() / 60.0


@dataclass(frozen=True)
class GlucoseChange:
    start: datetime
    end: datetime
    value: float  # mg/dL


@dataclass(frozen=True)
class PredictedGlucoseValue:
    time: datetime
    value: float  # mg/dL


# -----------------------------
# Algorithm configuration
# -----------------------------
class EffectsOptions(Flag):
    CARBS = auto()
    INSULIN = auto()
    MOMENTUM = auto()
    RETROSPECTION = auto()
    ALL = CARBS | INSULIN | MOMENTUM | RETROSPECTION


class RCDecayCurve(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class DosingStrategy(str, Enum):
    TEMP_BASAL_ONLY = "tempBasalOnly"
    AUTOMATIC_BOLUS = "automaticBolus"


class RecommendationType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


@dataclass(frozen=True)
class DosingLimits:
    max_bolus: float  # U
    max_basal_rate: float  # U/h
    suspend_threshold: float | None = None  # mg/dL; defaults to the current target lower bound
    dosing_strategy: DosingStrategy = DosingStrategy.TEMP_BASAL_ONLY
    recommendation_type: RecommendationType = RecommendationType.AUTOMATIC
    bolus_increment: float | None = None  # U, pump delivery resolution


@dataclass(frozen=True)
class ForecastInput:
    prediction_start: datetime
    glucose_history: tuple[GlucoseSample, ...]
    doses: tuple[DoseRecord, ...]
    carb_entries: tuple[CarbRecord, ...]
    basal: Schedule[float]
    sensitivity: Schedule[float]
    carb_ratio: Schedule[float]
    target: Schedule[TargetRange]
    limits: DosingLimits | None = None
    effects_options: EffectsOptions = EffectsOptions.ALL
    insulin_type: InsulinType = InsulinType.NOVOLOG
    delta: timedelta = field(default_factory=lambda: config.SETTINGS.delta)
    insulin_activity_duration: timedelta = field(default_factory=lambda: config.SETTINGS.insulin_activity_duration)
    use_mid_absorption_isf: bool = field(default_factory=lambda: config.SETTINGS.use_mid_absorption_isf)
    rc_decay_curve: RCDecayCurve = RCDecayCurve.LINEAR
    minimum_predicted_glucose: float | None = None

    def __post_init__(self) -> None:
        # snapshot whatever sequences the caller passed
        object.__setattr__(self, "glucose_history", tuple(self.glucose_history))
        object.__setattr__(self, "doses", tuple(self.doses))
        object.__setattr__(self, "carb_entries", tuple(self.carb_entries))
        times = [g.time for g in self.glucose_history]
        for prev, cur in zip(times, times[1:]):
            if cur <= prev:
                raise ValueError(f"glucose history must be strictly ascending (at {cur})")


# -----------------------------
# Output
# -----------------------------
@dataclass(frozen=True)
class ForecastEffects:
    insulin: list[GlucoseEffect] = field(default_factory=list)
    carbs: list[GlucoseEffect] = field(default_factory=list)
    retrospective_correction: list[GlucoseEffect] = field(default_factory=list)
    momentum: list[GlucoseEffect] = field(default_factory=list)
    insulin_counteraction: list[GlucoseEffectVelocity] = field(default_factory=list)
    retrospective_glucose_discrepancies: list[GlucoseChange] = field(default_factory=list)
    total_retrospective_correction: float | None = None  # mg/dL, after clamping


@dataclass(frozen=True)
class TempBasalRecommendation:
    rate: float  # U/h
    duration: timedelta  # zero means cancel the running temp basal

    @property
    def is_cancel(self) -> bool:
        return self.duration == timedelta(0)

    @classmethod
    def cancel(cls) -> TempBasalRecommendation:
        return cls(0.0, timedelta(0))


@dataclass(frozen=True)
class DoseRecommendation:
    recommendation_type: RecommendationType
    temp_basal: TempBasalRecommendation | None = None
    bolus_units: float = 0.0
    notice: str | None = None


@dataclass(frozen=True)
class ForecastOutput:
    prediction: list[PredictedGlucoseValue]
    effects: ForecastEffects
    recommendation: DoseRecommendation | None = None
    active_insulin: float | None = None  # U at prediction start
    active_carbs: float | None = None  # g at prediction start
