# loop_forecast/parsing/fixture_json.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from dateutil.parser import isoparse

from loop_forecast.core.schedule import Schedule, ScheduleEntry
from loop_forecast.forecast_structs import (
    CarbRecord,
    DoseKind,
    DoseRecord,
    DosingLimits,
    DosingStrategy,
    EffectsOptions,
    ForecastInput,
    GlucoseSample,
    InsulinType,
    RCDecayCurve,
    RecommendationType,
    TargetRange,
)

logger = logging.getLogger(__name__)


def _iso(t: datetime) -> str:
    return t.isoformat()


def _minutes(td: timedelta) -> float:
    return td.total_seconds() / 60.0


def _schedule_to_json(schedule: Schedule, encode_value=lambda v: v) -> list[dict[str, Any]]:
    return [
        {"startTime": _iso(e.start), "endTime": _iso(e.end), "value": encode_value(e.value)}
        for e in schedule
    ]


def _schedule_from_json(items: list[dict[str, Any]], name: str, decode_value=float) -> Schedule:
    return Schedule(
        [ScheduleEntry(isoparse(i["startTime"]), isoparse(i["endTime"]), decode_value(i["value"])) for i in items],
        name=name,
    )


def _target_to_json(value: TargetRange) -> dict[str, float]:
    return {"minValue": value.min_value, "maxValue": value.max_value}


def _target_from_json(value: dict[str, Any]) -> TargetRange:
    return TargetRange(float(value["minValue"]), float(value["maxValue"]))


_EFFECT_NAMES = {
    "carbs": EffectsOptions.CARBS,
    "insulin": EffectsOptions.INSULIN,
    "momentum": EffectsOptions.MOMENTUM,
    "retrospection": EffectsOptions.RETROSPECTION,
}


def _effects_to_json(options: EffectsOptions) -> list[str]:
    return [name for name, flag in _EFFECT_NAMES.items() if flag in options]


def _effects_from_json(names: list[str]) -> EffectsOptions:
    options = EffectsOptions(0)
    for name in names:
        options |= _EFFECT_NAMES[name]
    return options


def _glucose_to_json(g: GlucoseSample) -> dict[str, Any]:
    item: dict[str, Any] = {"time": _iso(g.time), "value": g.value}
    if g.trend_rate is not None:
        item["trendRate"] = g.trend_rate
    return item


def forecast_input_to_dict(inp: ForecastInput) -> dict[str, Any]:
    """Minimal, stable rendering of a ForecastInput for regression fixtures."""
    doses = []
    for d in inp.doses:
        item: dict[str, Any] = {
            "kind": d.kind.value,
            "startTime": _iso(d.start),
            "endTime": _iso(d.end),
            "programmedVolume": d.programmed_volume,
        }
        if d.delivered_volume is not None:
            item["deliveredVolume"] = d.delivered_volume
        if d.is_automatic:
            item["isAutomatic"] = True
        if d.insulin_type is not None:
            item["insulinType"] = d.insulin_type.value
        doses.append(item)

    carbs = []
    for c in inp.carb_entries:
        item = {"time": _iso(c.time), "grams": c.grams}
        if c.absorption_time is not None:
            item["absorptionTime"] = _minutes(c.absorption_time)
        if c.entered_at is not None:
            item["enteredAt"] = _iso(c.entered_at)
        carbs.append(item)

    out: dict[str, Any] = {
        "predictionStart": _iso(inp.prediction_start),
        "glucoseHistory": [_glucose_to_json(g) for g in inp.glucose_history],
        "doses": doses,
        "carbEntries": carbs,
        "basal": _schedule_to_json(inp.basal),
        "sensitivity": _schedule_to_json(inp.sensitivity),
        "carbRatio": _schedule_to_json(inp.carb_ratio),
        "target": _schedule_to_json(inp.target, _target_to_json),
        "delta": _minutes(inp.delta),
        "insulinActivityDuration": _minutes(inp.insulin_activity_duration),
        "insulinType": inp.insulin_type.value,
        "effectsOptions": _effects_to_json(inp.effects_options),
        "useMidAbsorptionISF": inp.use_mid_absorption_isf,
        "rcDecayCurve": inp.rc_decay_curve.value,
    }
    if inp.minimum_predicted_glucose is not None:
        out["minimumPredictedGlucose"] = inp.minimum_predicted_glucose
    if inp.limits is not None:
        out["limits"] = {
            "maxBolus": inp.limits.max_bolus,
            "maxBasalRate": inp.limits.max_basal_rate,
            "suspendThreshold": inp.limits.suspend_threshold,
            "dosingStrategy": inp.limits.dosing_strategy.value,
            "recommendationType": inp.limits.recommendation_type.value,
            "bolusIncrement": inp.limits.bolus_increment,
        }
    return out


def forecast_input_from_dict(data: dict[str, Any]) -> ForecastInput:
    glucose = tuple(
        GlucoseSample(isoparse(g["time"]), float(g["value"]), g.get("trendRate")) for g in data.get("glucoseHistory", [])
    )
    doses = tuple(
        DoseRecord(
            kind=DoseKind(d["kind"]),
            start=isoparse(d["startTime"]),
            end=isoparse(d.get("endTime") or d["startTime"]),
            programmed_volume=float(d["programmedVolume"]),
            delivered_volume=float(d["deliveredVolume"]) if d.get("deliveredVolume") is not None else None,
            is_automatic=bool(d.get("isAutomatic", False)),
            insulin_type=InsulinType(d["insulinType"]) if d.get("insulinType") else None,
        )
        for d in data.get("doses", [])
    )
    carbs = tuple(
        CarbRecord(
            time=isoparse(c["time"]),
            grams=float(c["grams"]),
            absorption_time=timedelta(minutes=c["absorptionTime"]) if c.get("absorptionTime") is not None else None,
            entered_at=isoparse(c["enteredAt"]) if c.get("enteredAt") else None,
        )
        for c in data.get("carbEntries", [])
    )

    limits = None
    if data.get("limits"):
        lim = data["limits"]
        limits = DosingLimits(
            max_bolus=float(lim["maxBolus"]),
            max_basal_rate=float(lim["maxBasalRate"]),
            suspend_threshold=lim.get("suspendThreshold"),
            dosing_strategy=DosingStrategy(lim.get("dosingStrategy", DosingStrategy.TEMP_BASAL_ONLY.value)),
            recommendation_type=RecommendationType(lim.get("recommendationType", RecommendationType.AUTOMATIC.value)),
            bolus_increment=lim.get("bolusIncrement"),
        )

    extra: dict[str, Any] = {}
    if "delta" in data:
        extra["delta"] = timedelta(minutes=data["delta"])
    if "insulinActivityDuration" in data:
        extra["insulin_activity_duration"] = timedelta(minutes=data["insulinActivityDuration"])
    if data.get("insulinType"):
        extra["insulin_type"] = InsulinType(data["insulinType"])
    if "effectsOptions" in data:
        extra["effects_options"] = _effects_from_json(data["effectsOptions"])
    if "useMidAbsorptionISF" in data:
        extra["use_mid_absorption_isf"] = bool(data["useMidAbsorptionISF"])
    if data.get("rcDecayCurve"):
        extra["rc_decay_curve"] = RCDecayCurve(data["rcDecayCurve"])
    if data.get("minimumPredictedGlucose") is not None:
        extra["minimum_predicted_glucose"] = float(data["minimumPredictedGlucose"])

    if "predictionStart" in data:
        prediction_start = isoparse(data["predictionStart"])
    elif glucose:
        prediction_start = glucose[-1].time
    else:
        raise ValueError("fixture has neither predictionStart nor glucose history")

    logger.debug(
        "forecast_input_from_dict: %d glucose, %d doses, %d carbs",
        len(glucose),
        len(doses),
        len(carbs),
    )
    return ForecastInput(
        prediction_start=prediction_start,
        glucose_history=glucose,
        doses=doses,
        carb_entries=carbs,
        basal=_schedule_from_json(data.get("basal", []), "basal"),
        sensitivity=_schedule_from_json(data.get("sensitivity", []), "sensitivity"),
        carb_ratio=_schedule_from_json(data.get("carbRatio", []), "carbRatio"),
        target=_schedule_from_json(data.get("target", []), "target", _target_from_json),
        limits=limits,
        **extra,
    )


def dumps_forecast_input(inp: ForecastInput) -> str:
    return json.dumps(forecast_input_to_dict(inp), indent=2)


def save_forecast_input(inp: ForecastInput, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_forecast_input(inp), encoding="utf-8")
    return path


def load_forecast_input(path: str | Path) -> ForecastInput:
    with open(path, encoding="utf-8") as f:
        return forecast_input_from_dict(json.load(f))
