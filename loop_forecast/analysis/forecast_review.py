# loop_forecast/analysis/forecast_review.py
from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import timedelta
from pathlib import Path

import numpy as np
import pandas as pd

from loop_forecast import config
from loop_forecast.core.date_math import floor_to_interval
from loop_forecast.core.loop_algorithm import EffectsSummary
from loop_forecast.forecast_structs import ForecastOutput, GlucoseSample, PredictedGlucoseValue


def mae(a, b):
    return float(np.abs(np.asarray(a) - np.asarray(b)).mean())


def rmse(a, b):
    return float(np.sqrt(((np.asarray(a) - np.asarray(b)) ** 2).mean()))


def prediction_frame(prediction: Sequence[PredictedGlucoseValue]) -> pd.DataFrame:
    return pd.DataFrame({"time": [p.time for p in prediction], "predicted": [p.value for p in prediction]})


def effects_frame(output: ForecastOutput) -> pd.DataFrame:
    """One row per grid time, one column per cumulative effect curve."""
    columns = {
        "insulin": output.effects.insulin,
        "carbs": output.effects.carbs,
        "retrospective_correction": output.effects.retrospective_correction,
        "momentum": output.effects.momentum,
    }
    series = [
        pd.Series([e.value for e in curve], index=[e.time for e in curve], name=name)
        for name, curve in columns.items()
        if curve
    ]
    if not series:
        return pd.DataFrame(columns=["time", *columns])
    df = pd.concat(series, axis=1).sort_index()
    df.index.name = "time"
    return df.reset_index()


def counteraction_frame(output: ForecastOutput) -> pd.DataFrame:
    ice = output.effects.insulin_counteraction
    return pd.DataFrame(
        {
            "start": [v.start for v in ice],
            "end": [v.end for v in ice],
            "rate": [v.rate for v in ice],
        }
    )


def timeline_frame(summaries: Iterable[EffectsSummary]) -> pd.DataFrame:
    rows = [
        {"time": s.time, "net_insulin_effect": s.net_insulin_effect, "insulin_on_board": s.insulin_on_board}
        for s in summaries
    ]
    return pd.DataFrame(rows, columns=["time", "net_insulin_effect", "insulin_on_board"])


def forecast_errors(
    prediction: Sequence[PredictedGlucoseValue],
    actual: Sequence[GlucoseSample],
    tolerance: timedelta = timedelta(minutes=2, seconds=30),
    delta: timedelta = config.DEFAULT_DELTA,
) -> pd.DataFrame:
    """
    Match every predicted point with the nearest observed glucose within
    `tolerance`; unmatched points are dropped.

    horizon_min counts from the grid point at or before the first predicted
    value, so off-grid sensor timestamps still land on whole `delta` steps.
    """
    pred = prediction_frame(prediction)
    if pred.empty or not actual:
        return pd.DataFrame(columns=["time", "horizon_min", "predicted", "actual", "error"])
    pred["time"] = pd.to_datetime(pred["time"], utc=True)
    obs = pd.DataFrame({"time": pd.to_datetime([g.time for g in actual], utc=True), "actual": [g.value for g in actual]})
    merged = pd.merge_asof(
        pred.sort_values("time"),
        obs.sort_values("time"),
        on="time",
        direction="nearest",
        tolerance=pd.Timedelta(tolerance),
    ).dropna(subset=["actual"])
    start = pd.to_datetime(floor_to_interval(prediction[0].time, delta), utc=True)
    merged["horizon_min"] = (merged["time"] - start).dt.total_seconds() / 60.0
    merged["error"] = merged["predicted"] - merged["actual"]
    return merged[["time", "horizon_min", "predicted", "actual", "error"]].reset_index(drop=True)


def summarize_errors(df: pd.DataFrame) -> dict:
    if df.empty:
        return {"mae": None, "rmse": None, "max_abs": None, "count": 0}
    return {
        "mae": mae(df["predicted"], df["actual"]),
        "rmse": rmse(df["predicted"], df["actual"]),
        "max_abs": float(df["error"].abs().max()),
        "count": int(len(df)),
    }


def horizon_error_table(frames: Iterable[pd.DataFrame], horizons: Sequence[int] = (30, 60, 90, 120)) -> pd.DataFrame:
    """MAE / RMSE per forecast horizon (minutes) across many forecast reviews."""
    frames = list(frames)
    df = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
    rows = []
    for h in horizons:
        sel = df[np.isclose(df["horizon_min"], h)] if not df.empty else df
        rows.append(
            {
                "horizon_min": h,
                "mae": mae(sel["predicted"], sel["actual"]) if len(sel) else None,
                "rmse": rmse(sel["predicted"], sel["actual"]) if len(sel) else None,
                "count": int(len(sel)),
            }
        )
    return pd.DataFrame(rows)


def write_prediction_csv(output: ForecastOutput, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    prediction_frame(output.prediction).to_csv(path, index=False)
    return path
