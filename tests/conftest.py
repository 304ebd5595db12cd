import json
from datetime import datetime, timedelta, timezone

import pytest

from loop_forecast.core.schedule import Schedule
from loop_forecast.forecast_structs import ForecastInput, GlucoseSample, TargetRange

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
SPAN = timedelta(hours=24)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def load_json():
    def _load(path):
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    return _load


@pytest.fixture
def schedules():
    """Constant settings covering NOW +- 24h: ISF 50, basal 1 U/h, CR 10 g/U, target 100-110."""

    def _make(isf=50.0, basal=1.0, carb_ratio=10.0, target=(100.0, 110.0), start=NOW - SPAN, end=NOW + SPAN):
        return {
            "basal": Schedule.constant(basal, start, end, name="basal"),
            "sensitivity": Schedule.constant(isf, start, end, name="sensitivity"),
            "carb_ratio": Schedule.constant(carb_ratio, start, end, name="carbRatio"),
            "target": Schedule.constant(TargetRange(*target), start, end, name="target"),
        }

    return _make


@pytest.fixture
def glucose_series():
    """Samples every `step` ending at `end`, value = first + slope * minutes."""

    def _make(end=NOW, duration=timedelta(hours=1), first=120.0, slope=0.0, step=timedelta(minutes=5)):
        out = []
        t = end - duration
        while t <= end:
            minutes = (t - (end - duration)).total_seconds() / 60.0
            out.append(GlucoseSample(t, first + slope * minutes))
            t += step
        return out

    return _make


@pytest.fixture
def make_input(schedules, glucose_series):
    def _make(glucose=None, doses=(), carbs=(), settings=None, prediction_start=NOW, **kwargs):
        if glucose is None:
            glucose = glucose_series()
        return ForecastInput(
            prediction_start=prediction_start,
            glucose_history=tuple(glucose),
            doses=tuple(doses),
            carb_entries=tuple(carbs),
            **(settings or schedules()),
            **kwargs,
        )

    return _make
