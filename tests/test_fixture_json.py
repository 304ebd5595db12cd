import json
from datetime import timedelta

import pytest

from loop_forecast.core.loop_algorithm import get_forecast
from loop_forecast.forecast_structs import (
    CarbRecord,
    DoseRecord,
    DosingLimits,
    DosingStrategy,
    EffectsOptions,
    GlucoseSample,
    InsulinType,
    RCDecayCurve,
)
from loop_forecast.parsing.fixture_json import (
    dumps_forecast_input,
    forecast_input_from_dict,
    forecast_input_to_dict,
    load_forecast_input,
    save_forecast_input,
)


@pytest.fixture
def sample_input(now, make_input):
    return make_input(
        doses=[
            DoseRecord.bolus(now - timedelta(hours=2), 2.5, delivered=2.4),
            DoseRecord.temp_basal(now - timedelta(minutes=40), timedelta(minutes=30), 1.6),
        ],
        carbs=[
            CarbRecord(now - timedelta(hours=1), 40.0, absorption_time=timedelta(hours=2)),
            CarbRecord(now - timedelta(minutes=20), 15.0, entered_at=now - timedelta(minutes=10)),
        ],
        limits=DosingLimits(max_bolus=4.0, max_basal_rate=2.5, dosing_strategy=DosingStrategy.AUTOMATIC_BOLUS),
        insulin_type=InsulinType.FIASP,
    )


def test_round_trip_through_dict(sample_input):
    assert forecast_input_from_dict(forecast_input_to_dict(sample_input)) == sample_input


def test_round_trip_keeps_options_and_trend(now, make_input, glucose_series):
    glucose = glucose_series()
    glucose[-1] = GlucoseSample(glucose[-1].time, glucose[-1].value, trend_rate=-1.5)
    inp = make_input(
        glucose=glucose,
        effects_options=EffectsOptions.INSULIN | EffectsOptions.MOMENTUM,
        use_mid_absorption_isf=True,
        rc_decay_curve=RCDecayCurve.EXPONENTIAL,
        minimum_predicted_glucose=39.0,
    )

    data = json.loads(dumps_forecast_input(inp))
    assert data["effectsOptions"] == ["insulin", "momentum"]
    assert data["glucoseHistory"][-1]["trendRate"] == -1.5
    assert "trendRate" not in data["glucoseHistory"][0]

    assert forecast_input_from_dict(data) == inp


def test_file_round_trip_gives_same_forecast(sample_input, tmp_path, load_json):
    path = save_forecast_input(sample_input, tmp_path / "fixtures" / "input.json")

    data = load_json(path)
    assert data["predictionStart"] == sample_input.prediction_start.isoformat()
    assert data["doses"][0]["deliveredVolume"] == 2.4
    assert data["carbEntries"][0]["absorptionTime"] == 120.0
    assert data["target"][0]["value"] == {"minValue": 100.0, "maxValue": 110.0}
    assert data["limits"]["dosingStrategy"] == "automaticBolus"

    loaded = load_forecast_input(path)
    assert loaded == sample_input
    assert get_forecast(loaded) == get_forecast(sample_input)


def test_dump_is_stable(sample_input):
    text = dumps_forecast_input(sample_input)
    assert text == dumps_forecast_input(sample_input)
    assert text.startswith('{\n  "predictionStart"')


def test_prediction_start_defaults_to_latest_glucose(sample_input):
    data = forecast_input_to_dict(sample_input)
    del data["predictionStart"]
    assert forecast_input_from_dict(data).prediction_start == sample_input.glucose_history[-1].time


def test_fixture_without_start_or_glucose_is_rejected():
    with pytest.raises(ValueError):
        forecast_input_from_dict({"glucoseHistory": []})


def test_unordered_glucose_is_rejected(sample_input):
    data = forecast_input_to_dict(sample_input)
    data["glucoseHistory"].reverse()
    with pytest.raises(ValueError):
        forecast_input_from_dict(json.loads(json.dumps(data)))
