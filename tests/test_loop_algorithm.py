from datetime import timedelta

import pytest

from loop_forecast.core.errors import IncompleteScheduleCoverageError, MissingGlucoseHistoryError
from loop_forecast.core.loop_algorithm import effects_timeline, get_forecast
from loop_forecast.forecast_structs import (
    CarbRecord,
    DoseRecord,
    DosingLimits,
    EffectsOptions,
    GlucoseSample,
)


def test_flat_history_gives_flat_forecast(now, make_input):
    output = get_forecast(make_input())

    assert output.prediction[0].time == now
    assert output.prediction[-1].time == now + timedelta(hours=6, minutes=10)
    assert all(p.value == pytest.approx(120.0) for p in output.prediction)
    assert output.active_insulin == 0.0
    assert output.active_carbs == 0.0
    assert output.effects.total_retrospective_correction == pytest.approx(0.0)
    assert output.recommendation is None


def test_bolus_lowers_eventual_glucose_by_isf(now, make_input, glucose_series):
    # momentum would take over the first half hour of the insulin curve
    inp = make_input(
        glucose=glucose_series(first=150.0),
        doses=[DoseRecord.bolus(now, 1.0)],
        effects_options=EffectsOptions.INSULIN | EffectsOptions.CARBS | EffectsOptions.RETROSPECTION,
    )

    output = get_forecast(inp)

    assert output.prediction[0].value == 150.0
    assert output.prediction[-1].value == pytest.approx(100.0)
    assert output.active_insulin == pytest.approx(1.0)


def test_prediction_times_strictly_ascending(now, make_input, glucose_series):
    glucose = glucose_series(end=now - timedelta(minutes=2), slope=0.5)
    inp = make_input(glucose=glucose, doses=[DoseRecord.bolus(now - timedelta(hours=1), 2.0)])

    prediction = get_forecast(inp).prediction

    assert prediction[0].time == glucose[-1].time
    assert all(b.time > a.time for a, b in zip(prediction, prediction[1:]))


def test_forecast_is_repeatable(now, make_input):
    inp = make_input(
        doses=[
            DoseRecord.bolus(now - timedelta(hours=2), 3.0),
            DoseRecord.temp_basal(now - timedelta(hours=1), timedelta(minutes=30), 2.5),
        ],
        carbs=[CarbRecord(now - timedelta(hours=1), 45.0)],
    )
    assert get_forecast(inp) == get_forecast(inp)


def test_without_glucose_raises(make_input):
    with pytest.raises(MissingGlucoseHistoryError):
        get_forecast(make_input(glucose=[]))


def test_only_future_glucose_raises(now, make_input):
    with pytest.raises(MissingGlucoseHistoryError):
        get_forecast(make_input(glucose=[GlucoseSample(now + timedelta(minutes=5), 120.0)]))


def test_schedule_gap_at_start_raises(now, make_input, schedules):
    settings = schedules(start=now + timedelta(hours=1))
    with pytest.raises(IncompleteScheduleCoverageError) as exc:
        get_forecast(make_input(settings=settings))
    assert exc.value.at == now


def test_future_doses_and_carbs_are_ignored(now, make_input):
    baseline = get_forecast(make_input())
    later = get_forecast(
        make_input(
            doses=[DoseRecord.bolus(now + timedelta(hours=1), 4.0)],
            carbs=[CarbRecord(now + timedelta(minutes=30), 60.0)],
        )
    )
    assert [p.value for p in later.prediction] == pytest.approx([p.value for p in baseline.prediction])
    assert later.active_carbs == 0.0


def test_carbs_raise_the_forecast(now, make_input):
    output = get_forecast(make_input(carbs=[CarbRecord(now - timedelta(minutes=30), 30.0)]))

    assert 0.0 < output.active_carbs < 30.0
    assert output.prediction[-1].value > 120.0
    assert output.effects.carbs


def test_late_entered_carbs_use_static_absorption(now, make_input):
    entry = CarbRecord(now - timedelta(minutes=30), 30.0, entered_at=now + timedelta(minutes=5))
    output = get_forecast(make_input(carbs=[entry]))

    assert 0.0 < output.active_carbs < 30.0
    assert output.prediction[-1].value > 120.0


def test_effects_options_select_curves(now, make_input, glucose_series):
    inp = make_input(
        glucose=glucose_series(first=150.0),
        doses=[DoseRecord.bolus(now, 1.0)],
        effects_options=EffectsOptions.CARBS | EffectsOptions.MOMENTUM,
    )

    output = get_forecast(inp)

    assert all(p.value == pytest.approx(150.0) for p in output.prediction)
    assert output.effects.retrospective_correction == []


def test_stale_glucose_has_no_momentum(now, make_input, glucose_series):
    stale = glucose_series(end=now - timedelta(hours=1), slope=2.0)
    fresh = glucose_series(end=now, slope=2.0)

    stale_output = get_forecast(make_input(glucose=stale, effects_options=EffectsOptions.MOMENTUM))
    fresh_output = get_forecast(make_input(glucose=fresh, effects_options=EffectsOptions.MOMENTUM))

    assert stale_output.effects.momentum == []
    assert all(p.value == pytest.approx(stale[-1].value) for p in stale_output.prediction)
    assert fresh_output.effects.momentum
    assert fresh_output.prediction[-1].value > fresh[-1].value


def test_low_forecast_suspends(now, make_input, glucose_series):
    inp = make_input(
        glucose=glucose_series(first=90.0),
        limits=DosingLimits(max_bolus=5.0, max_basal_rate=3.0),
    )

    rec = get_forecast(inp).recommendation

    assert rec.temp_basal.rate == 0.0
    assert not rec.temp_basal.is_cancel
    assert rec.bolus_units == 0.0


def test_high_forecast_recommends_more_insulin(now, make_input, glucose_series):
    inp = make_input(
        glucose=glucose_series(first=200.0),
        limits=DosingLimits(max_bolus=5.0, max_basal_rate=3.0),
    )

    rec = get_forecast(inp).recommendation

    assert rec.temp_basal.rate == pytest.approx(3.0)


def test_effects_timeline_tracks_bolus(now, schedules):
    s = schedules()
    doses = [DoseRecord.bolus(now, 1.0)]

    summaries = effects_timeline(
        doses,
        s["basal"],
        s["sensitivity"],
        now - timedelta(hours=1),
        now + timedelta(hours=1),
        stride=timedelta(minutes=30),
    )

    assert [x.time for x in summaries] == [now + timedelta(minutes=m) for m in (-60, -30, 0, 30, 60)]
    assert summaries[0].net_insulin_effect == 0.0
    assert summaries[0].insulin_on_board == 0.0
    assert summaries[2].net_insulin_effect == pytest.approx(-50.0)
    assert summaries[2].insulin_on_board == pytest.approx(1.0)
    assert -50.0 < summaries[3].net_insulin_effect < 0.0
    assert 0.0 < summaries[4].insulin_on_board < summaries[3].insulin_on_board < 1.0
