from datetime import timedelta

import pytest

from loop_forecast.core.carb_math import (
    PiecewiseLinearAbsorption,
    carb_glucose_effects,
    carbs_on_board,
    carbs_on_board_at,
    map_carb_absorption,
    static_carb_absorption,
)
from loop_forecast.forecast_structs import CarbRecord, GlucoseEffectVelocity

FIVE = timedelta(minutes=5)


def _velocities(start, duration, rate):
    out = []
    t = start
    while t < start + duration:
        out.append(GlucoseEffectVelocity(t, t + FIVE, rate))
        t += FIVE
    return out


@pytest.mark.parametrize("fraction", [0.0, 0.05, 0.1, 0.3, 0.6, 0.8, 0.95, 1.0])
def test_piecewise_linear_inverse(fraction):
    t = PiecewiseLinearAbsorption.percent_time_at(fraction)
    assert PiecewiseLinearAbsorption.percent_absorbed_at(t) == pytest.approx(fraction, abs=1e-9)


def test_piecewise_linear_shape():
    model = PiecewiseLinearAbsorption
    assert model.percent_absorbed_at(-0.1) == 0.0
    assert model.percent_absorbed_at(1.2) == 1.0
    assert model.percent_rate_at(0.3) == pytest.approx(model.scale)
    assert model.percent_rate_at(1.0) == 0.0


def test_static_absorption_completes_after_delay_plus_absorption_time(now, schedules):
    s = schedules()
    entry = CarbRecord(now, 30.0, absorption_time=timedelta(hours=3))
    (absorption,) = static_carb_absorption([entry], s["carb_ratio"], s["sensitivity"])

    assert absorption.csf == pytest.approx(5.0)
    assert absorption.on_board_at(now) == pytest.approx(30.0)
    assert absorption.on_board_at(now - FIVE) == 0.0
    assert absorption.on_board_at(now + timedelta(hours=3, minutes=10)) == pytest.approx(0.0)
    assert absorption.effect_at(now + timedelta(hours=4)) == pytest.approx(150.0)


def test_dynamic_absorption_follows_observed_counteraction(now, schedules):
    s = schedules()
    entry = CarbRecord(now, 30.0, absorption_time=timedelta(hours=3))
    # 2 mg/dL/min for an hour = 120 mg/dL = 24 g at 5 mg/dL/g
    velocities = _velocities(now, timedelta(hours=1), 2.0)

    (absorption,) = map_carb_absorption([entry], velocities, s["carb_ratio"], s["sensitivity"])

    obs_end = now + timedelta(hours=1)
    assert absorption.observation_end == obs_end
    assert absorption.observed_grams == pytest.approx(24.0)
    assert absorption.on_board_at(obs_end) == pytest.approx(6.0)
    assert timedelta(minutes=50) <= absorption.estimated_absorption_time <= timedelta(hours=10)
    assert absorption.on_board_at(now + timedelta(hours=3)) == pytest.approx(0.0)

    effects = carb_glucose_effects([absorption], now - timedelta(minutes=30), now + timedelta(hours=3))
    assert effects[0].value == 0.0
    assert effects[-1].value == pytest.approx(150.0)


def test_slow_absorption_never_below_minimum_rate(now, schedules):
    s = schedules()
    entry = CarbRecord(now, 30.0, absorption_time=timedelta(hours=2))
    velocities = _velocities(now, timedelta(hours=1), 0.0)

    (absorption,) = map_carb_absorption([entry], velocities, s["carb_ratio"], s["sensitivity"])

    # minimum rate is 30 g over 3 h, counted after the 10 minute delay
    min_absorbed = 30.0 / 180.0 * 50.0
    assert absorption.on_board_at(now + timedelta(hours=1)) == pytest.approx(30.0 - min_absorbed)


def test_counteraction_split_by_minimum_rates(now, schedules):
    s = schedules()
    entries = [
        CarbRecord(now, 20.0, absorption_time=timedelta(hours=3)),
        CarbRecord(now, 40.0, absorption_time=timedelta(hours=3)),
    ]
    velocities = _velocities(now, timedelta(hours=1), 1.0)

    small, large = map_carb_absorption(entries, velocities, s["carb_ratio"], s["sensitivity"])

    assert small.observed_grams == pytest.approx(4.0)
    assert large.observed_grams == pytest.approx(8.0)


def test_overrun_goes_to_newest_entry(now, schedules):
    s = schedules()
    entries = [
        CarbRecord(now - timedelta(hours=1), 5.0, absorption_time=timedelta(hours=2)),
        CarbRecord(now, 10.0, absorption_time=timedelta(hours=3)),
    ]
    # 120 mg/dL observed, only 75 mg/dL worth of carbs entered
    velocities = _velocities(now, timedelta(minutes=30), 4.0)

    first, second = map_carb_absorption(entries, velocities, s["carb_ratio"], s["sensitivity"])

    assert first.observed_grams == pytest.approx(5.0)
    assert second.observed_grams == pytest.approx(19.0)


def test_negative_counteraction_is_not_absorption(now, schedules):
    s = schedules()
    entry = CarbRecord(now, 30.0)
    velocities = _velocities(now, timedelta(minutes=30), -3.0)

    (absorption,) = map_carb_absorption([entry], velocities, s["carb_ratio"], s["sensitivity"])

    assert absorption.observed_grams == 0.0


def test_carbs_on_board_series(now, schedules):
    s = schedules()
    absorptions = static_carb_absorption([CarbRecord(now, 20.0)], s["carb_ratio"], s["sensitivity"])

    series = carbs_on_board(absorptions, now - timedelta(minutes=10), now + timedelta(hours=4))

    assert series[0].value == 0.0
    assert series[2].value == pytest.approx(20.0)
    assert series[-1].value == pytest.approx(0.0)
    assert carbs_on_board_at(absorptions, now + timedelta(hours=1)) < 20.0


@pytest.mark.parametrize("absorption", [timedelta(0), timedelta(minutes=-30)])
def test_carb_entry_rejects_non_positive_absorption_time(now, absorption):
    with pytest.raises(ValueError):
        CarbRecord(now, 20.0, absorption_time=absorption)
