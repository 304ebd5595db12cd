from datetime import timedelta

import pytest

from loop_forecast.core.dose_math import annotate_doses
from loop_forecast.core.errors import IncompleteScheduleCoverageError
from loop_forecast.core.insulin_math import glucose_effects, insulin_on_board, insulin_on_board_at
from loop_forecast.core.insulin_models import insulin_model
from loop_forecast.core.schedule import Schedule, ScheduleEntry
from loop_forecast.forecast_structs import DoseRecord


def test_single_bolus_full_effect(now, schedules):
    s = schedules()
    doses = annotate_doses([DoseRecord.bolus(now, 1.0)], s["basal"])

    effects = glucose_effects(doses, insulin_model(None), s["sensitivity"], now, now + timedelta(hours=6, minutes=10))

    assert effects[0].time == now
    assert effects[0].value == 0.0
    assert effects[-1].time == now + timedelta(hours=6, minutes=10)
    assert effects[-1].value == pytest.approx(-50.0)
    values = [e.value for e in effects]
    assert all(b <= a + 1e-12 for a, b in zip(values, values[1:]))


def test_curve_is_zeroed_at_first_grid_point(now, schedules):
    s = schedules()
    doses = annotate_doses([DoseRecord.bolus(now - timedelta(hours=2), 1.0)], s["basal"])

    effects = glucose_effects(doses, insulin_model(None), s["sensitivity"], now, now + timedelta(hours=6))

    assert effects[0].value == 0.0
    # only the remaining part of the bolus is still to come
    assert -50.0 < effects[-1].value < 0.0


def test_temp_basal_counts_only_net_insulin(now, schedules):
    s = schedules()
    doses = annotate_doses([DoseRecord.temp_basal(now, timedelta(minutes=30), 2.0)], s["basal"])

    effects = glucose_effects(doses, insulin_model(None), s["sensitivity"], now, now + timedelta(hours=7))

    assert effects[-1].value == pytest.approx(-25.0)


def test_exhausted_doses_are_ignored(now, schedules):
    s = schedules()
    doses = annotate_doses([DoseRecord.bolus(now - timedelta(hours=8), 3.0)], s["basal"])

    effects = glucose_effects(doses, insulin_model(None), s["sensitivity"], now, now + timedelta(hours=1))

    assert all(e.value == 0.0 for e in effects)


def test_missing_sensitivity_raises(now, schedules):
    s = schedules()
    late_isf = Schedule([ScheduleEntry(now + timedelta(hours=1), now + timedelta(hours=8), 50.0)], name="sensitivity")
    doses = annotate_doses([DoseRecord.bolus(now, 1.0)], s["basal"])

    with pytest.raises(IncompleteScheduleCoverageError):
        glucose_effects(doses, insulin_model(None), late_isf, now, now + timedelta(hours=6))


def test_mid_absorption_isf_follows_schedule(now, schedules):
    s = schedules()
    isf = Schedule(
        [
            ScheduleEntry(now - timedelta(hours=1), now + timedelta(hours=2), 50.0),
            ScheduleEntry(now + timedelta(hours=2), now + timedelta(hours=8), 100.0),
        ],
        name="sensitivity",
    )
    doses = annotate_doses([DoseRecord.bolus(now, 1.0)], s["basal"])
    model = insulin_model(None)
    end = now + timedelta(hours=6, minutes=10)

    at_start = glucose_effects(doses, model, isf, now, end)
    mid = glucose_effects(doses, model, isf, now, end, use_mid_absorption_isf=True)

    assert at_start[-1].value == pytest.approx(-50.0)
    assert -100.0 < mid[-1].value < -50.0


def test_insulin_on_board_decays_to_zero(now, schedules):
    s = schedules()
    doses = annotate_doses([DoseRecord.bolus(now, 2.0)], s["basal"])
    model = insulin_model(None)

    assert insulin_on_board_at(doses, model, now) == pytest.approx(2.0)
    assert insulin_on_board_at(doses, model, now - timedelta(minutes=5)) == 0.0

    series = insulin_on_board(doses, model, now)
    assert series[0].value == pytest.approx(2.0)
    assert series[-1].value == pytest.approx(0.0)


def test_suspend_gives_negative_insulin_on_board(now, schedules):
    s = schedules()
    doses = annotate_doses([DoseRecord.temp_basal(now - timedelta(minutes=30), timedelta(minutes=30), 0.0)], s["basal"])
    assert insulin_on_board_at(doses, insulin_model(None), now) < 0.0
