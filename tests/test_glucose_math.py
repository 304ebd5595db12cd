from datetime import timedelta

import pytest

from loop_forecast.core.date_math import grid
from loop_forecast.core.glucose_math import counteraction_effects, linear_momentum_effect
from loop_forecast.forecast_structs import GlucoseEffect, GlucoseSample

FIVE = timedelta(minutes=5)


def _flat_effects(start, end, step=0.0):
    return [GlucoseEffect(t, i * step) for i, t in enumerate(grid(start, end, FIVE))]


def test_counteraction_of_rising_glucose_without_effects(now, glucose_series):
    glucose = glucose_series(first=100.0, slope=1.0)
    effects = _flat_effects(now - timedelta(hours=2), now + timedelta(hours=1))

    velocities = counteraction_effects(glucose, effects)

    assert len(velocities) == 12
    assert [v.rate for v in velocities] == pytest.approx([1.0] * 12)
    assert velocities[-1].end == now


def test_counteraction_subtracts_modeled_effect(now, glucose_series):
    glucose = glucose_series(first=100.0, slope=1.0)
    # insulin pulling down 2 mg/dL every 5 minutes
    effects = _flat_effects(now - timedelta(hours=2), now + timedelta(hours=1), step=-2.0)

    velocities = counteraction_effects(glucose, effects)

    assert [v.rate for v in velocities] == pytest.approx([1.4] * 12)


def test_counteraction_drops_long_gaps(now):
    glucose = [
        GlucoseSample(now, 100.0),
        GlucoseSample(now + timedelta(minutes=5), 105.0),
        GlucoseSample(now + timedelta(minutes=25), 110.0),
        GlucoseSample(now + timedelta(minutes=30), 120.0),
    ]
    effects = _flat_effects(now, now + timedelta(hours=1))

    velocities = counteraction_effects(glucose, effects)

    assert [(v.start, v.end) for v in velocities] == [
        (now, now + timedelta(minutes=5)),
        (now + timedelta(minutes=25), now + timedelta(minutes=30)),
    ]
    assert velocities[1].rate == pytest.approx(2.0)


def test_counteraction_merges_short_intervals(now):
    glucose = [
        GlucoseSample(now, 100.0),
        GlucoseSample(now + timedelta(minutes=3), 101.0),
        GlucoseSample(now + timedelta(minutes=5), 110.0),
    ]
    effects = _flat_effects(now, now + timedelta(hours=1))

    (velocity,) = counteraction_effects(glucose, effects)

    assert velocity.start == now
    assert velocity.end == now + timedelta(minutes=5)
    assert velocity.rate == pytest.approx(2.0)


def test_counteraction_stops_where_effects_end(now, glucose_series):
    glucose = glucose_series(first=100.0, slope=1.0)
    effects = _flat_effects(now - timedelta(hours=2), now - timedelta(minutes=30))

    velocities = counteraction_effects(glucose, effects)

    assert velocities
    assert velocities[-1].end <= now - timedelta(minutes=30)


def test_counteraction_needs_two_samples(now):
    assert counteraction_effects([GlucoseSample(now, 100.0)], _flat_effects(now, now + FIVE)) == []


def test_linear_momentum_projects_recent_trend(now):
    glucose = [GlucoseSample(now - timedelta(minutes=15) + i * FIVE, 100.0 + 3.0 * i) for i in range(4)]

    momentum = linear_momentum_effect(glucose)

    assert momentum[0].time == now
    assert momentum[0].value == 0.0
    assert momentum[-1].time == now + timedelta(minutes=30)
    assert [m.value for m in momentum] == pytest.approx([0.0, 3.0, 6.0, 9.0, 12.0, 15.0, 18.0])


def test_linear_momentum_off_grid_sample_starts_at_zero(now):
    last = now + timedelta(minutes=2)
    glucose = [GlucoseSample(last - timedelta(minutes=15) + i * FIVE, 100.0 + 3.0 * i) for i in range(4)]

    momentum = linear_momentum_effect(glucose)

    assert momentum[0].time == now
    assert momentum[0].value == 0.0
    assert momentum[1].value == pytest.approx(1.8)
    assert momentum[2].value == pytest.approx(4.8)


def test_linear_momentum_needs_three_recent_samples(now):
    glucose = [GlucoseSample(now - FIVE, 100.0), GlucoseSample(now, 103.0)]
    assert linear_momentum_effect(glucose) == []


def test_linear_momentum_needs_continuous_data(now):
    glucose = [
        GlucoseSample(now - timedelta(minutes=15), 100.0),
        GlucoseSample(now - timedelta(minutes=14), 101.0),
        GlucoseSample(now, 110.0),
    ]
    assert linear_momentum_effect(glucose) == []
