# loop_forecast/tools/review_forecasts.py
"""
Replay forecasts across a fixture's history and score them against the glucose
that followed.

  python -m loop_forecast.tools.review_forecasts fixture.json --every 60 --out reports/horizon_errors.csv --html reports/review.html
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

import pandas as pd

from loop_forecast.analysis.forecast_review import forecast_errors, horizon_error_table, summarize_errors
from loop_forecast.core.errors import ForecastError
from loop_forecast.core.loop_algorithm import get_forecast
from loop_forecast.forecast_structs import ForecastInput
from loop_forecast.parsing.fixture_json import load_forecast_input

logger = logging.getLogger(__name__)


def review(
    inp: ForecastInput,
    every: timedelta = timedelta(hours=1),
    warmup: timedelta = timedelta(hours=1),
    lookahead: timedelta = timedelta(hours=2),
) -> list[pd.DataFrame]:
    """Forecast at each `every` step where history and lookahead glucose exist."""
    glucose = inp.glucose_history
    if not glucose:
        return []
    first: datetime = glucose[0].time + warmup
    last: datetime = glucose[-1].time - lookahead

    frames: list[pd.DataFrame] = []
    t = first
    while t <= last:
        try:
            output = get_forecast(replace(inp, prediction_start=t))
        except ForecastError as e:
            logger.warning("review: skipping %s: %s", t, e)
            t += every
            continue
        actual = [g for g in glucose if t < g.time <= t + lookahead]
        frames.append(forecast_errors(output.prediction, actual))
        t += every
    return frames


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Score replayed forecasts against observed glucose")
    p.add_argument("fixture")
    p.add_argument("--every", type=int, default=60, help="Minutes between forecasts")
    p.add_argument("--out", default="reports/horizon_errors.csv")
    p.add_argument("--html", default=None, help="Also write a plotly HTML report here")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    inp = load_forecast_input(args.fixture)
    frames = review(inp, every=timedelta(minutes=args.every))
    table = horizon_error_table(frames)

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(out, index=False)

    overall = summarize_errors(pd.concat(frames, ignore_index=True)) if frames else summarize_errors(pd.DataFrame())
    print(json.dumps(overall, indent=2))
    print("Horizon table saved to", out)

    if args.html:
        from loop_forecast.viz.report_plotly import build_review_report

        report = build_review_report(frames, table, args.html)
        if report is not None:
            print("HTML report saved to", report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
