# loop_forecast/tools/run_forecast.py
"""
Run one forecast from a JSON fixture and print a short summary.

  python -m loop_forecast.tools.run_forecast fixture.json --csv out/prediction.csv --png out/forecast.png
"""

from __future__ import annotations

import argparse
import logging
import sys

from loop_forecast.analysis.forecast_review import effects_frame, write_prediction_csv
from loop_forecast.core.errors import ForecastError
from loop_forecast.core.loop_algorithm import get_forecast
from loop_forecast.forecast_structs import ForecastOutput
from loop_forecast.parsing.fixture_json import load_forecast_input


def format_summary(output: ForecastOutput) -> str:
    lines = []
    pred = output.prediction
    if pred:
        lines.append(f"start     {pred[0].time.isoformat()}  {pred[0].value:.1f} mg/dL")
        lines.append(f"eventual  {pred[-1].time.isoformat()}  {pred[-1].value:.1f} mg/dL")
        lowest = min(pred, key=lambda p: p.value)
        lines.append(f"minimum   {lowest.time.isoformat()}  {lowest.value:.1f} mg/dL")
    if output.active_insulin is not None:
        lines.append(f"IOB       {output.active_insulin:.2f} U")
    if output.active_carbs is not None:
        lines.append(f"COB       {output.active_carbs:.1f} g")
    if output.effects.total_retrospective_correction is not None:
        lines.append(f"RC        {output.effects.total_retrospective_correction:.1f} mg/dL")
    rec = output.recommendation
    if rec is not None:
        if rec.temp_basal is not None:
            if rec.temp_basal.is_cancel:
                lines.append("temp      cancel")
            else:
                minutes = rec.temp_basal.duration.total_seconds() / 60.0
                lines.append(f"temp      {rec.temp_basal.rate:.2f} U/h for {minutes:.0f} min")
        lines.append(f"bolus     {rec.bolus_units:.2f} U")
        if rec.notice:
            lines.append(f"notice    {rec.notice}")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run a glucose forecast from a fixture")
    p.add_argument("fixture", help="ForecastInput JSON fixture")
    p.add_argument("--csv", default=None, help="Write predicted glucose to this CSV")
    p.add_argument("--effects-csv", default=None, help="Write effect curves to this CSV")
    p.add_argument("--png", default=None, help="Save a diagnostic figure")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    inp = load_forecast_input(args.fixture)
    try:
        output = get_forecast(inp)
    except ForecastError as e:
        print(f"No forecast: {e}", file=sys.stderr)
        return 1

    print(format_summary(output))

    if args.csv:
        print("Prediction saved to", write_prediction_csv(output, args.csv))
    if args.effects_csv:
        effects_frame(output).to_csv(args.effects_csv, index=False)
        print("Effects saved to", args.effects_csv)
    if args.png:
        from loop_forecast.viz.plots_matplotlib import plot_forecast

        print("Figure saved to", plot_forecast(output, inp.glucose_history, out_path=args.png))
    return 0


if __name__ == "__main__":
    sys.exit(main())
