# loop_forecast/viz/report_plotly.py
from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)


def _build_html_template(content: str) -> str:
    return f"""<html>
<head>
    <meta charset="utf-8" />
    <title>Forecast review</title>
    <script src="https://cdn.plot.ly/plotly-latest.min.js"></script>
</head>
<body>
{content}
</body>
</html>"""


def build_review_report(
    frames: Sequence[pd.DataFrame],
    table: pd.DataFrame,
    out_path: str | Path,
) -> Path | None:
    """
    Write an HTML page with the replayed forecasts: predicted vs observed
    scatter, error over horizon and the per-horizon MAE / RMSE table.

    frames: forecast_errors() output, one frame per replayed forecast
    """
    # heavy imports inside to avoid side effects on import
    import plotly.graph_objs as go
    from plotly.offline import plot as plot_offline
    from plotly.subplots import make_subplots

    frames = [f for f in frames if not f.empty]
    if not frames:
        print("No reviewed forecasts; nothing to report")
        return None
    df = pd.concat(frames, ignore_index=True)

    # --- Scatter predicted vs observed ---
    lo = float(min(df["actual"].min(), df["predicted"].min()))
    hi = float(max(df["actual"].max(), df["predicted"].max()))
    fig_scatter = go.Figure(
        data=[
            go.Scatter(
                x=df["actual"],
                y=df["predicted"],
                mode="markers",
                name="forecast points",
                marker=dict(size=5, color=df["horizon_min"], colorscale="Viridis", colorbar=dict(title="min")),
                hovertemplate="observed: %{x}<br>predicted: %{y}",
            ),
            go.Scatter(x=[lo, hi], y=[lo, hi], mode="lines", name="ideal", line=dict(color="green", dash="dash")),
        ]
    )
    fig_scatter.update_layout(
        title="Predicted vs observed glucose",
        xaxis_title="observed, mg/dL",
        yaxis_title="predicted, mg/dL",
        height=600,
    )

    # --- Error over horizon, one trace per forecast ---
    fig_err = go.Figure()
    for f in frames:
        start = f["time"].iloc[0] - pd.to_timedelta(f["horizon_min"].iloc[0], unit="min")
        fig_err.add_trace(
            go.Scatter(x=f["horizon_min"], y=f["error"], mode="lines", name=start.strftime("%Y-%m-%d %H:%M"))
        )
    fig_err.add_hline(y=0.0, line=dict(color="black", width=1))
    fig_err.update_layout(title="Error by horizon", xaxis_title="minutes ahead", yaxis_title="mg/dL", height=500)

    # --- MAE / RMSE per horizon ---
    fig_table = make_subplots(rows=1, cols=1)
    fig_table.add_trace(go.Bar(x=table["horizon_min"], y=table["mae"], name="MAE"), row=1, col=1)
    fig_table.add_trace(go.Bar(x=table["horizon_min"], y=table["rmse"], name="RMSE"), row=1, col=1)
    fig_table.update_layout(title="Error per horizon", xaxis_title="minutes ahead", yaxis_title="mg/dL", barmode="group")

    html_parts = ["<h1>Forecast review</h1>", f"<p>{len(frames)} forecasts, {len(df)} matched points</p>"]
    html_parts.append("<h2>Predicted vs observed</h2>")
    html_parts.append(plot_offline(fig_scatter, include_plotlyjs=False, output_type="div"))
    html_parts.append("<h2>Error by horizon</h2>")
    html_parts.append(plot_offline(fig_err, include_plotlyjs=False, output_type="div"))
    html_parts.append("<h2>MAE / RMSE</h2>")
    html_parts.append(plot_offline(fig_table, include_plotlyjs=False, output_type="div"))

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(_build_html_template("".join(html_parts)), encoding="utf-8")
    logger.info("build_review_report: %d forecasts written to %s", len(frames), out_path)
    return out_path
