# loop_forecast/viz/plots_matplotlib.py
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from loop_forecast.core.loop_algorithm import EffectsSummary
from loop_forecast.forecast_structs import ForecastOutput, GlucoseSample


def plot_forecast(
    output: ForecastOutput,
    glucose: Sequence[GlucoseSample] = (),
    out_path: str | Path | None = None,
    title: str = "Glucose forecast",
):
    """
    Two panels: glucose history + prediction on top, cumulative effects below.
    out_path: optional path to save PNG; if None, returns matplotlib Figure
    """
    # import matplotlib only when plotting
    import matplotlib

    if out_path:
        matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, (ax_bg, ax_fx) = plt.subplots(2, 1, figsize=(12, 7), sharex=True, height_ratios=[2, 1])

    if glucose:
        ax_bg.scatter([g.time for g in glucose], [g.value for g in glucose], s=8, color="tab:blue", label="glucose")
    if output.prediction:
        ax_bg.plot(
            [p.time for p in output.prediction],
            [p.value for p in output.prediction],
            color="tab:purple",
            linestyle="--",
            label="prediction",
        )
    ax_bg.set_ylabel("mg/dL")
    ax_bg.set_title(title)
    ax_bg.legend(loc="upper left")

    curves = {
        "insulin": (output.effects.insulin, "tab:orange"),
        "carbs": (output.effects.carbs, "tab:green"),
        "RC": (output.effects.retrospective_correction, "tab:red"),
        "momentum": (output.effects.momentum, "tab:gray"),
    }
    for name, (curve, color) in curves.items():
        if curve:
            ax_fx.plot([e.time for e in curve], [e.value for e in curve], color=color, label=name)
    ax_fx.axhline(0.0, color="black", linewidth=0.5)
    ax_fx.set_ylabel("effect, mg/dL")
    ax_fx.legend(loc="upper left")
    fig.autofmt_xdate()
    plt.tight_layout()

    if out_path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=150)
        plt.close(fig)
        return out_path

    return fig


def plot_effects_timeline(summaries: Sequence[EffectsSummary], out_path: str | Path | None = None):
    if not summaries:
        print("No summaries")
        return None

    import matplotlib

    if out_path:
        matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(12, 3))
    times = [s.time for s in summaries]
    ax.bar(times, [s.net_insulin_effect for s in summaries], width=0.015, color="tab:orange", label="net insulin effect")
    ax.set_ylabel("mg/dL")
    ax2 = ax.twinx()
    ax2.plot(times, [s.insulin_on_board for s in summaries], color="tab:blue", label="IOB")
    ax2.set_ylabel("U")
    ax.set_title("Insulin effects timeline")
    fig.autofmt_xdate()
    plt.tight_layout()

    if out_path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=150)
        plt.close(fig)
        return out_path

    return fig
