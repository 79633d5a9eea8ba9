from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("vmload.ramp.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

REASON_COLORS = {
    "passed": "#2E86AB",
    "create_failed": "#A23B72",
    "connect_failed": "#F18F01",
    "connect_timeout": "#F6AE2D",
    "transport_error": "#C73E1D",
    "abnormal_close": "#8E3B46",
    "byte_count_mismatch": "#6A994E",
    "digest_mismatch": "#386641",
    "delete_failed": "#5C6F68",
    "idle_timeout": "#E07A5F",
    "unexpected_error": "#3D405B",
    "interrupted": "#81B29A",
}

DEFAULT_CHART_FILENAME = "ramp_summary.png"


def render_ramp_chart(
    population: pd.DataFrame,
    runs: pd.DataFrame,
    output_dir: Path,
    filename: str = DEFAULT_CHART_FILENAME,
) -> Path:
    """Render target vs active population over time next to outcome counts."""
    chart_path = output_dir / filename
    fig, (ax_population, ax_outcomes) = plt.subplots(
        1, 2, figsize=(15, 6), gridspec_kw={"width_ratios": [2, 1]}
    )

    _render_population(population, ax_population)
    _render_outcomes(runs, ax_outcomes)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Chart written to %s", chart_path)
    return chart_path


def _render_population(population: pd.DataFrame, ax: plt.Axes) -> None:
    if population.empty:
        ax.text(0.5, 0.5, "no samples", ha="center", va="center", transform=ax.transAxes)
        ax.set_axis_off()
        return

    ax.step(
        population["elapsed_s"],
        population["target"],
        where="post",
        linewidth=2,
        linestyle="--",
        color="#808080",
        label="Target",
    )
    ax.plot(
        population["elapsed_s"],
        population["active"],
        linewidth=2.5,
        color="#2E86AB",
        label="Active",
    )
    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("Virtual users", fontweight="semibold")
    ax.set_title("Virtual User Population", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.legend(loc="upper left", frameon=True)
    ax.grid(True, alpha=0.3, linestyle="--")


def _render_outcomes(runs: pd.DataFrame, ax: plt.Axes) -> None:
    if runs.empty:
        ax.text(0.5, 0.5, "no runs", ha="center", va="center", transform=ax.transAxes)
        ax.set_axis_off()
        return

    labels = runs["reason"].fillna("passed")
    counts = labels.value_counts()
    positions = np.arange(len(counts))

    bars = ax.bar(
        positions,
        counts.values,
        color=[REASON_COLORS.get(label, "#808080") for label in counts.index],
        alpha=0.85,
        edgecolor="white",
        linewidth=2,
    )
    ax.set_xticks(positions)
    ax.set_xticklabels(
        [label.replace("_", " ").title() for label in counts.index],
        rotation=30,
        ha="right",
    )
    ax.set_ylabel("Lifecycles", fontweight="semibold")
    ax.set_title("Lifecycle Outcomes", fontweight="bold", pad=15)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")

    for bar in bars:
        height = bar.get_height()
        ax.text(
            bar.get_x() + bar.get_width() / 2.0,
            height,
            f"{int(height)}",
            ha="center",
            va="bottom",
            fontweight="semibold",
        )
