"""
Figures for fitted dose-response models.

- plot_dose_response: median infection probability with 95% band per curve,
  observed infected proportions overlaid for strains with data
- plot_traces: per-chain trace lines from ``trace_records``
- plot_ed50: ED50 point estimates with 95% credible intervals
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Union

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .predictive import NEW_STRAIN_LABEL, OVERALL_LABEL, CurveSource

PathLike = Union[str, Path]

CURVE_STYLES = {
    OVERALL_LABEL: {"color": "black", "linestyle": "-"},
    NEW_STRAIN_LABEL: {"color": "crimson", "linestyle": "--"},
}


def _save(fig, path: Optional[PathLike]):
    if path is not None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, dpi=300, bbox_inches="tight")
        plt.close(fig)
    return fig


def plot_dose_response(
    curves: pd.DataFrame,
    sources: Sequence[CurveSource] = (),
    ed50: Optional[pd.DataFrame] = None,
    path: Optional[PathLike] = None,
):
    """One panel per curve: median, 95% band, observed proportions, ED50 marker."""
    labels = list(dict.fromkeys(curves["strain"]))
    observed = {s.label: s.observed for s in sources}
    ncols = min(3, len(labels))
    nrows = int(np.ceil(len(labels) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4.5 * ncols, 3.5 * nrows),
                             sharex=True, sharey=True, squeeze=False)

    for ax, label in zip(axes.flat, labels):
        sub = curves[curves["strain"] == label]
        style = CURVE_STYLES.get(label, {"color": "dodgerblue", "linestyle": "-"})
        ax.fill_between(sub["dose"], sub["lower95"], sub["upper95"], color=style["color"], alpha=0.2,
                        label="95% CrI")
        ax.plot(sub["dose"], sub["median"], linewidth=2, label="Median", **style)

        obs = observed.get(label)
        if obs is not None:
            ax.scatter(obs.dose, obs.proportion, s=20 + 2 * obs.trials, color="black", zorder=3,
                       label="Observed")

        if ed50 is not None:
            row = ed50[ed50["strain"] == label]
            if not row.empty:
                ax.axvline(row["ed50"].iloc[0], color="grey", linestyle=":", linewidth=1.5, label="ED50")

        ax.axhline(0.5, color="grey", linewidth=0.5)
        ax.set_xscale("log")
        ax.set_ylim(-0.02, 1.02)
        ax.set_title(label)
        ax.grid(alpha=0.3)

    for ax in list(axes.flat)[len(labels):]:
        ax.set_visible(False)
    for ax in axes[-1, :]:
        ax.set_xlabel("Dose")
    for ax in axes[:, 0]:
        ax.set_ylabel("P(infection)")
    axes.flat[0].legend(loc="upper left", fontsize=8)
    fig.tight_layout()
    return _save(fig, path)


def plot_traces(
    traces: pd.DataFrame,
    parameters: Optional[Sequence[str]] = None,
    path: Optional[PathLike] = None,
):
    """Trace lines per chain for the selected parameter labels."""
    parameters = list(parameters) if parameters is not None else list(dict.fromkeys(traces["parameter"]))
    fig, axes = plt.subplots(len(parameters), 1, figsize=(10, 2.0 * len(parameters)),
                             sharex=True, squeeze=False)
    for ax, name in zip(axes[:, 0], parameters):
        sub = traces[traces["parameter"] == name]
        for chain, chain_df in sub.groupby("chain"):
            ax.plot(chain_df["iteration"], chain_df["value"], linewidth=0.6, alpha=0.8, label=f"chain {chain}")
        ax.set_ylabel(name)
        ax.grid(alpha=0.3)
    axes[-1, 0].set_xlabel("Iteration (after burn-in and thinning)")
    axes[0, 0].legend(loc="upper right", fontsize=8, ncol=4)
    fig.tight_layout()
    return _save(fig, path)


def plot_ed50(ed50: pd.DataFrame, path: Optional[PathLike] = None):
    """Horizontal ED50 intervals; grid-boundary estimates are drawn hollow."""
    fig, ax = plt.subplots(figsize=(7, 0.5 * len(ed50) + 1.5))
    y = np.arange(len(ed50))
    err = [ed50["ed50"] - ed50["ed50_lower95"], ed50["ed50_upper95"] - ed50["ed50"]]
    ax.errorbar(ed50["ed50"], y, xerr=err, fmt="none", ecolor="black", capsize=4)
    boundary = ed50["at_grid_boundary"].to_numpy(dtype=bool)
    ax.scatter(ed50["ed50"][~boundary], y[~boundary], color="dodgerblue", zorder=3, label="ED50")
    if boundary.any():
        ax.scatter(ed50["ed50"][boundary], y[boundary], facecolors="none", edgecolors="crimson", zorder=3,
                   label="ED50 at grid boundary")
    ax.set_yticks(y)
    ax.set_yticklabels(ed50["strain"])
    ax.set_xscale("log")
    ax.set_xlabel("Dose (ED50, 95% CrI)")
    ax.grid(alpha=0.3, axis="x")
    ax.legend(fontsize=8)
    fig.tight_layout()
    return _save(fig, path)
