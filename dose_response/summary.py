"""
Posterior summaries over pooled (all chains combined) draws.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd
import xarray as xr

from .diagnostics import flatten_parameters

CI_LEVEL = 0.95
SUMMARY_COLUMNS = ("mean", "sd", "2.5%", "50%", "97.5%")


def credible_interval(values, axis: int = 0, prob: float = CI_LEVEL) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Equal-tailed interval: (lower, median, upper) along ``axis``."""
    if not 0.0 < prob < 1.0:
        raise ValueError(f"prob must lie in (0, 1), got {prob}")
    tail = (1.0 - prob) / 2.0
    lower, median, upper = np.quantile(np.asarray(values, dtype=float), [tail, 0.5, 1.0 - tail], axis=axis)
    return lower, median, upper


def summarize_draws(values) -> dict:
    values = np.asarray(values, dtype=float).reshape(-1)
    lower, median, upper = credible_interval(values)
    return {
        "mean": float(values.mean()),
        "sd": float(values.std(ddof=1)) if values.size > 1 else float("nan"),
        "2.5%": float(lower),
        "50%": float(median),
        "97.5%": float(upper),
    }


def summarize_posterior(posterior: xr.Dataset, var_names: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """Mean, sd and 2.5/50/97.5% quantiles per parameter label (``w_0``, ``w[1]``, ...)."""
    rows = []
    for label, values in flatten_parameters(posterior, var_names).items():
        rows.append({"parameter": label, **summarize_draws(values)})
    if not rows:
        return pd.DataFrame(columns=list(SUMMARY_COLUMNS)).rename_axis("parameter")
    return pd.DataFrame(rows).set_index("parameter")


def attach_diagnostics(summary: pd.DataFrame, diagnostics: pd.DataFrame) -> pd.DataFrame:
    """Join R-hat / ESS / converged columns onto a summary table."""
    out = summary.join(diagnostics[["r_hat", "ess_bulk", "ess_tail", "converged"]], how="left")
    # parameters without diagnostics stay <NA>
    out["converged"] = out["converged"].astype("boolean")
    return out
