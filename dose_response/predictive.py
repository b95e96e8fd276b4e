"""
Posterior-predictive dose-response curves and ED50 estimates
============================================================

For the overall population strain (alpha0, beta0), every observed strain
(alpha[k], beta[k]) and the new strain (alphanew, betanew), the infection
probability is evaluated for every posterior draw on a log-spaced dose grid,
giving a (draws x doses) matrix that is reduced to a median curve with a 95%
credible band.

ED50 is the grid dose whose median probability is nearest to 0.5. It is a
nearest-grid-point search, not a root solve: precision is bounded by the grid
spacing, and a curve that never approaches 0.5 returns a grid end point with
``at_grid_boundary`` set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import xarray as xr

from .data_prep.loader import DoseResponseData, ObservedCounts
from .model import infection_prob
from .summary import CI_LEVEL, credible_interval

log = logging.getLogger(__name__)

OVERALL_LABEL = "overall"
NEW_STRAIN_LABEL = "new strain"
DEFAULT_GRID_POINTS = 100

CURVE_COLUMNS = ("strain", "dose", "median", "lower95", "upper95")
ED50_COLUMNS = (
    "strain", "ed50", "ed50_lower95", "ed50_upper95", "distance_to_half", "grid_index", "at_grid_boundary",
)


@dataclass(frozen=True)
class CurveSource:
    """Pooled (alpha, beta) draws for one curve.

    ``observed`` is None for curves without data of their own (the overall
    population strain and the new strain).
    """
    label: str
    alpha: np.ndarray
    beta: np.ndarray
    observed: Optional[ObservedCounts] = None


# =============================================================================
# GRID AND SOURCES
# =============================================================================

def dose_grid(max_dose: float, num_points: int = DEFAULT_GRID_POINTS, min_dose: float = 1.0) -> np.ndarray:
    """Log-spaced doses from ``min_dose`` to ``max_dose`` inclusive."""
    if num_points < 2:
        raise ValueError(f"num_points must be >= 2, got {num_points}")
    if not (np.isfinite(max_dose) and min_dose > 0 and max_dose > min_dose):
        raise ValueError(f"Need 0 < min_dose < max_dose, got min_dose={min_dose}, max_dose={max_dose}")
    return np.logspace(np.log10(min_dose), np.log10(max_dose), num_points)


def data_dose_grid(data: DoseResponseData, num_points: int = DEFAULT_GRID_POINTS) -> Optional[np.ndarray]:
    """Grid from dose 1 to the largest observed dose.

    When every observed dose is <= 1 the grid starts at the smallest observed
    dose instead. Returns None, with a warning, when the observed doses span
    no range at all.
    """
    min_dose = 1.0
    if data.max_dose <= min_dose:
        min_dose = float(data.dose.min())
        log.warning("All observed doses are <= 1; dose grid starts at the smallest observed dose %.4g", min_dose)
    if data.max_dose <= min_dose:
        log.warning("Observed doses span no range (all %.4g); predictive curves and ED50 skipped", data.max_dose)
        return None
    return dose_grid(data.max_dose, num_points=num_points, min_dose=min_dose)


def _pooled(posterior: xr.Dataset, name: str) -> np.ndarray:
    da = posterior[name]
    extra = [d for d in da.dims if d not in ("chain", "draw")]
    values = da.transpose("chain", "draw", *extra).values
    return values.reshape(values.shape[0] * values.shape[1], *values.shape[2:])


def curve_sources(posterior: xr.Dataset, data: Optional[DoseResponseData] = None) -> List[CurveSource]:
    """Curves in reporting order: overall, each observed strain, new strain.

    Curves whose parameters are not in ``posterior`` are skipped.
    """
    sources: List[CurveSource] = []
    if "alpha0" in posterior and "beta0" in posterior:
        sources.append(CurveSource(OVERALL_LABEL, _pooled(posterior, "alpha0"), _pooled(posterior, "beta0")))

    if "alpha" in posterior and "beta" in posterior:
        alpha = _pooled(posterior, "alpha")
        beta = _pooled(posterior, "beta")
        labels = [str(s) for s in posterior["alpha"].coords["strain"].values]
        if data is not None and len(data.strain_labels) != len(labels):
            raise ValueError(f"Posterior has {len(labels)} strains but the data has {data.num_strains}")
        for k, label in enumerate(labels):
            observed = data.strain_observations(k) if data is not None else None
            sources.append(CurveSource(label, alpha[:, k], beta[:, k], observed))

    if "alphanew" in posterior and "betanew" in posterior:
        sources.append(CurveSource(NEW_STRAIN_LABEL, _pooled(posterior, "alphanew"), _pooled(posterior, "betanew")))
    return sources


# =============================================================================
# CURVES
# =============================================================================

def probability_draws(alpha, beta, doses) -> np.ndarray:
    """Infection probability for every (draw, dose) pair; shape (draws, doses)."""
    alpha = np.asarray(alpha, dtype=float).reshape(-1, 1)
    beta = np.asarray(beta, dtype=float).reshape(-1, 1)
    doses = np.asarray(doses, dtype=float).reshape(1, -1)
    return infection_prob(alpha, beta, doses)


def predictive_curves(sources: Sequence[CurveSource], doses, prob: float = CI_LEVEL) -> pd.DataFrame:
    """Long table ``(strain, dose, median, lower95, upper95)`` for every curve and grid dose."""
    doses = np.asarray(doses, dtype=float)
    frames = []
    for source in sources:
        lower, median, upper = credible_interval(probability_draws(source.alpha, source.beta, doses), axis=0, prob=prob)
        frames.append(pd.DataFrame({
            "strain": source.label,
            "dose": doses,
            "median": median,
            "lower95": lower,
            "upper95": upper,
        }))
    if not frames:
        return pd.DataFrame(columns=list(CURVE_COLUMNS))
    return pd.concat(frames, ignore_index=True)


# =============================================================================
# ED50
# =============================================================================

def nearest_grid_ed50(prob_curve, doses, target: float = 0.5):
    """Return ``(dose, index, distance)`` of the grid point nearest ``target``.

    Works along the last axis, so a (draws x doses) matrix yields one grid
    dose per draw. Ties resolve to the lowest dose.
    """
    prob_curve = np.asarray(prob_curve, dtype=float)
    doses = np.asarray(doses, dtype=float)
    distance = np.abs(prob_curve - target)
    index = np.argmin(distance, axis=-1)
    return doses[index], index, np.take_along_axis(distance, np.expand_dims(index, -1), axis=-1).squeeze(-1)


def ed50_estimates(sources: Sequence[CurveSource], doses, prob: float = CI_LEVEL) -> pd.DataFrame:
    """
    ED50 per curve from the median curve, with a credible interval from per-draw ED50s.

    Returns
    -------
    DataFrame with columns ``strain, ed50, ed50_lower95, ed50_upper95,
    distance_to_half, grid_index, at_grid_boundary``.
    """
    doses = np.asarray(doses, dtype=float)
    last = len(doses) - 1
    rows = []
    for source in sources:
        draws = probability_draws(source.alpha, source.beta, doses)
        median = np.median(draws, axis=0)
        ed50, index, distance = nearest_grid_ed50(median, doses)
        per_draw, _, _ = nearest_grid_ed50(draws, doses)
        lower, _, upper = credible_interval(per_draw, prob=prob)
        at_boundary = bool(index in (0, last))
        if at_boundary:
            log.warning("ED50 for '%s' sits on the dose-grid boundary (dose=%.4g, |median-0.5|=%.3f); "
                        "the 50%% crossing lies outside the grid", source.label, ed50, distance)
        rows.append({
            "strain": source.label,
            "ed50": float(ed50),
            "ed50_lower95": float(lower),
            "ed50_upper95": float(upper),
            "distance_to_half": float(distance),
            "grid_index": int(index),
            "at_grid_boundary": at_boundary,
        })
    return pd.DataFrame(rows, columns=list(ED50_COLUMNS))
