"""
Convergence diagnostics and sample-shape utilities.

Per scalar parameter element (``w_0``, ``w[1]``, ``alpha[3]``, ...) computes
the rank-normalized split R-hat and bulk/tail effective sample sizes with
ArviZ, exposes long-format trace records for plotting, and converts between
chain-major pooled sample tables and (chain, draw) sample sets.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd
import xarray as xr

log = logging.getLogger(__name__)

# R-hat < 1.05 "good convergence", ESS > 400 "adequate"
RHAT_THRESHOLD = 1.05
MIN_ESS = 400.0


class ShapeIntegrityError(ValueError):
    """Pooled draws cannot be split evenly into the requested chains."""


# =============================================================================
# PARAMETER FLATTENING
# =============================================================================

def flatten_parameters(posterior: xr.Dataset, var_names: Optional[Iterable[str]] = None) -> Dict[str, np.ndarray]:
    """Return ``{label: array(chain, draw)}`` with 1-based labels for indexed parameters.

    Vector parameters over the ``strain`` dimension become ``name[1]`` ...
    ``name[K]`` in strain order.
    """
    names = list(var_names) if var_names is not None else list(posterior.data_vars)
    flat: Dict[str, np.ndarray] = {}
    for name in names:
        if name not in posterior:
            continue
        da = posterior[name]
        extra_dims = [d for d in da.dims if d not in ("chain", "draw")]
        values = da.transpose("chain", "draw", *extra_dims).values
        if not extra_dims:
            flat[name] = values
            continue
        values = values.reshape(values.shape[0], values.shape[1], -1)
        for k in range(values.shape[2]):
            flat[f"{name}[{k + 1}]"] = values[:, :, k]
    return flat


# =============================================================================
# SHAPE INTEGRITY
# =============================================================================

def reshape_chains(values, num_chains: int) -> np.ndarray:
    """Split chain-major pooled draws into ``(num_chains, draws_per_chain, ...)``.

    Raises
    ------
    ShapeIntegrityError
        If the pooled length is not divisible by ``num_chains``.
    """
    values = np.asarray(values)
    if num_chains < 1:
        raise ShapeIntegrityError(f"num_chains must be >= 1, got {num_chains}")
    total = values.shape[0]
    if total % num_chains:
        raise ShapeIntegrityError(
            f"{total} pooled draws cannot be split evenly into {num_chains} chains"
        )
    return values.reshape(num_chains, total // num_chains, *values.shape[1:])


def pooled_samples_frame(posterior: xr.Dataset, var_names: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """One column per parameter label, rows ordered chain by chain."""
    flat = flatten_parameters(posterior, var_names)
    return pd.DataFrame({label: arr.reshape(-1) for label, arr in flat.items()})


def posterior_from_pooled(
    frame: pd.DataFrame,
    num_chains: int,
    strain_labels: Optional[Sequence[str]] = None,
) -> xr.Dataset:
    """Rebuild a (chain, draw[, strain]) sample set from a pooled samples table.

    Columns named ``name[k]`` are regrouped into a vector parameter along
    ``strain``; the strain coordinate uses ``strain_labels`` when given.
    """
    scalars: Dict[str, np.ndarray] = {}
    vectors: Dict[str, Dict[int, np.ndarray]] = {}
    for column in frame.columns:
        values = reshape_chains(frame[column].to_numpy(dtype=float), num_chains)
        label = str(column)
        if label.endswith("]") and "[" in label:
            name, index = label[:-1].split("[", 1)
            vectors.setdefault(name, {})[int(index)] = values
        else:
            scalars[label] = values

    data_vars = {name: (("chain", "draw"), values) for name, values in scalars.items()}
    num_strains = None
    for name, by_index in vectors.items():
        ordered = [by_index[k] for k in sorted(by_index)]
        if num_strains is None:
            num_strains = len(ordered)
        elif num_strains != len(ordered):
            raise ShapeIntegrityError(f"Parameter '{name}' has {len(ordered)} strains, expected {num_strains}")
        data_vars[name] = (("chain", "draw", "strain"), np.stack(ordered, axis=-1))

    draws = len(frame) // num_chains
    coords = {"chain": np.arange(num_chains), "draw": np.arange(draws)}
    if num_strains is not None:
        if strain_labels is not None and len(strain_labels) != num_strains:
            raise ShapeIntegrityError(
                f"{len(strain_labels)} strain labels given for {num_strains} strains in the samples"
            )
        coords["strain"] = list(strain_labels) if strain_labels is not None else [str(k + 1) for k in range(num_strains)]
    return xr.Dataset(data_vars, coords=coords)


# =============================================================================
# DIAGNOSTICS
# =============================================================================

def convergence_table(posterior: xr.Dataset, var_names: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """R-hat and effective sample sizes per scalar parameter element.

    Returns
    -------
    DataFrame indexed by parameter label with columns
    ``r_hat, ess_bulk, ess_tail, converged``.
    """
    rows = []
    for label, values in flatten_parameters(posterior, var_names).items():
        r_hat = float(az.rhat(values))
        ess_bulk = float(az.ess(values, method="bulk"))
        ess_tail = float(az.ess(values, method="tail"))
        rows.append({
            "parameter": label,
            "r_hat": r_hat,
            "ess_bulk": ess_bulk,
            "ess_tail": ess_tail,
            "converged": bool(r_hat <= RHAT_THRESHOLD and ess_bulk >= MIN_ESS),
        })
    if not rows:
        empty = pd.DataFrame({
            "r_hat": pd.Series(dtype=float),
            "ess_bulk": pd.Series(dtype=float),
            "ess_tail": pd.Series(dtype=float),
            "converged": pd.Series(dtype=bool),
        })
        return empty.rename_axis("parameter")
    return pd.DataFrame(rows).set_index("parameter")


def check_convergence(table: pd.DataFrame) -> List[str]:
    """Log a warning for every parameter outside the thresholds; return their labels."""
    flagged = table.index[~table["converged"]].tolist()
    for label in flagged:
        row = table.loc[label]
        log.warning("Non-convergence: %s r_hat=%.3f ess_bulk=%.0f (thresholds r_hat<=%.2f, ess>=%.0f)",
                    label, row["r_hat"], row["ess_bulk"], RHAT_THRESHOLD, MIN_ESS)
    if table.empty:
        return flagged
    log.info("Max R-hat: %.4f | Min bulk ESS: %.0f | flagged: %d/%d",
             np.nanmax(table["r_hat"].to_numpy()), np.nanmin(table["ess_bulk"].to_numpy()),
             len(flagged), len(table))
    return flagged


def trace_records(posterior: xr.Dataset, var_names: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """Long-format ``(parameter, chain, iteration, value)`` records, 1-based chain and iteration."""
    frames = []
    for label, values in flatten_parameters(posterior, var_names).items():
        n_chains, n_draws = values.shape
        frames.append(pd.DataFrame({
            "parameter": label,
            "chain": np.repeat(np.arange(1, n_chains + 1), n_draws),
            "iteration": np.tile(np.arange(1, n_draws + 1), n_chains),
            "value": values.reshape(-1),
        }))
    if not frames:
        return pd.DataFrame(columns=["parameter", "chain", "iteration", "value"])
    return pd.concat(frames, ignore_index=True)
