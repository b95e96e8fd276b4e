"""
Synthetic grouped dose-response data drawn from the hierarchical model.

Generative order: hyperparameters -> strain (w, z) -> (alpha, beta) ->
infection probability at each dose -> Binomial(N, p) infected counts.
The returned frame uses the same columns as the input CSV
(log10dose, Y, N, t) so it can go through the normal loader path.
"""
from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..model import infection_prob, transform

DEFAULT_LOG10_DOSES = (0.0, 0.5, 1.0, 1.5, 2.0, 2.5, 3.0)


def simulate_frame(
    num_strains: int = 4,
    log10_doses: Sequence[float] = DEFAULT_LOG10_DOSES,
    trials: int = 20,
    w_0: float = -2.8,
    z_0: float = 1.7,
    sigma_w: float = 0.5,
    sigma_z: float = 0.3,
    seed: Optional[int] = 0,
) -> Tuple[pd.DataFrame, Dict[str, np.ndarray]]:
    """Simulate one row per (strain, dose) and return ``(frame, truth)``.

    ``truth`` holds the hyperparameters and the per-strain w, z, alpha, beta
    used to generate the counts; strain labels are ``S1`` ... ``SK``.
    """
    if num_strains < 1:
        raise ValueError(f"num_strains must be >= 1, got {num_strains}")
    if trials < 1:
        raise ValueError(f"trials must be >= 1, got {trials}")
    rng = np.random.default_rng(seed)

    w = rng.normal(w_0, sigma_w, size=num_strains)
    z = rng.normal(z_0, sigma_z, size=num_strains)
    _, _, alpha, beta = transform(w, z)

    log10_doses = np.asarray(log10_doses, dtype=float)
    records = []
    for k in range(num_strains):
        p = infection_prob(alpha[k], beta[k], np.power(10.0, log10_doses))
        infected = rng.binomial(trials, p)
        for x, y in zip(log10_doses, infected):
            records.append({"log10dose": float(x), "Y": int(y), "N": int(trials), "t": f"S{k + 1}"})

    truth = {
        "w_0": np.asarray(w_0), "z_0": np.asarray(z_0),
        "sigma_w": np.asarray(sigma_w), "sigma_z": np.asarray(sigma_z),
        "w": w, "z": z, "alpha": alpha, "beta": beta,
    }
    return pd.DataFrame(records), truth
