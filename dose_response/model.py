"""
Hierarchical beta-binomial dose-response model
==============================================

Each strain k carries two unconstrained latent parameters:

    w[k] ~ Normal(w_0, tau_w)      logit-scale infectivity ratio
    z[k] ~ Normal(z_0, tau_z)      log-scale beta concentration

    u = invlogit(w), v = exp(z), alpha = u * v, beta = (1 - u) * v

with hyperpriors

    w_0, z_0         ~ Normal(0, precision=0.1)
    sigma_w, sigma_z ~ HalfNormal(precision=1),  tau = sigma ** -2

The probability of infection after a dose d is the complement of the
beta-binomial probability that none of the d organisms infects:

    log P(no infection) = lgamma(a+b) + lgamma(b+d) - lgamma(b) - lgamma(a+b+d)
    P(infection)        = 1 - exp(log P(no infection))

and infected counts are Binomial(N, P(infection)).

The numpy functions are used for posterior-predictive work; ``build_model``
expresses the same pipeline (hyperparameters -> strain latents -> transforms
-> likelihood) as a PyMC graph.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import pymc as pm
import pytensor.tensor as pt
from scipy.special import expit, gammaln

from .data_prep.loader import DoseResponseData

log = logging.getLogger(__name__)

# Prior precisions
HYPER_MEAN_PRECISION = 0.1
SIGMA_PRECISION = 1.0

PARAMETRIZATIONS = ("centered", "noncentered")


# =============================================================================
# NUMPY MODEL FUNCTIONS
# =============================================================================

def transform(w, z) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Map latent (w, z) to (u, v, alpha, beta).

    ``1 - u`` is evaluated as ``invlogit(-w)`` so beta stays positive for large w.
    """
    w = np.asarray(w, dtype=float)
    z = np.asarray(z, dtype=float)
    u = expit(w)
    v = np.exp(z)
    alpha = u * v
    beta = expit(-w) * v
    return u, v, alpha, beta


def inverse_transform(alpha, beta) -> Tuple[np.ndarray, np.ndarray]:
    """Recover (w, z) = (log(alpha / beta), log(alpha + beta))."""
    alpha = np.asarray(alpha, dtype=float)
    beta = np.asarray(beta, dtype=float)
    return np.log(alpha) - np.log(beta), np.log(alpha + beta)


def log_prob_no_infection(alpha, beta, dose) -> np.ndarray:
    """Log of the beta-binomial zero-success probability, broadcasting over inputs.

    Terms are paired so that dose == 0 cancels exactly to 0.
    """
    alpha = np.asarray(alpha, dtype=float)
    beta = np.asarray(beta, dtype=float)
    dose = np.asarray(dose, dtype=float)
    total = alpha + beta
    return (gammaln(total) - gammaln(total + dose)) + (gammaln(beta + dose) - gammaln(beta))


def infection_prob(alpha, beta, dose) -> np.ndarray:
    """Probability of at least one infective unit in ``dose``.

    Parameters
    ----------
    alpha, beta : array_like
        Positive beta-distribution parameters.
    dose : array_like
        Non-negative dose(s).

    Returns
    -------
    p : ndarray
        ``1 - exp(log_p_inf)`` computed as ``-expm1(log_p_inf)``; lies in [0, 1).
    """
    log_q = log_prob_no_infection(alpha, beta, dose)
    return np.clip(-np.expm1(log_q), 0.0, 1.0)


# =============================================================================
# PYMC MODEL
# =============================================================================

def _transform_tensor(w, z):
    v = pt.exp(z)
    return pm.math.invlogit(w) * v, pm.math.invlogit(-w) * v


def _finite(x):
    return ~(pt.isinf(x) | pt.isnan(x))


def _log_prob_no_infection_tensor(alpha, beta, dose):
    total = alpha + beta
    return (pt.gammaln(total) - pt.gammaln(total + dose)) + (pt.gammaln(beta + dose) - pt.gammaln(beta))


def _binomial_logp_from_log_q(value, log_q, n):
    # Binomial log-pmf with p = 1 - exp(log_q), kept in log space
    log_p = pt.log1mexp(log_q)
    hits = pt.switch(pt.gt(value, 0), value * log_p, 0.0)
    misses = pt.switch(pt.gt(n - value, 0), (n - value) * log_q, 0.0)
    log_binom = pt.gammaln(n + 1) - pt.gammaln(value + 1) - pt.gammaln(n - value + 1)
    return log_binom + hits + misses


def _binomial_random_from_log_q(log_q, n, rng=None, size=None):
    return rng.binomial(n, -np.expm1(log_q), size=size)


def build_model(data: DoseResponseData, parametrization: str = "centered") -> pm.Model:
    """
    Build the PyMC model for the observed strains.

    Parameters
    ----------
    data : DoseResponseData
        Observations; the strain coordinate uses ``data.strain_labels``.
    parametrization : {"centered", "noncentered"}
        "noncentered" samples standard-normal offsets and sets
        ``w = w_0 + sigma_w * w_offset`` (same joint distribution).

    Returns
    -------
    model : pm.Model
        Free variables w_0, z_0, sigma_w, sigma_z (log-transformed), w, z;
        deterministics alpha0, beta0, alpha, beta; observed ``y``.
    """
    if parametrization not in PARAMETRIZATIONS:
        raise ValueError(f"parametrization must be one of {PARAMETRIZATIONS}, got {parametrization!r}")

    coords = {
        "strain": list(data.strain_labels),
        "obs_id": np.arange(data.num_observations),
    }
    idx = np.asarray(data.strain_index)

    with pm.Model(coords=coords) as model:

        # =====================================================================
        # HYPERPRIORS
        # =====================================================================

        w_0 = pm.Normal("w_0", mu=0.0, tau=HYPER_MEAN_PRECISION)
        z_0 = pm.Normal("z_0", mu=0.0, tau=HYPER_MEAN_PRECISION)
        sigma_w = pm.HalfNormal("sigma_w", tau=SIGMA_PRECISION)
        sigma_z = pm.HalfNormal("sigma_z", tau=SIGMA_PRECISION)

        # =====================================================================
        # STRAIN LATENTS
        # =====================================================================

        if parametrization == "noncentered":
            w_offset = pm.Normal("w_offset", mu=0.0, sigma=1.0, dims="strain")
            z_offset = pm.Normal("z_offset", mu=0.0, sigma=1.0, dims="strain")
            w = pm.Deterministic("w", w_0 + sigma_w * w_offset, dims="strain")
            z = pm.Deterministic("z", z_0 + sigma_z * z_offset, dims="strain")
        else:
            w = pm.Normal("w", mu=w_0, sigma=sigma_w, dims="strain")
            z = pm.Normal("z", mu=z_0, sigma=sigma_z, dims="strain")

        # =====================================================================
        # TRANSFORMS
        # =====================================================================

        alpha0, beta0 = _transform_tensor(w_0, z_0)
        pm.Deterministic("alpha0", alpha0)
        pm.Deterministic("beta0", beta0)

        alpha, beta = _transform_tensor(w, z)
        alpha = pm.Deterministic("alpha", alpha, dims="strain")
        beta = pm.Deterministic("beta", beta, dims="strain")

        # Extreme w, z can overflow/underflow alpha, beta: reject such points
        valid = (
            pt.all(_finite(alpha)) & pt.all(_finite(beta))
            & pt.all(pt.gt(alpha, 0)) & pt.all(pt.gt(beta, 0))
        )
        pm.Potential("domain_guard", pt.switch(valid, 0.0, -np.inf))
        safe_alpha = pt.switch(valid, alpha, 1.0)
        safe_beta = pt.switch(valid, beta, 1.0)

        # =====================================================================
        # LIKELIHOOD
        # =====================================================================

        log_q = _log_prob_no_infection_tensor(safe_alpha[idx], safe_beta[idx], np.asarray(data.dose))
        pm.CustomDist(
            "y",
            log_q,
            np.asarray(data.trials),
            logp=_binomial_logp_from_log_q,
            random=_binomial_random_from_log_q,
            observed=np.asarray(data.successes),
            dtype="int64",
            dims="obs_id",
        )

    log.debug("Built %s model: %d strains, %d observations",
              parametrization, data.num_strains, data.num_observations)
    return model
