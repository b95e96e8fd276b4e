"""
MCMC sampling engine for the hierarchical dose-response model.

Runs ``num_chains`` independent chains with PyMC (NUTS by default, or
adaptive random-walk Metropolis), keeps the tuning draws so each chain
yields a raw trajectory of exactly ``num_iterations`` draws, then drops the
first ``burn_in`` draws and keeps every ``thinning``-th one.

The new-strain parameters (wnew, znew, alphanew, betanew) are not sampled by
MCMC: after thinning, one ancestral draw per retained iteration is taken from
Normal(w_0, sigma_w) and Normal(z_0, sigma_z) at that iteration's
hyperparameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import arviz as az
import numpy as np
import pymc as pm
import xarray as xr

from .data_prep.loader import DoseResponseData
from .model import PARAMETRIZATIONS, build_model, transform

log = logging.getLogger(__name__)

HYPERPARAMETERS = ("w_0", "z_0", "sigma_w", "sigma_z")
STRAIN_PARAMETERS = ("w", "z", "alpha", "beta")
POPULATION_PARAMETERS = ("alpha0", "beta0")
NEW_STRAIN_PARAMETERS = ("wnew", "znew", "alphanew", "betanew")
MONITORED = HYPERPARAMETERS + POPULATION_PARAMETERS + STRAIN_PARAMETERS + NEW_STRAIN_PARAMETERS

STEP_METHODS = ("nuts", "metropolis")


class ConfigError(ValueError):
    """Invalid sampler configuration or unusable initial state."""


@dataclass
class SamplerConfig:
    """Settings for one multi-chain run.

    ``burn_in`` draws are the sampler's tuning phase; retained draws per chain
    are ``ceil((num_iterations - burn_in) / thinning)``.
    """
    num_chains: int = 3
    num_iterations: int = 4000
    burn_in: int = 1000
    thinning: int = 1
    step: str = "nuts"
    target_accept: float = 0.9
    cores: Optional[int] = None
    random_seed: Optional[int] = 42
    parametrization: str = "centered"
    monitored: Tuple[str, ...] = MONITORED
    progressbar: bool = False

    def __post_init__(self):
        self.monitored = tuple(self.monitored)
        self.validate()

    def validate(self) -> None:
        if int(self.num_chains) != self.num_chains or self.num_chains < 1:
            raise ConfigError(f"num_chains must be an integer >= 1, got {self.num_chains}")
        if self.burn_in < 0:
            raise ConfigError(f"burn_in must be >= 0, got {self.burn_in}")
        if self.num_iterations <= self.burn_in:
            raise ConfigError(
                f"num_iterations ({self.num_iterations}) must exceed burn_in ({self.burn_in})"
            )
        if self.thinning < 1:
            raise ConfigError(f"thinning must be >= 1, got {self.thinning}")
        if self.step not in STEP_METHODS:
            raise ConfigError(f"step must be one of {STEP_METHODS}, got {self.step!r}")
        if not 0.0 < self.target_accept < 1.0:
            raise ConfigError(f"target_accept must lie in (0, 1), got {self.target_accept}")
        if self.cores is not None and self.cores < 1:
            raise ConfigError(f"cores must be >= 1, got {self.cores}")
        if self.parametrization not in PARAMETRIZATIONS:
            raise ConfigError(
                f"parametrization must be one of {PARAMETRIZATIONS}, got {self.parametrization!r}"
            )
        unknown = [name for name in self.monitored if name not in MONITORED]
        if unknown or not self.monitored:
            raise ConfigError(f"Unknown or empty monitored parameters: {unknown}. Allowed: {MONITORED}")

    @property
    def draws(self) -> int:
        return self.num_iterations - self.burn_in

    @property
    def retained_per_chain(self) -> int:
        return len(range(self.burn_in, self.num_iterations, self.thinning))

    def as_dict(self) -> Dict[str, object]:
        return {
            "num_chains": self.num_chains,
            "num_iterations": self.num_iterations,
            "burn_in": self.burn_in,
            "thinning": self.thinning,
            "step": self.step,
            "target_accept": self.target_accept,
            "cores": self.cores,
            "random_seed": self.random_seed,
            "parametrization": self.parametrization,
            "monitored": list(self.monitored),
        }


@dataclass
class FitResult:
    posterior: xr.Dataset
    raw: xr.Dataset
    idata: az.InferenceData
    config: SamplerConfig
    data: DoseResponseData
    divergences: int = 0

    @property
    def num_chains(self) -> int:
        return int(self.posterior.sizes["chain"])

    @property
    def num_draws(self) -> int:
        return int(self.posterior.sizes["draw"])


# =============================================================================
# INITIALIZATION
# =============================================================================

def initial_values(data: DoseResponseData, parametrization: str = "centered") -> Dict[str, np.ndarray]:
    """Fixed starting point: zeros for locations and latents, 1 for the sigmas."""
    zeros = np.zeros(data.num_strains)
    values = {"w_0": 0.0, "z_0": 0.0, "sigma_w": 1.0, "sigma_z": 1.0}
    if parametrization == "noncentered":
        values.update({"w_offset": zeros, "z_offset": zeros})
    else:
        values.update({"w": zeros, "z": zeros})
    return values


def check_initial_point(model: pm.Model) -> Dict[str, float]:
    """Raise ConfigError unless every log-density term is finite at the initial point."""
    logps = model.point_logps(model.initial_point())
    bad = {name: value for name, value in logps.items() if not np.isfinite(value)}
    if bad:
        raise ConfigError(f"Non-finite log-density at the initial point: {bad}")
    return logps


# =============================================================================
# POST-PROCESSING OF RAW DRAWS
# =============================================================================

def raw_trajectories(idata: az.InferenceData, group: str = "posterior") -> xr.Dataset:
    """Concatenate warm-up and retained draws into one trajectory per chain."""
    parts = []
    warmup = f"warmup_{group}"
    if warmup in idata.groups():
        parts.append(getattr(idata, warmup))
    parts.append(getattr(idata, group))
    raw = xr.concat(parts, dim="draw") if len(parts) > 1 else parts[0]
    return raw.assign_coords(draw=np.arange(raw.sizes["draw"]))


def burn_and_thin(raw: xr.Dataset, burn_in: int, thinning: int) -> xr.Dataset:
    """Drop the first ``burn_in`` draws of each chain and keep every ``thinning``-th."""
    if burn_in < 0 or thinning < 1:
        raise ConfigError(f"Invalid burn_in={burn_in} / thinning={thinning}")
    if raw.sizes["draw"] <= burn_in:
        raise ConfigError(f"burn_in ({burn_in}) leaves no draws out of {raw.sizes['draw']}")
    kept = raw.isel(draw=slice(burn_in, None, thinning))
    return kept.assign_coords(draw=np.arange(kept.sizes["draw"]))


def draw_new_strain(posterior: xr.Dataset, rng: np.random.Generator) -> xr.Dataset:
    """Add wnew, znew, alphanew, betanew as hyperprior draws per retained iteration."""
    dims = ("chain", "draw")
    w_0 = posterior["w_0"].transpose(*dims).values
    z_0 = posterior["z_0"].transpose(*dims).values
    sigma_w = posterior["sigma_w"].transpose(*dims).values
    sigma_z = posterior["sigma_z"].transpose(*dims).values

    wnew = rng.normal(w_0, sigma_w)
    znew = rng.normal(z_0, sigma_z)
    _, _, alphanew, betanew = transform(wnew, znew)

    return posterior.assign(
        wnew=(dims, wnew),
        znew=(dims, znew),
        alphanew=(dims, alphanew),
        betanew=(dims, betanew),
    )


# =============================================================================
# SAMPLING
# =============================================================================

def fit(data: DoseResponseData, config: Optional[SamplerConfig] = None) -> FitResult:
    """
    Sample the posterior of the hierarchical model.

    Parameters
    ----------
    data : DoseResponseData
        Observed grouped binomial data (read-only, shared by all chains).
    config : SamplerConfig, optional
        Defaults to ``SamplerConfig()``.

    Returns
    -------
    FitResult
        ``posterior`` holds the monitored parameters with dims
        (chain, draw[, strain]) after burn-in and thinning; ``raw`` holds the
        full per-chain trajectories.
    """
    config = config or SamplerConfig()
    config.validate()

    model = build_model(data, parametrization=config.parametrization)
    for name, value in initial_values(data, config.parametrization).items():
        model.set_initval(model[name], value)
    check_initial_point(model)

    cores = config.cores if config.cores is not None else config.num_chains
    log.info("Sampling %d chain(s) x %d iterations (burn-in %d, thin %d, %s, %d core(s))",
             config.num_chains, config.num_iterations, config.burn_in, config.thinning,
             config.step, cores)

    with model:
        sample_kwargs = dict(
            draws=config.draws,
            tune=config.burn_in,
            chains=config.num_chains,
            cores=cores,
            random_seed=config.random_seed,
            discard_tuned_samples=False,
            return_inferencedata=True,
            compute_convergence_checks=False,
            progressbar=config.progressbar,
        )
        if config.step == "metropolis":
            sample_kwargs["step"] = pm.Metropolis()
        else:
            sample_kwargs["init"] = "adapt_diag"
            sample_kwargs["target_accept"] = config.target_accept
        trace = pm.sample(**sample_kwargs)

    raw = raw_trajectories(trace, "posterior")
    expected = config.num_iterations
    if raw.sizes["draw"] != expected:
        raise RuntimeError(f"Sampler returned {raw.sizes['draw']} draws per chain, expected {expected}")

    posterior = burn_and_thin(raw, config.burn_in, config.thinning)
    rng = np.random.default_rng(config.random_seed)
    posterior = draw_new_strain(posterior, rng)
    posterior = posterior[[name for name in config.monitored if name in posterior]]

    stats = burn_and_thin(raw_trajectories(trace, "sample_stats"), config.burn_in, config.thinning)
    divergences = int(stats["diverging"].sum()) if "diverging" in stats else 0
    if divergences:
        log.warning("%d divergent transition(s) after burn-in; consider a higher target_accept "
                    "or the non-centered parametrization", divergences)

    groups = {"posterior": posterior, "sample_stats": stats}
    if "observed_data" in trace.groups():
        groups["observed_data"] = trace.observed_data
    idata = az.InferenceData(**groups)

    log.info("Sampling complete: %d chain(s) x %d retained draws",
             posterior.sizes["chain"], posterior.sizes["draw"])
    return FitResult(
        posterior=posterior,
        raw=raw,
        idata=idata,
        config=config,
        data=data,
        divergences=divergences,
    )
