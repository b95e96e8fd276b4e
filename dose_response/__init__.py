"""
Hierarchical Bayesian beta-binomial dose-response modelling.

Fits per-strain infection dose-response curves that share a population
distribution, and derives predictive curves and ED50 values for the observed
strains, the population-mean strain and an unobserved new strain.
"""

from .data_prep.loader import DoseResponseData, ObservedCounts, load_dose_response_csv
from .diagnostics import (
    ShapeIntegrityError,
    check_convergence,
    convergence_table,
    posterior_from_pooled,
    reshape_chains,
    trace_records,
)
from .model import build_model, infection_prob, inverse_transform, log_prob_no_infection, transform
from .predictive import curve_sources, dose_grid, ed50_estimates, predictive_curves
from .sampler import MONITORED, ConfigError, FitResult, SamplerConfig, fit
from .summary import summarize_posterior

__all__ = [
    "ConfigError",
    "DoseResponseData",
    "FitResult",
    "MONITORED",
    "ObservedCounts",
    "SamplerConfig",
    "ShapeIntegrityError",
    "build_model",
    "check_convergence",
    "convergence_table",
    "curve_sources",
    "dose_grid",
    "ed50_estimates",
    "fit",
    "infection_prob",
    "inverse_transform",
    "load_dose_response_csv",
    "log_prob_no_infection",
    "posterior_from_pooled",
    "predictive_curves",
    "reshape_chains",
    "summarize_posterior",
    "trace_records",
    "transform",
]
