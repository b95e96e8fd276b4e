#!/usr/bin/env python3
"""
Hierarchical beta-binomial dose-response fit

Loads grouped infection data (log10dose, Y, N, t), fits the hierarchical
model by MCMC, and writes into <results-dir>/<run>/:

- summary.csv:  mean/sd/quantiles per parameter with R-hat, ESS, converged
- traces.csv:   (parameter, chain, iteration, value) records
- samples.csv:  pooled chain-major draws (re-usable with --from-samples)
- curves.csv:   median and 95% band of P(infection) on the dose grid
- ed50.csv:     nearest-grid ED50 per curve with 95% credible interval
- trace.nc:     ArviZ InferenceData (unless --no-save-trace)
- figures/:     dose-response, trace and ED50 figures (unless --no-plots)
- manifest.json, run_log.txt

With --from-samples, the sampling step is skipped and a pooled samples CSV is
re-split into --chains chains before summarizing.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import xarray as xr

from .data_prep.loader import DoseResponseData, load_dose_response_csv
from .diagnostics import (
    ShapeIntegrityError,
    check_convergence,
    convergence_table,
    pooled_samples_frame,
    posterior_from_pooled,
    trace_records,
)
from .pipeline_utils import close_log_files, configure_logging, make_run_dir, parse_var_names, write_run_manifest
from .predictive import (
    CURVE_COLUMNS,
    DEFAULT_GRID_POINTS,
    ED50_COLUMNS,
    curve_sources,
    data_dose_grid,
    ed50_estimates,
    predictive_curves,
)
from .sampler import HYPERPARAMETERS, ConfigError, SamplerConfig, fit
from .summary import attach_diagnostics, summarize_posterior

log = logging.getLogger(__name__)


def analyze_posterior(
    posterior: xr.Dataset,
    data: DoseResponseData,
    var_names: Optional[Sequence[str]] = None,
    grid_points: int = DEFAULT_GRID_POINTS,
) -> Dict[str, Any]:
    """Diagnostics, summary table, trace records, curves and ED50 for a sample set."""
    var_names = [v for v in (var_names or list(posterior.data_vars)) if v in posterior]

    diagnostics = convergence_table(posterior, var_names)
    flagged = check_convergence(diagnostics)
    summary = attach_diagnostics(summarize_posterior(posterior, var_names), diagnostics)

    doses = data_dose_grid(data, num_points=grid_points)
    sources = curve_sources(posterior, data)
    if doses is not None and sources:
        curves = predictive_curves(sources, doses)
        ed50 = ed50_estimates(sources, doses)
    else:
        curves = pd.DataFrame(columns=list(CURVE_COLUMNS))
        ed50 = pd.DataFrame(columns=list(ED50_COLUMNS))

    return {
        "summary": summary,
        "traces": trace_records(posterior, var_names),
        "samples": pooled_samples_frame(posterior, var_names),
        "curves": curves,
        "ed50": ed50,
        "sources": sources,
        "dose_grid": doses,
        "flagged": flagged,
    }


def _write_figures(results: Dict[str, Any], figures_dir: Path) -> List[Path]:
    from .plotting import plot_dose_response, plot_ed50, plot_traces

    written: List[Path] = []
    if not results["curves"].empty:
        p = figures_dir / "dose_response.png"
        plot_dose_response(results["curves"], results["sources"], results["ed50"], path=p)
        written.append(p)
        p = figures_dir / "ed50.png"
        plot_ed50(results["ed50"], path=p)
        written.append(p)
    traces = results["traces"]
    hyper = [name for name in HYPERPARAMETERS if name in set(traces["parameter"])]
    if hyper:
        p = figures_dir / "traces_hyperparameters.png"
        plot_traces(traces, hyper, path=p)
        written.append(p)
    return written


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hierarchical beta-binomial dose-response fit")
    parser.add_argument("--data", required=True, help="CSV/TSV/XLSX with log10dose, Y, N, t")
    parser.add_argument("--subset-column", default=None, help="Health-status column to filter on")
    parser.add_argument("--subset-value", default=None, help="Value of --subset-column to keep")
    parser.add_argument("--chains", type=int, default=3)
    parser.add_argument("--iterations", type=int, default=4000, help="Iterations per chain incl. burn-in")
    parser.add_argument("--burn-in", type=int, default=1000)
    parser.add_argument("--thin", type=int, default=1)
    parser.add_argument("--step", choices=["nuts", "metropolis"], default="nuts")
    parser.add_argument("--target-accept", type=float, default=0.9)
    parser.add_argument("--cores", type=int, default=None, help="Parallel chain processes (default: --chains)")
    parser.add_argument("--parametrization", choices=["centered", "noncentered"], default="centered")
    parser.add_argument("--params", type=str, default="all",
                        help="Monitored parameters (comma list, e.g. 'w_0,z_0,alpha[]') or 'all'")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--grid-points", type=int, default=DEFAULT_GRID_POINTS)
    parser.add_argument("--results-dir", type=str, default="results")
    parser.add_argument("--run-label", type=str, default="", help="Run folder name (otherwise timestamp)")
    parser.add_argument("--no-save-trace", action="store_true", help="Do not write trace.nc")
    parser.add_argument("--no-plots", action="store_true", help="Do not write figures")
    parser.add_argument("--from-samples", type=str, default="",
                        help="Pooled samples CSV to summarize instead of sampling")
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    run_dir = make_run_dir(Path(args.results_dir), args.run_label)
    configure_logging(run_dir / "run_log.txt")
    try:
        return _run(args, run_dir)
    finally:
        close_log_files()


def _run(args: argparse.Namespace, run_dir: Path) -> int:
    log.info("Run folder: %s", run_dir)

    try:
        data = load_dose_response_csv(args.data, args.subset_column, args.subset_value)
        var_names = parse_var_names(args.params)

        config: Optional[SamplerConfig] = None
        divergences = None
        if args.from_samples:
            frame = pd.read_csv(args.from_samples)
            posterior = posterior_from_pooled(frame, args.chains, strain_labels=data.strain_labels)
            log.info("Loaded %d pooled draws from %s as %d chain(s) x %d draws",
                     len(frame), args.from_samples, posterior.sizes["chain"], posterior.sizes["draw"])
        else:
            config = SamplerConfig(
                num_chains=args.chains,
                num_iterations=args.iterations,
                burn_in=args.burn_in,
                thinning=args.thin,
                step=args.step,
                target_accept=args.target_accept,
                cores=args.cores,
                random_seed=args.seed,
                parametrization=args.parametrization,
                monitored=var_names,
            )
            result = fit(data, config)
            posterior = result.posterior
            divergences = result.divergences
            if not args.no_save_trace:
                result.idata.to_netcdf(str(run_dir / "trace.nc"))
                log.info("Saved trace: %s", run_dir / "trace.nc")

        results = analyze_posterior(posterior, data, var_names, grid_points=args.grid_points)
    except (ConfigError, ShapeIntegrityError, ValueError, FileNotFoundError) as e:
        log.error("Run failed: %s", e)
        return 2

    results["summary"].to_csv(run_dir / "summary.csv")
    results["traces"].to_csv(run_dir / "traces.csv", index=False)
    results["samples"].to_csv(run_dir / "samples.csv", index=False)
    results["curves"].to_csv(run_dir / "curves.csv", index=False)
    results["ed50"].to_csv(run_dir / "ed50.csv", index=False)

    figures: List[Path] = []
    if not args.no_plots:
        figures = _write_figures(results, run_dir / "figures")

    doses = results["dose_grid"]
    manifest_info: Dict[str, Any] = {
        "pipeline": "from_samples" if args.from_samples else "mcmc",
        "args": vars(args),
        "inputs": [str(args.data)] + ([args.from_samples] if args.from_samples else []),
        "num_observations": data.num_observations,
        "strains": list(data.strain_labels),
        "sampler": config.as_dict() if config is not None else None,
        "divergences": divergences,
        "chains": int(posterior.sizes["chain"]),
        "draws_per_chain": int(posterior.sizes["draw"]),
        "non_converged": results["flagged"],
        "ed50_at_grid_boundary": (
            results["ed50"].loc[results["ed50"]["at_grid_boundary"], "strain"].tolist()
            if not results["ed50"].empty else []
        ),
        "dose_grid": (
            {"min_dose": float(doses[0]), "max_dose": float(doses[-1]), "points": len(doses)}
            if doses is not None else None
        ),
        "figures": [str(p) for p in figures],
    }
    write_run_manifest(run_dir, manifest_info)

    if results["flagged"]:
        log.warning("%d parameter(s) did not meet convergence thresholds; see summary.csv",
                    len(results["flagged"]))
    print(f"✅ Dose-response fit complete. Parameters: {len(results['summary'])}")
    print(f"   Summary: {run_dir / 'summary.csv'}")
    print(f"   ED50:    {run_dir / 'ed50.csv'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
