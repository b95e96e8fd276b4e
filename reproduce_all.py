#!/usr/bin/env python3
"""
Reproducibility Suite — Hierarchical Dose-Response Model
========================================================

Simulates grouped infection data from known hyperparameters, fits the
hierarchical beta-binomial model, and checks that the fit recovers the
generating values and that the derived curves behave as they must
(monotone, P(0)=0, ED50 inside the grid).

Usage:
    python reproduce_all.py [--quick]
"""

import argparse
import sys
import time
import logging
from pathlib import Path
from datetime import datetime

import numpy as np

ROOT = Path(__file__).resolve().parent
OUT_DIR = ROOT / "results" / "reproducibility"
OUT_DIR.mkdir(parents=True, exist_ok=True)

LOG_PATH = OUT_DIR / "reproducibility_log.txt"
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[
        logging.FileHandler(LOG_PATH, mode='w'),
        logging.StreamHandler(sys.stdout),
    ]
)
log = logging.getLogger(__name__)


class Validator:
    def __init__(self):
        self.checks = []

    def check(self, name, condition, detail=""):
        status = "PASS" if condition else "FAIL"
        self.checks.append((name, status, detail))
        sym = "✓" if condition else "✗"
        log.info(f"  {sym} {name}: {status}  {detail}")
        return condition

    def summary(self):
        passed = sum(1 for _, s, _ in self.checks if s == "PASS")
        return passed, len(self.checks)


def step1_model_properties(v):
    log.info("=" * 70)
    log.info("STEP 1: Model Function Properties")
    log.info("=" * 70)
    from dose_response.model import infection_prob, inverse_transform, log_prob_no_infection, transform

    rng = np.random.default_rng(1)
    w = rng.normal(0, 5, size=1000)
    z = rng.normal(0, 3, size=1000)
    u, _, alpha, beta = transform(w, z)
    v.check("transform keeps alpha, beta > 0", bool(np.all(alpha > 0) and np.all(beta > 0)))
    v.check("transform keeps u in (0, 1)", bool(np.all((u > 0) & (u < 1))))

    w2, z2 = inverse_transform(alpha, beta)
    _, _, alpha2, beta2 = transform(w2, z2)
    v.check("(alpha, beta) round trip", np.allclose(alpha, alpha2) and np.allclose(beta, beta2))

    lq = float(log_prob_no_infection(2.0, 3.0, 1.0))
    v.check("log P(no infection | 2, 3, 1) = -0.5108", abs(lq - np.log(0.6)) < 1e-9, f"{lq:.4f}")
    v.check("P(infection) at dose 0 is 0", float(infection_prob(1.0, 1.0, 0.0)) == 0.0)

    doses = np.logspace(0, 6, 200)
    p = infection_prob(alpha[:50, None], beta[:50, None], doses[None, :])
    v.check("P(infection) monotone in dose", bool(np.all(np.diff(p, axis=1) >= -1e-9)))


def step2_simulated_fit(v, quick=False):
    log.info("")
    log.info("=" * 70)
    log.info("STEP 2: Fit to Simulated Data (parameter recovery)")
    log.info("=" * 70)
    import pandas as pd
    from dose_response.data_prep.loader import build_dataset
    from dose_response.data_prep.simulate import simulate_frame
    from dose_response.run_bayesian import analyze_posterior
    from dose_response.sampler import SamplerConfig, fit

    truth_hyper = dict(w_0=-2.8, z_0=1.7, sigma_w=0.5, sigma_z=0.3)
    frame, truth = simulate_frame(num_strains=5, trials=30, seed=7, **truth_hyper)
    frame.to_csv(OUT_DIR / "simulated_data.csv", index=False)
    data = build_dataset(frame, source="simulated")
    log.info(f"Simulated {data.num_observations} observations over {data.num_strains} strains")

    config = SamplerConfig(
        num_chains=2 if quick else 4,
        num_iterations=600 if quick else 3000,
        burn_in=300 if quick else 1000,
        thinning=1,
        random_seed=42,
    )
    result = fit(data, config)
    results = analyze_posterior(result.posterior, data)
    summary = results["summary"]
    summary.to_csv(OUT_DIR / "simulated_summary.csv")
    results["ed50"].to_csv(OUT_DIR / "simulated_ed50.csv", index=False)

    v.check("Chains x draws as configured",
            result.num_chains == config.num_chains and result.num_draws == config.retained_per_chain,
            f"{result.num_chains} x {result.num_draws}")
    for name in ("w_0", "z_0"):
        lo, hi = summary.loc[name, "2.5%"], summary.loc[name, "97.5%"]
        v.check(f"{name} 95% CrI covers truth", lo <= truth_hyper[name] <= hi,
                f"[{lo:.2f}, {hi:.2f}] vs {truth_hyper[name]}")

    covered = 0
    for k, w_true in enumerate(truth["w"]):
        row = summary.loc[f"w[{k + 1}]"]
        covered += int(row["2.5%"] <= w_true <= row["97.5%"])
    v.check("Most strain w[k] intervals cover truth", covered >= len(truth["w"]) - 1,
            f"{covered}/{len(truth['w'])}")

    new = pd.Series(result.posterior["wnew"].values.reshape(-1))
    v.check("New-strain w spread exceeds overall w_0 spread",
            new.std() > float(summary.loc["w_0", "sd"]),
            f"sd(wnew)={new.std():.2f}, sd(w_0)={summary.loc['w_0', 'sd']:.2f}")

    if not quick:
        rhat_max = float(summary["r_hat"].max())
        v.check("Max R-hat < 1.05", rhat_max < 1.05, f"{rhat_max:.4f}")
    return results


def step3_predictive(v, results):
    log.info("")
    log.info("=" * 70)
    log.info("STEP 3: Predictive Curves and ED50")
    log.info("=" * 70)
    curves = results["curves"]
    ed50 = results["ed50"]
    monotone = all(
        np.all(np.diff(sub["median"].to_numpy()) >= -1e-9)
        for _, sub in curves.groupby("strain")
    )
    v.check("Median curves non-decreasing", monotone)
    v.check("Bands contain medians",
            bool(np.all((curves["lower95"] <= curves["median"]) & (curves["median"] <= curves["upper95"]))))
    for _, row in ed50.iterrows():
        log.info(f"  ED50 {row['strain']:>12s}: {row['ed50']:9.2f} "
                 f"[{row['ed50_lower95']:.2f}, {row['ed50_upper95']:.2f}]"
                 f"{'  (grid boundary)' if row['at_grid_boundary'] else ''}")
    v.check("Overall ED50 inside grid", not bool(ed50.loc[ed50["strain"] == "overall", "at_grid_boundary"].iloc[0]))

    from dose_response.plotting import plot_dose_response, plot_ed50
    plot_dose_response(curves, results["sources"], ed50, path=OUT_DIR / "dose_response.png")
    plot_ed50(ed50, path=OUT_DIR / "ed50.png")


def step4_shape_integrity(v):
    log.info("")
    log.info("=" * 70)
    log.info("STEP 4: Shape Integrity")
    log.info("=" * 70)
    from dose_response.diagnostics import ShapeIntegrityError, reshape_chains

    v.check("9000 draws -> 3 x 3000", reshape_chains(np.arange(9000.0), 3).shape == (3, 3000))
    try:
        reshape_chains(np.arange(9001.0), 3)
        v.check("9001 draws rejected", False)
    except ShapeIntegrityError as e:
        v.check("9001 draws rejected", True, str(e))


def main():
    parser = argparse.ArgumentParser(description="Reproducibility suite for the dose-response model")
    parser.add_argument("--quick", action="store_true", help="Short chains (smoke run)")
    args = parser.parse_args()

    start = time.time()
    log.info("=" * 70)
    log.info("REPRODUCIBILITY SUITE: HIERARCHICAL DOSE-RESPONSE MODEL")
    log.info(f"Timestamp: {datetime.now().isoformat()}")
    log.info(f"Output:  {OUT_DIR}")
    log.info(f"Log:     {LOG_PATH}")
    log.info("=" * 70)

    v = Validator()
    failures = []
    state = {}

    def _fit():
        state["results"] = step2_simulated_fit(v, quick=args.quick)

    def _predictive():
        if "results" not in state:
            raise RuntimeError("no fit results (step 2 failed)")
        step3_predictive(v, state["results"])

    steps = [
        ("Model Function Properties", lambda: step1_model_properties(v)),
        ("Simulated Fit", _fit),
        ("Predictive Curves and ED50", _predictive),
        ("Shape Integrity", lambda: step4_shape_integrity(v)),
    ]

    for name, fn in steps:
        try:
            fn()
        except Exception as e:
            log.error(f"STEP FAILED: {name} — {e}")
            failures.append((name, str(e)))

    elapsed = time.time() - start
    passed, total = v.summary()

    log.info("")
    log.info("=" * 70)
    log.info("REPRODUCIBILITY SUMMARY")
    log.info("=" * 70)
    log.info(f"Validation: {passed}/{total} checks passed")
    log.info(f"Failures:   {len(failures)} step(s) failed")
    log.info(f"Elapsed:    {elapsed:.1f}s")

    if failures:
        for name, err in failures:
            log.info(f"  ✗ {name}: {err}")

    if passed == total and not failures:
        log.info("\n★ ALL CHECKS PASSED")
        sys.exit(0)
    else:
        log.info("\n⚠ SOME CHECKS FAILED — review above")
        sys.exit(1)


if __name__ == "__main__":
    main()
