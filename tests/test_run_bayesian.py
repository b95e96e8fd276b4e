import json
import logging

import pandas as pd
import pytest

from dose_response.data_prep.loader import build_dataset
from dose_response.diagnostics import pooled_samples_frame
from dose_response.run_bayesian import analyze_posterior, main


@pytest.fixture
def data_csv(tmp_path, simulated):
    frame, _ = simulated
    path = tmp_path / "infections.csv"
    frame.to_csv(path, index=False)
    return path


@pytest.fixture
def samples_csv(tmp_path, synthetic_posterior):
    path = tmp_path / "samples.csv"
    pooled_samples_frame(synthetic_posterior).to_csv(path, index=False)
    return path


def test_analyze_posterior_outputs(synthetic_posterior, small_data):
    results = analyze_posterior(synthetic_posterior, small_data, grid_points=30)
    summary = results["summary"]
    assert "w[3]" in summary.index
    assert {"r_hat", "ess_bulk", "converged"} <= set(summary.columns)
    assert results["flagged"] == []
    assert len(results["curves"]) == (small_data.num_strains + 2) * 30
    assert list(results["ed50"]["strain"])[0] == "overall"
    assert len(results["samples"]) == 3 * 400


def test_cli_from_samples(tmp_path, data_csv, samples_csv):
    code = main([
        "--data", str(data_csv),
        "--from-samples", str(samples_csv),
        "--chains", "3",
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "pooled",
        "--grid-points", "25",
    ])
    assert code == 0
    run_dir = tmp_path / "results" / "pooled"
    for name in ("summary.csv", "traces.csv", "samples.csv", "curves.csv", "ed50.csv",
                 "manifest.json", "run_log.txt"):
        assert (run_dir / name).exists(), name
    assert (run_dir / "figures" / "dose_response.png").exists()
    assert not (run_dir / "trace.nc").exists()

    manifest = json.loads((run_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["pipeline"] == "from_samples"
    assert manifest["chains"] == 3
    assert manifest["draws_per_chain"] == 400

    summary = pd.read_csv(run_dir / "summary.csv", index_col="parameter")
    assert "alphanew" in summary.index


def test_cli_rejects_uneven_chain_split(tmp_path, data_csv, samples_csv):
    code = main([
        "--data", str(data_csv),
        "--from-samples", str(samples_csv),
        "--chains", "7",
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "uneven",
        "--no-plots",
    ])
    assert code == 2
    assert not (tmp_path / "results" / "uneven" / "summary.csv").exists()


def test_cli_rejects_bad_sampler_settings(tmp_path, data_csv):
    code = main([
        "--data", str(data_csv),
        "--iterations", "100",
        "--burn-in", "100",
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "bad",
    ])
    assert code == 2


def test_cli_mcmc_run(tmp_path, data_csv):
    code = main([
        "--data", str(data_csv),
        "--chains", "2",
        "--iterations", "300",
        "--burn-in", "100",
        "--thin", "2",
        "--step", "metropolis",
        "--cores", "1",
        "--params", "w_0,z_0,sigma_w,sigma_z,alpha0,beta0,alpha[],beta[],alphanew,betanew",
        "--grid-points", "20",
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "mcmc",
        "--no-plots",
    ])
    assert code == 0
    run_dir = tmp_path / "results" / "mcmc"
    assert (run_dir / "trace.nc").exists()
    manifest = json.loads((run_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["pipeline"] == "mcmc"
    assert manifest["draws_per_chain"] == 100
    assert manifest["sampler"]["step"] == "metropolis"
    traces = pd.read_csv(run_dir / "traces.csv")
    assert "w[1]" not in set(traces["parameter"])
    assert "alpha[1]" in set(traces["parameter"])


@pytest.fixture
def low_dose_frame(simulated):
    frame, _ = simulated
    shifted = frame.copy()
    shifted["log10dose"] = shifted["log10dose"] - 3.5
    return shifted


def test_analyze_posterior_with_doses_below_one(synthetic_posterior, low_dose_frame):
    data = build_dataset(low_dose_frame)
    assert data.max_dose < 1.0
    results = analyze_posterior(synthetic_posterior, data, grid_points=15)
    assert results["dose_grid"][0] == pytest.approx(data.dose.min())
    assert results["dose_grid"][-1] == pytest.approx(data.max_dose)
    assert len(results["curves"]) == (data.num_strains + 2) * 15
    assert not results["summary"].empty


def test_cli_with_doses_below_one(tmp_path, low_dose_frame, samples_csv):
    data_path = tmp_path / "low.csv"
    low_dose_frame.to_csv(data_path, index=False)
    code = main([
        "--data", str(data_path),
        "--from-samples", str(samples_csv),
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "low",
        "--grid-points", "15",
        "--no-plots",
    ])
    assert code == 0
    run_dir = tmp_path / "results" / "low"
    for name in ("summary.csv", "traces.csv", "curves.csv", "ed50.csv"):
        assert (run_dir / name).exists(), name
    manifest = json.loads((run_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["dose_grid"]["points"] == 15


def test_cli_with_a_single_dose_still_writes_summary(tmp_path, simulated, samples_csv):
    frame, _ = simulated
    single = frame.assign(log10dose=0.0)
    data_path = tmp_path / "single.csv"
    single.to_csv(data_path, index=False)
    code = main([
        "--data", str(data_path),
        "--from-samples", str(samples_csv),
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "single",
        "--no-plots",
    ])
    assert code == 0
    run_dir = tmp_path / "results" / "single"
    assert (run_dir / "summary.csv").exists()
    assert (run_dir / "traces.csv").exists()
    assert pd.read_csv(run_dir / "ed50.csv").empty
    manifest = json.loads((run_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["dose_grid"] is None


def test_cli_releases_run_log(tmp_path, data_csv, samples_csv):
    main([
        "--data", str(data_csv),
        "--from-samples", str(samples_csv),
        "--results-dir", str(tmp_path / "results"),
        "--run-label", "closed",
        "--no-plots",
    ])
    assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)
