import logging

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from dose_response.diagnostics import (
    ShapeIntegrityError,
    check_convergence,
    convergence_table,
    flatten_parameters,
    pooled_samples_frame,
    posterior_from_pooled,
    reshape_chains,
    trace_records,
)


def test_reshape_9000_into_three_chains():
    values = np.arange(9000.0)
    chains = reshape_chains(values, 3)
    assert chains.shape == (3, 3000)
    # chain-major: chain 2 starts at pooled row 3000
    assert chains[1, 0] == 3000.0


def test_reshape_rejects_uneven_split():
    with pytest.raises(ShapeIntegrityError, match="9001"):
        reshape_chains(np.arange(9001.0), 3)


def test_reshape_keeps_trailing_dimensions():
    assert reshape_chains(np.zeros((600, 4)), 2).shape == (2, 300, 4)


def test_flatten_uses_one_based_labels(synthetic_posterior):
    flat = flatten_parameters(synthetic_posterior, ["w_0", "alpha"])
    assert list(flat) == ["w_0", "alpha[1]", "alpha[2]", "alpha[3]"]
    np.testing.assert_array_equal(flat["alpha[2]"], synthetic_posterior["alpha"].values[:, :, 1])


def test_pooled_round_trip(synthetic_posterior, small_data):
    frame = pooled_samples_frame(synthetic_posterior)
    assert len(frame) == 3 * 400
    rebuilt = posterior_from_pooled(frame, 3, strain_labels=small_data.strain_labels)
    assert rebuilt.sizes["chain"] == 3
    assert rebuilt.sizes["draw"] == 400
    assert list(rebuilt["alpha"].coords["strain"].values) == list(small_data.strain_labels)
    xr.testing.assert_allclose(rebuilt["alpha"], synthetic_posterior["alpha"])
    np.testing.assert_allclose(rebuilt["wnew"].values, synthetic_posterior["wnew"].values)


def test_posterior_from_pooled_rejects_uneven_rows():
    frame = pd.DataFrame({"w_0": np.zeros(9001)})
    with pytest.raises(ShapeIntegrityError):
        posterior_from_pooled(frame, 3)


def test_posterior_from_pooled_label_mismatch():
    frame = pd.DataFrame({"w[1]": np.zeros(10), "w[2]": np.zeros(10)})
    with pytest.raises(ShapeIntegrityError):
        posterior_from_pooled(frame, 2, strain_labels=["a", "b", "c"])


def test_convergence_table_for_mixed_chains(synthetic_posterior):
    table = convergence_table(synthetic_posterior, ["w_0", "z_0", "w"])
    assert list(table.columns) == ["r_hat", "ess_bulk", "ess_tail", "converged"]
    assert list(table.index) == ["w_0", "z_0", "w[1]", "w[2]", "w[3]"]
    assert (table["r_hat"] < 1.05).all()
    assert table["converged"].all()
    assert check_convergence(table) == []


def test_check_convergence_flags_stuck_chains(caplog):
    rng = np.random.default_rng(2)
    values = rng.normal(size=(3, 500)) + np.array([[0.0], [0.0], [5.0]])
    posterior = xr.Dataset(
        {"w_0": (("chain", "draw"), values)},
        coords={"chain": np.arange(3), "draw": np.arange(500)},
    )
    table = convergence_table(posterior)
    assert table.loc["w_0", "r_hat"] > 1.05
    with caplog.at_level(logging.WARNING, logger="dose_response.diagnostics"):
        flagged = check_convergence(table)
    assert flagged == ["w_0"]
    assert "w_0" in caplog.text


def test_trace_records_layout(synthetic_posterior):
    traces = trace_records(synthetic_posterior, ["w_0", "alpha"])
    assert list(traces.columns) == ["parameter", "chain", "iteration", "value"]
    assert len(traces) == 4 * 3 * 400
    assert traces["chain"].min() == 1 and traces["chain"].max() == 3
    assert traces["iteration"].min() == 1 and traces["iteration"].max() == 400
    first = traces[(traces["parameter"] == "alpha[3]") & (traces["chain"] == 2) & (traces["iteration"] == 1)]
    assert first["value"].iloc[0] == synthetic_posterior["alpha"].values[1, 0, 2]


def test_trace_records_empty_selection(synthetic_posterior):
    traces = trace_records(synthetic_posterior, [])
    assert traces.empty
    assert list(traces.columns) == ["parameter", "chain", "iteration", "value"]


def test_convergence_table_empty_selection(synthetic_posterior):
    table = convergence_table(synthetic_posterior, [])
    assert table.empty
    assert list(table.columns) == ["r_hat", "ess_bulk", "ess_tail", "converged"]
    assert table.index.name == "parameter"
    assert check_convergence(table) == []
