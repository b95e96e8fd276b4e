import numpy as np
import pytest
from scipy.special import gammaln
from scipy.stats import binom

from dose_response.model import (
    build_model,
    infection_prob,
    inverse_transform,
    log_prob_no_infection,
    transform,
)
from dose_response.sampler import initial_values


def test_transform_positive_and_bounded():
    w, z = np.meshgrid(np.linspace(-30, 30, 61), np.linspace(-20, 20, 41))
    u, v, alpha, beta = transform(w, z)
    assert np.all(alpha > 0)
    assert np.all(beta > 0)
    assert np.all((u > 0) & (u < 1))
    assert np.allclose(alpha + beta, v)


def test_transform_large_w_keeps_beta_positive():
    _, _, alpha, beta = transform(40.0, 0.0)
    assert beta > 0
    assert alpha == pytest.approx(1.0)


def test_inverse_transform_round_trip():
    alpha = np.array([0.01, 0.3, 2.0, 15.0, 400.0])
    beta = np.array([5.0, 0.2, 3.0, 1e-3, 90.0])
    w, z = inverse_transform(alpha, beta)
    _, _, alpha2, beta2 = transform(w, z)
    np.testing.assert_allclose(alpha2, alpha, rtol=1e-10)
    np.testing.assert_allclose(beta2, beta, rtol=1e-10)


def test_known_value_alpha2_beta3_dose1():
    lq = log_prob_no_infection(2.0, 3.0, 1.0)
    expected = gammaln(5) + gammaln(4) - gammaln(3) - gammaln(6)
    assert lq == pytest.approx(expected)
    assert lq == pytest.approx(-0.5108, abs=1e-4)
    assert infection_prob(2.0, 3.0, 1.0) == pytest.approx(0.4, abs=1e-4)


def test_zero_dose_is_exactly_zero():
    assert infection_prob(1.0, 1.0, 0.0) == 0.0
    alpha, beta = np.meshgrid(np.logspace(-3, 4, 30), np.logspace(-3, 4, 30))
    p = infection_prob(alpha, beta, 0.0)
    assert np.all(np.abs(p) <= 1e-9)


def test_monotone_in_dose():
    doses = np.concatenate([[0.0], np.logspace(-2, 6, 300)])
    alpha = np.array([0.05, 0.3, 1.0, 2.0, 25.0])[:, None]
    beta = np.array([10.0, 5.0, 1.0, 3.0, 400.0])[:, None]
    p = infection_prob(alpha, beta, doses[None, :])
    assert np.all(np.diff(p, axis=1) >= -1e-12)
    assert np.all((p >= 0) & (p <= 1))


def test_large_dose_approaches_one():
    assert infection_prob(2.0, 3.0, 1e6) == pytest.approx(1.0, abs=1e-9)
    assert infection_prob(1.0, 1.0, 1e6) == pytest.approx(1.0, abs=1e-5)


def test_large_concentration_stays_accurate():
    # alpha + beta >> dose: each organism infects with probability ~alpha / (alpha + beta)
    p = infection_prob(1e4, 1e7, 100.0)
    expected = 1.0 - np.exp(100.0 * np.log(1e7 / (1e7 + 1e4)))
    assert p == pytest.approx(expected, rel=1e-3)


def _initialized_model(data, parametrization="centered"):
    model = build_model(data, parametrization=parametrization)
    for name, value in initial_values(data, parametrization).items():
        model.set_initval(model[name], value)
    return model


def test_build_model_variables(small_data):
    model = build_model(small_data)
    free = {rv.name for rv in model.free_RVs}
    assert free == {"w_0", "z_0", "sigma_w", "sigma_z", "w", "z"}
    deterministics = {d.name for d in model.deterministics}
    assert {"alpha0", "beta0", "alpha", "beta"} <= deterministics
    assert [rv.name for rv in model.observed_RVs] == ["y"]


def test_build_model_noncentered(small_data):
    model = build_model(small_data, parametrization="noncentered")
    free = {rv.name for rv in model.free_RVs}
    assert {"w_offset", "z_offset"} <= free
    assert "w" in {d.name for d in model.deterministics}


def test_build_model_rejects_unknown_parametrization(small_data):
    with pytest.raises(ValueError):
        build_model(small_data, parametrization="sideways")


def test_likelihood_matches_binomial(small_data):
    model = _initialized_model(small_data)
    logps = model.point_logps(model.initial_point(), round_vals=6)
    # w = z = 0 at the initial point, so alpha = beta = 0.5 for every strain
    p = infection_prob(0.5, 0.5, small_data.dose)
    expected = binom.logpmf(small_data.successes, small_data.trials, p).sum()
    assert logps["y"] == pytest.approx(expected, abs=1e-4)
    assert logps["domain_guard"] == 0.0


def test_overflowing_concentration_is_rejected(small_data):
    model = _initialized_model(small_data)
    point = model.initial_point()
    point["z"] = np.full(small_data.num_strains, 800.0)
    logp = model.compile_logp()(point)
    assert np.isneginf(logp)


@pytest.mark.parametrize("w", [1000.0, -1000.0])
def test_underflowing_alpha_or_beta_is_rejected(small_data, w):
    model = _initialized_model(small_data)
    point = model.initial_point()
    point["w"] = np.full(small_data.num_strains, w)
    logps = model.point_logps(point)
    assert np.isneginf(logps["domain_guard"])
    assert np.isfinite(logps["y"])
    logp = model.compile_logp()(point)
    assert np.isneginf(logp)
    assert not np.isnan(logp)


def test_guard_is_silent_at_ordinary_point(small_data):
    model = _initialized_model(small_data)
    point = model.initial_point()
    point["w"] = np.full(small_data.num_strains, -2.0)
    point["z"] = np.full(small_data.num_strains, 1.5)
    assert np.isfinite(model.compile_logp()(point))
