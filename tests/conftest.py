import numpy as np
import pytest
import xarray as xr

from dose_response.data_prep.loader import build_dataset
from dose_response.data_prep.simulate import simulate_frame
from dose_response.model import transform
from dose_response.sampler import draw_new_strain


@pytest.fixture
def simulated():
    frame, truth = simulate_frame(num_strains=3, trials=25, seed=3)
    return frame, truth


@pytest.fixture
def small_data(simulated):
    frame, _ = simulated
    return build_dataset(frame, source="simulated")


def make_posterior(strain_labels, chains=3, draws=400, seed=0):
    """Well-mixed synthetic sample set shaped like a fitted posterior."""
    rng = np.random.default_rng(seed)
    k = len(strain_labels)
    w_0 = rng.normal(-2.8, 0.1, size=(chains, draws))
    z_0 = rng.normal(1.7, 0.1, size=(chains, draws))
    sigma_w = np.abs(rng.normal(0.5, 0.05, size=(chains, draws)))
    sigma_z = np.abs(rng.normal(0.3, 0.05, size=(chains, draws)))
    w = w_0[..., None] + sigma_w[..., None] * rng.normal(size=(chains, draws, k))
    z = z_0[..., None] + sigma_z[..., None] * rng.normal(size=(chains, draws, k))
    _, _, alpha0, beta0 = transform(w_0, z_0)
    _, _, alpha, beta = transform(w, z)

    scalar = ("chain", "draw")
    vector = ("chain", "draw", "strain")
    ds = xr.Dataset(
        {
            "w_0": (scalar, w_0), "z_0": (scalar, z_0),
            "sigma_w": (scalar, sigma_w), "sigma_z": (scalar, sigma_z),
            "w": (vector, w), "z": (vector, z),
            "alpha0": (scalar, alpha0), "beta0": (scalar, beta0),
            "alpha": (vector, alpha), "beta": (vector, beta),
        },
        coords={"chain": np.arange(chains), "draw": np.arange(draws), "strain": list(strain_labels)},
    )
    return draw_new_strain(ds, rng)


@pytest.fixture
def synthetic_posterior(small_data):
    return make_posterior(small_data.strain_labels)
