"""
Pytest configuration and shared fixtures for nngpmcmc tests.
"""

import jax
import numpy as np
import pytest

jax.config.update("jax_enable_x64", True)

from nngpmcmc import initialize  # noqa: E402
from nngpmcmc.registry import _REGISTRY  # noqa: E402
from nngpmcmc.spatial import (  # noqa: E402
    build_cholesky_pattern,
    color_groups,
    find_ordered_neighbors,
    greedy_coloring,
    build_markov_graph,
    order_maxmin,
)
from nngpmcmc.mcmc.types import build_spatial_arrays  # noqa: E402


@pytest.fixture
def rng_seed():
    """Default RNG seed for reproducible tests."""
    return 42


@pytest.fixture
def scattered_locs():
    """60 distinct random locations in the unit square."""
    rng = np.random.default_rng(0)
    return rng.uniform(size=(60, 2))


@pytest.fixture
def ordered_locs(scattered_locs):
    """scattered_locs in maxmin order."""
    return scattered_locs[order_maxmin(scattered_locs)]


@pytest.fixture
def synthetic_data():
    """
    Small spatial regression data set with duplicated coordinates.

    25 locations, 2 observations each, intercept 5, one location-level and
    one observation-level covariate.
    """
    rng = np.random.default_rng(7)
    locs = rng.uniform(size=(25, 2))
    coords = np.repeat(locs, 2, axis=0)
    elevation = np.repeat(rng.normal(size=25), 2)
    temperature = rng.normal(size=50)
    field = np.repeat(np.sin(3 * locs[:, 0]) + np.cos(2 * locs[:, 1]), 2)
    y = 5.0 + 0.8 * elevation - 0.5 * temperature + field + 0.1 * rng.normal(size=50)
    return {
        'coords': coords,
        'y': y,
        'X_locs': {'elevation': elevation},
        'X_obs': {'temperature': temperature},
    }


@pytest.fixture
def small_sampler(synthetic_data):
    """Initialized (not yet run) sampler on synthetic_data."""
    return initialize(
        synthetic_data['coords'],
        synthetic_data['y'],
        X_locs=synthetic_data['X_locs'],
        X_obs=synthetic_data['X_obs'],
        m=4,
        n_chains=2,
        seed=3,
    )


@pytest.fixture
def make_spatial():
    """Factory building SpatialArrays for already ordered locations."""
    def _make(locs, m):
        dag = find_ordered_neighbors(locs, m)
        pattern = build_cholesky_pattern(dag)
        groups = color_groups(greedy_coloring(build_markov_graph(dag)))
        return build_spatial_arrays(locs, dag, pattern, groups)
    return _make


@pytest.fixture
def restore_registry():
    """
    Fixture to snapshot the covariance registry and restore it after the test.

    Usage:
        def test_something(restore_registry):
            register_covariance('tmp', {...})
    """
    snapshot = dict(_REGISTRY)
    yield
    _REGISTRY.clear()
    _REGISTRY.update(snapshot)
