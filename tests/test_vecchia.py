"""
Unit Tests for the Sparse Vecchia Factor

With m = n - 1 neighbors the Vecchia approximation is exact, so Q must be the
inverse of the dense covariance. Sparse products are checked against dense
linear algebra.

Run with: pytest tests/test_vecchia.py -v
"""

import jax.numpy as jnp
import numpy as np
import pytest
from scipy.stats import multivariate_normal

from nngpmcmc.covariance import exponential_kernel, matern15_kernel
from nngpmcmc.mcmc.vecchia import (
    apply_factor,
    apply_factor_transpose,
    apply_precision,
    conditional_coefficients,
    dense_precision,
    factor_values,
    field_log_density,
    log_det_precision,
    precision_diagonal,
    solve_factor,
)


LOG_COV = jnp.log(jnp.array([1.5, 0.3]))


def dense_covariance(locs, kernel, log_cov):
    locs = jnp.asarray(locs)
    return np.asarray(kernel(locs[:, None, :], locs[None, :, :], log_cov))


def dense_factor(spatial, vals):
    R = np.zeros((spatial.n_locs, spatial.n_locs))
    R[np.asarray(spatial.rows), np.asarray(spatial.cols)] = np.asarray(vals)
    return R


@pytest.fixture
def exact_setup(ordered_locs, make_spatial):
    """15 locations with every earlier location as a neighbor."""
    locs = ordered_locs[:15]
    spatial = make_spatial(locs, 14)
    b, F = conditional_coefficients(spatial, exponential_kernel, LOG_COV)
    vals = factor_values(spatial, b, F)
    return locs, spatial, b, F, vals


@pytest.fixture
def sparse_setup(ordered_locs, make_spatial):
    spatial = make_spatial(ordered_locs, 5)
    b, F = conditional_coefficients(spatial, matern15_kernel, LOG_COV)
    vals = factor_values(spatial, b, F)
    return spatial, b, F, vals


class TestExactFactor:
    """Full-neighbor factor reproduces the dense precision."""

    def test_precision_inverts_covariance(self, exact_setup):
        locs, spatial, _, _, vals = exact_setup
        C = dense_covariance(locs, exponential_kernel, LOG_COV)
        Q = np.asarray(dense_precision(spatial, vals))
        np.testing.assert_allclose(Q @ C, np.eye(15), atol=1e-6)

    def test_log_density_matches_dense_gaussian(self, exact_setup):
        locs, spatial, _, F, vals = exact_setup
        C = dense_covariance(locs, exponential_kernel, LOG_COV)
        w = np.random.default_rng(0).normal(size=15)
        expected = multivariate_normal(mean=np.zeros(15), cov=C).logpdf(w)
        np.testing.assert_allclose(field_log_density(spatial, vals, F, jnp.asarray(w)),
                                   expected, rtol=1e-6)

    def test_first_row_is_marginal(self, exact_setup):
        _, _, b, F, _ = exact_setup
        np.testing.assert_allclose(F[0], 1.5, rtol=1e-8)
        np.testing.assert_array_equal(b[0], 0.0)


class TestSparseProducts:
    """Segment-sum products agree with dense algebra."""

    def test_factor_is_lower_triangular(self, sparse_setup):
        spatial, _, F, vals = sparse_setup
        R = dense_factor(spatial, vals)
        np.testing.assert_array_equal(np.triu(R, k=1), 0.0)
        np.testing.assert_allclose(np.diag(R), 1.0 / np.sqrt(np.asarray(F)))

    def test_apply_factor(self, sparse_setup):
        spatial, _, _, vals = sparse_setup
        R = dense_factor(spatial, vals)
        w = np.random.default_rng(1).normal(size=spatial.n_locs)
        np.testing.assert_allclose(apply_factor(spatial, vals, jnp.asarray(w)), R @ w, atol=1e-10)
        np.testing.assert_allclose(apply_factor_transpose(spatial, vals, jnp.asarray(w)),
                                   R.T @ w, atol=1e-10)

    def test_apply_precision_and_diagonal(self, sparse_setup):
        spatial, _, _, vals = sparse_setup
        R = dense_factor(spatial, vals)
        Q = R.T @ R
        w = np.random.default_rng(2).normal(size=spatial.n_locs)
        np.testing.assert_allclose(apply_precision(spatial, vals, jnp.asarray(w)), Q @ w,
                                   rtol=1e-8, atol=1e-8)
        np.testing.assert_allclose(precision_diagonal(spatial, vals), np.diag(Q), rtol=1e-10)
        np.testing.assert_allclose(dense_precision(spatial, vals), Q, rtol=1e-10, atol=1e-10)

    def test_log_det(self, sparse_setup):
        spatial, _, F, vals = sparse_setup
        R = dense_factor(spatial, vals)
        sign, logdet = np.linalg.slogdet(R.T @ R)
        assert sign > 0
        np.testing.assert_allclose(log_det_precision(F), logdet, rtol=1e-8)

    def test_conditional_variances_positive(self, sparse_setup):
        _, b, F, _ = sparse_setup
        assert np.all(np.asarray(F) > 0)
        assert np.all(np.asarray(F) <= 1.5 * (1.0 + 1e-9))


class TestSolveFactor:
    """Forward substitution inverts the factor."""

    def test_solve_inverts_apply(self, sparse_setup):
        spatial, b, F, vals = sparse_setup
        w = jnp.asarray(np.random.default_rng(3).normal(size=spatial.n_locs))
        z = apply_factor(spatial, vals, w)
        np.testing.assert_allclose(solve_factor(spatial, b, F, z), w, atol=1e-8)

    def test_apply_inverts_solve(self, sparse_setup):
        spatial, b, F, vals = sparse_setup
        z = jnp.asarray(np.random.default_rng(4).normal(size=spatial.n_locs))
        w = solve_factor(spatial, b, F, z)
        np.testing.assert_allclose(apply_factor(spatial, vals, w), z, atol=1e-8)
