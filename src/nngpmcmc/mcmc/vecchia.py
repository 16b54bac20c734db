"""
Sparse Vecchia factor algebra.

For covariance parameters theta the approximate precision is Q = R'R with

    R = F^{-1/2} (I - B),   B_i = C(i, N(i)) C(N(i), N(i))^{-1},
                            F_i = C(i, i) - B_i C(N(i), i)

R is lower triangular with the nonzero pattern of the SparseCholeskyPattern.
Factor values are computed on the dense (n_locs, m + 1) "self then
neighbors" layout and flattened to the pattern with `positions`; every
product below is a segment sum over the pattern entries.
"""

import jax
import jax.numpy as jnp

from .types import SpatialArrays


# Relative nugget added to neighbor covariance blocks
JITTER = 1e-10


def conditional_coefficients(spatial: SpatialArrays, kernel, log_cov):
    """
    Kriging weights and conditional variances of every location given its neighbors.

    Returns:
        b: (n_locs, m) weights B_i on the neighbor slots (0 on padding)
        F: (n_locs,) conditional variances
    """
    locs, nbr, mask = spatial.locs, spatial.nbr, spatial.nbr_mask
    nb_locs = locs[nbr]                                                  # (n, m, d)

    pair_mask = mask[:, :, None] & mask[:, None, :]
    eye = jnp.eye(spatial.m, dtype=locs.dtype)
    C_NN = kernel(nb_locs[:, :, None, :], nb_locs[:, None, :, :], log_cov)
    C_NN = jnp.where(pair_mask, C_NN, eye) + JITTER * jnp.exp(log_cov[0]) * eye
    C_Ni = jnp.where(mask, kernel(nb_locs, locs[:, None, :], log_cov), 0.0)
    C_ii = kernel(locs, locs, log_cov) * (1.0 + JITTER)

    b = jnp.linalg.solve(C_NN, C_Ni[..., None])[..., 0]
    b = jnp.where(mask, b, 0.0)
    F = C_ii - jnp.sum(b * C_Ni, axis=1)
    return b, F


def factor_values(spatial: SpatialArrays, b, F):
    """Values of R on the pattern entries, in pattern order."""
    dense = jnp.concatenate((jnp.ones_like(F)[:, None], -b), axis=1) / jnp.sqrt(F)[:, None]
    return dense.reshape(-1)[spatial.positions]


def apply_factor(spatial: SpatialArrays, vals, w):
    """R w."""
    return jax.ops.segment_sum(vals * w[spatial.cols], spatial.rows,
                               num_segments=spatial.n_locs)


def apply_factor_transpose(spatial: SpatialArrays, vals, v):
    """R' v."""
    return jax.ops.segment_sum(vals * v[spatial.rows], spatial.cols,
                               num_segments=spatial.n_locs)


def apply_precision(spatial: SpatialArrays, vals, w):
    """Q w = R'(R w)."""
    return apply_factor_transpose(spatial, vals, apply_factor(spatial, vals, w))


def precision_diagonal(spatial: SpatialArrays, vals):
    """Q_ii = sum over column i of R_ji^2."""
    return jax.ops.segment_sum(vals ** 2, spatial.cols, num_segments=spatial.n_locs)


def log_det_precision(F):
    """log det Q = -sum log F."""
    return -jnp.sum(jnp.log(F))


def field_log_density(spatial: SpatialArrays, vals, F, w):
    """log N(w | 0, Q^{-1})."""
    Rw = apply_factor(spatial, vals, w)
    return 0.5 * log_det_precision(F) - 0.5 * jnp.sum(Rw ** 2) \
        - 0.5 * spatial.n_locs * jnp.log(2.0 * jnp.pi)


def solve_factor(spatial: SpatialArrays, b, F, z):
    """
    Forward substitution w = R^{-1} z.

    Row i only references earlier rows, so
        w_i = sqrt(F_i) z_i + sum_j b_ij w_{N(i)_j}.
    """
    sqrt_F = jnp.sqrt(F)

    def body(w, i):
        w_i = sqrt_F[i] * z[i] + jnp.sum(b[i] * w[spatial.nbr[i]])
        return w.at[i].set(w_i), None

    w, _ = jax.lax.scan(body, jnp.zeros_like(z), jnp.arange(spatial.n_locs))
    return w


def dense_precision(spatial: SpatialArrays, vals):
    """Dense Q for small problems and checks."""
    R = jnp.zeros((spatial.n_locs, spatial.n_locs), dtype=vals.dtype)
    R = R.at[spatial.rows, spatial.cols].add(vals)
    return R.T @ R
