"""
MCMC Sampling Functions.

Core update steps of one Gibbs iteration:
- chromatic_field_update: Field sweeps, one color class at a time
- sufficient_log_density / ancillary_log_density: Pure log targets of the
  covariance parameters in the two parametrizations
- metropolis_step: Random-walk Metropolis step on the log parameters
- update_covariance_parameters: Coordinates the sufficient and ancillary sub-steps
- update_beta / update_beta_centered: Regression coefficients
- update_noise: Noise variance
- gibbs_iteration: Full iteration, including adaptation

Non-finite proposal densities reject the proposal and non-finite direct draws
keep the previous value; both bump the chain's non-finite counter.
"""

import jax
import jax.numpy as jnp
import jax.random as random
from dataclasses import replace
from jax.scipy.linalg import solve_triangular

from ..covariance import CovarianceModel, hyperprior_log_density
from ..settings import BlockSlot, N_BLOCKS, target_acceptance
from .adaptation import adapt_kernel, proposal_cholesky, record_attempts
from .types import ChainState, DesignArrays, RunParams, SpatialArrays
from .vecchia import (
    apply_factor,
    apply_precision,
    conditional_coefficients,
    factor_values,
    field_log_density,
    precision_diagonal,
    solve_factor,
)


def _safe(lp):
    return jnp.nan_to_num(lp, nan=-jnp.inf, posinf=-jnp.inf, neginf=-jnp.inf)


def residual_sums(design: DesignArrays, beta, n_locs):
    """Per-location sum of y - X beta."""
    return jax.ops.segment_sum(design.y - design.X @ beta, design.obs_to_loc,
                               num_segments=n_locs)


def observation_log_likelihood(design: DesignArrays, beta, log_noise, field):
    """log N(y | X beta + w(s), tau^2 I)."""
    resid = design.y - design.X @ beta - field[design.obs_to_loc]
    return -0.5 * design.n_obs * (jnp.log(2.0 * jnp.pi) + log_noise) \
        - 0.5 * jnp.sum(resid ** 2) * jnp.exp(-log_noise)


# =============================================================================
# FIELD
# =============================================================================

def chromatic_field_update(key, field, spatial: SpatialArrays, design: DesignArrays,
                           vals, beta, log_noise, n_sweeps: int):
    """
    Draw the field from its full conditionals, one color class at a time.

    For node i:
        P_i  = Q_ii + n_i / tau^2
        mu_i = (sum_{o at i} (y_o - x_o' beta) / tau^2 - sum_{j != i} Q_ij w_j) / P_i

    Nodes sharing a color are never Markov neighbors, so each class is drawn
    in one vectorized gather/sample/scatter.

    Returns:
        field, key, n_nonfinite
    """
    n = spatial.n_locs
    noise_prec = jnp.exp(-log_noise)
    q_diag = precision_diagonal(spatial, vals)
    prec = q_diag + design.loc_counts * noise_prec
    data_term = residual_sums(design, beta, n) * noise_prec

    def color_step(carry, group):
        w, k, bad = carry
        k, draw_key = random.split(k)
        idx = jnp.clip(group, 0, n - 1)
        valid = group < n
        Qw = apply_precision(spatial, vals, w)
        off_diag = Qw[idx] - q_diag[idx] * w[idx]
        mu = (data_term[idx] - off_diag) / prec[idx]
        draw = mu + random.normal(draw_key, idx.shape, dtype=w.dtype) / jnp.sqrt(prec[idx])
        finite = jnp.isfinite(draw)
        draw = jnp.where(finite, draw, w[idx])
        w = w.at[group].set(draw, mode='drop')
        bad = bad + jnp.sum(valid & ~finite, dtype=jnp.int32)
        return (w, k, bad), None

    def sweep(_, carry):
        carry, _ = jax.lax.scan(color_step, carry, spatial.color_groups)
        return carry

    field, key, bad = jax.lax.fori_loop(0, n_sweeps, sweep,
                                        (field, key, jnp.array(0, dtype=jnp.int32)))
    return field, key, bad


# =============================================================================
# COVARIANCE PARAMETERS
# =============================================================================

def sufficient_log_density(theta, field, spatial: SpatialArrays, model: CovarianceModel):
    """
    log N(w | 0, Q(theta)^{-1}) + log prior(theta), field held fixed.

    Returns:
        (log density, field)
    """
    codes, params = model.prior_arrays()
    b, F = conditional_coefficients(spatial, model.kernel, theta)
    vals = factor_values(spatial, b, F)
    lp = field_log_density(spatial, vals, F, field) + hyperprior_log_density(theta, codes, params)
    return lp, field


def ancillary_log_density(theta, whitened, beta, log_noise, spatial: SpatialArrays,
                          design: DesignArrays, model: CovarianceModel):
    """
    log N(y | X beta + w(theta), tau^2) + log prior(theta), with w(theta) = R(theta)^{-1} z.

    Returns:
        (log density, w(theta))
    """
    codes, params = model.prior_arrays()
    b, F = conditional_coefficients(spatial, model.kernel, theta)
    field = solve_factor(spatial, b, F, whitened)
    lp = observation_log_likelihood(design, beta, log_noise, field) \
        + hyperprior_log_density(theta, codes, params)
    return lp, field


def metropolis_step(key, theta, field, log_density_fn, chol, log_step):
    """
    Random-walk Metropolis step on the log parameters.

    Args:
        key: JAX random key
        theta: Current log parameters (k,)
        field: Field paired with theta
        log_density_fn: theta -> (log density, field)
        chol: Cholesky factor of the base proposal covariance (k, k)
        log_step: Log step size of this block

    Returns:
        theta, field, key, accepted (float), nonfinite (int)
    """
    key, prop_key, accept_key = random.split(key, 3)
    proposal = theta + jnp.exp(log_step) * chol @ random.normal(prop_key, theta.shape, dtype=theta.dtype)

    lp_current, field_current = log_density_fn(theta)
    lp_proposed, field_proposed = log_density_fn(proposal)

    proposal_is_finite = jnp.isfinite(lp_proposed) & jnp.all(jnp.isfinite(field_proposed))
    raw_ratio = _safe(lp_proposed) - _safe(lp_current)
    # Force rejection if the proposal produced NaN/Inf
    safe_ratio = jnp.where(proposal_is_finite, jnp.nan_to_num(raw_ratio, nan=-jnp.inf), -jnp.inf)

    accept = jnp.log(random.uniform(accept_key, shape=(), dtype=theta.dtype)) < safe_ratio
    theta = jnp.where(accept, proposal, theta)
    field = jnp.where(accept, field_proposed, field_current)
    # A proposal outside the prior support is an ordinary rejection
    nonfinite = jnp.int32(jnp.isnan(lp_proposed) | ~jnp.all(jnp.isfinite(field_proposed))
                          | (lp_proposed == jnp.inf))
    return theta, field, key, jnp.float32(accept), nonfinite


def update_covariance_parameters(key, state: ChainState, spatial: SpatialArrays,
                                 design: DesignArrays, model: CovarianceModel, ancillary: bool):
    """
    Sufficient then (optionally) ancillary Metropolis sub-step.

    The sufficient step targets theta | w. The ancillary step holds
    z = R(theta) w fixed, maps each proposal back to w(theta') = R(theta')^{-1} z
    and targets theta | z, y. Each sub-step accepts or rejects on its own.

    Returns:
        log_cov, field, key, accepted (N_BLOCKS,), attempted (N_BLOCKS,), nonfinite
    """
    chol = proposal_cholesky(state.kernel)
    theta, field = state.log_cov, state.field

    def sufficient(t):
        return sufficient_log_density(t, field, spatial, model)

    theta, field, key, acc_suff, bad_suff = metropolis_step(
        key, theta, field, sufficient, chol, state.kernel.log_step[int(BlockSlot.SUFFICIENT)])

    accepted = jnp.zeros(N_BLOCKS, dtype=jnp.float32).at[int(BlockSlot.SUFFICIENT)].set(acc_suff)
    attempted = jnp.zeros(N_BLOCKS, dtype=jnp.float32).at[int(BlockSlot.SUFFICIENT)].set(1.0)
    nonfinite = bad_suff

    if ancillary:
        b, F = conditional_coefficients(spatial, model.kernel, theta)
        whitened = apply_factor(spatial, factor_values(spatial, b, F), field)

        def ancillary_fn(t):
            return ancillary_log_density(t, whitened, state.beta, state.log_noise,
                                         spatial, design, model)

        theta, field, key, acc_anc, bad_anc = metropolis_step(
            key, theta, field, ancillary_fn, chol, state.kernel.log_step[int(BlockSlot.ANCILLARY)])
        accepted = accepted.at[int(BlockSlot.ANCILLARY)].set(acc_anc)
        attempted = attempted.at[int(BlockSlot.ANCILLARY)].set(1.0)
        nonfinite = nonfinite + bad_anc

    return theta, field, key, accepted, attempted, nonfinite


# =============================================================================
# REGRESSION AND NOISE
# =============================================================================

def update_beta(key, beta, field, log_noise, design: DesignArrays):
    """
    beta | w, tau^2 ~ N((X'X)^{-1} X'(y - w), tau^2 (X'X)^{-1}) under a flat prior.

    Returns:
        beta, key, nonfinite
    """
    key, draw_key = random.split(key)
    L = design.XtX_chol
    rhs = design.X.T @ (design.y - field[design.obs_to_loc])
    mean = solve_triangular(L.T, solve_triangular(L, rhs, lower=True), lower=False)
    z = random.normal(draw_key, beta.shape, dtype=beta.dtype)
    draw = mean + jnp.exp(0.5 * log_noise) * solve_triangular(L.T, z, lower=False)
    finite = jnp.all(jnp.isfinite(draw))
    return jnp.where(finite, draw, beta), key, jnp.int32(~finite)


def update_beta_centered(key, beta, field, spatial: SpatialArrays, design: DesignArrays, vals):
    """
    Redraw location-level coefficients in the centered parametrization.

    With eta = w + X_loc beta_loc held fixed,
        beta_loc | eta ~ N(P^{-1} (R X_loc)'(R eta), P^{-1}),  P = (R X_loc)'(R X_loc)
    and the field is shifted so that eta is unchanged.

    Returns:
        beta, field, key, nonfinite
    """
    key, draw_key = random.split(key)
    q = design.n_loc_coefs
    beta_loc = beta[:q]
    eta = field + design.X_loc @ beta_loc

    RX = jax.vmap(lambda col: apply_factor(spatial, vals, col), in_axes=1, out_axes=1)(design.X_loc)
    R_eta = apply_factor(spatial, vals, eta)
    L = jnp.linalg.cholesky(RX.T @ RX)
    mean = solve_triangular(L.T, solve_triangular(L, RX.T @ R_eta, lower=True), lower=False)
    z = random.normal(draw_key, (q,), dtype=beta.dtype)
    draw = mean + solve_triangular(L.T, z, lower=False)

    finite = jnp.all(jnp.isfinite(draw))
    beta_loc = jnp.where(finite, draw, beta_loc)
    field = eta - design.X_loc @ beta_loc
    return beta.at[:q].set(beta_loc), field, key, jnp.int32(~finite)


def update_noise(key, beta, field, log_noise, design: DesignArrays, noise_prior):
    """
    tau^2 | rest ~ InvGamma(a + n/2, b + SSR/2).

    Returns:
        log_noise, key, nonfinite
    """
    key, draw_key = random.split(key)
    a, b = noise_prior
    resid = design.y - design.X @ beta - field[design.obs_to_loc]
    shape = a + 0.5 * design.n_obs
    rate = b + 0.5 * jnp.sum(resid ** 2)
    draw = jnp.log(rate) - jnp.log(random.gamma(draw_key, shape, dtype=beta.dtype))
    finite = jnp.isfinite(draw)
    return jnp.where(finite, draw, log_noise), key, jnp.int32(~finite)


# =============================================================================
# FULL ITERATION
# =============================================================================

def monitored_vector(state: ChainState):
    """Scalar parameters tracked by the diagnostics: [log_cov, log_noise, beta]."""
    return jnp.concatenate((state.log_cov, state.log_noise[None], state.beta))


def gibbs_iteration(state: ChainState, spatial: SpatialArrays, design: DesignArrays,
                    model: CovarianceModel, run_params: RunParams):
    """
    Run one full Gibbs iteration for one chain.

    Order: chromatic field sweeps, covariance parameters, regression
    coefficients, noise variance, then adaptation and bookkeeping.

    Returns:
        new_state, accepted (N_BLOCKS,), attempted (N_BLOCKS,)
    """
    key = state.key
    nonfinite = state.n_nonfinite

    # 1. Field
    b, F = conditional_coefficients(spatial, model.kernel, state.log_cov)
    vals = factor_values(spatial, b, F)
    field, key, bad = chromatic_field_update(key, state.field, spatial, design, vals,
                                             state.beta, state.log_noise, run_params.N_CHROMATIC)
    nonfinite = nonfinite + bad
    state = replace(state, field=field)

    # 2. Covariance parameters
    log_cov, field, key, accepted, attempted, bad = update_covariance_parameters(
        key, state, spatial, design, model, run_params.ANCILLARY)
    nonfinite = nonfinite + bad

    # 3. Regression coefficients and noise
    beta, key, bad = update_beta(key, state.beta, field, state.log_noise, design)
    nonfinite = nonfinite + bad
    if run_params.ANCILLARY:
        b, F = conditional_coefficients(spatial, model.kernel, log_cov)
        vals = factor_values(spatial, b, F)
        beta, field, key, bad = update_beta_centered(key, beta, field, spatial, design, vals)
        nonfinite = nonfinite + bad
    log_noise, key, bad = update_noise(key, beta, field, state.log_noise, design, model.noise_prior)
    nonfinite = nonfinite + bad

    # 4. Adaptation and bookkeeping
    k = log_cov.shape[0]
    targets = jnp.full(N_BLOCKS, target_acceptance(k), dtype=jnp.float32)
    kernel = record_attempts(state.kernel, accepted, attempted)
    kernel = adapt_kernel(kernel, state.iteration, log_cov, accepted, attempted, targets)

    new_state = ChainState(
        beta=beta,
        log_cov=log_cov,
        log_noise=log_noise,
        field=field,
        key=key,
        iteration=state.iteration + 1,
        n_nonfinite=nonfinite,
        kernel=kernel,
    )
    return new_state, accepted, attempted
