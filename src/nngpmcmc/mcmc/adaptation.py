"""
Transition kernel adaptation.

The adaptation window of n_adapt iterations has two halves:
- warm-up: each Metropolis block's log step size follows a Robbins-Monro
  recursion against the fixed initial proposal
      log_step <- log_step + (t + 1)^(-rm_exponent) * (accepted - target)
  while the chain moves away from its overdispersed start.
- collection: the empirical mean and covariance of the covariance parameters
  are updated with Welford's recursion. Once am_start samples are in they
  replace the initial proposal (adaptive Metropolis, Haario et al. 2001),
  the log steps are reset to 2.38 / sqrt(k) and the Robbins-Monro clock
  restarts, so the steps finish tuned to the proposal that gets frozen.

After n_adapt iterations the flag is cleared and nothing changes any more,
so the remainder of the chain is a time-homogeneous Markov chain.
"""

import jax.numpy as jnp

from ..settings import ADAPT_DEFAULTS, N_BLOCKS, init_log_steps
from .types import KernelState


def init_kernel_state(log_cov, n_adapt: int = ADAPT_DEFAULTS['n_adapt']) -> KernelState:
    """Fresh KernelState centered at the starting covariance parameters."""
    k = log_cov.shape[0]
    return KernelState(
        log_step=init_log_steps(k),
        emp_mean=jnp.asarray(log_cov),
        emp_cov=jnp.zeros((k, k), dtype=log_cov.dtype),
        n_seen=jnp.array(0, dtype=jnp.int32),
        n_accept=jnp.zeros(N_BLOCKS, dtype=log_cov.dtype),
        n_attempt=jnp.zeros(N_BLOCKS, dtype=log_cov.dtype),
        adapting=jnp.array(n_adapt > 0),
        n_adapt=jnp.array(n_adapt, dtype=jnp.int32),
    )


def proposal_cholesky(kernel: KernelState):
    """
    Cholesky factor of the base proposal covariance (before step scaling).

    Once enough samples were seen this is the empirical covariance with a
    small share of the initial proposal mixed in plus a ridge, a diagonal
    with ADAPT_DEFAULTS['init_proposal_sd'] before that.
    """
    k = kernel.emp_mean.shape[0]
    eye = jnp.eye(k, dtype=kernel.emp_cov.dtype)
    initial = ADAPT_DEFAULTS['init_proposal_sd'] ** 2 * eye
    weight = ADAPT_DEFAULTS['am_weight']
    empirical = (1.0 - weight) * kernel.emp_cov + weight * initial + ADAPT_DEFAULTS['am_epsilon'] * eye
    use_empirical = kernel.n_seen >= ADAPT_DEFAULTS['am_start']
    chol = jnp.linalg.cholesky(jnp.where(use_empirical, empirical, initial))
    # A non-positive-definite estimate falls back to the initial proposal
    return jnp.where(jnp.all(jnp.isfinite(chol)), chol, jnp.sqrt(initial))


def record_attempts(kernel: KernelState, accepted, attempted) -> KernelState:
    """Add one iteration's (N_BLOCKS,) acceptance indicators to the counters."""
    return KernelState(
        log_step=kernel.log_step,
        emp_mean=kernel.emp_mean,
        emp_cov=kernel.emp_cov,
        n_seen=kernel.n_seen,
        n_accept=kernel.n_accept + accepted * attempted,
        n_attempt=kernel.n_attempt + attempted,
        adapting=kernel.adapting,
        n_adapt=kernel.n_adapt,
    )


def adapt_kernel(kernel: KernelState, iteration, log_cov, accepted, attempted, targets) -> KernelState:
    """
    One adaptation step.

    Args:
        kernel: Current KernelState
        iteration: Iterations completed before this one
        log_cov: Covariance parameters after this iteration (k,)
        accepted: (N_BLOCKS,) 1.0 where the block accepted
        attempted: (N_BLOCKS,) 1.0 where the block ran
        targets: (N_BLOCKS,) target acceptance rates

    Returns:
        Updated KernelState (unchanged apart from the flag once frozen)
    """
    am_start = ADAPT_DEFAULTS['am_start']
    on = kernel.adapting
    collecting = on & (iteration >= kernel.n_adapt // 2)

    # Iterations since the empirical proposal took over, or since the start
    clock = jnp.where(kernel.n_seen >= am_start, kernel.n_seen - am_start, iteration)
    gain = (clock + 1.0) ** (-ADAPT_DEFAULTS['rm_exponent'])
    log_step = kernel.log_step + on * attempted * gain * (accepted - targets)

    # Welford update of the empirical moments
    n_new = kernel.n_seen + 1
    delta = log_cov - kernel.emp_mean
    mean_new = kernel.emp_mean + delta / n_new
    cov_new = kernel.emp_cov + (jnp.outer(delta, log_cov - mean_new) - kernel.emp_cov) / n_new

    # The next proposal is the empirical one: restart the steps at 2.38 / sqrt(k)
    swapped = collecting & (n_new == am_start)
    reset = init_log_steps(log_cov.shape[0]).astype(kernel.log_step.dtype)
    log_step = jnp.where(swapped, reset, log_step)

    return KernelState(
        log_step=log_step,
        emp_mean=jnp.where(collecting, mean_new, kernel.emp_mean),
        emp_cov=jnp.where(collecting, cov_new, kernel.emp_cov),
        n_seen=jnp.where(collecting, n_new, kernel.n_seen),
        n_accept=kernel.n_accept,
        n_attempt=kernel.n_attempt,
        adapting=on & (iteration + 1 < kernel.n_adapt),
        n_adapt=kernel.n_adapt,
    )
