"""
MCMC Diagnostics.

Convergence diagnostics for multiple chains:
- compute_grb: Univariate Gelman-Rubin potential scale reduction factor (PSRF)
- compute_mpsrf: Brooks-Gelman multivariate PSRF
- stack_histories: Burn-in removal and truncation to a common length
- should_stop: Early stopping decision from the two thresholds
- print_grb_summary / print_acceptance_summary: Logged summaries
"""

from typing import List, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax.scipy.linalg import solve_triangular

from ..error_handling import InsufficientChainsError
from ..settings import BlockSlot

import logging
logger = logging.getLogger('nngpmcmc')


def _check_history(history) -> Tuple[int, int, int]:
    if history.ndim != 3:
        raise ValueError(
            f"history must have shape (n_samples, n_chains, n_params), got {history.shape}"
        )
    n_samples, n_chains, n_params = history.shape
    if n_chains < 2:
        raise InsufficientChainsError(
            f"Gelman-Rubin diagnostics need at least 2 chains, got {n_chains}"
        )
    return n_samples, n_chains, n_params


@jax.jit
def _grb(history):
    n, m, _ = history.shape
    chain_means = jnp.mean(history, axis=0)                     # (m, p)
    # B = n * var(chain_means), W = mean within-chain variance
    B = n * jnp.var(chain_means, axis=0, ddof=1)
    W = jnp.mean(jnp.var(history, axis=0, ddof=1), axis=0)
    V_hat = ((n - 1) / n) * W + B / n + B / (m * n)
    return jnp.sqrt(V_hat / W)


@jax.jit
def _mpsrf(history):
    n, m, p = history.shape
    chain_means = jnp.mean(history, axis=0)                     # (m, p)
    centered = history - chain_means[None]
    W = jnp.einsum('tcp,tcq->pq', centered, centered) / (m * (n - 1))
    dev = chain_means - jnp.mean(chain_means, axis=0)
    B_over_n = dev.T @ dev / (m - 1)

    # Largest eigenvalue of W^{-1} B/n via the symmetric form L^{-1} (B/n) L^{-T}
    L = jnp.linalg.cholesky(W)
    tmp = solve_triangular(L, B_over_n, lower=True)
    sym = solve_triangular(L, tmp.T, lower=True)
    lam = jnp.max(jnp.linalg.eigvalsh(0.5 * (sym + sym.T)))
    return (n - 1) / n + (m + 1) / m * lam


def compute_grb(history) -> np.ndarray:
    """
    Univariate Gelman-Rubin PSRF per parameter.

    V_hat = (n-1)/n W + B/n + B/(m n),  R = sqrt(V_hat / W)

    Args:
        history: (n_samples, n_chains, n_params)

    Returns:
        (n_params,) PSRF values; NaN where undefined (fewer than 2 samples or
        zero within-chain variance)

    Raises:
        InsufficientChainsError: With fewer than 2 chains
    """
    history = jnp.asarray(history)
    n_samples, _, n_params = _check_history(history)
    if n_samples < 2:
        return np.full(n_params, np.nan)
    return np.asarray(jax.device_get(_grb(history)))


def compute_mpsrf(history) -> float:
    """
    Brooks-Gelman multivariate PSRF.

        MPSRF = (n-1)/n + (m+1)/m * lambda_max(W^{-1} B/n)

    Args:
        history: (n_samples, n_chains, n_params)

    Returns:
        MPSRF; NaN when fewer than 2 samples or W is singular

    Raises:
        InsufficientChainsError: With fewer than 2 chains
    """
    history = jnp.asarray(history)
    n_samples, _, _ = _check_history(history)
    if n_samples < 2:
        return float('nan')
    return float(jax.device_get(_mpsrf(history)))


def stack_histories(histories: Sequence[np.ndarray], burn_in: float) -> np.ndarray:
    """
    Drop the first burn_in fraction of every chain and truncate to a common length.

    Args:
        histories: Per-chain saved scalar records, each (n_saved_c, n_params)
        burn_in: Fraction in [0, 1] of each chain's saved record to discard

    Returns:
        (n_samples, n_chains, n_params) array, keeping the latest samples
    """
    kept = [h[int(np.floor(burn_in * h.shape[0])):] for h in histories]
    n_common = min(k.shape[0] for k in kept)
    return np.stack([k[k.shape[0] - n_common:] for k in kept], axis=1)


def should_stop(mpsrf: float, psrf: np.ndarray, grb_stop: Tuple[float, float]) -> bool:
    """
    Early stopping decision.

    Stops when MPSRF < grb_stop[0] or every PSRF < grb_stop[1]. NaN values
    count as not converged, and grb_stop == (1, 1) never stops.
    """
    if tuple(grb_stop) == (1.0, 1.0):
        return False
    multivariate = bool(np.isfinite(mpsrf) and mpsrf < grb_stop[0])
    psrf = np.asarray(psrf)
    univariate = bool(psrf.size and np.all(np.isfinite(psrf)) and np.all(psrf < grb_stop[1]))
    return multivariate or univariate


def print_grb_summary(entry: dict, names: List[str]) -> None:
    """Log the diagnostics of one cycle."""
    psrf = np.asarray(entry['psrf'])
    finite = psrf[np.isfinite(psrf)]
    max_psrf = finite.max() if finite.size else float('nan')
    logger.info(
        f"Cycle {entry['cycle']}: iteration {entry['iteration']}, "
        f"{entry['n_samples']} samples/chain, MPSRF {entry['mpsrf']:.4f}, "
        f"max PSRF {max_psrf:.4f}"
    )
    n_nan = int(np.sum(~np.isfinite(psrf)))
    if n_nan:
        logger.warning(f"  {n_nan} parameter(s) have NaN/Inf PSRF (stuck or too few samples)")
    worst = np.argsort(-np.nan_to_num(psrf, nan=np.inf))[:3]
    for idx in worst:
        logger.info(f"  {names[idx]}: PSRF {psrf[idx]:.4f}")
    if entry['stop']:
        logger.info("  Convergence criterion met, stopping")


def print_acceptance_summary(acceptance_rates: List[np.ndarray]) -> None:
    """
    Log Metropolis acceptance rates per chain.

    Args:
        acceptance_rates: Per-chain (N_BLOCKS,) rates for the last cycle (NaN if not attempted)
    """
    for chain, rates in enumerate(acceptance_rates):
        parts = [f"{slot.name.lower()} {rates[slot]:.1%}" for slot in BlockSlot
                 if np.isfinite(rates[slot])]
        logger.info(f"  Chain {chain} acceptance: {', '.join(parts)}")
        low = [slot.name.lower() for slot in BlockSlot
               if np.isfinite(rates[slot]) and rates[slot] < 0.10]
        if low:
            logger.warning(f"  Chain {chain}: acceptance rate < 10% for {', '.join(low)}")
