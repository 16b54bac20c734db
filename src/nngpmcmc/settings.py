"""
Metropolis block settings.

The covariance parameters are updated by two Metropolis sub-steps per
iteration. Per-block quantities (log step size, acceptance counts) live in
JAX arrays of shape (N_BLOCKS,) indexed by the BlockSlot enum, so the
adaptation code touches them by position with no runtime overhead.

To add a block:
1. Add it to BlockSlot
2. Give it an initial log step in init_log_steps (defaults apply otherwise)
3. Update it in sampling.update_covariance_parameters
"""

from enum import IntEnum

import numpy as np
import jax.numpy as jnp


class BlockSlot(IntEnum):
    """
    Canonical slot indices for the Metropolis blocks.

    IntEnum values compile to simple integers - no runtime overhead.
    """
    SUFFICIENT = 0   # Covariance parameters with the field held fixed
    ANCILLARY = 1    # Covariance parameters with the whitened field held fixed


N_BLOCKS = len(BlockSlot)

# Optimal acceptance rates for random-walk Metropolis (Roberts & Rosenthal)
TARGET_ACCEPT_MULTI = 0.234
TARGET_ACCEPT_SINGLE = 0.44

# Adaptation defaults
ADAPT_DEFAULTS = {
    'n_adapt': 100,          # Iterations before the kernel is frozen
    'rm_exponent': 0.6,      # Robbins-Monro gain decays as (t + 1) ** -rm_exponent
    'am_start': 20,          # Samples needed before the empirical covariance is used
    'am_epsilon': 1e-6,      # Ridge added to the empirical covariance
    'am_weight': 0.05,       # Share of the initial proposal mixed into the empirical one
    'init_proposal_sd': 0.1, # Per-parameter sd of the proposal before am_start
    'init_jitter_sd': 0.5,   # Overdispersion of chain starting points (log scale)
}


def target_acceptance(n_params: int) -> float:
    """Target acceptance rate for a random-walk block of n_params parameters."""
    return TARGET_ACCEPT_SINGLE if n_params == 1 else TARGET_ACCEPT_MULTI


def init_log_steps(n_params: int):
    """
    Initial log step sizes, one per block.

    Starts at the adaptive-Metropolis scaling 2.38 / sqrt(k).
    """
    steps = np.full(N_BLOCKS, np.log(2.38 / np.sqrt(n_params)))
    return jnp.array(steps)
