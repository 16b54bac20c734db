"""
MCMC Scan Body and Chunk Kernels.

This module contains the compiled sampling loop:
- mcmc_scan_body: One iteration plus the thinning draws
- run_chunk: lax.scan of the body over a fixed number of iterations
- get_chunk_kernel: Jitted chunk runner (one compile per chunk length)
- CHUNK_SIZE: Iterations per compiled chunk

Thinning is decided inside the scan with independent Bernoulli draws for the
scalar record (THINNING) and the field record (FIELD_THINNING); the host
keeps only the flagged iterations.
"""

from dataclasses import replace
from functools import partial

import jax
import jax.random as random

from ..covariance import CovarianceModel
from .sampling import gibbs_iteration, monitored_vector
from .types import ChainState, DesignArrays, RunParams, SpatialArrays


# --- CONSTANTS ---
CHUNK_SIZE = 50


def mcmc_scan_body(state: ChainState, _, spatial: SpatialArrays, design: DesignArrays,
                   model: CovarianceModel, run_params: RunParams):
    """
    One iteration of the MCMC scan.

    Returns:
        new_state, (monitored, field, save_scalar, save_field, iteration, accepted, attempted)
    """
    state, accepted, attempted = gibbs_iteration(state, spatial, design, model, run_params)

    key, scalar_key, field_key = random.split(state.key, 3)
    save_scalar = random.uniform(scalar_key) < run_params.THINNING
    save_field = random.uniform(field_key) < run_params.FIELD_THINNING
    state = replace(state, key=key)

    outputs = (monitored_vector(state), state.field, save_scalar, save_field,
               state.iteration, accepted, attempted)
    return state, outputs


def run_chunk(state: ChainState, spatial: SpatialArrays, design: DesignArrays,
              model: CovarianceModel, run_params: RunParams):
    """
    Advance one chain by run_params.N_ITERATIONS iterations.

    Args:
        state: ChainState (traced)
        spatial: SpatialArrays (traced - contains arrays)
        design: DesignArrays (traced - contains arrays)
        model: CovarianceModel (static, hashable)
        run_params: RunParams (static, hashable)

    Returns:
        Final ChainState and stacked per-iteration outputs
    """
    body = partial(mcmc_scan_body, spatial=spatial, design=design,
                   model=model, run_params=run_params)
    return jax.lax.scan(body, state, None, length=run_params.N_ITERATIONS)


_run_chunk_jit = jax.jit(run_chunk, static_argnames=('model', 'run_params'))


def get_chunk_kernel(model: CovarianceModel, run_params: RunParams):
    """
    Jitted chunk runner bound to a model and run parameters.

    The jit cache is keyed on the static arguments and array shapes, so every
    chain sharing a chunk length reuses one compiled kernel.
    """
    def kernel(state, spatial, design):
        return _run_chunk_jit(state, spatial, design, model=model, run_params=run_params)
    return kernel


def chunk_lengths(n_iterations: int, chunk_size: int = CHUNK_SIZE):
    """Split n_iterations into full chunks plus one remainder."""
    full, rest = divmod(n_iterations, chunk_size)
    return [chunk_size] * full + ([rest] if rest else [])
