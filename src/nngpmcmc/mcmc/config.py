"""
MCMC Configuration and Initialization.

This module handles setting up the sampler before any chain runs:
- configure_precision: Switch JAX between 32- and 64-bit floats
- check_precision: Refuse to run states built under the other precision
- gen_rng_keys: Generate JAX random keys
- build_run_params: Frozen RunParams from a cleaned run config
- initial_values: Data-driven starting point shared by all chains
- initialize_chain_states: One overdispersed ChainState per chain

All config keys use lowercase with underscores (e.g., 'n_cycles', 'burn_in').
"""

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np
from typing import Any, Dict, List, Tuple

from ..covariance import CovarianceModel, spatial_extent
from ..error_handling import PrecisionMismatchError
from ..registry import get_covariance
from ..regressors import RegressorDesign, ols_fit
from ..settings import ADAPT_DEFAULTS
from ..spatial import ObservationIndexMap
from .adaptation import init_kernel_state
from .types import ChainState, RunParams
from .utils import clean_config


def configure_precision(use_double: bool) -> Tuple[Any, Any]:
    """
    Configure JAX precision.

    Returns:
        (jnp_float_dtype, jnp_int_dtype)
    """
    if use_double:
        jax.config.update("jax_enable_x64", True)
        return jnp.float64, jnp.int64
    jax.config.update("jax_enable_x64", False)
    return jnp.float32, jnp.int32


def check_precision(use_double: bool, chain_states: List[ChainState]) -> None:
    """
    Check that the process-wide x64 flag still matches a sampler's states.

    Raises:
        PrecisionMismatchError: If another sampler switched JAX precision
    """
    enabled = bool(jax.config.jax_enable_x64)
    expected = jnp.float64 if use_double else jnp.float32
    found = chain_states[0].log_cov.dtype if chain_states else expected
    if enabled != use_double or found != expected:
        raise PrecisionMismatchError(
            f"Sampler was initialized with use_double={use_double} (states are {found}) "
            f"but jax_enable_x64 is {enabled}; call configure_precision({use_double}) "
            f"before running it"
        )


def gen_rng_keys(rng_seed: int) -> Tuple[Any, Any]:
    """Generate JAX random keys from seed.

    Returns:
        (master_key, init_key): Tuple of JAX PRNGKeys
    """
    mkey = jax.random.PRNGKey(rng_seed)
    master_key, init_key = random.split(mkey, 2)
    return master_key, init_key


def build_run_params(run_config: Dict[str, Any], n_iterations: int) -> RunParams:
    """Create RunParams for a chunk of n_iterations from a run config."""
    run_config = clean_config(run_config)
    return RunParams(
        N_ITERATIONS=int(n_iterations),
        N_CHROMATIC=int(run_config['n_chromatic']),
        ANCILLARY=bool(run_config['ancillary']),
        THINNING=float(run_config['thinning']),
        FIELD_THINNING=float(run_config['field_thinning']),
    )


def _prior_bounds(model: CovarianceModel) -> Tuple[np.ndarray, np.ndarray]:
    """Log-scale support of every covariance parameter (infinite when unbounded)."""
    low = np.full(model.n_params, -np.inf)
    high = np.full(model.n_params, np.inf)
    for i, prior in enumerate(model.hyperpriors):
        if prior.family == 'log_uniform':
            low[i], high[i] = np.log(prior.params[0]), np.log(prior.params[1])
    return low, high


def initial_values(design: RegressorDesign, locs: np.ndarray, model: CovarianceModel,
                   index_map: ObservationIndexMap) -> Dict[str, np.ndarray]:
    """
    Data-driven starting point.

    - range: bounding box extent / 10 (per axis for anisotropic families)
    - scale and noise variance: half the response variance each
    - smoothness: 1
    - beta: OLS on the centered design
    - field: OLS residual averaged per location

    Returns:
        Dict with beta, beta_se, log_cov, log_noise, field (numpy arrays)
    """
    config = get_covariance(model.family)
    y_var = max(float(np.var(design.y)), 1e-8)
    extent = spatial_extent(locs)

    log_cov = [np.log(0.5 * y_var)]
    if config['anisotropic']:
        log_cov += list(np.log(extent / 10.0))
    else:
        log_cov.append(np.log(np.sqrt(np.sum(extent ** 2)) / 10.0))
    if config['has_smoothness']:
        log_cov.append(0.0)
    log_cov = np.asarray(log_cov, dtype=np.float64)

    beta, beta_se, _ = ols_fit(design)
    resid = design.y - design.X @ beta
    field = np.bincount(index_map.obs_to_loc, weights=resid,
                        minlength=index_map.n_locs) / index_map.counts

    return {
        'beta': beta,
        'beta_se': beta_se,
        'log_cov': log_cov,
        'log_noise': np.log(0.5 * y_var),
        'field': field,
    }


def initialize_chain_states(
    design: RegressorDesign,
    locs: np.ndarray,
    model: CovarianceModel,
    index_map: ObservationIndexMap,
    n_chains: int,
    rng_seed: int,
    n_adapt: int = ADAPT_DEFAULTS['n_adapt'],
    jitter_sd: float = ADAPT_DEFAULTS['init_jitter_sd'],
) -> List[ChainState]:
    """
    Build one overdispersed ChainState per chain.

    Every chain starts from initial_values() perturbed independently: log
    parameters get N(0, jitter_sd^2) noise and beta gets noise scaled by its
    OLS standard error. Covariance parameters are clipped into the support of
    their hyperpriors.

    Returns:
        List of ChainState, one per chain, each with its own key and KernelState
    """
    start = initial_values(design, locs, model, index_map)
    low, high = _prior_bounds(model)
    # Stay strictly inside log-uniform bounds
    margin = 1e-3 * np.where(np.isfinite(high - low), high - low, 1.0)

    master_key, init_key = gen_rng_keys(rng_seed)
    chain_keys = random.split(master_key, n_chains)
    jitter_keys = random.split(init_key, n_chains)

    states = []
    for c in range(n_chains):
        k_cov, k_noise, k_beta = random.split(jitter_keys[c], 3)
        log_cov = start['log_cov'] + jitter_sd * np.asarray(random.normal(k_cov, (model.n_params,)))
        log_cov = np.clip(log_cov, low + margin, high - margin)
        log_noise = start['log_noise'] + jitter_sd * float(random.normal(k_noise, ()))
        beta = start['beta'] + start['beta_se'] * np.asarray(random.normal(k_beta, start['beta'].shape))

        log_cov = jnp.asarray(log_cov)
        states.append(ChainState(
            beta=jnp.asarray(beta),
            log_cov=log_cov,
            log_noise=jnp.asarray(np.float64(log_noise)),
            field=jnp.asarray(start['field']),
            key=chain_keys[c],
            iteration=jnp.array(0, dtype=jnp.int32),
            n_nonfinite=jnp.array(0, dtype=jnp.int32),
            kernel=init_kernel_state(log_cov, n_adapt),
        ))
    return states
