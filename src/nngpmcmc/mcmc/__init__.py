"""
MCMC Subpackage - Core NNGP sampling implementation.

This package contains the sampler:
- backend: initialize() / run() orchestration across chains and cycles
- config: Precision, RNG keys and chain initialization
- adaptation: Robbins-Monro step sizes and adaptive Metropolis covariance
- vecchia: Sparse Vecchia factor algebra
- sampling: Chromatic field, covariance, regression and noise updates
- scan: Compiled chunk kernels with in-scan thinning
- diagnostics: Gelman-Rubin-Brooks diagnostics and stopping rule
- types: Core data structures (SpatialArrays, DesignArrays, ChainState, RunParams)
- utils: Run config defaults
"""

# Import types first (needed by other modules)
from .types import (
    SpatialArrays,
    DesignArrays,
    KernelState,
    ChainState,
    RunParams,
    build_spatial_arrays,
    build_design_arrays,
)

# Import main entry points
from .backend import Record, SamplerRun, initialize, run

# Import commonly used functions
from .config import check_precision, configure_precision, gen_rng_keys, initialize_chain_states
from .diagnostics import compute_grb, compute_mpsrf, should_stop, stack_histories

__all__ = [
    # Main entry points
    'initialize',
    'run',
    'Record',
    'SamplerRun',
    # Types
    'SpatialArrays',
    'DesignArrays',
    'KernelState',
    'ChainState',
    'RunParams',
    'build_spatial_arrays',
    'build_design_arrays',
    # Config
    'check_precision',
    'configure_precision',
    'gen_rng_keys',
    'initialize_chain_states',
    # Diagnostics
    'compute_grb',
    'compute_mpsrf',
    'should_stop',
    'stack_histories',
]
