"""
MCMC Backend - Main Entry Points.

This module provides initialize() and run(). The implementation is split
across several modules for maintainability:

- types: Data structures (SpatialArrays, DesignArrays, ChainState, RunParams)
- config: Precision, keys and chain initialization
- adaptation: Step size and proposal covariance adaptation
- vecchia: Sparse factor algebra
- sampling: Gibbs/Metropolis update steps
- scan: Compiled chunk kernels
- diagnostics: Gelman-Rubin-Brooks diagnostics and stopping rule
"""

import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import jax
import numpy as np
import scipy.sparse as sparse

from ..covariance import CovarianceModel, build_covariance_model
from ..error_handling import (
    NonFiniteStateWarning,
    diagnose_chain_issues,
    print_diagnostics,
    validate_init_inputs,
    validate_run_config,
)
from ..regressors import RegressorDesign, preprocess_regressors
from ..settings import ADAPT_DEFAULTS, N_BLOCKS
from ..spatial import (
    NeighborDAG,
    ObservationIndexMap,
    SparseCholeskyPattern,
    build_cholesky_pattern,
    build_index_map,
    build_markov_graph,
    color_groups,
    find_duplicates,
    find_ordered_neighbors,
    greedy_coloring,
    order_maxmin,
)
from .config import build_run_params, check_precision, configure_precision, initialize_chain_states
from .diagnostics import (
    compute_grb,
    compute_mpsrf,
    print_acceptance_summary,
    print_grb_summary,
    should_stop,
    stack_histories,
)
from .scan import chunk_lengths, get_chunk_kernel
from .types import ChainState, DesignArrays, SpatialArrays, build_design_arrays, build_spatial_arrays
from .utils import clean_config

import logging
logger = logging.getLogger('nngpmcmc')

# Public API for this module
__all__ = [
    'Record',
    'SamplerRun',
    'initialize',
    'run',
]


# =============================================================================
# CONTAINERS
# =============================================================================

@dataclass
class Record:
    """
    Append-only samples of one chain.

    Scalar snapshots hold the monitored vector [log_cov, log_noise, beta];
    field snapshots hold the latent field in location order. Both are kept
    as per-chunk blocks and concatenated on demand.
    """
    n_params: int
    n_locs: int
    scalars: List[np.ndarray] = field(default_factory=list)
    scalar_iterations: List[np.ndarray] = field(default_factory=list)
    fields: List[np.ndarray] = field(default_factory=list)
    field_iterations: List[np.ndarray] = field(default_factory=list)
    acceptance: List[np.ndarray] = field(default_factory=list)
    n_iterations: int = 0
    wall_time: float = 0.0

    def scalar_history(self) -> np.ndarray:
        """(n_saved, n_params) saved scalar snapshots."""
        if not self.scalars:
            return np.empty((0, self.n_params))
        return np.concatenate(self.scalars, axis=0)

    def scalar_iteration_history(self) -> np.ndarray:
        if not self.scalar_iterations:
            return np.empty(0, dtype=np.int64)
        return np.concatenate(self.scalar_iterations)

    def field_history(self) -> np.ndarray:
        """(n_saved, n_locs) saved field snapshots."""
        if not self.fields:
            return np.empty((0, self.n_locs))
        return np.concatenate(self.fields, axis=0)

    def field_iteration_history(self) -> np.ndarray:
        if not self.field_iterations:
            return np.empty(0, dtype=np.int64)
        return np.concatenate(self.field_iterations)


@dataclass
class SamplerRun:
    """
    Everything initialize() builds and run() advances.

    Spatial structures, the design and the covariance model are built once
    and never mutated; chain_states, records and diagnostics change during runs.
    """
    locations: np.ndarray
    index_map: ObservationIndexMap
    dag: NeighborDAG
    pattern: SparseCholeskyPattern
    adjacency: sparse.csr_matrix
    colors: np.ndarray
    design: RegressorDesign
    model: CovarianceModel
    spatial_arrays: SpatialArrays
    design_arrays: DesignArrays
    chain_states: List[ChainState]
    records: List[Record]
    monitored_names: List[str]
    config: Dict[str, Any]
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def n_chains(self) -> int:
        return len(self.chain_states)

    @property
    def n_locs(self) -> int:
        return int(self.locations.shape[0])

    @property
    def converged(self) -> bool:
        return bool(self.diagnostics) and bool(self.diagnostics[-1]['stop'])


# =============================================================================
# INITIALIZE
# =============================================================================

def initialize(
    coords,
    y,
    X_locs=None,
    X_obs=None,
    covariance: str = 'exponential_isotropic',
    m: int = 10,
    n_reference: Optional[int] = None,
    seed: int = 1,
    n_chains: int = 2,
    hyperpriors: Optional[Dict[str, Any]] = None,
    use_double: bool = True,
    n_adapt: int = ADAPT_DEFAULTS['n_adapt'],
) -> SamplerRun:
    """
    Build the spatial structures, design and chain states of a new sampler.

    Args:
        coords: Observation coordinates (n_obs, d); duplicated rows are allowed
        y: Response (n_obs,)
        X_locs: Location-varying regressors (DataFrame, dict or array), optional
        X_obs: Observation-varying regressors, optional
        covariance: Registered covariance family name
        m: Number of nearest neighbors (capped at n_locs - 1)
        n_reference: Optional cap on the candidate neighbor set
        seed: RNG seed
        n_chains: Number of chains
        hyperpriors: Optional {param_name: Hyperprior} overrides; the key
            'noise_variance' takes an inverse-gamma (shape, rate) pair
        use_double: Enable 64-bit JAX
        n_adapt: Adaptation window in iterations

    Returns:
        SamplerRun with empty records and diagnostics

    Raises:
        ValueError: Invalid inputs (including fewer than 2 unique locations)
        DegenerateGeometryError: Coincident locations in ordering or neighbor search
        RegressorConflictError: A regressor column in both roles
        KeyError: Unknown covariance family or hyperprior name
        numpy.linalg.LinAlgError: Rank-deficient design
    """
    coords = np.asarray(coords, dtype=np.float64)
    if coords.ndim == 1:
        coords = coords[:, None]
    y = np.asarray(y, dtype=np.float64)
    validate_init_inputs(coords, y, m, n_chains)
    configure_precision(use_double)

    start = time.perf_counter()

    # --- Spatial structures ---
    unique_locs, _ = find_duplicates(coords)
    n_locs = unique_locs.shape[0]
    if n_locs < 2:
        raise ValueError(f"At least 2 unique locations are required, got {n_locs}")
    locations = unique_locs[order_maxmin(unique_locs)]
    index_map = build_index_map(coords, locations)

    m_eff = min(m, n_locs - 1)
    if m_eff < m:
        logger.info(f"m reduced from {m} to {m_eff} (only {n_locs} unique locations)")
    dag = find_ordered_neighbors(locations, m_eff, n_reference)
    pattern = build_cholesky_pattern(dag)
    adjacency = build_markov_graph(dag)
    colors = greedy_coloring(adjacency)
    groups = color_groups(colors)

    # --- Regression design and covariance model ---
    design = preprocess_regressors(y, index_map.obs_to_loc, index_map.first_obs, X_locs, X_obs)
    overrides = dict(hyperpriors or {})
    noise_prior = overrides.pop('noise_variance', None)
    model = build_covariance_model(covariance, locations, float(np.var(y)), overrides, noise_prior)

    chain_states = initialize_chain_states(design, locations, model, index_map,
                                           n_chains, seed, n_adapt)
    monitored_names = list(model.param_names) + ['log_noise_variance'] + list(design.names)

    logger.info(
        f"Initialized {n_chains} chain(s): {index_map.n_obs} observations at {n_locs} locations, "
        f"m={m_eff}, {pattern.nnz} factor entries, {groups.shape[0]} colors, "
        f"covariance '{covariance}' ({time.perf_counter() - start:.2f}s)"
    )

    return SamplerRun(
        locations=locations,
        index_map=index_map,
        dag=dag,
        pattern=pattern,
        adjacency=adjacency,
        colors=colors,
        design=design,
        model=model,
        spatial_arrays=build_spatial_arrays(locations, dag, pattern, groups),
        design_arrays=build_design_arrays(design, index_map.obs_to_loc),
        chain_states=chain_states,
        records=[Record(n_params=len(monitored_names), n_locs=n_locs) for _ in range(n_chains)],
        monitored_names=monitored_names,
        config={
            'covariance': covariance,
            'm': m_eff,
            'n_reference': n_reference,
            'seed': seed,
            'n_chains': n_chains,
            'use_double': use_double,
            'n_adapt': n_adapt,
        },
    )


# =============================================================================
# RUN HELPERS
# =============================================================================

def _advance_chain(state: ChainState, n_iterations: int, spatial: SpatialArrays,
                   design: DesignArrays, model: CovarianceModel, run_config: Dict[str, Any]):
    """
    Advance one chain and pull the thinned outputs to the host.

    Runs in a worker thread; the compiled kernels release the GIL.

    Returns:
        final_state, dict of host arrays for the Record
    """
    start = time.perf_counter()
    scalars, scalar_iters, fields, field_iters = [], [], [], []
    n_accept = np.zeros(N_BLOCKS)
    n_attempt = np.zeros(N_BLOCKS)

    for length in chunk_lengths(n_iterations):
        kernel = get_chunk_kernel(model, build_run_params(dict(run_config), length))
        state, outputs = kernel(state, spatial, design)
        monitored, field_draws, save_scalar, save_field, iterations, accepted, attempted = \
            jax.device_get(outputs)
        save_scalar = np.asarray(save_scalar, dtype=bool)
        save_field = np.asarray(save_field, dtype=bool)
        scalars.append(np.asarray(monitored)[save_scalar])
        scalar_iters.append(np.asarray(iterations)[save_scalar])
        fields.append(np.asarray(field_draws)[save_field])
        field_iters.append(np.asarray(iterations)[save_field])
        n_accept += np.sum(accepted, axis=0)
        n_attempt += np.sum(attempted, axis=0)

    jax.block_until_ready(state)
    with np.errstate(invalid='ignore', divide='ignore'):
        acceptance = np.where(n_attempt > 0, n_accept / n_attempt, np.nan)

    return state, {
        'scalars': np.concatenate(scalars, axis=0),
        'scalar_iterations': np.concatenate(scalar_iters),
        'fields': np.concatenate(fields, axis=0),
        'field_iterations': np.concatenate(field_iters),
        'acceptance': acceptance,
        'wall_time': time.perf_counter() - start,
    }


def _compute_cycle_diagnostics(sampler_run: SamplerRun, cycle: int, burn_in: float,
                               grb_stop, nonfinite: List[int]) -> Dict[str, Any]:
    """Diagnostics entry for the end of one cycle."""
    histories = [rec.scalar_history() for rec in sampler_run.records]
    n_params = len(sampler_run.monitored_names)
    entry = {
        'cycle': cycle,
        'iteration': sampler_run.records[0].n_iterations,
        'psrf': np.full(n_params, np.nan),
        'mpsrf': float('nan'),
        'n_samples': 0,
        'stop': False,
        'nonfinite': list(nonfinite),
    }

    if sampler_run.n_chains < 2:
        return entry
    if min(h.shape[0] for h in histories) == 0:
        return entry

    stacked = stack_histories(histories, burn_in)
    entry['n_samples'] = int(stacked.shape[0])
    entry['psrf'] = compute_grb(stacked)
    entry['mpsrf'] = compute_mpsrf(stacked)
    entry['stop'] = should_stop(entry['mpsrf'], entry['psrf'], grb_stop)
    return entry


# =============================================================================
# RUN
# =============================================================================

def run(
    sampler_run: SamplerRun,
    n_cores: int = 1,
    n_cycles: int = 5,
    n_iterations_update: int = 100,
    burn_in: float = 0.5,
    field_thinning: float = 0.05,
    thinning: float = 1.0,
    grb_stop=(1.01, 1.03),
    ancillary: bool = True,
    n_chromatic: int = 5,
) -> SamplerRun:
    """
    Advance every chain cycle by cycle until convergence or n_cycles.

    Each cycle runs n_iterations_update iterations per chain on a pool of
    min(n_cores, n_chains) threads, appends the thinned samples to the
    Records, then computes Gelman-Rubin-Brooks diagnostics on the saved
    scalar records (after dropping the first burn_in fraction). Sampling
    stops early when MPSRF < grb_stop[0] or every PSRF < grb_stop[1];
    grb_stop == (1, 1) runs exactly n_cycles cycles.

    Returns:
        The same SamplerRun, mutated
    """
    run_config = clean_config({
        'n_cores': n_cores,
        'n_cycles': n_cycles,
        'n_iterations_update': n_iterations_update,
        'burn_in': burn_in,
        'field_thinning': field_thinning,
        'thinning': thinning,
        'grb_stop': grb_stop,
        'ancillary': ancillary,
        'n_chromatic': n_chromatic,
    })
    validate_run_config(run_config)
    check_precision(sampler_run.config['use_double'], sampler_run.chain_states)

    n_chains = sampler_run.n_chains
    n_workers = min(run_config['n_cores'], n_chains)
    if n_chains < 2:
        logger.warning("Gelman-Rubin diagnostics need at least 2 chains; early stopping disabled")

    logger.info(
        f"Starting sampling at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}: "
        f"{n_chains} chain(s) on {n_workers} worker(s), up to {run_config['n_cycles']} cycle(s) "
        f"of {run_config['n_iterations_update']} iterations (JAX backend: {jax.default_backend()})"
    )
    run_start = time.perf_counter()

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        for _ in range(run_config['n_cycles']):
            cycle = len(sampler_run.diagnostics)
            previous_nonfinite = [int(s.n_nonfinite) for s in sampler_run.chain_states]

            futures = [
                executor.submit(_advance_chain, state, run_config['n_iterations_update'],
                                sampler_run.spatial_arrays, sampler_run.design_arrays,
                                sampler_run.model, run_config)
                for state in sampler_run.chain_states
            ]
            results = [f.result() for f in futures]

            for c, (state, out) in enumerate(results):
                sampler_run.chain_states[c] = state
                record = sampler_run.records[c]
                record.scalars.append(out['scalars'])
                record.scalar_iterations.append(out['scalar_iterations'])
                record.fields.append(out['fields'])
                record.field_iterations.append(out['field_iterations'])
                record.acceptance.append(out['acceptance'])
                record.n_iterations += run_config['n_iterations_update']
                record.wall_time += out['wall_time']

            nonfinite = [int(s.n_nonfinite) for s in sampler_run.chain_states]
            for c, (before, after) in enumerate(zip(previous_nonfinite, nonfinite)):
                if after > before:
                    message = (f"Chain {c}: {after - before} non-finite proposal(s) or draw(s) "
                               f"rejected in cycle {cycle} ({after} total)")
                    warnings.warn(message, NonFiniteStateWarning)
                    logger.warning(message)

            entry = _compute_cycle_diagnostics(sampler_run, cycle, run_config['burn_in'],
                                               run_config['grb_stop'], nonfinite)
            sampler_run.diagnostics.append(entry)
            print_grb_summary(entry, sampler_run.monitored_names)
            print_acceptance_summary([rec.acceptance[-1] for rec in sampler_run.records])

            if entry['stop']:
                break

    wall_time = time.perf_counter() - run_start
    logger.info(f"Sampling finished: total wall time {timedelta(seconds=int(wall_time))} ({wall_time:.2f}s)")

    issues = diagnose_chain_issues(
        [rec.scalar_history() for rec in sampler_run.records],
        [int(s.n_nonfinite) for s in sampler_run.chain_states],
        sampler_run.monitored_names,
    )
    print_diagnostics(issues)

    return sampler_run
