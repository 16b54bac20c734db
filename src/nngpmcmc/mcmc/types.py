"""
MCMC Data Structures and Type Definitions.

This module contains the core data structures used by the sampler:
- SpatialArrays: Device copies of the neighbor graph, factor pattern and color groups
- DesignArrays: Device copies of the response, design and cached cross-products
- KernelState: Per-chain adaptation state of the Metropolis blocks
- ChainState: Everything one chain carries from iteration to iteration
- RunParams: Immutable run parameters for JAX static arguments
- build_spatial_arrays / build_design_arrays: Factory functions
"""

import jax
import jax.numpy as jnp
import numpy as np
from dataclasses import dataclass, fields

from ..regressors import RegressorDesign
from ..spatial import NeighborDAG, SparseCholeskyPattern


def _register_dataclass(cls, static_fields=()):
    """
    Register a frozen dataclass as a JAX pytree.

    Array fields are children (traced); static_fields are auxiliary data and
    must be hashable.
    """
    names = [f.name for f in fields(cls)]
    children_names = [n for n in names if n not in static_fields]

    def flatten(obj):
        children = tuple(getattr(obj, n) for n in children_names)
        aux_data = tuple(getattr(obj, n) for n in static_fields)
        return children, aux_data

    def unflatten(aux_data, children):
        kwargs = dict(zip(children_names, children))
        kwargs.update(zip(static_fields, aux_data))
        return cls(**kwargs)

    jax.tree_util.register_pytree_node(cls, flatten, unflatten)
    return cls


@dataclass(frozen=True)
class SpatialArrays:
    """
    Immutable spatial structures in device form, shared by all chains.

    Padded neighbor slots point at location 0 and are masked out, padded
    color-group slots hold n_locs and are dropped on scatter.
    """
    locs: jnp.ndarray          # (n_locs, d) ordered locations
    nbr: jnp.ndarray           # (n_locs, m) neighbor indices, padding -> 0
    nbr_mask: jnp.ndarray      # (n_locs, m) True where populated
    rows: jnp.ndarray          # (nnz,) factor pattern rows
    cols: jnp.ndarray          # (nnz,) factor pattern columns
    positions: jnp.ndarray     # (nnz,) flat index into the (n_locs, m + 1) layout
    color_groups: jnp.ndarray  # (n_colors, max_class_size)

    n_locs: int
    m: int
    n_colors: int


_register_dataclass(SpatialArrays, static_fields=('n_locs', 'm', 'n_colors'))


@dataclass(frozen=True)
class DesignArrays:
    """Response, design matrices and cached cross-products in device form."""
    y: jnp.ndarray             # (n_obs,)
    X: jnp.ndarray             # (n_obs, p) centered design, intercept first
    X_loc: jnp.ndarray         # (n_locs, q) location-level design
    obs_to_loc: jnp.ndarray    # (n_obs,)
    loc_counts: jnp.ndarray    # (n_locs,) observations per location
    XtX: jnp.ndarray           # (p, p)
    XtX_chol: jnp.ndarray      # (p, p) lower Cholesky factor of X'X

    n_obs: int
    n_coefs: int
    n_loc_coefs: int


_register_dataclass(DesignArrays, static_fields=('n_obs', 'n_coefs', 'n_loc_coefs'))


@dataclass(frozen=True)
class KernelState:
    """
    Adaptation state of the Metropolis blocks of one chain.

    Owned by exactly one chain. Once `adapting` is cleared the step sizes
    and proposal covariance never change again.
    """
    log_step: jnp.ndarray      # (N_BLOCKS,) log step size per block
    emp_mean: jnp.ndarray      # (k,) running mean of the covariance parameters
    emp_cov: jnp.ndarray       # (k, k) running covariance of the covariance parameters
    n_seen: jnp.ndarray        # () samples folded into emp_mean / emp_cov
    n_accept: jnp.ndarray      # (N_BLOCKS,) accepted proposals
    n_attempt: jnp.ndarray     # (N_BLOCKS,) attempted proposals
    adapting: jnp.ndarray      # () bool
    n_adapt: jnp.ndarray       # () adaptation window length


_register_dataclass(KernelState)


@dataclass(frozen=True)
class ChainState:
    """
    Full state of one chain.

    beta is on the centered design (intercept first); covariance parameters
    and the noise variance are on the log scale.
    """
    beta: jnp.ndarray          # (p,)
    log_cov: jnp.ndarray       # (k,)
    log_noise: jnp.ndarray     # () log tau^2
    field: jnp.ndarray         # (n_locs,)
    key: jnp.ndarray           # PRNG key
    iteration: jnp.ndarray     # () iterations completed
    n_nonfinite: jnp.ndarray   # () rejected non-finite proposals or draws
    kernel: KernelState


_register_dataclass(ChainState)


@dataclass(frozen=True)
class RunParams:
    """
    Immutable run parameters for JAX static argument compatibility.

    This frozen dataclass allows run parameters to be passed as static
    arguments to JIT-compiled functions, enabling cross-session caching.
    """
    N_ITERATIONS: int      # Iterations per compiled chunk
    N_CHROMATIC: int       # Field sweeps per iteration
    ANCILLARY: bool        # Interweave ancillary / centered sub-steps
    THINNING: float        # Save probability for the scalar record
    FIELD_THINNING: float  # Save probability for the field record


def build_spatial_arrays(locs: np.ndarray, dag: NeighborDAG, pattern: SparseCholeskyPattern,
                         color_groups: np.ndarray) -> SpatialArrays:
    """
    Build SpatialArrays from the host-side graph structures.

    Args:
        locs: Ordered locations (n_locs, d)
        dag: NeighborDAG
        pattern: SparseCholeskyPattern of the DAG
        color_groups: Padded color groups from spatial.color_groups

    Returns:
        SpatialArrays ready for the sampling kernels
    """
    return SpatialArrays(
        locs=jnp.asarray(locs),
        nbr=jnp.asarray(np.where(dag.mask, dag.neighbors, 0), dtype=jnp.int32),
        nbr_mask=jnp.asarray(dag.mask),
        rows=jnp.asarray(pattern.rows, dtype=jnp.int32),
        cols=jnp.asarray(pattern.cols, dtype=jnp.int32),
        positions=jnp.asarray(pattern.positions, dtype=jnp.int32),
        color_groups=jnp.asarray(color_groups, dtype=jnp.int32),
        n_locs=dag.n_locs,
        m=dag.m,
        n_colors=int(color_groups.shape[0]),
    )


def build_design_arrays(design: RegressorDesign, obs_to_loc: np.ndarray) -> DesignArrays:
    """Build DesignArrays from a RegressorDesign and the forward index map."""
    return DesignArrays(
        y=jnp.asarray(design.y),
        X=jnp.asarray(design.X),
        X_loc=jnp.asarray(design.X_loc),
        obs_to_loc=jnp.asarray(obs_to_loc, dtype=jnp.int32),
        loc_counts=jnp.asarray(design.loc_counts),
        XtX=jnp.asarray(design.XtX),
        XtX_chol=jnp.asarray(design.XtX_chol),
        n_obs=int(design.X.shape[0]),
        n_coefs=design.n_coefs,
        n_loc_coefs=1 + design.n_loc_cols,
    )
