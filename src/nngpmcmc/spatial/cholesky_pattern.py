"""
Nonzero pattern of the sparse Vecchia factor.

The factor R satisfies Q = R'R for the approximate precision Q. Row i of R has
a diagonal entry and one entry per populated neighbor of i. Entries are
enumerated row-major, diagonal first, then neighbor slots in order, and other
components address factor values by that position.
"""

from dataclasses import dataclass

import numpy as np

from .neighbors import NeighborDAG


@dataclass(frozen=True)
class SparseCholeskyPattern:
    """
    Coordinates of the nonzeros of R.

    Fields:
        rows: (nnz,) row index of each entry
        cols: (nnz,) column index of each entry
        positions: (nnz,) flat index of each entry in the dense
            (n_locs, m + 1) "self then neighbors" layout
        n_locs: Matrix dimension
    """
    rows: np.ndarray
    cols: np.ndarray
    positions: np.ndarray
    n_locs: int

    @property
    def nnz(self) -> int:
        return int(self.rows.shape[0])


def build_cholesky_pattern(dag: NeighborDAG) -> SparseCholeskyPattern:
    """
    Enumerate the (row, col) pairs of the sparse factor implied by a DAG.

    Args:
        dag: NeighborDAG

    Returns:
        SparseCholeskyPattern with n_locs + (number of populated slots) entries
    """
    full = dag.with_self()
    full_mask = np.concatenate((np.ones((dag.n_locs, 1), dtype=bool), dag.mask), axis=1)

    # Row-major flattening of a (n, m + 1) layout gives the required order
    positions = np.flatnonzero(full_mask.reshape(-1)).astype(np.int64)
    rows = positions // full.shape[1]
    cols = full.reshape(-1)[positions]

    return SparseCholeskyPattern(
        rows=rows.astype(np.int64),
        cols=cols.astype(np.int64),
        positions=positions,
        n_locs=dag.n_locs,
    )
