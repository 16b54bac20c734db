"""
Nearest earlier neighbors (the NNGP directed acyclic graph).

Row i of the DAG lists up to m locations among {0, ..., i-1} closest to
location i, nearest first. Because every parent precedes its child in the
maxmin order the graph is acyclic, and it defines the sparsity of the Vecchia
factor used by the sampler.

Search strategy:
    - The first rows (few candidates) are brute-forced.
    - Remaining rows query a kd-tree built on the candidate prefix with a
      query size that doubles until every row has m valid earlier neighbors
      and no unreturned point can tie with its m-th neighbor.
      With a maxmin order early locations are spread over the domain, so the
      number of rows needing large queries shrinks quickly.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree

from ..error_handling import DegenerateGeometryError


# Rows with at most this many candidates are brute-forced
BRUTE_FORCE_CANDIDATES = 64


@dataclass(frozen=True)
class NeighborDAG:
    """
    Ordered neighbor lists for every location.

    Fields:
        neighbors: (n_locs, m) neighbor indices, nearest first, -1 when unpopulated
        mask: (n_locs, m) True where the slot holds a neighbor
    """
    neighbors: np.ndarray
    mask: np.ndarray

    @property
    def n_locs(self) -> int:
        return int(self.neighbors.shape[0])

    @property
    def m(self) -> int:
        return int(self.neighbors.shape[1])

    def with_self(self) -> np.ndarray:
        """(n_locs, m + 1) array with each location prepended to its neighbors."""
        own = np.arange(self.n_locs, dtype=self.neighbors.dtype)[:, None]
        return np.concatenate((own, self.neighbors), axis=1)


def _select_nearest(dist: np.ndarray, idx: np.ndarray, valid: np.ndarray, m: int):
    """Keep the m nearest valid candidates per row, ties broken by index."""
    dist = np.where(valid, dist, np.inf)
    order = np.lexsort((idx, dist), axis=-1)[:, :m]
    chosen = np.take_along_axis(idx, order, axis=1)
    chosen_dist = np.take_along_axis(dist, order, axis=1)
    filled = np.isfinite(chosen_dist)
    chosen = np.where(filled, chosen, -1)
    return chosen, chosen_dist, filled


def find_ordered_neighbors(locs: np.ndarray, m: int, n_reference: Optional[int] = None) -> NeighborDAG:
    """
    Find the m nearest earlier neighbors of every location.

    Args:
        locs: Locations in maxmin order (n, d)
        m: Number of neighbors per location
        n_reference: Optional cap; when given, neighbors of every location are
            drawn from the first n_reference locations only

    Returns:
        NeighborDAG with m columns (rows i < m have only i populated slots)

    Raises:
        DegenerateGeometryError: If a location coincides with one of its candidates
    """
    locs = np.asarray(locs, dtype=np.float64)
    n = locs.shape[0]
    if m < 1:
        raise ValueError(f"m must be >= 1, got {m}")
    n_ref = n if n_reference is None else int(min(max(n_reference, 1), n))

    n_cand = np.minimum(np.arange(n), n_ref)
    neighbors = np.full((n, m), -1, dtype=np.int64)
    mask = np.zeros((n, m), dtype=bool)
    min_dist = np.full(n, np.inf)

    # --- Brute force for rows with few candidates ---
    brute_rows = np.flatnonzero(n_cand <= max(BRUTE_FORCE_CANDIDATES, 2 * m))
    for i in brute_rows:
        c = n_cand[i]
        if c == 0:
            continue
        d = np.sqrt(np.sum((locs[:c] - locs[i]) ** 2, axis=1))
        order = np.lexsort((np.arange(c), d))[:m]
        neighbors[i, :order.size] = order
        mask[i, :order.size] = True
        min_dist[i] = d[order[0]]

    # --- kd-tree queries with growing k for the rest ---
    pending = np.setdiff1d(np.arange(n), brute_rows)
    if pending.size:
        tree = cKDTree(locs[:n_ref])
        k = min(n_ref, 2 * (m + 1))
        while pending.size:
            dist, idx = tree.query(locs[pending], k=k)
            dist = dist.reshape(pending.size, -1)
            idx = idx.reshape(pending.size, -1)
            valid = idx < n_cand[pending][:, None]
            chosen, chosen_dist, filled = _select_nearest(dist, idx, valid, m)
            # A candidate tied with the m-th chosen distance may lie beyond the
            # k returned points, so the last returned distance must exceed it
            complete = (filled.sum(axis=1) >= min(m, n_ref)) & (dist[:, -1] > chosen_dist[:, -1])
            done = complete | (k >= n_ref)
            if np.any(done):
                rows = pending[done]
                n_fill = chosen.shape[1]
                neighbors[rows, :n_fill] = chosen[done]
                mask[rows, :n_fill] = filled[done]
                min_dist[rows] = chosen_dist[done, 0]
            pending = pending[~done]
            k = min(n_ref, 2 * k)

    degenerate = np.flatnonzero(min_dist == 0)
    if degenerate.size:
        raise DegenerateGeometryError(
            f"{degenerate.size} location(s) coincide with an earlier location "
            f"(first: location {degenerate[0]}); perturb coordinates first"
        )

    return NeighborDAG(neighbors=neighbors, mask=mask)


def check_acyclic(dag: NeighborDAG) -> bool:
    """True if every populated neighbor index is smaller than its row index."""
    rows = np.broadcast_to(np.arange(dag.n_locs)[:, None], dag.neighbors.shape)
    return bool(np.all(dag.neighbors[dag.mask] < rows[dag.mask]))
