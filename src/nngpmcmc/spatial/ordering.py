"""
Maxmin ordering of spatial locations.

Each placed location maximizes its minimum distance to the locations placed
before it. The search keeps a lazy max-heap of candidate minimum distances and
refreshes only the points that fall inside a kd-tree ball around the newly
placed point, which keeps the greedy ordering far from quadratic on large,
well-spread location sets.
"""

import heapq

import numpy as np
from scipy.spatial import cKDTree

from ..error_handling import DegenerateGeometryError


def check_distinct(locs: np.ndarray) -> None:
    """Raise DegenerateGeometryError if any two rows of locs coincide."""
    n_unique = np.unique(locs, axis=0).shape[0]
    if n_unique != locs.shape[0]:
        raise DegenerateGeometryError(
            f"{locs.shape[0] - n_unique} duplicated location(s) reached the maxmin ordering; "
            f"deduplicate or perturb coordinates first"
        )


def order_maxmin(locs: np.ndarray) -> np.ndarray:
    """
    Compute a maxmin ordering of distinct locations.

    The first location is the one closest to the centroid. Ties in the
    minimum distance are broken by the lowest input index, so the ordering
    is deterministic.

    Args:
        locs: Distinct coordinates (n, d)

    Returns:
        order: Permutation (n,) such that locs[order] is in maxmin order

    Raises:
        DegenerateGeometryError: If two locations coincide
    """
    locs = np.asarray(locs, dtype=np.float64)
    n = locs.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    check_distinct(locs)

    tree = cKDTree(locs)
    centroid = locs.mean(axis=0)
    first = int(np.argmin(np.sum((locs - centroid) ** 2, axis=1)))

    min_dist = np.sqrt(np.sum((locs - locs[first]) ** 2, axis=1))
    placed = np.zeros(n, dtype=bool)
    placed[first] = True

    order = np.empty(n, dtype=np.int64)
    order[0] = first

    # Heap entries are (-min_dist, index); stale entries are skipped on pop
    heap = [(-min_dist[i], i) for i in range(n) if i != first]
    heapq.heapify(heap)

    for k in range(1, n):
        while True:
            neg_d, idx = heapq.heappop(heap)
            if not placed[idx] and -neg_d == min_dist[idx]:
                break
        placed[idx] = True
        order[k] = idx
        radius = min_dist[idx]

        # Only points closer to idx than their current minimum can change,
        # and every current minimum is at most radius.
        nearby = np.asarray(tree.query_ball_point(locs[idx], r=radius), dtype=np.int64)
        if nearby.size == 0:
            continue
        nearby = nearby[~placed[nearby]]
        d_new = np.sqrt(np.sum((locs[nearby] - locs[idx]) ** 2, axis=1))
        improved = d_new < min_dist[nearby]
        for j, d in zip(nearby[improved], d_new[improved]):
            min_dist[j] = d
            heapq.heappush(heap, (-d, int(j)))

    return order
