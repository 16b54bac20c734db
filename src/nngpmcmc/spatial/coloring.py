"""
Greedy coloring of the Markov graph.

Locations sharing a color are never Markov neighbors, so their field values
are conditionally independent given all other colors and can be drawn in one
vectorized step. Colors are processed one after another by the sampler.
"""

from typing import Optional

import numpy as np
import scipy.sparse as sparse


def greedy_coloring(adjacency: sparse.csr_matrix, order: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Sequential greedy coloring.

    Nodes are visited in the given order and each receives the smallest color
    not used by an already colored neighbor. Identical adjacency and order
    always give the same colors.

    Args:
        adjacency: Symmetric CSR adjacency (n, n)
        order: Visit order (defaults to 0..n-1, the maxmin order)

    Returns:
        colors: (n,) int32 color per node, starting at 0
    """
    adjacency = sparse.csr_matrix(adjacency)
    n = adjacency.shape[0]
    if order is None:
        order = np.arange(n)
    indptr, indices = adjacency.indptr, adjacency.indices

    colors = np.full(n, -1, dtype=np.int32)
    # forbidden[c] == node means color c is taken by a neighbor of node
    forbidden = np.full(n + 1, -1, dtype=np.int64)
    for node in order:
        nbr_colors = colors[indices[indptr[node]:indptr[node + 1]]]
        forbidden[nbr_colors[nbr_colors >= 0]] = node
        color = 0
        while forbidden[color] == node:
            color += 1
        colors[node] = color
    return colors


def validate_coloring(adjacency: sparse.spmatrix, colors: np.ndarray) -> bool:
    """True if no edge of adjacency joins two nodes of the same color."""
    coo = sparse.coo_matrix(adjacency)
    return bool(np.all(colors[coo.row] != colors[coo.col]))


def color_groups(colors: np.ndarray) -> np.ndarray:
    """
    Padded index groups, one row per color.

    Rows are padded with n (an out-of-range index) so that gathers can clip and
    scatters can drop padded slots.

    Args:
        colors: (n,) color per node

    Returns:
        groups: (n_colors, max_class_size) node indices, ascending within a row
    """
    n = colors.shape[0]
    n_colors = int(colors.max()) + 1 if n else 0
    sizes = np.bincount(colors, minlength=n_colors)
    groups = np.full((n_colors, int(sizes.max()) if n else 0), n, dtype=np.int64)
    order = np.argsort(colors, kind='stable')
    offsets = np.concatenate(([0], np.cumsum(sizes)))
    for c in range(n_colors):
        members = order[offsets[c]:offsets[c + 1]]
        groups[c, :members.size] = members
    return groups
