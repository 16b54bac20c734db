"""
Moral graph of the NNGP DAG.

The Gaussian Markov random field induced by the Vecchia factor connects each
location with its parents, its children, and every co-parent (locations that
share a child). The result is stored as a symmetric 0/1 CSR matrix without
self-loops.
"""

import numpy as np
import scipy.sparse as sparse

from .neighbors import NeighborDAG


def build_markov_graph(dag: NeighborDAG) -> sparse.csr_matrix:
    """
    Moralize a neighbor DAG.

    Args:
        dag: NeighborDAG

    Returns:
        adjacency: (n_locs, n_locs) symmetric CSR matrix with unit entries
    """
    n, m = dag.n_locs, dag.m
    nb, mask = dag.neighbors, dag.mask

    # Parent-child edges
    child = np.broadcast_to(np.arange(n)[:, None], nb.shape)
    edge_i = [child[mask]]
    edge_j = [nb[mask]]

    # Co-parent edges: every pair of populated slots in the same row
    slot_a, slot_b = np.triu_indices(m, k=1)
    if slot_a.size:
        pair_mask = mask[:, slot_a] & mask[:, slot_b]
        edge_i.append(nb[:, slot_a][pair_mask])
        edge_j.append(nb[:, slot_b][pair_mask])

    i = np.concatenate(edge_i)
    j = np.concatenate(edge_j)
    both_i = np.concatenate((i, j))
    both_j = np.concatenate((j, i))
    off_diagonal = both_i != both_j

    adjacency = sparse.coo_matrix(
        (np.ones(int(off_diagonal.sum()), dtype=np.int32),
         (both_i[off_diagonal], both_j[off_diagonal])),
        shape=(n, n),
    ).tocsr()
    # Duplicated pairs were summed by the CSR conversion
    adjacency.data[:] = 1
    adjacency.sort_indices()
    return adjacency


def is_symmetric(adjacency: sparse.spmatrix) -> bool:
    """True if the sparsity pattern of adjacency is symmetric."""
    diff = (adjacency != adjacency.T)
    return diff.nnz == 0
