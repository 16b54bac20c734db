"""
Spatial Subpackage - immutable graph structures built once per data set.

- ordering: maxmin ordering of unique locations
- duplicates: observation <-> location index maps
- neighbors: nearest earlier neighbors (NNGP DAG)
- cholesky_pattern: nonzero pattern of the sparse Vecchia factor
- markov: moral graph of the DAG
- coloring: greedy coloring of the moral graph
"""

from .ordering import order_maxmin, check_distinct
from .duplicates import ObservationIndexMap, find_duplicates, build_index_map, check_index_map
from .neighbors import NeighborDAG, find_ordered_neighbors, check_acyclic
from .cholesky_pattern import SparseCholeskyPattern, build_cholesky_pattern
from .markov import build_markov_graph, is_symmetric
from .coloring import greedy_coloring, validate_coloring, color_groups

__all__ = [
    'order_maxmin',
    'check_distinct',
    'ObservationIndexMap',
    'find_duplicates',
    'build_index_map',
    'check_index_map',
    'NeighborDAG',
    'find_ordered_neighbors',
    'check_acyclic',
    'SparseCholeskyPattern',
    'build_cholesky_pattern',
    'build_markov_graph',
    'is_symmetric',
    'greedy_coloring',
    'validate_coloring',
    'color_groups',
]
