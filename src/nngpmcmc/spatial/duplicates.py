"""
Observation/location index maps.

Raw observations may share coordinates. The maps built here connect every raw
observation to its entry in the ordered, duplicate-free LocationSet and back.
The reverse map is stored as a flat arena plus offsets rather than a list of
lists, so bucket i is loc_to_obs[loc_offsets[i]:loc_offsets[i + 1]].
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.spatial import cKDTree


@dataclass(frozen=True)
class ObservationIndexMap:
    """
    Bidirectional mapping between raw observations and ordered locations.

    Fields:
        obs_to_loc: (n_obs,) location index of every raw observation
        loc_to_obs: (n_obs,) raw observation indices grouped by location
        loc_offsets: (n_locs + 1,) bucket boundaries into loc_to_obs
        first_obs: (n_locs,) first raw observation of every location
    """
    obs_to_loc: np.ndarray
    loc_to_obs: np.ndarray
    loc_offsets: np.ndarray
    first_obs: np.ndarray

    @property
    def n_obs(self) -> int:
        return int(self.obs_to_loc.shape[0])

    @property
    def n_locs(self) -> int:
        return int(self.first_obs.shape[0])

    @property
    def counts(self) -> np.ndarray:
        """Number of raw observations at each location."""
        return np.diff(self.loc_offsets)

    def bucket(self, loc: int) -> np.ndarray:
        """Raw observation indices that resolve to location loc."""
        return self.loc_to_obs[self.loc_offsets[loc]:self.loc_offsets[loc + 1]]


def find_duplicates(raw_coords: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Collapse raw coordinates into unique locations.

    Args:
        raw_coords: Observation coordinates (n_obs, d)

    Returns:
        unique_locs: Distinct coordinates (n_unique, d), lexicographically sorted
        inverse: (n_obs,) index of each observation into unique_locs
    """
    unique_locs, inverse = np.unique(np.asarray(raw_coords, dtype=np.float64),
                                     axis=0, return_inverse=True)
    return unique_locs, inverse.reshape(-1)


def build_index_map(raw_coords: np.ndarray, ordered_locs: np.ndarray) -> ObservationIndexMap:
    """
    Match raw observations to an ordered location set.

    Every raw coordinate must coincide exactly with one ordered location.

    Args:
        raw_coords: Observation coordinates (n_obs, d)
        ordered_locs: Duplicate-free locations in maxmin order (n_locs, d)

    Returns:
        ObservationIndexMap

    Raises:
        ValueError: If an observation has no exact match or a location has no observation
    """
    raw_coords = np.asarray(raw_coords, dtype=np.float64)
    ordered_locs = np.asarray(ordered_locs, dtype=np.float64)
    n_locs = ordered_locs.shape[0]

    tree = cKDTree(ordered_locs)
    dist, obs_to_loc = tree.query(raw_coords, k=1)
    unmatched = np.flatnonzero(dist > 0)
    if unmatched.size:
        raise ValueError(
            f"{unmatched.size} observation(s) do not coincide with any ordered location "
            f"(first: observation {unmatched[0]})"
        )
    obs_to_loc = obs_to_loc.astype(np.int64)

    # Stable sort keeps raw order inside each bucket, so the first member is
    # the lowest raw index at that location.
    loc_to_obs = np.argsort(obs_to_loc, kind='stable').astype(np.int64)
    counts = np.bincount(obs_to_loc, minlength=n_locs)
    if np.any(counts == 0):
        raise ValueError(
            f"{int(np.sum(counts == 0))} ordered location(s) have no observation"
        )
    loc_offsets = np.concatenate(([0], np.cumsum(counts))).astype(np.int64)
    first_obs = loc_to_obs[loc_offsets[:-1]]

    return ObservationIndexMap(
        obs_to_loc=obs_to_loc,
        loc_to_obs=loc_to_obs,
        loc_offsets=loc_offsets,
        first_obs=first_obs,
    )


def check_index_map(index_map: ObservationIndexMap) -> None:
    """
    Verify the partition and round-trip invariants of an index map.

    Raises:
        ValueError: If buckets do not partition the observations or the
            forward map does not send first members back to their bucket
    """
    errors = []
    if index_map.loc_offsets[-1] != index_map.n_obs:
        errors.append(
            f"bucket sizes sum to {index_map.loc_offsets[-1]}, expected {index_map.n_obs}"
        )
    if not np.array_equal(np.sort(index_map.loc_to_obs), np.arange(index_map.n_obs)):
        errors.append("reverse map is not a permutation of the observation indices")
    round_trip = index_map.obs_to_loc[index_map.first_obs]
    if not np.array_equal(round_trip, np.arange(index_map.n_locs)):
        errors.append("obs_to_loc[first_obs] is not the identity")
    if errors:
        raise ValueError("Inconsistent observation index map:\n  " + "\n  ".join(errors))
