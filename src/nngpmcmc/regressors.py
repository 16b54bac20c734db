"""
Regressor preprocessing.

Regressors come in two slots:
    - location-varying (X_locs): constant within a location. These get the
      interweaved (centered/non-centered) coefficient update, which keeps
      spatially smooth covariates from getting confounded with the field.
    - observation-varying (X_obs): may change between observations at the
      same location; updated only in the non-centered parametrization.

All columns are centered. The design is [1, X_locs, X_obs], and the cross
products needed by the Gaussian coefficient update are cached here so the
sampler never recomputes them.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import numpy as np
import pandas as pd

from .error_handling import RegressorConflictError


@dataclass(frozen=True)
class RegressorDesign:
    """
    Centered design matrices and cached cross-products.

    Fields:
        X: (n_obs, p) design, column 0 is the intercept
        X_loc: (n_locs, 1 + p_loc) location-level design (intercept + location columns)
        names: Column names of X, 'intercept' first
        n_loc_cols: Number of location-varying columns (excluding intercept)
        means: (p,) centering means (0 for the intercept)
        XtX: (p, p) X'X
        XtX_chol: (p, p) lower Cholesky factor of X'X
        Xty: (p,) X'y
        y: (n_obs,) response
        loc_counts: (n_locs,) observations per location
    """
    X: np.ndarray
    X_loc: np.ndarray
    names: Tuple[str, ...]
    n_loc_cols: int
    means: np.ndarray
    XtX: np.ndarray
    XtX_chol: np.ndarray
    Xty: np.ndarray
    y: np.ndarray
    loc_counts: np.ndarray

    @property
    def n_coefs(self) -> int:
        return int(self.X.shape[1])

    @property
    def loc_coef_indices(self) -> np.ndarray:
        """Indices of beta that are location-level (intercept and X_locs columns)."""
        return np.arange(1 + self.n_loc_cols)


def _as_table(table: Any, prefix: str, n_obs: int) -> Tuple[List[str], np.ndarray]:
    """Convert a DataFrame, mapping, or 2-D array into (names, float matrix)."""
    if table is None:
        return [], np.zeros((n_obs, 0))
    if isinstance(table, pd.DataFrame):
        frame = table
    elif isinstance(table, dict):
        frame = pd.DataFrame(table)
    else:
        values = np.asarray(table, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, None]
        frame = pd.DataFrame(values, columns=[f"{prefix}{k}" for k in range(values.shape[1])])

    if frame.shape[0] != n_obs:
        raise ValueError(f"Regressor table has {frame.shape[0]} rows, expected {n_obs}")
    names = [str(c) for c in frame.columns]
    values = frame.to_numpy(dtype=np.float64)
    if values.size and not np.all(np.isfinite(values)):
        raise ValueError("Regressor tables must not contain NaN or Inf values")
    return names, values


def preprocess_regressors(
    y: np.ndarray,
    obs_to_loc: np.ndarray,
    first_obs: np.ndarray,
    X_locs: Optional[Any] = None,
    X_obs: Optional[Any] = None,
) -> RegressorDesign:
    """
    Split, check, center, and cross-tabulate the regressors.

    Args:
        y: Response (n_obs,)
        obs_to_loc: Forward index map (n_obs,)
        first_obs: First observation of every location (n_locs,)
        X_locs: Location-varying regressors (DataFrame, dict, or array), optional
        X_obs: Observation-varying regressors, optional

    Returns:
        RegressorDesign

    Raises:
        RegressorConflictError: If a column name appears in both tables
        ValueError: If a location-varying column changes within a location
        numpy.linalg.LinAlgError: If the design is rank deficient
    """
    y = np.asarray(y, dtype=np.float64)
    n_obs = y.shape[0]
    loc_names, loc_values = _as_table(X_locs, 'X_locs_', n_obs)
    obs_names, obs_values = _as_table(X_obs, 'X_obs_', n_obs)

    conflicts = sorted(set(loc_names) & set(obs_names))
    if conflicts:
        raise RegressorConflictError(
            f"Regressor column(s) {conflicts} supplied as both location-varying and "
            f"observation-varying; pass each column in exactly one slot"
        )

    if loc_values.shape[1]:
        per_loc = loc_values[first_obs][obs_to_loc]
        varying = np.flatnonzero(np.any(per_loc != loc_values, axis=0))
        if varying.size:
            bad = [loc_names[k] for k in varying]
            raise ValueError(
                f"Location-varying regressor(s) {bad} change within a location; "
                f"pass them as observation-varying instead"
            )

    raw = np.concatenate((loc_values, obs_values), axis=1)
    col_means = raw.mean(axis=0) if raw.shape[1] else np.zeros(0)
    centered = raw - col_means

    X = np.concatenate((np.ones((n_obs, 1)), centered), axis=1)
    n_loc_cols = loc_values.shape[1]
    X_loc = X[first_obs, :1 + n_loc_cols]

    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise np.linalg.LinAlgError(
            f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns); "
            f"remove collinear regressors"
        )

    XtX = X.T @ X
    XtX_chol = np.linalg.cholesky(XtX)

    return RegressorDesign(
        X=X,
        X_loc=X_loc,
        names=tuple(['intercept'] + loc_names + obs_names),
        n_loc_cols=n_loc_cols,
        means=np.concatenate(([0.0], col_means)),
        XtX=XtX,
        XtX_chol=XtX_chol,
        Xty=X.T @ y,
        y=y,
        loc_counts=np.bincount(obs_to_loc, minlength=first_obs.shape[0]).astype(np.float64),
    )


def ols_fit(design: RegressorDesign) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Ordinary least squares on the centered design.

    Returns:
        beta: (p,) coefficients
        std_err: (p,) standard errors
        resid_var: Residual variance
    """
    beta = np.linalg.solve(design.XtX, design.Xty)
    resid = design.y - design.X @ beta
    dof = max(design.X.shape[0] - design.X.shape[1], 1)
    resid_var = float(resid @ resid / dof)
    std_err = np.sqrt(resid_var * np.diag(np.linalg.inv(design.XtX)))
    return beta, std_err, resid_var


def decenter_coefficients(design: RegressorDesign, beta: np.ndarray) -> np.ndarray:
    """
    Map coefficients fitted on centered columns back to the raw columns.

    Works on a single vector (p,) or a stack of samples (..., p). Slopes are
    unchanged; the intercept absorbs the centering shift.
    """
    beta = np.asarray(beta, dtype=np.float64)
    out = beta.copy()
    out[..., 0] = beta[..., 0] - np.sum(beta[..., 1:] * design.means[1:], axis=-1)
    return out
