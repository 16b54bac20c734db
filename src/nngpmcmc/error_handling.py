"""
Error Handling and Validation Utilities for the NNGP Sampler

This module provides the package exception types, validation functions for
initialization inputs and run configuration, and diagnostic tools for the
records produced by the sampler.
"""

from typing import Any, Dict, List

import numpy as np

import logging
logger = logging.getLogger('nngpmcmc')


# ============================================================================
# EXCEPTION TYPES
# ============================================================================

class DegenerateGeometryError(ValueError):
    """Coincident locations reached the ordering or neighbor search.

    Callers are expected to perturb duplicated or degenerate coordinates
    before building the spatial structures.
    """


class RegressorConflictError(ValueError):
    """A regressor column was supplied both as location- and observation-varying."""


class InsufficientChainsError(ValueError):
    """Convergence diagnostics were requested with fewer than two chains."""


class PrecisionMismatchError(RuntimeError):
    """The process-wide JAX x64 flag no longer matches a sampler's chain states."""


class NonFiniteStateWarning(RuntimeWarning):
    """A sampling sub-step produced a non-finite density or draw.

    The offending proposal is rejected (or the previous value kept) and the
    iteration continues; the warning is emitted when such events accumulate.
    """


# ============================================================================
# VALIDATION
# ============================================================================

def validate_init_inputs(coords: np.ndarray, y: np.ndarray, m: int, n_chains: int) -> None:
    """
    Validates raw inputs passed to initialize().

    Args:
        coords: Raw observation coordinates (n_obs, d)
        y: Response values (n_obs,)
        m: Number of nearest neighbors
        n_chains: Number of chains

    Raises:
        ValueError: If any input is invalid (all problems are reported together)
    """
    errors = []

    if coords.ndim != 2:
        errors.append(f"coords must be a 2-D array (n_obs, d), got shape {coords.shape}")
    if y.ndim != 1:
        errors.append(f"y must be a 1-D array, got shape {y.shape}")
    if coords.ndim == 2 and y.ndim == 1 and coords.shape[0] != y.shape[0]:
        errors.append(
            f"coords has {coords.shape[0]} rows but y has {y.shape[0]} values"
        )
    if coords.size and not np.all(np.isfinite(coords)):
        errors.append("coords contain NaN or Inf values")
    if y.size and not np.all(np.isfinite(y)):
        errors.append("y contains NaN or Inf values")
    if m < 1:
        errors.append(f"m must be >= 1, got {m}")
    if n_chains < 1:
        errors.append(f"n_chains must be >= 1, got {n_chains}")

    if errors:
        raise ValueError("Invalid initialization inputs:\n  " + "\n  ".join(errors))


def validate_run_config(run_config: Dict[str, Any]) -> None:
    """
    Validates that a run configuration is sensible.

    Args:
        run_config: Configuration dictionary (after clean_config)

    Raises:
        ValueError: If configuration is invalid
    """
    errors = []

    for key in ('n_cores', 'n_cycles', 'n_iterations_update', 'n_chromatic'):
        if key in run_config and run_config[key] < 1:
            errors.append(f"{key} must be >= 1, got {run_config[key]}")

    if 'burn_in' in run_config:
        burn_in = run_config['burn_in']
        if burn_in < 0 or burn_in > 1:
            errors.append(f"burn_in must be in [0, 1], got {burn_in}")

    if 'field_thinning' in run_config:
        field_thinning = run_config['field_thinning']
        if field_thinning <= 0 or field_thinning > 1:
            errors.append(f"field_thinning must be in (0, 1], got {field_thinning}")

    if 'thinning' in run_config:
        thinning = run_config['thinning']
        if thinning <= 0 or thinning > 1:
            errors.append(f"thinning must be in (0, 1], got {thinning}")

    if 'grb_stop' in run_config:
        grb_stop = run_config['grb_stop']
        if len(grb_stop) != 2:
            errors.append(f"grb_stop must have two elements, got {len(grb_stop)}")
        elif any(threshold < 1 for threshold in grb_stop):
            errors.append(f"grb_stop thresholds must be >= 1, got {tuple(grb_stop)}")

    if errors:
        raise ValueError("Invalid run configuration:\n  " + "\n  ".join(errors))


# ============================================================================
# RECORD DIAGNOSIS
# ============================================================================

def diagnose_chain_issues(histories: List[np.ndarray], nonfinite_counts: List[int],
                          param_names: List[str]) -> Dict[str, Any]:
    """
    Analyzes saved scalar records to identify common issues.

    Args:
        histories: Per-chain arrays of saved scalar snapshots (n_saved, n_params)
        nonfinite_counts: Per-chain cumulative count of rejected non-finite steps
        param_names: Names of the monitored parameters

    Returns:
        diagnostics: Dictionary with issues, warnings, and info
    """
    diagnostics = {
        'issues': [],
        'warnings': [],
        'info': []
    }

    for chain, history in enumerate(histories):
        if history.size == 0:
            diagnostics['warnings'].append(f"Chain {chain} has no saved samples")
            continue

        if not np.all(np.isfinite(history)):
            diagnostics['issues'].append(
                f"Chain {chain} record contains NaN or Inf values - sampler became unstable"
            )

        # A parameter that never moved in a chain makes the GRB ratio undefined
        if history.shape[0] > 1:
            stuck = np.var(history, axis=0) < 1e-14
            for idx in np.flatnonzero(stuck):
                diagnostics['warnings'].append(
                    f"Chain {chain}: parameter '{param_names[idx]}' appears stuck (near-zero variance)"
                )

    for chain, count in enumerate(nonfinite_counts):
        if count > 0:
            diagnostics['warnings'].append(
                f"Chain {chain}: {count} non-finite proposal(s) or draw(s) rejected so far"
            )

    n_saved = [h.shape[0] for h in histories]
    diagnostics['info'].append(f"Saved samples per chain: {n_saved}")
    diagnostics['info'].append(f"Number of chains: {len(histories)}")
    diagnostics['info'].append(f"Number of monitored parameters: {len(param_names)}")

    return diagnostics


def print_diagnostics(diagnostics: Dict[str, Any]) -> None:
    """Pretty-print diagnostics from diagnose_chain_issues."""
    if diagnostics['issues']:
        logger.error("[ERROR] ISSUES:")
        for issue in diagnostics['issues']:
            logger.error(f"  - {issue}")

    if diagnostics['warnings']:
        logger.warning("[WARN] WARNINGS:")
        for warning in diagnostics['warnings']:
            logger.warning(f"  - {warning}")

    if diagnostics['info']:
        logger.info("[INFO] INFO:")
        for info in diagnostics['info']:
            logger.info(f"  - {info}")

    if not diagnostics['issues'] and not diagnostics['warnings']:
        logger.info("[OK] No issues detected")
