"""
Record I/O utilities for saving and loading sampler output.

This module provides functions for:
- Saving the Records and Diagnostics of a SamplerRun to a compressed .npz file
- Loading them back into plain numpy arrays and dicts (no JAX needed)
"""

from typing import Any, Dict

import numpy as np
from pathlib import Path

import logging
logger = logging.getLogger('nngpmcmc')


def save_records(filepath: str, sampler_run) -> None:
    """
    Save the records of a SamplerRun to disk.

    Args:
        filepath: Path to save to (.npz file)
        sampler_run: SamplerRun returned by initialize() / run()

    Saves:
        - Per chain: scalar snapshots and their iterations, field snapshots
          and their iterations, acceptance rates per cycle, iteration count,
          wall time, non-finite count
        - Diagnostics: PSRF and MPSRF per cycle, iteration, samples used, stop flag
        - Identifying config: covariance family, monitored names, locations
    """
    out = {
        'n_chains': sampler_run.n_chains,
        'monitored_names': np.asarray(sampler_run.monitored_names),
        'covariance': sampler_run.model.family,
        'locations': np.asarray(sampler_run.locations),
        'config': sampler_run.config,
        'created_at': sampler_run.created_at.isoformat(),
    }

    for c, record in enumerate(sampler_run.records):
        out[f'chain{c}_scalars'] = record.scalar_history()
        out[f'chain{c}_scalar_iterations'] = record.scalar_iteration_history()
        out[f'chain{c}_fields'] = record.field_history()
        out[f'chain{c}_field_iterations'] = record.field_iteration_history()
        out[f'chain{c}_acceptance'] = (np.stack(record.acceptance) if record.acceptance
                                       else np.empty((0, 0)))
        out[f'chain{c}_n_iterations'] = record.n_iterations
        out[f'chain{c}_wall_time'] = record.wall_time
        out[f'chain{c}_n_nonfinite'] = int(sampler_run.chain_states[c].n_nonfinite)

    n_params = len(sampler_run.monitored_names)
    diagnostics = sampler_run.diagnostics
    out['diag_cycle'] = np.asarray([d['cycle'] for d in diagnostics], dtype=np.int64)
    out['diag_iteration'] = np.asarray([d['iteration'] for d in diagnostics], dtype=np.int64)
    out['diag_psrf'] = (np.stack([d['psrf'] for d in diagnostics]) if diagnostics
                        else np.empty((0, n_params)))
    out['diag_mpsrf'] = np.asarray([d['mpsrf'] for d in diagnostics], dtype=np.float64)
    out['diag_n_samples'] = np.asarray([d['n_samples'] for d in diagnostics], dtype=np.int64)
    out['diag_stop'] = np.asarray([d['stop'] for d in diagnostics], dtype=bool)

    filepath = Path(filepath)
    np.savez_compressed(filepath, **out)
    logger.info(f"Records saved to {filepath}")


def load_records(filepath: str) -> Dict[str, Any]:
    """
    Load records saved by save_records().

    Args:
        filepath: Path to the .npz file

    Returns:
        Dict with 'chains' (list of per-chain dicts), 'diagnostics' (list of
        per-cycle dicts) and the identifying config entries

    Raises:
        FileNotFoundError: If the file does not exist
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Records not found: {filepath}")

    # Use context manager to ensure NpzFile is closed after loading
    with np.load(filepath, allow_pickle=True) as data:
        n_chains = int(data['n_chains'])
        chains = []
        for c in range(n_chains):
            chains.append({
                'scalars': data[f'chain{c}_scalars'].copy(),
                'scalar_iterations': data[f'chain{c}_scalar_iterations'].copy(),
                'fields': data[f'chain{c}_fields'].copy(),
                'field_iterations': data[f'chain{c}_field_iterations'].copy(),
                'acceptance': data[f'chain{c}_acceptance'].copy(),
                'n_iterations': int(data[f'chain{c}_n_iterations']),
                'wall_time': float(data[f'chain{c}_wall_time']),
                'n_nonfinite': int(data[f'chain{c}_n_nonfinite']),
            })

        diagnostics = [
            {
                'cycle': int(cycle),
                'iteration': int(iteration),
                'psrf': psrf.copy(),
                'mpsrf': float(mpsrf),
                'n_samples': int(n_samples),
                'stop': bool(stop),
            }
            for cycle, iteration, psrf, mpsrf, n_samples, stop in zip(
                data['diag_cycle'], data['diag_iteration'], data['diag_psrf'],
                data['diag_mpsrf'], data['diag_n_samples'], data['diag_stop'])
        ]

        return {
            'n_chains': n_chains,
            'monitored_names': [str(n) for n in data['monitored_names']],
            'covariance': str(data['covariance']),
            'locations': data['locations'].copy(),
            'config': data['config'].item(),
            'created_at': str(data['created_at']),
            'chains': chains,
            'diagnostics': diagnostics,
        }
