"""
JAX Configuration - MUST be imported before any JAX imports.

This module sets environment variables for JAX configuration including:
- Persistent compilation cache directory
- Minimum compile time threshold for caching
- C++ log level for XLA
"""
import logging
import os
from pathlib import Path

logger = logging.getLogger('nngpmcmc')

# Suppress CUDA/XLA C++ warnings (GPU interconnect, NUMA, cuDNN factories)
os.environ.setdefault('TF_CPP_MIN_LOG_LEVEL', '2')

# --- PERSISTENT COMPILATION CACHE ---
# The chunk kernels are recompiled for every new (n_locs, m, n_colors) shape,
# so caching across sessions pays off when the same data set is refit.
_JAX_CACHE_DIR = Path.home() / ".cache" / "jax" / "nngpmcmc_cache"
try:
    _JAX_CACHE_DIR.mkdir(parents=True, exist_ok=True)
except OSError as e:
    logger.debug(f"Persistent compilation cache disabled: cannot create {_JAX_CACHE_DIR} ({e})")
else:
    os.environ.setdefault("JAX_COMPILATION_CACHE_DIR", str(_JAX_CACHE_DIR))
os.environ.setdefault("JAX_PERSISTENT_CACHE_MIN_COMPILE_TIME_SECS", "1.0")
