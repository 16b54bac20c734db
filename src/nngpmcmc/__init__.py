"""
nngpmcmc - Bayesian NNGP Spatial Regression Sampler

Public API:
    Sampling:
        initialize - Build spatial structures, design and chain states
        run - Advance all chains cycle by cycle with GRB early stopping
        SamplerRun - Container returned by initialize() and run()
        Record - Per-chain saved samples

    Covariance Families:
        register_covariance - Register a stationary covariance family
        get_covariance - Retrieve a registered family
        list_covariances - List all registered families
        Hyperprior - Prior on one covariance parameter
        CovarianceModel - Family plus hyperpriors

    Diagnostics:
        compute_grb - Univariate Gelman-Rubin PSRF
        compute_mpsrf - Brooks-Gelman multivariate PSRF

    Regressors:
        decenter_coefficients - Map centered coefficients back to raw columns

    Record I/O:
        save_records - Save records and diagnostics to disk
        load_records - Load them back

    Errors:
        DegenerateGeometryError, RegressorConflictError,
        InsufficientChainsError, PrecisionMismatchError, NonFiniteStateWarning

Example:
    import numpy as np
    from nngpmcmc import initialize, run

    coords = np.random.rand(500, 2)
    y = 5.0 + np.sin(6 * coords[:, 0]) + 0.1 * np.random.randn(500)

    sampler = initialize(coords, y, covariance='matern15_isotropic', m=10, n_chains=3)
    sampler = run(sampler, n_cycles=10, n_iterations_update=200)
    print(sampler.diagnostics[-1]['mpsrf'])
"""
# CRITICAL: Import jax_config FIRST to set environment variables before JAX loads
from . import jax_config  # noqa: F401

# Import covariance to register the built-in families
from . import covariance as _covariance  # noqa: F401

from .registry import register_covariance, get_covariance, list_covariances
from .covariance import Hyperprior, CovarianceModel
from .error_handling import (
    DegenerateGeometryError,
    RegressorConflictError,
    InsufficientChainsError,
    PrecisionMismatchError,
    NonFiniteStateWarning,
)
from .regressors import decenter_coefficients
from .checkpoint_io import save_records, load_records

# Main MCMC entry points
from .mcmc import (
    initialize,
    run,
    SamplerRun,
    Record,
    compute_grb,
    compute_mpsrf,
)
