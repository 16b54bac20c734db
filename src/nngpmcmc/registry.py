"""
Covariance Family Registration System

This module provides a registry for stationary covariance families used by the
NNGP sampler. Built-in families are registered by nngpmcmc.covariance on import,
and user code may add its own via register_covariance(); the sampler retrieves
them via get_covariance().

Example usage:
    from nngpmcmc import register_covariance

    def my_kernel(x1, x2, log_cov):
        # x1, x2: broadcastable (..., d) coordinates; log_cov: log parameters
        ...

    register_covariance('my_family', {
        'kernel': my_kernel,
        'param_names': lambda d: ['log_scale', 'log_range'],
        # optional:
        'has_smoothness': False,
        'anisotropic': False,
    })
"""

_REGISTRY = {}


def register_covariance(name, config):
    """
    Register a covariance family with the sampler.

    Args:
        name: Unique family identifier string (e.g., 'exponential_isotropic')
        config: Dict containing family functions with keys:

            Required:
                kernel: fn(x1, x2, log_cov) -> covariance
                    JAX-traceable covariance between broadcastable coordinate
                    arrays. log_cov[0] is the log scale (marginal variance).

                param_names: fn(d) -> List[str]
                    Names of the log parameters for coordinates in R^d.

            Optional:
                has_smoothness: bool
                    True if the last parameter is a log smoothness.

                anisotropic: bool
                    True if there is one range per coordinate axis.

    Raises:
        ValueError: If required keys are missing or name is already registered.
    """
    if name in _REGISTRY:
        raise ValueError(f"Covariance family '{name}' is already registered")

    required_keys = ['kernel', 'param_names']
    missing = [k for k in required_keys if k not in config]
    if missing:
        raise ValueError(f"Missing required keys for covariance family '{name}': {missing}")

    config = dict(config)
    config.setdefault('has_smoothness', False)
    config.setdefault('anisotropic', False)
    _REGISTRY[name] = config


def get_covariance(name):
    """
    Get a registered covariance family by name.

    Raises:
        KeyError: If the family is not registered
    """
    if name not in _REGISTRY:
        available = list(_REGISTRY.keys())
        raise KeyError(f"Unknown covariance family '{name}'. Available: {available}")
    return _REGISTRY[name]


def list_covariances():
    """List all registered covariance family names."""
    return list(_REGISTRY.keys())


def unregister_covariance(name):
    """
    Remove a registered family. Primarily for testing.
    """
    _REGISTRY.pop(name, None)
