"""
Stationary covariance families and hyperpriors.

All covariance parameters are sampled on the log scale. A parameter vector is
    [log_scale, log_range (or one log_range per axis), (log_smoothness)]
and every component carries a Hyperprior evaluated on that log scale
(Jacobian included).

Built-in families:
    exponential_isotropic   - C(h) = s exp(-h)
    matern15_isotropic      - C(h) = s (1 + sqrt(3) h) exp(-sqrt(3) h)
    matern25_isotropic      - C(h) = s (1 + sqrt(5) h + 5h^2/3) exp(-sqrt(5) h)
    matern_isotropic        - general Matern with sampled smoothness
    exponential_anisotropic - exponential with one range per axis (space-time)
where h is the (range-scaled) distance.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
import scipy.special

from .registry import register_covariance, get_covariance


# ============================================================================
# KERNELS
# ============================================================================

def _scaled_distance(x1, x2, log_ranges):
    """Euclidean distance after dividing each axis by its range."""
    diff = (x1 - x2) / jnp.exp(log_ranges)
    return jnp.sqrt(jnp.sum(diff ** 2, axis=-1))


def exponential_kernel(x1, x2, log_cov):
    h = _scaled_distance(x1, x2, log_cov[1])
    return jnp.exp(log_cov[0] - h)


def matern15_kernel(x1, x2, log_cov):
    h = jnp.sqrt(3.0) * _scaled_distance(x1, x2, log_cov[1])
    return jnp.exp(log_cov[0]) * (1.0 + h) * jnp.exp(-h)


def matern25_kernel(x1, x2, log_cov):
    h = jnp.sqrt(5.0) * _scaled_distance(x1, x2, log_cov[1])
    return jnp.exp(log_cov[0]) * (1.0 + h + h ** 2 / 3.0) * jnp.exp(-h)


def _log_kve_host(nu, x):
    return np.log(scipy.special.kve(nu, x)).astype(x.dtype)


def log_bessel_kv(nu, x):
    """log K_nu(x) for x > 0, evaluated by scipy on the host."""
    nu = jnp.broadcast_to(nu, x.shape).astype(x.dtype)
    log_kve = jax.pure_callback(
        _log_kve_host,
        jax.ShapeDtypeStruct(x.shape, x.dtype),
        nu, x,
        vmap_method='broadcast_all',
    )
    return log_kve - x


def matern_kernel(x1, x2, log_cov):
    nu = jnp.exp(log_cov[2])
    h = jnp.sqrt(2.0 * nu) * _scaled_distance(x1, x2, log_cov[1])
    positive = h > 0
    safe_h = jnp.where(positive, h, 1.0)
    log_corr = ((1.0 - nu) * jnp.log(2.0) - jax.scipy.special.gammaln(nu)
                + nu * jnp.log(safe_h) + log_bessel_kv(nu, safe_h))
    return jnp.exp(log_cov[0]) * jnp.where(positive, jnp.exp(log_corr), 1.0)


def anisotropic_exponential_kernel(x1, x2, log_cov):
    h = _scaled_distance(x1, x2, log_cov[1:])
    return jnp.exp(log_cov[0] - h)


register_covariance('exponential_isotropic', {
    'kernel': exponential_kernel,
    'param_names': lambda d: ['log_scale', 'log_range'],
})
register_covariance('matern15_isotropic', {
    'kernel': matern15_kernel,
    'param_names': lambda d: ['log_scale', 'log_range'],
})
register_covariance('matern25_isotropic', {
    'kernel': matern25_kernel,
    'param_names': lambda d: ['log_scale', 'log_range'],
})
register_covariance('matern_isotropic', {
    'kernel': matern_kernel,
    'param_names': lambda d: ['log_scale', 'log_range', 'log_smoothness'],
    'has_smoothness': True,
})
register_covariance('exponential_anisotropic', {
    'kernel': anisotropic_exponential_kernel,
    'param_names': lambda d: ['log_scale'] + [f'log_range_{k}' for k in range(d)],
    'anisotropic': True,
})


# ============================================================================
# HYPERPRIORS
# ============================================================================

# Integer codes keep the prior evaluation a single jnp.select under jit
PRIOR_CODES = {
    'log_uniform': 0,
    'log_normal': 1,
    'inverse_gamma': 2,
}


@dataclass(frozen=True)
class Hyperprior:
    """
    Prior on one covariance parameter.

    Families (params):
        log_uniform (low, high): uniform on [log low, log high]
        log_normal (mean, sd): normal on the log scale
        inverse_gamma (shape, rate): inverse gamma on the natural scale
    """
    family: str
    params: Tuple[float, float]

    def __post_init__(self):
        if self.family not in PRIOR_CODES:
            raise ValueError(
                f"Unknown hyperprior family '{self.family}'. Available: {list(PRIOR_CODES)}"
            )
        if len(self.params) != 2:
            raise ValueError(f"Hyperprior takes two parameters, got {self.params}")
        # Tuples of floats keep the model hashable for jit
        object.__setattr__(self, 'params', tuple(float(v) for v in self.params))
        a, b = self.params
        if self.family == 'log_uniform' and not 0 < a < b:
            raise ValueError(f"log_uniform bounds must satisfy 0 < low < high, got {self.params}")
        if self.family != 'log_uniform' and b <= 0:
            raise ValueError(f"{self.family} second parameter must be > 0, got {b}")
        if self.family == 'inverse_gamma' and a <= 0:
            raise ValueError(f"inverse_gamma shape must be > 0, got {a}")


def hyperprior_log_density(theta, codes, params):
    """
    Sum of hyperprior log densities for log parameters theta.

    Args:
        theta: (k,) log parameters
        codes: (k,) PRIOR_CODES values
        params: (k, 2) hyperparameters

    Returns:
        Scalar log density (-inf outside log_uniform bounds)
    """
    a, b = params[:, 0], params[:, 1]
    log_uniform = jnp.where(
        (theta >= jnp.log(a)) & (theta <= jnp.log(jnp.where(codes == 0, b, 1.0))),
        0.0, -jnp.inf,
    )
    log_normal = -0.5 * ((theta - a) / b) ** 2 - jnp.log(b)
    # Inverse gamma on exp(theta), times the Jacobian exp(theta)
    inverse_gamma = -a * theta - b * jnp.exp(-theta)
    per_param = jnp.select(
        [codes == 0, codes == 1, codes == 2],
        [log_uniform, log_normal, inverse_gamma],
    )
    return jnp.sum(per_param)


# ============================================================================
# COVARIANCE MODEL
# ============================================================================

@dataclass(frozen=True)
class CovarianceModel:
    """
    A covariance family together with its hyperpriors.

    Hashable so it can be a static argument of jitted functions.

    Fields:
        family: Registered family name
        param_names: Names of the log parameters
        hyperpriors: One Hyperprior per parameter
        noise_prior: (shape, rate) of the inverse gamma prior on the noise variance
    """
    family: str
    param_names: Tuple[str, ...]
    hyperpriors: Tuple[Hyperprior, ...]
    noise_prior: Tuple[float, float]

    def __post_init__(self):
        if len(self.hyperpriors) != len(self.param_names):
            raise ValueError(
                f"{len(self.hyperpriors)} hyperpriors given for {len(self.param_names)} "
                f"parameters {list(self.param_names)}"
            )

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    @property
    def kernel(self):
        return get_covariance(self.family)['kernel']

    def prior_arrays(self):
        """(codes, params) arrays for hyperprior_log_density."""
        codes = jnp.array([PRIOR_CODES[h.family] for h in self.hyperpriors], dtype=jnp.int32)
        params = jnp.array([h.params for h in self.hyperpriors], dtype=float)
        return codes, params


def spatial_extent(locs: np.ndarray) -> np.ndarray:
    """Per-axis extent of the bounding box, with degenerate axes set to 1."""
    extent = np.ptp(locs, axis=0)
    return np.where(extent > 0, extent, 1.0)


def default_hyperpriors(family: str, locs: np.ndarray, y_var: float) -> Tuple[Hyperprior, ...]:
    """
    Weakly informative hyperpriors derived from the data.

    Scale: log-uniform over [y_var / 1000, 10 y_var].
    Ranges: log-uniform over [extent / 1000, 10 extent] (per axis when anisotropic).
    Smoothness: log-uniform over [0.05, 3].
    """
    config = get_covariance(family)
    y_var = max(float(y_var), 1e-8)
    extent = spatial_extent(locs)

    priors = [Hyperprior('log_uniform', (y_var / 1000.0, 10.0 * y_var))]
    if config['anisotropic']:
        priors += [Hyperprior('log_uniform', (e / 1000.0, 10.0 * e)) for e in extent]
    else:
        diag = float(np.sqrt(np.sum(extent ** 2)))
        priors.append(Hyperprior('log_uniform', (diag / 1000.0, 10.0 * diag)))
    if config['has_smoothness']:
        priors.append(Hyperprior('log_uniform', (0.05, 3.0)))
    return tuple(priors)


def build_covariance_model(family: str, locs: np.ndarray, y_var: float,
                           hyperpriors: Optional[dict] = None,
                           noise_prior: Optional[Tuple[float, float]] = None) -> CovarianceModel:
    """
    Assemble a CovarianceModel, overriding default hyperpriors by parameter name.

    Args:
        family: Registered family name
        locs: Ordered locations (n_locs, d)
        y_var: Response variance (sets default scale and noise priors)
        hyperpriors: Optional {param_name: Hyperprior} overrides
        noise_prior: Optional (shape, rate) for the noise variance

    Raises:
        KeyError: If family is unknown or an override names an unknown parameter
    """
    config = get_covariance(family)
    names = tuple(config['param_names'](locs.shape[1]))
    priors = list(default_hyperpriors(family, locs, y_var))
    if len(priors) != len(names):
        # Custom families with unusual parameters must supply every prior
        priors = [None] * len(names)
    for name, prior in (hyperpriors or {}).items():
        if name not in names:
            raise KeyError(f"Unknown covariance parameter '{name}'. Available: {list(names)}")
        priors[names.index(name)] = prior
    missing = [name for name, prior in zip(names, priors) if prior is None]
    if missing:
        raise ValueError(
            f"Family '{family}' has no default hyperprior for {missing}; "
            f"pass hyperpriors for every parameter"
        )

    if noise_prior is None:
        noise_prior = (0.01, 0.01 * max(float(y_var), 1e-8))

    return CovarianceModel(
        family=family,
        param_names=names,
        hyperpriors=tuple(priors),
        noise_prior=tuple(float(v) for v in noise_prior),
    )
