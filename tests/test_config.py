"""
Configuration and Initialization Tests

Tests run-config cleaning and validation, chain initialization and the
structures built by initialize():
- Defaults and coercion in clean_config
- Input and run-config validation
- Overdispersed chain starting points
- Deduplication, neighbor cap and monitored names

Run with: pytest tests/test_config.py -v
"""

import importlib
import os

import jax
import numpy as np
import pytest

import nngpmcmc.jax_config

from nngpmcmc import Hyperprior, PrecisionMismatchError, RegressorConflictError, initialize, run
from nngpmcmc.error_handling import validate_init_inputs, validate_run_config
from nngpmcmc.mcmc.config import (
    build_run_params,
    check_precision,
    configure_precision,
    gen_rng_keys,
    initial_values,
    initialize_chain_states,
)
from nngpmcmc.mcmc.utils import clean_config


# ============================================================================
# RUN CONFIG
# ============================================================================

class TestRunConfig:
    """Test clean_config() and validate_run_config()."""

    def test_defaults(self):
        config = clean_config({})
        assert config['n_cores'] == 1
        assert config['n_cycles'] == 5
        assert config['n_iterations_update'] == 100
        assert config['burn_in'] == 0.5
        assert config['field_thinning'] == 0.05
        assert config['thinning'] == 1.0
        assert config['grb_stop'] == (1.01, 1.03)
        assert config['ancillary'] is True
        assert config['n_chromatic'] == 5

    def test_grb_stop_becomes_float_tuple(self):
        assert clean_config({'grb_stop': [1, 1]})['grb_stop'] == (1.0, 1.0)

    def test_ancillary_coerced_with_warning(self, caplog):
        with caplog.at_level('WARNING', logger='nngpmcmc'):
            config = clean_config({'ancillary': 0})
        assert config['ancillary'] is False
        assert 'ancillary' in caplog.text

    def test_valid_config_passes(self):
        validate_run_config(clean_config({}))

    @pytest.mark.parametrize('override, message', [
        ({'burn_in': 1.5}, 'burn_in'),
        ({'thinning': 0.0}, 'thinning'),
        ({'field_thinning': 2.0}, 'field_thinning'),
        ({'n_cycles': 0}, 'n_cycles'),
        ({'n_chromatic': 0}, 'n_chromatic'),
        ({'grb_stop': (0.9, 1.0)}, 'grb_stop'),
        ({'grb_stop': (1.1, 1.1, 1.1)}, 'grb_stop'),
    ])
    def test_invalid_values_rejected(self, override, message):
        with pytest.raises(ValueError, match=message):
            validate_run_config(clean_config(override))

    def test_all_problems_reported_together(self):
        with pytest.raises(ValueError) as excinfo:
            validate_run_config(clean_config({'burn_in': -1, 'n_cores': 0}))
        assert 'burn_in' in str(excinfo.value)
        assert 'n_cores' in str(excinfo.value)

    def test_run_params_hashable(self):
        a = build_run_params({'thinning': 0.5}, 50)
        b = build_run_params({'thinning': 0.5}, 50)
        assert a == b
        assert hash(a) == hash(b)
        assert a.N_ITERATIONS == 50
        assert a.THINNING == 0.5
        assert a.ANCILLARY is True
        assert build_run_params({}, 20) != a


# ============================================================================
# INPUT VALIDATION
# ============================================================================

class TestInitInputs:
    """Test validate_init_inputs()."""

    def test_valid(self):
        validate_init_inputs(np.zeros((5, 2)), np.zeros(5), 3, 2)

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="rows"):
            validate_init_inputs(np.zeros((5, 2)), np.zeros(4), 3, 2)

    def test_non_finite(self):
        coords = np.zeros((5, 2))
        coords[1, 0] = np.inf
        y = np.zeros(5)
        y[2] = np.nan
        with pytest.raises(ValueError) as excinfo:
            validate_init_inputs(coords, y, 3, 2)
        assert 'coords' in str(excinfo.value)
        assert 'y contains' in str(excinfo.value)

    def test_bad_counts(self):
        with pytest.raises(ValueError, match="m must be"):
            validate_init_inputs(np.zeros((5, 2)), np.zeros(5), 0, 2)
        with pytest.raises(ValueError, match="n_chains"):
            validate_init_inputs(np.zeros((5, 2)), np.zeros(5), 3, 0)


# ============================================================================
# CHAIN INITIALIZATION
# ============================================================================

class TestChainInitialization:
    """Test gen_rng_keys(), initial_values() and initialize_chain_states()."""

    def test_rng_keys_deterministic(self):
        a = gen_rng_keys(7)
        b = gen_rng_keys(7)
        np.testing.assert_array_equal(a[0], b[0])
        assert not np.array_equal(a[0], a[1])

    def test_initial_field_is_mean_residual(self, small_sampler):
        start = initial_values(small_sampler.design, small_sampler.locations,
                               small_sampler.model, small_sampler.index_map)
        design, index_map = small_sampler.design, small_sampler.index_map
        resid = design.y - design.X @ start['beta']
        for loc in range(index_map.n_locs):
            np.testing.assert_allclose(start['field'][loc], resid[index_map.bucket(loc)].mean())
        assert start['log_cov'].shape == (2,)
        np.testing.assert_allclose(start['log_noise'], np.log(0.5 * np.var(design.y)))

    def test_chains_overdispersed_within_support(self, small_sampler):
        states = initialize_chain_states(small_sampler.design, small_sampler.locations,
                                         small_sampler.model, small_sampler.index_map,
                                         n_chains=4, rng_seed=0, n_adapt=50)
        assert len(states) == 4
        starts = np.stack([np.asarray(s.log_cov) for s in states])
        assert np.unique(starts, axis=0).shape[0] == 4
        for prior, column in zip(small_sampler.model.hyperpriors, starts.T):
            low, high = np.log(prior.params[0]), np.log(prior.params[1])
            assert np.all((column > low) & (column < high))

        keys = np.stack([np.asarray(s.key) for s in states])
        assert np.unique(keys, axis=0).shape[0] == 4
        for s in states:
            assert int(s.iteration) == 0
            assert int(s.n_nonfinite) == 0
            assert bool(s.kernel.adapting)
            assert int(s.kernel.n_adapt) == 50

    def test_seed_reproducible(self, small_sampler):
        args = (small_sampler.design, small_sampler.locations,
                small_sampler.model, small_sampler.index_map, 2, 11)
        a = initialize_chain_states(*args)
        b = initialize_chain_states(*args)
        np.testing.assert_array_equal(a[1].beta, b[1].beta)
        np.testing.assert_array_equal(a[1].log_cov, b[1].log_cov)


# ============================================================================
# INITIALIZE
# ============================================================================

class TestInitialize:
    """Test the structures returned by initialize()."""

    def test_deduplicated_locations(self, small_sampler, synthetic_data):
        assert small_sampler.n_locs == 25
        assert small_sampler.n_chains == 2
        np.testing.assert_array_equal(
            small_sampler.locations[small_sampler.index_map.obs_to_loc], synthetic_data['coords'])
        assert small_sampler.spatial_arrays.n_locs == 25
        assert small_sampler.design_arrays.n_obs == 50

    def test_monitored_names(self, small_sampler):
        assert small_sampler.monitored_names == [
            'log_scale', 'log_range', 'log_noise_variance',
            'intercept', 'elevation', 'temperature',
        ]
        assert all(r.n_params == 6 for r in small_sampler.records)
        assert small_sampler.diagnostics == []
        assert not small_sampler.converged

    def test_m_capped_by_location_count(self):
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
        sampler = initialize(coords, np.array([1.0, 2.0, 3.0, 1.5]), m=10)
        assert sampler.config['m'] == 2
        assert sampler.dag.m == 2

    def test_single_location_rejected(self):
        coords = np.zeros((4, 2))
        with pytest.raises(ValueError, match="2 unique locations"):
            initialize(coords, np.arange(4.0))

    def test_noise_prior_override(self, synthetic_data):
        sampler = initialize(
            synthetic_data['coords'], synthetic_data['y'], m=3,
            hyperpriors={
                'noise_variance': (3.0, 0.5),
                'log_range': Hyperprior('log_normal', (-1.0, 1.0)),
            },
        )
        assert sampler.model.noise_prior == (3.0, 0.5)
        assert sampler.model.hyperpriors[1].family == 'log_normal'

    def test_regressor_conflict(self, synthetic_data):
        with pytest.raises(RegressorConflictError):
            initialize(synthetic_data['coords'], synthetic_data['y'],
                       X_locs=synthetic_data['X_locs'], X_obs=synthetic_data['X_locs'])

    def test_anisotropic_family(self, synthetic_data):
        sampler = initialize(synthetic_data['coords'], synthetic_data['y'], m=3,
                             covariance='exponential_anisotropic')
        assert sampler.monitored_names[:3] == ['log_scale', 'log_range_0', 'log_range_1']
        assert sampler.chain_states[0].log_cov.shape == (3,)


# ============================================================================
# PRECISION
# ============================================================================

class TestPrecision:
    """Test check_precision() and its use by run()."""

    def test_matching_flag_passes(self, small_sampler):
        check_precision(True, small_sampler.chain_states)

    def test_flag_switched_elsewhere(self, small_sampler):
        configure_precision(False)
        try:
            with pytest.raises(PrecisionMismatchError, match='jax_enable_x64 is False'):
                check_precision(True, small_sampler.chain_states)
        finally:
            configure_precision(True)

    def test_run_does_not_toggle_flag(self, small_sampler):
        small_sampler.config['use_double'] = False
        with pytest.raises(PrecisionMismatchError, match='use_double=False'):
            run(small_sampler, n_cycles=1, n_iterations_update=5, n_chromatic=1)
        assert jax.config.jax_enable_x64


class TestCompilationCache:
    """Test the cache directory setup in jax_config."""

    def test_unwritable_cache_dir_logged(self, tmp_path, monkeypatch, caplog):
        # A regular file where the home directory should be
        fake_home = tmp_path / 'home'
        fake_home.write_text('')
        monkeypatch.setenv('HOME', str(fake_home))
        monkeypatch.delenv('JAX_COMPILATION_CACHE_DIR', raising=False)
        with caplog.at_level('DEBUG', logger='nngpmcmc'):
            importlib.reload(nngpmcmc.jax_config)
        assert 'compilation cache disabled' in caplog.text
        assert 'JAX_COMPILATION_CACHE_DIR' not in os.environ
