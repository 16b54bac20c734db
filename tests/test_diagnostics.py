"""
Tests for the Gelman-Rubin-Brooks diagnostics and the stopping rule.

Run with: pytest tests/test_diagnostics.py -v
"""

import numpy as np
import pytest

from nngpmcmc.error_handling import (
    InsufficientChainsError,
    diagnose_chain_issues,
)
from nngpmcmc.mcmc.diagnostics import (
    compute_grb,
    compute_mpsrf,
    print_acceptance_summary,
    print_grb_summary,
    should_stop,
    stack_histories,
)


def manual_psrf(history):
    n, m, _ = history.shape
    means = history.mean(axis=0)
    B = n * means.var(axis=0, ddof=1)
    W = history.var(axis=0, ddof=1).mean(axis=0)
    V = (n - 1) / n * W + B / n + B / (m * n)
    return np.sqrt(V / W)


class TestGelmanRubin:
    """Test compute_grb() and compute_mpsrf()."""

    def test_matches_manual_formula(self):
        rng = np.random.default_rng(0)
        history = rng.normal(size=(200, 3, 4)) + rng.normal(size=(1, 3, 4))
        np.testing.assert_allclose(compute_grb(history), manual_psrf(history), rtol=1e-10)

    def test_identical_chains_below_one(self):
        rng = np.random.default_rng(1)
        single = rng.normal(size=(100, 1, 3))
        history = np.repeat(single, 3, axis=1)
        psrf = compute_grb(history)
        np.testing.assert_allclose(psrf, np.sqrt(99 / 100))
        assert compute_mpsrf(history) == pytest.approx(99 / 100)

    def test_separated_chains_flagged(self):
        rng = np.random.default_rng(2)
        history = rng.normal(size=(100, 2, 2))
        history[:, 1, :] += 10.0
        assert np.all(compute_grb(history) > 2.0)
        assert compute_mpsrf(history) > 2.0

    def test_mpsrf_equals_squared_psrf_for_one_parameter(self):
        rng = np.random.default_rng(3)
        history = rng.normal(size=(150, 4, 1)) + 0.3 * rng.normal(size=(1, 4, 1))
        assert compute_mpsrf(history) == pytest.approx(float(compute_grb(history)[0] ** 2), rel=1e-8)

    def test_mpsrf_bounds_psrf(self):
        # lambda_max bounds every per-coordinate Rayleigh quotient
        rng = np.random.default_rng(4)
        history = rng.normal(size=(300, 3, 3)) + 0.2 * rng.normal(size=(1, 3, 3))
        assert compute_mpsrf(history) >= np.max(compute_grb(history) ** 2) - 1e-10

    def test_overdispersed_starts_score_higher(self):
        # Same draws, but the dispersed chains keep the level they started at
        rng = np.random.default_rng(6)
        identical = rng.normal(size=(200, 3, 2))
        dispersed = identical + np.array([-5.0, 0.0, 5.0])[None, :, None]
        assert np.all(compute_grb(identical) <= compute_grb(dispersed))
        assert compute_mpsrf(identical) <= compute_mpsrf(dispersed)

    def test_single_chain_raises(self):
        with pytest.raises(InsufficientChainsError):
            compute_grb(np.zeros((10, 1, 2)))
        with pytest.raises(InsufficientChainsError):
            compute_mpsrf(np.zeros((10, 1, 2)))

    def test_wrong_rank_raises(self):
        with pytest.raises(ValueError):
            compute_grb(np.zeros((10, 2)))

    def test_too_few_samples_is_nan(self):
        assert np.all(np.isnan(compute_grb(np.zeros((1, 3, 2)))))
        assert np.isnan(compute_mpsrf(np.zeros((1, 3, 2))))

    def test_constant_parameter_is_nan(self):
        rng = np.random.default_rng(5)
        history = rng.normal(size=(50, 2, 2))
        history[:, :, 1] = 3.0
        psrf = compute_grb(history)
        assert np.isfinite(psrf[0])
        assert np.isnan(psrf[1])


class TestStackHistories:
    """Test stack_histories()."""

    def test_burn_in_and_common_length(self):
        a = np.arange(20, dtype=float).reshape(10, 2)
        b = np.arange(16, dtype=float).reshape(8, 2) + 100
        stacked = stack_histories([a, b], burn_in=0.5)
        assert stacked.shape == (4, 2, 2)
        np.testing.assert_array_equal(stacked[:, 0], a[6:])
        np.testing.assert_array_equal(stacked[:, 1], b[4:])

    def test_no_burn_in(self):
        a = np.ones((5, 3))
        assert stack_histories([a, a, a], burn_in=0.0).shape == (5, 3, 3)


class TestShouldStop:
    """Test the early stopping rule."""

    def test_multivariate_criterion(self):
        assert should_stop(1.005, np.array([1.2, 1.3]), (1.01, 1.03))

    def test_univariate_criterion(self):
        assert should_stop(1.5, np.array([1.01, 1.02]), (1.01, 1.03))

    def test_neither(self):
        assert not should_stop(1.5, np.array([1.01, 1.2]), (1.01, 1.03))

    def test_one_one_never_stops(self):
        assert not should_stop(1.0, np.array([1.0, 1.0]), (1, 1))
        assert not should_stop(0.9, np.array([0.9]), (1.0, 1.0))

    def test_nan_is_not_converged(self):
        assert not should_stop(float('nan'), np.array([1.0, np.nan]), (1.01, 1.03))
        assert should_stop(float('nan'), np.array([1.0, 1.0]), (1.01, 1.03))


class TestReporting:
    """Logged summaries and record diagnosis."""

    def test_summaries_log(self, caplog):
        entry = {'cycle': 0, 'iteration': 100, 'n_samples': 50, 'mpsrf': 1.2,
                 'psrf': np.array([1.1, np.nan, 1.05]), 'stop': False}
        with caplog.at_level('INFO', logger='nngpmcmc'):
            print_grb_summary(entry, ['a', 'b', 'c'])
            print_acceptance_summary([np.array([0.05, np.nan])])
        assert 'MPSRF 1.2000' in caplog.text
        assert 'NaN/Inf PSRF' in caplog.text
        assert 'sufficient 5.0%' in caplog.text
        assert 'acceptance rate < 10% for sufficient' in caplog.text

    def test_diagnose_chain_issues(self):
        good = np.random.default_rng(0).normal(size=(20, 2))
        stuck = good.copy()
        stuck[:, 1] = 0.5
        result = diagnose_chain_issues([good, stuck, np.empty((0, 2))], [0, 3, 0], ['x', 'y'])
        assert any("parameter 'y' appears stuck" in w for w in result['warnings'])
        assert any('Chain 2 has no saved samples' in w for w in result['warnings'])
        assert any('Chain 1: 3 non-finite' in w for w in result['warnings'])
        assert not result['issues']

        broken = good.copy()
        broken[3, 0] = np.nan
        result = diagnose_chain_issues([broken], [0], ['x', 'y'])
        assert result['issues']
