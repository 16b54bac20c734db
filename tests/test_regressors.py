"""
Unit Tests for Regressor Preprocessing

Run with: pytest tests/test_regressors.py -v
"""

import numpy as np
import pandas as pd
import pytest

from nngpmcmc.error_handling import RegressorConflictError
from nngpmcmc.regressors import decenter_coefficients, ols_fit, preprocess_regressors


@pytest.fixture
def paired_index():
    """obs_to_loc / first_obs for 25 locations with 2 observations each."""
    obs_to_loc = np.arange(50) // 2
    first_obs = np.arange(0, 50, 2)
    return obs_to_loc, first_obs


class TestPreprocessRegressors:
    """Test preprocess_regressors()."""

    def test_layout_and_names(self, synthetic_data, paired_index):
        design = preprocess_regressors(synthetic_data['y'], *paired_index,
                                       X_locs=synthetic_data['X_locs'],
                                       X_obs=synthetic_data['X_obs'])
        assert design.names == ('intercept', 'elevation', 'temperature')
        assert design.n_coefs == 3
        assert design.n_loc_cols == 1
        np.testing.assert_array_equal(design.loc_coef_indices, [0, 1])
        np.testing.assert_array_equal(design.X[:, 0], 1.0)

    def test_columns_centered(self, synthetic_data, paired_index):
        design = preprocess_regressors(synthetic_data['y'], *paired_index,
                                       X_locs=synthetic_data['X_locs'],
                                       X_obs=synthetic_data['X_obs'])
        np.testing.assert_allclose(design.X[:, 1:].mean(axis=0), 0.0, atol=1e-12)
        assert design.means[0] == 0.0
        np.testing.assert_allclose(design.means[1], synthetic_data['X_locs']['elevation'].mean())

    def test_location_design(self, synthetic_data, paired_index):
        obs_to_loc, first_obs = paired_index
        design = preprocess_regressors(synthetic_data['y'], obs_to_loc, first_obs,
                                       X_locs=synthetic_data['X_locs'],
                                       X_obs=synthetic_data['X_obs'])
        assert design.X_loc.shape == (25, 2)
        np.testing.assert_array_equal(design.X_loc[obs_to_loc], design.X[:, :2])
        np.testing.assert_array_equal(design.loc_counts, np.full(25, 2.0))

    def test_cached_cross_products(self, synthetic_data, paired_index):
        design = preprocess_regressors(synthetic_data['y'], *paired_index,
                                       X_obs=synthetic_data['X_obs'])
        np.testing.assert_allclose(design.XtX, design.X.T @ design.X)
        np.testing.assert_allclose(design.XtX_chol @ design.XtX_chol.T, design.XtX)
        np.testing.assert_allclose(design.Xty, design.X.T @ synthetic_data['y'])

    def test_dataframe_and_array_inputs(self, synthetic_data, paired_index):
        frame = pd.DataFrame(synthetic_data['X_obs'])
        from_frame = preprocess_regressors(synthetic_data['y'], *paired_index, X_obs=frame)
        assert from_frame.names == ('intercept', 'temperature')

        values = synthetic_data['X_obs']['temperature']
        from_array = preprocess_regressors(synthetic_data['y'], *paired_index, X_obs=values)
        assert from_array.names == ('intercept', 'X_obs_0')
        np.testing.assert_allclose(from_array.X, from_frame.X)

    def test_intercept_only(self, synthetic_data, paired_index):
        design = preprocess_regressors(synthetic_data['y'], *paired_index)
        assert design.names == ('intercept',)
        assert design.X_loc.shape == (25, 1)

    def test_conflicting_names_raise(self, synthetic_data, paired_index):
        with pytest.raises(RegressorConflictError, match="elevation"):
            preprocess_regressors(synthetic_data['y'], *paired_index,
                                  X_locs=synthetic_data['X_locs'],
                                  X_obs={'elevation': synthetic_data['X_obs']['temperature']})

    def test_varying_location_regressor_raises(self, synthetic_data, paired_index):
        with pytest.raises(ValueError, match="change within a location"):
            preprocess_regressors(synthetic_data['y'], *paired_index,
                                  X_locs=synthetic_data['X_obs'])

    def test_rank_deficient_raises(self, synthetic_data, paired_index):
        temperature = synthetic_data['X_obs']['temperature']
        with pytest.raises(np.linalg.LinAlgError, match="rank deficient"):
            preprocess_regressors(synthetic_data['y'], *paired_index,
                                  X_obs={'a': temperature, 'b': 2.0 * temperature})

    def test_wrong_length_raises(self, synthetic_data, paired_index):
        with pytest.raises(ValueError, match="rows"):
            preprocess_regressors(synthetic_data['y'], *paired_index,
                                  X_obs={'short': np.ones(10)})

    def test_non_finite_raises(self, synthetic_data, paired_index):
        bad = synthetic_data['X_obs']['temperature'].copy()
        bad[3] = np.nan
        with pytest.raises(ValueError, match="NaN"):
            preprocess_regressors(synthetic_data['y'], *paired_index, X_obs={'bad': bad})


class TestCoefficients:
    """Test ols_fit() and decenter_coefficients()."""

    def test_ols_recovers_exact_fit(self, synthetic_data, paired_index):
        elevation = synthetic_data['X_locs']['elevation']
        temperature = synthetic_data['X_obs']['temperature']
        y = 2.0 + 1.5 * elevation - 0.5 * temperature
        design = preprocess_regressors(y, *paired_index,
                                       X_locs={'elevation': elevation},
                                       X_obs={'temperature': temperature})
        beta, std_err, resid_var = ols_fit(design)
        np.testing.assert_allclose(beta[1:], [1.5, -0.5], atol=1e-10)
        assert resid_var < 1e-20
        assert std_err.shape == (3,)
        np.testing.assert_allclose(decenter_coefficients(design, beta), [2.0, 1.5, -0.5], atol=1e-10)

    def test_decenter_preserves_predictions(self, synthetic_data, paired_index):
        design = preprocess_regressors(synthetic_data['y'], *paired_index,
                                       X_locs=synthetic_data['X_locs'],
                                       X_obs=synthetic_data['X_obs'])
        rng = np.random.default_rng(0)
        samples = rng.normal(size=(7, 3))
        raw = design.X[:, 1:] + design.means[1:]
        raw_X = np.column_stack((np.ones(design.X.shape[0]), raw))

        decentered = decenter_coefficients(design, samples)
        assert decentered.shape == samples.shape
        np.testing.assert_allclose(raw_X @ decentered.T, design.X @ samples.T, atol=1e-10)
        np.testing.assert_array_equal(decentered[:, 1:], samples[:, 1:])
