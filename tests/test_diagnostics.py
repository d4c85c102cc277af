"""
Tests for the reporting tables in dfa_covariates.analysis.diagnostics.
"""

import numpy as np
import pandas as pd
import pytest

from dfa_covariates.analysis.diagnostics import (
    correlation_table,
    effect_table,
    factor_recovery_table,
    fitted_vs_observed,
)


def test_correlation_table(example_simulation):
    table = correlation_table(example_simulation.observations)

    assert isinstance(table, pd.DataFrame)
    assert table.shape == (15, 15)
    assert list(table.columns[:2]) == ["y1", "y2"]
    np.testing.assert_allclose(np.diag(table.values), 1.0)
    np.testing.assert_allclose(table.values, table.values.T)


def test_correlation_table_custom_labels():
    obs = np.array([[1.0, 2.0, 3.0], [3.0, 1.0, 2.0]])
    table = correlation_table(obs, labels=["a", "b"])
    assert list(table.index) == ["a", "b"]
    assert table.loc["a", "a"] == pytest.approx(1.0)


def test_factor_recovery_table_without_rotation(fake_fit_fixture):
    rng = np.random.default_rng(0)
    true_factors = rng.normal(size=(2, 30)).cumsum(axis=1)
    fit = fake_fit_fixture(np.ones((4, 2)), np.vstack([true_factors[1], -true_factors[0]]))

    table = factor_recovery_table(true_factors, fit, rotate=False)

    assert list(table["factor"]) == ["x1", "x2"]
    assert list(table["matched_estimate"]) == ["x2", "x1"]
    np.testing.assert_allclose(table["correlation"], 1.0)


def test_factor_recovery_table_with_rotation(example_simulation, fake_fit_fixture):
    """Varimax rotation of the true model leaves recovery correlations bounded by one."""
    fit = fake_fit_fixture(example_simulation.loadings, example_simulation.factors)
    table = factor_recovery_table(example_simulation.factors, fit, rotate=True)
    assert len(table) == 3
    assert np.all((table["correlation"] >= 0) & (table["correlation"] <= 1 + 1e-12))


def test_fitted_vs_observed(fake_fit_fixture):
    loadings = np.array([[1.0], [2.0]])
    factors = np.array([[0.0, 1.0, 2.0]])
    observed = loadings @ factors + 0.5
    fit = fake_fit_fixture(loadings, factors)

    table = fitted_vs_observed(observed, fit)

    assert len(table) == 6
    assert list(table["series"]) == ["y1"] * 3 + ["y2"] * 3
    assert list(table["time"]) == [1, 2, 3, 1, 2, 3]
    np.testing.assert_allclose(table["residual"], 0.5)


def test_effect_table_with_truth(fake_fit_fixture):
    effects = np.array([[0.4, 0.6], [0.5, 0.5]])
    covariates = np.zeros((2, 3))
    fit = fake_fit_fixture(np.ones((2, 1)), np.zeros((1, 3)),
                           covariate_effects=effects, covariates=covariates)

    table = effect_table(fit, ["trend", "season"], true_effects=np.full((2, 2), 0.5))

    assert list(table["covariate"]) == ["trend", "season", "trend", "season"]
    np.testing.assert_allclose(table["error"], [-0.1, 0.1, 0.0, 0.0])


def test_effect_table_without_covariates(fake_fit_fixture):
    fit = fake_fit_fixture(np.ones((2, 1)), np.zeros((1, 3)))
    assert effect_table(fit, []).empty


def test_effect_table_name_mismatch_raises(fake_fit_fixture):
    fit = fake_fit_fixture(np.ones((2, 1)), np.zeros((1, 3)),
                           covariate_effects=np.zeros((2, 2)), covariates=np.zeros((2, 3)))
    with pytest.raises(ValueError, match="covariate names"):
        effect_table(fit, ["trend"])
