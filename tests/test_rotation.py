"""
Tests for the factor rotation utilities.
"""

import numpy as np
import pytest

from dfa_covariates.core.rotation import match_factors, varimax_rotation


@pytest.fixture
def loadings_and_factors():
    rng = np.random.default_rng(10)
    loadings = np.tril(rng.uniform(-1, 1, size=(8, 3)))
    factors = rng.normal(size=(3, 40)).cumsum(axis=1)
    return loadings, factors


def test_varimax_preserves_fit(loadings_and_factors):
    """Rotated loadings times rotated factors reproduce Z X."""
    Z, X = loadings_and_factors
    Z_rot, X_rot, H = varimax_rotation(Z, X)

    assert Z_rot.shape == Z.shape
    assert X_rot.shape == X.shape
    np.testing.assert_allclose(Z_rot @ X_rot, Z @ X, atol=1e-10)


def test_varimax_rotation_is_orthogonal(loadings_and_factors):
    Z, X = loadings_and_factors
    _, _, H = varimax_rotation(Z, X)
    np.testing.assert_allclose(H.T @ H, np.eye(3), atol=1e-8)


def test_varimax_single_factor_is_identity():
    Z = np.array([[0.5], [0.2], [-0.3]])
    X = np.arange(10, dtype=float)[None, :]
    Z_rot, X_rot, H = varimax_rotation(Z, X)
    np.testing.assert_array_equal(H, np.eye(1))
    np.testing.assert_array_equal(Z_rot, Z)
    np.testing.assert_array_equal(X_rot, X)


def test_varimax_non_conformable_raises(loadings_and_factors):
    Z, X = loadings_and_factors
    with pytest.raises(ValueError, match="conformable"):
        varimax_rotation(Z, X[:2])


def test_match_factors_undoes_permutation_and_sign():
    rng = np.random.default_rng(4)
    reference = rng.normal(size=(3, 60)).cumsum(axis=1)
    estimate = np.vstack([-reference[2], reference[0], 2.0 * reference[1]])
    estimate = estimate + 0.01 * rng.normal(size=estimate.shape)

    aligned, order, corr = match_factors(reference, estimate)

    np.testing.assert_array_equal(order, [1, 2, 0])
    np.testing.assert_allclose(corr, 1.0, atol=1e-3)
    for ref_row, est_row in zip(reference, aligned):
        assert np.corrcoef(ref_row, est_row)[0, 1] > 0.99


def test_match_factors_shape_mismatch_raises():
    with pytest.raises(ValueError, match="same shape"):
        match_factors(np.zeros((2, 10)), np.zeros((3, 10)))
