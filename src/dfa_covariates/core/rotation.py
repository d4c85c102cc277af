"""
Factor rotation utilities for fitted DFA models.

Any non-singular M x M matrix H gives an equivalent fit, since
Z x_t = (Z H)(H^{-1} x_t). The lower-triangular loadings used during
estimation pick one representative; these helpers rotate a fit towards a
more interpretable one (varimax) and align estimated factors with reference
factors. They are optional post-processing and are not applied by
``fit_dfa``.
"""

from typing import Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment
from statsmodels.multivariate.factor_rotation import rotate_factors


def varimax_rotation(loadings: np.ndarray, factors: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Apply a varimax rotation to loadings and factors.

    Parameters
    ----------
    loadings : np.ndarray
        Estimated loadings Z with shape (N, M).
    factors : np.ndarray
        Estimated factors X with shape (M, T).

    Returns
    -------
    tuple
        Contains:
        rotated_loadings : np.ndarray
            Z H with shape (N, M).
        rotated_factors : np.ndarray
            H^{-1} X with shape (M, T).
        rotation : np.ndarray
            Orthogonal rotation matrix H with shape (M, M).
    """
    loadings = np.asarray(loadings, dtype=float)
    factors = np.asarray(factors, dtype=float)
    if loadings.shape[1] != factors.shape[0]:
        raise ValueError(
            f"loadings {loadings.shape} and factors {factors.shape} are not conformable"
        )

    M = loadings.shape[1]
    if M == 1:
        # Nothing to rotate with a single factor
        rotation = np.eye(1)
    else:
        _, rotation = rotate_factors(loadings, "varimax")
        rotation = np.asarray(rotation)

    rotated_loadings = loadings @ rotation
    rotated_factors = np.linalg.solve(rotation, factors)
    return rotated_loadings, rotated_factors, rotation


def match_factors(reference: np.ndarray, estimate: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Reorder and sign-flip estimated factors to best match reference factors.

    Solves the assignment problem on absolute correlations between the rows
    of ``reference`` and ``estimate``, then flips the sign of every matched
    estimate whose correlation is negative.

    Parameters
    ----------
    reference : np.ndarray
        Reference factors with shape (M, T), e.g. the simulated truth.
    estimate : np.ndarray
        Estimated factors with shape (M, T).

    Returns
    -------
    tuple
        Contains:
        aligned : np.ndarray
            Estimated factors reordered and sign-adjusted, shape (M, T).
        order : np.ndarray
            Row of ``estimate`` matched to each reference row.
        correlations : np.ndarray
            Correlation of each reference row with its aligned estimate.
    """
    reference = np.asarray(reference, dtype=float)
    estimate = np.asarray(estimate, dtype=float)
    if reference.shape != estimate.shape:
        raise ValueError(f"reference {reference.shape} and estimate {estimate.shape} must have the same shape")

    M = reference.shape[0]
    corr = np.corrcoef(reference, estimate)[:M, M:]
    _, order = linear_sum_assignment(-np.abs(corr))

    signs = np.sign(corr[np.arange(M), order])
    signs[signs == 0] = 1.0
    aligned = estimate[order] * signs[:, None]
    return aligned, order, np.abs(corr[np.arange(M), order])
