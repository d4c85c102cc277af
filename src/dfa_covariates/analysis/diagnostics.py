"""Tables summarizing simulated data and DFA fits for reporting."""

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from dfa_covariates.core.estimation import DFAFitResult
from dfa_covariates.core.rotation import match_factors, varimax_rotation


def _series_labels(n: int, prefix: str = "y") -> list:
    return [f"{prefix}{i + 1}" for i in range(n)]


def correlation_table(observations: np.ndarray, labels: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Correlation matrix between the observed series (rows of an N x T matrix)."""
    observations = np.asarray(observations, dtype=float)
    labels = list(labels) if labels is not None else _series_labels(observations.shape[0])
    return pd.DataFrame(np.corrcoef(observations), index=labels, columns=labels)


def factor_recovery_table(true_factors: np.ndarray, fit: DFAFitResult, rotate: bool = True) -> pd.DataFrame:
    """
    Compare simulated factors with the factors recovered by a fit.

    The estimated factors are optionally varimax-rotated, then matched to
    the true factors by order and sign.

    Returns
    -------
    pd.DataFrame
        One row per true factor with the matched estimate index and their
        correlation.
    """
    factors = fit.factors
    if rotate:
        _, factors, _ = varimax_rotation(fit.loadings, fit.factors)
    _, order, corr = match_factors(true_factors, factors)
    return pd.DataFrame({
        "factor": _series_labels(len(order), prefix="x"),
        "matched_estimate": [f"x{j + 1}" for j in order],
        "correlation": corr,
    })


def fitted_vs_observed(observations: np.ndarray, fit: DFAFitResult,
                       labels: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Long table of observed and fitted values with residuals, one row per series and time."""
    observations = np.asarray(observations, dtype=float)
    N, T = observations.shape
    labels = list(labels) if labels is not None else _series_labels(N)
    return pd.DataFrame({
        "series": np.repeat(labels, T),
        "time": np.tile(np.arange(1, T + 1), N),
        "observed": observations.ravel(),
        "fitted": fit.fitted.ravel(),
        "residual": (observations - fit.fitted).ravel(),
    })


def effect_table(fit: DFAFitResult, covariate_names: Sequence[str],
                 true_effects: Optional[np.ndarray] = None) -> pd.DataFrame:
    """Estimated covariate effects per series, with the true values when known."""
    if fit.covariate_effects is None:
        return pd.DataFrame(columns=["series", "covariate", "estimate"])

    effects = fit.covariate_effects
    N, k = effects.shape
    if len(covariate_names) != k:
        raise ValueError(f"Expected {k} covariate names, got {len(covariate_names)}")

    table = pd.DataFrame({
        "series": np.repeat(_series_labels(N), k),
        "covariate": np.tile(list(covariate_names), N),
        "estimate": effects.ravel(),
    })
    if true_effects is not None:
        table["true"] = np.asarray(true_effects).ravel()
        table["error"] = table["estimate"] - table["true"]
    return table
