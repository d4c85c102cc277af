"""
Configuration and data classes for Dynamic Factor Analysis (DFA) scenarios.

This module provides the validated containers that flow through the package:
the simulation scenario, the estimation options, and the bundle of simulated
matrices produced for one scenario.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class ErrorCovariance(Enum):
    """Structure of the observation error covariance matrix R."""
    DIAGONAL_EQUAL = "diagonal and equal"
    DIAGONAL_UNEQUAL = "diagonal and unequal"
    EQUALVARCOV = "equalvarcov"
    UNCONSTRAINED = "unconstrained"

    @classmethod
    def from_tag(cls, tag) -> "ErrorCovariance":
        """Parse a structure tag such as ``"diagonal and equal"`` or ``"DIAGONAL_EQUAL"``."""
        if isinstance(tag, cls):
            return tag
        for member in cls:
            if tag == member.value or str(tag).upper() == member.name:
                return member
        raise ValueError(
            f"Unknown error covariance structure '{tag}'. "
            f"Expected one of {[m.value for m in cls]}"
        )


class CovariateEffect(Enum):
    """Structure of the covariate effect matrix."""
    UNCONSTRAINED = "unconstrained"  # one coefficient per series and covariate
    EQUAL = "equal"  # one coefficient per covariate, shared by all series

    @classmethod
    def from_tag(cls, tag) -> "CovariateEffect":
        """Parse a covariate effect tag."""
        if isinstance(tag, cls):
            return tag
        for member in cls:
            if tag == member.value or str(tag).upper() == member.name:
                return member
        raise ValueError(
            f"Unknown covariate effect structure '{tag}'. "
            f"Expected one of {[m.value for m in cls]}"
        )


COVARIATE_NAMES = ("trend", "season")


@dataclass(frozen=True)
class ScenarioConfig:
    """
    Settings for one simulated DFA data set.

    Parameters
    ----------
    N : int
        Number of observed time series.
    M : int
        Number of latent factors. Must satisfy 1 <= M <= N.
    T : int
        Length of each time series. Must be at least 2.
    seed : int
        Seed for the JAX PRNG key the whole simulation is derived from.
    obs_var : float
        Variance of the IID Gaussian observation noise.
    effect_sizes : tuple of float
        Effect of each covariate (trend, season), constant across series.
        An empty tuple simulates data without covariate effects.
    init_var : float
        Variance of the first innovation of every factor random walk.
    loadings_decimals : int
        Number of decimals the loadings are rounded to.
    demean : bool
        Whether to subtract each row mean from the observed matrix.
    """

    N: int = 15
    M: int = 3
    T: int = 30
    seed: int = 123
    obs_var: float = 0.04
    effect_sizes: Tuple[float, ...] = (0.5, 0.5)
    init_var: float = 5.0
    loadings_decimals: int = 2
    demean: bool = False

    def __post_init__(self):
        """
        Validate scenario dimensions and variances.

        Raises
        ------
        ValueError
            If the dimensions are inconsistent or a variance is negative.
        """
        if self.M < 1:
            raise ValueError(f"M must be at least 1, got {self.M}")
        if self.N < self.M:
            raise ValueError(f"N must be >= M, got N={self.N}, M={self.M}")
        if self.T < 2:
            raise ValueError(f"T must be at least 2, got {self.T}")
        if self.obs_var < 0:
            raise ValueError(f"obs_var must be non-negative, got {self.obs_var}")
        if self.init_var <= 0:
            raise ValueError(f"init_var must be positive, got {self.init_var}")
        if len(self.effect_sizes) not in (0, len(COVARIATE_NAMES)):
            raise ValueError(
                f"effect_sizes should have length 0 or {len(COVARIATE_NAMES)}, "
                f"got {len(self.effect_sizes)}"
            )
        # Lists from JSON configs are stored as tuples so the config stays hashable
        object.__setattr__(self, "effect_sizes", tuple(float(e) for e in self.effect_sizes))

    @property
    def has_covariates(self) -> bool:
        return len(self.effect_sizes) > 0


@dataclass(frozen=True)
class EstimationConfig:
    """
    Options passed to the state-space estimator.

    Parameters
    ----------
    n_factors : int
        Number of latent factors fitted.
    error_cov : ErrorCovariance
        Structure of the observation error covariance.
    covariate_effect : CovariateEffect
        Structure of the covariate effect matrix.
    method : str
        Optimizer name understood by ``MLEModel.fit`` (e.g. ``"bfgs"``). For
        ``"lbfgs"`` the function evaluation limit is scaled with the number
        of parameters.
    maxiter : int
        Maximum number of optimizer iterations.
    initial_state_var : float
        Variance of the known initial factor state distribution.
    """

    n_factors: int = 3
    error_cov: ErrorCovariance = ErrorCovariance.DIAGONAL_EQUAL
    covariate_effect: CovariateEffect = CovariateEffect.UNCONSTRAINED
    method: str = "bfgs"
    maxiter: int = 500
    initial_state_var: float = 5.0

    def __post_init__(self):
        if self.n_factors < 1:
            raise ValueError(f"n_factors must be at least 1, got {self.n_factors}")
        if self.maxiter < 1:
            raise ValueError(f"maxiter must be at least 1, got {self.maxiter}")
        if self.initial_state_var <= 0:
            raise ValueError(f"initial_state_var must be positive, got {self.initial_state_var}")
        object.__setattr__(self, "error_cov", ErrorCovariance.from_tag(self.error_cov))
        object.__setattr__(self, "covariate_effect", CovariateEffect.from_tag(self.covariate_effect))


@dataclass(frozen=True, eq=False)
class DFASimulation:
    """
    Matrices generated for one scenario.

    Attributes
    ----------
    factors : np.ndarray
        Standardized random-walk factors X with shape (M, T).
    loadings : np.ndarray
        Lower-triangular loadings Z with shape (N, M).
    covariates : np.ndarray or None
        Covariate matrix D with shape (k, T), None without covariate effects.
    effects : np.ndarray or None
        Covariate effect matrix C with shape (N, k), None without covariate effects.
    observations : np.ndarray
        Observed matrix Y with shape (N, T).
    scenario : ScenarioConfig
        Settings the matrices were generated from.
    """

    factors: np.ndarray
    loadings: np.ndarray
    covariates: Optional[np.ndarray]
    effects: Optional[np.ndarray]
    observations: np.ndarray
    scenario: ScenarioConfig = field(default_factory=ScenarioConfig)

    def __post_init__(self):
        N, M, T = self.scenario.N, self.scenario.M, self.scenario.T
        if self.factors.shape != (M, T):
            raise ValueError(f"factors should be shape ({M}, {T}), got {self.factors.shape}")
        if self.loadings.shape != (N, M):
            raise ValueError(f"loadings should be shape ({N}, {M}), got {self.loadings.shape}")
        if self.observations.shape != (N, T):
            raise ValueError(f"observations should be shape ({N}, {T}), got {self.observations.shape}")

    @property
    def covariate_names(self) -> Tuple[str, ...]:
        return COVARIATE_NAMES if self.covariates is not None else ()

    def to_dict(self) -> dict:
        """Return the arrays keyed by name, e.g. for ``np.savez_compressed``."""
        arrays = {
            "factors": self.factors,
            "loadings": self.loadings,
            "observations": self.observations,
        }
        if self.covariates is not None:
            arrays["covariates"] = self.covariates
            arrays["effects"] = self.effects
        return arrays
