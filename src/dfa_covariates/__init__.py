"""Simulation and estimation of Dynamic Factor Analysis models with covariates."""

from dfa_covariates.models.dfa import (
    CovariateEffect,
    DFASimulation,
    ErrorCovariance,
    EstimationConfig,
    ScenarioConfig,
)
from dfa_covariates.core.simulation import simulate_dfa
from dfa_covariates.core.estimation import DFAFitResult, DFAModel, fit_dfa

__version__ = "0.1.0"

__all__ = [
    "CovariateEffect",
    "DFAFitResult",
    "DFAModel",
    "DFASimulation",
    "ErrorCovariance",
    "EstimationConfig",
    "ScenarioConfig",
    "fit_dfa",
    "simulate_dfa",
]
