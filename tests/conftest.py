"""Pytest configuration and common fixtures for DFA simulation and estimation tests."""

from typing import Callable

import jax
import numpy as np
import pytest

from dfa_covariates.core.estimation import DFAFitResult
from dfa_covariates.core.simulation import simulate_dfa
from dfa_covariates.models.dfa import DFASimulation, EstimationConfig, ScenarioConfig

jax.config.update("jax_enable_x64", True)


@pytest.fixture(scope="session")
def scenario_fixture() -> Callable[..., ScenarioConfig]:
    """
    Pytest fixture providing a factory function to create scenario configs.

    The factory accepts N (default 6), M (default 1), T (default 40) and any
    other ScenarioConfig field as keyword arguments.

    Returns:
        Callable[..., ScenarioConfig]: A function that builds a validated
                                       ScenarioConfig.
    """

    def _create_scenario(N: int = 6, M: int = 1, T: int = 40, **kwargs) -> ScenarioConfig:
        """Builds a small scenario for fast tests."""
        kwargs.setdefault("seed", 42)
        kwargs.setdefault("obs_var", 0.01)
        return ScenarioConfig(N=N, M=M, T=T, **kwargs)

    return _create_scenario


@pytest.fixture(scope="session")
def example_simulation() -> DFASimulation:
    """The N=15, T=30, M=3, seed=123 example scenario."""
    return simulate_dfa(ScenarioConfig())


@pytest.fixture(scope="session")
def small_simulation(scenario_fixture) -> DFASimulation:
    """A one-factor scenario small enough to fit quickly."""
    return simulate_dfa(scenario_fixture(N=6, M=1, T=40, seed=7))


@pytest.fixture(scope="session")
def fake_fit_fixture() -> Callable[..., DFAFitResult]:
    """
    Pytest fixture providing a factory for DFAFitResult records without fitting.

    Useful for testing the reporting helpers, which only read the result
    fields.
    """

    def _create_fit(loadings, factors, covariate_effects=None, covariates=None, **kwargs) -> DFAFitResult:
        loadings = np.asarray(loadings, dtype=float)
        factors = np.asarray(factors, dtype=float)
        fitted = loadings @ factors
        if covariate_effects is not None:
            fitted = fitted + np.asarray(covariate_effects) @ np.asarray(covariates)
        fields = dict(
            loadings=loadings,
            factors=factors,
            covariate_effects=None if covariate_effects is None else np.asarray(covariate_effects, dtype=float),
            obs_cov=0.01 * np.eye(loadings.shape[0]),
            fitted=fitted,
            log_likelihood=-10.0,
            aic=30.0,
            bic=35.0,
            converged=True,
            iterations=5,
            config=EstimationConfig(n_factors=loadings.shape[1]),
            results=None,
        )
        fields.update(kwargs)
        return DFAFitResult(**fields)

    return _create_fit
