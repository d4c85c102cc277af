"""
Simulation functions for Dynamic Factor Analysis models.

Generates the latent random-walk factors, the identifiable loadings matrix,
the deterministic covariates and the observed series. Every random draw comes
from an explicit ``jax.random`` key that the caller passes in.
"""

import logging
from typing import Optional, Sequence

import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
from jaxtyping import Array, Float, PRNGKeyArray

from dfa_covariates.models.dfa import DFASimulation, ScenarioConfig

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)


def standardize_rows(x: Float[Array, "m t"]) -> Float[Array, "m t"]:
    """Scale each row to zero mean and unit sample standard deviation (ddof=1)."""
    centered = x - jnp.mean(x, axis=1, keepdims=True)
    return centered / jnp.std(x, axis=1, ddof=1, keepdims=True)


def simulate_factors(
    key: PRNGKeyArray, M: int, T: int, init_var: float = 5.0
) -> Float[Array, "M T"]:
    """
    Simulate M independent Gaussian random walks of length T.

    Innovations are standard normal, except the first innovation of each
    walk which has variance ``init_var`` to spread the initial states. Each
    walk is standardized after the cumulative sum.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX PRNG key.
    M : int
        Number of factors.
    T : int
        Number of time steps, at least 2.
    init_var : float, optional
        Variance of the first innovation. Defaults to 5.0.

    Returns
    -------
    jnp.ndarray
        Standardized factors with shape (M, T).
    """
    if M < 1:
        raise ValueError(f"M must be at least 1, got {M}")
    if T < 2:
        raise ValueError(f"T must be at least 2 to standardize the factors, got {T}")

    key_init, key_innov = jr.split(key)
    innovations = jr.normal(key_innov, (M, T))
    innovations = innovations.at[:, 0].set(jnp.sqrt(init_var) * jr.normal(key_init, (M,)))

    walks = jnp.cumsum(innovations, axis=1)
    return standardize_rows(walks)


def build_loadings(
    key: PRNGKeyArray, N: int, M: int, decimals: int = 2
) -> Float[Array, "N M"]:
    """
    Build an N x M loadings matrix in the identifiable DFA form.

    Entries on and below the diagonal are Uniform(-1, 1) draws, the diagonal
    is replaced by its absolute values sorted in descending order and the
    strictly-upper triangle is zero.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX PRNG key.
    N : int
        Number of observed series.
    M : int
        Number of factors, 1 <= M <= N.
    decimals : int, optional
        Rounding precision. Defaults to 2.

    Returns
    -------
    jnp.ndarray
        Loadings with shape (N, M).

    Raises
    ------
    ValueError
        If M < 1 or N < M.
    """
    if M < 1:
        raise ValueError(f"M must be at least 1, got {M}")
    if N < M:
        raise ValueError(f"N must be >= M to place the loadings diagonal, got N={N}, M={M}")

    loadings = jr.uniform(key, (N, M), minval=-1.0, maxval=1.0)
    diag = jnp.sort(jnp.abs(jnp.diag(loadings)))[::-1]
    idx = jnp.arange(M)
    loadings = loadings.at[idx, idx].set(diag)
    loadings = jnp.tril(loadings)
    return jnp.round(loadings, decimals)


def make_covariates(T: int) -> Float[Array, "2 T"]:
    """
    Build the 2 x T covariate matrix.

    Row 0 is the linear ramp index/10 centered on zero, row 1 is one full
    sine cycle sin(2*pi*index/T), with index running from 1 to T.
    """
    if T < 1:
        raise ValueError(f"T must be at least 1, got {T}")
    index = jnp.arange(1, T + 1, dtype=jnp.float64)
    trend = index / 10.0
    trend = trend - jnp.mean(trend)
    season = jnp.sin(2.0 * jnp.pi * index / T)
    return jnp.stack([trend, season])


def make_effects(N: int, effect_sizes: Sequence[float]) -> Float[Array, "N k"]:
    """Effect matrix with every series sharing the same coefficient per covariate."""
    sizes = jnp.asarray(effect_sizes, dtype=jnp.float64)
    return jnp.tile(sizes, (N, 1))


def synthesize_observations(
    key: PRNGKeyArray,
    loadings: Float[Array, "N M"],
    factors: Float[Array, "M T"],
    obs_var: float,
    effects: Optional[Float[Array, "N k"]] = None,
    covariates: Optional[Float[Array, "k T"]] = None,
    demean: bool = False,
) -> Float[Array, "N T"]:
    """
    Combine factors, covariate effects and IID Gaussian noise.

    Computes Y = Z X [+ C D] + e with e ~ N(0, obs_var) in every cell.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX PRNG key for the noise.
    loadings : jnp.ndarray
        Loadings Z with shape (N, M).
    factors : jnp.ndarray
        Factors X with shape (M, T).
    obs_var : float
        Noise variance. Zero gives a noise-free Z X.
    effects : jnp.ndarray, optional
        Covariate effects C with shape (N, k). Must be given with ``covariates``.
    covariates : jnp.ndarray, optional
        Covariates D with shape (k, T). Must be given with ``effects``.
    demean : bool, optional
        Subtract each row mean after adding the noise. Defaults to False.

    Returns
    -------
    jnp.ndarray
        Observations with shape (N, T).
    """
    loadings = jnp.asarray(loadings)
    factors = jnp.asarray(factors)
    if loadings.shape[1] != factors.shape[0]:
        raise ValueError(
            f"loadings {loadings.shape} and factors {factors.shape} are not conformable"
        )
    if obs_var < 0:
        raise ValueError(f"obs_var must be non-negative, got {obs_var}")
    if (effects is None) != (covariates is None):
        raise ValueError("effects and covariates must be given together")

    N, T = loadings.shape[0], factors.shape[1]
    signal = loadings @ factors

    if effects is not None:
        effects = jnp.asarray(effects)
        covariates = jnp.asarray(covariates)
        if effects.shape[0] != N or covariates.shape[1] != T or effects.shape[1] != covariates.shape[0]:
            raise ValueError(
                f"effects {effects.shape} and covariates {covariates.shape} do not match "
                f"observations of shape ({N}, {T})"
            )
        signal = signal + effects @ covariates

    noise = jnp.sqrt(obs_var) * jr.normal(key, (N, T))
    observations = signal + noise

    if demean:
        observations = observations - jnp.mean(observations, axis=1, keepdims=True)
    return observations


def simulate_dfa(config: ScenarioConfig) -> DFASimulation:
    """
    Run the full simulation for a scenario.

    A single PRNG key derived from ``config.seed`` is split into independent
    subkeys for the factors, the loadings and the observation noise.

    Parameters
    ----------
    config : ScenarioConfig
        Scenario settings.

    Returns
    -------
    DFASimulation
        Simulated matrices as NumPy arrays.
    """
    key = jr.PRNGKey(config.seed)
    key_factors, key_loadings, key_noise = jr.split(key, 3)

    factors = simulate_factors(key_factors, config.M, config.T, init_var=config.init_var)
    loadings = build_loadings(key_loadings, config.N, config.M, decimals=config.loadings_decimals)

    covariates = effects = None
    if config.has_covariates:
        covariates = make_covariates(config.T)
        effects = make_effects(config.N, config.effect_sizes)

    observations = synthesize_observations(
        key_noise,
        loadings,
        factors,
        config.obs_var,
        effects=effects,
        covariates=covariates,
        demean=config.demean,
    )
    logger.debug(
        "Simulated DFA data: N=%d, M=%d, T=%d, seed=%d, covariates=%s",
        config.N, config.M, config.T, config.seed, config.has_covariates,
    )

    return DFASimulation(
        factors=np.asarray(factors),
        loadings=np.asarray(loadings),
        covariates=None if covariates is None else np.asarray(covariates),
        effects=None if effects is None else np.asarray(effects),
        observations=np.asarray(observations),
        scenario=config,
    )
