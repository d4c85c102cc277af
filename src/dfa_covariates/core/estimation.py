"""
Maximum likelihood estimation of Dynamic Factor Analysis models.

The DFA model is written as a linear Gaussian state space model and handed to
``statsmodels``, which runs the Kalman filter and the optimizer:

    y_t = Z x_t + C d_t + v_t,    v_t ~ N(0, R)
    x_t = x_{t-1} + w_t,          w_t ~ N(0, I)

Z is lower triangular (zero above the diagonal) so that the factors are
identified up to the rotation discussed in ``dfa_covariates.core.rotation``.
"""

import logging
import warnings
from collections import namedtuple
from dataclasses import replace
from typing import Optional

import numpy as np
from statsmodels.tools.sm_exceptions import ConvergenceWarning
from statsmodels.tsa.statespace.mlemodel import MLEModel

from dfa_covariates.models.dfa import CovariateEffect, ErrorCovariance, EstimationConfig

logger = logging.getLogger(__name__)


# Result data structure for a single DFA fit
DFAFitResult = namedtuple("DFAFitResult", [
    "loadings",            # Estimated Z (N x M)
    "factors",             # Smoothed factors (M x T)
    "covariate_effects",   # Estimated C (N x k), None without covariates
    "obs_cov",             # Estimated R (N x N)
    "fitted",              # Z x_t + C d_t (N x T)
    "log_likelihood",      # Maximized log-likelihood
    "aic",                 # Akaike information criterion
    "bic",                 # Bayesian information criterion
    "converged",           # Optimizer convergence flag
    "iterations",          # Optimizer iterations, or function calls for bfgs and nm
    "config",              # EstimationConfig used for the fit
    "results",             # Raw statsmodels MLEResults
])


class DFAModel(MLEModel):
    """
    State space form of a DFA model with optional covariates.

    Parameters
    ----------
    observations : array_like
        Observed matrix with shape (N, T). Series are rows.
    n_factors : int
        Number of random-walk factors M, with M <= N.
    covariates : array_like, optional
        Covariate matrix with shape (k, T).
    error_cov : ErrorCovariance, optional
        Structure of R. Defaults to diagonal and equal.
    covariate_effect : CovariateEffect, optional
        Structure of C. Defaults to unconstrained.
    initial_state_var : float, optional
        Variance of the known initial state distribution N(0, v I).
    """

    MIN_VARIANCE = 1e-6  # Floor for variances in the constrained space

    def __init__(self, observations, n_factors, covariates=None,
                 error_cov=ErrorCovariance.DIAGONAL_EQUAL,
                 covariate_effect=CovariateEffect.UNCONSTRAINED,
                 initial_state_var=5.0):
        observations = np.asarray(observations, dtype=float)
        if observations.ndim != 2:
            raise ValueError(f"observations should be 2-dimensional (N, T), got shape {observations.shape}")
        n_obs, n_time = observations.shape
        if n_factors < 1 or n_factors > n_obs:
            raise ValueError(f"n_factors must be between 1 and N={n_obs}, got {n_factors}")

        if covariates is not None:
            covariates = np.atleast_2d(np.asarray(covariates, dtype=float))
            if covariates.shape[1] != n_time:
                raise ValueError(
                    f"covariates should have {n_time} columns, got shape {covariates.shape}"
                )

        self._observations = observations
        self.n_obs = n_obs
        self.k_factors = n_factors
        self.covariates = covariates
        self.k_covariates = 0 if covariates is None else covariates.shape[0]
        self.error_cov = ErrorCovariance.from_tag(error_cov)
        self.covariate_effect = CovariateEffect.from_tag(covariate_effect)
        self.initial_state_var = initial_state_var

        # statsmodels expects (nobs, k_endog)
        super().__init__(observations.T, k_states=n_factors, k_posdef=n_factors)

        self._initialize_parameter_indices()

        # Random-walk factors with unit innovation variance
        self.ssm['transition'] = np.eye(n_factors)
        self.ssm['selection'] = np.eye(n_factors)
        self.ssm['state_cov'] = np.eye(n_factors)
        self.ssm['state_intercept'] = np.zeros((n_factors, 1))
        self.ssm.initialize_known(np.zeros(n_factors), initial_state_var * np.eye(n_factors))

        self._loadings_mask = np.tril(np.ones((n_obs, n_factors), dtype=bool))

        logger.debug(
            "Initialized DFAModel: N=%d, M=%d, k=%d, R=%s, C=%s, params=%d",
            n_obs, n_factors, self.k_covariates, self.error_cov.value,
            self.covariate_effect.value, self.k_params,
        )

    def _initialize_parameter_indices(self):
        """Calculate slices for each block of the parameter vector."""
        N, M, k = self.n_obs, self.k_factors, self.k_covariates
        idx = 0

        # Loadings on and below the diagonal
        n_loadings = N * M - M * (M - 1) // 2
        self.param_indices_loadings = slice(idx, idx + n_loadings)
        idx += n_loadings

        if self.covariate_effect is CovariateEffect.EQUAL:
            n_effects = k
        else:
            n_effects = N * k
        self.param_indices_effects = slice(idx, idx + n_effects)
        idx += n_effects

        if self.error_cov is ErrorCovariance.DIAGONAL_EQUAL:
            n_cov = 1
        elif self.error_cov is ErrorCovariance.DIAGONAL_UNEQUAL:
            n_cov = N
        elif self.error_cov is ErrorCovariance.EQUALVARCOV:
            n_cov = 2  # variance and correlation
        else:
            n_cov = N * (N + 1) // 2  # Cholesky factor
        self.param_indices_obs_cov = slice(idx, idx + n_cov)
        idx += n_cov

        self.k_params = idx

    @property
    def observations(self):
        """Observed matrix with shape (N, T)."""
        return self._observations

    @property
    def _min_correlation(self):
        # Lower bound keeping an equal-variance-covariance matrix positive definite
        return -1.0 / (self.n_obs - 1) if self.n_obs > 1 else -1.0

    @property
    def start_params(self):
        """Starting values in the constrained space from a principal components fit."""
        params = np.zeros(self.k_params)
        y = self.observations
        N, M = self.n_obs, self.k_factors

        resid = y
        if self.k_covariates:
            d = self.covariates
            # Least-squares effects of the covariates on each series
            effects = np.linalg.lstsq(d.T, y.T, rcond=None)[0].T
            if self.covariate_effect is CovariateEffect.EQUAL:
                params[self.param_indices_effects] = effects.mean(axis=0)
                effects = np.tile(effects.mean(axis=0), (N, 1))
            else:
                params[self.param_indices_effects] = effects.ravel()
            resid = y - effects @ d

        resid = resid - resid.mean(axis=1, keepdims=True)
        u, s, _ = np.linalg.svd(resid, full_matrices=False)
        n_time = resid.shape[1]
        loadings = u[:, :M] * s[:M] / n_time
        params[self.param_indices_loadings] = loadings[self._loadings_mask]

        low_rank = u[:, :M] @ u[:, :M].T @ resid
        variances = np.maximum(np.var(resid - low_rank, axis=1), 0.1 * np.var(resid, axis=1))
        variances = np.maximum(variances, self.MIN_VARIANCE)

        if self.error_cov is ErrorCovariance.DIAGONAL_EQUAL:
            params[self.param_indices_obs_cov] = variances.mean()
        elif self.error_cov is ErrorCovariance.DIAGONAL_UNEQUAL:
            params[self.param_indices_obs_cov] = variances
        elif self.error_cov is ErrorCovariance.EQUALVARCOV:
            params[self.param_indices_obs_cov] = [variances.mean(), 0.0]
        else:
            chol = np.diag(np.sqrt(variances))
            params[self.param_indices_obs_cov] = chol[np.tril_indices(N)]

        return params

    @property
    def param_names(self):
        """Names for the parameters in result summaries."""
        N, M = self.n_obs, self.k_factors
        rows, cols = np.nonzero(self._loadings_mask)
        names = [f'Z.{i}.{j}' for i, j in zip(rows, cols)]

        cov_names = [f'd.{j}' for j in range(self.k_covariates)]
        if self.covariate_effect is CovariateEffect.EQUAL:
            names += [f'C.{c}' for c in cov_names]
        else:
            names += [f'C.{i}.{c}' for i in range(N) for c in cov_names]

        if self.error_cov is ErrorCovariance.DIAGONAL_EQUAL:
            names += ['R.var']
        elif self.error_cov is ErrorCovariance.DIAGONAL_UNEQUAL:
            names += [f'R.var.{i}' for i in range(N)]
        elif self.error_cov is ErrorCovariance.EQUALVARCOV:
            names += ['R.var', 'R.corr']
        else:
            names += [f'R.chol.{i}.{j}' for i, j in zip(*np.tril_indices(N))]
        return names

    def _chol_diag_positions(self):
        """Positions of the Cholesky diagonal inside the covariance block."""
        rows, cols = np.tril_indices(self.n_obs)
        return np.flatnonzero(rows == cols)

    def transform_params(self, unconstrained):
        """Apply transformations: unconstrained -> constrained space."""
        unconstrained = np.asarray(unconstrained)
        constrained = np.array(unconstrained)
        block = unconstrained[self.param_indices_obs_cov]
        cov = np.array(block)

        if self.error_cov in (ErrorCovariance.DIAGONAL_EQUAL, ErrorCovariance.DIAGONAL_UNEQUAL):
            cov = np.exp(block) + self.MIN_VARIANCE
        elif self.error_cov is ErrorCovariance.EQUALVARCOV:
            lower = self._min_correlation
            cov[0] = np.exp(block[0]) + self.MIN_VARIANCE
            cov[1] = lower + (1.0 - lower) / (1.0 + np.exp(-block[1]))
        else:
            diag_pos = self._chol_diag_positions()
            cov[diag_pos] = np.exp(block[diag_pos]) + np.sqrt(self.MIN_VARIANCE)

        constrained[self.param_indices_obs_cov] = cov
        return constrained

    def untransform_params(self, constrained):
        """Reverse transformations: constrained -> unconstrained space."""
        constrained = np.asarray(constrained)
        unconstrained = np.array(constrained)
        block = constrained[self.param_indices_obs_cov]
        cov = np.array(block)

        if self.error_cov in (ErrorCovariance.DIAGONAL_EQUAL, ErrorCovariance.DIAGONAL_UNEQUAL):
            cov = np.log(np.maximum(block - self.MIN_VARIANCE, 1e-12))
        elif self.error_cov is ErrorCovariance.EQUALVARCOV:
            lower = self._min_correlation
            cov[0] = np.log(np.maximum(block[0] - self.MIN_VARIANCE, 1e-12))
            p = np.clip((block[1] - lower) / (1.0 - lower), 1e-10, 1 - 1e-10)
            cov[1] = np.log(p / (1.0 - p))
        else:
            diag_pos = self._chol_diag_positions()
            cov[diag_pos] = np.log(np.maximum(block[diag_pos] - np.sqrt(self.MIN_VARIANCE), 1e-12))

        unconstrained[self.param_indices_obs_cov] = cov
        return unconstrained

    def loadings_from_params(self, params):
        """Loadings matrix Z (N x M) from constrained parameters."""
        params = np.asarray(params)
        loadings = np.zeros((self.n_obs, self.k_factors), dtype=params.dtype)
        loadings[self._loadings_mask] = params[self.param_indices_loadings]
        return loadings

    def effects_from_params(self, params):
        """Covariate effect matrix C (N x k) from constrained parameters, None without covariates."""
        if not self.k_covariates:
            return None
        params = np.asarray(params)
        values = params[self.param_indices_effects]
        if self.covariate_effect is CovariateEffect.EQUAL:
            return np.tile(values, (self.n_obs, 1))
        return values.reshape(self.n_obs, self.k_covariates)

    def obs_cov_from_params(self, params):
        """Observation covariance R (N x N) from constrained parameters."""
        params = np.asarray(params)
        block = params[self.param_indices_obs_cov]
        N = self.n_obs

        if self.error_cov is ErrorCovariance.DIAGONAL_EQUAL:
            return block[0] * np.eye(N, dtype=params.dtype)
        if self.error_cov is ErrorCovariance.DIAGONAL_UNEQUAL:
            return np.diag(block)
        if self.error_cov is ErrorCovariance.EQUALVARCOV:
            variance, corr = block
            return variance * ((1.0 - corr) * np.eye(N, dtype=params.dtype)
                               + corr * np.ones((N, N), dtype=params.dtype))
        chol = np.zeros((N, N), dtype=params.dtype)
        chol[np.tril_indices(N)] = block
        return chol @ chol.T

    def update(self, params, **kwargs):
        """
        Update the state space system matrices from a parameter vector.

        Args:
            params (ndarray): Parameters, transformed or not as indicated by kwargs.
            **kwargs: Passed on to ``MLEModel.update``.
        """
        params = super().update(params, **kwargs)

        self.ssm['design'] = self.loadings_from_params(params)
        self.ssm['obs_cov'] = self.obs_cov_from_params(params)

        effects = self.effects_from_params(params)
        if effects is not None:
            # Time-varying observation intercept C d_t, shape (N, T)
            self.ssm['obs_intercept'] = effects @ self.covariates


def fit_dfa(observations, n_factors=None, covariates=None,
            config: Optional[EstimationConfig] = None) -> DFAFitResult:
    """
    Fit a DFA model by maximum likelihood.

    Parameters
    ----------
    observations : array_like
        Observed matrix with shape (N, T).
    n_factors : int, optional
        Number of factors. Overrides ``config.n_factors`` when given.
    covariates : array_like, optional
        Covariate matrix with shape (k, T).
    config : EstimationConfig, optional
        Estimation options. Defaults to ``EstimationConfig()``.

    Returns
    -------
    DFAFitResult
        Point estimates and diagnostics. ``converged`` is False when the
        optimizer did not report convergence; the fit is not retried.
    """
    if config is None:
        config = EstimationConfig()
    if n_factors is not None and n_factors != config.n_factors:
        config = replace(config, n_factors=n_factors)
    n_factors = config.n_factors

    model = DFAModel(
        observations,
        n_factors,
        covariates=covariates,
        error_cov=config.error_cov,
        covariate_effect=config.covariate_effect,
        initial_state_var=config.initial_state_var,
    )

    fit_kwargs = {}
    if config.method == "lbfgs":
        # Numerical gradients cost k_params + 1 likelihood calls per iteration
        fit_kwargs["maxfun"] = config.maxiter * (model.k_params + 1)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        results = model.fit(method=config.method, maxiter=config.maxiter, disp=False,
                            cov_type="none", **fit_kwargs)
    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            logger.warning("statsmodels: %s", w.message)
        else:
            warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

    params = np.asarray(results.params)
    loadings = model.loadings_from_params(params)
    effects = model.effects_from_params(params)
    factors = np.asarray(results.smoothed_state)

    fitted = loadings @ factors
    if effects is not None:
        fitted = fitted + effects @ model.covariates

    retvals = results.mle_retvals or {}
    converged = bool(retvals.get("converged", False))
    # bfgs and nm report function calls instead of iterations
    iterations = retvals.get("iterations", retvals.get("fcalls"))
    if not converged:
        logger.warning(
            "DFA fit did not converge (M=%d, R=%s, k=%d), iteration count: %s",
            n_factors, config.error_cov.value, model.k_covariates, iterations,
        )
    else:
        logger.info(
            "DFA fit converged: M=%d, R=%s, k=%d, logLik=%.3f, AIC=%.3f",
            n_factors, config.error_cov.value, model.k_covariates, results.llf, results.aic,
        )

    return DFAFitResult(
        loadings=loadings,
        factors=factors,
        covariate_effects=effects,
        obs_cov=model.obs_cov_from_params(params),
        fitted=fitted,
        log_likelihood=float(results.llf),
        aic=float(results.aic),
        bic=float(results.bic),
        converged=converged,
        iterations=iterations,
        config=config,
        results=results,
    )
