"""
Statistical utilities shared by the significance and differential models.
Includes distance stratification, negative-binomial tail probabilities,
Benjamini-Hochberg adjustment and a maximum-likelihood NB2 regression.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import statsmodels.api as sm
from scipy.optimize import minimize_scalar
from scipy.stats import nbinom
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from hicnb.core.exceptions import ModelFitError

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-8
MAX_DISPERSION = 1e4


def log_distance_strata(distance: np.ndarray, n_bins: int) -> np.ndarray:
    """
    Assign each distance to one of n_bins equal-width bins of log1p(distance).

    :param distance: Genomic distances (bp).
    :param n_bins: Number of strata.
    :return: Integer stratum index per distance, in [0, n_bins).
    """
    log_d = np.log1p(np.asarray(distance, dtype=float))
    if len(log_d) == 0:
        return np.zeros(0, dtype=int)
    edges = np.linspace(log_d.min(), log_d.max(), n_bins + 1)
    return np.digitize(log_d, edges[1:-1])


def bh_adjust(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjustment ignoring missing p-values.

    :param pvalues: Array of p-values, NaN for untested entries.
    :return: Array of q-values with NaN where the input was NaN.
    """
    p = np.asarray(pvalues, dtype=float)
    q = np.full(p.shape, np.nan)
    mask = np.isfinite(p)
    if mask.any():
        q[mask] = multipletests(p[mask], method='fdr_bh')[1]
    return q


def nb_upper_tail(counts, mu, alpha: float) -> np.ndarray:
    """
    P(X >= counts) for X ~ NB2(mu, alpha).
    """
    size = 1.0 / alpha
    prob = size / (size + np.asarray(mu, dtype=float))
    return nbinom.sf(np.asarray(counts) - 1, size, prob)


def nb_sdev(mu, alpha: float) -> np.ndarray:
    mu = np.asarray(mu, dtype=float)
    return np.sqrt(mu + alpha * mu ** 2)


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    size = 1.0 / alpha
    return float(np.sum(nbinom.logpmf(y, size, size / (size + mu))))


def estimate_alpha(y: np.ndarray, mu: np.ndarray) -> float:
    """
    Maximum-likelihood NB2 dispersion for fixed means, searched on the log scale.
    """
    result = minimize_scalar(
        lambda log_alpha: -nb_log_likelihood(y, mu, np.exp(log_alpha)),
        bounds=(np.log(MIN_DISPERSION), np.log(MAX_DISPERSION)),
        method='bounded',
        options={'xatol': 1e-6}
    )
    return float(np.exp(result.x))


@dataclass
class NBFit:
    """
    Fitted NB2 regression: log(mu) = X @ params (+ offset), Var = mu + alpha * mu^2.
    """
    params: np.ndarray
    alpha: float
    n_iter: int

    def predict(self, X: np.ndarray, offset: Optional[np.ndarray] = None) -> np.ndarray:
        eta = X @ self.params
        if offset is not None:
            eta = eta + offset
        return np.exp(eta)


def fit_glm(y, X, family, offset=None, maxiter: int = 100, start_params=None):
    """
    Fit a statsmodels GLM by IRLS.

    :raises ModelFitError: if fitting fails, does not converge or yields non-finite coefficients.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            result = sm.GLM(y, X, family=family, offset=offset).fit(maxiter=maxiter, start_params=start_params)
        except (PerfectSeparationError, np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
            raise ModelFitError(f"GLM fit failed: {e}") from e
    if not result.converged or not np.all(np.isfinite(result.params)):
        raise ModelFitError("GLM did not converge")
    return result


def fit_negative_binomial(
    y: np.ndarray,
    X: np.ndarray,
    offset: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-4
) -> NBFit:
    """
    Fit an NB2 regression with the dispersion estimated jointly by maximum likelihood.

    Regression coefficients (IRLS for fixed alpha) and alpha (1-D likelihood search
    for fixed means) are updated alternately, starting from a Poisson fit, until
    log(alpha) changes by less than tol.

    :param y: Observed counts.
    :param X: Design matrix including the intercept column.
    :param offset: Optional log-scale offset.
    :param max_iter: Maximum number of alternating updates.
    :param tol: Convergence tolerance on log(alpha).
    :return: NBFit.
    :raises ModelFitError: on degenerate data or non-convergence.
    """
    y = np.asarray(y, dtype=float)
    n_params = X.shape[1]
    n_nonzero = int(np.count_nonzero(y))
    if n_nonzero <= n_params:
        raise ModelFitError(f"only {n_nonzero} non-zero counts for {n_params} parameters")
    if np.linalg.matrix_rank(X) < n_params:
        raise ModelFitError("design matrix is rank deficient")

    poisson = fit_glm(y, X, sm.families.Poisson(), offset)
    alpha = estimate_alpha(y, poisson.mu)

    for iteration in range(1, max_iter + 1):
        result = fit_glm(y, X, sm.families.NegativeBinomial(alpha=alpha), offset)
        new_alpha = estimate_alpha(y, result.mu)
        if abs(np.log(new_alpha) - np.log(alpha)) < tol:
            logger.debug(f"NB fit converged after {iteration} iterations (alpha={new_alpha:.4g})")
            return NBFit(params=np.asarray(result.params, dtype=float), alpha=new_alpha, n_iter=iteration)
        alpha = new_alpha

    raise ModelFitError(f"dispersion did not converge within {max_iter} iterations")
