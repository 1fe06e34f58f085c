"""
Differential interaction analysis across conditions with replicates.

Workflow:
1. Intersect the filter set with the interactions present in every sample
2. Normalize each replicate by its fitted background (mu) relative to the
   geometric mean across the contrast's replicates
3. Estimate per-interaction dispersions and shrink them towards a
   distance-stratified dispersion-mean trend
4. Fit an NB GLM with a condition factor per interaction and Wald-test it
5. Benjamini-Hochberg adjust the p-values of each contrast
"""

import logging
from dataclasses import asdict
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import polygamma

from hicnb.core.exceptions import ConfigError, ModelFitError
from hicnb.core.filtering import normalize_filter_set
from hicnb.core.models import KEY_COLUMNS, DifferentialParams, DifferentialResult, Sample
from hicnb.utils.stats import MAX_DISPERSION, MIN_DISPERSION, bh_adjust, fit_glm, log_distance_strata

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['chrom', 'start_i', 'start_j', 'condition', 'reference',
                  'log2fc', 'pvalue', 'qvalue', 'base_mean', 'dispersion']

# Raw estimates at the lower bound carry no information about the dispersion
INFORMATIVE_DISPERSION = 100 * MIN_DISPERSION


def order_conditions(samples_by_condition: Dict[str, List[Sample]], reference_condition: Optional[str] = None) -> List[str]:
    """
    Conditions in contrast order: the reference first, then the others as supplied.
    Contrasts compare each condition with the one before it.
    """
    conditions = list(samples_by_condition.keys())
    if len(conditions) < 2:
        raise ConfigError(f"at least 2 conditions are required, got {len(conditions)}")
    empty = [c for c in conditions if not samples_by_condition[c]]
    if empty:
        raise ConfigError(f"conditions without replicates: {empty}")
    if reference_condition is None:
        reference_condition = conditions[0]
    if reference_condition not in samples_by_condition:
        raise ConfigError(f"reference condition '{reference_condition}' not among {conditions}")
    return [reference_condition] + [c for c in conditions if c != reference_condition]


def _check_design(samples_by_condition: Dict[str, List[Sample]]):
    samples = [s for reps in samples_by_condition.values() for s in reps]
    names = [s.name for s in samples]
    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        raise ConfigError(f"sample names must be unique, duplicated: {duplicated}")

    reference = samples[0].bin_schema()
    for sample in samples[1:]:
        schema = sample.bin_schema()
        if set(schema) != set(reference):
            raise ConfigError(f"sample {sample.name} covers different chromosomes than {samples[0].name}")
        for chrom, bins in schema.items():
            if not bins.reset_index(drop=True).equals(reference[chrom].reset_index(drop=True)):
                raise ConfigError(f"sample {sample.name} uses a different binning on {chrom}")


def _sample_table(sample: Sample) -> pd.DataFrame:
    parts = []
    for container in sample.containers.values():
        if 'mu' not in container.interactions.columns:
            raise ConfigError(f"sample {sample.name} has no fitted background on {container.chrom}")
        parts.append(container.interactions[KEY_COLUMNS + ['distance', 'counts', 'mu']])
    return pd.concat(parts, ignore_index=True).set_index(KEY_COLUMNS)


def _collect(samples_by_condition: Dict[str, List[Sample]], filter_set) -> Tuple[pd.MultiIndex, np.ndarray, pd.DataFrame, pd.DataFrame]:
    tables = {s.name: _sample_table(s) for reps in samples_by_condition.values() for s in reps}

    keys = normalize_filter_set(filter_set).set_index(KEY_COLUMNS).index
    requested = len(keys)
    for table in tables.values():
        keys = keys.intersection(table.index)
    if len(keys) == 0:
        raise ConfigError("filter set is empty after intersecting with the interactions of all samples")
    keys = keys.sort_values()
    logger.info(f"Testing {len(keys)} of {requested} filter-set interactions present in all {len(tables)} samples")

    first = next(iter(tables.values()))
    distance = first['distance'].reindex(keys).to_numpy(dtype=float)
    counts = pd.DataFrame({name: t['counts'].reindex(keys).to_numpy(dtype=float) for name, t in tables.items()})
    mu = pd.DataFrame({name: t['mu'].reindex(keys).to_numpy(dtype=float) for name, t in tables.items()})
    return keys, distance, counts, mu


def normalization_factors(mu: np.ndarray) -> np.ndarray:
    """
    Per-replicate factors: fitted background divided by its geometric mean across replicates.
    """
    log_mu = np.log(mu)
    return np.exp(log_mu - log_mu.mean(axis=1, keepdims=True))


def _parametric_trend(raw: np.ndarray, base_mean: np.ndarray) -> Optional[Tuple[float, float]]:
    """Gamma GLM fit of dispersion = a0 + a1 / mean; None unless both coefficients are non-negative."""
    X = np.column_stack([np.ones(len(base_mean)), 1.0 / base_mean])
    family = sm.families.Gamma(link=sm.families.links.Identity())
    try:
        result = fit_glm(raw, X, family, start_params=np.array([np.median(raw), 0.0]))
    except ModelFitError as e:
        logger.debug(f"Parametric dispersion trend failed: {e}")
        return None
    a0, a1 = (float(v) for v in result.params)
    if a0 < 0 or a1 < 0 or (a0 == 0 and a1 == 0):
        return None
    return a0, a1


def dispersion_trend(raw: np.ndarray, base_mean: np.ndarray, distance: np.ndarray, params: DifferentialParams) -> np.ndarray:
    """
    Dispersion-mean trend fitted separately in each log-distance stratum,
    with the stratum median as fallback.
    """
    trend = np.empty(len(raw))
    strata = log_distance_strata(distance, params.distance_bin_count)
    for stratum in np.unique(strata):
        members = np.flatnonzero(strata == stratum)
        usable = members[raw[members] > INFORMATIVE_DISPERSION]
        coefficients = None
        if len(usable) >= params.min_trend_points:
            coefficients = _parametric_trend(raw[usable], base_mean[usable])
        if coefficients is not None:
            a0, a1 = coefficients
            trend[members] = a0 + a1 / base_mean[members]
        else:
            pool = raw[usable] if len(usable) else raw[members]
            trend[members] = np.median(pool)
    return np.clip(trend, MIN_DISPERSION, MAX_DISPERSION)


def shrink_dispersions(raw: np.ndarray, trend: np.ndarray, df_resid: int, params: DifferentialParams) -> np.ndarray:
    """
    Empirical-Bayes shrinkage of log dispersions towards the trend.

    The prior variance is the robust variance of log(raw / trend) minus the
    sampling variance of a log dispersion estimate with df_resid degrees of
    freedom. Estimates far above the trend are kept as they are.
    """
    informative = raw > INFORMATIVE_DISPERSION
    log_raw, log_trend = np.log(raw), np.log(trend)
    residual = log_raw - log_trend

    sampling_var = float(polygamma(1, df_resid / 2.0))
    if informative.sum() >= 2:
        r = residual[informative]
        observed_var = (1.4826 * np.median(np.abs(r - np.median(r)))) ** 2
    else:
        observed_var = sampling_var + params.prior_var_floor
    prior_var = max(observed_var - sampling_var, params.prior_var_floor)

    posterior = (log_raw / sampling_var + log_trend / prior_var) / (1.0 / sampling_var + 1.0 / prior_var)
    shrunk = np.where(informative, np.exp(posterior), trend)

    outlier = informative & (residual > params.outlier_sd * np.sqrt(prior_var))
    shrunk[outlier] = raw[outlier]
    logger.debug(f"Dispersion shrinkage: prior var {prior_var:.3g}, sampling var {sampling_var:.3g}, "
                 f"{int(outlier.sum())} outliers kept")
    return np.clip(shrunk, MIN_DISPERSION, MAX_DISPERSION)


def estimate_dispersions(
    counts: np.ndarray,
    nf: np.ndarray,
    groups: np.ndarray,
    distance: np.ndarray,
    params: DifferentialParams
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-interaction dispersion estimates for a contrast.

    Raw estimates are moments of the normalized counts within conditions. Without
    any within-condition replication the conditions are ignored (blind
    estimation) and only the trend is used.

    :param counts: Counts, interactions x replicates.
    :param nf: Normalization factors, same shape.
    :param groups: Condition label per replicate.
    :param distance: Anchor distance per interaction.
    :param params: Differential parameters.
    :return: Tuple of (dispersion, base_mean) per interaction.
    """
    normalized = counts / nf
    base_mean = normalized.mean(axis=1)
    n = counts.shape[1]

    df_resid = n - len(np.unique(groups))
    blind = df_resid < 1
    if blind:
        groups = np.zeros(n, dtype=int)
        df_resid = n - 1

    ss = np.zeros(len(normalized))
    for label in np.unique(groups):
        block = normalized[:, groups == label]
        ss += ((block - block.mean(axis=1, keepdims=True)) ** 2).sum(axis=1)
    variance = ss / df_resid
    xim = (1.0 / nf).mean(axis=1)

    with np.errstate(divide='ignore', invalid='ignore'):
        raw = (variance - xim * base_mean) / base_mean ** 2
    raw = np.clip(np.nan_to_num(raw, nan=MIN_DISPERSION), MIN_DISPERSION, MAX_DISPERSION)

    trend = dispersion_trend(raw, base_mean, distance, params)
    if blind:
        logger.warning("No within-condition replicates: dispersions taken from the blind trend")
        return trend, base_mean
    return shrink_dispersions(raw, trend, df_resid, params), base_mean


def fit_contrast(y: np.ndarray, groups: np.ndarray, log_nf: np.ndarray, alpha: float, max_iter: int = 100) -> Tuple[float, float]:
    """
    NB GLM y ~ condition + offset(log_nf) with fixed dispersion.

    :return: Tuple of (log2 fold change, Wald p-value); NaN when the fit fails.
    """
    X = np.column_stack([np.ones(len(y)), groups])
    try:
        result = fit_glm(y, X, sm.families.NegativeBinomial(alpha=alpha), offset=log_nf, maxiter=max_iter)
    except ModelFitError as e:
        logger.debug(f"Contrast GLM failed: {e}")
        return np.nan, np.nan
    beta, se = float(result.params[1]), float(result.bse[1])
    if not np.isfinite(se) or se <= 0:
        return np.nan, np.nan
    return beta / np.log(2), float(result.pvalues[1])


def _run_contrast(
    keys: pd.MultiIndex,
    distance: np.ndarray,
    counts: pd.DataFrame,
    mu: pd.DataFrame,
    reference: str,
    condition: str,
    reference_names: List[str],
    condition_names: List[str],
    params: DifferentialParams
) -> List[DifferentialResult]:
    names = reference_names + condition_names
    k = counts[names].to_numpy()
    m = mu[names].to_numpy()
    groups = np.r_[np.zeros(len(reference_names)), np.ones(len(condition_names))]

    tested = k.sum(axis=1) > 0
    scorable = tested & np.all(np.isfinite(m) & (m > 0), axis=1)
    logger.info(f"{condition} vs {reference}: {int(tested.sum())} tested, "
                f"{int((~tested).sum())} all-zero excluded, {int((tested & ~scorable).sum())} without background")

    n_rows = len(keys)
    log2fc = np.full(n_rows, np.nan)
    pvalue = np.full(n_rows, np.nan)
    base_mean = np.full(n_rows, np.nan)
    dispersion = np.full(n_rows, np.nan)

    rows = np.flatnonzero(scorable)
    if len(rows):
        nf = normalization_factors(m[rows])
        alpha, bm = estimate_dispersions(k[rows], nf, groups, distance[rows], params)
        base_mean[rows] = bm
        dispersion[rows] = alpha
        log_nf = np.log(nf)
        for pos, row in enumerate(rows):
            log2fc[row], pvalue[row] = fit_contrast(k[row], groups, log_nf[pos], alpha[pos], params.max_iter)

    qvalue = np.full(n_rows, np.nan)
    qvalue[tested] = bh_adjust(pvalue[tested])

    failed = int((scorable & np.isnan(pvalue)).sum())
    if failed:
        logger.warning(f"{condition} vs {reference}: {failed} interactions could not be fitted")

    results = []
    for row in np.flatnonzero(tested):
        chrom, start_i, start_j = keys[row]
        results.append(DifferentialResult(
            chrom=str(chrom),
            start_i=int(start_i),
            start_j=int(start_j),
            condition=condition,
            reference=reference,
            log2fc=float(log2fc[row]),
            pvalue=float(pvalue[row]),
            qvalue=float(qvalue[row]),
            base_mean=float(base_mean[row]),
            dispersion=float(dispersion[row])
        ))
    return results


def compare(
    samples_by_condition: Dict[str, List[Sample]],
    filter_set,
    reference_condition: Optional[str] = None,
    params: Optional[DifferentialParams] = None
) -> List[DifferentialResult]:
    """
    Test interactions of the filter set for differential contact frequency.

    :param samples_by_condition: Condition name -> fitted replicate samples.
    :param filter_set: DataFrame or iterable of (chrom, start_i, start_j) to test.
    :param reference_condition: Reference of the contrast chain; first condition when None.
    :param params: Differential parameters.
    :return: DifferentialResult list, grouped by contrast and sorted by interaction.
    """
    params = params or DifferentialParams()
    conditions = order_conditions(samples_by_condition, reference_condition)
    _check_design(samples_by_condition)

    logger.info(f"Starting differential analysis over conditions {conditions}")
    keys, distance, counts, mu = _collect(samples_by_condition, filter_set)

    results = []
    for reference, condition in zip(conditions[:-1], conditions[1:]):
        results.extend(_run_contrast(
            keys, distance, counts, mu, reference, condition,
            [s.name for s in samples_by_condition[reference]],
            [s.name for s in samples_by_condition[condition]],
            params
        ))
    return results


def results_to_frame(results: List[DifferentialResult]) -> pd.DataFrame:
    if not results:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    return pd.DataFrame([asdict(r) for r in results], columns=RESULT_COLUMNS)
