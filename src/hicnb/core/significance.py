"""
Significance model: distance-stratified negative-binomial background.

For each chromosome, a downsampled set of interactions (stratified by log
distance) is used to fit log(mu) = spline(log distance) + covariates with an
NB2 dispersion. Every interaction is then scored against the fitted background
(mu, sdev, p-value, q-value, z-score). A failed covariate fit falls back to the
distance-only model; if that fails too, the chromosome is left unscored.
"""

import logging
import multiprocessing
import warnings
import zlib
from typing import Iterable, List, Optional, Tuple

import numpy as np
import patsy

from hicnb.core.exceptions import DataError, ModelFitError, ModelFitWarning
from hicnb.core.models import (
    MODEL_COLUMNS, ChromosomeReport, FitStatus, InteractionContainer, Sample, SignificanceParams
)
from hicnb.utils.logging import worker_configurer
from hicnb.utils.stats import (
    NBFit, bh_adjust, fit_negative_binomial, log_distance_strata, nb_sdev, nb_upper_tail
)

logger = logging.getLogger(__name__)

# Covariates transformed before standardization
COVARIATE_TRANSFORMS = {
    'len': lambda x: np.log(np.maximum(x, 1.0)),
}


def chromosome_rng(seed: int, chrom: str) -> np.random.Generator:
    """
    Random generator for one chromosome, independent of processing order.
    """
    return np.random.default_rng([int(seed), zlib.crc32(chrom.encode('utf-8'))])


def downsample_strata(strata: np.ndarray, rng: np.random.Generator, fraction: float, floor: int) -> np.ndarray:
    """
    Uniformly subsample each stratum without replacement.

    :param strata: Stratum index per record.
    :param rng: Random generator.
    :param fraction: Fraction of each stratum to keep.
    :param floor: Minimum number of records kept per stratum (whole stratum if smaller).
    :return: Sorted record indices used for fitting.
    """
    chosen = []
    for stratum in np.unique(strata):
        members = np.flatnonzero(strata == stratum)
        size = min(len(members), max(floor, int(np.ceil(fraction * len(members)))))
        if size < len(members):
            members = rng.choice(members, size=size, replace=False)
        chosen.append(members)
    if not chosen:
        return np.zeros(0, dtype=int)
    return np.sort(np.concatenate(chosen))


def distance_basis(log_distance: np.ndarray, spline_df: int) -> np.ndarray:
    """
    Cubic B-spline basis of log distance with uniform knots over its full range.
    Falls back to a linear term when there are too few distinct distances.
    """
    distinct = np.unique(log_distance)
    if len(distinct) == 1:
        return np.zeros((len(log_distance), 0))
    if len(distinct) <= spline_df:
        return log_distance.reshape(-1, 1)
    lower, upper = float(distinct[0]), float(distinct[-1])
    knots = np.linspace(lower, upper, spline_df - 3 + 2)[1:-1]
    return np.asarray(patsy.bs(log_distance, knots=knots, degree=3,
                               lower_bound=lower, upper_bound=upper))


def covariate_matrix(container: InteractionContainer) -> Tuple[np.ndarray, List[str]]:
    """
    Standardized 2-D covariates; constant or incomplete columns are dropped.
    """
    df = container.interactions
    columns, used = [], []
    for name in container.covariate_names:
        values = df[name].to_numpy(dtype=float)
        if name in COVARIATE_TRANSFORMS:
            values = COVARIATE_TRANSFORMS[name](values)
        if not np.all(np.isfinite(values)):
            logger.debug(f"{container.chrom}: covariate '{name}' has missing values, not modeled")
            continue
        sd = values.std()
        if sd == 0:
            logger.debug(f"{container.chrom}: covariate '{name}' is constant, not modeled")
            continue
        columns.append((values - values.mean()) / sd)
        used.append(name)
    if not columns:
        return np.zeros((len(df), 0)), used
    return np.column_stack(columns), used


def _attempt(container: InteractionContainer, status: FitStatus, y, X, max_iter) -> Optional[NBFit]:
    try:
        return fit_negative_binomial(y, X, max_iter=max_iter)
    except ModelFitError as e:
        logger.warning(f"{container.chrom}: {status.value} fit failed: {e}")
        return None


def _mark_unscored(container: InteractionContainer, message: str) -> InteractionContainer:
    for column in MODEL_COLUMNS:
        container.interactions[column] = np.nan
    container.fit_status = FitStatus.UNSCORED
    container.dispersion = np.nan
    logger.warning(f"{container.chrom}: records left unscored ({message})")
    warnings.warn(f"{container.chrom}: {message}", ModelFitWarning)
    return container


def fit(container: InteractionContainer, params: Optional[SignificanceParams] = None) -> InteractionContainer:
    """
    Fit the background model of one chromosome and score every interaction.

    :param container: Container with counts and expanded covariates (modified in place).
    :param params: Model parameters; defaults to SignificanceParams().
    :return: The same container, with mu, sdev, pvalue, qvalue, zvalue and fit_status set.
    """
    params = params or SignificanceParams()
    container.validate()
    df = container.interactions
    chrom = container.chrom

    if len(df) == 0:
        return _mark_unscored(container, "no interactions to model")

    y = df['counts'].to_numpy(dtype=float)
    log_distance = np.log1p(df['distance'].to_numpy(dtype=float))

    strata = log_distance_strata(df['distance'].to_numpy(), params.distance_bin_count)
    train = downsample_strata(strata, chromosome_rng(params.seed, chrom),
                              params.downsample_fraction, params.min_stratum_size)
    logger.debug(f"{chrom}: fitting on {len(train)} of {len(df)} interactions")

    intercept = np.ones((len(df), 1))
    distance_only = np.hstack([intercept, distance_basis(log_distance, params.spline_df)])
    covariates, used = covariate_matrix(container)

    candidates = []
    if covariates.shape[1] > 0:
        candidates.append((FitStatus.COVARIATE_MODEL, np.hstack([distance_only, covariates])))
    candidates.append((FitStatus.DISTANCE_ONLY, distance_only))

    for status, X in candidates:
        model = _attempt(container, status, y[train], X[train], params.max_iter)
        if model is not None:
            break
    else:
        return _mark_unscored(container, "no background model could be fitted")

    mu = model.predict(X)
    sdev = nb_sdev(mu, model.alpha)
    pvalue = nb_upper_tail(y, mu, model.alpha)

    df['mu'] = mu
    df['sdev'] = sdev
    df['pvalue'] = pvalue
    df['qvalue'] = bh_adjust(pvalue)
    df['zvalue'] = (y - mu) / sdev

    container.fit_status = status
    container.dispersion = model.alpha
    logger.info(f"{chrom}: {status.value} (covariates={used if status == FitStatus.COVARIATE_MODEL else []}, "
                f"alpha={model.alpha:.4g}, iterations={model.n_iter})")
    return container


def adjust_qvalues_globally(containers: Iterable[InteractionContainer]):
    """
    Replace per-chromosome q-values with one Benjamini-Hochberg pass over all scored records.
    """
    scored = [c for c in containers if c.is_scored]
    if not scored:
        return
    pvalues = np.concatenate([c.interactions['pvalue'].to_numpy(dtype=float) for c in scored])
    qvalues = bh_adjust(pvalues)
    offset = 0
    for c in scored:
        n = len(c.interactions)
        c.interactions['qvalue'] = qvalues[offset:offset + n]
        offset += n
    logger.info(f"Global q-values computed over {len(pvalues)} interactions on {len(scored)} chromosomes")


def _fit_chromosome_task(container: InteractionContainer, params: SignificanceParams):
    """
    Worker entry point: fit one chromosome, isolating data errors.
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ModelFitWarning)
            fit(container, params)
        message = None
    except DataError as e:
        logger.error(f"{container.chrom}: {e}")
        for column in MODEL_COLUMNS:
            container.interactions[column] = np.nan
        container.fit_status = FitStatus.UNSCORED
        container.dispersion = np.nan
        message = str(e)

    if container.fit_status == FitStatus.UNSCORED and message is None:
        message = "no background model could be fitted"
    n_scored = int(np.isfinite(container.interactions['mu']).sum())
    report = ChromosomeReport(
        chrom=container.chrom,
        status=container.fit_status,
        n_records=len(container.interactions),
        n_scored=n_scored,
        dispersion=container.dispersion,
        message=message
    )
    return container, report


def fit_sample(
    sample: Sample,
    params: Optional[SignificanceParams] = None,
    threads: int = 1,
    log_queue=None
) -> List[ChromosomeReport]:
    """
    Fit the background model on every chromosome of a sample.

    Chromosomes are independent units of work and run in a process pool when
    threads > 1. A DataError affects only its own chromosome. With
    params.qvalue_mode == "global", q-values are recomputed across all chromosomes.

    :param sample: Sample whose containers are replaced by their fitted versions.
    :param params: Model parameters.
    :param threads: Number of worker processes.
    :param log_queue: Logging queue for the workers (from setup_logging).
    :return: One ChromosomeReport per chromosome.
    """
    params = params or SignificanceParams()
    tasks = [(sample.containers[chrom], params) for chrom in sample.chromosomes()]

    if threads > 1 and len(tasks) > 1:
        pool_kwargs = {}
        if log_queue is not None:
            pool_kwargs = {'initializer': worker_configurer, 'initargs': (log_queue,)}
        with multiprocessing.Pool(min(threads, len(tasks)), **pool_kwargs) as pool:
            results = pool.starmap(_fit_chromosome_task, tasks)
    else:
        results = [_fit_chromosome_task(container, p) for container, p in tasks]

    reports = []
    for container, report in results:
        sample.containers[container.chrom] = container
        reports.append(report)

    unscored = [r.chrom for r in reports if r.status == FitStatus.UNSCORED]
    if unscored:
        warnings.warn(f"sample {sample.name}: unscored chromosomes {unscored}", ModelFitWarning)

    if params.qvalue_mode == "global":
        adjust_qvalues_globally(sample.containers.values())

    for r in reports:
        logger.info(f"{sample.name} {r.chrom}: {r.status.value}, {r.n_scored}/{r.n_records} scored")
    return reports
