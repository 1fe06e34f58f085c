"""
Feature expansion: combine the two anchors' 1-D bin covariates into 2-D
interaction covariates.
"""

import logging
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype

from hicnb.core.models import InteractionContainer

logger = logging.getLogger(__name__)

CombineFn = Callable[[np.ndarray, np.ndarray], np.ndarray]

NON_COVARIATE_BIN_COLUMNS = {'chrom', 'start', 'end', 'bin_index'}


def product(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return a * b


def mean(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return (a + b) / 2.0


def geometric_mean(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.sqrt(a * b)


# Length-like covariates multiply, fraction-like covariates average
DEFAULT_COMBINE: Dict[str, CombineFn] = {
    'gc': mean,
    'len': product,
    'map': mean,
}


def bin_covariate_names(bins: pd.DataFrame) -> List[str]:
    """Numeric 1-D covariate columns of a bin table."""
    return [name for name in bins.columns
            if name not in NON_COVARIATE_BIN_COLUMNS and is_numeric_dtype(bins[name])]


def expand(container: InteractionContainer, combine_fns: Optional[Dict[str, CombineFn]] = None) -> InteractionContainer:
    """
    Add one 2-D covariate column per 1-D bin covariate.

    Covariates whose bin values are all missing (e.g. mappability without a track)
    are omitted, unless the interactions already carry that column, which is then
    kept as it is. Running the expansion again overwrites the same columns.

    :param container: Container to annotate (modified in place).
    :param combine_fns: Overrides of the symmetric combination per covariate name;
                        covariates not listed default to the arithmetic mean.
    :return: The same container.
    """
    fns = dict(DEFAULT_COMBINE)
    if combine_fns:
        fns.update(combine_fns)

    bins = container.bins.set_index('start')
    df = container.interactions
    names = []

    for name in bin_covariate_names(container.bins):
        values = bins[name].astype(float)
        if values.isna().all():
            if name in df.columns and df[name].notna().any():
                logger.debug(f"{container.chrom}: covariate '{name}' has no bin values, keeping existing column")
                names.append(name)
            else:
                df.drop(columns=name, inplace=True, errors='ignore')
                logger.debug(f"{container.chrom}: covariate '{name}' has no values, omitted")
            continue
        left = values.reindex(df['start_i']).to_numpy()
        right = values.reindex(df['start_j']).to_numpy()
        df[name] = fns.get(name, mean)(left, right)
        names.append(name)

    container.covariate_names = names
    logger.debug(f"{container.chrom}: expanded covariates {names}")
    return container
