"""
Filter sets for differential testing.
Normalizes caller-supplied interaction sets and derives them from significance results.
"""

import logging
from typing import Iterable, List, Union

import numpy as np
import pandas as pd

from hicnb.core.exceptions import ConfigError
from hicnb.core.models import KEY_COLUMNS, Sample

logger = logging.getLogger(__name__)


def normalize_filter_set(filter_set: Union[pd.DataFrame, Iterable[tuple]]) -> pd.DataFrame:
    """
    Coerce a filter set into a de-duplicated DataFrame of (chrom, start_i, start_j)
    with start_i <= start_j.
    """
    if isinstance(filter_set, pd.DataFrame):
        missing = [c for c in KEY_COLUMNS if c not in filter_set.columns]
        if missing:
            raise ConfigError(f"filter set lacks columns {missing}")
        frame = filter_set[KEY_COLUMNS]
    else:
        frame = pd.DataFrame.from_records(list(filter_set), columns=KEY_COLUMNS)

    a = frame['start_i'].to_numpy(dtype=np.int64)
    b = frame['start_j'].to_numpy(dtype=np.int64)
    return pd.DataFrame({
        'chrom': frame['chrom'].astype(str).to_numpy(),
        'start_i': np.minimum(a, b),
        'start_j': np.maximum(a, b)
    }).drop_duplicates(ignore_index=True)


def significant_interactions(samples: List[Sample], qvalue_threshold: float = 0.05, min_samples: int = 1) -> pd.DataFrame:
    """
    Interactions called significant in at least min_samples samples.

    :param samples: Fitted samples.
    :param qvalue_threshold: Maximum q-value for a call.
    :param min_samples: Minimum number of samples with a call.
    :return: DataFrame of (chrom, start_i, start_j), usable as a filter set.
    """
    if not 0 < qvalue_threshold <= 1:
        raise ConfigError(f"qvalue_threshold must be in (0, 1], got {qvalue_threshold}")
    if min_samples < 1 or min_samples > len(samples):
        raise ConfigError(f"min_samples must be between 1 and {len(samples)}, got {min_samples}")

    calls = []
    for sample in samples:
        for container in sample.containers.values():
            if not container.is_scored:
                continue
            df = container.interactions
            hits = df.loc[df['qvalue'] <= qvalue_threshold, KEY_COLUMNS]
            calls.append(hits.drop_duplicates())

    if not calls:
        return pd.DataFrame(columns=KEY_COLUMNS)

    combined = pd.concat(calls, ignore_index=True)
    support = combined.groupby(KEY_COLUMNS, sort=True).size().rename('n_samples').reset_index()
    selected = support.loc[support['n_samples'] >= min_samples, KEY_COLUMNS].reset_index(drop=True)
    logger.info(f"{len(selected)} interactions significant (q <= {qvalue_threshold}) in >= {min_samples} samples")
    return selected
