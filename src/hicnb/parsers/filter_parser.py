"""
Filter file parser for HiCNB differential testing.
"""

import logging

import numpy as np
import pandas as pd

from hicnb.core.exceptions import DataError

logger = logging.getLogger(__name__)


def parse_filter_file(filter_path: str) -> pd.DataFrame:
    """
    Parse a table of (chrom, start_i, start_j) restricting the differential test set.
    A header row is optional; extra columns are ignored.

    :param filter_path: Path to the tab-separated filter file.
    :return: DataFrame with columns chrom, start_i, start_j and start_i <= start_j.
    """
    try:
        df = pd.read_csv(filter_path, sep='\t', header=None, comment='#', usecols=[0, 1, 2],
                         names=['chrom', 'start_i', 'start_j'], dtype=str, encoding='utf-8')
    except Exception as e:
        logger.error(f"Failed to read filter file {filter_path}: {e}")
        raise DataError(f"cannot read filter file {filter_path}: {e}") from e

    # Header row, if present, does not parse as coordinates
    if len(df) and not df.iloc[0]['start_i'].strip().lstrip('-').isdigit():
        df = df.iloc[1:]

    try:
        a = df['start_i'].astype(np.int64).to_numpy()
        b = df['start_j'].astype(np.int64).to_numpy()
    except (TypeError, ValueError) as e:
        raise DataError(f"malformed rows in filter file {filter_path}: {e}") from e

    result = pd.DataFrame({
        'chrom': df['chrom'].astype(str).to_numpy(),
        'start_i': np.minimum(a, b),
        'start_j': np.maximum(a, b)
    }).drop_duplicates(ignore_index=True)

    logger.info(f"Read {len(result)} interactions from filter file {filter_path}")
    return result
