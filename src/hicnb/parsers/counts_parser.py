"""
Raw contact count parsers for HiCNB.
Reads sparse pair text files and HiC-Pro matrix/bed pairs into the
(chrom, pos_i, pos_j, count) stream consumed by add_counts.
"""

import logging

import numpy as np
import pandas as pd

from hicnb.core.exceptions import DataError

logger = logging.getLogger(__name__)

COUNT_COLUMNS = ['chrom', 'pos_i', 'pos_j', 'count']


def _validate_counts(df: pd.DataFrame, path: str) -> pd.DataFrame:
    try:
        df['pos_i'] = df['pos_i'].astype(np.int64)
        df['pos_j'] = df['pos_j'].astype(np.int64)
        df['count'] = pd.to_numeric(df['count'], errors='raise')
    except (TypeError, ValueError) as e:
        raise DataError(f"malformed rows in count file {path}: {e}") from e
    if df[['pos_i', 'pos_j', 'count']].isnull().any().any():
        raise DataError(f"missing values in count file {path}")
    df['chrom'] = df['chrom'].astype(str)
    return df


def parse_sparse_counts(counts_path: str) -> pd.DataFrame:
    """
    Parse a tab-separated sparse count file.

    Two layouts are accepted, without header:
      4 columns: chrom, start_i, start_j, count
      5 columns: chrom_i, start_i, chrom_j, start_j, count (trans rows are dropped)

    :param counts_path: Path to the count file (may be gzipped).
    :return: DataFrame with columns chrom, pos_i, pos_j, count.
    """
    try:
        df = pd.read_csv(counts_path, sep='\t', header=None, comment='#', encoding='utf-8')
    except Exception as e:
        logger.error(f"Failed to read count file {counts_path}: {e}")
        raise DataError(f"cannot read count file {counts_path}: {e}") from e

    if df.empty:
        logger.warning(f"Count file {counts_path} is empty.")
        return pd.DataFrame(columns=COUNT_COLUMNS)

    if df.shape[1] == 4:
        df.columns = COUNT_COLUMNS
    elif df.shape[1] == 5:
        df.columns = ['chrom', 'pos_i', 'chrom_j', 'pos_j', 'count']
        trans = df['chrom'].astype(str) != df['chrom_j'].astype(str)
        if trans.any():
            logger.info(f"Dropped {int(trans.sum())} inter-chromosomal rows from {counts_path}")
        df = df.loc[~trans, COUNT_COLUMNS].copy()
    else:
        raise DataError(f"count file {counts_path} has {df.shape[1]} columns, expected 4 or 5")

    return _validate_counts(df, counts_path)


def parse_hicpro_matrix(matrix_path: str, bed_path: str) -> pd.DataFrame:
    """
    Parse a HiC-Pro sparse matrix with its bin bed file.

    :param matrix_path: Path to the .matrix file (bin_id_i, bin_id_j, count).
    :param bed_path: Path to the _abs.bed file (chrom, start, end, bin_id).
    :return: DataFrame with columns chrom, pos_i, pos_j, count (cis contacts only).
    """
    try:
        bed = pd.read_csv(bed_path, sep='\t', header=None, usecols=[0, 1, 2, 3],
                          names=['chrom', 'start', 'end', 'bin_id'], encoding='utf-8')
        matrix = pd.read_csv(matrix_path, sep='\t', header=None, names=['id_i', 'id_j', 'count'],
                             encoding='utf-8')
    except Exception as e:
        logger.error(f"Failed to read HiC-Pro files {matrix_path}, {bed_path}: {e}")
        raise DataError(f"cannot read HiC-Pro matrix {matrix_path}: {e}") from e

    bed = bed.set_index('bin_id')
    unknown = ~matrix['id_i'].isin(bed.index) | ~matrix['id_j'].isin(bed.index)
    if unknown.any():
        raise DataError(f"{int(unknown.sum())} matrix rows reference bins missing from {bed_path}")

    left = bed.loc[matrix['id_i']].reset_index(drop=True)
    right = bed.loc[matrix['id_j']].reset_index(drop=True)
    cis = (left['chrom'] == right['chrom']).to_numpy()

    df = pd.DataFrame({
        'chrom': left['chrom'].to_numpy()[cis],
        'pos_i': left['start'].to_numpy()[cis],
        'pos_j': right['start'].to_numpy()[cis],
        'count': matrix['count'].to_numpy()[cis]
    })
    logger.debug(f"Read {len(df)} cis contacts from {matrix_path}")
    return _validate_counts(df, matrix_path)
