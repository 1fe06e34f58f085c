"""
Readers for HiCNB tables: serialized interaction files and cached bin covariate tables.
"""

import gzip
import logging
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd

from hicnb.core.exceptions import DataError
from hicnb.core.models import (
    ANCHOR_COLUMNS, BIN_COLUMNS, MODEL_COLUMNS, FitStatus, InteractionContainer
)

logger = logging.getLogger(__name__)

MANDATORY_COLUMNS = ['chrom', 'start_i', 'start_j']


def _open_text(path):
    if str(path).endswith('.gz'):
        return gzip.open(path, 'rt', encoding='utf-8')
    return open(path, 'r', encoding='utf-8')


def read_header(path) -> Dict[str, str]:
    """
    Read the leading '# key: value' metadata lines of a HiCNB table.
    """
    meta = {}
    with _open_text(path) as handle:
        for line in handle:
            if not line.startswith('#'):
                break
            key, sep, value = line[1:].partition(':')
            if sep:
                meta[key.strip()] = value.strip()
    return meta


def _per_chrom(value: str) -> Dict[str, str]:
    items = {}
    for item in filter(None, value.split(';')):
        chrom, _, v = item.partition('=')
        items[chrom] = v
    return items


def _bins_from_anchors(chrom: str, group: pd.DataFrame, bin_covariates: List[str]) -> pd.DataFrame:
    sides = []
    for side in ('i', 'j'):
        columns = [f'start_{side}', f'end_{side}'] + [f'{name}_{side}' for name in bin_covariates]
        sides.append(group[columns].set_axis(['start', 'end'] + bin_covariates, axis=1))
    anchors = pd.concat(sides).drop_duplicates(subset='start').sort_values('start').reset_index(drop=True)
    bins = pd.DataFrame({
        'chrom': chrom,
        'start': anchors['start'].astype(np.int64),
        'end': anchors['end'].astype(np.int64),
        'gc': np.nan,
        'len': np.nan,
        'map': np.nan,
        'bin_index': np.arange(len(anchors))
    })
    for name in bin_covariates:
        bins[name] = anchors[name].astype(float)
    return bins


def _anchor_covariate_names(columns) -> List[str]:
    return [c[:-2] for c in columns
            if c.endswith('_i') and c not in ANCHOR_COLUMNS and f'{c[:-2]}_j' in columns]


def read_interactions(interactions_path: str) -> Dict[str, InteractionContainer]:
    """
    Rebuild InteractionContainers from a serialized interaction file.

    Bins are reconstructed from the anchors, with their 1-D covariates taken from
    the '<name>_i' and '<name>_j' columns. Files without those columns give bins
    whose covariates are missing.

    :param interactions_path: Path to the file written by write_interactions.
    :return: Dictionary chrom -> InteractionContainer, in file order.
    """
    meta = read_header(interactions_path)
    try:
        df = pd.read_csv(interactions_path, sep='\t', comment='#', dtype={'chrom': str}, encoding='utf-8')
    except Exception as e:
        logger.error(f"Failed to read interaction file {interactions_path}: {e}")
        raise DataError(f"cannot read interaction file {interactions_path}: {e}") from e

    missing = [c for c in MANDATORY_COLUMNS if c not in df.columns]
    if missing:
        raise DataError(f"interaction file {interactions_path} lacks columns {missing}")

    if 'distance' not in df.columns:
        df['distance'] = df['start_j'] - df['start_i']
    if 'counts' not in df.columns:
        df['counts'] = 0
    if 'end_i' not in df.columns or 'end_j' not in df.columns:
        starts = np.unique(np.concatenate([df['start_i'].to_numpy(), df['start_j'].to_numpy()]))
        gaps = np.diff(starts)
        width = int(gaps[gaps > 0].min()) if (gaps > 0).any() else 1
        df['end_i'] = df['start_i'] + width
        df['end_j'] = df['start_j'] + width

    if 'bin_covariates' in meta:
        bin_covariates = [c for c in meta['bin_covariates'].split(',') if c]
    else:
        bin_covariates = _anchor_covariate_names(df.columns)
    anchor_columns = [f'{name}_{side}' for name in bin_covariates for side in ('i', 'j')]
    missing = [c for c in anchor_columns if c not in df.columns]
    if missing:
        raise DataError(f"interaction file {interactions_path} lacks bin covariate columns {missing}")

    if 'covariates' in meta:
        covariate_names = [c for c in meta['covariates'].split(',') if c]
    else:
        covariate_names = [c for c in df.columns if c not in ANCHOR_COLUMNS + MODEL_COLUMNS + anchor_columns]
    max_distance = int(meta['max_distance']) if 'max_distance' in meta else int(df['distance'].max())
    statuses = _per_chrom(meta.get('fit_status', ''))
    dispersions = _per_chrom(meta.get('dispersion', ''))

    ordered = ANCHOR_COLUMNS + covariate_names + [c for c in MODEL_COLUMNS if c in df.columns]
    containers = {}
    for chrom, group in df.groupby('chrom', sort=False):
        group = group.sort_values(['start_i', 'start_j']).reset_index(drop=True)
        status = statuses.get(chrom)
        containers[chrom] = InteractionContainer(
            chrom=chrom,
            bins=_bins_from_anchors(chrom, group, bin_covariates),
            max_distance=max_distance,
            interactions=group[ordered].copy(),
            covariate_names=list(covariate_names),
            fit_status=FitStatus(status) if status else None,
            dispersion=float(dispersions.get(chrom, 'nan'))
        )

    logger.info(f"Read {len(df)} interactions on {len(containers)} chromosomes from {interactions_path}")
    return containers


def read_bin_table(bins_path: str) -> pd.DataFrame:
    """
    Read a cached bin covariate table written by write_bin_table.

    :param bins_path: Path to the tab-separated bin table.
    :return: DataFrame with the BIN_COLUMNS followed by any extra 1-D covariates.
    """
    if not Path(bins_path).exists():
        raise DataError(f"bin table {bins_path} not found")
    df = pd.read_csv(bins_path, sep='\t', comment='#', dtype={'chrom': str}, encoding='utf-8')
    missing = [c for c in ['chrom', 'start', 'end', 'gc', 'len'] if c not in df.columns]
    if missing:
        raise DataError(f"bin table {bins_path} lacks columns {missing}")
    if 'map' not in df.columns:
        df['map'] = np.nan
    if 'bin_index' not in df.columns:
        df['bin_index'] = df.groupby('chrom', sort=False).cumcount()
    extra = [c for c in df.columns if c not in BIN_COLUMNS]
    return df[BIN_COLUMNS + extra]
