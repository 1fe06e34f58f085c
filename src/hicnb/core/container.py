"""
Interaction container construction and count ingestion.
Enumerates all bin pairs within a distance threshold for one chromosome and
merges raw contact counts onto them.
"""

import logging
from typing import Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd

from hicnb.core.exceptions import ConfigError, DataError
from hicnb.core.models import ANCHOR_COLUMNS, BIN_COLUMNS, MODEL_COLUMNS, InteractionContainer

logger = logging.getLogger(__name__)


def _prepare_bins(bins: pd.DataFrame, chrom: Optional[str]) -> pd.DataFrame:
    if chrom is not None:
        bins = bins[bins['chrom'].astype(str) == chrom]
    else:
        chroms = bins['chrom'].astype(str).unique()
        if len(chroms) != 1:
            raise ConfigError(f"bin table spans {len(chroms)} chromosomes; pass chrom or use build_containers")
    if bins.empty:
        raise ConfigError(f"no bins for chromosome {chrom}")

    bins = bins.sort_values('start').reset_index(drop=True).copy()
    if bins['start'].duplicated().any():
        raise DataError("duplicate bin starts", str(bins['chrom'].iloc[0]))
    for column in ('gc', 'len', 'map'):
        if column not in bins.columns:
            bins[column] = np.nan
    if 'bin_index' not in bins.columns:
        bins['bin_index'] = np.arange(len(bins))
    bins['chrom'] = bins['chrom'].astype(str)
    extra = [c for c in bins.columns if c not in BIN_COLUMNS]
    return bins[BIN_COLUMNS + extra]


def build(
    bins: pd.DataFrame,
    max_distance: int,
    chrom: Optional[str] = None,
    include_diagonal: bool = False
) -> InteractionContainer:
    """
    Enumerate all bin pairs of one chromosome with start_j - start_i <= max_distance.

    Pairs are generated per anchor i over the window of bins reachable within
    max_distance, so the cost is O(bins x window).

    :param bins: Bin table (chrom, start, end and 1-D covariates).
    :param max_distance: Largest modeled anchor distance (bp).
    :param chrom: Chromosome to build; required if the bin table has several.
    :param include_diagonal: Also create the (i, i) self pairs.
    :return: InteractionContainer with all counts set to 0.
    """
    if max_distance is None or max_distance < 0:
        raise ConfigError(f"max_distance must be non-negative, got {max_distance}")
    bins = _prepare_bins(bins, chrom)
    chrom = bins['chrom'].iloc[0]

    starts = bins['start'].to_numpy(dtype=np.int64)
    ends = bins['end'].to_numpy(dtype=np.int64)
    n = len(starts)

    if n > 1:
        bin_size = int(np.diff(starts).min())
    else:
        bin_size = int(ends[0] - starts[0])
    if max_distance < bin_size and not include_diagonal:
        raise ConfigError(f"max_distance={max_distance} is smaller than the bin size {bin_size}; no valid pairs")

    first = np.arange(n) + (0 if include_diagonal else 1)
    last = np.searchsorted(starts, starts + max_distance, side='right')
    widths = np.maximum(last - first, 0)

    i_idx = np.repeat(np.arange(n), widths)
    offsets = np.arange(widths.sum()) - np.repeat(np.cumsum(widths) - widths, widths)
    j_idx = np.repeat(first, widths) + offsets

    interactions = pd.DataFrame({
        'chrom': chrom,
        'start_i': starts[i_idx],
        'end_i': ends[i_idx],
        'start_j': starts[j_idx],
        'end_j': ends[j_idx],
        'distance': starts[j_idx] - starts[i_idx],
        'counts': np.zeros(len(i_idx), dtype=np.int64)
    }, columns=ANCHOR_COLUMNS)

    logger.debug(f"{chrom}: {n} bins, {len(interactions)} pairs within {max_distance} bp")
    return InteractionContainer(
        chrom=chrom,
        bins=bins,
        max_distance=int(max_distance),
        interactions=interactions
    )


def build_containers(
    bins: pd.DataFrame,
    max_distance: int,
    chromosomes: Optional[Iterable[str]] = None,
    include_diagonal: bool = False
) -> Dict[str, InteractionContainer]:
    """
    Build one container per chromosome of a bin table.

    :return: Dictionary chrom -> InteractionContainer in bin-table order.
    """
    available = list(dict.fromkeys(bins['chrom'].astype(str)))
    if chromosomes is not None:
        wanted = [str(c) for c in chromosomes]
        unknown = [c for c in wanted if c not in available]
        if unknown:
            raise ConfigError(f"chromosomes not present in the bin table: {unknown}")
        available = [c for c in available if c in wanted]
    return {c: build(bins, max_distance, chrom=c, include_diagonal=include_diagonal) for c in available}


def _as_count_frame(source) -> pd.DataFrame:
    if isinstance(source, pd.DataFrame):
        named = [c for c in ('chrom', 'pos_i', 'pos_j', 'count') if c in source.columns]
        if len(named) == 4:
            frame = source[['chrom', 'pos_i', 'pos_j', 'count']].copy()
        elif {'chrom', 'start_i', 'start_j'} <= set(source.columns):
            count_col = 'count' if 'count' in source.columns else 'counts'
            frame = source[['chrom', 'start_i', 'start_j', count_col]].copy()
        else:
            frame = source.iloc[:, :4].copy()
    else:
        frame = pd.DataFrame.from_records(list(source))
        if frame.empty:
            return pd.DataFrame(columns=['chrom', 'pos_i', 'pos_j', 'count'])
        frame = frame.iloc[:, :4]
    frame.columns = ['chrom', 'pos_i', 'pos_j', 'count']
    return frame


def _locate(bins: pd.DataFrame, positions: np.ndarray) -> np.ndarray:
    """Index of the bin containing each position, -1 when outside every bin."""
    starts = bins['start'].to_numpy(dtype=np.int64)
    ends = bins['end'].to_numpy(dtype=np.int64)
    idx = np.searchsorted(starts, positions, side='right') - 1
    inside = (idx >= 0) & (positions < ends[np.clip(idx, 0, None)])
    return np.where(inside, idx, -1)


def add_counts(
    container: InteractionContainer,
    source: Union[pd.DataFrame, Iterable[tuple]],
    accumulate: bool = False
) -> InteractionContainer:
    """
    Merge raw contact counts into a container.

    Positions are mapped to their containing bins and anchors are ordered so that
    start_i <= start_j. Rows on other chromosomes, outside the bin set or beyond
    max_distance are dropped. For duplicate keys the last row wins, or rows are
    summed when accumulate is True. Ingested keys overwrite the container counts.

    :param container: Target container (modified in place).
    :param source: DataFrame or iterable of (chrom, pos_i, pos_j, count).
    :param accumulate: Sum duplicate keys instead of keeping the last one.
    :return: The same container.
    """
    frame = _as_count_frame(source)
    frame = frame[frame['chrom'].astype(str) == container.chrom]
    if frame.empty:
        logger.debug(f"{container.chrom}: no counts in source")
        return container

    try:
        counts = pd.to_numeric(frame['count'], errors='raise').to_numpy(dtype=float)
        pos_i = frame['pos_i'].to_numpy(dtype=np.int64)
        pos_j = frame['pos_j'].to_numpy(dtype=np.int64)
    except (TypeError, ValueError) as e:
        raise DataError(f"malformed count rows: {e}", container.chrom) from e
    if (~np.isfinite(counts)).any() or (counts < 0).any():
        raise DataError("counts must be finite and non-negative", container.chrom)
    if (counts != np.round(counts)).any():
        raise DataError("counts must be integers", container.chrom)

    bins = container.bins
    bi, bj = _locate(bins, pos_i), _locate(bins, pos_j)
    inside = (bi >= 0) & (bj >= 0)
    starts = bins['start'].to_numpy(dtype=np.int64)
    si = starts[np.minimum(bi[inside], bj[inside])]
    sj = starts[np.maximum(bi[inside], bj[inside])]

    keyed = pd.DataFrame({'start_i': si, 'start_j': sj, 'count': counts[inside].astype(np.int64)})
    if accumulate:
        keyed = keyed.groupby(['start_i', 'start_j'], sort=False, as_index=False)['count'].sum()
    else:
        keyed = keyed.drop_duplicates(subset=['start_i', 'start_j'], keep='last')

    df = container.interactions
    index = pd.MultiIndex.from_arrays([df['start_i'].to_numpy(), df['start_j'].to_numpy()])
    positions = index.get_indexer(pd.MultiIndex.from_arrays([keyed['start_i'].to_numpy(), keyed['start_j'].to_numpy()]))
    matched = positions >= 0

    values = df['counts'].to_numpy(dtype=np.int64).copy()
    values[positions[matched]] = keyed['count'].to_numpy()[matched]
    df['counts'] = values

    dropped = len(frame) - int(inside.sum()) + int((~matched).sum())
    if dropped:
        logger.debug(f"{container.chrom}: dropped {dropped} source rows outside the bin set or distance range")

    # Model outputs no longer describe the new counts
    if container.fit_status is not None:
        for column in MODEL_COLUMNS:
            if column in df.columns:
                df[column] = np.nan
        container.fit_status = None

    logger.debug(f"{container.chrom}: {int(matched.sum())} bin pairs received counts")
    return container
