"""
bedGraph mappability track parser for HiCNB.
Provides coverage-weighted mean mappability over genomic intervals.
"""

import logging
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from hicnb.core.exceptions import DataError

logger = logging.getLogger(__name__)


class BedGraphTrack:
    """
    Quantitative track held as sorted, non-overlapping intervals per chromosome.
    """

    def __init__(self, intervals: pd.DataFrame):
        self._by_chrom: Dict[str, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
        for chrom, group in intervals.groupby('chrom', sort=False):
            group = group.sort_values('start')
            self._by_chrom[str(chrom)] = (
                group['start'].to_numpy(dtype=np.int64),
                group['end'].to_numpy(dtype=np.int64),
                group['value'].to_numpy(dtype=float)
            )

    @classmethod
    def from_bedgraph(cls, bedgraph_path: str) -> "BedGraphTrack":
        """
        Parse a 4-column bedGraph file (chrom, start, end, value).

        :param bedgraph_path: Path to the bedGraph file (may be gzipped).
        :return: BedGraphTrack.
        :raises DataError: if the file cannot be read or has malformed rows.
        """
        columns = ['chrom', 'start', 'end', 'value']
        try:
            df = pd.read_csv(bedgraph_path, sep='\t', header=None, comment='#',
                             usecols=[0, 1, 2, 3], names=columns, encoding='utf-8')
        except Exception as e:
            logger.error(f"Failed to read bedGraph file {bedgraph_path}: {e}")
            raise DataError(f"cannot read mappability track {bedgraph_path}: {e}") from e

        # Drop UCSC browser/track header lines
        df = df[~df['chrom'].astype(str).str.startswith(('track', 'browser'))]
        try:
            df['start'] = df['start'].astype(np.int64)
            df['end'] = df['end'].astype(np.int64)
            df['value'] = df['value'].astype(float)
        except (TypeError, ValueError) as e:
            raise DataError(f"malformed rows in mappability track {bedgraph_path}: {e}") from e
        df['chrom'] = df['chrom'].astype(str)

        logger.debug(f"Read {len(df)} mappability intervals from {bedgraph_path}")
        return cls(df)

    def mean(self, chrom: str, start: int, end: int) -> Optional[float]:
        """
        Coverage-weighted mean of the track over [start, end).

        :return: Mean value over covered bases, None if no interval overlaps.
        """
        if chrom not in self._by_chrom or end <= start:
            return None
        starts, ends, values = self._by_chrom[chrom]
        first = np.searchsorted(ends, start, side='right')
        last = np.searchsorted(starts, end, side='left')
        if first >= last:
            return None
        overlap = np.minimum(ends[first:last], end) - np.maximum(starts[first:last], start)
        overlap = np.clip(overlap, 0, None)
        covered = overlap.sum()
        if covered == 0:
            return None
        return float(np.dot(overlap, values[first:last]) / covered)
