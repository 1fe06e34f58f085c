"""
Genomic bin covariate table construction.
Builds uniform or restriction-fragment bins with GC content, effective length
and mappability, one row per bin in ascending coordinate order.
"""

import logging
from typing import Iterable, List

import numpy as np
import pandas as pd
from Bio.Seq import reverse_complement
from Bio.SeqUtils import gc_fraction, nt_search

from hicnb.core.exceptions import ConfigError
from hicnb.core.models import BIN_COLUMNS, GenomicBin

logger = logging.getLogger(__name__)


def _mappability(track, chrom: str, start: int, end: int) -> float:
    if track is None:
        return np.nan
    value = track.mean(chrom, start, end)
    return 0.0 if value is None else value


def _bin_row(chrom, start, end, sequence, effective_length, track, index):
    return {
        'chrom': chrom,
        'start': start,
        'end': end,
        'gc': float(gc_fraction(sequence, ambiguous="remove")),
        'len': float(effective_length),
        'map': _mappability(track, chrom, start, end),
        'bin_index': index
    }


def build_uniform_bins(genome, chromosomes: Iterable[str], bin_size: int, mappability=None) -> pd.DataFrame:
    """
    Tile each chromosome into windows of bin_size bp.

    Effective length of a window is its width minus masked (N) bases.

    :param genome: Sequence provider with chromosome_length() and fetch().
    :param chromosomes: Chromosomes to bin.
    :param bin_size: Window size in bp.
    :param mappability: Optional track provider with mean(chrom, start, end).
    :return: Bin table (BIN_COLUMNS).
    """
    if bin_size is None or bin_size <= 0:
        raise ConfigError(f"bin_size must be positive, got {bin_size}")

    rows = []
    for chrom in chromosomes:
        length = genome.chromosome_length(chrom)
        sequence = genome.fetch(chrom, 0, length)
        for index, start in enumerate(range(0, length, bin_size)):
            end = min(start + bin_size, length)
            window = sequence[start:end]
            effective = (end - start) - window.count('N')
            rows.append(_bin_row(chrom, start, end, window, effective, mappability, index))
        logger.debug(f"{chrom}: {len(range(0, length, bin_size))} uniform bins of {bin_size} bp")

    return pd.DataFrame(rows, columns=BIN_COLUMNS)


def find_cut_sites(sequence: str, motifs: Iterable[str]) -> np.ndarray:
    """
    Locate every occurrence of the motifs on either strand.

    :param sequence: Chromosome sequence.
    :param motifs: Recognition motifs, IUPAC ambiguity codes allowed.
    :return: Sorted unique motif start positions.
    """
    sequence = sequence.upper()
    sites = set()
    for motif in motifs:
        motif = motif.upper()
        for pattern in {motif, reverse_complement(motif)}:
            sites.update(nt_search(sequence, pattern)[1:])
    return np.array(sorted(sites), dtype=np.int64)


def build_restriction_bins(
    genome,
    chromosomes: Iterable[str],
    motifs: List[str],
    fragments_per_bin: int = 1,
    window: int = 500,
    mappability=None
) -> pd.DataFrame:
    """
    Bin each chromosome into groups of consecutive restriction fragments.

    The effective length of a fragment is the part lying within `window` bp of
    either fragment end; a bin's effective length is the sum over its fragments.

    :param genome: Sequence provider with chromosome_length() and fetch().
    :param chromosomes: Chromosomes to bin.
    :param motifs: Restriction motifs defining the cut sites.
    :param fragments_per_bin: Number of consecutive fragments per bin.
    :param window: Distance from fragment ends counted as ligation-accessible.
    :param mappability: Optional track provider with mean(chrom, start, end).
    :return: Bin table (BIN_COLUMNS).
    """
    if not motifs:
        raise ConfigError("at least one restriction motif is required")
    if fragments_per_bin <= 0:
        raise ConfigError(f"fragments_per_bin must be positive, got {fragments_per_bin}")
    if window <= 0:
        raise ConfigError(f"window must be positive, got {window}")

    rows = []
    for chrom in chromosomes:
        length = genome.chromosome_length(chrom)
        sequence = genome.fetch(chrom, 0, length)
        cuts = find_cut_sites(sequence, motifs)
        bounds = np.unique(np.concatenate([[0], cuts[(cuts > 0) & (cuts < length)], [length]]))
        frag_starts, frag_ends = bounds[:-1], bounds[1:]
        frag_effective = np.minimum(frag_ends - frag_starts, 2 * window)

        n_fragments = len(frag_starts)
        for index, first in enumerate(range(0, n_fragments, fragments_per_bin)):
            last = min(first + fragments_per_bin, n_fragments)
            start, end = int(frag_starts[first]), int(frag_ends[last - 1])
            effective = frag_effective[first:last].sum()
            rows.append(_bin_row(chrom, start, end, sequence[start:end], effective, mappability, index))
        logger.debug(f"{chrom}: {len(cuts)} cut sites, {n_fragments} fragments")

    return pd.DataFrame(rows, columns=BIN_COLUMNS)


def bins_to_records(bins: pd.DataFrame) -> List[GenomicBin]:
    return [GenomicBin.from_row(row) for row in bins.itertuples(index=False)]
