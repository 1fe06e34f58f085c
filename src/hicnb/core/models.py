"""
Data models for HiCNB.
Defines genomic bins, interaction records, the per-chromosome InteractionContainer,
samples, fit status reporting and the parameter objects of the statistical models.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

import numpy as np
import pandas as pd

from hicnb.core.exceptions import ConfigError, DataError

BIN_COLUMNS = ['chrom', 'start', 'end', 'gc', 'len', 'map', 'bin_index']
ANCHOR_COLUMNS = ['chrom', 'start_i', 'end_i', 'start_j', 'end_j', 'distance', 'counts']
MODEL_COLUMNS = ['mu', 'sdev', 'pvalue', 'qvalue', 'zvalue']
KEY_COLUMNS = ['chrom', 'start_i', 'start_j']


class FitStatus(Enum):
    """
    Enum representing which background model scored a chromosome.
    """
    COVARIATE_MODEL = "COVARIATE_MODEL"
    DISTANCE_ONLY = "DISTANCE_ONLY"
    UNSCORED = "UNSCORED"


@dataclass(frozen=True)
class GenomicBin:
    """
    A genomic interval treated as one unit of interaction-matrix granularity.
    """
    chrom: str
    start: int
    end: int
    gc: float = 0.0
    effective_length: float = 0.0
    mappability: Optional[float] = None
    bin_index: int = 0

    @classmethod
    def from_row(cls, row) -> "GenomicBin":
        mappability = getattr(row, 'map', None)
        if mappability is not None and pd.isna(mappability):
            mappability = None
        return cls(
            chrom=str(row.chrom),
            start=int(row.start),
            end=int(row.end),
            gc=float(row.gc),
            effective_length=float(row.len),
            mappability=mappability,
            bin_index=int(row.bin_index)
        )


@dataclass
class InteractionRecord:
    """
    A single bin pair with its 2-D covariates, observed count and model outputs.
    """
    chrom: str
    start_i: int
    start_j: int
    distance: int
    counts: int = 0
    covariates: Dict[str, float] = field(default_factory=dict)
    mu: float = math.nan
    sdev: float = math.nan
    pvalue: float = math.nan
    qvalue: float = math.nan
    zvalue: float = math.nan


@dataclass
class InteractionContainer:
    """
    Sparse table of all bin pairs of one chromosome within max_distance.

    Rows of ``interactions`` are sorted by (start_i, start_j) and carry the anchor
    coordinates, the observed counts, one column per 2-D covariate and, once the
    significance model has run, the model columns.
    """
    chrom: str
    bins: pd.DataFrame
    max_distance: int
    interactions: pd.DataFrame
    covariate_names: List[str] = field(default_factory=list)
    fit_status: Optional[FitStatus] = None
    dispersion: float = math.nan

    def __len__(self) -> int:
        return len(self.interactions)

    @property
    def bin_size(self) -> int:
        """Smallest gap between consecutive bin starts."""
        starts = np.sort(self.bins['start'].to_numpy())
        gaps = np.diff(starts)
        gaps = gaps[gaps > 0]
        if len(gaps) == 0:
            return int(self.bins['end'].iloc[0] - self.bins['start'].iloc[0]) if len(self.bins) else 0
        return int(gaps.min())

    @property
    def is_scored(self) -> bool:
        return self.fit_status in (FitStatus.COVARIATE_MODEL, FitStatus.DISTANCE_ONLY)

    def records(self) -> Iterator[InteractionRecord]:
        """
        Iterate over the container rows as InteractionRecord objects.
        """
        has_model = all(c in self.interactions.columns for c in MODEL_COLUMNS)
        for row in self.interactions.itertuples(index=False):
            values = row._asdict()
            record = InteractionRecord(
                chrom=self.chrom,
                start_i=int(values['start_i']),
                start_j=int(values['start_j']),
                distance=int(values['distance']),
                counts=int(values['counts']),
                covariates={name: float(values[name]) for name in self.covariate_names}
            )
            if has_model:
                for name in MODEL_COLUMNS:
                    setattr(record, name, float(values[name]))
            yield record

    def validate(self):
        """
        Check the container invariants.

        :raises DataError: if anchors are unordered, out of range, unknown or duplicated.
        """
        df = self.interactions
        if (df['start_i'] > df['start_j']).any():
            raise DataError("anchors are not sorted (start_i > start_j)", self.chrom)
        if (df['distance'] != df['start_j'] - df['start_i']).any():
            raise DataError("distance column does not match anchor coordinates", self.chrom)
        if (df['distance'] > self.max_distance).any():
            raise DataError(f"records exceed max_distance={self.max_distance}", self.chrom)
        known = set(self.bins['start'].tolist())
        if not (df['start_i'].isin(known).all() and df['start_j'].isin(known).all()):
            raise DataError("anchors reference bins outside the bin set", self.chrom)
        if df.duplicated(subset=['start_i', 'start_j']).any():
            raise DataError("duplicate (start_i, start_j) pairs", self.chrom)
        if (df['counts'] < 0).any():
            raise DataError("negative counts", self.chrom)

    def copy(self) -> "InteractionContainer":
        return InteractionContainer(
            chrom=self.chrom,
            bins=self.bins.copy(),
            max_distance=self.max_distance,
            interactions=self.interactions.copy(),
            covariate_names=list(self.covariate_names),
            fit_status=self.fit_status,
            dispersion=self.dispersion
        )


@dataclass
class Sample:
    """
    A named collection of per-chromosome containers sharing one binning schema.
    """
    name: str
    condition: Optional[str] = None
    containers: Dict[str, InteractionContainer] = field(default_factory=dict)

    def chromosomes(self) -> List[str]:
        return list(self.containers.keys())

    def bin_schema(self) -> Dict[str, pd.DataFrame]:
        return {chrom: c.bins[['chrom', 'start', 'end']] for chrom, c in self.containers.items()}


@dataclass
class ChromosomeReport:
    """
    Outcome of the significance model for one chromosome.
    """
    chrom: str
    status: FitStatus
    n_records: int = 0
    n_scored: int = 0
    dispersion: float = math.nan
    message: Optional[str] = None


@dataclass
class DifferentialResult:
    """
    Result of one differential contrast for one interaction.
    log2fc is log2(condition / reference).
    """
    chrom: str
    start_i: int
    start_j: int
    condition: str
    reference: str
    log2fc: float = math.nan
    pvalue: float = math.nan
    qvalue: float = math.nan
    base_mean: float = math.nan
    dispersion: float = math.nan


@dataclass
class SignificanceParams:
    """
    Parameters of the distance-stratified negative-binomial background model.
    """
    distance_bin_count: int = 20
    downsample_fraction: float = 0.01
    min_stratum_size: int = 1000
    spline_df: int = 6
    seed: int = 1010
    max_iter: int = 50
    qvalue_mode: str = "chromosome"

    def __post_init__(self):
        if self.distance_bin_count < 1:
            raise ConfigError(f"distance_bin_count must be >= 1, got {self.distance_bin_count}")
        if not 0 < self.downsample_fraction <= 1:
            raise ConfigError(f"downsample_fraction must be in (0, 1], got {self.downsample_fraction}")
        if self.min_stratum_size < 1:
            raise ConfigError(f"min_stratum_size must be >= 1, got {self.min_stratum_size}")
        if self.spline_df < 3:
            raise ConfigError(f"spline_df must be >= 3 for a cubic spline, got {self.spline_df}")
        if self.max_iter < 1:
            raise ConfigError(f"max_iter must be >= 1, got {self.max_iter}")
        if self.qvalue_mode not in ("chromosome", "global"):
            raise ConfigError(f"qvalue_mode must be 'chromosome' or 'global', got {self.qvalue_mode!r}")


@dataclass
class DifferentialParams:
    """
    Parameters of the replicate-aware differential model.
    """
    distance_bin_count: int = 20
    min_trend_points: int = 10
    outlier_sd: float = 2.0
    prior_var_floor: float = 0.25
    max_iter: int = 100

    def __post_init__(self):
        if self.distance_bin_count < 1:
            raise ConfigError(f"distance_bin_count must be >= 1, got {self.distance_bin_count}")
        if self.min_trend_points < 2:
            raise ConfigError(f"min_trend_points must be >= 2, got {self.min_trend_points}")
        if self.outlier_sd <= 0 or self.prior_var_floor <= 0:
            raise ConfigError("outlier_sd and prior_var_floor must be positive")
        if self.max_iter < 1:
            raise ConfigError(f"max_iter must be >= 1, got {self.max_iter}")
