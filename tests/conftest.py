"""
Shared test fixtures for the HiCNB test suite.
Synthetic bins and contact counts with a known distance decay.
"""

import numpy as np
import pandas as pd
import pytest

from hicnb.core.container import add_counts, build_containers
from hicnb.core.features import expand
from hicnb.core.models import Sample, SignificanceParams
from hicnb.core.significance import fit_sample

BIN_SIZE = 1000
MAX_DISTANCE = 20 * BIN_SIZE


def synthetic_bins(chroms=("chr1",), n_bins=60, bin_size=BIN_SIZE, seed=0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    frames = []
    for chrom in chroms:
        starts = np.arange(n_bins) * bin_size
        frames.append(pd.DataFrame({
            'chrom': chrom,
            'start': starts,
            'end': starts + bin_size,
            'gc': rng.uniform(0.35, 0.6, n_bins),
            'len': bin_size * rng.uniform(0.5, 1.0, n_bins),
            'map': rng.uniform(0.7, 1.0, n_bins),
            'bin_index': np.arange(n_bins)
        }))
    return pd.concat(frames, ignore_index=True)


def expected_counts(container, scale=200.0) -> np.ndarray:
    """Power-law distance decay modulated by the anchors' GC content."""
    df = container.interactions
    gc = container.bins.set_index('start')['gc']
    gc_mean = (gc.reindex(df['start_i']).to_numpy() + gc.reindex(df['start_j']).to_numpy()) / 2
    steps = df['distance'].to_numpy() / container.bin_size
    return scale * (1 + steps) ** -1.0 * np.exp(2.0 * (gc_mean - 0.45))


def simulate_counts(container, seed=0, alpha=0.1, scale=200.0, poisson=False) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    mu = expected_counts(container, scale)
    if poisson:
        counts = rng.poisson(mu)
    else:
        size = 1.0 / alpha
        counts = rng.negative_binomial(size, size / (size + mu))
    df = container.interactions
    return pd.DataFrame({
        'chrom': container.chrom,
        'pos_i': df['start_i'].to_numpy(),
        'pos_j': df['start_j'].to_numpy(),
        'count': counts
    })


@pytest.fixture
def bins():
    """Sixty 1 kb bins on chr1 with random covariates."""
    return synthetic_bins()


@pytest.fixture
def fast_params():
    """Model parameters sized for small synthetic chromosomes."""
    return SignificanceParams(distance_bin_count=10, downsample_fraction=0.5, min_stratum_size=30)


@pytest.fixture
def make_sample(fast_params):
    """Factory building a fitted (or unfitted) sample from simulated counts."""
    def _make(name, seed, chroms=("chr1",), condition=None, fit=True, boost=None):
        containers = build_containers(synthetic_bins(chroms), MAX_DISTANCE)
        for k, (chrom, container) in enumerate(containers.items()):
            counts = simulate_counts(container, seed=seed + 1000 * k)
            if boost is not None:
                counts['count'] = boost(counts)
            add_counts(container, counts)
            expand(container)
        sample = Sample(name=name, condition=condition, containers=containers)
        if fit:
            fit_sample(sample, fast_params)
        return sample
    return _make
