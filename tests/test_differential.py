import numpy as np
import pandas as pd
import pytest

from hicnb.core.differential import (
    compare, estimate_dispersions, normalization_factors, order_conditions, results_to_frame, shrink_dispersions
)
from hicnb.core.exceptions import ConfigError
from hicnb.core.models import KEY_COLUMNS, DifferentialParams, Sample


def all_keys(sample):
    return pd.concat([c.interactions[KEY_COLUMNS] for c in sample.containers.values()], ignore_index=True)


def replicate(sample, name, condition):
    return Sample(name=name, condition=condition,
                  containers={chrom: c.copy() for chrom, c in sample.containers.items()})


def test_identical_conditions_show_no_change(make_sample):
    base = make_sample("base", seed=11)
    samples = {
        'A': [replicate(base, 'a1', 'A'), replicate(base, 'a2', 'A')],
        'B': [replicate(base, 'b1', 'B'), replicate(base, 'b2', 'B')],
    }
    results = compare(samples, all_keys(base))
    df = results_to_frame(results)

    assert len(df) > 0
    assert (df['condition'] == 'B').all() and (df['reference'] == 'A').all()
    np.testing.assert_allclose(df['log2fc'], 0, atol=1e-6)
    assert (df['qvalue'] > 0.99).all()


def scattered(start_i, start_j):
    # About one interaction in seventeen, spread over all distances
    return ((start_i // 1000) * 7 + start_j // 1000) % 17 == 0


def test_boosted_interactions_are_detected(make_sample):
    def triple_scattered(counts):
        boosted = counts['count'].to_numpy().copy()
        boosted[scattered(counts['pos_i'], counts['pos_j']).to_numpy()] *= 3
        return boosted

    samples = {
        'ctrl': [make_sample('c1', seed=21), make_sample('c2', seed=22)],
        'treat': [make_sample('t1', seed=23, boost=triple_scattered),
                  make_sample('t2', seed=24, boost=triple_scattered)],
    }
    filter_set = all_keys(samples['ctrl'][0])
    df = results_to_frame(compare(samples, filter_set, reference_condition='ctrl'))

    boosted = scattered(df['start_i'], df['start_j'])
    assert boosted.sum() > 20
    assert df.loc[boosted, 'log2fc'].median() > 0.5
    assert df.loc[boosted, 'pvalue'].median() < df.loc[~boosted, 'pvalue'].median()
    assert ((df['qvalue'].dropna() >= 0) & (df['qvalue'].dropna() <= 1)).all()
    assert (df['dispersion'].dropna() > 0).all()


def test_contrasts_form_a_chain(make_sample):
    base = make_sample("base", seed=5)
    samples = {c: [replicate(base, f'{c}{i}', c) for i in range(2)] for c in ['B', 'A', 'C']}

    assert order_conditions(samples, 'A') == ['A', 'B', 'C']
    df = results_to_frame(compare(samples, all_keys(base).iloc[:50], reference_condition='A'))
    contrasts = list(dict.fromkeys(zip(df['condition'], df['reference'])))
    assert contrasts == [('B', 'A'), ('C', 'B')]


def test_filter_set_restricts_tested_interactions(make_sample):
    base = make_sample("base", seed=8)
    samples = {'A': [replicate(base, 'a1', 'A')], 'B': [replicate(base, 'b1', 'B')]}

    # Keys absent from the samples are ignored; order and duplicates do not matter
    keys = all_keys(base).iloc[:10]
    extra = [('chr1', 5, 17), ('chrZ', 0, 1000)]
    filter_set = list(keys.itertuples(index=False, name=None))[::-1] + extra
    df = results_to_frame(compare(samples, filter_set))

    assert len(df) <= 10
    assert set(zip(df['start_i'], df['start_j'])) <= set(zip(keys['start_i'], keys['start_j']))


def test_compare_rejects_invalid_designs(make_sample):
    base = make_sample("base", seed=9)
    keys = all_keys(base)

    with pytest.raises(ConfigError):
        compare({'A': [replicate(base, 'a1', 'A')]}, keys)
    with pytest.raises(ConfigError):
        compare({'A': [replicate(base, 'a1', 'A')], 'B': []}, keys)
    with pytest.raises(ConfigError):
        compare({'A': [replicate(base, 'a1', 'A')], 'B': [replicate(base, 'b1', 'B')]}, keys,
                reference_condition='C')
    # Duplicate sample names
    with pytest.raises(ConfigError):
        compare({'A': [replicate(base, 'x', 'A')], 'B': [replicate(base, 'x', 'B')]}, keys)
    # Nothing left after intersecting with the samples
    with pytest.raises(ConfigError):
        compare({'A': [replicate(base, 'a1', 'A')], 'B': [replicate(base, 'b1', 'B')]},
                [('chrZ', 0, 1000)])


def test_compare_rejects_different_binnings(make_sample):
    a = make_sample("a1", seed=1)
    b = replicate(a, 'b1', 'B')
    chrom = b.chromosomes()[0]
    b.containers[chrom].bins = b.containers[chrom].bins.assign(end=lambda x: x['end'] + 1)

    with pytest.raises(ConfigError):
        compare({'A': [a], 'B': [b]}, all_keys(a))


def test_compare_requires_fitted_samples(make_sample):
    unfitted = make_sample("u1", seed=1, fit=False)
    other = replicate(unfitted, 'u2', 'B')
    with pytest.raises(ConfigError):
        compare({'A': [unfitted], 'B': [other]}, all_keys(unfitted))


def test_normalization_factors_have_unit_geometric_mean():
    mu = np.array([[1.0, 4.0], [2.0, 2.0], [3.0, 12.0]])
    nf = normalization_factors(mu)

    np.testing.assert_allclose(np.exp(np.log(nf).mean(axis=1)), 1.0)
    np.testing.assert_allclose(nf[0], [0.5, 2.0])


def test_dispersion_estimates_without_replicates_use_the_trend():
    rng = np.random.default_rng(0)
    counts = rng.poisson(50, size=(100, 2)).astype(float)
    nf = np.ones_like(counts)
    distance = np.repeat([1000, 2000], 50)

    # One replicate per condition: blind estimation, one value per stratum
    alpha, base_mean = estimate_dispersions(counts, nf, np.array([0, 1]), distance,
                                            DifferentialParams(distance_bin_count=2))
    assert np.all(alpha > 0)
    np.testing.assert_allclose(base_mean, counts.mean(axis=1))


def test_shrinkage_moves_estimates_towards_the_trend():
    params = DifferentialParams()
    trend = np.full(6, 0.1)
    raw = np.array([0.05, 0.08, 0.12, 0.15, 0.2, 50.0])
    shrunk = shrink_dispersions(raw, trend, df_resid=2, params=params)

    moderate = slice(0, 5)
    assert np.all(np.abs(np.log(shrunk[moderate] / trend[moderate])) <= np.abs(np.log(raw[moderate] / trend[moderate])))
    # A far outlier keeps its own estimate
    assert shrunk[5] == raw[5]


def test_differential_params_validation():
    with pytest.raises(ConfigError):
        DifferentialParams(min_trend_points=1)
    with pytest.raises(ConfigError):
        DifferentialParams(outlier_sd=0)
