import gzip

import numpy as np
import pandas as pd
import pytest

from hicnb.core.exceptions import DataError
from hicnb.core.features import expand
from hicnb.core.models import FitStatus
from hicnb.core.significance import fit
from hicnb.parsers.counts_parser import parse_hicpro_matrix, parse_sparse_counts
from hicnb.parsers.fasta_parser import FastaGenome
from hicnb.parsers.filter_parser import parse_filter_file
from hicnb.parsers.interaction_parser import read_bin_table, read_header, read_interactions
from hicnb.parsers.mappability_parser import BedGraphTrack
from hicnb.reporting.report_generator import write_bin_table, write_interactions


def test_parse_sparse_counts_four_columns(tmp_path):
    path = tmp_path / "counts.tsv"
    path.write_text("chr1\t100\t2500\t4\nchr1\t2500\t100\t1\nchr2\t0\t1000\t9\n")

    df = parse_sparse_counts(str(path))
    assert list(df.columns) == ['chrom', 'pos_i', 'pos_j', 'count']
    assert len(df) == 3
    assert df['count'].sum() == 14


def test_parse_sparse_counts_drops_trans_rows(tmp_path):
    path = tmp_path / "counts.tsv"
    path.write_text("chr1\t100\tchr1\t2500\t4\nchr1\t100\tchr2\t2500\t8\n")

    df = parse_sparse_counts(str(path))
    assert len(df) == 1
    assert df.iloc[0]['count'] == 4


def test_parse_sparse_counts_rejects_bad_layout(tmp_path):
    path = tmp_path / "counts.tsv"
    path.write_text("chr1\t100\t4\n")
    with pytest.raises(DataError):
        parse_sparse_counts(str(path))

    path.write_text("chr1\t100\tabc\t4\n")
    with pytest.raises(DataError):
        parse_sparse_counts(str(path))


def test_parse_hicpro_matrix(tmp_path):
    bed = tmp_path / "abs.bed"
    bed.write_text("chr1\t0\t1000\t1\nchr1\t1000\t2000\t2\nchr2\t0\t1000\t3\n")
    matrix = tmp_path / "sample.matrix"
    matrix.write_text("1\t2\t5\n1\t3\t7\n2\t2\t1\n")

    df = parse_hicpro_matrix(str(matrix), str(bed))
    # The chr1-chr2 contact is dropped
    assert df[['pos_i', 'pos_j', 'count']].values.tolist() == [[0, 1000, 5], [1000, 1000, 1]]
    assert (df['chrom'] == 'chr1').all()

    matrix.write_text("1\t9\t5\n")
    with pytest.raises(DataError):
        parse_hicpro_matrix(str(matrix), str(bed))


def test_parse_filter_file(tmp_path):
    path = tmp_path / "filter.tsv"
    path.write_text("chrom\tstart_i\tstart_j\nchr1\t5000\t1000\nchr1\t1000\t5000\nchr2\t0\t2000\n")

    df = parse_filter_file(str(path))
    # Header skipped, anchors swapped and duplicates removed
    assert df.values.tolist() == [['chr1', 1000, 5000], ['chr2', 0, 2000]]

    no_header = tmp_path / "filter2.tsv"
    no_header.write_text("chr1\t1000\t5000\n")
    assert len(parse_filter_file(str(no_header))) == 1


def test_fasta_genome(tmp_path):
    path = tmp_path / "genome.fa"
    path.write_text(">chrA\nacgtNN\nGG\n>chrB\nTTTT\n")

    genome = FastaGenome.from_fasta(str(path))
    assert genome.chromosomes() == ['chrA', 'chrB']
    assert genome.chromosome_length('chrA') == 8
    assert genome.fetch('chrA', 2, 6) == 'GTNN'
    with pytest.raises(DataError):
        genome.fetch('chrC', 0, 1)

    only_b = FastaGenome.from_fasta(str(path), chromosomes=['chrB'])
    assert only_b.chromosomes() == ['chrB']


def test_bedgraph_track(tmp_path):
    path = tmp_path / "map.bedGraph"
    path.write_text("chr1\t0\t100\t1.0\nchr1\t100\t200\t0.0\nchr1\t300\t400\t0.5\n")

    track = BedGraphTrack.from_bedgraph(str(path))
    assert track.mean('chr1', 50, 150) == pytest.approx(0.5)
    # Uncovered bases are ignored
    assert track.mean('chr1', 150, 350) == pytest.approx((50 * 0.0 + 50 * 0.5) / 100)
    assert track.mean('chr1', 200, 300) is None
    assert track.mean('chr2', 0, 100) is None


def test_interaction_file_round_trip(tmp_path, make_sample):
    sample = make_sample("s1", seed=4, chroms=("chr1", "chr2"))
    path = tmp_path / "s1.interactions.tsv.gz"
    write_interactions(sample.containers.values(), path)

    with gzip.open(path, 'rt') as handle:
        assert handle.readline().startswith('# max_distance:')
    meta = read_header(path)
    assert meta['covariates'] == 'gc,len,map'
    assert meta['bin_covariates'] == 'gc,len,map'

    restored = read_interactions(str(path))
    assert list(restored) == ['chr1', 'chr2']
    for chrom, original in sample.containers.items():
        copy = restored[chrom]
        assert copy.fit_status == original.fit_status
        assert copy.max_distance == original.max_distance
        assert copy.covariate_names == original.covariate_names
        assert copy.dispersion == pytest.approx(original.dispersion)
        pd.testing.assert_frame_equal(copy.interactions, original.interactions, check_dtype=False)
        assert copy.bins['start'].tolist() == original.bins['start'].tolist()
        for name in ['gc', 'len', 'map']:
            np.testing.assert_allclose(copy.bins[name].to_numpy(), original.bins[name].to_numpy())
        copy.validate()


def test_reloaded_interactions_expand_and_refit_like_the_original(tmp_path, make_sample, fast_params):
    sample = make_sample("s1", seed=4)
    original = sample.containers['chr1']
    path = tmp_path / "s1.tsv"
    write_interactions([original], path)

    copy = expand(read_interactions(str(path))['chr1'])
    assert copy.covariate_names == ['gc', 'len', 'map']
    pd.testing.assert_frame_equal(copy.interactions[['gc', 'len', 'map']],
                                  original.interactions[['gc', 'len', 'map']], check_dtype=False)

    fit(copy, fast_params)
    assert copy.fit_status == original.fit_status == FitStatus.COVARIATE_MODEL
    np.testing.assert_allclose(copy.interactions['mu'], original.interactions['mu'], rtol=1e-6)


def test_interaction_file_without_bin_covariates(tmp_path, make_sample):
    sample = make_sample("s1", seed=4)
    path = tmp_path / "s1.tsv"
    write_interactions(sample.containers.values(), path)

    # Drop the per-anchor columns and header, as in files from older runs
    df = pd.read_csv(path, sep='\t', comment='#')
    old = tmp_path / "old.tsv"
    anchor_columns = [f'{name}_{side}' for name in ['gc', 'len', 'map'] for side in ('i', 'j')]
    df.drop(columns=anchor_columns).to_csv(old, sep='\t', index=False)

    copy = read_interactions(str(old))['chr1']
    assert copy.bins['gc'].isna().all()
    # Re-expanding keeps the stored 2-D covariates
    expand(copy)
    assert copy.covariate_names == ['gc', 'len', 'map']
    assert copy.interactions['gc'].notna().all()


def test_interaction_file_without_model_columns(tmp_path, make_sample):
    sample = make_sample("raw", seed=4, fit=False)
    path = tmp_path / "raw.tsv"
    write_interactions(sample.containers.values(), path)

    restored = read_interactions(str(path))['chr1']
    assert restored.fit_status is None
    assert 'mu' not in restored.interactions.columns
    assert restored.interactions['counts'].tolist() == sample.containers['chr1'].interactions['counts'].tolist()


def test_unscored_chromosome_round_trip(tmp_path, make_sample):
    sample = make_sample("s1", seed=4)
    container = sample.containers['chr1']
    container.fit_status = FitStatus.UNSCORED
    container.dispersion = np.nan
    for column in ['mu', 'sdev', 'pvalue', 'qvalue', 'zvalue']:
        container.interactions[column] = np.nan

    path = tmp_path / "s1.tsv"
    write_interactions([container], path)
    restored = read_interactions(str(path))['chr1']

    assert restored.fit_status == FitStatus.UNSCORED
    assert np.isnan(restored.dispersion)
    assert restored.interactions['mu'].isna().all()


def test_bin_table_round_trip(tmp_path, bins):
    path = write_bin_table(bins, tmp_path / "bins.tsv")
    restored = read_bin_table(str(path))

    pd.testing.assert_frame_equal(restored, bins, check_dtype=False)

    (tmp_path / "broken.tsv").write_text("chrom\tstart\nchr1\t0\n")
    with pytest.raises(DataError):
        read_bin_table(str(tmp_path / "broken.tsv"))
