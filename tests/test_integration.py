import os
import subprocess
import sys
from pathlib import Path

import numpy as np
import pandas as pd

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def run_cli(*args):
    env = dict(os.environ, PYTHONPATH=str(SRC_DIR))
    cmd = [sys.executable, "-m", "hicnb.main", *[str(a) for a in args]]
    result = subprocess.run(cmd, capture_output=True, text=True, env=env)
    print(result.stdout)
    print(result.stderr)
    return result


def write_genome(path, rng, chroms=("chr1", "chr2"), length=40000):
    with open(path, "w") as handle:
        for chrom in chroms:
            sequence = "".join(rng.choice(list("ACGT"), size=length))
            handle.write(f">{chrom}\n")
            for i in range(0, length, 80):
                handle.write(sequence[i:i + 80] + "\n")


def write_counts(path, rng, chroms=("chr1", "chr2"), n_bins=40, bin_size=1000, max_steps=15):
    rows = []
    for chrom in chroms:
        for i in range(n_bins):
            for step in range(1, min(max_steps, n_bins - 1 - i) + 1):
                mu = 150.0 / (1 + step)
                count = rng.negative_binomial(10, 10 / (10 + mu))
                if count:
                    # Positions anywhere inside the bins
                    rows.append((chrom, i * bin_size + 10, (i + step) * bin_size + 500, count))
    pd.DataFrame(rows).to_csv(path, sep="\t", header=False, index=False)


def test_full_pipeline(tmp_path):
    rng = np.random.default_rng(42)
    fasta = tmp_path / "genome.fa"
    write_genome(fasta, rng)
    count_files = []
    for name in ["a1", "a2", "b1", "b2"]:
        path = tmp_path / f"{name}.counts.tsv"
        write_counts(path, rng)
        count_files.append(path)

    # Phase 1: bins
    features_dir = tmp_path / "features"
    result = run_cli("features", "-f", fasta, "--bin-size", 1000, "-o", features_dir)
    assert result.returncode == 0
    bins = pd.read_csv(features_dir / "bins.tsv", sep="\t")
    assert len(bins) == 80

    # Phase 2: significance
    call_dir = tmp_path / "call"
    result = run_cli(
        "call", "-b", features_dir / "bins.tsv",
        "-c", *count_files,
        "-d", 15000,
        "--distance-bins", 5,
        "--min-stratum-size", 50,
        "--downsample-fraction", 0.5,
        "-o", call_dir,
        "--threads", 2
    )
    assert result.returncode == 0
    for name in ["a1", "a2", "b1", "b2"]:
        assert (call_dir / f"{name}.interactions.tsv.gz").exists()
    assert (call_dir / "significant_interactions.tsv").exists()
    assert (call_dir / "report.html").exists()
    assert (call_dir / "log.txt").exists()
    summary = pd.read_csv(call_dir / "summary_report.tsv", sep="\t")
    assert len(summary) == 8
    assert set(summary["status"]) <= {"COVARIATE_MODEL", "DISTANCE_ONLY"}

    # Phase 3: differential, testing every interaction
    filter_path = tmp_path / "filter.tsv"
    scored = pd.read_csv(call_dir / "a1.interactions.tsv.gz", sep="\t", comment="#")
    scored[["chrom", "start_i", "start_j"]].to_csv(filter_path, sep="\t", index=False)

    diff_dir = tmp_path / "diff"
    result = run_cli(
        "diff",
        "--condition", "A", call_dir / "a1.interactions.tsv.gz", call_dir / "a2.interactions.tsv.gz",
        "--condition", "B", call_dir / "b1.interactions.tsv.gz", call_dir / "b2.interactions.tsv.gz",
        "--filter", filter_path,
        "-o", diff_dir
    )
    assert result.returncode == 0
    diff = pd.read_csv(diff_dir / "differential_B_vs_A.tsv", sep="\t")
    assert list(diff.columns[:6]) == ["chrom", "start_i", "start_j", "log2fc", "pvalue", "qvalue"]
    assert len(diff) > 0
    assert (diff["qvalue"].dropna() <= 1).all()
    assert (diff_dir / "log.txt").exists()


def test_invalid_parameters_fail_cleanly(tmp_path):
    counts = tmp_path / "s.counts.tsv"
    counts.write_text("chr1\t10\t2000\t3\n")
    bins = tmp_path / "bins.tsv"
    bins.write_text("chrom\tstart\tend\tgc\tlen\nchr1\t0\t1000\t0.4\t1000\nchr1\t1000\t2000\t0.5\t1000\n")

    result = run_cli("call", "-b", bins, "-c", counts, "-d", 5000, "--qvalue-mode", "global",
                     "--downsample-fraction", 2, "-o", tmp_path / "out", "--threads", 1)
    assert result.returncode == 1
    assert "downsample_fraction" in (tmp_path / "out" / "log.txt").read_text()
