"""
Main entry point for the HiCNB command-line tool.
Three subcommands drive the pipeline from files:
  features  build the genomic bin covariate table
  call      build interaction containers, fit the background model and score every interaction
  diff      test interactions for differential contact frequency across conditions
"""

import argparse
import logging
import multiprocessing
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List

from hicnb.core.container import add_counts, build_containers
from hicnb.core.covariates import build_restriction_bins, build_uniform_bins
from hicnb.core.differential import compare
from hicnb.core.exceptions import ConfigError
from hicnb.core.features import expand
from hicnb.core.filtering import significant_interactions
from hicnb.core.models import DifferentialParams, Sample, SignificanceParams
from hicnb.core.significance import fit_sample
from hicnb.parsers.counts_parser import parse_hicpro_matrix, parse_sparse_counts
from hicnb.parsers.fasta_parser import FastaGenome
from hicnb.parsers.filter_parser import parse_filter_file
from hicnb.parsers.interaction_parser import read_bin_table, read_interactions
from hicnb.parsers.mappability_parser import BedGraphTrack
from hicnb.reporting.report_generator import (
    generate_report, write_bin_table, write_differential, write_filter_set, write_interactions
)
from hicnb.utils.logging import setup_logging

logger = logging.getLogger(__name__)

INTERACTIONS_SUFFIX = '.interactions.tsv.gz'


def _add_bin_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("-f", "--fasta", help="Genome FASTA file")
    layout = parser.add_mutually_exclusive_group()
    layout.add_argument("--bin-size", type=int, help="Uniform bin size in bp")
    layout.add_argument("--motif", nargs='+', help="Restriction motif(s) for fragment bins (IUPAC allowed)")
    parser.add_argument("--fragments-per-bin", type=int, default=1, help="Consecutive restriction fragments per bin")
    parser.add_argument("--window", type=int, default=500, help="Ligation-accessible distance from fragment ends")
    parser.add_argument("--mappability", help="Optional bedGraph mappability track")
    parser.add_argument("--chromosomes", nargs='+', help="Restrict to these chromosomes")


def _add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("-o", "--output", default="./output", help="Output directory for results")
    parser.add_argument("--verbose", action="store_true", help="Show debug messages on the console")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="HiCNB: significant and differential chromatin contacts with negative-binomial models.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # features
    features = subparsers.add_parser("features", help="Build the bin covariate table",
                                     formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    _add_bin_arguments(features)
    _add_common_arguments(features)

    # call
    call = subparsers.add_parser("call", help="Fit the background model and score interactions",
                                 formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    call.add_argument("-b", "--bins", help="Bin table from 'hicnb features' (alternative to --fasta)")
    _add_bin_arguments(call)
    call.add_argument("-c", "--counts", nargs='+', default=[], help="Sparse count file(s), one per sample")
    call.add_argument("--hicpro", nargs=2, action='append', default=[], metavar=("MATRIX", "BED"),
                      help="HiC-Pro matrix and bed file of one sample (repeatable)")
    call.add_argument("--names", nargs='+', help="Sample names, in input order (default: file names)")
    call.add_argument("-d", "--max-distance", type=int, required=True, help="Largest modeled anchor distance (bp)")
    call.add_argument("--include-diagonal", action="store_true", help="Also model self-interactions")
    call.add_argument("--distance-bins", type=int, default=20, help="Number of log-distance strata")
    call.add_argument("--downsample-fraction", type=float, default=0.01, help="Fraction of each stratum used for fitting")
    call.add_argument("--min-stratum-size", type=int, default=1000, help="Minimum interactions per stratum used for fitting")
    call.add_argument("--spline-df", type=int, default=6, help="Degrees of freedom of the distance spline")
    call.add_argument("--seed", type=int, default=1010, help="Random seed for downsampling")
    call.add_argument("--max-iter", type=int, default=50, help="Maximum dispersion iterations")
    call.add_argument("--qvalue-mode", choices=["chromosome", "global"], default="chromosome",
                      help="Scope of the Benjamini-Hochberg correction")
    call.add_argument("-q", "--qvalue-threshold", type=float, default=0.05, help="q-value threshold for significant calls")
    call.add_argument("--threads", type=int, default=max(1, multiprocessing.cpu_count() - 1),
                      help="Number of CPU cores for parallel processing")
    _add_common_arguments(call)

    # diff
    diff = subparsers.add_parser("diff", help="Differential testing across conditions",
                                 formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    diff.add_argument("--condition", nargs='+', action='append', required=True, metavar="NAME FILE",
                      help="Condition name followed by its replicate interaction files (repeatable)")
    diff.add_argument("--reference", help="Reference condition (default: first --condition)")
    diff.add_argument("--filter", help="Filter file of interactions to test (default: significant in any sample)")
    diff.add_argument("-q", "--qvalue-threshold", type=float, default=0.05,
                      help="q-value threshold defining the default filter set")
    diff.add_argument("--min-samples", type=int, default=1, help="Samples that must call an interaction for the default filter set")
    diff.add_argument("--distance-bins", type=int, default=20, help="Number of log-distance strata for the dispersion trend")
    diff.add_argument("--min-trend-points", type=int, default=10, help="Minimum interactions for a parametric trend fit")
    diff.add_argument("--max-iter", type=int, default=100, help="Maximum GLM iterations per interaction")
    _add_common_arguments(diff)

    return parser


def _load_bins(args):
    if getattr(args, 'bins', None):
        bins = read_bin_table(args.bins)
        if args.chromosomes:
            bins = bins[bins['chrom'].isin(args.chromosomes)].reset_index(drop=True)
        return bins

    if not args.fasta or (args.bin_size is None and not args.motif):
        raise ConfigError("either a bin table or --fasta with --bin-size or --motif is required")
    genome = FastaGenome.from_fasta(args.fasta, args.chromosomes)
    chromosomes = args.chromosomes or genome.chromosomes()
    track = BedGraphTrack.from_bedgraph(args.mappability) if args.mappability else None
    if args.motif:
        return build_restriction_bins(genome, chromosomes, args.motif, args.fragments_per_bin, args.window, track)
    return build_uniform_bins(genome, chromosomes, args.bin_size, track)


def _count_sources(args) -> List:
    sources = [(Path(p).name.split('.')[0], parse_sparse_counts, (p,)) for p in args.counts]
    sources += [(Path(m).name.split('.')[0], parse_hicpro_matrix, (m, b)) for m, b in args.hicpro]
    if not sources:
        raise ConfigError("at least one --counts or --hicpro input is required")
    if args.names:
        if len(args.names) != len(sources):
            raise ConfigError(f"{len(args.names)} names given for {len(sources)} count inputs")
        sources = [(name, fn, paths) for name, (_, fn, paths) in zip(args.names, sources)]
    names = [s[0] for s in sources]
    if len(set(names)) != len(names):
        raise ConfigError(f"sample names must be unique: {names}; use --names")
    return sources


def run_features(args, output_dir: Path):
    logger.info("Phase 1: Building bin covariate table...")
    bins = _load_bins(args)
    write_bin_table(bins, output_dir / 'bins.tsv')


def run_call(args, output_dir: Path, log_queue):
    params = SignificanceParams(
        distance_bin_count=args.distance_bins,
        downsample_fraction=args.downsample_fraction,
        min_stratum_size=args.min_stratum_size,
        spline_df=args.spline_df,
        seed=args.seed,
        max_iter=args.max_iter,
        qvalue_mode=args.qvalue_mode
    )
    sources = _count_sources(args)

    # Phase 1: Bins and containers
    logger.info("Phase 1: Preparing bins and interaction containers...")
    bins = _load_bins(args)

    # Phase 2: Counts
    logger.info("Phase 2: Reading contact counts...")
    samples = []
    for name, parse, paths in sources:
        containers = build_containers(bins, args.max_distance, include_diagonal=args.include_diagonal)
        counts = parse(*paths)
        for container in containers.values():
            add_counts(container, counts)
            expand(container)
        total = sum(int(c.interactions['counts'].sum()) for c in containers.values())
        logger.info(f"Sample {name}: {total} contacts within {args.max_distance} bp")
        samples.append(Sample(name=name, containers=containers))

    # Phase 3: Background model
    logger.info("Phase 3: Fitting background models...")
    reports = {}
    for sample in samples:
        reports[sample.name] = fit_sample(sample, params, threads=args.threads, log_queue=log_queue)

    # Phase 4: Outputs
    logger.info("Phase 4: Writing results...")
    n_significant = {}
    for sample in samples:
        write_interactions(sample.containers.values(), output_dir / f"{sample.name}{INTERACTIONS_SUFFIX}")
        n_significant[sample.name] = len(significant_interactions([sample], args.qvalue_threshold))
    write_filter_set(significant_interactions(samples, args.qvalue_threshold), output_dir / 'significant_interactions.tsv')

    run_parameters = asdict(params)
    run_parameters.update(max_distance=args.max_distance, include_diagonal=args.include_diagonal,
                          qvalue_threshold=args.qvalue_threshold)
    generate_report(reports, output_dir, run_parameters, n_significant)


def _sample_from_file(path: str, condition: str) -> Sample:
    name = Path(path).name
    for suffix in (INTERACTIONS_SUFFIX, '.tsv.gz', '.tsv'):
        if name.endswith(suffix):
            name = name[:-len(suffix)]
            break
    return Sample(name=name, condition=condition, containers=read_interactions(path))


def run_diff(args, output_dir: Path):
    params = DifferentialParams(
        distance_bin_count=args.distance_bins,
        min_trend_points=args.min_trend_points,
        max_iter=args.max_iter
    )

    # Phase 1: Samples
    logger.info("Phase 1: Reading fitted samples...")
    samples_by_condition: Dict[str, List[Sample]] = {}
    for entry in args.condition:
        if len(entry) < 2:
            raise ConfigError(f"--condition needs a name and at least one file, got {entry}")
        condition, files = entry[0], entry[1:]
        if condition in samples_by_condition:
            raise ConfigError(f"condition '{condition}' given twice")
        samples_by_condition[condition] = [_sample_from_file(f, condition) for f in files]

    # Phase 2: Filter set
    logger.info("Phase 2: Selecting interactions to test...")
    if args.filter:
        filter_set = parse_filter_file(args.filter)
    else:
        all_samples = [s for reps in samples_by_condition.values() for s in reps]
        filter_set = significant_interactions(all_samples, args.qvalue_threshold, args.min_samples)

    # Phase 3: Differential model
    logger.info("Phase 3: Testing for differential interactions...")
    results = compare(samples_by_condition, filter_set, args.reference, params)

    # Phase 4: Outputs
    logger.info("Phase 4: Writing results...")
    write_differential(results, output_dir)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    output_dir = Path(args.output)
    log_queue, log_listener = setup_logging(output_dir, args.verbose)

    try:
        logger.info(f"Starting HiCNB {args.command}...")
        if args.command == "features":
            run_features(args, output_dir)
        elif args.command == "call":
            run_call(args, output_dir, log_queue)
        else:
            run_diff(args, output_dir)
        logger.info(f"Pipeline complete. Results saved in {output_dir}")
    except Exception as e:
        logger.error(f"Critical failure: {e}")
        sys.exit(1)
    finally:
        log_listener.stop()


if __name__ == "__main__":
    main()
