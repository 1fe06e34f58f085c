"""
Report generation module for HiCNB.
Writes interaction files, bin tables, filter sets, differential results, the
per-chromosome TSV summary and the HTML run summary.
"""

import gzip
import logging
import math
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape

from hicnb.core.differential import results_to_frame
from hicnb.core.features import bin_covariate_names
from hicnb.core.models import (
    ANCHOR_COLUMNS, KEY_COLUMNS, MODEL_COLUMNS, ChromosomeReport, DifferentialResult, FitStatus,
    InteractionContainer
)

logger = logging.getLogger(__name__)

# Enough significant digits for floats to survive a write/read cycle
FLOAT_FORMAT = '%.17g'

DIFFERENTIAL_COLUMNS = ['chrom', 'start_i', 'start_j', 'log2fc', 'pvalue', 'qvalue', 'base_mean', 'dispersion']


def _open_output(path: Path):
    if str(path).endswith('.gz'):
        return gzip.open(path, 'wt', encoding='utf-8', newline='')
    return open(path, 'w', encoding='utf-8', newline='')


def _anchor_covariates(container: InteractionContainer, bin_covariates: List[str]) -> pd.DataFrame:
    bins = container.bins.set_index('start')
    df = container.interactions
    columns = {}
    for name in bin_covariates:
        values = bins[name].astype(float) if name in bins.columns else pd.Series(dtype=float)
        columns[f'{name}_i'] = values.reindex(df['start_i']).to_numpy()
        columns[f'{name}_j'] = values.reindex(df['start_j']).to_numpy()
    return pd.DataFrame(columns, index=df.index)


def write_interactions(containers: Iterable[InteractionContainer], interactions_path: Path) -> Path:
    """
    Serialize InteractionContainers to one tab-separated file (gzipped for '.gz').

    Header lines record max_distance, fit status, dispersion and covariate names
    so that read_interactions can rebuild the containers. The 1-D bin covariates
    are stored per anchor as '<name>_i' and '<name>_j' columns.

    :param containers: Containers to write, in output order.
    :param interactions_path: Destination file.
    :return: The destination path.
    """
    containers = list(containers)
    interactions_path = Path(interactions_path)
    interactions_path.parent.mkdir(parents=True, exist_ok=True)

    covariates = list(dict.fromkeys(name for c in containers for name in c.covariate_names))
    bin_covariates = list(dict.fromkeys(name for c in containers for name in bin_covariate_names(c.bins)))
    anchor_columns = [f'{name}_{side}' for name in bin_covariates for side in ('i', 'j')]
    with_model = any(all(m in c.interactions.columns for m in MODEL_COLUMNS) for c in containers)
    columns = ANCHOR_COLUMNS + covariates + anchor_columns + (MODEL_COLUMNS if with_model else [])

    frames = [pd.concat([c.interactions, _anchor_covariates(c, bin_covariates)], axis=1).reindex(columns=columns)
              for c in containers]
    table = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=columns)

    max_distance = max((c.max_distance for c in containers), default=0)
    statuses = ';'.join(f"{c.chrom}={c.fit_status.value}" for c in containers if c.fit_status is not None)
    dispersions = ';'.join(f"{c.chrom}={float(c.dispersion)!r}" for c in containers if not math.isnan(c.dispersion))

    with _open_output(interactions_path) as handle:
        handle.write(f"# max_distance: {max_distance}\n")
        if statuses:
            handle.write(f"# fit_status: {statuses}\n")
        if dispersions:
            handle.write(f"# dispersion: {dispersions}\n")
        handle.write(f"# covariates: {','.join(covariates)}\n")
        handle.write(f"# bin_covariates: {','.join(bin_covariates)}\n")
        table.to_csv(handle, sep='\t', index=False, float_format=FLOAT_FORMAT)

    logger.info(f"Wrote {len(table)} interactions on {len(containers)} chromosomes to {interactions_path}")
    return interactions_path


def write_bin_table(bins: pd.DataFrame, bins_path: Path) -> Path:
    bins_path = Path(bins_path)
    bins_path.parent.mkdir(parents=True, exist_ok=True)
    bins.to_csv(bins_path, sep='\t', index=False, float_format=FLOAT_FORMAT, encoding='utf-8')
    logger.info(f"Wrote {len(bins)} bins to {bins_path}")
    return bins_path


def write_filter_set(filter_set: pd.DataFrame, filter_path: Path) -> Path:
    filter_path = Path(filter_path)
    filter_path.parent.mkdir(parents=True, exist_ok=True)
    filter_set[KEY_COLUMNS].to_csv(filter_path, sep='\t', index=False, encoding='utf-8')
    logger.info(f"Wrote {len(filter_set)} interactions to {filter_path}")
    return filter_path


def write_differential(results: List[DifferentialResult], output_dir: Path) -> List[Path]:
    """
    Write one differential table per contrast.

    :param results: Output of compare().
    :param output_dir: Directory for the differential_<condition>_vs_<reference>.tsv files.
    :return: Paths of the written files in contrast order.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    df = results_to_frame(results)

    paths = []
    for (condition, reference), group in df.groupby(['condition', 'reference'], sort=False):
        path = output_dir / f"differential_{condition}_vs_{reference}.tsv"
        group[DIFFERENTIAL_COLUMNS].to_csv(path, sep='\t', index=False, float_format=FLOAT_FORMAT,
                                           encoding='utf-8', na_rep='NA')
        tested = group['pvalue'].notna().sum()
        logger.info(f"{condition} vs {reference}: {tested} of {len(group)} interactions tested, written to {path}")
        paths.append(path)
    return paths


def _report_row(sample: str, r: ChromosomeReport) -> Dict[str, Any]:
    return {
        'sample': sample,
        'chrom': r.chrom,
        'status': r.status.value,
        'n_records': r.n_records,
        'n_scored': r.n_scored,
        'dispersion': r.dispersion,
        'message': r.message or ''
    }


def generate_report(
    reports: Dict[str, List[ChromosomeReport]],
    output_dir: Path,
    run_parameters: Optional[Dict[str, Any]] = None,
    n_significant: Optional[Dict[str, int]] = None
):
    """
    Write summary_report.tsv and the HTML run summary.

    :param reports: Sample name -> ChromosomeReports from fit_sample.
    :param output_dir: Directory to save outputs.
    :param run_parameters: Dictionary of configurable parameters used for the run.
    :param n_significant: Optional sample name -> number of significant interactions.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rows = [_report_row(sample, r) for sample, sample_reports in reports.items() for r in sample_reports]
    df_summary = pd.DataFrame(rows, columns=['sample', 'chrom', 'status', 'n_records', 'n_scored',
                                             'dispersion', 'message'])
    df_summary.to_csv(output_dir / 'summary_report.tsv', sep='\t', index=False, encoding='utf-8')

    status_counts = defaultdict(int)
    for row in rows:
        status_counts[row['status']] += 1
    status_counts = {s.value: status_counts[s.value] for s in FitStatus}

    template_dir = Path(__file__).parent / 'templates'
    env = Environment(loader=FileSystemLoader(str(template_dir)), autoescape=select_autoescape(['html']))
    template = env.get_template('report.html')

    html_content = template.render(
        rows=rows,
        status_counts=status_counts,
        n_significant=n_significant or {},
        run_parameters=run_parameters if run_parameters else {}
    )

    with open(output_dir / 'report.html', 'w', encoding='utf-8') as f:
        f.write(html_content)
    logger.info(f"Summary written to {output_dir / 'summary_report.tsv'} and {output_dir / 'report.html'}")
