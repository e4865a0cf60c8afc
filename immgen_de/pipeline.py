"""
Analysis Pipeline
=================

Runs the complete walkthrough from a YAML configuration:

1. Retrieve the GEO series (series matrix + platform annotation)
2. Annotate probes with RefSeq accessions and gene symbols
3. QC, natural-log transform and population labels
4. Two-group linear model with empirical Bayes moderation
5. Ranked table, gene lookups, heatmap and volcano plot

Usage:
    python -m immgen_de.pipeline config/analysis_params.yaml

Author: Alfred3005
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .annotation import SymbolTable, annotate_probes, build_symbol_table, resolve_accessions
from .differential import lookup_gene, run_differential_expression, top_table
from .download import fetch_series
from .preprocessing import add_population, log_transform
from .qc import calculate_qc_metrics, filter_probes, flag_outlier_samples
from .utils import cleanup_memory, ensure_dir, load_config, log_memory_usage, setup_logging
from .visualization import plot_expression_boxplot, plot_heatmap, plot_volcano


def load_symbol_table(
    adata,
    annotation_config: Dict[str, Any],
    logger: logging.Logger
) -> SymbolTable:
    """Load the static identifier table, building it first if allowed."""
    table_path = Path(annotation_config['table_path'])

    if table_path.exists():
        logger.info(f"Loading identifier table: {table_path}")
        return SymbolTable.from_file(table_path)

    if not annotation_config.get('build_if_missing', False):
        raise FileNotFoundError(
            f"Identifier table not found: {table_path}. "
            f"Set annotation.build_if_missing to build it from mygene.info"
        )

    logger.warning(f"Identifier table missing; building {table_path} from mygene.info")
    accessions = resolve_accessions(
        adata.var[annotation_config.get('source_key', 'GB_LIST')],
        annotation_config.get('pattern', 'NM')
    )
    return build_symbol_table(
        accessions.dropna().unique(),
        table_path,
        species=annotation_config.get('species', 'mouse'),
        logger=logger
    )


def run_pipeline(
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> Dict[str, Any]:
    """
    Run the complete analysis.

    Parameters
    ----------
    config : dict
        Configuration from analysis_params.yaml
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    dict
        'adata' (annotated log-expression), 'subset' (two-group view),
        'fit', 'results' (full ranked table), 'top' (filtered top table)
        and 'lookups' (gene symbol -> rows)

    Examples
    --------
    >>> config = load_config("config/analysis_params.yaml")
    >>> out = run_pipeline(config, logger)
    >>> out['top'].head()
    """
    if logger is None:
        logger = setup_logging()

    geo_params = config['geo']
    annotation_params = config['annotation']
    preprocessing_params = config.get('preprocessing', {})
    qc_params = config.get('qc', {})
    de_params = config['differential_expression']
    report_params = config.get('reporting', {})

    figure_dir = ensure_dir(report_params.get('figure_dir', 'results/figures'))

    logger.info("=" * 60)
    logger.info("Starting ImmGen differential expression pipeline")
    logger.info("=" * 60)

    # Step 1: Retrieval
    adata = fetch_series(
        geo_params['accession'],
        destdir=geo_params.get('destdir', 'data/raw'),
        platform=geo_params.get('platform'),
        annotate_platform=geo_params.get('annotate_platform', True),
        timeout=geo_params.get('timeout'),
        logger=logger
    )

    # Step 2: Annotation
    table = load_symbol_table(adata, annotation_params, logger)
    adata = annotate_probes(
        adata,
        table,
        source_key=annotation_params.get('source_key', 'GB_LIST'),
        pattern=annotation_params.get('pattern', 'NM'),
        keytype=annotation_params.get('keytype', 'REFSEQ'),
        column=annotation_params.get('column', 'SYMBOL'),
        logger=logger
    )

    population_key = preprocessing_params.get('population_key', 'population')

    # Step 3: QC, log transform, population labels
    adata = add_population(
        adata,
        title_key=preprocessing_params.get('title_key', 'title'),
        delimiter=preprocessing_params.get('delimiter', '#'),
        key=population_key,
        logger=logger
    )

    if qc_params.get('enabled', True):
        adata = calculate_qc_metrics(adata, logger=logger)
        plot_expression_boxplot(
            adata, figure_dir / "boxplot_raw.pdf", groupby=population_key, logger=logger
        )

    adata = log_transform(adata, logger=logger)

    if qc_params.get('enabled', True):
        adata = calculate_qc_metrics(adata, logger=logger)
        adata = flag_outlier_samples(
            adata, n_mads=qc_params.get('n_mads', 5.0), logger=logger
        )
        plot_expression_boxplot(
            adata, figure_dir / "boxplot_log.pdf", groupby=population_key, logger=logger
        )

    if qc_params.get('filter_probes', False):
        adata = filter_probes(adata, min_mean=qc_params.get('min_mean'), logger=logger)

    cleanup_memory(logger)

    # Step 4: Differential expression
    groups = de_params['groups']
    fit, results, subset = run_differential_expression(
        adata,
        groups,
        key=population_key,
        adjust_method=de_params.get('adjust_method', 'BH'),
        proportion=de_params.get('proportion', 0.01),
        p_value=de_params.get('p_value', 0.05),
        lfc=de_params.get('lfc', 0.0),
        logger=logger
    )

    # Step 5: Reporting
    top = top_table(
        fit,
        coef=de_params.get('coef', 1),
        number=report_params.get('top_n', 20),
        genelist=subset.var,
        adjust_method=de_params.get('adjust_method', 'BH'),
        sort_by=report_params.get('sort_by', 'p'),
        p_value=de_params.get('p_value', 0.05),
        lfc=de_params.get('lfc', 0.0)
    )
    logger.info(f"Top {len(top)} probes:\n{top[['symbol', 'logFC', 'AveExpr', 'adj.P.Val']]}")

    lookups = {}
    for symbol in report_params.get('lookup_genes', []):
        rows = lookup_gene(results, symbol)
        lookups[symbol] = rows
        if rows.empty:
            logger.warning(f"Gene '{symbol}' not found among annotated probes")
        else:
            logger.info(f"Gene '{symbol}':\n{rows[['logFC', 'P.Value', 'adj.P.Val']]}")

    label = f"{groups[1]}_vs_{groups[0]}".replace('/', '-')

    plot_heatmap(
        subset,
        results,
        figure_dir / f"heatmap_{label}.pdf",
        groupby=population_key,
        fdr_threshold=report_params.get('heatmap_fdr', 0.05),
        max_genes=report_params.get('heatmap_max_genes', 50),
        logger=logger
    )
    plot_volcano(
        results,
        figure_dir / f"volcano_{label}.pdf",
        lfc_threshold=report_params.get('volcano_lfc', 1.0),
        fdr_threshold=report_params.get('volcano_fdr', 0.05),
        top_n_labels=report_params.get('volcano_labels', 10),
        logger=logger
    )

    logger.info("=" * 60)
    logger.info("Pipeline complete")
    logger.info("=" * 60)

    log_memory_usage(logger)

    return {
        'adata': adata,
        'subset': subset,
        'fit': fit,
        'results': results,
        'top': top,
        'lookups': lookups,
    }


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    config_path = argv[0] if argv else "config/analysis_params.yaml"

    config = load_config(config_path)
    log_params = config.get('logging', {})
    logger = setup_logging(
        log_file=log_params.get('log_file'),
        log_level=log_params.get('level', 'INFO')
    )

    run_pipeline(config, logger=logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
