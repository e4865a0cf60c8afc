"""
Visualization Module
====================

This module provides publication-quality plotting functions for the
differential expression walkthrough:
- Per-sample expression boxplots
- Heatmaps of significant probes
- Volcano plots

Author: Alfred3005
"""

import logging
from pathlib import Path
from typing import Optional, Tuple

import matplotlib
matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
import anndata as ad

from .utils import setup_logging, ensure_dir


# Set publication-quality defaults
sc.set_figure_params(
    dpi=300,
    dpi_save=300,
    frameon=False,
    vector_friendly=True,
    fontsize=10,
    figsize=(6, 6),
    format='pdf'
)


def _probe_labels(
    probes: pd.Index,
    results: pd.DataFrame,
    symbol_key: str
) -> pd.Series:
    """Symbol per probe, falling back to the probe ID."""
    labels = pd.Series(probes.astype(str), index=probes)
    if symbol_key in results.columns:
        symbols = results.loc[probes, symbol_key]
        labels = symbols.where(symbols.notna(), labels).astype(str)
    return labels


def plot_expression_boxplot(
    adata: ad.AnnData,
    output_path: Path,
    groupby: Optional[str] = 'population',
    figsize: Tuple[int, int] = (14, 6),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Plot the expression distribution of every sample.

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    output_path : Path
        Output file path
    groupby : str, optional, default 'population'
        .obs column used to colour the boxes
    figsize : tuple, default (14, 6)
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> plot_expression_boxplot(
    ...     adata,
    ...     output_path=Path("results/figures/boxplot_log.pdf")
    ... )
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating expression boxplot: {output_path}")

    X = np.asarray(adata.X, dtype=np.float64)
    data = [row[np.isfinite(row)] for row in X]

    fig, ax = plt.subplots(figsize=figsize)

    boxes = ax.boxplot(
        data,
        patch_artist=True,
        showfliers=False,
        medianprops={'color': 'black', 'linewidth': 1}
    )

    if groupby is not None and groupby in adata.obs.columns:
        labels = adata.obs[groupby].astype(str).to_numpy()
        groups = list(dict.fromkeys(labels))
        palette = dict(zip(groups, sns.color_palette('husl', len(groups))))

        for patch, label in zip(boxes['boxes'], labels):
            patch.set_facecolor(palette[label])

        if len(groups) <= 20:
            handles = [
                plt.Rectangle((0, 0), 1, 1, color=palette[g]) for g in groups
            ]
            ax.legend(handles, groups, loc='upper right', fontsize=8, frameon=True)
    else:
        for patch in boxes['boxes']:
            patch.set_facecolor('#3498DB')

    ax.set_xticks(range(1, adata.n_obs + 1))
    ax.set_xticklabels(
        adata.obs_names,
        rotation=90,
        fontsize=6 if adata.n_obs <= 60 else 2
    )
    ax.set_xlabel('Sample', fontsize=12)
    ax.set_ylabel('Expression', fontsize=12)
    ax.set_title('Expression Distribution per Sample', fontsize=14)
    ax.grid(alpha=0.3, axis='y', linestyle=':')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close()

    logger.info(f"Boxplot saved to: {output_path}")


def plot_heatmap(
    adata: ad.AnnData,
    results: pd.DataFrame,
    output_path: Path,
    groupby: str = 'population',
    fdr_threshold: float = 0.05,
    max_genes: int = 50,
    symbol_key: str = 'symbol',
    standard_scale: Optional[str] = 'var',
    cmap: str = 'RdBu_r',
    figsize: Optional[Tuple[int, int]] = None,
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Plot a heatmap of the most significant probes across samples.

    Probes are those with adj.P.Val <= fdr_threshold, the max_genes
    smallest p-values first, labelled by gene symbol (probe ID when the
    symbol is missing). Samples are grouped by population.

    Parameters
    ----------
    adata : AnnData
        Two-group AnnData the results were computed on
    results : pd.DataFrame
        Output of top_table (number=None)
    output_path : Path
        Output file path
    groupby : str, default 'population'
        .obs column used to group the samples
    fdr_threshold : float, default 0.05
        Adjusted p-value cutoff
    max_genes : int, default 50
        Maximum number of probes shown
    symbol_key : str, default 'symbol'
        Column of results holding gene symbols
    standard_scale : str, optional, default 'var'
        Scale each probe to [0, 1] ('var'), or None for raw values
    cmap : str, default 'RdBu_r'
        Colormap
    figsize : tuple, optional
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> plot_heatmap(
    ...     sub, results,
    ...     output_path=Path("results/figures/heatmap_top_probes.pdf")
    ... )
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating heatmap: {output_path}")

    significant = results[results['adj.P.Val'] <= fdr_threshold]
    significant = significant.sort_values('P.Value', kind='mergesort').head(max_genes)
    probes = significant.index.intersection(adata.var_names, sort=False)

    if len(probes) == 0:
        logger.error(
            f"No probes with adj.P.Val <= {fdr_threshold}. Skipping heatmap."
        )
        return

    if len(probes) < len(significant):
        logger.warning(
            f"{len(significant) - len(probes)} significant probes not found in data"
        )

    subset = adata[:, probes].copy()
    subset.var_names = _probe_labels(probes, significant, symbol_key).to_numpy()
    subset.var_names_make_unique()
    subset.obs[groupby] = subset.obs[groupby].astype(str).astype('category')

    sc.pl.heatmap(
        subset,
        var_names=list(subset.var_names),
        groupby=groupby,
        cmap=cmap,
        standard_scale=standard_scale,
        swap_axes=True,
        dendrogram=False,
        show_gene_labels=True,
        figsize=figsize,
        show=False
    )

    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close()

    logger.info(f"Heatmap of {len(probes)} probes saved to: {output_path}")


def plot_volcano(
    results: pd.DataFrame,
    output_path: Path,
    lfc_threshold: float = 1.0,
    fdr_threshold: float = 0.05,
    top_n_labels: int = 10,
    symbol_key: str = 'symbol',
    figsize: Tuple[int, int] = (10, 8),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Generate volcano plot for differential expression results.

    Parameters
    ----------
    results : pd.DataFrame
        Output of top_table with columns logFC, P.Value, adj.P.Val
    output_path : Path
        Output file path
    lfc_threshold : float, default 1.0
        Log fold change threshold for significance (natural-log units)
    fdr_threshold : float, default 0.05
        Adjusted p-value threshold for significance
    top_n_labels : int, default 10
        Number of most significant probes to label
    symbol_key : str, default 'symbol'
        Column holding gene symbols for the labels
    figsize : tuple, default (10, 8)
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> plot_volcano(
    ...     results,
    ...     output_path=Path("results/figures/volcano.pdf")
    ... )
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating volcano plot: {output_path}")

    df = results.dropna(subset=['logFC', 'P.Value']).copy()

    df['-log10(P.Value)'] = -np.log10(df['P.Value'].clip(lower=1e-300))

    df['significant'] = (
        (df['adj.P.Val'] <= fdr_threshold) &
        (np.abs(df['logFC']) >= lfc_threshold)
    )

    up_label = f'Up (logFC >= {lfc_threshold})'
    down_label = f'Down (logFC <= -{lfc_threshold})'

    df['direction'] = 'Not significant'
    df.loc[df['significant'] & (df['logFC'] > 0), 'direction'] = up_label
    df.loc[df['significant'] & (df['logFC'] < 0), 'direction'] = down_label

    fig, ax = plt.subplots(figsize=figsize)

    colors = {
        'Not significant': '#CCCCCC',
        up_label: '#E74C3C',
        down_label: '#3498DB'
    }

    for direction, color in colors.items():
        subset = df[df['direction'] == direction]
        ax.scatter(
            subset['logFC'],
            subset['-log10(P.Value)'],
            c=color,
            label=f"{direction} (n={len(subset)})",
            alpha=0.6,
            s=10
        )

    ax.axvline(lfc_threshold, color='black', linestyle='--', linewidth=1, alpha=0.5)
    ax.axvline(-lfc_threshold, color='black', linestyle='--', linewidth=1, alpha=0.5)

    # Label top probes
    if top_n_labels > 0:
        top = df.nsmallest(top_n_labels, 'P.Value')
        labels = _probe_labels(top.index, top, symbol_key)

        for probe, row in top.iterrows():
            ax.text(
                row['logFC'],
                row['-log10(P.Value)'],
                labels[probe],
                fontsize=8,
                alpha=0.8
            )

    ax.set_xlabel('Log Fold Change', fontsize=12)
    ax.set_ylabel('-Log10(P-value)', fontsize=12)
    ax.set_title('Differential Expression Volcano Plot', fontsize=14)
    ax.legend(loc='upper right', frameon=True, fontsize=10)
    ax.grid(alpha=0.3, linestyle=':')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close()

    logger.info(f"Volcano plot saved to: {output_path}")
