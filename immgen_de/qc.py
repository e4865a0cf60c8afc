"""
Quality Control Module
======================

This module implements sample-level quality control for microarray series:
- Per-sample distribution metrics (median, IQR, mean, non-finite values)
- MAD-based outlier detection
- Outlier sample flagging (samples are flagged, never dropped)
- Probe filtering

Author: Alfred3005
"""

import logging
from typing import Optional

import anndata as ad
import numpy as np
from scipy.stats import median_abs_deviation

from .utils import setup_logging


def calculate_qc_metrics(
    adata: ad.AnnData,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Calculate per-sample distribution metrics.

    Calculates:
    - qc_median: median expression
    - qc_iqr: interquartile range
    - qc_mean: mean expression
    - qc_n_nonfinite: number of NaN / infinite values

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with QC metrics in .obs

    Examples
    --------
    >>> adata = calculate_qc_metrics(adata, logger)
    >>> print(adata.obs[['qc_median', 'qc_iqr']])
    """
    if logger is None:
        logger = setup_logging()

    logger.info("Calculating QC metrics...")

    X = np.asarray(adata.X, dtype=np.float64)
    finite = np.isfinite(X)
    masked = np.where(finite, X, np.nan)

    q25, q50, q75 = np.nanpercentile(masked, [25, 50, 75], axis=1)

    adata.obs['qc_median'] = q50
    adata.obs['qc_iqr'] = q75 - q25
    adata.obs['qc_mean'] = np.nanmean(masked, axis=1)
    adata.obs['qc_n_nonfinite'] = (~finite).sum(axis=1)

    logger.info("QC metrics summary:")
    logger.info(f"  Median of sample medians: {np.median(q50):.3f}")
    logger.info(f"  Median IQR: {np.median(q75 - q25):.3f}")

    n_nonpositive = int((X[finite] <= 0).sum())
    if n_nonpositive > 0:
        logger.warning(
            f"{n_nonpositive:,} values are <= 0 and will not survive a log transform"
        )

    n_nonfinite = int(adata.obs['qc_n_nonfinite'].sum())
    if n_nonfinite > 0:
        logger.warning(f"{n_nonfinite:,} values are NaN or infinite")

    return adata


def detect_outliers_mad(
    values: np.ndarray,
    n_mads: float = 5.0
) -> np.ndarray:
    """
    Detect outliers using Median Absolute Deviation (MAD) method.

    MAD is robust to outliers and works better than standard deviation
    for non-normal distributions.

    Parameters
    ----------
    values : np.ndarray
        Array of values to check for outliers
    n_mads : float, default 5.0
        Number of MADs from median to consider outlier

    Returns
    -------
    np.ndarray
        Boolean array where True indicates outlier

    Examples
    --------
    >>> outliers = detect_outliers_mad(adata.obs['qc_median'].values, n_mads=5)
    >>> print(f"Detected {outliers.sum()} outliers")
    """
    values = np.asarray(values, dtype=np.float64)
    median = np.nanmedian(values)
    mad = median_abs_deviation(values, nan_policy='omit')

    # Handle case where MAD is zero (all values identical)
    if mad == 0 or np.isnan(mad):
        return np.zeros(len(values), dtype=bool)

    lower_bound = median - n_mads * mad
    upper_bound = median + n_mads * mad

    return (values < lower_bound) | (values > upper_bound)


def flag_outlier_samples(
    adata: ad.AnnData,
    n_mads: float = 5.0,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Flag samples whose median or IQR is a MAD outlier.

    Adds 'qc_outlier' to adata.obs. No sample is removed.

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    n_mads : float, default 5.0
        Number of MADs from median to consider outlier
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with 'qc_outlier' in .obs
    """
    if logger is None:
        logger = setup_logging()

    if 'qc_median' not in adata.obs.columns:
        adata = calculate_qc_metrics(adata, logger=logger)

    outlier_median = detect_outliers_mad(adata.obs['qc_median'].values, n_mads=n_mads)
    outlier_iqr = detect_outliers_mad(adata.obs['qc_iqr'].values, n_mads=n_mads)

    adata.obs['qc_outlier'] = outlier_median | outlier_iqr

    logger.info(f"Sample outliers ({n_mads} MADs):")
    logger.info(f"  Median: {outlier_median.sum():,}")
    logger.info(f"  IQR: {outlier_iqr.sum():,}")

    flagged = adata.obs_names[adata.obs['qc_outlier'].to_numpy()]
    if len(flagged) > 0:
        logger.warning(f"Flagged samples: {', '.join(flagged[:10])}")

    return adata


def filter_probes(
    adata: ad.AnnData,
    min_mean: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Drop probes with non-finite values or low mean expression.

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    min_mean : float, optional
        Minimum mean expression; None keeps every finite probe
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Filtered copy

    Examples
    --------
    >>> adata = filter_probes(adata, min_mean=np.log(50), logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    n_probes_before = adata.n_vars

    X = np.asarray(adata.X, dtype=np.float64)
    keep = np.isfinite(X).all(axis=0)

    if min_mean is not None:
        with np.errstate(invalid='ignore'):
            keep &= X.mean(axis=0) >= min_mean

    adata = adata[:, keep].copy()

    n_probes_after = adata.n_vars
    logger.info(
        f"Probes retained: {n_probes_after:,} / {n_probes_before:,} "
        f"({n_probes_after/max(n_probes_before, 1)*100:.1f}%)"
        + (f" [min_mean={min_mean}]" if min_mean is not None else "")
    )

    return adata
