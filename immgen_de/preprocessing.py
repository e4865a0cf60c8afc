"""
Preprocessing Module
====================

This module prepares microarray expression bundles for linear modelling:
- Natural-log transformation of the pre-normalized values
- Population labels derived from the sample titles
- Two-group sample subsetting
- Probes x samples matrix view

Author: Alfred3005
"""

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from .utils import setup_logging


def log_transform(
    adata: ad.AnnData,
    keep_raw: bool = False,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Natural-log transform the expression values in place.

    Values must be strictly positive. Nothing is validated: zeros become
    -inf and negative values NaN. Applying the transform twice is not
    detected.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with normalized, non-logged values
    keep_raw : bool, default False
        Store the untransformed values in adata.layers['raw']
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Log-transformed AnnData

    Examples
    --------
    >>> adata = log_transform(adata, logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    logger.info("Applying log transformation: ln(x)...")

    if keep_raw:
        adata.layers['raw'] = np.array(adata.X, copy=True)
        logger.info("Raw values stored in adata.layers['raw']")

    with np.errstate(divide='ignore', invalid='ignore'):
        adata.X = np.log(np.asarray(adata.X, dtype=np.float64))

    logger.info("Log transformation complete")

    return adata


def add_population(
    adata: ad.AnnData,
    title_key: str = "title",
    delimiter: str = "#",
    key: str = "population",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Derive a population label per sample from its title.

    ImmGen titles look like "B.Fo.Sp#1"; the label is the part before
    the first delimiter ("B.Fo.Sp").

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    title_key : str, default "title"
        Column in adata.obs holding the sample titles
    delimiter : str, default "#"
        Replicate delimiter
    key : str, default "population"
        Name of the new adata.obs column
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with the label column in .obs

    Examples
    --------
    >>> adata = add_population(adata, logger=logger)
    >>> print(adata.obs['population'].value_counts().head())
    """
    if logger is None:
        logger = setup_logging()

    if title_key not in adata.obs.columns:
        raise KeyError(
            f"Title key '{title_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    adata.obs[key] = (
        adata.obs[title_key].astype(str).str.split(delimiter, regex=False).str[0]
    )

    logger.info(
        f"Derived '{key}' from '{title_key}': "
        f"{adata.obs[key].nunique():,} populations across {adata.n_obs:,} samples"
    )

    return adata


def subset_groups(
    adata: ad.AnnData,
    groups: Sequence[str],
    key: str = "population",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Restrict the samples to two groups.

    Returns a view: probe metadata is untouched, sample metadata and
    expression columns are restricted together. A group with no
    matching sample is only reported.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with a group label column
    groups : sequence of str
        Exactly two distinct labels
    key : str, default "population"
        Column in adata.obs holding the labels
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        View restricted to the samples of the two groups

    Examples
    --------
    >>> sub = subset_groups(adata, ("B.Fo.Sp", "T.4Nve.Sp"), logger=logger)
    >>> print(sub.obs['population'].value_counts())
    """
    if logger is None:
        logger = setup_logging()

    groups = list(groups)
    if len(groups) != 2 or groups[0] == groups[1]:
        raise ValueError(f"Exactly two distinct groups are required, got {groups}")

    if key not in adata.obs.columns:
        raise KeyError(
            f"Group key '{key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    labels = adata.obs[key].astype(str)
    mask = labels.isin(groups).to_numpy()

    for group in groups:
        n = int((labels == group).sum())
        if n == 0:
            logger.warning(f"No samples found for group '{group}' in '{key}'")
        else:
            logger.info(f"  {group}: {n} samples")

    subset = adata[mask]

    logger.info(f"Restricted to {subset.n_obs} / {adata.n_obs} samples")

    return subset


def expression_frame(adata: ad.AnnData) -> pd.DataFrame:
    """Return the expression values as a probes x samples DataFrame."""
    return pd.DataFrame(
        np.asarray(adata.X).T,
        index=adata.var_names,
        columns=adata.obs_names
    )
