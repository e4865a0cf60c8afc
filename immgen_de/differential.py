"""
Differential Expression Module
==============================

This module implements two-group differential expression for log-scale
microarray data with linear models and empirical Bayes moderation
(Smyth 2004, the limma method):

- build_design_matrix: Intercept + indicator design for two groups
- lm_fit: Ordinary least squares per probe
- fit_f_dist / squeeze_var: Scaled inverse chi-square prior on the
  residual variances and posterior (shrunk) variances
- e_bayes: Moderated t-statistics, p-values and log-odds (B)
- p_adjust: Multiple-testing correction (Benjamini-Hochberg by default)
- top_table / decide_tests / lookup_gene: Ranked results and queries
- run_differential_expression: The whole two-group comparison

References
----------
Smyth GK (2004). Linear models and empirical Bayes methods for assessing
differential expression in microarray experiments. Statistical
Applications in Genetics and Molecular Biology 3, Article 3.

Author: Alfred3005
"""

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from .preprocessing import expression_frame, subset_groups
from .utils import setup_logging


INTERCEPT = "(Intercept)"

ADJUST_METHODS = {
    'bh': 'fdr_bh',
    'fdr': 'fdr_bh',
    'by': 'fdr_by',
    'bonferroni': 'bonferroni',
    'holm': 'holm',
    'hochberg': 'simes-hochberg',
    'none': None,
}

SORT_KEYS = ('p', 'logFC', 't', 'B', 'AveExpr', 'none')


@dataclass
class LinearModelFit:
    """Per-probe linear model fit, moderated in place by e_bayes.

    Attributes:
        coefficients: Estimates (n_probes, n_coef).
        stdev_unscaled: sqrt(diag((X'X)^-1)) per probe (n_probes, n_coef).
        sigma: Residual standard deviation (n_probes,).
        df_residual: Residual degrees of freedom (n_probes,).
        amean: Average log-expression (n_probes,).
        design: Design matrix (n_samples, n_coef).
        probe_ids: Probe identifiers.
        df_prior, s2_prior: Prior degrees of freedom and scale.
        s2_post: Posterior (moderated) variances.
        df_total: Degrees of freedom of the moderated t.
        t, p_value, lods: Moderated t, two-sided p-value and log-odds
            (n_probes, n_coef).
        var_prior: Prior variance of the non-zero coefficients (n_coef,).
    """

    coefficients: np.ndarray
    stdev_unscaled: np.ndarray
    sigma: np.ndarray
    df_residual: np.ndarray
    amean: np.ndarray
    design: pd.DataFrame
    probe_ids: pd.Index
    df_prior: Optional[float] = None
    s2_prior: Optional[float] = None
    s2_post: Optional[np.ndarray] = None
    df_total: Optional[np.ndarray] = None
    t: Optional[np.ndarray] = None
    p_value: Optional[np.ndarray] = None
    lods: Optional[np.ndarray] = None
    var_prior: Optional[np.ndarray] = None

    @property
    def coef_names(self) -> List[str]:
        return [str(c) for c in self.design.columns]

    @property
    def n_probes(self) -> int:
        return self.coefficients.shape[0]

    @property
    def is_moderated(self) -> bool:
        return self.t is not None

    def coef_index(self, coef: Union[int, str]) -> int:
        """Column index of a coefficient given by position or name."""
        if isinstance(coef, str):
            if coef not in self.coef_names:
                raise ValueError(
                    f"Unknown coefficient '{coef}'. Available: {self.coef_names}"
                )
            return self.coef_names.index(coef)

        if not 0 <= coef < len(self.coef_names):
            raise ValueError(
                f"Coefficient index {coef} out of range for {self.coef_names}"
            )
        return int(coef)


def build_design_matrix(
    labels: Union[pd.Series, Sequence[str]],
    levels: Optional[Sequence[str]] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Build the two-group design matrix.

    Column 1 is the intercept (baseline group), column 2 is 1 for the
    comparison group and 0 for the baseline, so the second coefficient
    estimates comparison minus baseline.

    Parameters
    ----------
    labels : pd.Series or sequence of str
        Group label per sample
    levels : sequence of str, optional
        (baseline, comparison). If None, the two sorted labels are used;
        passing them explicitly avoids silent sign flips.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Design matrix, one row per sample, columns
        ["(Intercept)", comparison]

    Raises
    ------
    ValueError
        If there are not exactly two levels or a label is outside them

    Examples
    --------
    >>> design = build_design_matrix(sub.obs['population'],
    ...                              levels=("B.Fo.Sp", "T.4Nve.Sp"))
    """
    if logger is None:
        logger = setup_logging()

    if not isinstance(labels, pd.Series):
        labels = pd.Series(list(labels))
    labels = labels.astype(str)

    if levels is None:
        levels = sorted(labels.unique())
        logger.warning(
            f"No group order given; using sorted labels {levels} "
            f"(baseline first)"
        )

    levels = [str(level) for level in levels]
    if len(levels) != 2 or levels[0] == levels[1]:
        raise ValueError(f"Exactly two distinct levels are required, got {levels}")

    unknown = sorted(set(labels[~labels.isin(levels)]))
    if unknown:
        raise ValueError(f"Labels outside the design levels {levels}: {unknown}")

    baseline, comparison = levels

    design = pd.DataFrame(
        {
            INTERCEPT: np.ones(len(labels)),
            comparison: (labels == comparison).astype(float).to_numpy(),
        },
        index=labels.index
    )

    logger.info(
        f"Design: {comparison} vs {baseline} "
        f"({int(design[comparison].sum())} vs {int((design[comparison] == 0).sum())} samples)"
    )

    return design


def _fit_block(y: np.ndarray, X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """OLS of every row of ``y`` on ``X``; returns (beta, rss, df)."""
    beta, _, _, _ = np.linalg.lstsq(X, y.T, rcond=None)
    residuals = y - (X @ beta).T
    rss = np.sum(residuals ** 2, axis=1)
    df = X.shape[0] - X.shape[1]
    return beta.T, rss, np.full(y.shape[0], df, dtype=np.float64)


def lm_fit(
    expr: Union[pd.DataFrame, np.ndarray, ad.AnnData],
    design: Union[pd.DataFrame, np.ndarray],
    logger: Optional[logging.Logger] = None
) -> LinearModelFit:
    """
    Fit one ordinary least squares model per probe.

    Non-finite values (e.g. logs of non-positive intensities) are treated
    as missing for that probe only; the probe is then fitted on its
    remaining samples, with fewer residual degrees of freedom.

    Parameters
    ----------
    expr : pd.DataFrame, np.ndarray or AnnData
        Log-expression, probes x samples (AnnData is converted)
    design : pd.DataFrame or np.ndarray
        Design matrix, samples x coefficients
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    LinearModelFit
        Unmoderated fit

    Raises
    ------
    ValueError
        If dimensions disagree or the design is not of full column rank
    """
    if logger is None:
        logger = setup_logging()

    if isinstance(expr, ad.AnnData):
        expr = expression_frame(expr)

    if isinstance(expr, pd.DataFrame):
        probe_ids = expr.index
        y = expr.to_numpy(dtype=np.float64)
    else:
        y = np.asarray(expr, dtype=np.float64)
        probe_ids = pd.RangeIndex(y.shape[0])

    if not isinstance(design, pd.DataFrame):
        design = np.asarray(design, dtype=np.float64)
        design = pd.DataFrame(
            design, columns=[f"x{i}" for i in range(design.shape[1])]
        )

    X = design.to_numpy(dtype=np.float64)
    n_probes, n_samples = y.shape
    n_coef = X.shape[1]

    if X.shape[0] != n_samples:
        raise ValueError(
            f"Design has {X.shape[0]} rows but expression has {n_samples} samples"
        )

    if np.linalg.matrix_rank(X) < n_coef:
        raise ValueError(
            "Design matrix is not of full column rank "
            "(is one of the groups empty?)"
        )

    logger.info(f"Fitting linear models: {n_probes:,} probes x {n_samples} samples")

    coefficients = np.full((n_probes, n_coef), np.nan)
    stdev_unscaled = np.full((n_probes, n_coef), np.nan)
    rss = np.full(n_probes, np.nan)
    df_residual = np.zeros(n_probes)

    finite = np.isfinite(y)
    complete = finite.all(axis=1)

    if complete.any():
        beta, block_rss, block_df = _fit_block(y[complete], X)
        coefficients[complete] = beta
        rss[complete] = block_rss
        df_residual[complete] = block_df
        stdev_unscaled[complete] = np.sqrt(np.diag(np.linalg.inv(X.T @ X)))

    incomplete = np.flatnonzero(~complete)
    if len(incomplete) > 0:
        logger.warning(
            f"{len(incomplete):,} probes have non-finite values; "
            f"fitting them on their finite samples only"
        )

    for i in incomplete:
        obs = finite[i]
        Xi = X[obs]
        if Xi.shape[0] == 0 or np.linalg.matrix_rank(Xi) < n_coef:
            continue
        beta, block_rss, block_df = _fit_block(y[i:i + 1, obs], Xi)
        coefficients[i] = beta[0]
        rss[i] = block_rss[0]
        df_residual[i] = block_df[0]
        stdev_unscaled[i] = np.sqrt(np.diag(np.linalg.inv(Xi.T @ Xi)))

    with np.errstate(divide='ignore', invalid='ignore'):
        sigma = np.where(df_residual > 0, np.sqrt(rss / df_residual), np.nan)

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        amean = np.nanmean(np.where(finite, y, np.nan), axis=1)

    return LinearModelFit(
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        sigma=sigma,
        df_residual=df_residual,
        amean=amean,
        design=design,
        probe_ids=pd.Index(probe_ids),
    )


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y > 0.

    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    starting from y = 0.5 + 1/x (limma trigammaInverse).
    """
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y += dif
        if -dif / y < tol:
            break

    return float(y)


def fit_f_dist(
    sigma2: np.ndarray,
    df: Union[float, np.ndarray]
) -> Tuple[float, float]:
    """
    Moment estimation of the prior on the residual variances.

    Assumes s2 ~ s0^2 * F(df, d0) and matches the mean and variance of
    log(s2) (limma fitFDist):

        e = log(s2) - digamma(df/2) + log(df/2)
        d0 = 2 * trigamma^-1(var(e) - mean(trigamma(df/2)))
        s0^2 = exp(mean(e) + digamma(d0/2) - log(d0/2))

    Parameters
    ----------
    sigma2 : np.ndarray
        Residual variances
    df : float or np.ndarray
        Residual degrees of freedom (scalar or per probe)

    Returns
    -------
    tuple of float
        (d0, s0^2). d0 is inf when the variances are no more variable
        than expected, i.e. complete shrinkage to s0^2.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    ok = np.isfinite(sigma2) & np.isfinite(df) & (df > 1e-15)
    n_ok = int(ok.sum())

    if n_ok == 0:
        return np.nan, np.nan

    x = np.maximum(sigma2[ok], 0.0)
    d1 = df[ok]

    if n_ok == 1:
        return 0.0, float(x[0])

    # Zero variances would give log(0)
    m = np.median(x)
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - digamma(d1 / 2.0) + np.log(d1 / 2.0)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1)) - float(np.mean(polygamma(1, d1 / 2.0)))

    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        d0 = np.inf
        s0_sq = float(np.exp(emean))

    return float(d0), s0_sq


def squeeze_var(
    sigma2: np.ndarray,
    df: Union[float, np.ndarray],
    d0: float,
    s0_sq: float
) -> np.ndarray:
    """
    Posterior variances: s2_post = (d0 * s0^2 + df * s2) / (d0 + df).

    Probes without residual degrees of freedom take the prior value,
    as do all probes when d0 is infinite.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    if not np.isfinite(d0):
        return np.full(sigma2.shape, s0_sq)

    s2 = np.where(df > 0, sigma2, 0.0)
    return (d0 * s0_sq + df * s2) / (d0 + df)


def _tmixture_vector(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
    v0_lim: Optional[Tuple[float, float]] = None
) -> float:
    """Prior variance of the non-null coefficients from the top |t| values."""
    ok = np.isfinite(tstat)
    tstat = np.abs(tstat[ok])
    stdev_unscaled = stdev_unscaled[ok]
    df = df[ok].copy()

    n_genes = len(tstat)
    n_target = int(np.ceil(proportion / 2.0 * n_genes))
    if n_target < 1:
        return np.nan

    p = max(n_target / n_genes, proportion)

    # Put every statistic on the largest degrees of freedom
    max_df = np.max(df)
    lower = df < max_df
    if lower.any():
        tail = stats.t.logsf(tstat[lower], df[lower])
        # exp(tail) underflows for extreme t; keep the quantile finite
        tail_p = np.maximum(np.exp(tail), np.finfo(np.float64).tiny)
        tstat[lower] = stats.t.isf(tail_p, max_df)
        df[lower] = max_df

    order = np.argsort(-tstat, kind='mergesort')[:n_target]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2

    rank = np.arange(1, n_target + 1)
    p0 = 2.0 * stats.t.sf(tstat, max_df)
    p_target = ((rank - 0.5) / n_genes - (1.0 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = p_target > p0
    if pos.any():
        q_target = stats.t.isf(p_target[pos] / 2.0, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / q_target) ** 2 - 1.0)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])

    return float(np.mean(v0))


def e_bayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0),
    logger: Optional[logging.Logger] = None
) -> LinearModelFit:
    """
    Empirical Bayes moderation of a linear model fit.

    Shrinks the residual variances towards a common prior, then computes
    moderated t-statistics, two-sided p-values on d0 + df degrees of
    freedom (capped at the pooled residual df), and B-statistics, the
    log-odds that a probe is differentially expressed.

    Parameters
    ----------
    fit : LinearModelFit
        Output of lm_fit
    proportion : float, default 0.01
        Assumed proportion of differentially expressed probes (B only)
    stdev_coef_lim : tuple, default (0.1, 4.0)
        Limits on the prior standard deviation of true log-fold-changes
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    LinearModelFit
        The same fit with the moderated statistics filled in

    Examples
    --------
    >>> fit = e_bayes(lm_fit(expr, design), logger=logger)
    >>> print(fit.df_prior, fit.s2_prior)
    """
    if logger is None:
        logger = setup_logging()

    if not 0 < proportion < 1:
        raise ValueError(f"proportion must be in (0, 1), got {proportion}")

    df_residual = fit.df_residual
    if not np.any(df_residual > 0):
        raise ValueError("No residual degrees of freedom: cannot estimate variances")

    sigma2 = fit.sigma ** 2
    d0, s0_sq = fit_f_dist(sigma2, df_residual)
    s2_post = squeeze_var(sigma2, df_residual, d0, s0_sq)

    df_pooled = float(np.sum(df_residual))
    df_total = np.minimum(df_residual + d0, df_pooled)

    with np.errstate(divide='ignore', invalid='ignore'):
        t = fit.coefficients / fit.stdev_unscaled / np.sqrt(s2_post)[:, None]
    p_value = 2.0 * stats.t.sf(np.abs(t), df_total[:, None])

    # B-statistics
    v0_lim = (stdev_coef_lim[0] ** 2 / s0_sq, stdev_coef_lim[1] ** 2 / s0_sq)
    var_prior = np.array([
        _tmixture_vector(t[:, j], fit.stdev_unscaled[:, j], df_total, proportion, v0_lim)
        for j in range(t.shape[1])
    ])
    var_prior = np.where(np.isnan(var_prior), 1.0 / s0_sq, var_prior)

    u2 = fit.stdev_unscaled ** 2
    with np.errstate(divide='ignore', invalid='ignore'):
        r = (u2 + var_prior[None, :]) / u2
        t2 = t ** 2
        if d0 > 1e6:
            kernel = t2 * (1.0 - 1.0 / r) / 2.0
        else:
            dft = df_total[:, None]
            kernel = (1.0 + dft) / 2.0 * np.log((t2 + dft) / (t2 / r + dft))
        lods = np.log(proportion / (1.0 - proportion)) - np.log(r) / 2.0 + kernel

    fit.df_prior = d0
    fit.s2_prior = s0_sq
    fit.s2_post = s2_post
    fit.df_total = df_total
    fit.t = t
    fit.p_value = p_value
    fit.lods = lods
    fit.var_prior = var_prior

    logger.info(
        f"Empirical Bayes: prior df = {d0:.2f}, prior variance = {s0_sq:.4g}"
    )

    return fit


def p_adjust(
    pvalues: Union[np.ndarray, pd.Series, Sequence[float]],
    method: str = "BH"
) -> np.ndarray:
    """
    Adjust p-values for multiple testing.

    Parameters
    ----------
    pvalues : array-like
        Raw p-values; NaNs are kept and excluded from the adjustment
    method : str, default "BH"
        "BH"/"fdr" (Benjamini-Hochberg), "BY", "bonferroni", "holm",
        "hochberg" or "none"

    Returns
    -------
    np.ndarray
        Adjusted p-values in the input order

    Examples
    --------
    >>> p_adjust([0.01, 0.04, 0.03], method="BH")
    array([0.03, 0.04, 0.04])
    """
    key = method.lower()
    if key not in ADJUST_METHODS:
        raise ValueError(
            f"Unknown adjustment method '{method}'. "
            f"Available: {sorted(ADJUST_METHODS)}"
        )

    p = np.asarray(pvalues, dtype=np.float64)
    sm_method = ADJUST_METHODS[key]

    if sm_method is None:
        return p.copy()

    adjusted = np.full(p.shape, np.nan)
    ok = ~np.isnan(p)
    if ok.any():
        adjusted[ok] = multipletests(p[ok], method=sm_method)[1]

    return adjusted


def top_table(
    fit: LinearModelFit,
    coef: Union[int, str] = 1,
    number: Optional[int] = 10,
    genelist: Optional[pd.DataFrame] = None,
    adjust_method: str = "BH",
    sort_by: str = "p",
    p_value: float = 1.0,
    lfc: float = 0.0
) -> pd.DataFrame:
    """
    Table of the top-ranked probes for one coefficient.

    Adjusted p-values are computed over all probes before filtering and
    truncation.

    Parameters
    ----------
    fit : LinearModelFit
        Moderated fit (after e_bayes)
    coef : int or str, default 1
        Coefficient index or name (1 = group indicator)
    number : int, optional, default 10
        Maximum number of rows; None returns every probe
    genelist : pd.DataFrame, optional
        Probe annotation (e.g. adata.var) joined in front of the statistics
    adjust_method : str, default "BH"
        Multiple-testing method (see p_adjust)
    sort_by : str, default "p"
        "p", "logFC" (absolute), "t" (absolute), "B", "AveExpr" or "none"
    p_value : float, default 1.0
        Keep probes with adjusted p-value <= p_value
    lfc : float, default 0.0
        Keep probes with |logFC| >= lfc

    Returns
    -------
    pd.DataFrame
        Columns: annotation..., logFC, AveExpr, t, P.Value, adj.P.Val, B,
        SE, SE.moderated; indexed by probe

    Examples
    --------
    >>> top = top_table(fit, coef=1, number=20, genelist=sub.var)
    >>> top[['symbol', 'logFC', 'adj.P.Val']].head()
    """
    if not fit.is_moderated:
        raise ValueError("Fit is not moderated; run e_bayes first")

    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort key '{sort_by}'. Available: {SORT_KEYS}")

    j = fit.coef_index(coef)

    stats_df = pd.DataFrame(
        {
            'logFC': fit.coefficients[:, j],
            'AveExpr': fit.amean,
            't': fit.t[:, j],
            'P.Value': fit.p_value[:, j],
            'adj.P.Val': p_adjust(fit.p_value[:, j], adjust_method),
            'B': fit.lods[:, j],
            'SE': fit.stdev_unscaled[:, j] * fit.sigma,
            'SE.moderated': fit.stdev_unscaled[:, j] * np.sqrt(fit.s2_post),
        },
        index=fit.probe_ids
    )

    if genelist is not None:
        annotation = genelist.reindex(fit.probe_ids)
        annotation = annotation.drop(
            columns=[c for c in stats_df.columns if c in annotation.columns]
        )
        table = pd.concat([annotation, stats_df], axis=1)
    else:
        table = stats_df

    if p_value < 1.0:
        table = table[table['adj.P.Val'] <= p_value]
    if lfc > 0:
        table = table[table['logFC'].abs() >= lfc]

    if sort_by == 'p':
        table = table.sort_values('P.Value', kind='mergesort')
    elif sort_by in ('logFC', 't'):
        table = table.iloc[
            np.argsort(-table[sort_by].abs().to_numpy(), kind='mergesort')
        ]
    elif sort_by in ('B', 'AveExpr'):
        table = table.sort_values(sort_by, ascending=False, kind='mergesort')

    if number is not None:
        table = table.head(number)

    return table


def decide_tests(
    fit: LinearModelFit,
    coef: Union[int, str] = 1,
    adjust_method: str = "BH",
    p_value: float = 0.05,
    lfc: float = 0.0
) -> pd.Series:
    """
    Call each probe up (1), down (-1) or not significant (0).

    Parameters
    ----------
    fit : LinearModelFit
        Moderated fit
    coef : int or str, default 1
        Coefficient to test
    adjust_method : str, default "BH"
        Multiple-testing method
    p_value : float, default 0.05
        Adjusted p-value cutoff
    lfc : float, default 0.0
        Minimum absolute log-fold-change

    Returns
    -------
    pd.Series
        Calls indexed by probe
    """
    if not fit.is_moderated:
        raise ValueError("Fit is not moderated; run e_bayes first")

    j = fit.coef_index(coef)
    adjusted = p_adjust(fit.p_value[:, j], adjust_method)
    logfc = fit.coefficients[:, j]

    significant = (adjusted <= p_value) & (np.abs(logfc) >= lfc)
    calls = np.where(significant, np.sign(logfc), 0).astype(int)

    return pd.Series(calls, index=fit.probe_ids, name=fit.coef_names[j])


def summarize_tests(calls: pd.Series) -> pd.Series:
    """Count Down / NotSig / Up calls."""
    return pd.Series(
        {
            'Down': int((calls == -1).sum()),
            'NotSig': int((calls == 0).sum()),
            'Up': int((calls == 1).sum()),
        },
        name=calls.name
    )


def lookup_gene(
    table: pd.DataFrame,
    symbol: str,
    symbol_key: str = "symbol"
) -> pd.DataFrame:
    """
    Return every row of a results table annotated with a gene symbol.

    Probes without a symbol never match. Several probes may match one
    symbol; an unknown symbol gives an empty table.

    Parameters
    ----------
    table : pd.DataFrame
        Results table from top_table (with annotation)
    symbol : str
        Gene symbol, e.g. "Cd19"
    symbol_key : str, default "symbol"
        Column holding the symbols

    Returns
    -------
    pd.DataFrame
        Matching rows, in table order

    Examples
    --------
    >>> lookup_gene(results, "Cd19")[['logFC', 'adj.P.Val']]
    """
    if symbol_key not in table.columns:
        raise KeyError(
            f"Symbol column '{symbol_key}' not found. "
            f"Available columns: {list(table.columns)}"
        )

    return table[table[symbol_key] == symbol]


def run_differential_expression(
    adata: ad.AnnData,
    groups: Sequence[str],
    key: str = "population",
    adjust_method: str = "BH",
    proportion: float = 0.01,
    p_value: float = 0.05,
    lfc: float = 0.0,
    logger: Optional[logging.Logger] = None
) -> Tuple[LinearModelFit, pd.DataFrame, ad.AnnData]:
    """
    Compare two groups of samples probe by probe.

    Steps:
    1. Restrict to the two groups
    2. Build the design (groups[0] = baseline, groups[1] = comparison)
    3. Fit linear models
    4. Empirical Bayes moderation
    5. Full ranked table with probe annotation

    Parameters
    ----------
    adata : AnnData
        Log-expression AnnData with a group label column
    groups : sequence of str
        (baseline, comparison)
    key : str, default "population"
        Column in adata.obs holding the labels
    adjust_method : str, default "BH"
        Multiple-testing method
    proportion : float, default 0.01
        Assumed proportion of differentially expressed probes
    p_value : float, default 0.05
        Adjusted p-value cutoff for the logged summary
    lfc : float, default 0.0
        Log-fold-change cutoff for the logged summary
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    tuple
        (fit, results table sorted by p-value, two-group AnnData view)

    Examples
    --------
    >>> fit, results, sub = run_differential_expression(
    ...     adata, ("B.Fo.Sp", "T.4Nve.Sp"), logger=logger
    ... )
    """
    if logger is None:
        logger = setup_logging()

    logger.info("=" * 60)
    logger.info(f"Differential expression: {groups[1]} vs {groups[0]}")
    logger.info("=" * 60)

    subset = subset_groups(adata, groups, key=key, logger=logger)
    design = build_design_matrix(subset.obs[key], levels=groups, logger=logger)

    fit = lm_fit(expression_frame(subset), design, logger=logger)
    fit = e_bayes(fit, proportion=proportion, logger=logger)

    results = top_table(
        fit,
        coef=1,
        number=None,
        genelist=subset.var,
        adjust_method=adjust_method
    )

    summary = summarize_tests(
        decide_tests(fit, coef=1, adjust_method=adjust_method, p_value=p_value, lfc=lfc)
    )
    logger.info(
        f"Probes at adj.P.Val <= {p_value} (|logFC| >= {lfc}): "
        f"{summary['Up']:,} up, {summary['Down']:,} down, "
        f"{summary['NotSig']:,} not significant"
    )

    return fit, results, subset
