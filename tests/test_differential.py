"""Tests for the linear model, empirical Bayes moderation and result tables."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy.special import digamma, polygamma

from immgen_de.annotation import SymbolTable, annotate_probes
from immgen_de.differential import (
    INTERCEPT,
    build_design_matrix,
    _tmixture_vector,
    decide_tests,
    e_bayes,
    fit_f_dist,
    lm_fit,
    lookup_gene,
    p_adjust,
    run_differential_expression,
    squeeze_var,
    summarize_tests,
    top_table,
    trigamma_inverse,
)
from immgen_de.preprocessing import add_population, expression_frame, log_transform


@pytest.fixture
def small_expr(logger):
    """Four probes, two baseline then two comparison samples, log scale."""
    raw = pd.DataFrame(
        [[1, 1, 10, 10], [2, 3, 2, 3], [4, 5, 6, 5], [7, 6, 7, 8]],
        index=["up", "flat", "mid", "noise"],
        columns=["s1", "s2", "s3", "s4"],
        dtype=float,
    )
    adata = ad.AnnData(
        X=raw.T.to_numpy(),
        obs=pd.DataFrame(index=raw.columns),
        var=pd.DataFrame(index=raw.index),
    )
    return expression_frame(log_transform(adata, logger=logger))


@pytest.fixture
def small_design(logger):
    labels = pd.Series(["A", "A", "B", "B"], index=["s1", "s2", "s3", "s4"])
    return build_design_matrix(labels, levels=("A", "B"), logger=logger)


@pytest.fixture
def log_adata(raw_adata, logger):
    adata = log_transform(raw_adata, logger=logger)
    return add_population(adata, logger=logger)


@pytest.fixture
def moderated(log_adata, logger):
    labels = log_adata.obs["population"]
    design = build_design_matrix(labels, levels=("GroupA", "GroupB"), logger=logger)
    fit = lm_fit(expression_frame(log_adata), design, logger=logger)
    return e_bayes(fit, logger=logger)


class TestDesignMatrix:
    def test_indicator_columns(self, small_design):
        assert list(small_design.columns) == [INTERCEPT, "B"]
        assert list(small_design[INTERCEPT]) == [1.0] * 4
        assert list(small_design["B"]) == [0.0, 0.0, 1.0, 1.0]

    def test_one_row_per_sample(self, logger):
        labels = ["A", "B", "B", "A", "B"]
        design = build_design_matrix(labels, levels=("A", "B"), logger=logger)
        assert design.shape == (5, 2)

    def test_level_order_sets_the_sign(self, small_expr, logger):
        labels = pd.Series(["A", "A", "B", "B"], index=small_expr.columns)

        forward = lm_fit(
            small_expr, build_design_matrix(labels, ("A", "B"), logger), logger
        )
        reverse = lm_fit(
            small_expr, build_design_matrix(labels, ("B", "A"), logger), logger
        )

        np.testing.assert_allclose(
            forward.coefficients[:, 1], -reverse.coefficients[:, 1], atol=1e-12
        )

    def test_default_levels_are_sorted(self, logger):
        design = build_design_matrix(["T", "B", "T"], logger=logger)
        assert list(design.columns) == [INTERCEPT, "T"]

    def test_labels_outside_levels(self, logger):
        with pytest.raises(ValueError, match="outside"):
            build_design_matrix(["A", "B", "C"], levels=("A", "B"), logger=logger)

    @pytest.mark.parametrize("levels", [("A",), ("A", "A"), ("A", "B", "C")])
    def test_requires_two_levels(self, logger, levels):
        with pytest.raises(ValueError):
            build_design_matrix(["A", "A"], levels=levels, logger=logger)


class TestLinearModel:
    def test_coefficients_are_group_means(self, small_expr, small_design, logger):
        fit = lm_fit(small_expr, small_design, logger=logger)

        values = small_expr.to_numpy()
        baseline = values[:, :2].mean(axis=1)
        comparison = values[:, 2:].mean(axis=1)

        np.testing.assert_allclose(fit.coefficients[:, 0], baseline, atol=1e-12)
        np.testing.assert_allclose(fit.coefficients[:, 1], comparison - baseline, atol=1e-12)
        np.testing.assert_allclose(fit.amean, values.mean(axis=1), atol=1e-12)

    def test_stdev_unscaled(self, small_expr, small_design, logger):
        fit = lm_fit(small_expr, small_design, logger=logger)

        np.testing.assert_allclose(
            fit.stdev_unscaled, np.tile([np.sqrt(0.5), 1.0], (4, 1))
        )
        assert list(fit.df_residual) == [2.0] * 4

    def test_probe_ids_and_coef_names(self, small_expr, small_design, logger):
        fit = lm_fit(small_expr, small_design, logger=logger)

        assert list(fit.probe_ids) == ["up", "flat", "mid", "noise"]
        assert fit.coef_names == [INTERCEPT, "B"]
        assert fit.coef_index("B") == 1
        assert not fit.is_moderated

    def test_unknown_coefficient(self, small_expr, small_design, logger):
        fit = lm_fit(small_expr, small_design, logger=logger)

        with pytest.raises(ValueError):
            fit.coef_index("C")
        with pytest.raises(ValueError):
            fit.coef_index(2)

    def test_non_finite_values_reduce_df(self, small_expr, small_design, logger):
        small_expr.iloc[2, 0] = -np.inf

        fit = lm_fit(small_expr, small_design, logger=logger)

        assert fit.df_residual[2] == 1.0
        assert fit.coefficients[2, 0] == pytest.approx(np.log(5))
        assert fit.coefficients[2, 1] == pytest.approx(
            np.log([6, 5]).mean() - np.log(5)
        )
        assert np.isfinite(fit.sigma[2])
        assert list(fit.df_residual[[0, 1, 3]]) == [2.0] * 3

    def test_rank_deficient_design(self, small_expr, logger):
        labels = pd.Series(["A"] * 4, index=small_expr.columns)
        design = build_design_matrix(labels, levels=("A", "B"), logger=logger)

        with pytest.raises(ValueError, match="rank"):
            lm_fit(small_expr, design, logger=logger)

    def test_dimension_mismatch(self, small_expr, logger):
        design = build_design_matrix(["A", "B", "B"], levels=("A", "B"), logger=logger)

        with pytest.raises(ValueError, match="rows"):
            lm_fit(small_expr, design, logger=logger)

    def test_accepts_anndata(self, log_adata, logger):
        design = build_design_matrix(
            log_adata.obs["population"], levels=("GroupA", "GroupB"), logger=logger
        )
        fit = lm_fit(log_adata, design, logger=logger)

        assert fit.n_probes == log_adata.n_vars
        assert list(fit.probe_ids) == list(log_adata.var_names)


class TestEmpiricalBayes:
    def test_trigamma_inverse_round_trip(self):
        for x in [0.05, 0.5, 1.0, 10.0, 100.0]:
            y = trigamma_inverse(x)
            assert polygamma(1, y) == pytest.approx(x, rel=1e-6)

    def test_fit_f_dist_recovers_prior(self):
        rng = np.random.default_rng(42)
        d0, s0_sq, df = 4.0, 0.05, 4.0
        n = 20000

        sigma2 = s0_sq * (rng.chisquare(df, n) / df) / (rng.chisquare(d0, n) / d0)

        d0_hat, s0_sq_hat = fit_f_dist(sigma2, df)

        assert d0_hat == pytest.approx(d0, rel=0.25)
        assert s0_sq_hat == pytest.approx(s0_sq, rel=0.1)

    def test_fit_f_dist_constant_variances(self):
        d0, s0_sq = fit_f_dist(np.full(50, 0.2), 4.0)

        assert np.isinf(d0)
        assert s0_sq == pytest.approx(0.2 * np.exp(np.log(2.0) - digamma(2.0)))

    def test_squeeze_var_formula(self):
        sigma2 = np.array([0.1, 0.5, 2.0])
        df = np.array([2.0, 2.0, 4.0])

        post = squeeze_var(sigma2, df, d0=3.0, s0_sq=0.4)

        np.testing.assert_allclose(post, (3.0 * 0.4 + df * sigma2) / (3.0 + df))
        assert np.all(post > np.minimum(sigma2, 0.4))
        assert np.all(post < np.maximum(sigma2, 0.4))

    def test_squeeze_var_infinite_prior_df(self):
        post = squeeze_var(np.array([0.1, 5.0]), 2.0, d0=np.inf, s0_sq=0.3)
        np.testing.assert_allclose(post, [0.3, 0.3])

    def test_moderated_statistics_shapes(self, moderated):
        n = moderated.n_probes

        assert moderated.is_moderated
        assert moderated.t.shape == (n, 2)
        assert moderated.p_value.shape == (n, 2)
        assert moderated.lods.shape == (n, 2)
        assert moderated.s2_post.shape == (n,)
        assert np.all((moderated.p_value >= 0) & (moderated.p_value <= 1))

    def test_df_total_capped_at_pooled_df(self, moderated):
        pooled = moderated.df_residual.sum()
        assert np.all(moderated.df_total <= pooled)
        assert np.all(moderated.df_total >= moderated.df_residual)

    def test_small_example_ranks_the_shifted_probe(self, small_expr, small_design, logger):
        fit = e_bayes(lm_fit(small_expr, small_design, logger=logger), logger=logger)

        assert fit.coefficients[0, 1] > 0
        assert fit.t[0, 1] > 0
        assert fit.p_value[0, 1] < fit.p_value[1, 1]
        assert fit.coefficients[1, 1] == pytest.approx(0.0, abs=1e-12)

    def test_de_probes_have_highest_log_odds(self, moderated):
        top = np.argsort(-moderated.lods[:, 1])[:10]
        assert set(top) == set(range(10))

    def test_prior_variance_finite_for_extreme_t(self):
        tstat = np.array([1e200, 3.0, 1.0, 0.5])
        df = np.array([2.0, 10.0, 10.0, 10.0])

        v0 = _tmixture_vector(tstat, np.ones(4), df, proportion=0.5)

        assert np.isfinite(v0)
        assert v0 > 0

    def test_invalid_proportion(self, small_expr, small_design, logger):
        fit = lm_fit(small_expr, small_design, logger=logger)

        with pytest.raises(ValueError):
            e_bayes(fit, proportion=1.5, logger=logger)


class TestPAdjust:
    def test_bh_example(self):
        np.testing.assert_allclose(
            p_adjust([0.01, 0.04, 0.03], method="BH"), [0.03, 0.04, 0.04]
        )

    def test_bh_monotone_and_not_below_raw(self):
        p = np.random.default_rng(1).uniform(size=500)
        adjusted = p_adjust(p)

        order = np.argsort(p)
        assert np.all(np.diff(adjusted[order]) >= -1e-15)
        assert np.all(adjusted >= p)
        assert np.all(adjusted <= 1)

    def test_nan_is_kept(self):
        adjusted = p_adjust([0.01, np.nan, 0.02])

        assert np.isnan(adjusted[1])
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.02])

    def test_case_insensitive_and_none(self):
        p = [0.01, 0.02]
        np.testing.assert_allclose(p_adjust(p, "fdr"), p_adjust(p, "BH"))
        np.testing.assert_allclose(p_adjust(p, "none"), p)
        np.testing.assert_allclose(p_adjust(p, "bonferroni"), [0.02, 0.04])

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown adjustment"):
            p_adjust([0.1], method="magic")


class TestTopTable:
    def test_columns_and_order(self, moderated):
        table = top_table(moderated, number=None)

        assert list(table.columns) == [
            "logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B", "SE", "SE.moderated"
        ]
        assert len(table) == moderated.n_probes
        assert table["P.Value"].is_monotonic_increasing

    def test_number(self, moderated):
        assert len(top_table(moderated, number=5)) == 5

    def test_adjustment_before_filtering(self, moderated):
        full = top_table(moderated, number=None)
        filtered = top_table(moderated, number=3, p_value=0.05)

        assert len(filtered) == 3
        np.testing.assert_allclose(
            filtered["adj.P.Val"], full.loc[filtered.index, "adj.P.Val"]
        )
        assert np.all(filtered["adj.P.Val"] <= 0.05)

    def test_lfc_filter(self, moderated):
        table = top_table(moderated, number=None, lfc=1.0)
        assert np.all(table["logFC"].abs() >= 1.0)
        assert set(range(10)) <= {int(p) - 10344600 for p in table.index}

    def test_sort_by_logfc(self, moderated):
        table = top_table(moderated, number=None, sort_by="logFC")
        assert table["logFC"].abs().is_monotonic_decreasing

    def test_sort_by_b(self, moderated):
        table = top_table(moderated, number=None, sort_by="B")
        assert table["B"].is_monotonic_decreasing

    def test_coefficient_by_name(self, moderated):
        by_name = top_table(moderated, coef="GroupB", number=None)
        by_index = top_table(moderated, coef=1, number=None)
        pd.testing.assert_frame_equal(by_name, by_index)

    def test_genelist_joined_in_front(self, moderated, log_adata):
        table = top_table(moderated, number=None, genelist=log_adata.var)

        assert table.columns[0] == "GB_LIST"
        assert table.loc["10344600", "GB_LIST"] == log_adata.var.loc["10344600", "GB_LIST"]

    def test_standard_errors(self, moderated):
        table = top_table(moderated, number=None, sort_by="none")

        np.testing.assert_allclose(
            table["SE.moderated"],
            moderated.stdev_unscaled[:, 1] * np.sqrt(moderated.s2_post),
        )
        np.testing.assert_allclose(
            table["t"], table["logFC"] / table["SE.moderated"]
        )

    def test_requires_moderated_fit(self, small_expr, small_design, logger):
        fit = lm_fit(small_expr, small_design, logger=logger)

        with pytest.raises(ValueError, match="e_bayes"):
            top_table(fit)

    def test_unknown_sort_key(self, moderated):
        with pytest.raises(ValueError):
            top_table(moderated, sort_by="symbol")


class TestDecideTests:
    def test_calls(self, moderated):
        calls = decide_tests(moderated)

        assert set(calls.unique()) <= {-1, 0, 1}
        assert np.all(calls.iloc[:10] == 1)
        assert calls.name == "GroupB"

    def test_summary_counts_every_probe(self, moderated):
        summary = summarize_tests(decide_tests(moderated))

        assert list(summary.index) == ["Down", "NotSig", "Up"]
        assert summary.sum() == moderated.n_probes
        assert summary["Up"] >= 10

    def test_reversed_groups_call_down(self, log_adata, logger):
        labels = log_adata.obs["population"]
        design = build_design_matrix(labels, levels=("GroupB", "GroupA"), logger=logger)
        fit = e_bayes(lm_fit(log_adata, design, logger=logger), logger=logger)

        calls = decide_tests(fit)
        assert np.all(calls.iloc[:10] == -1)


class TestLookupGene:
    @pytest.fixture
    def results(self, log_adata, symbol_frame, logger):
        adata = annotate_probes(log_adata, SymbolTable(symbol_frame), logger=logger)
        _, results, _ = run_differential_expression(
            adata, ("GroupA", "GroupB"), logger=logger
        )
        return results

    def test_single_probe(self, results):
        rows = lookup_gene(results, "Gene0")
        assert list(rows.index) == ["10344600"]

    def test_shared_symbol(self, results):
        rows = lookup_gene(results, "Gene1")
        assert set(rows.index) == {"10344601", "10344602"}

    def test_unknown_symbol(self, results):
        rows = lookup_gene(results, "Cd19")
        assert rows.empty
        assert list(rows.columns) == list(results.columns)

    def test_missing_symbol_column(self):
        with pytest.raises(KeyError):
            lookup_gene(pd.DataFrame({"logFC": [1.0]}), "Cd19")


def test_run_differential_expression(log_adata, logger):
    log_adata.obs.loc[log_adata.obs_names[0], "population"] = "Other"

    fit, results, subset = run_differential_expression(
        log_adata, ("GroupA", "GroupB"), logger=logger
    )

    assert subset.n_obs == 5
    assert set(subset.obs["population"]) == {"GroupA", "GroupB"}
    assert len(results) == log_adata.n_vars
    assert list(fit.coef_names) == [INTERCEPT, "GroupB"]

    expected = {str(10344600 + i) for i in range(10)}
    assert set(results.index[:10]) == expected
    np.testing.assert_allclose(
        results.loc[sorted(expected), "logFC"], np.log(8.0), atol=0.3
    )
