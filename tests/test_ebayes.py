"""Tests for empirical Bayes moderation and significance calls."""

import numpy as np
import pandas as pd
import pytest
from scipy import stats
from scipy.special import polygamma
from statsmodels.stats.multitest import multipletests

from microarray_de.config import DEFAULT_CONTRASTS
from microarray_de.de_analysis.design import design_matrix, make_contrasts, make_groups
from microarray_de.de_analysis.ebayes import (
    adjust_pvalues,
    decide_tests,
    ebayes,
    fit_f_dist,
    squeeze_var,
    summarize_decisions,
    trigamma_inverse,
    venn_counts
)
from microarray_de.de_analysis.linear_model import contrasts_fit, lm_fit


@pytest.fixture
def contrast_fit(log_dataset):
    groups = make_groups(log_dataset.samples, ['genotype', 'treatment'])
    design = design_matrix(groups)
    fit = lm_fit(log_dataset.exprs, design, genes=log_dataset.features)
    return contrasts_fit(fit, make_contrasts(fit.coef_names, DEFAULT_CONTRASTS))


@pytest.fixture
def moderated(contrast_fit):
    return ebayes(contrast_fit)


class TestTrigammaInverse:

    @pytest.mark.parametrize('y', [0.05, 0.5, 1.0, 3.0, 25.0, 400.0])
    def test_inverts_trigamma(self, y):
        x = polygamma(1, y)

        np.testing.assert_allclose(trigamma_inverse(x), y, rtol=1e-6)

    def test_vectorised(self):
        y = np.array([0.5, 2.0, 10.0])

        np.testing.assert_allclose(trigamma_inverse(polygamma(1, y)), y, rtol=1e-6)


class TestFitFDist:

    def test_recovers_prior_from_simulation(self):
        rng = np.random.default_rng(1)
        df, d0, s0 = 4.0, 10.0, 0.5
        sigma2 = s0 * d0 / rng.chisquare(d0, size=20000)
        s2 = sigma2 * rng.chisquare(df, size=20000) / df

        s2_prior, df_prior = fit_f_dist(s2, df)

        assert s2_prior == pytest.approx(s0, rel=0.1)
        assert df_prior == pytest.approx(d0, rel=0.25)

    def test_no_extra_spread_gives_large_df(self):
        rng = np.random.default_rng(2)
        s2 = 0.3 * rng.chisquare(8, size=20000) / 8

        s2_prior, df_prior = fit_f_dist(s2, 8)

        assert np.isinf(df_prior) or df_prior > 50
        assert s2_prior == pytest.approx(0.3, rel=0.05)


class TestSqueezeVar:

    def test_posterior_between_gene_and_prior(self):
        s2 = np.array([0.01, 0.2, 5.0])
        post = squeeze_var(s2, np.full(3, 4.0), s2_prior=0.5, df_prior=6.0)

        np.testing.assert_allclose(post, (4 * s2 + 6 * 0.5) / 10)
        assert np.all((post >= np.minimum(s2, 0.5)) & (post <= np.maximum(s2, 0.5)))

    def test_infinite_prior_df(self):
        post = squeeze_var([0.1, 3.0], [4.0, 4.0], s2_prior=0.5, df_prior=np.inf)

        np.testing.assert_allclose(post, [0.5, 0.5])


class TestEbayes:

    def test_moderated_t_formula(self, contrast_fit, moderated):
        expected = (contrast_fit.coefficients.values
                    / contrast_fit.stdev_unscaled.values
                    / np.sqrt(moderated.s2_post.values)[:, None])

        np.testing.assert_allclose(moderated.t.values, expected)

    def test_pvalues_use_total_df(self, moderated):
        df_total = moderated.df_total.values[:, None]
        expected = 2 * stats.t.sf(np.abs(moderated.t.values), df_total)

        np.testing.assert_allclose(moderated.p_value.values, expected)

    def test_total_df_capped_at_pooled(self, moderated):
        assert (moderated.df_total <= 8 * moderated.fit.n_genes).all()
        assert (moderated.df_total >= 8).all()

    def test_variances_shrink_toward_prior(self, contrast_fit, moderated):
        s2 = contrast_fit.sigma.values ** 2
        post = moderated.s2_post.values
        prior = moderated.s2_prior

        assert np.all(post >= np.minimum(s2, prior) - 1e-12)
        assert np.all(post <= np.maximum(s2, prior) + 1e-12)

    def test_planted_genes_have_high_log_odds(self, moderated):
        lods = moderated.lods['dox_wt']
        planted = [f"g{i:03d}" for i in range(20)]
        null = [f"g{i:03d}" for i in range(40, 200)]

        assert lods[planted].median() > lods[null].median()
        assert lods[planted].min() > lods[null].median()

    def test_proportion_bounds(self, contrast_fit):
        with pytest.raises(ValueError):
            ebayes(contrast_fit, proportion=0.0)


class TestDecisions:

    def test_adjust_matches_statsmodels(self):
        p = np.array([0.001, 0.01, 0.02, 0.5, 0.9])

        np.testing.assert_allclose(adjust_pvalues(p), multipletests(p, method='fdr_bh')[1])
        np.testing.assert_array_equal(adjust_pvalues(p, 'none'), p)

    def test_decide_tests_detects_planted_effects(self, moderated):
        calls = decide_tests(moderated)

        assert list(calls.columns) == ['dox_wt', 'dox_top2b', 'interaction']
        assert set(np.unique(calls.values)) <= {-1, 0, 1}
        up = calls.loc[[f"g{i:03d}" for i in range(20)], 'dox_wt']
        down = calls.loc[[f"g{i:03d}" for i in range(20, 30)], 'dox_wt']
        assert (up == 1).sum() >= 18
        assert (down == -1).sum() >= 9
        assert (calls.loc[[f"g{i:03d}" for i in range(30, 40)], 'dox_top2b'] == 1).sum() >= 9

    def test_decide_tests_per_contrast_adjustment(self, moderated):
        calls = decide_tests(moderated, p_value=0.05)

        for name in calls.columns:
            padj = multipletests(moderated.p_value[name].values, method='fdr_bh')[1]
            np.testing.assert_array_equal(calls[name].values != 0, padj < 0.05)

    def test_lfc_threshold(self, moderated):
        calls = decide_tests(moderated, lfc=100.0)

        assert (calls.values == 0).all()

    def test_summary_counts_sum_to_genes(self, moderated):
        summary = summarize_decisions(decide_tests(moderated))

        assert list(summary.index) == ['Down', 'NotSig', 'Up']
        assert (summary.sum(axis=0) == moderated.fit.n_genes).all()


class TestVennCounts:

    def test_counts_patterns(self):
        decisions = pd.DataFrame({
            'a': [1, 0, -1, 1, 0],
            'b': [1, 1, 0, 0, 0],
        })
        counts = venn_counts(decisions)

        assert counts[['a', 'b']].values.tolist() == [[0, 0], [0, 1], [1, 0], [1, 1]]
        assert counts['Counts'].tolist() == [1, 1, 2, 1]

    def test_up_and_down_only(self):
        decisions = pd.DataFrame({'a': [1, -1, -1], 'b': [-1, -1, 0]})

        up = venn_counts(decisions, include='up')
        down = venn_counts(decisions, include='down')

        assert up['Counts'].tolist() == [2, 0, 1, 0]
        assert down['Counts'].tolist() == [0, 1, 1, 1]

    def test_empty_decisions(self):
        counts = venn_counts(pd.DataFrame({'a': [], 'b': []}, dtype=int))

        assert counts['Counts'].sum() == 0
        assert len(counts) == 4

    def test_invalid_include(self):
        with pytest.raises(ValueError):
            venn_counts(pd.DataFrame({'a': [1]}), include='sideways')
