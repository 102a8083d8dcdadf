"""Tests for gene-wise least squares fits and contrasts."""

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from microarray_de.config import DEFAULT_CONTRASTS
from microarray_de.de_analysis.design import design_matrix, make_contrasts, make_groups
from microarray_de.de_analysis.linear_model import contrasts_fit, lm_fit
from microarray_de.exceptions import AlignmentError, DesignError, MissingValueError


@pytest.fixture
def design(samples):
    return design_matrix(make_groups(samples, ['genotype', 'treatment']))


@pytest.fixture
def fit(log_dataset, design):
    return lm_fit(log_dataset.exprs, design, genes=log_dataset.features)


class TestLmFit:

    def test_coefficients_are_group_means(self, log_dataset, design, fit):
        groups = make_groups(log_dataset.samples, ['genotype', 'treatment'])
        means = log_dataset.exprs.T.groupby(groups, observed=True).mean().T

        for level in design.columns:
            np.testing.assert_allclose(fit.coefficients[level].values, means[level].values)

    def test_matches_statsmodels_ols(self, log_dataset, design, fit):
        for gene in ['g000', 'g050', 'g123']:
            ols = sm.OLS(log_dataset.exprs.loc[gene].values, design.values.astype(float)).fit()

            np.testing.assert_allclose(fit.coefficients.loc[gene].values, ols.params)
            np.testing.assert_allclose(fit.sigma[gene], np.sqrt(ols.scale))
            np.testing.assert_allclose(
                fit.stdev_unscaled.loc[gene].values * fit.sigma[gene], ols.bse
            )

    def test_shapes_and_metadata(self, log_dataset, fit):
        assert fit.n_genes == log_dataset.n_genes
        assert (fit.df_residual == 8).all()
        np.testing.assert_allclose(fit.amean.values, log_dataset.exprs.mean(axis=1).values)
        assert list(fit.genes.index) == list(log_dataset.exprs.index)

    def test_design_rows_follow_expression_columns(self, log_dataset, design):
        shuffled = design.iloc[::-1]
        fit = lm_fit(log_dataset.exprs, shuffled)

        assert list(fit.design.index) == list(log_dataset.exprs.columns)

    def test_rank_deficient_design(self, log_dataset, design):
        design = design.copy()
        design['dup'] = design['wt.pbs']

        with pytest.raises(DesignError, match='full rank'):
            lm_fit(log_dataset.exprs, design)

    def test_no_residual_df(self, log_dataset, design):
        exprs = log_dataset.exprs.iloc[:, :4]

        with pytest.raises(DesignError):
            lm_fit(exprs, design.loc[exprs.columns])

    def test_missing_values(self, log_dataset, design):
        exprs = log_dataset.exprs.copy()
        exprs.iloc[0, 0] = np.nan

        with pytest.raises(MissingValueError):
            lm_fit(exprs, design)

    def test_sample_mismatch(self, log_dataset, design):
        with pytest.raises(AlignmentError):
            lm_fit(log_dataset.exprs, design.iloc[1:])


class TestContrastsFit:

    def test_contrast_is_coefficient_difference(self, fit):
        contrasts = make_contrasts(fit.coef_names, DEFAULT_CONTRASTS)
        cfit = contrasts_fit(fit, contrasts)

        np.testing.assert_allclose(
            cfit.coefficients['dox_wt'].values,
            fit.coefficients['wt.dox'].values - fit.coefficients['wt.pbs'].values
        )
        assert cfit.coef_names == ['dox_wt', 'dox_top2b', 'interaction']

    def test_stdev_unscaled_from_covariance(self, fit):
        contrasts = make_contrasts(fit.coef_names, DEFAULT_CONTRASTS)
        cfit = contrasts_fit(fit, contrasts)

        # Three replicates per group: var(a - b) = 2/3, var(interaction) = 4/3
        np.testing.assert_allclose(cfit.stdev_unscaled['dox_wt'].values, np.sqrt(2 / 3))
        np.testing.assert_allclose(cfit.stdev_unscaled['interaction'].values, np.sqrt(4 / 3))
        pd.testing.assert_series_equal(cfit.sigma, fit.sigma)

    def test_contrast_rows_must_match(self, fit):
        contrasts = make_contrasts(['a', 'b'], {'x': 'a - b'})

        with pytest.raises(DesignError):
            contrasts_fit(fit, contrasts)

    def test_cannot_apply_twice(self, fit):
        contrasts = make_contrasts(fit.coef_names, DEFAULT_CONTRASTS)
        cfit = contrasts_fit(fit, contrasts)

        with pytest.raises(DesignError):
            contrasts_fit(cfit, contrasts)
