"""Tests for log transform, quantile normalization and filtering."""

import numpy as np
import pandas as pd
import pytest

from microarray_de.exceptions import NonPositiveValueError
from microarray_de.preprocessing.data_loader import AnnotatedDataset
from microarray_de.preprocessing.normalization import (
    MicroarrayNormalizer,
    filter_by_mean_expression,
    log_transform,
    quantile_normalize,
    sample_distribution_summary
)


def _make_dataset(values, genes=None, samples=None) -> AnnotatedDataset:
    values = np.asarray(values, dtype=float)
    genes = genes or [f"g{i}" for i in range(values.shape[0])]
    samples = samples or [f"s{j}" for j in range(values.shape[1])]
    return AnnotatedDataset(
        exprs=pd.DataFrame(values, index=genes, columns=samples),
        samples=pd.DataFrame({'group': ['a'] * len(samples)}, index=samples),
        features=pd.DataFrame({'symbol': genes}, index=genes),
    )


class TestLogTransform:

    def test_natural_log(self):
        dataset = _make_dataset([[1.0, np.e], [np.e ** 2, 10.0]])
        logged = log_transform(dataset)

        np.testing.assert_allclose(logged.exprs.values, [[0.0, 1.0], [2.0, np.log(10)]])
        assert logged.features is dataset.features

    def test_base_two(self):
        logged = log_transform(_make_dataset([[1.0, 8.0]]), base=2)

        np.testing.assert_allclose(logged.exprs.values, [[0.0, 3.0]])

    @pytest.mark.parametrize('bad', [0.0, -1.0, np.nan, np.inf])
    def test_rejects_non_positive_and_non_finite(self, bad):
        dataset = _make_dataset([[1.0, 2.0], [3.0, bad]])

        with pytest.raises(NonPositiveValueError, match='g1'):
            log_transform(dataset)


class TestQuantileNormalize:

    def test_columns_share_distribution(self, log_dataset):
        normalized = quantile_normalize(log_dataset).exprs.values
        sorted_cols = np.sort(normalized, axis=0)

        for j in range(1, sorted_cols.shape[1]):
            np.testing.assert_allclose(sorted_cols[:, j], sorted_cols[:, 0])

    def test_reference_is_mean_of_sorted_columns(self):
        dataset = _make_dataset([[5, 4, 3], [2, 1, 4], [3, 4, 6], [4, 2, 8]])
        expected_reference = np.sort(dataset.exprs.values, axis=0).mean(axis=1)

        normalized = quantile_normalize(dataset).exprs

        # Column s0 has no ties: values 5,2,3,4 have ranks 4,1,2,3
        np.testing.assert_allclose(
            normalized['s0'].values,
            expected_reference[[3, 0, 1, 2]]
        )

    def test_ties_share_value(self):
        dataset = _make_dataset([[5, 4, 3], [2, 1, 4], [3, 4, 6], [4, 2, 8]])
        normalized = quantile_normalize(dataset).exprs

        # s1 has a tie (4 and 4) at ranks 3 and 4
        assert normalized.loc['g0', 's1'] == normalized.loc['g2', 's1']
        reference = np.sort(dataset.exprs.values, axis=0).mean(axis=1)
        assert normalized.loc['g0', 's1'] == pytest.approx((reference[2] + reference[3]) / 2)

    def test_preserves_within_sample_order(self, log_dataset):
        normalized = quantile_normalize(log_dataset).exprs
        for sample in log_dataset.exprs.columns:
            before = log_dataset.exprs[sample].rank().values
            after = normalized[sample].rank().values
            np.testing.assert_array_equal(before, after)


class TestFilterByMeanExpression:

    def test_removes_low_genes_with_annotations(self):
        dataset = _make_dataset([[1.0, 2.0], [-1.0, 0.5], [0.0, 0.0]])
        filtered = filter_by_mean_expression(dataset, min_mean=0.0)

        assert list(filtered.exprs.index) == ['g0']
        assert list(filtered.features.index) == ['g0']

    def test_threshold_is_strict(self):
        dataset = _make_dataset([[1.0, 1.0], [2.0, 2.0]])

        assert filter_by_mean_expression(dataset, min_mean=1.0).n_genes == 1


class TestMicroarrayNormalizer:

    def test_run_keeps_each_stage(self, raw_dataset):
        normalizer = MicroarrayNormalizer(raw_dataset)
        result = normalizer.run(min_mean=0.0)

        assert set(normalizer.normalized) == {'log', 'quantile', 'filtered'}
        assert 'g_low' in normalizer.normalized['quantile'].index
        assert 'g_low' not in result.exprs.index
        assert result.n_genes == raw_dataset.n_genes - 1

    def test_summary_stats(self, raw_dataset):
        normalizer = MicroarrayNormalizer(raw_dataset)
        normalizer.run()
        stats_df = normalizer.get_summary_stats()

        assert list(stats_df['stage']) == ['log', 'quantile', 'filtered']
        assert stats_df.loc[2, 'n_genes'] == raw_dataset.n_genes - 1


def test_sample_distribution_summary(log_dataset):
    summary = sample_distribution_summary(log_dataset.exprs)

    assert list(summary['sample_id']) == list(log_dataset.exprs.columns)
    assert (summary['q25'] <= summary['median']).all()
    assert (summary['median'] <= summary['q75']).all()
