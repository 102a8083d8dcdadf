"""
Microarray Preprocessing
========================

This module implements the preprocessing steps applied before model fitting:
1. Natural-log transform (with positivity check)
2. Quantile normalization between arrays
3. Filtering of undetected genes by mean expression

All functions take and return an AnnotatedDataset so that gene filtering
always subsets the feature annotations together with the matrix.
"""

from typing import Optional
import logging

import numpy as np
import pandas as pd

from .data_loader import AnnotatedDataset
from ..exceptions import NonPositiveValueError

logger = logging.getLogger(__name__)


def log_transform(dataset: AnnotatedDataset, base: Optional[float] = None) -> AnnotatedDataset:
    """
    Element-wise logarithm of the expression values.

    Parameters
    ----------
    dataset : AnnotatedDataset
        Dataset with strictly positive intensities
    base : float, optional
        Logarithm base; natural log when None

    Returns
    -------
    AnnotatedDataset
        Log-scale dataset

    Raises
    ------
    NonPositiveValueError
        If any value is <= 0 or not finite
    """
    values = dataset.exprs.values.astype(float)

    bad = ~np.isfinite(values) | (values <= 0)
    if bad.any():
        n_bad = int(bad.sum())
        genes = dataset.exprs.index[bad.any(axis=1)].tolist()
        raise NonPositiveValueError(
            f"Cannot log-transform {n_bad} non-positive or non-finite values "
            f"(genes: {genes[:5]}{'...' if len(genes) > 5 else ''})"
        )

    logged = np.log(values)
    if base is not None:
        logged = logged / np.log(base)

    logger.info("Log transform complete")
    return dataset.with_exprs(
        pd.DataFrame(logged, index=dataset.exprs.index, columns=dataset.exprs.columns)
    )


def quantile_normalize(dataset: AnnotatedDataset) -> AnnotatedDataset:
    """
    Quantile normalization - forces all samples to have same distribution.

    The reference distribution is the mean of the sorted columns. Each value
    is replaced by the reference value at its rank; tied values share the
    reference interpolated at their average rank.

    Returns
    -------
    AnnotatedDataset
        Quantile normalized dataset
    """
    values = dataset.exprs.values.astype(float)
    n_genes = values.shape[0]

    # Calculate mean value for each rank across samples
    reference = np.sort(values, axis=0).mean(axis=1)
    positions = np.arange(1, n_genes + 1, dtype=float)

    # Rank values within each sample and map ranks to reference values
    ranked = dataset.exprs.rank(method='average').values
    normalized = np.empty_like(values)
    for j in range(values.shape[1]):
        normalized[:, j] = np.interp(ranked[:, j], positions, reference)

    logger.info("Quantile normalization complete")
    return dataset.with_exprs(
        pd.DataFrame(normalized, index=dataset.exprs.index, columns=dataset.exprs.columns)
    )


def filter_by_mean_expression(
    dataset: AnnotatedDataset,
    min_mean: float = 0.0
) -> AnnotatedDataset:
    """
    Remove undetected genes.

    Keep genes whose mean expression across all samples is strictly greater
    than `min_mean`.
    """
    n_genes_before = dataset.n_genes

    keep = dataset.exprs.mean(axis=1) > min_mean
    filtered = dataset.subset_genes(keep.values)

    n_genes_after = filtered.n_genes
    logger.info(f"Filtered genes: {n_genes_before} -> {n_genes_after} "
                f"(removed {n_genes_before - n_genes_after})")

    return filtered


class MicroarrayNormalizer:
    """Run the preprocessing steps on one dataset and keep each stage."""

    def __init__(self, dataset: AnnotatedDataset):
        """
        Initialize normalizer with a raw dataset.

        Parameters
        ----------
        dataset : AnnotatedDataset
            Raw intensities (genes x samples) with annotations
        """
        self.dataset = dataset
        self.normalized = {}

    def run(self, min_mean: float = 0.0) -> AnnotatedDataset:
        """
        Log transform, quantile normalize and filter.

        Parameters
        ----------
        min_mean : float
            Genes with mean expression <= min_mean are removed

        Returns
        -------
        AnnotatedDataset
            Preprocessed dataset
        """
        logged = log_transform(self.dataset)
        self.normalized['log'] = logged.exprs

        normalized = quantile_normalize(logged)
        self.normalized['quantile'] = normalized.exprs

        filtered = filter_by_mean_expression(normalized, min_mean=min_mean)
        self.normalized['filtered'] = filtered.exprs

        return filtered

    def get_summary_stats(self) -> pd.DataFrame:
        """Get summary statistics for every preprocessing stage."""
        stats_list = []

        for method, df in self.normalized.items():
            stats_list.append({
                'stage': method,
                'n_genes': df.shape[0],
                'mean': df.values.mean(),
                'std': df.values.std(),
                'min': df.values.min(),
                'max': df.values.max(),
            })

        return pd.DataFrame(stats_list)


def sample_distribution_summary(exprs: pd.DataFrame) -> pd.DataFrame:
    """
    Per-sample distribution statistics.

    Parameters
    ----------
    exprs : pd.DataFrame
        Expression matrix (genes x samples)

    Returns
    -------
    pd.DataFrame
        One row per sample with mean, median and quartiles
    """
    stats_df = pd.DataFrame({
        'sample_id': exprs.columns,
        'mean': exprs.mean(axis=0).values,
        'median': exprs.median(axis=0).values,
        'q25': exprs.quantile(0.25, axis=0).values,
        'q75': exprs.quantile(0.75, axis=0).values,
    })

    return stats_df
