"""
Preprocessing module for microarray analysis.
"""

from .data_loader import AnnotatedDataset, ExpressionDataLoader, summarize_samples
from .normalization import (
    MicroarrayNormalizer,
    filter_by_mean_expression,
    log_transform,
    quantile_normalize,
    sample_distribution_summary
)

__all__ = [
    'AnnotatedDataset',
    'ExpressionDataLoader',
    'summarize_samples',
    'MicroarrayNormalizer',
    'filter_by_mean_expression',
    'log_transform',
    'quantile_normalize',
    'sample_distribution_summary'
]
