"""
Differential Expression Analysis module.
"""

from .design import design_matrix, make_contrasts, make_groups
from .differential_expression import (
    LimmaAnalysis,
    get_top_genes,
    filter_significant
)
from .ebayes import (
    ModeratedFit,
    decide_tests,
    ebayes,
    fit_f_dist,
    squeeze_var,
    summarize_decisions,
    venn_counts
)
from .linear_model import LinearModelFit, contrasts_fit, lm_fit

__all__ = [
    'LimmaAnalysis',
    'get_top_genes',
    'filter_significant',
    'design_matrix',
    'make_contrasts',
    'make_groups',
    'LinearModelFit',
    'contrasts_fit',
    'lm_fit',
    'ModeratedFit',
    'decide_tests',
    'ebayes',
    'fit_f_dist',
    'squeeze_var',
    'summarize_decisions',
    'venn_counts'
]
