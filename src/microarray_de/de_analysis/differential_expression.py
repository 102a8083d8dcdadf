"""
Differential Expression Analysis
================================

This module runs the limma-style analysis of a factorial microarray design:
1. Group samples by the combination of experimental factors
2. Fit one linear model per gene on a cell-means design (no intercept)
3. Re-express the fit as the requested contrasts
4. Moderate the standard errors with empirical Bayes
5. Report per-contrast result tables and significance calls
"""

from typing import Dict, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from .design import design_matrix, make_contrasts, make_groups
from .ebayes import (
    ModeratedFit,
    adjust_pvalues,
    decide_tests,
    ebayes,
    summarize_decisions,
    venn_counts
)
from .linear_model import LinearModelFit, contrasts_fit, lm_fit
from ..config import DEFAULT_CONTRASTS
from ..preprocessing.data_loader import AnnotatedDataset

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    'p': ('pvalue', True),
    'B': ('B', False),
    'logFC': ('logFC', False),
    't': ('t', False),
}


class LimmaAnalysis:
    """Linear model and empirical Bayes analysis of one dataset."""

    def __init__(
        self,
        dataset: AnnotatedDataset,
        factors: Sequence[str] = ('genotype', 'treatment'),
        contrasts: Optional[Mapping[str, str]] = None,
        sep: str = '.',
        adjust_method: str = 'fdr_bh',
        p_value: float = 0.05,
        lfc: float = 0.0,
        proportion: float = 0.01
    ):
        """
        Initialize DE analysis.

        Parameters
        ----------
        dataset : AnnotatedDataset
            Preprocessed log-expression data with annotations
        factors : Sequence[str]
            Sample metadata columns combined into groups
        contrasts : Mapping[str, str], optional
            Contrast name -> expression over group names
        sep : str
            Separator used when combining factor levels
        adjust_method : str
            Multiple-testing correction (statsmodels method name)
        p_value : float
            Threshold on adjusted p-values for significance calls
        lfc : float
            Minimum absolute log fold change for significance calls
        proportion : float
            Prior proportion of differentially expressed genes
        """
        self.dataset = dataset
        self.factors = list(factors)
        self.contrast_exprs = dict(contrasts or DEFAULT_CONTRASTS)
        self.adjust_method = adjust_method
        self.p_value = p_value
        self.lfc = lfc
        self.proportion = proportion

        self.groups = make_groups(dataset.samples, self.factors, sep=sep)
        self.design = design_matrix(self.groups)
        self.contrasts = make_contrasts(list(self.design.columns), self.contrast_exprs)

        self.fit_groups: Optional[LinearModelFit] = None
        self.fit_contrasts: Optional[LinearModelFit] = None
        self.moderated: Optional[ModeratedFit] = None

        logger.info(f"Initialized DE analysis with {dataset.n_samples} samples, "
                    f"{dataset.n_genes} genes, groups {list(self.design.columns)}")

    def group_counts(self) -> pd.Series:
        """Number of samples per group (design column sums)."""
        return self.design.sum(axis=0).rename('n_samples')

    def fit(self) -> ModeratedFit:
        """Fit gene-wise models, apply contrasts and moderate."""
        self.fit_groups = lm_fit(self.dataset.exprs, self.design, genes=self.dataset.features)
        self.fit_contrasts = contrasts_fit(self.fit_groups, self.contrasts)
        self.moderated = ebayes(self.fit_contrasts, proportion=self.proportion)
        return self.moderated

    def _require_fit(self) -> ModeratedFit:
        if self.moderated is None:
            self.fit()
        return self.moderated

    def top_table(
        self,
        contrast: str,
        n: Optional[int] = None,
        sort_by: str = 'none'
    ) -> pd.DataFrame:
        """
        Result table for one contrast.

        Parameters
        ----------
        contrast : str
            Contrast name
        n : int, optional
            Number of rows to return (all when None)
        sort_by : str
            'none' keeps the original gene order; 'p', 'B', 'logFC' or 't'
            sort by that statistic (absolute value for logFC and t)

        Returns
        -------
        pd.DataFrame
            Gene annotations plus logFC, AveExpr, t, pvalue, padj and B
        """
        moderated = self._require_fit()
        if contrast not in moderated.coef_names:
            raise KeyError(f"Unknown contrast '{contrast}'; available: {moderated.coef_names}")

        pvalue = moderated.p_value[contrast]
        table = pd.DataFrame({
            'logFC': moderated.coefficients[contrast],
            'AveExpr': moderated.fit.amean,
            't': moderated.t[contrast],
            'pvalue': pvalue,
            'padj': adjust_pvalues(pvalue.values, self.adjust_method),
            'B': moderated.lods[contrast],
        })
        genes = moderated.fit.genes
        if genes is not None and not genes.empty:
            table = pd.concat([genes, table], axis=1)
        table.index.name = self.dataset.exprs.index.name or 'gene'

        if sort_by != 'none':
            if sort_by not in SORT_COLUMNS:
                raise ValueError(f"Unknown sort_by: {sort_by}")
            col, ascending = SORT_COLUMNS[sort_by]
            key = table[col].abs() if sort_by in ('logFC', 't') else table[col]
            table = table.iloc[np.argsort(key.values if ascending else -key.values, kind='stable')]

        if n is not None:
            table = table.head(n)

        return table

    def results(self) -> Dict[str, pd.DataFrame]:
        """All contrasts' result tables in original gene order."""
        moderated = self._require_fit()
        return {name: self.top_table(name) for name in moderated.coef_names}

    def decide(self) -> pd.DataFrame:
        """Significance calls (-1/0/1) for every gene and contrast."""
        return decide_tests(
            self._require_fit(),
            adjust_method=self.adjust_method,
            p_value=self.p_value,
            lfc=self.lfc
        )

    def summary(self) -> pd.DataFrame:
        """Down / NotSig / Up counts per contrast."""
        decisions = self.decide()
        summary = summarize_decisions(decisions)

        for name in summary.columns:
            n_sig = summary.loc['Down', name] + summary.loc['Up', name]
            logger.info(f"{name}: {n_sig} significant genes "
                        f"(adjusted p < {self.p_value}, {self.adjust_method})")

        return summary

    def venn(self, include: str = 'both') -> pd.DataFrame:
        """Overlap of significant genes across contrasts."""
        return venn_counts(self.decide(), include=include)


def get_top_genes(
    de_results: pd.DataFrame,
    n_top: int = 50,
    by: str = 'pvalue'
) -> pd.DataFrame:
    """Get top differentially expressed genes."""
    return de_results.nsmallest(n_top, by)


def filter_significant(
    de_results: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 0.0
) -> pd.DataFrame:
    """
    Genes called significant in one result table.

    Same rule as decide_tests: adjusted p-value below `padj_threshold` and
    absolute logFC (natural-log scale) at least `lfc_threshold`.
    """
    mask = (
        (de_results['padj'] < padj_threshold) &
        (de_results['logFC'].abs() >= lfc_threshold)
    )

    return de_results[mask]
