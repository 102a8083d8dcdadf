"""
Microarray Differential Expression Analysis
===========================================

Linear-model / empirical Bayes analysis of a two-factor microarray
experiment (genotype x treatment):

1. Loading the expression matrix with sample and feature annotations
2. Log transform, quantile normalization and expression filtering
3. Exploratory plots (densities, gene boxplot, MDS)
4. Per-gene linear models and contrasts
5. Moderated t-statistics and significance calls
6. KEGG pathway enrichment and report generation
"""

__version__ = "0.1.0"
