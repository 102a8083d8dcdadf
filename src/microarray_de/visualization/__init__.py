"""
Visualization module.
"""

from .plots import (
    mds_coordinates,
    plot_densities,
    plot_gene_boxplot,
    plot_mds,
    plot_pvalue_histogram,
    plot_venn,
    plot_volcano,
    save_figure
)

__all__ = [
    'mds_coordinates',
    'plot_densities',
    'plot_gene_boxplot',
    'plot_mds',
    'plot_pvalue_histogram',
    'plot_venn',
    'plot_volcano',
    'save_figure'
]
