"""
Plots for Exploration and Reporting
===================================

Exploratory views of the expression data:
1. Per-sample density curves
2. Boxplot of a single gene by group
3. Multidimensional scaling (MDS) of the samples

Result views for each contrast:
4. P-value histogram
5. Volcano plot
6. Venn diagram of significant genes across contrasts

Every function returns the matplotlib Figure; nothing here feeds the
statistical stages.
"""

from pathlib import Path
from typing import Optional, Tuple
import logging

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.patches import Circle
import numpy as np
import pandas as pd
import seaborn as sns
from sklearn.decomposition import PCA

from ..de_analysis.ebayes import venn_counts
from ..preprocessing.data_loader import AnnotatedDataset

logger = logging.getLogger(__name__)


def _new_axes(ax=None, figsize=(7, 5)):
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure
    return fig, ax


def save_figure(fig, path) -> Path:
    """Write a figure to disk and release it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    logger.info(f"Saved figure: {path}")
    return path


def plot_densities(exprs: pd.DataFrame, title: str = 'Expression densities', ax=None):
    """One density curve per sample."""
    fig, ax = _new_axes(ax)

    long = exprs.melt(var_name='sample', value_name='expression')
    sns.kdeplot(data=long, x='expression', hue='sample', ax=ax, linewidth=1, common_norm=False)
    ax.set_xlabel('log expression')
    ax.set_title(title)

    return fig


def find_gene(dataset: AnnotatedDataset, gene: str, symbol_col: str = 'symbol') -> str:
    """Feature id for a gene given by id or by symbol."""
    if gene in dataset.exprs.index:
        return gene
    if symbol_col in dataset.features.columns:
        hits = dataset.features.index[dataset.features[symbol_col].astype(str) == gene]
        if len(hits) > 0:
            return hits[0]
    raise KeyError(f"Gene '{gene}' not found by id or {symbol_col}")


def plot_gene_boxplot(
    dataset: AnnotatedDataset,
    gene: str,
    by: str = 'genotype',
    symbol_col: str = 'symbol',
    ax=None
):
    """Boxplot of one gene's expression grouped by a sample factor."""
    gene_id = find_gene(dataset, gene, symbol_col)

    df = pd.DataFrame({
        'expression': dataset.exprs.loc[gene_id].values,
        by: dataset.samples[by].astype(str).values,
    })

    fig, ax = _new_axes(ax, figsize=(5, 5))
    sns.boxplot(data=df, x=by, y='expression', ax=ax, color='lightgrey')
    sns.stripplot(data=df, x=by, y='expression', ax=ax, color='black', size=5)
    ax.set_ylabel('log expression')
    ax.set_title(gene if gene_id == gene else f"{gene} ({gene_id})")

    return fig


def _classical_mds(dist: np.ndarray, ndim: int = 2) -> Tuple[np.ndarray, np.ndarray]:
    """Classical (Torgerson) scaling of a distance matrix."""
    n = dist.shape[0]
    J = np.eye(n) - np.ones((n, n)) / n
    B = -0.5 * J @ (dist ** 2) @ J

    eigvals, eigvecs = np.linalg.eigh(B)
    order = np.argsort(eigvals)[::-1]
    eigvals = eigvals[order]
    eigvecs = eigvecs[:, order]

    positive = np.clip(eigvals, 0, None)
    coords = eigvecs[:, :ndim] * np.sqrt(positive[:ndim])
    var_explained = positive[:ndim] / positive.sum() if positive.sum() > 0 else np.zeros(ndim)

    return coords, var_explained


def mds_coordinates(
    exprs: pd.DataFrame,
    top: int = 500,
    gene_selection: str = 'pairwise'
) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    Two-dimensional MDS of the samples.

    Parameters
    ----------
    exprs : pd.DataFrame
        Log-expression matrix (genes x samples)
    top : int
        Number of genes used for each distance
    gene_selection : str
        'pairwise': distance between two samples is the root mean square of
        their `top` largest log-fold-changes. 'common': the `top` most
        variable genes are used for every pair.

    Returns
    -------
    Tuple[pd.DataFrame, np.ndarray]
        Coordinates (dim1, dim2) per sample and the proportion of variance
        explained by each dimension
    """
    x = exprs.values.astype(float)
    n_genes, n_samples = x.shape
    if n_samples < 3:
        raise ValueError("MDS needs at least 3 samples")
    top = min(top, n_genes)

    if gene_selection == 'pairwise':
        dist = np.zeros((n_samples, n_samples))
        for i in range(1, n_samples):
            for j in range(i):
                d2 = np.sort((x[:, i] - x[:, j]) ** 2)[n_genes - top:]
                dist[i, j] = dist[j, i] = np.sqrt(d2.mean())
        coords, var_explained = _classical_mds(dist)
    elif gene_selection == 'common':
        spread = ((x - x.mean(axis=1, keepdims=True)) ** 2).mean(axis=1)
        selected = np.argsort(-spread, kind='stable')[:top]
        pca = PCA(n_components=2)
        coords = pca.fit_transform(x[selected].T) / np.sqrt(top)
        var_explained = pca.explained_variance_ratio_
    else:
        raise ValueError(f"gene_selection must be 'pairwise' or 'common', got {gene_selection!r}")

    coords_df = pd.DataFrame(coords, index=exprs.columns, columns=['dim1', 'dim2'])
    return coords_df, np.asarray(var_explained)


def plot_mds(
    coords: pd.DataFrame,
    groups: pd.Series,
    var_explained: Optional[np.ndarray] = None,
    title: str = 'MDS',
    ax=None
):
    """Scatter of MDS coordinates coloured and labelled by a factor."""
    fig, ax = _new_axes(ax)

    df = coords.copy()
    df['group'] = groups.reindex(coords.index).astype(str).values
    sns.scatterplot(data=df, x='dim1', y='dim2', hue='group', s=80, ax=ax)
    for _, row in df.iterrows():
        ax.annotate(row['group'], (row['dim1'], row['dim2']),
                    fontsize=7, xytext=(3, 3), textcoords='offset points')

    if var_explained is not None:
        ax.set_xlabel(f"Leading logFC dim 1 ({100 * var_explained[0]:.0f}%)")
        ax.set_ylabel(f"Leading logFC dim 2 ({100 * var_explained[1]:.0f}%)")
    else:
        ax.set_xlabel('Leading logFC dim 1')
        ax.set_ylabel('Leading logFC dim 2')
    ax.set_title(title)

    return fig


def plot_pvalue_histogram(table: pd.DataFrame, title: str = 'P-values', bins: int = 50, ax=None):
    """Histogram of raw p-values; uniform under no true effect."""
    fig, ax = _new_axes(ax)

    ax.hist(table['pvalue'].values, bins=bins, range=(0, 1), color='steelblue', edgecolor='white')
    ax.set_xlabel('p-value')
    ax.set_ylabel('Genes')
    ax.set_title(title)

    return fig


def plot_volcano(
    table: pd.DataFrame,
    highlight: int = 10,
    names: Optional[str] = 'symbol',
    title: str = 'Volcano plot',
    ax=None
):
    """
    Log fold change against -log10 p-value.

    The `highlight` genes with the smallest p-values are marked and
    labelled with the `names` column (or the gene id).
    """
    fig, ax = _new_axes(ax)

    neglog = -np.log10(table['pvalue'].clip(lower=np.finfo(float).tiny))
    ax.scatter(table['logFC'], neglog, s=3, color='grey', alpha=0.6, rasterized=True)

    if highlight > 0:
        top = table.assign(_neglog=neglog).nsmallest(highlight, 'pvalue')
        ax.scatter(top['logFC'], top['_neglog'], s=12, color='crimson')
        for gene_id, row in top.iterrows():
            label = row[names] if names and names in top.columns and pd.notna(row[names]) else gene_id
            ax.annotate(str(label), (row['logFC'], row['_neglog']),
                        fontsize=7, xytext=(3, 3), textcoords='offset points')

    ax.set_xlabel('log fold change')
    ax.set_ylabel('-log10 p-value')
    ax.set_title(title)

    return fig


_VENN_CENTERS = {
    1: [(0.0, 0.0)],
    2: [(-0.55, 0.0), (0.55, 0.0)],
    3: [(-0.55, 0.35), (0.55, 0.35), (0.0, -0.55)],
}


def plot_venn(decisions: pd.DataFrame, include: str = 'both', title: str = 'Significant genes', ax=None):
    """
    Venn diagram of significant genes for up to three contrasts.

    Region counts come from venn_counts; the count of genes significant in
    no contrast is printed in the corner.
    """
    names = list(decisions.columns)
    if not 1 <= len(names) <= 3:
        raise ValueError(f"Venn diagram supports 1 to 3 contrasts, got {len(names)}")

    counts = venn_counts(decisions, include=include)
    centers = _VENN_CENTERS[len(names)]
    radius = 1.0

    fig, ax = _new_axes(ax, figsize=(6, 6))
    colors = sns.color_palette('Set2', len(names))
    for (cx, cy), name, color in zip(centers, names, colors):
        ax.add_patch(Circle((cx, cy), radius, facecolor=color, alpha=0.35, edgecolor='black'))
        label_y = cy + radius + 0.08 if cy >= 0 else cy - radius - 0.15
        ax.text(cx, label_y, name, ha='center', fontsize=10)

    # Label each region at the centroid of the grid points inside it
    grid = np.linspace(-2.2, 2.2, 221)
    gx, gy = np.meshgrid(grid, grid)
    inside = np.stack([(gx - cx) ** 2 + (gy - cy) ** 2 <= radius ** 2 for cx, cy in centers])

    for _, row in counts.iterrows():
        pattern = tuple(int(row[n]) for n in names)
        if not any(pattern):
            ax.text(-2.1, -2.1, f"Not significant: {row['Counts']}", fontsize=9)
            continue
        region = np.ones_like(gx, dtype=bool)
        for k, member in enumerate(pattern):
            region &= inside[k] if member else ~inside[k]
        if region.any():
            ax.text(gx[region].mean(), gy[region].mean(), str(row['Counts']),
                    ha='center', va='center', fontsize=11)

    ax.set_xlim(-2.3, 2.3)
    ax.set_ylim(-2.3, 2.3)
    ax.set_aspect('equal')
    ax.axis('off')
    ax.set_title(title)

    return fig
