"""
Gene-wise Linear Models
=======================

Ordinary least squares fit of every gene against a common design matrix,
followed by re-parameterisation into contrasts. All genes are fitted at
once through a single QR decomposition of the design; the numbers equal
those of fitting each gene separately.
"""

from dataclasses import dataclass, replace
from typing import Optional
import logging

import numpy as np
import pandas as pd

from ..exceptions import AlignmentError, DesignError, MissingValueError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinearModelFit:
    """Result of lm_fit / contrasts_fit.

    Attributes
    ----------
    coefficients : pd.DataFrame
        genes x coefficients (group means, or contrasts after contrasts_fit)
    stdev_unscaled : pd.DataFrame
        genes x coefficients; standard error divided by sigma
    sigma : pd.Series
        Residual standard deviation per gene
    df_residual : pd.Series
        Residual degrees of freedom per gene
    cov_coefficients : pd.DataFrame
        Unscaled covariance of the coefficients
    amean : pd.Series
        Average log-expression per gene
    design : pd.DataFrame
        Design matrix used for the fit
    genes : pd.DataFrame, optional
        Feature annotations aligned with the rows
    contrasts : pd.DataFrame, optional
        Contrast matrix applied by contrasts_fit
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    cov_coefficients: pd.DataFrame
    amean: pd.Series
    design: pd.DataFrame
    genes: Optional[pd.DataFrame] = None
    contrasts: Optional[pd.DataFrame] = None

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]

    @property
    def coef_names(self) -> list:
        return list(self.coefficients.columns)


def lm_fit(
    exprs: pd.DataFrame,
    design: pd.DataFrame,
    genes: Optional[pd.DataFrame] = None
) -> LinearModelFit:
    """
    Fit a linear model for each gene.

    Parameters
    ----------
    exprs : pd.DataFrame
        Log-expression matrix (genes x samples)
    design : pd.DataFrame
        Design matrix (samples x coefficients)
    genes : pd.DataFrame, optional
        Feature annotations carried along with the fit

    Returns
    -------
    LinearModelFit
        Per-gene coefficients, residual standard deviations and degrees of freedom
    """
    if set(design.index) != set(exprs.columns) or len(design.index) != exprs.shape[1]:
        raise AlignmentError("Design rows must match the expression matrix columns")
    design = design.loc[exprs.columns]

    Y = exprs.values.astype(float)
    if not np.isfinite(Y).all():
        n_bad = int((~np.isfinite(Y)).sum())
        raise MissingValueError(f"Expression matrix contains {n_bad} non-finite values")

    X = design.values.astype(float)
    n_samples, n_coef = X.shape

    if np.linalg.matrix_rank(X) < n_coef:
        raise DesignError(f"Design matrix is not of full rank ({n_coef} columns)")

    df_residual = n_samples - n_coef
    if df_residual < 1:
        raise DesignError("No residual degrees of freedom: need more samples than coefficients")

    logger.info(f"Fitting linear models: {Y.shape[0]} genes, {n_samples} samples, "
                f"{n_coef} coefficients")

    Q, R = np.linalg.qr(X)
    beta = np.linalg.solve(R, Q.T @ Y.T).T

    residuals = Y - beta @ X.T
    rss = np.sum(residuals ** 2, axis=1)
    sigma = np.sqrt(rss / df_residual)

    R_inv = np.linalg.inv(R)
    xtx_inv = R_inv @ R_inv.T
    stdev_unscaled = np.tile(np.sqrt(np.diag(xtx_inv)), (Y.shape[0], 1))

    coef_names = list(design.columns)
    genes_idx = exprs.index

    if genes is not None:
        genes = genes.loc[genes_idx]

    return LinearModelFit(
        coefficients=pd.DataFrame(beta, index=genes_idx, columns=coef_names),
        stdev_unscaled=pd.DataFrame(stdev_unscaled, index=genes_idx, columns=coef_names),
        sigma=pd.Series(sigma, index=genes_idx, name='sigma'),
        df_residual=pd.Series(float(df_residual), index=genes_idx, name='df_residual'),
        cov_coefficients=pd.DataFrame(xtx_inv, index=coef_names, columns=coef_names),
        amean=pd.Series(Y.mean(axis=1), index=genes_idx, name='AveExpr'),
        design=design,
        genes=genes,
    )


def contrasts_fit(fit: LinearModelFit, contrasts: pd.DataFrame) -> LinearModelFit:
    """
    Re-express a fit in terms of contrasts of its coefficients.

    Parameters
    ----------
    fit : LinearModelFit
        Output of lm_fit
    contrasts : pd.DataFrame
        coefficients x contrasts matrix (see make_contrasts)

    Returns
    -------
    LinearModelFit
        Fit whose coefficients are the contrasts
    """
    if fit.contrasts is not None:
        raise DesignError("Fit already has contrasts applied")

    missing = set(contrasts.index) ^ set(fit.coef_names)
    if missing:
        raise DesignError(
            f"Contrast rows {list(contrasts.index)} do not match coefficients {fit.coef_names}"
        )
    C = contrasts.loc[fit.coef_names].values.astype(float)

    coefficients = fit.coefficients.values @ C

    V = fit.cov_coefficients.values
    cov = C.T @ V @ C
    stdev_unscaled = np.tile(np.sqrt(np.diag(cov)), (fit.n_genes, 1))

    names = list(contrasts.columns)
    idx = fit.coefficients.index

    logger.info(f"Applied {len(names)} contrasts: {names}")

    return replace(
        fit,
        coefficients=pd.DataFrame(coefficients, index=idx, columns=names),
        stdev_unscaled=pd.DataFrame(stdev_unscaled, index=idx, columns=names),
        cov_coefficients=pd.DataFrame(cov, index=names, columns=names),
        contrasts=contrasts.loc[fit.coef_names],
    )
