"""
Empirical Bayes Moderation
==========================

Moderated t-statistics for gene-wise linear models (Smyth 2004):

1. Fit a scaled inverse chi-square prior to the residual variances
2. Shrink each gene's variance towards the prior
3. Moderated t-statistics, p-values and log-odds of differential expression
4. Multiple-testing adjusted significance calls per contrast

References
----------
Smyth, G. K. (2004). Linear models and empirical Bayes methods for assessing
differential expression in microarray experiments. Statistical Applications
in Genetics and Molecular Biology, 3(1), Article 3.
"""

from dataclasses import dataclass
from collections import Counter
from itertools import product
from typing import Optional, Tuple
import logging
import warnings

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from .linear_model import LinearModelFit

logger = logging.getLogger(__name__)


def trigamma_inverse(x) -> np.ndarray:
    """
    Solve trigamma(y) = x for y by Newton iteration.

    Parameters
    ----------
    x : array-like
        Positive values

    Returns
    -------
    np.ndarray
        y with trigamma(y) == x
    """
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.full_like(x, np.nan)

    large = x > 1e7
    small = (x < 1e-6) & (x >= 0)
    y[large] = 1 / np.sqrt(x[large])
    y[small] = 1 / x[small]

    todo = (x >= 1e-6) & (x <= 1e7)
    if todo.any():
        xt = x[todo]
        yt = 0.5 + 1 / xt
        for _ in range(50):
            tri = polygamma(1, yt)
            dif = tri * (1 - tri / xt) / polygamma(2, yt)
            yt = yt + dif
            if np.max(-dif / yt) < 1e-8:
                break
        else:
            warnings.warn("trigamma_inverse: iteration limit exceeded")
        y[todo] = yt

    return y


def fit_f_dist(s2, df) -> Tuple[float, float]:
    """
    Moment estimation of the prior for gene-wise variances.

    The variances are modelled as s2 ~ s2_prior * F(df, df_prior).

    Parameters
    ----------
    s2 : array-like
        Residual variances
    df : float or array-like
        Residual degrees of freedom

    Returns
    -------
    Tuple[float, float]
        (s2_prior, df_prior); df_prior is inf when the variances show no
        more spread than expected from df alone
    """
    x = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), x.shape)

    ok = np.isfinite(x) & np.isfinite(df) & (df > 1e-15)
    x = x[ok]
    df = df[ok]
    n = x.size

    if n == 0:
        return np.nan, np.nan
    if n == 1:
        return float(x[0]), 0.0

    x = np.maximum(x, 0)
    m = np.median(x)
    if m == 0:
        warnings.warn("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(df / 2) + np.log(df / 2)
    emean = e.mean()
    evar = np.sum((e - emean) ** 2) / (n - 1)
    evar = evar - np.mean(polygamma(1, df / 2))

    if evar > 0:
        df_prior = float(2 * trigamma_inverse(evar)[0])
        s2_prior = float(np.exp(emean + digamma(df_prior / 2) - np.log(df_prior / 2)))
    else:
        df_prior = np.inf
        s2_prior = float(np.exp(emean))

    return s2_prior, df_prior


def squeeze_var(s2, df, s2_prior: float, df_prior: float) -> np.ndarray:
    """
    Posterior variances: weighted average of gene variance and prior.

    The result always lies between `s2` and `s2_prior`.
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.asarray(df, dtype=float)

    if np.isinf(df_prior):
        return np.full_like(s2, s2_prior)
    return (df * s2 + df_prior * s2_prior) / (df + df_prior)


def _tmixture_vector(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float,
    v0_lim: Optional[Tuple[float, float]] = None
) -> float:
    """Estimate the prior variance of non-zero coefficients from the top t-statistics."""
    ok = np.isfinite(tstat)
    tstat, stdev_unscaled, df = tstat[ok], stdev_unscaled[ok], df[ok]
    n_genes = tstat.size

    ntarget = int(np.ceil(proportion / 2 * n_genes))
    if ntarget < 1:
        return np.nan

    p = max(ntarget / n_genes, proportion)

    tstat = np.abs(tstat)
    max_df = np.max(df)
    lower = df < max_df
    if lower.any():
        tail_p = stats.t.sf(tstat[lower], df[lower])
        tstat = tstat.copy()
        tstat[lower] = stats.t.isf(tail_p, max_df)

    order = np.argsort(-tstat, kind='stable')[:ntarget]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2

    r = np.arange(1, ntarget + 1)
    p0 = 2 * stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / n_genes - (1 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if pos.any():
        qtarget = stats.t.isf(ptarget[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])

    return float(np.mean(v0))


@dataclass(frozen=True)
class ModeratedFit:
    """Empirical Bayes statistics for every gene and coefficient."""

    fit: LinearModelFit
    s2_prior: float
    df_prior: float
    s2_post: pd.Series
    df_total: pd.Series
    t: pd.DataFrame
    p_value: pd.DataFrame
    lods: pd.DataFrame
    var_prior: pd.Series
    proportion: float

    @property
    def coefficients(self) -> pd.DataFrame:
        return self.fit.coefficients

    @property
    def coef_names(self) -> list:
        return self.fit.coef_names


def ebayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0)
) -> ModeratedFit:
    """
    Empirical Bayes moderation of the standard errors.

    Parameters
    ----------
    fit : LinearModelFit
        Output of lm_fit or contrasts_fit
    proportion : float
        Assumed proportion of differentially expressed genes (B-statistic)
    stdev_coef_lim : Tuple[float, float]
        Limits on the prior standard deviation of non-zero log fold changes

    Returns
    -------
    ModeratedFit
        Moderated t-statistics, p-values and log-odds
    """
    if not 0 < proportion < 1:
        raise ValueError(f"proportion must be in (0, 1), got {proportion}")

    s2 = fit.sigma.values ** 2
    df_residual = fit.df_residual.values

    s2_prior, df_prior = fit_f_dist(s2, df_residual)
    s2_post = squeeze_var(s2, df_residual, s2_prior, df_prior)

    if np.isinf(df_prior):
        logger.info(f"EB prior: df_prior=Inf, s2_prior={s2_prior:.6g}")
    else:
        shrink = df_prior / (df_prior + np.median(df_residual))
        logger.info(f"EB prior: df_prior={df_prior:.2f}, s2_prior={s2_prior:.6g} "
                    f"({100 * shrink:.1f}% weight on prior)")

    df_pooled = np.sum(df_residual)
    df_total = np.minimum(df_residual + df_prior, df_pooled)

    coef = fit.coefficients.values
    stdev_unscaled = fit.stdev_unscaled.values
    t = coef / stdev_unscaled / np.sqrt(s2_post)[:, np.newaxis]
    p_value = 2 * stats.t.sf(np.abs(t), df_total[:, np.newaxis])

    # Log-odds of differential expression
    var_prior_lim = np.array(stdev_coef_lim) ** 2 / s2_prior
    var_prior = np.array([
        _tmixture_vector(t[:, j], stdev_unscaled[:, j], df_total, proportion, var_prior_lim)
        for j in range(t.shape[1])
    ])
    var_prior[np.isnan(var_prior)] = 1 / s2_prior

    r = (stdev_unscaled ** 2 + var_prior[np.newaxis, :]) / stdev_unscaled ** 2
    t2 = t ** 2
    if np.isinf(df_prior) or df_prior > 1e6:
        kernel = t2 * (1 - 1 / r) / 2
    else:
        dft = df_total[:, np.newaxis]
        kernel = (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft))
    lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    idx = fit.coefficients.index
    cols = fit.coef_names

    return ModeratedFit(
        fit=fit,
        s2_prior=s2_prior,
        df_prior=df_prior,
        s2_post=pd.Series(s2_post, index=idx, name='s2_post'),
        df_total=pd.Series(df_total, index=idx, name='df_total'),
        t=pd.DataFrame(t, index=idx, columns=cols),
        p_value=pd.DataFrame(p_value, index=idx, columns=cols),
        lods=pd.DataFrame(lods, index=idx, columns=cols),
        var_prior=pd.Series(var_prior, index=cols, name='var_prior'),
        proportion=proportion,
    )


def adjust_pvalues(pvalues, method: str = 'fdr_bh') -> np.ndarray:
    """Multiple-testing adjustment; method 'none' returns the input."""
    pvalues = np.asarray(pvalues, dtype=float)
    if method == 'none':
        return pvalues.copy()
    _, padj, _, _ = multipletests(pvalues, method=method)
    return padj


def decide_tests(
    moderated: ModeratedFit,
    adjust_method: str = 'fdr_bh',
    p_value: float = 0.05,
    lfc: float = 0.0
) -> pd.DataFrame:
    """
    Classify each gene as up (1), down (-1) or not significant (0).

    P-values are adjusted separately for each contrast.

    Parameters
    ----------
    moderated : ModeratedFit
        Output of ebayes
    adjust_method : str
        statsmodels multipletests method, or 'none'
    p_value : float
        Threshold on adjusted p-values
    lfc : float
        Minimum absolute log fold change

    Returns
    -------
    pd.DataFrame
        genes x contrasts matrix of -1/0/1
    """
    coef = moderated.coefficients
    calls = pd.DataFrame(0, index=coef.index, columns=coef.columns, dtype=int)

    for name in coef.columns:
        padj = adjust_pvalues(moderated.p_value[name].values, adjust_method)
        significant = (padj < p_value) & (np.abs(coef[name].values) >= lfc)
        calls[name] = (np.sign(coef[name].values) * significant).astype(int)

    return calls


def summarize_decisions(decisions: pd.DataFrame) -> pd.DataFrame:
    """Count Down / NotSig / Up calls per contrast."""
    summary = pd.DataFrame(
        {
            name: [
                int((decisions[name] == -1).sum()),
                int((decisions[name] == 0).sum()),
                int((decisions[name] == 1).sum()),
            ]
            for name in decisions.columns
        },
        index=['Down', 'NotSig', 'Up'],
    )
    return summary


def venn_counts(decisions: pd.DataFrame, include: str = 'both') -> pd.DataFrame:
    """
    Count genes for every combination of calls across contrasts.

    Parameters
    ----------
    decisions : pd.DataFrame
        Output of decide_tests
    include : str
        'both', 'up' or 'down': which calls count as membership

    Returns
    -------
    pd.DataFrame
        One row per 0/1 membership pattern (last contrast varying fastest)
        with a 'Counts' column
    """
    if include == 'both':
        member = decisions != 0
    elif include == 'up':
        member = decisions > 0
    elif include == 'down':
        member = decisions < 0
    else:
        raise ValueError(f"include must be 'both', 'up' or 'down', got {include!r}")

    names = list(decisions.columns)
    patterns = list(product([0, 1], repeat=len(names)))
    observed = Counter(map(tuple, member.astype(int).values.tolist()))

    rows = []
    for pattern in patterns:
        rows.append(list(pattern) + [observed.get(pattern, 0)])

    return pd.DataFrame(rows, columns=names + ['Counts'])
