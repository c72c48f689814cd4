# src/celalign/de_utils.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import digamma, polygamma

from .errors import DataShapeError, NumericalError
from .records import (
    CELL_LINE,
    TUMOR,
    ClusterAssignment,
    DEGeneSelection,
    DETest,
    DifferentialGeneScore,
    MultiGroupTest,
    NoSignal,
    PairwiseTest,
)

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Empirical-Bayes variance moderation (limma-trend style)
# -----------------------------------------------------------------------------
def _trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y (Newton iteration)."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1.0 - tri / x) / float(polygamma(2, y))
        y += dif
        if -dif / y < 1e-8:
            break
    else:
        LOGGER.warning("trigamma inversion did not converge (x=%.3g)", x)
    return y


def _trend_fit(e: np.ndarray, covariate: Optional[np.ndarray], max_degree: int = 3) -> Tuple[np.ndarray, int]:
    """Mean of `e`, optionally as a polynomial trend in `covariate`."""
    if covariate is None:
        return np.full_like(e, e.mean()), 1

    cov = np.asarray(covariate, dtype=float)
    sd = cov.std()
    n_unique = np.unique(cov).size
    if not np.isfinite(sd) or sd < 1e-8 or n_unique < 3:
        return np.full_like(e, e.mean()), 1

    z = (cov - cov.mean()) / sd
    deg = int(min(max_degree, n_unique - 1, e.size - 2))
    coef = np.polynomial.polynomial.polyfit(z, e, deg)
    return np.polynomial.polynomial.polyval(z, coef), deg + 1


def fit_f_dist(
    s2: np.ndarray,
    df: float,
    covariate: Optional[np.ndarray] = None,
) -> Tuple[float, np.ndarray]:
    """
    Moment estimate of the scaled-F prior on gene variances.

    Returns (prior_df, prior_var); prior_var is per gene when a trend
    covariate is given. prior_df is inf when the observed spread of
    log-variances is fully explained by sampling noise.
    """
    x = np.maximum(np.asarray(s2, dtype=float), 0.0)
    m = float(np.median(x))
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - digamma(df / 2.0) + np.log(df / 2.0)
    emean, n_coef = _trend_fit(e, covariate)

    n = e.size
    if n - n_coef < 1:
        return np.inf, np.exp(emean)
    evar = float(np.sum((e - emean) ** 2) / (n - n_coef))
    evar -= float(polygamma(1, df / 2.0))

    if evar > 0:
        d0 = 2.0 * _trigamma_inverse(evar)
        s02 = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    else:
        d0 = np.inf
        s02 = np.exp(emean)
    return float(d0), np.asarray(s02, dtype=float)


def squeeze_var(
    s2: np.ndarray,
    df: float,
    covariate: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, float]:
    """Posterior gene variances shrunk toward the (trended) prior."""
    d0, s02 = fit_f_dist(s2, df, covariate)
    if not np.isfinite(d0):
        return np.broadcast_to(s02, np.shape(s2)).astype(float), d0
    post = (d0 * s02 + df * np.asarray(s2, dtype=float)) / (d0 + df)
    return post, d0


def moderated_group_stats(
    X: np.ndarray,
    groups: np.ndarray,
    covariate: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, float]:
    """
    One-way linear model per gene with moderated variances.

    X is samples x genes. With two groups returns |moderated t|, with more
    returns the moderated F statistic of "all group means equal".
    """
    levels, inverse, counts = np.unique(groups, return_inverse=True, return_counts=True)
    n, G = X.shape[0], levels.size
    if G < 2:
        raise ValueError("moderated_group_stats needs at least two groups")

    df_res = n - G
    if df_res < 1:
        raise NumericalError(
            f"Degenerate variance: {n} samples in {G} clusters leave no residual degrees of freedom"
        )

    means = np.vstack([X[inverse == i].mean(axis=0) for i in range(G)])
    resid = X - means[inverse]
    s2 = np.sum(resid ** 2, axis=0) / df_res

    s2_post, d0 = squeeze_var(s2, float(df_res), covariate)

    if G == 2:
        se = np.sqrt(s2_post * (1.0 / counts[0] + 1.0 / counts[1]))
        stat = np.abs((means[1] - means[0]) / se)
    else:
        grand = X.mean(axis=0)
        ss_between = np.sum(counts[:, None] * (means - grand) ** 2, axis=0)
        stat = ss_between / (G - 1) / s2_post

    return stat, d0


# -----------------------------------------------------------------------------
# DifferentialStateRanker
# -----------------------------------------------------------------------------
def select_test(labels: pd.Series) -> DETest:
    levels = tuple(sorted(int(v) for v in pd.unique(labels.dropna())))
    if len(levels) <= 1:
        return NoSignal(n_clusters=len(levels))
    if len(levels) == 2:
        return PairwiseTest(groups=(levels[0], levels[1]))
    return MultiGroupTest(groups=levels)


def rank_differential_genes(
    expr: pd.DataFrame,
    clusters: ClusterAssignment,
    *,
    covariate: Optional[pd.Series] = None,
) -> DifferentialGeneScore:
    """
    Score every gene by how much it differs across the clusters of one domain.

    Larger scores are always more differential. A single-cluster domain
    yields missing scores for all genes.
    """
    domain = clusters.domain
    labels = clusters.labels
    if not pd.Index(labels.index).sort_values().equals(pd.Index(expr.index).sort_values()):
        raise DataShapeError(
            f"{domain}: cluster labels cover {labels.size} samples, "
            f"expression has {expr.shape[0]} (or different ids)"
        )
    labels = labels.reindex(expr.index)

    test = select_test(labels)
    genes = pd.Index(expr.columns)

    if isinstance(test, NoSignal):
        LOGGER.warning(
            "%s: %d cluster(s); differential scores are missing for all %d genes",
            domain,
            test.n_clusters,
            genes.size,
        )
        scores = pd.Series(np.nan, index=genes, name="gene_stat", dtype=float)
        return DifferentialGeneScore(domain=domain, test=test, scores=scores)

    cov = None
    if covariate is not None:
        cov = covariate.reindex(genes).to_numpy(dtype=float)
        if np.isnan(cov).any():
            raise DataShapeError(f"{domain}: trend covariate does not cover every gene")

    stat, d0 = moderated_group_stats(
        expr.to_numpy(dtype=float),
        labels.to_numpy(),
        covariate=cov,
    )
    kind = "moderated |t|" if isinstance(test, PairwiseTest) else "moderated F"
    LOGGER.info(
        "%s: %s across %d clusters (prior df=%.2f)",
        domain,
        kind,
        len(test.groups),
        d0,
    )
    scores = pd.Series(stat, index=genes, name="gene_stat", dtype=float)
    return DifferentialGeneScore(domain=domain, test=test, scores=scores, prior_df=d0)


# -----------------------------------------------------------------------------
# DEGeneSetSelector
# -----------------------------------------------------------------------------
def combine_de_rankings(
    tumor: DifferentialGeneScore,
    cell_line: DifferentialGeneScore,
) -> pd.DataFrame:
    """
    Per-gene table of both domains' scores, dense ranks and the best rank.
    A rank missing in one domain is ignored; missing in both leaves best_rank NaN.
    """
    if not tumor.scores.index.equals(cell_line.scores.index):
        raise DataShapeError("Differential scores of the two domains cover different genes")

    table = pd.DataFrame(
        {
            f"gene_stat_{TUMOR}": tumor.scores.to_numpy(),
            f"gene_stat_{CELL_LINE}": cell_line.scores.to_numpy(),
            f"{TUMOR}_rank": tumor.dense_rank().to_numpy(),
            f"{CELL_LINE}_rank": cell_line.dense_rank().to_numpy(),
        },
        index=pd.Index(tumor.scores.index, name="Gene"),
    )
    table["best_rank"] = table[[f"{TUMOR}_rank", f"{CELL_LINE}_rank"]].min(axis=1, skipna=True)
    return table


def select_alignment_genes(
    tumor: DifferentialGeneScore,
    cell_line: DifferentialGeneScore,
    top_k: int,
    gene_stats: Optional[pd.DataFrame] = None,
) -> DEGeneSelection:
    """Genes ranked strictly better than `top_k` in either domain."""
    table = combine_de_rankings(tumor, cell_line)
    table["selected"] = table["best_rank"].lt(top_k)

    if gene_stats is not None:
        table = table.join(gene_stats.set_index("Gene"), how="left")

    genes = frozenset(table.index[table["selected"]].astype(str))
    LOGGER.info(
        "Alignment gene set: %d / %d genes with best rank < %d",
        len(genes),
        table.shape[0],
        top_k,
    )
    return DEGeneSelection(table=table, genes=genes, top_k=int(top_k))
