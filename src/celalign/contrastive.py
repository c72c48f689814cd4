# src/celalign/contrastive.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from .errors import DataShapeError, NumericalError
from .gene_utils import impute_missing
from .records import ClusterAssignment, ContrastiveBasis, DomainEmbedding

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _cluster_mean_residuals(centered: pd.DataFrame, clusters: ClusterAssignment) -> np.ndarray:
    """Subtract from every sample the mean profile of its own cluster."""
    labels = clusters.labels.reindex(centered.index)
    if labels.isna().any():
        raise DataShapeError(
            f"{clusters.domain}: {int(labels.isna().sum())} samples have no cluster label"
        )
    cluster_means = centered.groupby(labels.to_numpy()).transform("mean")
    return centered.to_numpy(dtype=float) - cluster_means.to_numpy(dtype=float)


# ---------------------------------------------------------------------
# Contrastive basis
# ---------------------------------------------------------------------
def compute_contrastive_basis(
    tumor: DomainEmbedding,
    cell_line: DomainEmbedding,
    tumor_clusters: ClusterAssignment,
    cell_line_clusters: ClusterAssignment,
    *,
    fast_cpca: Optional[int] = 10,
    random_state: int = 0,
) -> ContrastiveBasis:
    """
    Directions of gene space with more within-cluster variance in tumors
    than in cell lines.

    Covariances are taken after removing each domain's cluster means, so
    the subtype structure itself does not enter the contrast.
    """
    if not tumor.centered.columns.equals(cell_line.centered.columns):
        raise DataShapeError("Centered matrices of the two domains have different gene columns")

    genes = tumor.centered.columns
    r_tumor = _cluster_mean_residuals(tumor.centered, tumor_clusters)
    r_line = _cluster_mean_residuals(cell_line.centered, cell_line_clusters)

    if r_tumor.shape[0] < 2 or r_line.shape[0] < 2:
        raise NumericalError("Each domain needs at least two samples for a covariance")

    cov_diff = np.cov(r_tumor, rowvar=False) - np.cov(r_line, rowvar=False)
    cov_diff = np.atleast_2d(cov_diff)

    try:
        if fast_cpca is None:
            evals, evecs = np.linalg.eigh(cov_diff)
            order = np.argsort(evals)[::-1]
            vectors = evecs[:, order]
            magnitudes = evals[order]
            mode = "full"
        else:
            n_comp = min(int(fast_cpca), cov_diff.shape[0])
            if n_comp < fast_cpca:
                LOGGER.warning(
                    "fast_cpca=%d exceeds the %d genes available; computing %d directions",
                    fast_cpca,
                    cov_diff.shape[0],
                    n_comp,
                )
            pca = PCA(n_components=n_comp, svd_solver="randomized", random_state=random_state)
            pca.fit(cov_diff)
            vectors = pca.components_.T
            magnitudes = pca.singular_values_
            mode = "fast"
    except np.linalg.LinAlgError as e:
        raise NumericalError(f"Contrastive decomposition failed: {e}") from e

    cols = [f"cPC_{i + 1}" for i in range(vectors.shape[1])]
    LOGGER.info(
        "Contrastive basis (%s): %d directions, leading magnitudes %s",
        mode,
        len(cols),
        np.array2string(np.asarray(magnitudes[:4]), precision=3),
    )
    return ContrastiveBasis(
        vectors=pd.DataFrame(vectors, index=genes, columns=cols),
        magnitudes=np.asarray(magnitudes, dtype=float),
        mode=mode,
    )


def select_removal_basis(basis: ContrastiveBasis, indices: Sequence[int]) -> ContrastiveBasis:
    """Keep the directions at the given zero-based indices (the confounds)."""
    idx = [int(i) for i in indices]
    if not idx:
        raise NumericalError("No contrastive directions selected for removal")
    if max(idx) >= basis.n_directions:
        raise NumericalError(
            f"Requested contrastive directions {idx} but only {basis.n_directions} "
            "were computed; reduce the requested dimensions"
        )

    sub = basis.vectors.iloc[:, idx]
    rank = int(np.linalg.matrix_rank(sub.to_numpy()))
    if rank < len(idx):
        raise NumericalError(
            f"Removal basis is rank deficient (rank {rank} for {len(idx)} directions); "
            "reduce the requested dimensions"
        )
    return ContrastiveBasis(vectors=sub, magnitudes=basis.magnitudes[idx], mode=basis.mode)


# ---------------------------------------------------------------------
# Regression removal
# ---------------------------------------------------------------------
def remove_directions(expr: pd.DataFrame, removal: ContrastiveBasis, *, label: str = "") -> pd.DataFrame:
    """
    Residual of regressing every sample profile (no intercept) on the
    removal basis; the result has no component along any basis vector.
    """
    if not pd.Index(expr.columns).equals(removal.vectors.index):
        raise DataShapeError(
            f"{label or 'expression'}: gene columns differ from the contrastive basis genes"
        )

    X = impute_missing(expr, label=label).to_numpy(dtype=float)
    V = removal.vectors.to_numpy(dtype=float)

    try:
        coef, _, rank, _ = np.linalg.lstsq(V, X.T, rcond=None)
    except np.linalg.LinAlgError as e:
        raise NumericalError(f"Projection regression failed: {e}") from e
    if rank < V.shape[1]:
        raise NumericalError(f"Removal basis is rank deficient (rank {rank} for {V.shape[1]} directions)")

    resid = X - (V @ coef).T
    return pd.DataFrame(resid, index=expr.index, columns=expr.columns)
