# src/celalign/embedding_utils.py
from __future__ import annotations

import logging

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from sklearn.metrics import pairwise_distances

from .config import AlignmentParams
from .errors import DataShapeError, NumericalError
from .gene_utils import impute_missing
from .records import CELL_LINE, TUMOR, ClusterAssignment, DomainEmbedding

LOGGER = logging.getLogger(__name__)

UMAP_NEIGHBORS_KEY = "umap_neighbors"
CLUSTER_NEIGHBORS_KEY = "cluster_neighbors"


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _safe_n_comps(requested: int, n_obs: int, n_vars: int, label: str) -> int:
    # arpack needs n_comps < min(n_obs, n_vars)
    limit = min(n_obs, n_vars) - 1
    if limit < 1:
        raise NumericalError(
            f"{label}: cannot compute PCA on a {n_obs} x {n_vars} matrix"
        )
    if requested > limit:
        LOGGER.warning(
            "%s: n_pc_dims=%d exceeds what a %d x %d matrix supports; using %d",
            label,
            requested,
            n_obs,
            n_vars,
            limit,
        )
        return limit
    return requested


def _safe_n_neighbors(requested: int, n_obs: int, label: str, what: str) -> int:
    if n_obs < 3:
        raise NumericalError(f"{label}: {n_obs} samples are too few for a {what} graph")
    if requested >= n_obs:
        LOGGER.warning(
            "%s: %s neighbors=%d >= n_samples=%d; using %d",
            label,
            what,
            requested,
            n_obs,
            n_obs - 1,
        )
        return n_obs - 1
    return requested


def center_genes(expr: pd.DataFrame) -> pd.DataFrame:
    """Subtract each gene's mean (no scaling)."""
    return expr - expr.mean(axis=0)


# ---------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------
def build_embedding(
    expr: pd.DataFrame,
    params: AlignmentParams,
    *,
    domain: str,
) -> DomainEmbedding:
    """
    Center genes, run PCA and a 2-D UMAP on one sample x gene matrix.

    The AnnData used for scanpy is local to this call; the returned record
    holds copies of the centered matrix and both embeddings.
    """
    X = impute_missing(expr, label=domain)
    centered = center_genes(X)

    n_obs, n_vars = centered.shape
    n_comps = _safe_n_comps(params.n_pc_dims, n_obs, n_vars, domain)

    adata = ad.AnnData(
        X=centered.to_numpy(dtype=np.float64),
        obs=pd.DataFrame(index=centered.index.astype(str)),
        var=pd.DataFrame(index=centered.columns.astype(str)),
    )

    LOGGER.info("%s: PCA with %d components on %d x %d", domain, n_comps, n_obs, n_vars)
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        zero_center=True,
        svd_solver="arpack",
        random_state=params.random_state,
    )

    n_neighbors = _safe_n_neighbors(params.umap_n_neighbors, n_obs, domain, "UMAP")
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        use_rep="X_pca",
        metric=params.distance_metric,
        key_added=UMAP_NEIGHBORS_KEY,
        random_state=params.random_state,
    )
    sc.tl.umap(
        adata,
        min_dist=params.umap_min_dist,
        neighbors_key=UMAP_NEIGHBORS_KEY,
        random_state=params.random_state,
    )

    pcs = [f"PC_{i + 1}" for i in range(n_comps)]
    pca = pd.DataFrame(np.asarray(adata.obsm["X_pca"]), index=centered.index, columns=pcs)
    umap = pd.DataFrame(
        np.asarray(adata.obsm["X_umap"]),
        index=centered.index,
        columns=["UMAP_1", "UMAP_2"],
    )

    return DomainEmbedding(
        domain=domain,
        centered=centered,
        pca=pca,
        umap=umap,
        variance_ratio=np.asarray(adata.uns["pca"]["variance_ratio"]),
    )


# ---------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------
def assign_clusters(embedding: DomainEmbedding, params: AlignmentParams) -> ClusterAssignment:
    """Leiden clustering on a k-NN graph of the PCA coordinates."""
    label = embedding.domain
    adata = ad.AnnData(obs=pd.DataFrame(index=embedding.sample_ids.astype(str)))
    adata.obsm["X_pca"] = embedding.pca.to_numpy(dtype=np.float64)

    k = _safe_n_neighbors(params.cluster_k, adata.n_obs, label, "clustering")
    sc.pp.neighbors(
        adata,
        n_neighbors=k,
        use_rep="X_pca",
        key_added=CLUSTER_NEIGHBORS_KEY,
        random_state=params.random_state,
    )
    sc.tl.leiden(
        adata,
        resolution=float(params.cluster_resolution),
        neighbors_key=CLUSTER_NEIGHBORS_KEY,
        key_added="cluster",
        random_state=params.random_state,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )

    labels = pd.Series(
        adata.obs["cluster"].astype(int).to_numpy(),
        index=embedding.sample_ids,
        name="cluster",
    )
    sizes = labels.value_counts().to_numpy()
    LOGGER.info(
        "%s: %d clusters at resolution %.2f | min/med/max size=%d/%d/%d",
        label,
        labels.nunique(),
        params.cluster_resolution,
        int(sizes.min()),
        int(np.median(sizes)),
        int(sizes.max()),
    )
    return ClusterAssignment(domain=label, labels=labels, resolution=float(params.cluster_resolution))


# ---------------------------------------------------------------------
# Distances in embedding space
# ---------------------------------------------------------------------
def tumor_cell_line_distances(coords: pd.DataFrame, domains: pd.Series) -> pd.DataFrame:
    """Euclidean distance of every tumor (rows) to every cell line (columns)."""
    domains = domains.reindex(coords.index)
    if domains.isna().any():
        raise DataShapeError("Domain labels do not cover every embedded sample")

    tumors = coords.loc[domains == TUMOR]
    lines = coords.loc[domains == CELL_LINE]
    d = pairwise_distances(tumors.to_numpy(), lines.to_numpy(), metric="euclidean")
    return pd.DataFrame(d, index=tumors.index, columns=lines.index)


def matched_group_distance(
    tumor_coords: pd.DataFrame,
    cell_line_coords: pd.DataFrame,
    tumor_groups: pd.Series,
    cell_line_groups: pd.Series,
    metric: str = "euclidean",
) -> float:
    """
    Mean distance between tumors and cell lines that share a biological
    group label (e.g. tissue), averaged over all matched pairs.
    """
    tg = tumor_groups.reindex(tumor_coords.index)
    cg = cell_line_groups.reindex(cell_line_coords.index)

    total = 0.0
    n_pairs = 0
    for group in pd.unique(tg.dropna()):
        t = tumor_coords.loc[tg == group]
        c = cell_line_coords.loc[cg == group]
        if t.empty or c.empty:
            continue
        d = pairwise_distances(t.to_numpy(), c.to_numpy(), metric=metric)
        total += float(d.sum())
        n_pairs += d.size

    if n_pairs == 0:
        raise DataShapeError("No biological group is shared between tumors and cell lines")
    return total / n_pairs
