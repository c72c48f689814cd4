# tests/test_embedding_utils.py

import logging

import numpy as np
import pandas as pd
import pytest

from celalign.config import AlignmentParams
from celalign.embedding_utils import (
    assign_clusters,
    build_embedding,
    center_genes,
    matched_group_distance,
    tumor_cell_line_distances,
)
from celalign.errors import DataShapeError, NumericalError


# -----------------------------------------------------------------------------
# Synthetic data
# -----------------------------------------------------------------------------
def two_blobs(n_per_blob=30, n_genes=40, seed=0):
    rng = np.random.default_rng(seed)
    centers = rng.normal(0.0, 5.0, size=(2, n_genes))
    labels = np.repeat([0, 1], n_per_blob)
    X = centers[labels] + rng.normal(0.0, 0.5, size=(labels.size, n_genes)) + 7.0
    ids = [f"s{i:03d}" for i in range(labels.size)]
    genes = [f"G{j:02d}" for j in range(n_genes)]
    return pd.DataFrame(X, index=ids, columns=genes), pd.Series(labels, index=ids)


def params(**kw):
    base = dict(n_pc_dims=10, umap_n_neighbors=10, cluster_k=10, cluster_resolution=0.5)
    base.update(kw)
    return AlignmentParams(**base)


# -----------------------------------------------------------------------------
# build_embedding
# -----------------------------------------------------------------------------
def test_center_genes():
    df = pd.DataFrame({"a": [1.0, 3.0], "b": [10.0, 10.0]})
    out = center_genes(df)
    assert out["a"].tolist() == [-1.0, 1.0]
    assert out["b"].tolist() == [0.0, 0.0]


def test_build_embedding_shapes():
    expr, _ = two_blobs()

    emb = build_embedding(expr, params(), domain="tumor")

    assert emb.domain == "tumor"
    assert emb.pca.shape == (60, 10)
    assert list(emb.pca.columns[:2]) == ["PC_1", "PC_2"]
    assert list(emb.umap.columns) == ["UMAP_1", "UMAP_2"]
    assert emb.sample_ids.equals(expr.index)
    assert emb.centered.columns.equals(expr.columns)
    np.testing.assert_allclose(emb.centered.mean(axis=0), 0.0, atol=1e-10)
    assert emb.variance_ratio.shape == (10,)
    assert emb.variance_ratio[0] > 0.5


def test_build_embedding_does_not_modify_input():
    expr, _ = two_blobs()
    expr.iloc[0, 0] = np.nan
    before = expr.copy()

    emb = build_embedding(expr, params(), domain="tumor")

    pd.testing.assert_frame_equal(expr, before)
    assert not emb.centered.isna().any().any()


def test_build_embedding_clips_components(caplog):
    expr, _ = two_blobs(n_per_blob=10, n_genes=8)

    with caplog.at_level(logging.WARNING):
        emb = build_embedding(expr, params(n_pc_dims=70), domain="cell_line")

    assert emb.pca.shape[1] == 7
    assert "n_pc_dims=70" in caplog.text


def test_build_embedding_too_few_samples():
    expr, _ = two_blobs(n_genes=5)
    with pytest.raises(NumericalError):
        build_embedding(expr.iloc[:1], params(), domain="tumor")


# -----------------------------------------------------------------------------
# assign_clusters
# -----------------------------------------------------------------------------
def test_assign_clusters_separates_blobs():
    expr, truth = two_blobs()
    emb = build_embedding(expr, params(), domain="tumor")

    res = assign_clusters(emb, params())

    assert res.domain == "tumor"
    assert res.labels.index.equals(expr.index)
    assert pd.api.types.is_integer_dtype(res.labels)
    assert res.n_clusters >= 2
    a = set(res.labels[truth == 0])
    b = set(res.labels[truth == 1])
    assert a.isdisjoint(b)


def test_assign_clusters_deterministic():
    expr, _ = two_blobs()
    emb = build_embedding(expr, params(), domain="tumor")

    r1 = assign_clusters(emb, params())
    r2 = assign_clusters(emb, params())

    pd.testing.assert_series_equal(r1.labels, r2.labels)


# -----------------------------------------------------------------------------
# Distances
# -----------------------------------------------------------------------------
def test_tumor_cell_line_distances():
    coords = pd.DataFrame({"x": [0.0, 3.0, 0.0]}, index=["t1", "c1", "c2"])
    domains = pd.Series({"t1": "tumor", "c1": "cell_line", "c2": "cell_line"})

    d = tumor_cell_line_distances(coords, domains)

    assert list(d.index) == ["t1"]
    assert list(d.columns) == ["c1", "c2"]
    assert d.loc["t1", "c1"] == pytest.approx(3.0)
    assert d.loc["t1", "c2"] == pytest.approx(0.0)


def test_tumor_cell_line_distances_requires_domains():
    coords = pd.DataFrame({"x": [0.0, 1.0]}, index=["t1", "c1"])
    with pytest.raises(DataShapeError):
        tumor_cell_line_distances(coords, pd.Series({"t1": "tumor"}))


def test_matched_group_distance():
    t = pd.DataFrame({"x": [0.0, 10.0]}, index=["t1", "t2"])
    c = pd.DataFrame({"x": [1.0, 13.0]}, index=["c1", "c2"])
    tg = pd.Series({"t1": "lung", "t2": "skin"})
    cg = pd.Series({"c1": "lung", "c2": "skin"})

    assert matched_group_distance(t, c, tg, cg) == pytest.approx(2.0)


def test_matched_group_distance_no_shared_group():
    t = pd.DataFrame({"x": [0.0]}, index=["t1"])
    c = pd.DataFrame({"x": [1.0]}, index=["c1"])
    with pytest.raises(DataShapeError):
        matched_group_distance(t, c, pd.Series({"t1": "lung"}), pd.Series({"c1": "skin"}))
