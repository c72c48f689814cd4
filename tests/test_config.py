import pytest
from pathlib import Path

from celalign.config import AlignConfig, AlignmentParams


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def io_kwargs(tmp_path):
    return dict(
        tumor_expression=tmp_path / "TCGA_mat.csv",
        cell_line_expression=tmp_path / "CCLE_mat.csv",
        annotation=tmp_path / "alignment.csv",
        gene_reference=tmp_path / "hgnc.complete.set.csv",
        output_dir=tmp_path / "out",
    )


# -------------------------------------------------------------------------
# AlignmentParams
# -------------------------------------------------------------------------
def test_params_defaults():
    p = AlignmentParams()
    assert p.n_pc_dims == 70
    assert p.umap_n_neighbors == 10
    assert p.umap_min_dist == 0.5
    assert p.cluster_resolution == 5.0
    assert p.top_de_genes == 1000
    assert p.fast_cpca == 10
    assert p.remove_cpca_dims == [0, 1, 2, 3]
    assert p.mnn_k_tumor == 50
    assert p.mnn_k_cell_line == 5
    assert p.mnn_ndist == 3.0
    assert p.mnn_smooth_isolated is False
    assert p.excluded_gene_categories == ["non-coding RNA", "pseudogene"]
    assert p.match_col == "tissue"


def test_params_remove_dims_must_fit_fast_cpca():
    with pytest.raises(ValueError):
        AlignmentParams(fast_cpca=4, remove_cpca_dims=[0, 4])

    # full eigendecomposition has no upper bound at config time
    p = AlignmentParams(fast_cpca=None, remove_cpca_dims=[0, 25])
    assert p.remove_cpca_dims == [0, 25]


@pytest.mark.parametrize("dims", [[], [-1], [1, 1]])
def test_params_invalid_remove_dims(dims):
    with pytest.raises(ValueError):
        AlignmentParams(remove_cpca_dims=dims)


def test_params_ranges():
    with pytest.raises(ValueError):
        AlignmentParams(umap_min_dist=1.5)
    with pytest.raises(ValueError):
        AlignmentParams(top_de_genes=0)
    with pytest.raises(ValueError):
        AlignmentParams(distance_metric="hamming")


def test_params_instances_are_independent():
    a = AlignmentParams()
    b = AlignmentParams(remove_cpca_dims=[2])
    assert a.remove_cpca_dims == [0, 1, 2, 3]
    assert b.remove_cpca_dims == [2]


# -------------------------------------------------------------------------
# AlignConfig
# -------------------------------------------------------------------------
def test_alignconfig_defaults(tmp_path):
    cfg = AlignConfig(**io_kwargs(tmp_path))
    assert cfg.sample_id_col == "sampleID"
    assert cfg.domain_col == "type"
    assert cfg.tumor_label == "tumor"
    assert cfg.cell_line_label == "CL"
    assert cfg.h5ad_path == tmp_path / "out" / "alignment.h5ad"


def test_alignconfig_params_strips_io(tmp_path):
    cfg = AlignConfig(**io_kwargs(tmp_path), n_pc_dims=12, mnn_k_tumor=7)
    p = cfg.params()
    assert type(p) is AlignmentParams
    assert p.n_pc_dims == 12
    assert p.mnn_k_tumor == 7
    assert not hasattr(p, "output_dir")


def test_alignconfig_labels_must_differ(tmp_path):
    with pytest.raises(ValueError):
        AlignConfig(**io_kwargs(tmp_path), tumor_label="x", cell_line_label="x")


def test_alignconfig_inherits_param_validation(tmp_path):
    with pytest.raises(ValueError):
        AlignConfig(**io_kwargs(tmp_path), fast_cpca=2, remove_cpca_dims=[0, 1, 2])
