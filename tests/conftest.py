# tests/conftest.py

import numpy as np
import pandas as pd
import pytest


# -----------------------------------------------------------------------------
# Synthetic tumor / cell-line data
# -----------------------------------------------------------------------------
def synthetic_domains(
    n_per_domain=50,
    n_genes=200,
    n_groups=2,
    n_batch_genes=20,
    batch_shift=4.0,
    n_noncoding=5,
    seed=0,
):
    """
    Two domains sharing `n_groups` biological subtypes. Tumors carry an
    extra shift on the first `n_batch_genes` genes. The gene reference marks
    `n_noncoding` additional matrix genes as non-coding.
    """
    rng = np.random.default_rng(seed)
    genes = [f"ENSG{i:05d}" for i in range(n_genes + n_noncoding)]
    base = rng.normal(5.0, 1.0, size=len(genes))
    profiles = rng.normal(0.0, 2.0, size=(n_groups, len(genes)))

    batch = np.zeros(len(genes))
    batch[:n_batch_genes] = batch_shift

    def _domain(prefix, shift):
        groups = np.arange(n_per_domain) % n_groups
        X = base + profiles[groups] + rng.normal(0.0, 0.5, size=(n_per_domain, len(genes))) + shift
        ids = [f"{prefix}{i:03d}" for i in range(n_per_domain)]
        expr = pd.DataFrame(X, index=ids, columns=genes)
        ann = pd.DataFrame(
            {
                "tissue": ["lung"] * n_per_domain,
                "subtype": [f"group{g}" for g in groups],
            },
            index=ids,
        )
        return expr, ann

    tumor_expr, tumor_ann = _domain("TCGA-", batch)
    cl_expr, cl_ann = _domain("ACH-", 0.0)

    reference = pd.DataFrame(
        {
            "ensembl_gene_id": genes,
            "symbol": [f"GENE{i}" for i in range(len(genes))],
            "locus_group": ["protein-coding gene"] * n_genes + ["non-coding RNA"] * n_noncoding,
        }
    )
    return tumor_expr, cl_expr, tumor_ann, cl_ann, reference


@pytest.fixture
def two_domains():
    return synthetic_domains()


@pytest.fixture
def small_params():
    from celalign.config import AlignmentParams

    return AlignmentParams(
        n_pc_dims=20,
        umap_n_neighbors=10,
        cluster_k=10,
        cluster_resolution=0.5,
        top_de_genes=1000,
        fast_cpca=10,
        remove_cpca_dims=[0, 1, 2, 3],
        mnn_k_tumor=20,
        mnn_k_cell_line=5,
        mnn_smooth_k=10,
        n_jobs=1,
        random_state=0,
    )


@pytest.fixture
def input_files(tmp_path, two_domains):
    """The synthetic domains written the way the CLI expects them."""
    tumor_expr, cl_expr, tumor_ann, cl_ann, reference = two_domains

    t_path = tmp_path / "TCGA_mat.tsv"
    c_path = tmp_path / "CCLE_mat.csv"
    a_path = tmp_path / "alignment.csv"
    g_path = tmp_path / "hgnc.csv"

    tumor_expr.to_csv(t_path, sep="\t")
    cl_expr.to_csv(c_path)

    ann = pd.concat([tumor_ann.assign(type="tumor"), cl_ann.assign(type="CL")])
    ann.index.name = "sampleID"
    ann.reset_index().to_csv(a_path, index=False)

    reference.to_csv(g_path, index=False)
    return {
        "tumor_expression": t_path,
        "cell_line_expression": c_path,
        "annotation": a_path,
        "gene_reference": g_path,
    }
