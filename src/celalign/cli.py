from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import List, Optional

import typer

from .align import run_alignment
from .config import AlignConfig, AlignmentParams
from .gene_utils import compute_gene_stats, filter_gene_universe, restrict_to_genes
from .logging_utils import init_logging

app = typer.Typer(help="celalign CLI: align tumor and cell-line expression profiles.")

LOGGER = logging.getLogger(__name__)

_DEFAULTS = AlignmentParams()

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message=".*n_jobs value.*overridden.*", category=UserWarning)
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _parse_dims(dims: List[str]) -> List[int]:
    """
    Accept --remove-cpca-dims 0,1,2 as well as repeated options.
    """
    out: List[int] = []
    for d in dims:
        for x in d.split(","):
            x = x.strip()
            if x:
                out.append(int(x))
    return out


# ======================================================================
#  align
# ======================================================================
@app.command("align", help="Run the full tumor / cell-line alignment.")
def align(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    tumor_expression: Path = typer.Option(
        ..., "--tumor-expression", "-t", exists=True,
        help="[I/O] Tumor samples x genes matrix (.csv/.tsv with sample ids in column 1, or .h5ad).",
    ),
    cell_line_expression: Path = typer.Option(
        ..., "--cell-line-expression", "-c", exists=True,
        help="[I/O] Cell-line samples x genes matrix.",
    ),
    annotation: Path = typer.Option(
        ..., "--annotation", "-a", exists=True,
        help="[I/O] Sample annotation with sample id and domain columns.",
    ),
    gene_reference: Path = typer.Option(
        ..., "--gene-reference", "-g", exists=True,
        help="[I/O] Gene reference table (e.g. HGNC complete set).",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory.",
    ),
    output_name: str = typer.Option("alignment", "--output-name", help="[I/O] Base name of the .h5ad."),
    save_h5ad: bool = typer.Option(True, "--save-h5ad/--no-save-h5ad", help="[I/O] Write the aligned AnnData."),
    export_distances: bool = typer.Option(
        False, "--export-distances/--no-export-distances",
        help="[I/O] Also write tumor x cell-line distances in the final PCA space.",
    ),

    # -------------------------------------------------------------
    # Columns
    # -------------------------------------------------------------
    sample_id_col: str = typer.Option("sampleID", help="[Columns] Sample id column of the annotation."),
    domain_col: str = typer.Option("type", help="[Columns] Domain column of the annotation."),
    tumor_label: str = typer.Option("tumor", help="[Columns] Domain value of tumors."),
    cell_line_label: str = typer.Option("CL", help="[Columns] Domain value of cell lines."),
    gene_id_col: str = typer.Option("ensembl_gene_id", help="[Columns] Gene id column of the reference."),
    symbol_col: str = typer.Option("symbol", help="[Columns] Gene symbol column of the reference."),
    category_col: str = typer.Option("locus_group", help="[Columns] Gene category column of the reference."),
    match_col: str = typer.Option(
        "tissue", help="[Columns] Annotation column used to report matched tumor / cell-line distances ('' = skip).",
    ),

    # -------------------------------------------------------------
    # Embedding / clustering
    # -------------------------------------------------------------
    n_pc_dims: int = typer.Option(_DEFAULTS.n_pc_dims, help="[Embedding] Principal components."),
    umap_n_neighbors: int = typer.Option(_DEFAULTS.umap_n_neighbors, help="[Embedding] UMAP neighbors."),
    umap_min_dist: float = typer.Option(_DEFAULTS.umap_min_dist, help="[Embedding] UMAP min_dist."),
    distance_metric: str = typer.Option(_DEFAULTS.distance_metric, help="[Embedding] Distance metric."),
    cluster_k: int = typer.Option(_DEFAULTS.cluster_k, help="[Clustering] Neighbors of the clustering graph."),
    cluster_resolution: float = typer.Option(_DEFAULTS.cluster_resolution, help="[Clustering] Leiden resolution."),

    # -------------------------------------------------------------
    # Alignment
    # -------------------------------------------------------------
    top_de_genes: int = typer.Option(_DEFAULTS.top_de_genes, help="[Alignment] Best-rank cutoff for alignment genes."),
    fast_cpca: Optional[int] = typer.Option(
        _DEFAULTS.fast_cpca,
        help="[Alignment] Contrastive directions to compute (0 = full eigendecomposition).",
    ),
    remove_cpca_dims: List[str] = typer.Option(
        ["0,1,2,3"], "--remove-cpca-dims",
        help="[Alignment] Zero-based contrastive directions to remove, e.g. 0,1,2,3.",
    ),
    mnn_k_tumor: int = typer.Option(_DEFAULTS.mnn_k_tumor, help="[MNN] Tumors searched per cell line."),
    mnn_k_cell_line: int = typer.Option(_DEFAULTS.mnn_k_cell_line, help="[MNN] Cell lines searched per tumor."),
    mnn_ndist: float = typer.Option(_DEFAULTS.mnn_ndist, help="[MNN] Tricube bandwidth multiplier."),
    mnn_smooth_k: int = typer.Option(_DEFAULTS.mnn_smooth_k, help="[MNN] Anchors averaged per tumor."),
    mnn_smooth_isolated: bool = typer.Option(
        False, "--mnn-smooth-isolated/--no-mnn-smooth-isolated",
        help="[MNN] Give tumors without mutual neighbors the smoothed correction.",
    ),

    # -------------------------------------------------------------
    # Compute
    # -------------------------------------------------------------
    random_state: int = typer.Option(_DEFAULTS.random_state, help="Random seed."),
    n_jobs: int = typer.Option(_DEFAULTS.n_jobs, "--n-jobs", help="Parallel per-domain branches (1 = sequential)."),
):
    logfile = output_dir / "align.log"
    init_logging(logfile)

    cfg = AlignConfig(
        tumor_expression=tumor_expression,
        cell_line_expression=cell_line_expression,
        annotation=annotation,
        gene_reference=gene_reference,
        output_dir=output_dir,
        output_name=output_name,
        save_h5ad=save_h5ad,
        export_distances=export_distances,
        sample_id_col=sample_id_col,
        domain_col=domain_col,
        tumor_label=tumor_label,
        cell_line_label=cell_line_label,
        gene_id_col=gene_id_col,
        symbol_col=symbol_col,
        category_col=category_col,
        match_col=match_col or None,
        n_pc_dims=n_pc_dims,
        umap_n_neighbors=umap_n_neighbors,
        umap_min_dist=umap_min_dist,
        distance_metric=distance_metric,
        cluster_k=cluster_k,
        cluster_resolution=cluster_resolution,
        top_de_genes=top_de_genes,
        fast_cpca=fast_cpca or None,
        remove_cpca_dims=_parse_dims(remove_cpca_dims),
        mnn_k_tumor=mnn_k_tumor,
        mnn_k_cell_line=mnn_k_cell_line,
        mnn_ndist=mnn_ndist,
        mnn_smooth_k=mnn_smooth_k,
        mnn_smooth_isolated=mnn_smooth_isolated,
        random_state=random_state,
        n_jobs=n_jobs,
        logfile=logfile,
    )

    run_alignment(cfg)


# ======================================================================
#  gene-stats
# ======================================================================
@app.command("gene-stats", help="Per-gene mean / SD of both domains on the filtered gene universe.")
def gene_stats(
    tumor_expression: Path = typer.Option(..., "--tumor-expression", "-t", exists=True),
    cell_line_expression: Path = typer.Option(..., "--cell-line-expression", "-c", exists=True),
    gene_reference: Path = typer.Option(..., "--gene-reference", "-g", exists=True),
    out: Path = typer.Option(..., "--out", "-o", help="Output CSV."),
    gene_id_col: str = typer.Option("ensembl_gene_id"),
    symbol_col: str = typer.Option("symbol"),
    category_col: str = typer.Option("locus_group"),
):
    from . import io_utils

    init_logging(None)

    tumor = io_utils.read_expression(tumor_expression)
    cell_line = io_utils.read_expression(cell_line_expression)
    reference = io_utils.read_gene_reference(gene_reference)

    genes = filter_gene_universe(
        tumor,
        cell_line,
        reference,
        gene_id_col=gene_id_col,
        category_col=category_col,
        excluded=_DEFAULTS.excluded_gene_categories,
    )
    stats = compute_gene_stats(
        restrict_to_genes(tumor, genes),
        restrict_to_genes(cell_line, genes),
        reference,
        gene_id_col=gene_id_col,
        symbol_col=symbol_col,
    )
    out.parent.mkdir(parents=True, exist_ok=True)
    stats.to_csv(out, index=False)
    LOGGER.info("Wrote gene statistics for %d genes -> %s", stats.shape[0], out)


if __name__ == "__main__":
    app()
