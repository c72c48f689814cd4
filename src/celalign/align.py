# src/celalign/align.py

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from celalign import __version__
from .config import AlignConfig, AlignmentParams
from . import io_utils
from .contrastive import compute_contrastive_basis, remove_directions, select_removal_basis
from .de_utils import rank_differential_genes, select_alignment_genes
from .embedding_utils import (
    assign_clusters,
    build_embedding,
    matched_group_distance,
    tumor_cell_line_distances,
)
from .errors import AlignmentError, ConfigurationError, DataShapeError, NumericalError
from .gene_utils import (
    assert_gene_order,
    compute_gene_stats,
    filter_gene_universe,
    impute_missing,
    restrict_to_genes,
)
from .logging_utils import init_logging
from .mnn_utils import mnn_correct
from .records import (
    CELL_LINE,
    TUMOR,
    AlignedEmbedding,
    AlignmentResult,
    ClusterAssignment,
    DifferentialGeneScore,
    DomainData,
    DomainEmbedding,
)

LOGGER = logging.getLogger(__name__)

STAGES = (
    "load_inputs",
    "filter_genes",
    "embed_tumor",
    "embed_cell_line",
    "cluster_tumor",
    "cluster_cell_line",
    "rank_tumor",
    "rank_cell_line",
    "select_alignment_genes",
    "remove_contrastive_directions",
    "correct_neighbors",
    "combine_matrices",
    "embed_combined",
    "cluster_combined",
)


# ---------------------------------------------------------------------
# Stage runner
# ---------------------------------------------------------------------
class StageRunner:
    """
    Runs one stage at a time and records completions.

    Errors leave through here with the stage name attached: pipeline errors
    keep their kind, anything raised by a library call becomes a
    NumericalError chained to the original.
    """

    def __init__(self) -> None:
        self._completed: List[str] = []
        self._lock = threading.Lock()

    @property
    def completed(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._completed)

    def run(self, stage: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        LOGGER.info("[%s] start", stage)
        t0 = time.perf_counter()
        try:
            out = fn(*args, **kwargs)
        except AlignmentError as e:
            if e.stage is None:
                e.stage = stage
            LOGGER.error("[%s] failed: %s", stage, e)
            raise
        except Exception as e:
            LOGGER.error("[%s] failed: %s: %s", stage, type(e).__name__, e)
            raise NumericalError(f"{type(e).__name__}: {e}", stage=stage) from e

        with self._lock:
            self._completed.append(stage)
        LOGGER.info("[%s] done (%.1fs)", stage, time.perf_counter() - t0)
        return out


# ---------------------------------------------------------------------
# Stage bodies
# ---------------------------------------------------------------------
def prepare_domain(expr: pd.DataFrame, annotation: pd.DataFrame, domain: str) -> DomainData:
    """Validate sample ids of one domain and line the annotation up with the matrix."""
    expr = expr.copy()
    expr.index = expr.index.astype(str)
    expr.columns = expr.columns.astype(str)
    if expr.index.has_duplicates:
        dup = expr.index[expr.index.duplicated()].unique().tolist()[:5]
        raise DataShapeError(f"{domain}: duplicated sample ids in expression, e.g. {dup}")

    non_numeric = [c for c, dt in expr.dtypes.items() if not pd.api.types.is_numeric_dtype(dt)]
    if non_numeric:
        raise DataShapeError(
            f"{domain}: {len(non_numeric)} non-numeric expression columns, e.g. {non_numeric[:5]}"
        )

    ann = annotation.copy()
    ann.index = ann.index.astype(str)
    if ann.index.has_duplicates:
        dup = ann.index[ann.index.duplicated()].unique().tolist()[:5]
        raise DataShapeError(f"{domain}: duplicated sample ids in annotation, e.g. {dup}")

    missing = expr.index.difference(ann.index)
    if len(missing) > 0:
        raise DataShapeError(
            f"{domain}: {len(missing)} samples have no annotation row, e.g. {missing[:5].tolist()}"
        )
    extra = ann.index.difference(expr.index)
    if len(extra) > 0:
        LOGGER.warning("%s: dropping %d annotation rows without expression", domain, len(extra))

    ann = ann.loc[expr.index]
    ann["type"] = domain

    LOGGER.info("%s: %d samples x %d genes", domain, expr.shape[0], expr.shape[1])
    return DomainData(domain=domain, expression=expr, annotation=ann)


def _load_inputs(tumor_expr, cell_line_expr, tumor_annotation, cell_line_annotation):
    return (
        prepare_domain(tumor_expr, tumor_annotation, TUMOR),
        prepare_domain(cell_line_expr, cell_line_annotation, CELL_LINE),
    )


def _filter_genes(
    tumor: DomainData,
    cell_line: DomainData,
    reference: pd.DataFrame,
    params: AlignmentParams,
    *,
    gene_id_col: str,
    category_col: str,
    symbol_col: str,
) -> Tuple[List[str], DomainData, DomainData, pd.DataFrame]:
    genes = filter_gene_universe(
        tumor.expression,
        cell_line.expression,
        reference,
        gene_id_col=gene_id_col,
        category_col=category_col,
        excluded=params.excluded_gene_categories,
    )
    t_expr = restrict_to_genes(tumor.expression, genes)
    c_expr = restrict_to_genes(cell_line.expression, genes)
    stats = compute_gene_stats(
        t_expr,
        c_expr,
        reference,
        gene_id_col=gene_id_col,
        symbol_col=symbol_col,
    )
    # matrices entering decomposition and regression carry no missing values
    t = DomainData(TUMOR, impute_missing(t_expr, TUMOR), tumor.annotation)
    c = DomainData(CELL_LINE, impute_missing(c_expr, CELL_LINE), cell_line.annotation)
    return genes, t, c, stats


def _domain_branch(
    runner: StageRunner,
    data: DomainData,
    genes: List[str],
    params: AlignmentParams,
) -> Tuple[DomainEmbedding, ClusterAssignment, DifferentialGeneScore]:
    """Embed, cluster and rank one domain. Independent of the other domain."""
    tag = data.domain
    emb = runner.run(f"embed_{tag}", build_embedding, data.expression, params, domain=tag)
    assert_gene_order(genes, emb.centered, stage=f"embed_{tag}")

    clusters = runner.run(f"cluster_{tag}", assign_clusters, emb, params)

    trend = data.expression.mean(axis=0, skipna=True).fillna(0.0)
    scores = runner.run(f"rank_{tag}", rank_differential_genes, emb.centered, clusters, covariate=trend)
    return emb, clusters, scores


def _run_branches(
    runner: StageRunner,
    tumor: DomainData,
    cell_line: DomainData,
    genes: List[str],
    params: AlignmentParams,
):
    if params.n_jobs > 1:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="celalign") as pool:
            fut_t = pool.submit(_domain_branch, runner, tumor, genes, params)
            fut_c = pool.submit(_domain_branch, runner, cell_line, genes, params)
            return fut_t.result(), fut_c.result()
    return (
        _domain_branch(runner, tumor, genes, params),
        _domain_branch(runner, cell_line, genes, params),
    )


def _select_genes(tumor_scores, cell_line_scores, params, gene_stats):
    selection = select_alignment_genes(
        tumor_scores,
        cell_line_scores,
        params.top_de_genes,
        gene_stats=gene_stats,
    )
    if len(selection) == 0:
        raise ConfigurationError(
            "Alignment gene set is empty: no gene ranks below "
            f"top_de_genes={params.top_de_genes} in either domain"
        )
    return selection


def _remove_contrastive(
    tumor: DomainData,
    cell_line: DomainData,
    emb_t: DomainEmbedding,
    emb_c: DomainEmbedding,
    cl_t: ClusterAssignment,
    cl_c: ClusterAssignment,
    params: AlignmentParams,
):
    basis = compute_contrastive_basis(
        emb_t,
        emb_c,
        cl_t,
        cl_c,
        fast_cpca=params.fast_cpca,
        random_state=params.random_state,
    )
    removal = select_removal_basis(basis, params.remove_cpca_dims)
    t_cor = remove_directions(tumor.expression, removal, label=TUMOR)
    c_cor = remove_directions(cell_line.expression, removal, label=CELL_LINE)
    return removal, t_cor, c_cor


def _matched_distances(mnn, tumor: DomainData, cell_line: DomainData, match_col: Optional[str]):
    """Mean tumor / cell-line distance within shared `match_col` groups, in gene space."""
    if match_col is None:
        return None
    if match_col not in tumor.annotation.columns or match_col not in cell_line.annotation.columns:
        LOGGER.warning("Annotation column '%s' missing; skipping matched-group distances", match_col)
        return None

    t_groups = tumor.annotation[match_col]
    c_groups = cell_line.annotation[match_col]
    if not set(t_groups.dropna()) & set(c_groups.dropna()):
        LOGGER.warning("No '%s' value is shared by tumors and cell lines; skipping matched-group distances", match_col)
        return None

    before = matched_group_distance(tumor.expression, cell_line.expression, t_groups, c_groups)
    after = matched_group_distance(mnn.corrected, mnn.reference, t_groups, c_groups)
    LOGGER.info("Matched-%s distance: %.3f before, %.3f after correction", match_col, before, after)
    return {"column": match_col, "before": before, "after": after}


def _combine(mnn, tumor: DomainData, cell_line: DomainData, genes: List[str], match_col: Optional[str] = None):
    assert_gene_order(genes, mnn.corrected, mnn.reference)
    shared = mnn.corrected.index.intersection(mnn.reference.index)
    if len(shared) > 0:
        raise DataShapeError(
            f"{len(shared)} sample ids occur in both domains, e.g. {shared[:5].tolist()}"
        )
    matrix = pd.concat([mnn.corrected, mnn.reference], axis=0)
    annotation = pd.concat([tumor.annotation, cell_line.annotation], axis=0, sort=False)
    matched = _matched_distances(mnn, tumor, cell_line, match_col)
    return matrix, annotation.loc[matrix.index], matched


# ---------------------------------------------------------------------
# Orchestrator (in memory)
# ---------------------------------------------------------------------
def align_domains(
    tumor_expr: pd.DataFrame,
    cell_line_expr: pd.DataFrame,
    tumor_annotation: pd.DataFrame,
    cell_line_annotation: pd.DataFrame,
    gene_reference: pd.DataFrame,
    params: Optional[AlignmentParams] = None,
    *,
    gene_id_col: str = "ensembl_gene_id",
    category_col: str = "locus_group",
    symbol_col: str = "symbol",
    runner: Optional[StageRunner] = None,
) -> AlignmentResult:
    """
    Align tumor and cell-line expression into one corrected space.

    Matrices are samples x genes; annotations are indexed by sample id.
    Every stage runs exactly once; the first failure aborts the run with
    the stage name attached to the raised AlignmentError.
    """
    params = params or AlignmentParams()
    runner = runner or StageRunner()

    tumor, cell_line = runner.run(
        "load_inputs",
        _load_inputs,
        tumor_expr,
        cell_line_expr,
        tumor_annotation,
        cell_line_annotation,
    )

    genes, tumor, cell_line, gene_stats = runner.run(
        "filter_genes",
        _filter_genes,
        tumor,
        cell_line,
        gene_reference,
        params,
        gene_id_col=gene_id_col,
        category_col=category_col,
        symbol_col=symbol_col,
    )

    (emb_t, cl_t, de_t), (emb_c, cl_c, de_c) = _run_branches(runner, tumor, cell_line, genes, params)

    selection = runner.run("select_alignment_genes", _select_genes, de_t, de_c, params, gene_stats)

    removal, t_cor, c_cor = runner.run(
        "remove_contrastive_directions",
        _remove_contrastive,
        tumor,
        cell_line,
        emb_t,
        emb_c,
        cl_t,
        cl_c,
        params,
    )

    mnn = runner.run(
        "correct_neighbors",
        mnn_correct,
        c_cor,
        t_cor,
        k_reference=params.mnn_k_tumor,
        k_target=params.mnn_k_cell_line,
        ndist=params.mnn_ndist,
        smooth_k=params.mnn_smooth_k,
        subset_genes=selection.genes,
        metric=params.distance_metric,
        smooth_isolated=params.mnn_smooth_isolated,
    )

    matrix, annotation, matched = runner.run(
        "combine_matrices", _combine, mnn, tumor, cell_line, genes, params.match_col
    )

    emb_all = runner.run("embed_combined", build_embedding, matrix, params, domain="combined")
    cl_all = runner.run("cluster_combined", assign_clusters, emb_all, params)

    metadata: Dict[str, Any] = {
        "version": __version__,
        "n_genes": len(genes),
        "n_tumors": tumor.n_samples,
        "n_cell_lines": cell_line.n_samples,
        "n_alignment_genes": len(selection),
        "n_mnn_pairs": int(len(mnn.pairs)),
        "n_isolated_tumors": mnn.n_isolated,
        "n_clusters": {
            TUMOR: cl_t.n_clusters,
            CELL_LINE: cl_c.n_clusters,
            "combined": cl_all.n_clusters,
        },
        "de_test": {TUMOR: type(de_t.test).__name__, CELL_LINE: type(de_c.test).__name__},
        "matched_distance": matched,
    }
    LOGGER.info(
        "Alignment finished: %d samples, %d clusters, %d isolated tumors",
        matrix.shape[0],
        cl_all.n_clusters,
        mnn.n_isolated,
    )

    return AlignmentResult(
        aligned=AlignedEmbedding(matrix=matrix, annotation=annotation, embedding=emb_all, clusters=cl_all),
        gene_stats=gene_stats,
        de_selection=selection,
        removal_basis=removal,
        mnn=mnn,
        stages=runner.completed,
        metadata=metadata,
    )


# ---------------------------------------------------------------------
# Export container
# ---------------------------------------------------------------------
def _categorical_obs(obs: pd.DataFrame) -> pd.DataFrame:
    obs = obs.copy()
    for col in obs.columns:
        if obs[col].dtype == object:
            obs[col] = obs[col].fillna("NA").astype(str).astype("category")
    return obs


def to_anndata(result: AlignmentResult, params: AlignmentParams) -> ad.AnnData:
    """Pack the aligned matrix, embeddings and run metadata into an AnnData."""
    aligned = result.aligned
    obs = aligned.annotation.copy()
    obs["cluster"] = pd.Categorical(aligned.clusters.labels.reindex(obs.index).astype(str))
    obs = _categorical_obs(obs)

    var = result.de_selection.table.reindex(aligned.matrix.columns).copy()
    if "Symbol" in var.columns:
        var["Symbol"] = var["Symbol"].fillna("").astype(str)
    var.index = var.index.astype(str)
    var.index.name = None

    adata = ad.AnnData(
        X=aligned.matrix.to_numpy(dtype=np.float32),
        obs=obs,
        var=var,
    )
    adata.obsm["X_pca"] = aligned.embedding.pca.loc[obs.index].to_numpy()
    adata.obsm["X_umap"] = aligned.embedding.umap.loc[obs.index].to_numpy()
    adata.varm["contrastive_basis"] = result.removal_basis.vectors.reindex(aligned.matrix.columns).to_numpy()

    meta = dict(result.metadata)
    adata.uns["alignment"] = {
        "version": str(meta.get("version", __version__)),
        "n_alignment_genes": int(meta.get("n_alignment_genes", 0)),
        "n_mnn_pairs": int(meta.get("n_mnn_pairs", 0)),
        "n_isolated_tumors": int(meta.get("n_isolated_tumors", 0)),
        "isolated_tumors": list(result.mnn.isolated),
        "stages": list(result.stages),
        "cpca_mode": result.removal_basis.mode,
        "cpca_magnitudes": np.asarray(result.removal_basis.magnitudes, dtype=float),
        "n_clusters_json": json.dumps(meta.get("n_clusters", {})),
        "params_json": params.model_dump_json(),
    }
    matched = meta.get("matched_distance")
    if matched:
        adata.uns["alignment"]["matched_distance"] = {
            "column": str(matched["column"]),
            "before": float(matched["before"]),
            "after": float(matched["after"]),
        }
    return adata


# ---------------------------------------------------------------------
# Orchestrator (file based)
# ---------------------------------------------------------------------
def run_alignment(cfg: AlignConfig) -> ad.AnnData:
    init_logging(cfg.logfile)
    LOGGER.info("Starting alignment module (celalign %s)", __version__)

    params = cfg.params()
    runner = StageRunner()

    inputs = runner.run("read_files", io_utils.load_inputs, cfg)

    result = align_domains(
        inputs.tumor_expression,
        inputs.cell_line_expression,
        inputs.tumor_annotation,
        inputs.cell_line_annotation,
        inputs.gene_reference,
        params,
        gene_id_col=cfg.gene_id_col,
        category_col=cfg.category_col,
        symbol_col=cfg.symbol_col,
        runner=runner,
    )

    adata = to_anndata(result, params)

    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    io_utils.export_alignment_table(adata, cfg.output_dir / "alignment.csv")
    io_utils.export_table(result.de_selection.table, cfg.output_dir / "DE_genes.csv")

    if cfg.export_distances:
        dist = tumor_cell_line_distances(result.aligned.embedding.pca, result.aligned.annotation["type"])
        io_utils.export_table(dist, cfg.output_dir / "tumor_CL_dist.csv")

    if cfg.save_h5ad:
        io_utils.save_adata(adata, cfg.h5ad_path)

    LOGGER.info("Finished alignment module")
    return adata
