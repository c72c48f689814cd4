from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------
# ALGORITHM PARAMETERS
# ---------------------------------------------------------------------
class AlignmentParams(BaseModel):
    """
    Parameters of one alignment run. Passed explicitly into the orchestrator,
    so runs with different settings never share state.
    """

    # ---- Embedding ----
    n_pc_dims: int = Field(70, ge=2, description="Principal components per embedding")
    umap_n_neighbors: int = Field(10, ge=2)
    umap_min_dist: float = Field(0.5, ge=0.0, le=1.0)
    distance_metric: Literal["euclidean", "cosine", "correlation", "manhattan"] = "euclidean"

    # ---- Clustering ----
    cluster_k: int = Field(20, ge=2, description="Neighbors of the clustering graph")
    cluster_resolution: float = Field(5.0, gt=0.0)

    # ---- Alignment genes ----
    top_de_genes: int = Field(
        1000,
        ge=1,
        description="Genes whose best per-domain rank is strictly below this are used for MNN",
    )

    # ---- Contrastive PCA ----
    fast_cpca: Optional[int] = Field(
        10,
        ge=1,
        description="Compute only this many contrastive directions (None = full eigendecomposition)",
    )
    remove_cpca_dims: List[int] = Field(
        default_factory=lambda: [0, 1, 2, 3],
        description="Zero-based indices of contrastive directions regressed out of both domains",
    )

    # ---- Mutual nearest neighbors ----
    mnn_k_tumor: int = Field(50, ge=1, description="Tumors searched per cell line")
    mnn_k_cell_line: int = Field(5, ge=1, description="Cell lines searched per tumor")
    mnn_ndist: float = Field(3.0, gt=0.0, description="Tricube bandwidth in units of the median neighbor distance")
    mnn_smooth_k: int = Field(20, ge=1, description="Anchor tumors averaged per corrected tumor")
    mnn_smooth_isolated: bool = False

    # ---- Diagnostics ----
    match_col: Optional[str] = Field(
        "tissue",
        description="Annotation column whose shared values pair tumors with cell lines when reporting distances (None = skip)",
    )

    # ---- Gene universe ----
    excluded_gene_categories: List[str] = Field(
        default_factory=lambda: ["non-coding RNA", "pseudogene"],
    )

    # ---- Compute ----
    random_state: int = 0
    n_jobs: int = Field(2, ge=1, description=">1 runs the tumor and cell-line branches concurrently")

    @field_validator("remove_cpca_dims")
    @classmethod
    def check_remove_dims(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("remove_cpca_dims must name at least one direction")
        if any(i < 0 for i in v):
            raise ValueError("remove_cpca_dims are zero-based and must be >= 0")
        if len(set(v)) != len(v):
            raise ValueError(f"remove_cpca_dims contains duplicates: {v}")
        return v

    @model_validator(mode="after")
    def check_cpca_dims(self):
        if self.fast_cpca is not None and max(self.remove_cpca_dims) >= self.fast_cpca:
            raise ValueError(
                f"remove_cpca_dims {self.remove_cpca_dims} reach beyond the "
                f"{self.fast_cpca} directions computed with fast_cpca"
            )
        return self


# ---------------------------------------------------------------------
# FILE-BASED RUN CONFIG
# ---------------------------------------------------------------------
class AlignConfig(AlignmentParams):

    # ---- Input ----
    tumor_expression: Path
    cell_line_expression: Path
    annotation: Path
    gene_reference: Path

    # ---- Annotation columns ----
    sample_id_col: str = "sampleID"
    domain_col: str = "type"
    tumor_label: str = "tumor"
    cell_line_label: str = "CL"
    annotation_columns: List[str] = Field(
        default_factory=lambda: ["tissue", "subtype", "Primary/Metastasis"],
        description="Metadata columns carried into the output (kept when present)",
    )

    # ---- Gene reference columns ----
    gene_id_col: str = "ensembl_gene_id"
    symbol_col: str = "symbol"
    category_col: str = "locus_group"

    # ---- Output ----
    output_dir: Path
    output_name: str = "alignment"
    save_h5ad: bool = True
    export_distances: bool = False

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def h5ad_path(self) -> Path:
        return self.output_dir / f"{self.output_name}.h5ad"

    @model_validator(mode="after")
    def check_labels(self):
        if self.tumor_label == self.cell_line_label:
            raise ValueError("tumor_label and cell_line_label must differ")
        return self

    def params(self) -> AlignmentParams:
        """Strip the I/O fields, leaving the parameters the core consumes."""
        return AlignmentParams(**{k: getattr(self, k) for k in AlignmentParams.model_fields})
