from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from .config import AlignConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlignmentInputs:
    tumor_expression: pd.DataFrame
    cell_line_expression: pd.DataFrame
    tumor_annotation: pd.DataFrame
    cell_line_annotation: pd.DataFrame
    gene_reference: pd.DataFrame


# =====================================================================
# Readers
# =====================================================================
def _sep_for(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if ".tsv" in suffixes or ".txt" in suffixes:
        return "\t"
    return ","


def read_table(path: Path, **kwargs) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input table not found: {path}")
    return pd.read_csv(path, sep=_sep_for(path), **kwargs)


def read_expression(path: Path) -> pd.DataFrame:
    """
    Samples x genes matrix. Delimited text must carry sample ids in the
    first column; .h5ad files use obs_names / var_names.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression matrix not found: {path}")

    if path.suffix == ".h5ad":
        adata = ad.read_h5ad(path)
        X = adata.X.toarray() if hasattr(adata.X, "toarray") else np.asarray(adata.X)
        df = pd.DataFrame(X, index=adata.obs_names.astype(str), columns=adata.var_names.astype(str))
    else:
        df = read_table(path, index_col=0)
        df.index = df.index.astype(str)
        df.columns = df.columns.astype(str)
        df = df.apply(pd.to_numeric, errors="coerce")

    LOGGER.info("Loaded expression %s: %d samples x %d genes", path.name, df.shape[0], df.shape[1])
    return df


def read_annotation(cfg: AlignConfig) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split the sample annotation into (tumor, cell line), indexed by sample id."""
    ann = read_table(cfg.annotation)

    for col in (cfg.sample_id_col, cfg.domain_col):
        if col not in ann.columns:
            raise KeyError(
                f"Annotation does not contain required column '{col}'. "
                f"Found columns: {list(ann.columns)}"
            )

    keep: List[str] = []
    for col in cfg.annotation_columns:
        if col in ann.columns:
            keep.append(col)
        else:
            LOGGER.warning("Annotation column '%s' not found; skipping", col)

    ann[cfg.sample_id_col] = ann[cfg.sample_id_col].astype(str)
    domain = ann[cfg.domain_col].astype(str)

    unknown = sorted(set(domain) - {cfg.tumor_label, cfg.cell_line_label})
    if unknown:
        LOGGER.warning(
            "Ignoring %d annotation rows with %s not in {%s, %s}: %s",
            int((~domain.isin([cfg.tumor_label, cfg.cell_line_label])).sum()),
            cfg.domain_col,
            cfg.tumor_label,
            cfg.cell_line_label,
            unknown[:5],
        )

    def _part(label: str) -> pd.DataFrame:
        part = ann.loc[domain == label, [cfg.sample_id_col] + keep]
        return part.set_index(cfg.sample_id_col)

    return _part(cfg.tumor_label), _part(cfg.cell_line_label)


def read_gene_reference(path: Path) -> pd.DataFrame:
    ref = read_table(path, low_memory=False)
    LOGGER.info("Loaded gene reference %s: %d rows", Path(path).name, ref.shape[0])
    return ref


def load_inputs(cfg: AlignConfig) -> AlignmentInputs:
    tumor_ann, cl_ann = read_annotation(cfg)
    return AlignmentInputs(
        tumor_expression=read_expression(cfg.tumor_expression),
        cell_line_expression=read_expression(cfg.cell_line_expression),
        tumor_annotation=tumor_ann,
        cell_line_annotation=cl_ann,
        gene_reference=read_gene_reference(cfg.gene_reference),
    )


# =====================================================================
# Writers
# =====================================================================
def save_adata(adata: ad.AnnData, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    adata.write(str(out_path), compression="gzip")
    LOGGER.info("Wrote %s", out_path)


def export_table(df: pd.DataFrame, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=True)
    LOGGER.info("Exported %s", out_path)


def export_alignment_table(adata: ad.AnnData, out_path: Path) -> None:
    """Sample annotation with UMAP coordinates and final cluster per sample."""
    df = adata.obs.copy()
    df.index.name = "sampleID"
    umap = np.asarray(adata.obsm["X_umap"])
    df["UMAP_1"] = umap[:, 0]
    df["UMAP_2"] = umap[:, 1]
    export_table(df, out_path)
