# src/celalign/gene_utils.py
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import ConfigurationError, DataShapeError

LOGGER = logging.getLogger(__name__)

GeneSource = Union[pd.DataFrame, pd.Index, Sequence[str]]


def _gene_index(src: GeneSource) -> pd.Index:
    if isinstance(src, pd.DataFrame):
        return pd.Index(src.columns).astype(str)
    return pd.Index(src).astype(str)


# ---------------------------------------------------------------------
# Gene universe
# ---------------------------------------------------------------------
def functional_genes(
    reference: pd.DataFrame,
    *,
    gene_id_col: str = "ensembl_gene_id",
    category_col: str = "locus_group",
    excluded: Iterable[str] = ("non-coding RNA", "pseudogene"),
) -> pd.Index:
    """Gene ids of the reference whose category is not excluded."""
    missing = [c for c in (gene_id_col, category_col) if c not in reference.columns]
    if missing:
        raise KeyError(
            f"Gene reference is missing column(s) {missing}. "
            f"Available: {list(reference.columns)[:20]}"
        )
    keep = ~reference[category_col].isin(list(excluded))
    ids = reference.loc[keep, gene_id_col].dropna().astype(str)
    return pd.Index(ids.unique())


def filter_gene_universe(
    genes_a: GeneSource,
    genes_b: GeneSource,
    reference: pd.DataFrame,
    *,
    gene_id_col: str = "ensembl_gene_id",
    category_col: str = "locus_group",
    excluded: Iterable[str] = ("non-coding RNA", "pseudogene"),
) -> List[str]:
    """
    Ordered intersection of both matrices' genes and the reference's
    functional genes.

    The result is sorted lexicographically so that restricting both matrices
    to it aligns their columns by position. Filtering an already filtered pair
    returns the same list.
    """
    a = _gene_index(genes_a)
    b = _gene_index(genes_b)
    func = functional_genes(
        reference,
        gene_id_col=gene_id_col,
        category_col=category_col,
        excluded=excluded,
    )

    common = a.intersection(b).intersection(func)
    genes = sorted(set(common))

    LOGGER.info(
        "Gene universe: %d genes (A=%d, B=%d, functional reference=%d)",
        len(genes),
        a.nunique(),
        b.nunique(),
        len(func),
    )

    if not genes:
        raise ConfigurationError(
            "Gene universe is empty: the two matrices share no functional genes "
            "with the reference table"
        )
    return genes


def restrict_to_genes(expr: pd.DataFrame, genes: Sequence[str], *, stage: Optional[str] = None) -> pd.DataFrame:
    """Copy of `expr` with exactly `genes` as columns, in that order."""
    cols = pd.Index(expr.columns).astype(str)
    if cols.has_duplicates:
        dup = cols[cols.duplicated()].unique().tolist()[:10]
        raise DataShapeError(f"Duplicated gene columns, e.g. {dup}", stage=stage)
    missing = pd.Index(genes).difference(cols)
    if len(missing) > 0:
        raise DataShapeError(
            f"{len(missing)} genes of the universe are missing from the matrix, "
            f"e.g. {missing[:5].tolist()}",
            stage=stage,
        )
    out = expr.copy()
    out.columns = cols
    return out.loc[:, list(genes)]


def assert_gene_order(genes: Sequence[str], *frames: pd.DataFrame, stage: Optional[str] = None) -> None:
    """Every frame must carry exactly `genes` as columns, same order."""
    ref = pd.Index(genes)
    for i, df in enumerate(frames):
        if not pd.Index(df.columns).equals(ref):
            raise DataShapeError(
                f"Gene columns of input {i} do not match the gene universe "
                f"({df.shape[1]} vs {len(ref)} genes, or different order)",
                stage=stage,
            )


def impute_missing(expr: pd.DataFrame, label: str = "") -> pd.DataFrame:
    """
    Replace missing values by the gene mean of this matrix
    (genes missing in every sample become 0).
    """
    n_missing = int(expr.isna().to_numpy().sum())
    if n_missing == 0:
        return expr

    LOGGER.warning(
        "%s: imputing %d missing value(s) with per-gene means",
        label or "expression",
        n_missing,
    )
    means = expr.mean(axis=0, skipna=True).fillna(0.0)
    return expr.fillna(means)


# ---------------------------------------------------------------------
# Gene statistics
# ---------------------------------------------------------------------
def compute_gene_stats(
    tumor: pd.DataFrame,
    cell_line: pd.DataFrame,
    reference: Optional[pd.DataFrame] = None,
    *,
    gene_id_col: str = "ensembl_gene_id",
    symbol_col: str = "symbol",
) -> pd.DataFrame:
    """
    Per-gene mean / SD in each domain plus the reference symbol.

    Columns: Gene, Symbol, tumor_mean, tumor_sd, cell_line_mean,
    cell_line_sd, max_sd.
    """
    genes = pd.Index(tumor.columns).intersection(pd.Index(cell_line.columns), sort=False)

    stats = pd.DataFrame(
        {
            "Gene": genes.astype(str),
            "tumor_mean": tumor[genes].mean(axis=0, skipna=True).to_numpy(),
            "tumor_sd": tumor[genes].std(axis=0, skipna=True, ddof=1).to_numpy(),
            "cell_line_mean": cell_line[genes].mean(axis=0, skipna=True).to_numpy(),
            "cell_line_sd": cell_line[genes].std(axis=0, skipna=True, ddof=1).to_numpy(),
        }
    )
    stats["max_sd"] = np.fmax(stats["tumor_sd"].to_numpy(), stats["cell_line_sd"].to_numpy())

    if reference is not None and symbol_col in reference.columns and gene_id_col in reference.columns:
        sym = (
            reference[[gene_id_col, symbol_col]]
            .dropna(subset=[gene_id_col])
            .astype({gene_id_col: str})
            .drop_duplicates(subset=[gene_id_col], keep="first")
            .set_index(gene_id_col)[symbol_col]
        )
        stats.insert(1, "Symbol", stats["Gene"].map(sym))
    else:
        if reference is not None:
            LOGGER.warning("Gene reference has no '%s' column; Symbol left empty", symbol_col)
        stats.insert(1, "Symbol", pd.Series([None] * len(stats), dtype=object))

    return stats
