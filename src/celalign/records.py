# src/celalign/records.py
"""
Immutable stage records.

Every stage of the alignment returns one of these and never touches its
inputs; the DataFrames inside are treated as read-only once wrapped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

import numpy as np
import pandas as pd

TUMOR = "tumor"
CELL_LINE = "cell_line"
DOMAINS = (TUMOR, CELL_LINE)


@dataclass(frozen=True)
class DomainData:
    """Expression (samples x genes) plus annotation indexed by the same sample ids."""
    domain: str
    expression: pd.DataFrame
    annotation: pd.DataFrame

    @property
    def n_samples(self) -> int:
        return int(self.expression.shape[0])

    @property
    def genes(self) -> pd.Index:
        return self.expression.columns


@dataclass(frozen=True)
class DomainEmbedding:
    domain: str
    centered: pd.DataFrame      # samples x genes, gene means removed
    pca: pd.DataFrame           # samples x PCs
    umap: pd.DataFrame          # samples x 2
    variance_ratio: np.ndarray

    @property
    def sample_ids(self) -> pd.Index:
        return self.pca.index


@dataclass(frozen=True)
class ClusterAssignment:
    domain: str
    labels: pd.Series           # sample id -> int cluster
    resolution: float

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())


# ---------------------------------------------------------------------
# Differential-state test variants
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NoSignal:
    """One cluster only: every gene score is missing."""
    n_clusters: int = 1


@dataclass(frozen=True)
class PairwiseTest:
    """Two clusters: |moderated t|."""
    groups: Tuple[int, int]


@dataclass(frozen=True)
class MultiGroupTest:
    """More than two clusters: moderated F."""
    groups: Tuple[int, ...]


DETest = Union[NoSignal, PairwiseTest, MultiGroupTest]


@dataclass(frozen=True)
class DifferentialGeneScore:
    domain: str
    test: DETest
    scores: pd.Series               # NaN = missing, never zero-filled
    prior_df: Optional[float] = None

    def dense_rank(self) -> pd.Series:
        """Rank 1 = highest score, ties share a rank, missing stays missing."""
        return self.scores.rank(method="dense", ascending=False, na_option="keep")


@dataclass(frozen=True)
class DEGeneSelection:
    table: pd.DataFrame             # per-gene scores, ranks, best_rank, selected
    genes: FrozenSet[str]
    top_k: int

    def __len__(self) -> int:
        return len(self.genes)


@dataclass(frozen=True)
class ContrastiveBasis:
    vectors: pd.DataFrame           # genes x directions, ordered
    magnitudes: np.ndarray
    mode: str                       # "full" | "fast"

    @property
    def n_directions(self) -> int:
        return int(self.vectors.shape[1])


@dataclass(frozen=True)
class MNNResult:
    corrected: pd.DataFrame         # target (tumor) domain, full gene width
    reference: pd.DataFrame         # reference (cell line) domain, untouched
    pairs: pd.DataFrame             # columns: cell_line, tumor
    corrections: pd.DataFrame       # applied correction per tumor
    isolated: Tuple[str, ...]

    @property
    def n_isolated(self) -> int:
        return len(self.isolated)


@dataclass(frozen=True)
class AlignedEmbedding:
    matrix: pd.DataFrame            # combined corrected matrix, tumors first
    annotation: pd.DataFrame
    embedding: DomainEmbedding
    clusters: ClusterAssignment


@dataclass(frozen=True)
class AlignmentResult:
    aligned: AlignedEmbedding
    gene_stats: pd.DataFrame
    de_selection: DEGeneSelection
    removal_basis: ContrastiveBasis
    mnn: MNNResult
    stages: Tuple[str, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def cluster_labels(self) -> pd.Series:
        return self.aligned.clusters.labels
