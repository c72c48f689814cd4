# src/celalign/mnn_utils.py
from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.neighbors import NearestNeighbors

from .errors import DataShapeError
from .records import MNNResult

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Mutual nearest neighbors
# ---------------------------------------------------------------------
def _knn(index_data: np.ndarray, query: np.ndarray, k: int, metric: str) -> Tuple[np.ndarray, np.ndarray]:
    k = min(int(k), index_data.shape[0])
    nn = NearestNeighbors(n_neighbors=k, metric=metric)
    nn.fit(index_data)
    dist, idx = nn.kneighbors(query)
    return dist, idx


def find_mutual_nn(
    reference: np.ndarray,
    target: np.ndarray,
    *,
    k_reference: int,
    k_target: int,
    metric: str = "euclidean",
) -> pd.DataFrame:
    """
    Positional pairs (reference_idx, target_idx) that are mutual neighbors.

    Every reference sample looks for `k_reference` nearest targets and every
    target for `k_target` nearest references.
    """
    _, ref_to_targ = _knn(target, reference, k_reference, metric)
    _, targ_to_ref = _knn(reference, target, k_target, metric)

    targ_sets = [set(row) for row in targ_to_ref]
    pairs = [
        (r, int(t))
        for r, row in enumerate(ref_to_targ)
        for t in row
        if r in targ_sets[int(t)]
    ]
    return pd.DataFrame(pairs, columns=["reference_idx", "target_idx"], dtype=int)


# ---------------------------------------------------------------------
# Tricube smoothing
# ---------------------------------------------------------------------
def tricube_average(
    values: np.ndarray,
    indices: np.ndarray,
    distances: np.ndarray,
    ndist: float = 3.0,
) -> np.ndarray:
    """
    Weighted average of `values` rows over each query's neighbors, with
    tricube weights whose bandwidth is `ndist` times the distance to the
    middle neighbor.
    """
    middle = int(np.ceil(indices.shape[1] / 2.0)) - 1
    bandwidth = np.maximum(distances[:, middle] * ndist, 1e-8)
    rel = np.minimum(distances / bandwidth[:, None], 1.0)
    tricube = (1.0 - rel ** 3) ** 3

    norm = tricube.sum(axis=1, keepdims=True)
    # every neighbor beyond the bandwidth: fall back to uniform weights
    flat = norm[:, 0] <= 0
    if flat.any():
        tricube[flat] = 1.0
        norm[flat] = tricube.shape[1]
    weights = tricube / norm

    out = np.zeros((indices.shape[0], values.shape[1]), dtype=float)
    for j in range(indices.shape[1]):
        out += values[indices[:, j]] * weights[:, j, None]
    return out


# ---------------------------------------------------------------------
# NeighborBatchCorrector
# ---------------------------------------------------------------------
def mnn_correct(
    reference: pd.DataFrame,
    target: pd.DataFrame,
    *,
    k_reference: int = 50,
    k_target: int = 5,
    ndist: float = 3.0,
    smooth_k: int = 20,
    subset_genes: Optional[Iterable[str]] = None,
    metric: str = "euclidean",
    smooth_isolated: bool = False,
) -> MNNResult:
    """
    Pull target samples (tumors) toward their mutual nearest neighbors in
    the reference domain (cell lines).

    Neighbors are searched on `subset_genes` only; the correction is applied
    to every gene of the target. The reference is returned unchanged.
    Target samples without any mutual pair get a zero correction unless
    `smooth_isolated` is set, and are reported in `isolated` either way.
    """
    if not pd.Index(reference.columns).equals(pd.Index(target.columns)):
        raise DataShapeError("Reference and target matrices have different gene columns")

    genes = pd.Index(target.columns)
    if subset_genes is None:
        subset = genes
    else:
        wanted = set(str(g) for g in subset_genes)
        subset = genes[genes.astype(str).isin(wanted)]
        if len(subset) != len(wanted):
            raise DataShapeError(
                f"{len(wanted) - len(subset)} alignment genes are not present in the matrices"
            )
    if len(subset) == 0:
        raise DataShapeError("No genes available for the mutual nearest neighbor search")

    ref_x = reference.to_numpy(dtype=float)
    targ_x = target.to_numpy(dtype=float)
    ref_sub = reference.loc[:, subset].to_numpy(dtype=float)
    targ_sub = target.loc[:, subset].to_numpy(dtype=float)

    pairs = find_mutual_nn(
        ref_sub,
        targ_sub,
        k_reference=k_reference,
        k_target=k_target,
        metric=metric,
    )
    LOGGER.info(
        "MNN: %d pairs between %d reference and %d target samples on %d genes",
        len(pairs),
        ref_x.shape[0],
        targ_x.shape[0],
        len(subset),
    )

    n_targ = targ_x.shape[0]
    correction = np.zeros_like(targ_x)
    anchors = np.unique(pairs["target_idx"].to_numpy()) if len(pairs) else np.array([], dtype=int)
    isolated_mask = np.ones(n_targ, dtype=bool)
    isolated_mask[anchors] = False

    if anchors.size > 0:
        # average correction per anchor target
        raw = ref_x[pairs["reference_idx"].to_numpy()] - targ_x[pairs["target_idx"].to_numpy()]
        averaged = (
            pd.DataFrame(raw)
            .groupby(pairs["target_idx"].to_numpy())
            .mean()
            .reindex(anchors)
            .to_numpy()
        )

        dist, idx = _knn(targ_sub[anchors], targ_sub, smooth_k, metric)
        smoothed = tricube_average(averaged, idx, dist, ndist=ndist)

        apply = ~isolated_mask if not smooth_isolated else np.ones(n_targ, dtype=bool)
        correction[apply] = smoothed[apply]

    isolated = tuple(str(s) for s in target.index[isolated_mask])
    if isolated:
        LOGGER.warning(
            "MNN: %d / %d target samples have no mutual neighbor (%s)",
            len(isolated),
            n_targ,
            "smoothed correction" if smooth_isolated and anchors.size else "left uncorrected",
        )

    corrected = pd.DataFrame(targ_x + correction, index=target.index, columns=target.columns)
    named_pairs = pd.DataFrame(
        {
            "cell_line": reference.index[pairs["reference_idx"].to_numpy()].astype(str),
            "tumor": target.index[pairs["target_idx"].to_numpy()].astype(str),
        }
    )
    return MNNResult(
        corrected=corrected,
        reference=reference,
        pairs=named_pairs,
        corrections=pd.DataFrame(correction, index=target.index, columns=target.columns),
        isolated=isolated,
    )
