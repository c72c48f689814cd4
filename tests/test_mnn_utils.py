# tests/test_mnn_utils.py

import numpy as np
import pandas as pd
import pytest

import celalign.mnn_utils as mnn
from celalign.errors import DataShapeError
from celalign.mnn_utils import find_mutual_nn, mnn_correct, tricube_average


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def shifted_pair(n=30, n_genes=5, shifted=("G3", "G4"), shift=5.0, seed=0):
    """Target = reference + small noise, plus a shift on the `shifted` genes."""
    rng = np.random.default_rng(seed)
    genes = [f"G{j}" for j in range(n_genes)]
    ref = pd.DataFrame(
        rng.normal(0.0, 3.0, size=(n, n_genes)),
        index=[f"CL{i}" for i in range(n)],
        columns=genes,
    )
    targ = ref.to_numpy() + rng.normal(0.0, 0.01, size=(n, n_genes))
    targ = pd.DataFrame(targ, index=[f"T{i}" for i in range(n)], columns=genes)
    targ.loc[:, list(shifted)] += shift
    return ref, targ


def one_gene(values, prefix):
    return pd.DataFrame({"G0": values}, index=[f"{prefix}{i}" for i in range(len(values))])


# -----------------------------------------------------------------------------
# find_mutual_nn
# -----------------------------------------------------------------------------
def test_find_mutual_nn_simple():
    ref = np.array([[0.0], [10.0]])
    targ = np.array([[0.1], [10.1]])

    pairs = find_mutual_nn(ref, targ, k_reference=1, k_target=1)

    assert sorted(map(tuple, pairs.to_numpy())) == [(0, 0), (1, 1)]


def test_find_mutual_nn_requires_both_directions():
    ref = np.array([[0.0], [10.0]])
    targ = np.array([[-0.2], [0.5], [10.2]])

    pairs = find_mutual_nn(ref, targ, k_reference=1, k_target=1)

    assert sorted(map(tuple, pairs.to_numpy())) == [(0, 0), (1, 2)]


# -----------------------------------------------------------------------------
# tricube_average
# -----------------------------------------------------------------------------
def test_tricube_average_weights_nearer_rows():
    values = np.array([[0.0], [10.0]])
    indices = np.array([[0, 1]])
    distances = np.array([[0.1, 0.2]])

    out = tricube_average(values, indices, distances, ndist=3.0)

    assert 0.0 < out[0, 0] < 5.0


def test_tricube_average_uniform_fallback():
    values = np.array([[2.0], [4.0]])
    # both neighbors beyond a bandwidth narrower than the middle distance
    out = tricube_average(values, np.array([[0, 1]]), np.array([[1.0, 1.0]]), ndist=0.5)
    assert out[0, 0] == pytest.approx(3.0)


# -----------------------------------------------------------------------------
# mnn_correct
# -----------------------------------------------------------------------------
def test_reference_returned_unchanged():
    ref, targ = shifted_pair()
    before = ref.copy()

    res = mnn_correct(ref, targ, k_reference=3, k_target=3, smooth_k=5, subset_genes=["G0", "G1", "G2"])

    assert res.reference is ref
    pd.testing.assert_frame_equal(ref, before)


def test_correction_removes_shift_outside_search_genes():
    ref, targ = shifted_pair()

    res = mnn_correct(ref, targ, k_reference=1, k_target=1, smooth_k=5, subset_genes=["G0", "G1", "G2"])

    assert res.n_isolated == 0
    assert res.corrected.index.equals(targ.index)
    np.testing.assert_allclose(res.corrected.to_numpy(), ref.to_numpy(), atol=0.1)
    assert set(res.pairs.columns) == {"cell_line", "tumor"}
    assert len(res.pairs) == len(ref)


def test_isolated_target_left_uncorrected():
    ref = one_gene([0.0, 10.0], "CL")
    targ = one_gene([-0.2, 0.5, 10.2], "T")

    res = mnn_correct(ref, targ, k_reference=1, k_target=1, smooth_k=1)

    assert res.isolated == ("T1",)
    assert res.corrected.loc["T1", "G0"] == pytest.approx(0.5)
    assert res.corrected.loc["T0", "G0"] == pytest.approx(0.0)
    assert res.corrected.loc["T2", "G0"] == pytest.approx(10.0)
    assert res.corrections.loc["T1", "G0"] == 0.0


def test_isolated_target_smoothed_on_request():
    ref = one_gene([0.0, 10.0], "CL")
    targ = one_gene([-0.2, 0.5, 10.2], "T")

    res = mnn_correct(ref, targ, k_reference=1, k_target=1, smooth_k=1, smooth_isolated=True)

    assert res.isolated == ("T1",)
    assert res.corrected.loc["T1", "G0"] == pytest.approx(0.7)


def test_no_pairs_leaves_target_unchanged(monkeypatch):
    # with k >= 1 the closest cross-domain pair is always mutual, so an empty pair table needs a stubbed search
    ref, targ = shifted_pair(n=10)
    monkeypatch.setattr(
        mnn,
        "find_mutual_nn",
        lambda *a, **k: pd.DataFrame(columns=["reference_idx", "target_idx"], dtype=int),
    )

    res = mnn_correct(ref, targ, k_reference=3, k_target=3)

    pd.testing.assert_frame_equal(res.corrected, targ)
    assert res.n_isolated == len(targ)
    assert res.pairs.empty


def test_gene_columns_must_match():
    ref, targ = shifted_pair()
    with pytest.raises(DataShapeError):
        mnn_correct(ref, targ[targ.columns[::-1]])


def test_subset_genes_must_exist():
    ref, targ = shifted_pair()
    with pytest.raises(DataShapeError):
        mnn_correct(ref, targ, subset_genes=["G0", "NOPE"])
