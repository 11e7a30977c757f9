import numpy as np
import pytest

from atlasscope.correct import (
    CORRECTED_KEY,
    MNNBackend,
    MNNStepResult,
    ScanpyMNN,
    SklearnMNN,
    correct,
    find_mutual_pairs,
    lost_variance_fraction,
    make_backend,
)
from atlasscope.errors import EmptyFeatureSetError, InsufficientNeighboursError, OrderMismatchError
from atlasscope.ordering import compute_merge_order
from atlasscope.preprocess import LOGCOUNTS


class ConstantShift(MNNBackend):
    """Adds a fixed vector to every incoming cell and records what it saw."""

    def __init__(self, value=1.0, lost=0.1):
        self.value = value
        self.lost = lost
        self.calls = []

    def step(self, reference, incoming, feature_idx):
        self.calls.append((reference.shape[0], incoming.shape[0], tuple(feature_idx)))
        pairs = np.array([[0, 0], [1, 1]])
        return MNNStepResult(pairs=pairs, correction=np.full(incoming.shape, self.value), lost_variance=self.lost)


class NoPairs(MNNBackend):
    def step(self, reference, incoming, feature_idx):
        return MNNStepResult(pairs=np.empty((0, 2), dtype=int), correction=np.zeros_like(incoming), lost_variance=0.0)


class NaNLoss(ConstantShift):
    def step(self, reference, incoming, feature_idx):
        res = super().step(reference, incoming, feature_idx)
        res.lost_variance = float("nan")
        return res


def _dense(adata):
    return adata.layers[LOGCOUNTS].toarray()


SELECTED = ["Gene0001", "Gene0002", "Gene0021"]


def test_first_batch_is_untouched_seed(three_batches):
    backend = ConstantShift(value=2.0)
    res = correct(three_batches, ["B", "A", "C"], SELECTED, backend=backend)
    corrected = res.adata.obsm[CORRECTED_KEY]
    np.testing.assert_array_equal(corrected[:80], _dense(three_batches["B"]))
    np.testing.assert_allclose(corrected[80:130], _dense(three_batches["A"]) + 2.0)


def test_correction_applies_to_all_features(three_batches):
    res = correct(three_batches, ["B", "A", "C"], SELECTED, backend=ConstantShift(value=1.0))
    corrected = res.adata.obsm[CORRECTED_KEY]
    # a feature never used for neighbour search still moves
    j = list(three_batches["A"].var_names).index("Gene0150")
    np.testing.assert_allclose(corrected[80:130, j], _dense(three_batches["A"])[:, j] + 1.0)
    assert corrected.shape == (160, 200)


def test_running_reference_grows_in_order(three_batches):
    backend = ConstantShift()
    res = correct(three_batches, ["B", "A", "C"], SELECTED, backend=backend)
    assert [c[0] for c in backend.calls] == [80, 130]
    assert [c[1] for c in backend.calls] == [50, 30]
    idx = list(three_batches["A"].var_names.get_indexer(SELECTED))
    assert all(list(c[2]) == idx for c in backend.calls)
    assert list(res.adata.obs["batch"].astype(str).iloc[[0, 80, 130]]) == ["B", "A", "C"]


def test_lost_variance_is_complete(three_batches):
    res = correct(three_batches, ["B", "A", "C"], SELECTED, backend=ConstantShift(lost=0.25))
    lv = res.lost_variance
    assert list(lv["batch"]) == ["A", "C"]
    assert list(lv["step"]) == [1, 2]
    assert not lv["lost_variance"].isna().any()
    assert res.adata.uns["merge_order"] == ["B", "A", "C"]


@pytest.mark.parametrize("order", [["B", "A"], ["B", "A", "C", "A"], ["B", "A", "D"]])
def test_bad_order_fails_before_any_work(three_batches, order):
    backend = ConstantShift()
    with pytest.raises(OrderMismatchError):
        correct(three_batches, order, SELECTED, backend=backend)
    assert backend.calls == []


def test_empty_selection_fails_fast(three_batches):
    backend = ConstantShift()
    with pytest.raises(EmptyFeatureSetError):
        correct(three_batches, ["B", "A", "C"], [], backend=backend)
    assert backend.calls == []


def test_no_pairs_raises_with_batch_and_step(three_batches):
    with pytest.raises(InsufficientNeighboursError) as exc:
        correct(three_batches, ["B", "A", "C"], SELECTED, backend=NoPairs())
    assert exc.value.batch == "A"
    assert exc.value.step == 1


def test_non_finite_lost_variance_rejected(three_batches):
    with pytest.raises(ValueError):
        correct(three_batches, ["B", "A", "C"], SELECTED, backend=NaNLoss())


def test_unknown_selected_feature_rejected(three_batches):
    with pytest.raises(ValueError):
        correct(three_batches, ["B", "A", "C"], ["NotAGene"], backend=ConstantShift())


def test_inputs_not_mutated(three_batches):
    before = {b: _dense(a).copy() for b, a in three_batches.items()}
    correct(three_batches, ["B", "A", "C"], SELECTED, backend=ConstantShift(value=3.0))
    for b, a in three_batches.items():
        np.testing.assert_array_equal(_dense(a), before[b])
        assert CORRECTED_KEY not in a.obsm


def test_three_batch_scenario_with_default_backend(three_batches):
    """A(50), B(80), C(30): B seeds, then 130 and 160 cells, two diagnostic rows."""
    sizes = {b: a.n_obs for b, a in three_batches.items()}
    order = compute_merge_order({b: (0, n) for b, n in sizes.items()})
    assert order == ["B", "A", "C"]
    selected = [f"Gene{i:04d}" for i in range(1, 40)]
    res = correct(three_batches, order, selected, backend=SklearnMNN(k=10, n_pcs=10, seed=0))
    corrected = res.adata.obsm[CORRECTED_KEY]
    assert corrected.shape[0] == 160
    np.testing.assert_array_equal(corrected[:80], _dense(three_batches["B"]))
    assert list(res.lost_variance["n_cells"]) == [130, 160]
    assert len(res.lost_variance) == 2
    assert np.isfinite(res.lost_variance["lost_variance"]).all()
    assert (res.lost_variance["n_pairs"] > 0).all()


def test_default_backend_is_reproducible(three_batches):
    selected = [f"Gene{i:04d}" for i in range(1, 40)]
    r1 = correct(three_batches, ["B", "A", "C"], selected, backend=SklearnMNN(k=10, n_pcs=10, seed=7))
    r2 = correct(three_batches, ["B", "A", "C"], selected, backend=SklearnMNN(k=10, n_pcs=10, seed=7))
    np.testing.assert_array_equal(r1.adata.obsm[CORRECTED_KEY], r2.adata.obsm[CORRECTED_KEY])
    assert r1.lost_variance.equals(r2.lost_variance)


def test_default_backend_pulls_batch_towards_reference(three_batches):
    selected = [f"Gene{i:04d}" for i in range(1, 40)]
    pair = {"B": three_batches["B"], "A": three_batches["A"]}
    res = correct(pair, ["B", "A"], selected, backend=SklearnMNN(k=10, n_pcs=10, cos_norm=False))
    corrected = res.adata.obsm[CORRECTED_KEY]
    ref_mean = corrected[:80].mean(axis=0)
    before = np.linalg.norm(_dense(three_batches["A"]).mean(axis=0) - ref_mean)
    after = np.linalg.norm(corrected[80:].mean(axis=0) - ref_mean)
    assert after < before


def test_find_mutual_pairs_simple():
    ref = np.array([[0.0, 0.0], [10.0, 10.0]])
    inc = np.array([[0.1, 0.0], [10.0, 9.9], [5.0, 5.1]])
    pairs = find_mutual_pairs(ref, inc, k=1)
    assert sorted(map(tuple, pairs.tolist())) == [(0, 0), (1, 1)]


def _removed_share(before, after):
    tot = before.var(axis=0).sum()
    return float(np.clip(1.0 - after.var(axis=0).sum() / tot, 0.0, 1.0))


def test_lost_variance_fraction_measures_removed_variance():
    rng = np.random.default_rng(0)
    x = rng.normal(size=(40, 5))
    assert lost_variance_fraction(x, np.zeros_like(x)) == 0.0
    # a uniform shift moves the batch without removing any variance
    assert lost_variance_fraction(x, np.tile([1.0, -2.0, 0, 0, 0], (40, 1))) == 0.0
    # shrinking every cell halfway to the batch mean removes three quarters of it
    shrink = -0.5 * (x - x.mean(axis=0))
    assert lost_variance_fraction(x, shrink) == pytest.approx(0.75)
    # corrections that add variance report no loss
    assert lost_variance_fraction(x, x) == 0.0
    assert lost_variance_fraction(np.ones((10, 3)), rng.normal(size=(10, 3))) == 0.0


def test_reported_lost_variance_matches_applied_correction(three_batches):
    """Each diagnostic row equals the variance actually removed from that batch."""
    selected = [f"Gene{i:04d}" for i in range(1, 40)]
    res = correct(three_batches, ["B", "A", "C"], selected, backend=SklearnMNN(k=10, n_pcs=10))
    corrected = res.adata.obsm[CORRECTED_KEY]
    lv = res.lost_variance.set_index("batch")["lost_variance"]
    assert lv["A"] == pytest.approx(_removed_share(_dense(three_batches["A"]), corrected[80:130]), abs=1e-9)
    assert lv["C"] == pytest.approx(_removed_share(_dense(three_batches["C"]), corrected[130:]), abs=1e-9)


def test_integer_batch_ids(three_batches):
    datasets = {1: three_batches["B"], 2: three_batches["A"]}
    res = correct(datasets, [1, 2], SELECTED, backend=ConstantShift())
    assert res.merge_order == ["1", "2"]
    assert list(res.lost_variance["batch"]) == ["2"]
    assert res.adata.obsm[CORRECTED_KEY].shape == (130, 200)


def test_colliding_batch_ids_rejected(three_batches):
    with pytest.raises(ValueError):
        correct({1: three_batches["B"], "1": three_batches["A"]}, ["1"], SELECTED, backend=ConstantShift())


def test_make_backend_by_name():
    backend = make_backend("sklearn", k=7, seed=3, var_adj=False)
    assert isinstance(backend, SklearnMNN)
    assert (backend.k, backend.seed) == (7, 3)
    mnn = make_backend("MNNPY", k=5, seed=3)
    assert isinstance(mnn, ScanpyMNN)
    assert mnn.k == 5
    with pytest.raises(ValueError):
        make_backend("harmony")


def test_mnnpy_backend_corrects_ordered_pair(three_batches):
    pytest.importorskip("mnnpy")
    selected = [f"Gene{i:04d}" for i in range(1, 40)]
    pair = {"B": three_batches["B"], "A": three_batches["A"]}
    res = correct(pair, ["B", "A"], selected, backend=ScanpyMNN(k=10, n_pcs=10))
    corrected = res.adata.obsm[CORRECTED_KEY]
    assert corrected.shape == (130, 200)
    np.testing.assert_array_equal(corrected[:80], _dense(three_batches["B"]))
    assert int(res.lost_variance["n_pairs"].iloc[0]) > 0
    lost = float(res.lost_variance["lost_variance"].iloc[0])
    assert lost == pytest.approx(_removed_share(_dense(three_batches["A"]), corrected[80:]), abs=1e-6)
