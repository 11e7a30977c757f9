import itertools

import numpy as np
import pytest

from atlasscope.errors import EmptyIntersectionError
from atlasscope.harmonize import harmonize, shared_features

from conftest import make_batch


@pytest.fixture
def overlapping():
    return {
        "x": make_batch("x", 10, seed=1, features=["g1", "g2", "g3", "g4", "g5"]),
        "y": make_batch("y", 12, seed=2, features=["g5", "g3", "g9", "g1", "g2"]),
        "z": make_batch("z", 8, seed=3, features=["g2", "g8", "g1", "g3", "g5", "g7"]),
    }


def test_harmonize_is_independent_of_batch_order(overlapping):
    """Every permutation of the input mapping yields the same feature content and order."""
    expected = None
    for perm in itertools.permutations(overlapping.keys()):
        out = harmonize({k: overlapping[k] for k in perm})
        for adata in out.values():
            feats = list(adata.var_names)
            if expected is None:
                expected = feats
            assert feats == expected
    assert expected == ["g1", "g2", "g3", "g5"]


def test_harmonize_keeps_values_and_batches(overlapping):
    out = harmonize(overlapping)
    assert list(out.keys()) == ["x", "y", "z"]
    y = overlapping["y"]
    got = out["y"][:, "g3"].X.toarray().ravel()
    want = y[:, "g3"].X.toarray().ravel()
    np.testing.assert_array_equal(got, want)
    assert out["y"].n_obs == y.n_obs


def test_harmonize_does_not_touch_inputs(overlapping):
    before = {k: list(a.var_names) for k, a in overlapping.items()}
    harmonize(overlapping)
    assert {k: list(a.var_names) for k, a in overlapping.items()} == before


def test_empty_intersection_raises():
    datasets = {
        "a": make_batch("a", 5, seed=1, features=["g1", "g2", "g3", "g4"]),
        "b": make_batch("b", 5, seed=2, features=["h1", "h2", "h3", "h4"]),
    }
    with pytest.raises(EmptyIntersectionError) as exc:
        harmonize(datasets)
    assert exc.value.batches == ["a", "b"]


def test_harmonize_requires_input():
    with pytest.raises(ValueError):
        harmonize({})


def test_shared_features_single_batch_sorted():
    adata = make_batch("a", 5, seed=1, features=["g3", "g1", "g2", "g4"])
    assert shared_features({"a": adata}) == ["g1", "g2", "g3", "g4"]
