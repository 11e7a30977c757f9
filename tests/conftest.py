import numpy as np
import pandas as pd
import anndata as ad
import pytest
from scipy import sparse

from atlasscope.logging_utils import close_logger
from atlasscope.preprocess import log_normalize

N_FEATURES = 200
N_MARKERS = 20


def feature_names(n: int = N_FEATURES):
    names = [f"Gene{i:04d}" for i in range(n)]
    # a mitochondrial-looking id among the marker block, for blacklist checks
    names[0] = "MT-CO1"
    return names


def make_batch(
    name: str,
    n_cells: int,
    seed: int,
    n_features: int = N_FEATURES,
    shift: float = 0.5,
    features=None,
) -> ad.AnnData:
    """Two cell types with opposite marker blocks plus a per-gene batch effect."""
    rng = np.random.default_rng(seed)
    feats = list(features) if features is not None else feature_names(n_features)
    n_features = len(feats)
    base = np.random.default_rng(0).gamma(2.0, 1.0, n_features) + 0.2
    kind = rng.integers(0, 2, n_cells)
    fold = np.ones((n_cells, n_features))
    m = min(N_MARKERS, n_features // 4)
    fold[kind == 0, :m] = 4.0
    fold[kind == 0, m:2 * m] = 0.25
    fold[kind == 1, :m] = 0.25
    fold[kind == 1, m:2 * m] = 4.0
    batch_effect = np.exp(shift * rng.normal(size=n_features))
    size = rng.uniform(0.8, 1.2, size=(n_cells, 1))
    counts = rng.poisson(base * fold * batch_effect * size).astype(np.float32)
    adata = ad.AnnData(
        X=sparse.csr_matrix(counts),
        obs=pd.DataFrame({"cell_type": pd.Categorical(kind.astype(str))},
                         index=[f"{name}_cell{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=feats),
    )
    adata.obs["batch"] = pd.Categorical([name] * n_cells)
    return log_normalize(adata)


@pytest.fixture
def three_batches():
    """A (50 cells), B (80 cells), C (30 cells) over the same 200 features."""
    return {
        "A": make_batch("A", 50, seed=1),
        "B": make_batch("B", 80, seed=2),
        "C": make_batch("C", 30, seed=3),
    }


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    close_logger()
