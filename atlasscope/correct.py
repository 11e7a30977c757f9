"""Ordered, sequential mutual-nearest-neighbour batch correction.

The first batch of the merge order seeds a running reference. Every later
batch is matched to that reference on the selected features, shifted by
smoothed correction vectors estimated on all features, and appended to it.
"""
import inspect
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse
from scipy.spatial.distance import cdist
from sklearn.decomposition import PCA
from sklearn.neighbors import NearestNeighbors

from .errors import EmptyFeatureSetError, InsufficientNeighboursError
from .ordering import validate_merge_order
from .preprocess import LOGCOUNTS

logger = logging.getLogger("atlasscope")

CORRECTED_KEY = "corrected"
LOST_VARIANCE_COLUMNS = ["step", "batch", "lost_variance", "n_pairs", "n_mnn_cells", "n_cells"]


@dataclass
class MNNStepResult:
    """Outcome of matching one incoming batch against the running reference.

    pairs: (n_pairs, 2) int array of (incoming row, reference row).
    correction: (n_incoming, n_features) vectors added to the incoming batch.
    lost_variance: fraction of the incoming batch's variance removed.
    """
    pairs: np.ndarray
    correction: np.ndarray
    lost_variance: float


class MNNBackend:
    """Neighbour search and batch-vector estimation for one merge step."""

    def step(self, reference: np.ndarray, incoming: np.ndarray, feature_idx: np.ndarray) -> MNNStepResult:
        raise NotImplementedError


def _cosine_normalize(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def find_mutual_pairs(reference: np.ndarray, incoming: np.ndarray, k: int = 20, n_jobs: Optional[int] = None) -> np.ndarray:
    """Pairs (i, j) where reference cell j is among incoming cell i's k nearest and vice versa."""
    if reference.shape[0] == 0 or incoming.shape[0] == 0:
        return np.empty((0, 2), dtype=np.int64)
    k_ref = max(1, min(int(k), reference.shape[0]))
    k_inc = max(1, min(int(k), incoming.shape[0]))
    nn_ref = NearestNeighbors(n_neighbors=k_ref, n_jobs=n_jobs).fit(reference)
    nn_inc = NearestNeighbors(n_neighbors=k_inc, n_jobs=n_jobs).fit(incoming)
    ref_of_inc = nn_ref.kneighbors(incoming, return_distance=False)
    inc_of_ref = nn_inc.kneighbors(reference, return_distance=False)

    cand_i = np.repeat(np.arange(incoming.shape[0]), k_ref)
    cand_j = ref_of_inc.ravel()
    mutual = (inc_of_ref[cand_j] == cand_i[:, None]).any(axis=1)
    return np.column_stack([cand_i[mutual], cand_j[mutual]]).astype(np.int64)


def smooth_correction(
    reference: np.ndarray,
    incoming: np.ndarray,
    pairs: np.ndarray,
    incoming_space: np.ndarray,
    sigma: float = 1.0,
) -> np.ndarray:
    """Per-pair vectors averaged per incoming MNN cell, then Gaussian-smoothed onto every incoming cell."""
    vectors = reference[pairs[:, 1]] - incoming[pairs[:, 0]]
    mnn_cells, inverse = np.unique(pairs[:, 0], return_inverse=True)
    summed = np.zeros((mnn_cells.size, incoming.shape[1]), dtype=np.float64)
    np.add.at(summed, inverse, vectors)
    per_cell = summed / np.bincount(inverse)[:, None]

    d2 = cdist(incoming_space, incoming_space[mnn_cells], metric="sqeuclidean")
    logw = -d2 / float(sigma)
    logw -= logw.max(axis=1, keepdims=True)
    w = np.exp(logw)
    w /= w.sum(axis=1, keepdims=True)
    return w @ per_cell


def lost_variance_fraction(incoming: np.ndarray, correction: np.ndarray) -> float:
    """Share of the batch's total variance removed by applying `correction`.

    Computed as `1 - totvar(incoming + correction) / totvar(incoming)` and
    clipped to [0, 1]; a correction that adds variance reports 0.
    """
    before = float(np.asarray(incoming, dtype=np.float64).var(axis=0).sum())
    if before == 0:
        return 0.0
    after = float((np.asarray(incoming, dtype=np.float64) + correction).var(axis=0).sum())
    return float(np.clip(1.0 - after / before, 0.0, 1.0))


class SklearnMNN(MNNBackend):
    """Default backend: scikit-learn neighbour search in a seeded PCA space."""

    def __init__(
        self,
        k: int = 20,
        sigma: float = 1.0,
        n_pcs: Optional[int] = 50,
        cos_norm: bool = True,
        seed: int = 0,
        n_jobs: Optional[int] = None,
    ):
        self.k = int(k)
        self.sigma = float(sigma)
        self.n_pcs = n_pcs
        self.cos_norm = bool(cos_norm)
        self.seed = int(seed)
        self.n_jobs = n_jobs

    def _search_space(self, reference: np.ndarray, incoming: np.ndarray):
        if self.cos_norm:
            reference = _cosine_normalize(reference)
            incoming = _cosine_normalize(incoming)
        if not self.n_pcs:
            return reference, incoming
        stacked = np.vstack([reference, incoming])
        n_comp = min(int(self.n_pcs), stacked.shape[0] - 1, stacked.shape[1])
        if n_comp < 1 or n_comp >= stacked.shape[1]:
            return reference, incoming
        pca = PCA(n_components=n_comp, svd_solver="randomized", random_state=self.seed)
        emb = pca.fit_transform(stacked)
        return emb[: reference.shape[0]], emb[reference.shape[0]:]

    def step(self, reference: np.ndarray, incoming: np.ndarray, feature_idx: np.ndarray) -> MNNStepResult:
        ref_space, inc_space = self._search_space(reference[:, feature_idx], incoming[:, feature_idx])
        pairs = find_mutual_pairs(ref_space, inc_space, k=self.k, n_jobs=self.n_jobs)
        if pairs.shape[0] == 0:
            return MNNStepResult(pairs=pairs, correction=np.zeros_like(incoming), lost_variance=0.0)
        correction = smooth_correction(reference, incoming, pairs, inc_space, sigma=self.sigma)
        return MNNStepResult(pairs=pairs, correction=correction, lost_variance=lost_variance_fraction(incoming, correction))


class ScanpyMNN(MNNBackend):
    """Backend wrapping `scanpy.external.pp.mnn_correct` (mnnpy), one pairwise call per step.

    The search runs on `var_subset` (the selected features) and the output
    stays in expression space (`cos_norm_out=False`), so the correction is the
    difference between mnnpy's corrected incoming rows and the input rows.
    Needs the `mnn` extra (`pip install AtlasScope[mnn]`).
    """

    def __init__(
        self,
        k: int = 20,
        sigma: float = 1.0,
        n_pcs: Optional[int] = 50,
        cos_norm: bool = True,
        var_adj: bool = True,
        n_jobs: Optional[int] = None,
    ):
        self.k = int(k)
        self.sigma = float(sigma)
        self.n_pcs = n_pcs
        self.cos_norm = bool(cos_norm)
        self.var_adj = bool(var_adj)
        self.n_jobs = n_jobs

    @staticmethod
    def _pairs_from(mnn_list) -> np.ndarray:
        if not mnn_list:
            return np.empty((0, 2), dtype=np.int64)
        df = pd.DataFrame(mnn_list[0])
        if {"new cell", "ref cell"} <= set(df.columns):
            cols = ["new cell", "ref cell"]
        else:
            cols = list(df.columns[:2])
        return df[cols].to_numpy(dtype=np.int64).reshape(-1, 2)

    def step(self, reference: np.ndarray, incoming: np.ndarray, feature_idx: np.ndarray) -> MNNStepResult:
        import scanpy.external as sce

        var_index = [str(i) for i in range(reference.shape[1])]
        var_subset = [var_index[i] for i in feature_idx]
        svd_dim = int(self.n_pcs) if self.n_pcs and int(self.n_pcs) < len(var_subset) else None
        corrected, mnn_list, _ = sce.pp.mnn_correct(
            reference.astype(np.float32),
            incoming.astype(np.float32),
            var_index=var_index,
            var_subset=var_subset,
            k=self.k,
            sigma=self.sigma,
            cos_norm_in=self.cos_norm,
            cos_norm_out=False,
            svd_dim=svd_dim,
            var_adj=self.var_adj,
            do_concatenate=True,
            n_jobs=self.n_jobs,
        )
        if isinstance(corrected, (list, tuple)):
            corrected_inc = np.asarray(corrected[-1], dtype=np.float64)
        else:
            corrected_inc = np.asarray(corrected, dtype=np.float64)[reference.shape[0]:]
        correction = corrected_inc - incoming
        pairs = self._pairs_from(mnn_list)
        return MNNStepResult(pairs=pairs, correction=correction, lost_variance=lost_variance_fraction(incoming, correction))


BACKENDS = {"sklearn": SklearnMNN, "mnnpy": ScanpyMNN}


def make_backend(name: str = "sklearn", **kwargs) -> MNNBackend:
    """Instantiate a registered backend; unknown keyword arguments are dropped with a debug log."""
    key = str(name or "sklearn").lower()
    if key not in BACKENDS:
        raise ValueError(f"Unknown correct.backend '{name}'; choose from {sorted(BACKENDS)}")
    cls = BACKENDS[key]
    accepted = set(inspect.signature(cls.__init__).parameters) - {"self"}
    dropped = sorted(k for k in kwargs if k not in accepted)
    if dropped:
        logger.debug("Backend %s ignores parameters %s", key, dropped)
    return cls(**{k: v for k, v in kwargs.items() if k in accepted})


@dataclass
class CorrectedDataset:
    adata: ad.AnnData
    lost_variance: pd.DataFrame
    merge_order: List[str] = field(default_factory=list)

    @property
    def corrected(self) -> np.ndarray:
        return self.adata.obsm[CORRECTED_KEY]


def _dense(adata: ad.AnnData, layer: Optional[str]) -> np.ndarray:
    X = adata.layers[layer] if (layer and layer in adata.layers) else adata.X
    if sparse.issparse(X):
        X = X.toarray()
    return np.array(X, dtype=np.float64, copy=True)


def correct(
    datasets: Mapping[str, ad.AnnData],
    order: Sequence[str],
    selected_features: Sequence[str],
    backend: Optional[MNNBackend] = None,
    layer: Optional[str] = LOGCOUNTS,
    batch_key: str = "batch",
    progress_callback: Optional[Callable[[str], None]] = None,
) -> CorrectedDataset:
    """Merge batches in `order`, correcting each against everything merged before it.

    Neighbours are searched on `selected_features` only; the estimated
    correction is applied to every feature. The first batch is the seed and is
    never modified. Inputs are left untouched.
    """
    order = [str(b) for b in order]
    by_id = {str(b): a for b, a in datasets.items()}
    if len(by_id) != len(datasets):
        raise ValueError(f"Batch ids collide once converted to strings: {list(datasets.keys())}")
    datasets = by_id
    validate_merge_order(order, datasets.keys())
    if len(selected_features) == 0:
        raise EmptyFeatureSetError()

    features = datasets[order[0]].var_names
    for b in order[1:]:
        if not datasets[b].var_names.equals(features):
            raise ValueError(f"Batch '{b}' features differ from batch '{order[0]}'; harmonize batches first")
    feature_idx = features.get_indexer(pd.Index([str(f) for f in selected_features]))
    if (feature_idx < 0).any():
        absent = [str(f) for f, i in zip(selected_features, feature_idx) if i < 0]
        raise ValueError(f"Selected features not present in the harmonized feature set: {absent[:10]}")

    backend = backend or SklearnMNN()
    running = _dense(datasets[order[0]], layer)
    logger.info("Correction seed: batch %s (%d cells, %d features, %d selected)",
                order[0], running.shape[0], running.shape[1], feature_idx.size)
    records: List[Dict] = []
    n_steps = len(order) - 1
    for step, b in enumerate(order[1:], start=1):
        if progress_callback:
            progress_callback(f"Correct · step {step}/{n_steps}: {b}")
        incoming = _dense(datasets[b], layer)
        res = backend.step(running, incoming, feature_idx)
        n_pairs = int(np.asarray(res.pairs).shape[0])
        if n_pairs == 0:
            raise InsufficientNeighboursError(b, step, running.shape[0])
        correction = np.asarray(res.correction, dtype=np.float64)
        if correction.shape != incoming.shape:
            raise ValueError(f"Step {step}: correction shape {correction.shape} != batch shape {incoming.shape}")
        lost = float(res.lost_variance)
        if not np.isfinite(lost):
            raise ValueError(f"Step {step}: lost variance for batch '{b}' is not finite")
        running = np.vstack([running, incoming + correction])
        records.append({
            "step": step,
            "batch": b,
            "lost_variance": lost,
            "n_pairs": n_pairs,
            "n_mnn_cells": int(np.unique(np.asarray(res.pairs)[:, 0]).size),
            "n_cells": int(running.shape[0]),
        })
        logger.info("Correction step %d/%d: batch %s pairs=%d lost_variance=%.4f reference_cells=%d",
                    step, n_steps, b, n_pairs, lost, running.shape[0])

    obs_names = [n for b in order for n in datasets[b].obs_names]
    index_unique = "-" if len(set(obs_names)) != len(obs_names) else None
    merged = ad.concat(
        [datasets[b] for b in order], axis=0, join="inner", merge="same",
        label=batch_key, keys=order, index_unique=index_unique,
    )
    merged.obsm[CORRECTED_KEY] = running
    merged.var["selected_for_correction"] = merged.var_names.isin(list(map(str, selected_features)))
    lost_df = pd.DataFrame.from_records(records, columns=LOST_VARIANCE_COLUMNS)
    merged.uns["merge_order"] = list(order)
    merged.uns["lost_variance"] = lost_df
    return CorrectedDataset(adata=merged, lost_variance=lost_df, merge_order=list(order))
