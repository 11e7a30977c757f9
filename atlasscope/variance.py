"""Per-batch mean-variance modelling and cell-count weighted combination.

A decomposition is a DataFrame indexed by feature id with the columns in
`VARIANCE_COLUMNS`; `attrs["n_cells"]` records how many cells produced it.
"""
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse, stats
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from .preprocess import LOGCOUNTS

logger = logging.getLogger("atlasscope")

VARIANCE_COLUMNS = [
    "mean",
    "total_variance",
    "technical_variance",
    "biological_variance",
    "p_value",
    "fdr",
]


def _column_mean_var(X) -> Tuple[np.ndarray, np.ndarray]:
    n = X.shape[0]
    if sparse.issparse(X):
        X = X.tocsr()
        mean = np.asarray(X.mean(axis=0)).ravel()
        sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    else:
        X = np.asarray(X, dtype=np.float64)
        mean = X.mean(axis=0)
        sq = (X * X).mean(axis=0)
    var = (sq - mean ** 2) * (n / (n - 1))
    return mean.astype(np.float64), np.clip(var, 0.0, None).astype(np.float64)


def fit_trend(mean: np.ndarray, var: np.ndarray, frac: float = 0.3, min_mean: float = 0.0) -> np.ndarray:
    """LOWESS trend of variance on mean, anchored at the origin; returns fitted values for every feature."""
    use = (mean > min_mean) & (var > 0) & np.isfinite(var)
    if use.sum() < 3:
        # too few informative features; treat all observed variance as technical
        return var.copy()
    fit = lowess(var[use], mean[use], frac=float(frac), it=3, return_sorted=True)
    x, y = fit[:, 0], np.clip(fit[:, 1], 0.0, None)
    x, first = np.unique(x, return_index=True)
    y = y[first]
    if x[0] > 0:
        x = np.concatenate([[0.0], x])
        y = np.concatenate([[0.0], y])
    return np.interp(mean, x, y)


def _variance_pvalues(total: np.ndarray, tech: np.ndarray, df: float) -> np.ndarray:
    # scaled chi-square: df * total / tech ~ chi2(df) when variance is purely technical
    p = np.ones_like(total)
    ok = tech > 0
    p[ok] = stats.chi2.sf(df * total[ok] / tech[ok], df)
    return p


def _bh(p: np.ndarray) -> np.ndarray:
    if p.size == 0:
        return p
    return multipletests(p, method="fdr_bh")[1]


def model_feature_variance(
    X,
    features: Sequence[str],
    frac: float = 0.3,
    min_mean: float = 0.0,
) -> pd.DataFrame:
    """Decompose each feature's log-expression variance into technical and biological parts."""
    n = X.shape[0]
    if n < 2:
        raise ValueError(f"Variance modelling needs at least 2 cells, got {n}")
    if X.shape[1] != len(features):
        raise ValueError(f"Matrix has {X.shape[1]} columns but {len(features)} feature ids")
    mean, total = _column_mean_var(X)
    tech = fit_trend(mean, total, frac=frac, min_mean=min_mean)
    p = _variance_pvalues(total, tech, float(n - 1))
    out = pd.DataFrame(
        {
            "mean": mean,
            "total_variance": total,
            "technical_variance": tech,
            "biological_variance": total - tech,
            "p_value": p,
            "fdr": _bh(p),
        },
        index=pd.Index(list(features), name="feature"),
    )
    out.attrs["n_cells"] = int(n)
    return out


def _expression(adata: ad.AnnData, layer: Optional[str]):
    if layer and layer in adata.layers:
        return adata.layers[layer]
    if layer and layer != LOGCOUNTS:
        raise KeyError(f"Layer '{layer}' not found; available: {list(adata.layers.keys())}")
    if layer:
        logger.warning("Layer '%s' missing; modelling variance on X (assumed log-expression)", layer)
    return adata.X


def _materialize(X):
    # joblib workers receive plain arrays, never AnnData views
    if sparse.issparse(X):
        return sparse.csr_matrix(X)
    return np.asarray(X)


def estimate_variance(
    adata: ad.AnnData,
    layer: Optional[str] = LOGCOUNTS,
    frac: float = 0.3,
    min_mean: float = 0.0,
) -> pd.DataFrame:
    X = _expression(adata, layer)
    return model_feature_variance(X, list(map(str, adata.var_names)), frac=frac, min_mean=min_mean)


def estimate_variance_per_batch(
    datasets: Mapping[str, ad.AnnData],
    layer: Optional[str] = LOGCOUNTS,
    frac: float = 0.3,
    min_mean: float = 0.0,
    n_jobs: int = 1,
    backend: str = "loky",
) -> Dict[str, pd.DataFrame]:
    """Model every batch independently; batches run in parallel, result keeps input order."""
    batches = list(datasets.keys())
    payloads = [(_materialize(_expression(datasets[b], layer)), list(map(str, datasets[b].var_names))) for b in batches]
    if n_jobs == 1 or len(batches) < 2:
        results = [model_feature_variance(X, f, frac=frac, min_mean=min_mean) for X, f in payloads]
    else:
        results = Parallel(n_jobs=n_jobs, backend=backend)(
            delayed(model_feature_variance)(X, f, frac=frac, min_mean=min_mean) for X, f in payloads
        )
    out = dict(zip(batches, results))
    for b, dec in out.items():
        logger.info(
            "Variance model %s: cells=%d features=%d positive_bio=%d",
            b, dec.attrs.get("n_cells", -1), len(dec), int((dec["biological_variance"] > 0).sum()),
        )
    return out


def combine(decompositions: Sequence[pd.DataFrame], cell_counts: Sequence[int]) -> pd.DataFrame:
    """Cell-count weighted consensus of per-batch decompositions.

    Means and variance components are averaged with weights proportional to the
    number of cells per batch. Significance is recomputed from the pooled
    statistics (degrees of freedom summed over batches) rather than by
    combining per-batch p-values.
    """
    decs: List[pd.DataFrame] = list(decompositions)
    counts = np.asarray(list(cell_counts), dtype=np.float64)
    if not decs:
        raise ValueError("combine needs at least one decomposition")
    if len(decs) != counts.size:
        raise ValueError(f"Got {len(decs)} decompositions but {counts.size} cell counts")
    if (counts <= 0).any():
        raise ValueError(f"Cell counts must be positive: {counts.tolist()}")
    index = decs[0].index
    for i, d in enumerate(decs):
        if not d.index.equals(index):
            raise ValueError(f"Decomposition {i} has a different feature order; harmonize batches first")
        missing = set(VARIANCE_COLUMNS[:4]) - set(d.columns)
        if missing:
            raise ValueError(f"Decomposition {i} lacks columns {sorted(missing)}")

    w = counts / counts.sum()

    def _wmean(col: str) -> np.ndarray:
        return np.sum([wi * d[col].to_numpy(dtype=np.float64) for wi, d in zip(w, decs)], axis=0)

    total = _wmean("total_variance")
    tech = _wmean("technical_variance")
    dof = float(np.sum(counts - 1))
    p = _variance_pvalues(total, tech, max(dof, 1.0))
    out = pd.DataFrame(
        {
            "mean": _wmean("mean"),
            "total_variance": total,
            "technical_variance": tech,
            "biological_variance": total - tech,
            "p_value": p,
            "fdr": _bh(p),
        },
        index=index.copy(),
    )
    out.attrs["n_cells"] = int(counts.sum())
    return out
