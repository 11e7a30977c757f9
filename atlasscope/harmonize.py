import logging
from typing import Dict, List, Mapping

import anndata as ad
import pandas as pd

from .errors import EmptyIntersectionError

logger = logging.getLogger("atlasscope")


def shared_features(datasets: Mapping[str, ad.AnnData]) -> List[str]:
    """Sorted intersection of feature ids; independent of batch iteration order."""
    common = None
    for adata in datasets.values():
        ids = set(map(str, adata.var_names))
        common = ids if common is None else (common & ids)
    return sorted(common or ())


def harmonize(datasets: Mapping[str, ad.AnnData]) -> Dict[str, ad.AnnData]:
    """Restrict every batch to the features shared by all batches.

    The shared features are put in sorted id order so the result does not
    depend on which batch comes first. Returned objects are AnnData views on
    the inputs; nothing is copied until a caller writes to one.
    """
    if not datasets:
        raise ValueError("harmonize needs at least one dataset")
    for batch, adata in datasets.items():
        if adata.n_vars == 0:
            raise ValueError(f"Batch '{batch}' has no features")
        if not adata.var_names.is_unique:
            dups = adata.var_names[adata.var_names.duplicated()].unique().tolist()
            raise ValueError(f"Batch '{batch}' has duplicate feature ids: {dups[:10]}")

    common = shared_features(datasets)
    if not common:
        raise EmptyIntersectionError(list(datasets.keys()))
    logger.info(
        "Harmonized %d batches to %d shared features (per-batch: %s)",
        len(datasets), len(common),
        ", ".join(f"{b}={a.n_vars}" for b, a in datasets.items()),
    )
    idx = pd.Index(common)
    return {batch: adata[:, idx] for batch, adata in datasets.items()}
