import logging
import re
from typing import Iterable, List, Optional, Sequence, Set

import pandas as pd

logger = logging.getLogger("atlasscope")


def build_blacklist(
    features: Iterable[str],
    patterns: Sequence[str] = (),
    extra: Iterable[str] = (),
) -> Set[str]:
    """Feature ids matching any regex in `patterns` (case-insensitive) plus `extra`."""
    compiled = [re.compile(p, flags=re.IGNORECASE) for p in (patterns or ())]
    out = set(map(str, extra or ()))
    for f in features:
        s = str(f)
        if any(rx.search(s) for rx in compiled):
            out.add(s)
    return out


def select_features(
    decomposition: pd.DataFrame,
    blacklist: Optional[Iterable[str]] = None,
    bio_threshold: float = 0.0,
    fdr_threshold: float = 0.05,
    n_top: Optional[int] = None,
) -> List[str]:
    """Rank features to drive neighbour search.

    Blacklisted ids are removed before anything else. Survivors need
    biological variance above `bio_threshold` and adjusted p-value below
    `fdr_threshold`; they are ordered by biological variance (descending)
    with ties broken by id. An empty list is a valid result.
    """
    bl = set(map(str, blacklist or ()))
    dec = decomposition.copy()
    dec.index = dec.index.astype(str)
    dec = dec.loc[~dec.index.isin(bl)]
    n_candidates = len(dec)
    sig_col = "fdr" if "fdr" in dec.columns else "p_value"
    keep = (dec["biological_variance"] > float(bio_threshold)) & (dec[sig_col] < float(fdr_threshold))
    dec = dec.loc[keep.to_numpy()]
    ranked = (
        dec.assign(_feature=dec.index.to_numpy())
        .sort_values(["biological_variance", "_feature"], ascending=[False, True], kind="mergesort")
    )
    selected = ranked["_feature"].tolist()
    if n_top is not None and int(n_top) > 0:
        selected = selected[: int(n_top)]
    logger.info(
        "Selected %d features (candidates after blacklist=%d, blacklisted=%d, %s<%g, bio>%g)",
        len(selected), n_candidates, len(decomposition) - n_candidates, sig_col, fdr_threshold, bio_threshold,
    )
    if not selected:
        logger.warning("No feature passed selection thresholds")
    return selected


def feature_table(
    decomposition: pd.DataFrame,
    blacklist: Optional[Iterable[str]] = None,
    selected: Optional[Sequence[str]] = None,
    prefix: str = "combined_",
) -> pd.DataFrame:
    """Per-feature metadata for `AnnData.var`: combined stats and selection flags."""
    tbl = decomposition.add_prefix(prefix)
    tbl.index = tbl.index.astype(str)
    bl = set(map(str, blacklist or ()))
    tbl["blacklisted"] = tbl.index.isin(bl)
    sel = list(selected or ())
    tbl["selected_for_correction"] = tbl.index.isin(sel)
    # 0 marks features that were not selected
    rank = pd.Series(range(1, len(sel) + 1), index=pd.Index(sel), dtype="int64")
    tbl["selection_rank"] = rank.reindex(tbl.index, fill_value=0).astype("int64")
    return tbl
