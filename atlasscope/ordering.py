import logging
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .errors import OrderMismatchError

logger = logging.getLogger("atlasscope")

Priority = Tuple[float, int]


def compute_merge_order(batch_priority: Mapping[str, Priority], query: Optional[str] = None) -> List[str]:
    """Order batches by rank (ascending), then size (descending), then id.

    `query`, when given, is always merged last whether or not it appears in
    `batch_priority`.
    """
    items = [(str(b), p) for b, p in batch_priority.items() if query is None or str(b) != str(query)]
    bad = sorted(b for b, p in items if pd.isna(p[0]) or pd.isna(p[1]))
    if bad:
        raise ValueError(f"Missing rank or size for batches {bad}")
    ordered = sorted(items, key=lambda kv: (float(kv[1][0]), -int(kv[1][1]), kv[0]))
    order = [b for b, _ in ordered]
    if query is not None:
        order.append(str(query))
    return order


def priority_from_table(
    table: Optional[pd.DataFrame],
    sizes: Mapping[str, int],
    stage_order: Optional[Sequence[str]] = None,
) -> Dict[str, Priority]:
    """Build `{batch: (rank, size)}` for the batches in `sizes`.

    A numeric `rank` column wins over a categorical `stage` column, which is
    ranked by its position in `stage_order` (or by first appearance in the
    table). `n_cells` overrides dataset sizes when present. Batches absent from
    the table rank after every listed batch.
    """
    out: Dict[str, Priority] = {}
    if table is None or table.empty:
        for b, n in sizes.items():
            out[str(b)] = (0.0, int(n))
        return out

    tbl = table.copy()
    tbl["batch"] = tbl["batch"].astype(str)
    tbl = tbl.set_index("batch")
    if "rank" in tbl.columns:
        ranks = pd.to_numeric(tbl["rank"], errors="raise").astype(float)
        blank = sorted(ranks.index[ranks.isna()])
        if blank:
            raise ValueError(f"Blank rank in priority table for batches {blank}")
    else:
        stages = tbl["stage"].astype(str)
        levels = [str(s) for s in stage_order] if stage_order else list(dict.fromkeys(stages.tolist()))
        unknown = sorted(set(stages) - set(levels))
        if unknown:
            raise ValueError(f"Stages missing from correct.stage_order: {unknown}")
        ranks = stages.map({s: float(i) for i, s in enumerate(levels)})
    worst = float(ranks.max()) + 1.0 if len(ranks) else 0.0
    for b, n in sizes.items():
        b = str(b)
        if b in ranks.index:
            rank = float(ranks.loc[b])
        else:
            logger.warning("Batch '%s' missing from priority table; ranked last", b)
            rank = worst
        size = int(n)
        if "n_cells" in tbl.columns and b in tbl.index and pd.notna(tbl.loc[b, "n_cells"]):
            size = int(tbl.loc[b, "n_cells"])
        out[b] = (rank, size)
    return out


def validate_merge_order(order: Sequence[str], batches: Iterable[str]) -> None:
    order = [str(b) for b in order]
    expected = [str(b) for b in batches]
    counts = Counter(order)
    duplicated = sorted(b for b, c in counts.items() if c > 1)
    missing = sorted(set(expected) - set(order))
    unexpected = sorted(set(order) - set(expected))
    if duplicated or missing or unexpected:
        raise OrderMismatchError(missing=missing, unexpected=unexpected, duplicated=duplicated)
