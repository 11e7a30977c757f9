import logging
import anndata as ad
import numpy as np
import scanpy as sc

logger = logging.getLogger("atlasscope")

LOGCOUNTS = "logcounts"


def qc_filter(
    adata: ad.AnnData,
    min_genes: int = 200,
    min_cells: int = 0,
    max_pct_mito: float = 20.0,
    mito_prefix: str = "MT-",
) -> ad.AnnData:
    """Drop low-quality cells and rarely detected features.

    Cells need at least `min_genes` detected features and at most
    `max_pct_mito` percent of counts in features starting with `mito_prefix`
    (case-insensitive). Returns a filtered copy; QC metrics stay in `obs`.
    """
    out = adata.copy()
    out.var["mt"] = out.var_names.str.upper().str.startswith(str(mito_prefix).upper())
    sc.pp.calculate_qc_metrics(out, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True)
    keep = np.asarray(out.obs["n_genes_by_counts"] >= int(min_genes))
    if max_pct_mito is not None:
        keep &= np.asarray(out.obs["pct_counts_mt"] <= float(max_pct_mito))
    n_before = out.n_obs
    out = out[keep].copy()
    if min_cells and int(min_cells) > 0:
        sc.pp.filter_genes(out, min_cells=int(min_cells))
    logger.info("QC kept %d/%d cells, %d features", out.n_obs, n_before, out.n_vars)
    if out.n_obs == 0:
        raise ValueError("QC removed every cell; relax qc.min_genes / qc.max_pct_mito")
    return out


def log_normalize(adata: ad.AnnData, target_sum: float = 1e4) -> ad.AnnData:
    """Library-size normalize and log1p into `layers['logcounts']`; `X` keeps raw counts."""
    out = adata.copy()
    norm = sc.pp.normalize_total(out, target_sum=float(target_sum), inplace=False)["X"]
    out.layers[LOGCOUNTS] = norm
    sc.pp.log1p(out, layer=LOGCOUNTS)
    return out
