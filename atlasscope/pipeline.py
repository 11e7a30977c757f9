from typing import Optional, Literal, Tuple, List, Callable, Dict, Any, Mapping, Sequence
import os

# Configure BLAS/OMP threads before importing numpy/scipy.
# Use a balanced default based on CPU cores, but allow user overrides via env.
_cpu = os.cpu_count() or 8
_threads_default = str(max(1, min(32, _cpu // 2)))
for _k in ("OPENBLAS_NUM_THREADS", "OMP_NUM_THREADS", "MKL_NUM_THREADS", "NUMEXPR_MAX_THREADS"):
    os.environ.setdefault(_k, _threads_default)
del _k, _cpu, _threads_default

import json
import logging
import time

import anndata as ad
import numpy as np
import pandas as pd

from .config import (
    load_params_yaml,
    deep_update,
    get_param,
    fingerprint_stages,
    fingerprint_inputs,
)
from .correct import CorrectedDataset, MNNBackend, correct, make_backend, CORRECTED_KEY, LOST_VARIANCE_COLUMNS
from .errors import EmptyFeatureSetError
from .features import build_blacklist, feature_table, select_features
from .harmonize import harmonize
from .io import (
    ensure_dir,
    load_checkpoint,
    read_blacklist,
    read_datasets,
    read_feature_list,
    read_priority_table,
    save_checkpoint,
    write_feature_list,
)
from .logging_utils import setup_logger
from .ordering import compute_merge_order, priority_from_table
from .preprocess import LOGCOUNTS, log_normalize, qc_filter
from .variance import combine, estimate_variance_per_batch

logger = logging.getLogger("atlasscope")

STAGE_ORDER = ["load_inputs", "model_variance", "select_features", "correct", "downstream", "write_outputs"]


def _progress_iter(iterator, desc: str = "", total: Optional[int] = None, show: bool = False):
    """Terminal-friendly progress iterator.
    - TTY: Rich single-line bar; prints start/done summaries.
    - Non-TTY: start/done prints only.
    """
    if not show:
        return iterator
    _desc = desc or "Working"
    if total is None:
        try:
            total = len(iterator)
        except TypeError:
            total = None
    from rich.console import Console as _Console
    from rich.progress import (
        Progress as _Progress,
        BarColumn as _Bar,
        TextColumn as _Text,
        TimeElapsedColumn as _TimeElapsed,
        MofNCompleteColumn as _MofN,
    )
    _con = _Console(stderr=True)

    def _gen():
        start_t = time.perf_counter()
        c = 0
        _con.print(f">> Start: {_desc}")
        if _con.is_terminal:
            prog = _Progress(_Text("{task.description}: "), _Bar(), _MofN(), _Text("  elapsed:"), _TimeElapsed(),
                             transient=True, console=_con)
            task = prog.add_task(_desc, total=total)
            with prog:
                for item in iterator:
                    c += 1
                    prog.update(task, completed=c)
                    yield item
        else:
            for item in iterator:
                c += 1
                yield item
        elapsed = time.perf_counter() - start_t
        _con.print(f"<< Done: {_desc} in {elapsed:0.2f}s (items={c})")
    return _gen()


# ---- intermediate I/O ----

def _intermediate_dir(out_dir: str, cfg: Dict[str, Any]) -> str:
    dname = str(get_param(cfg, 'io.intermediate_dirname', 'intermediate')).strip() or 'intermediate'
    p = os.path.join(out_dir, dname)
    os.makedirs(p, exist_ok=True)
    return p


def _checkpoint_path(out_dir: str, cfg: Dict[str, Any], name: str) -> str:
    return os.path.join(_intermediate_dir(out_dir, cfg), name)


def _save_adata(adata: ad.AnnData, path: str, compression: Optional[str] = "lzf") -> None:
    logger.info("Saving %s", os.path.basename(path))
    adata.write_h5ad(path, compression=compression)


def _load_adata_checkpoint(path: str) -> Optional[ad.AnnData]:
    if not os.path.exists(path):
        return None
    try:
        return ad.read_h5ad(path)
    except (OSError, KeyError, ValueError) as e:
        logger.warning("Unreadable checkpoint %s (%s); stage will rerun", path, e)
        return None


def _save_fig(fig, out_dir: str, cfg: Dict[str, Any], name: str) -> None:
    import matplotlib.pyplot as plt
    try:
        if bool(get_param(cfg, 'io.write_figures', True)):
            p = os.path.join(_intermediate_dir(out_dir, cfg), f"{name}.png")
            fig.savefig(p, bbox_inches='tight', dpi=150)
    except (OSError, ValueError) as e:
        logger.warning("Could not save figure %s: %s", name, e)
    finally:
        plt.close(fig)


def _preferred_n_jobs(cfg: Dict[str, Any]) -> int:
    """Worker count for per-batch variance modelling.

    ATLASSCOPE_N_JOBS env var, then runtime.n_jobs, then ~1/3 of CPUs capped at 32.
    """
    v_raw = os.environ.get("ATLASSCOPE_N_JOBS", "").strip()
    if v_raw.isdigit() and int(v_raw) > 0:
        return int(v_raw)
    v_cfg = get_param(cfg, 'runtime.n_jobs')
    if v_cfg:
        return max(1, int(v_cfg))
    cpu = max(1, os.cpu_count() or 4)
    return max(1, min(32, cpu // 3 if cpu >= 3 else 1))


def _joblib_backend(cfg: Dict[str, Any]) -> str:
    return os.environ.get("ATLASSCOPE_JOBLIB_BACKEND", str(get_param(cfg, 'runtime.joblib_backend', 'loky')))


def _state_path(out_dir: str) -> str:
    return os.path.join(out_dir, "pipeline_state.json")


def _load_state(out_dir: str) -> Optional[dict]:
    p = _state_path(out_dir)
    if not os.path.exists(p):
        return None
    try:
        with open(p, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable state file %s: %s", p, e)
        return None


def _save_state(out_dir: str, last_completed: str, extra: Optional[dict] = None) -> None:
    state = {"last_completed": last_completed, "ts": time.time()}
    if extra:
        state.update(extra)
    with open(_state_path(out_dir), "w", encoding="utf-8") as f:
        json.dump(state, f, ensure_ascii=False, indent=2)


def plan_start_stage(
    state: Dict[str, Any],
    cur_fps: Dict[str, str],
    inputs_fp: str,
    resume_policy: str = "minimal",
) -> Tuple[str, List[str]]:
    """Pick the first stage to run; returns (stage, stages whose config changed)."""
    prev_fps = state.get("fingerprints") or {}
    changes = [s for s in STAGE_ORDER if prev_fps.get(s) != cur_fps.get(s)]
    policy = str(resume_policy or "minimal").lower()
    last = state.get("last_completed")

    def _after_last() -> Optional[str]:
        if last in STAGE_ORDER:
            return STAGE_ORDER[min(STAGE_ORDER.index(last) + 1, len(STAGE_ORDER) - 1)]
        return None

    if policy == "force" or not state:
        return STAGE_ORDER[0], changes
    if state.get("inputs_fingerprint") != inputs_fp:
        logger.info("Inputs changed since last run; starting from %s", STAGE_ORDER[0])
        return STAGE_ORDER[0], changes
    if policy == "auto":
        return _after_last() or STAGE_ORDER[0], changes
    # minimal (diff-based): earliest changed stage, else continue after last completed
    candidates = [s for s in (changes[0] if changes else None, _after_last()) if s]
    if not candidates:
        return STAGE_ORDER[0], changes
    return min(candidates, key=STAGE_ORDER.index), changes


# ---- stages ----

def load_inputs(
    paths: Mapping[str, str],
    cfg: Dict[str, Any],
    show_internal_progress: bool = False,
) -> Dict[str, ad.AnnData]:
    """Read, QC-filter and log-normalize every batch."""
    batch_key = str(get_param(cfg, 'io.batch_key', 'batch'))
    raw = read_datasets(paths, batch_key=batch_key)
    out: Dict[str, ad.AnnData] = {}
    for b in _progress_iter(list(raw.keys()), desc="Load + normalize batches", show=show_internal_progress):
        adata = raw[b]
        if bool(get_param(cfg, 'qc.enable', True)):
            adata = qc_filter(
                adata,
                min_genes=int(get_param(cfg, 'qc.min_genes', 200)),
                min_cells=int(get_param(cfg, 'qc.min_cells', 0)),
                max_pct_mito=get_param(cfg, 'qc.max_pct_mito', 20.0),
                mito_prefix=str(get_param(cfg, 'qc.mito_prefix', 'MT-')),
            )
        adata = log_normalize(adata, target_sum=float(get_param(cfg, 'normalize.target_sum', 1e4)))
        logger.info("Loaded batch %s: cells=%d features=%d", b, adata.n_obs, adata.n_vars)
        out[b] = adata
    return out


def embed_and_cluster(
    adata: ad.AnnData,
    selected: Sequence[str],
    n_pcs: int = 30,
    n_neighbors: int = 15,
    leiden_resolution: float = 1.0,
    compute_umap: bool = True,
    seed: int = 0,
) -> ad.AnnData:
    """PCA of the corrected selected features, kNN graph, Leiden clusters (`obs['cluster']`) and UMAP."""
    import scanpy as sc

    out = adata.copy()
    idx = out.var_names.get_indexer(pd.Index(list(selected)))
    X = np.asarray(out.obsm[CORRECTED_KEY])[:, idx[idx >= 0]]
    n_comps = int(max(1, min(int(n_pcs), X.shape[0] - 1, X.shape[1] - 1)))
    out.obsm["X_pca_corrected"] = sc.pp.pca(X, n_comps=n_comps, random_state=int(seed))
    sc.pp.neighbors(out, use_rep="X_pca_corrected", n_neighbors=int(n_neighbors), random_state=int(seed))
    try:
        sc.tl.leiden(out, key_added="cluster", resolution=float(leiden_resolution), flavor="igraph",
                     n_iterations=2, directed=False, random_state=int(seed))
    except (ImportError, TypeError, ValueError) as e:
        logger.warning("Leiden(igraph) failed: %s; falling back to 'leidenalg' flavor.", e)
        sc.tl.leiden(out, key_added="cluster", resolution=float(leiden_resolution), random_state=int(seed))
    if compute_umap:
        sc.tl.umap(out, random_state=int(seed))
    logger.info("Downstream: %d PCs, %d clusters", n_comps, out.obs["cluster"].nunique())
    return out


def _per_batch_table(per_batch: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    frames = [dec.assign(batch=b) for b, dec in per_batch.items()]
    return pd.concat(frames, axis=0)


def _split_per_batch(table: pd.DataFrame, batches: Sequence[str]) -> Dict[str, pd.DataFrame]:
    return {b: table.loc[table["batch"] == b].drop(columns=["batch"]) for b in batches}


def run_pipeline(
    reference_paths: Mapping[str, str],
    out_dir: str,
    query: Optional[Tuple[str, str]] = None,
    priority_path: Optional[str] = None,
    blacklist_path: Optional[str] = None,
    config_path: Optional[str] = None,
    params: Optional[Dict[str, Any]] = None,
    resume: bool = True,
    resume_policy: Optional[Literal["auto", "minimal", "force"]] = None,
    dry_run_diff: bool = False,
    show_internal_progress: bool = False,
    log_level: str = "INFO",
    backend: Optional[MNNBackend] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> dict:
    """
    Execute the AtlasScope integration pipeline.

    Returns dict with output file paths (or the resume plan when `dry_run_diff`).
    """
    ensure_dir(out_dir)
    setup_logger(out_dir, level=log_level)
    logger.info("AtlasScope pipeline start")
    cfg = deep_update(load_params_yaml(config_path), params or {})
    batch_key = str(get_param(cfg, 'io.batch_key', 'batch'))
    compression = get_param(cfg, 'io.h5ad_compression', 'lzf')
    layer = str(get_param(cfg, 'variance.layer', LOGCOUNTS))
    write_intermediate = bool(get_param(cfg, 'io.write_intermediate', True))
    persist = bool(resume or write_intermediate)
    if resume_policy is None:
        resume_policy = str(get_param(cfg, 'io.resume_policy', 'minimal')).lower()

    if not reference_paths:
        raise ValueError("At least one reference dataset is required")
    paths: Dict[str, str] = {str(b): str(p) for b, p in reference_paths.items()}
    query_name = None
    if query is not None:
        query_name, query_path = str(query[0]), str(query[1])
        if query_name in paths:
            raise ValueError(f"Query name '{query_name}' clashes with a reference batch")
        paths[query_name] = query_path
    batches = list(paths.keys())

    inputs = {"paths": paths, "query": query_name, "priority": priority_path, "blacklist": blacklist_path}
    inputs_fp = fingerprint_inputs(inputs, files=list(paths.values()) + [priority_path, blacklist_path])
    cur_fps = fingerprint_stages(cfg, STAGE_ORDER)
    state = _load_state(out_dir) or {}
    start_from, changes = plan_start_stage(state, cur_fps, inputs_fp, resume_policy if resume else "force")
    logger.info("Resume policy=%s; changed stages=%s; start from %s",
                resume_policy, ",".join(changes) if changes else "(none)", start_from)

    if dry_run_diff:
        return {
            "dry_run": True,
            "changed_stages": changes,
            "start_from": start_from,
            "state_file": _state_path(out_dir),
        }

    start_idx = STAGE_ORDER.index(start_from)
    stage_extra = {"fingerprints": cur_fps, "inputs_fingerprint": inputs_fp, "batches": batches}

    def _should_run(stage_name: str, has_cache: bool) -> bool:
        if STAGE_ORDER.index(stage_name) >= start_idx:
            return True
        if not has_cache:
            logger.info("Resume requested skip for %s but checkpoint missing → re-running", stage_name)
        return not has_cache

    def _notify(desc: str) -> None:
        if progress_callback:
            progress_callback(desc)

    # ==== Stage 1: Load inputs ====
    input_ckpts = {b: _checkpoint_path(out_dir, cfg, f"input_{i:02d}.h5ad") for i, b in enumerate(batches)}
    cached_inputs = None
    if STAGE_ORDER.index("load_inputs") < start_idx:
        _notify("Loading cached inputs")
        loaded = {b: _load_adata_checkpoint(p) for b, p in input_ckpts.items()}
        cached_inputs = loaded if all(a is not None for a in loaded.values()) else None
    if _should_run("load_inputs", cached_inputs is not None):
        _notify("Loading inputs")
        try:
            datasets = load_inputs(paths, cfg, show_internal_progress=show_internal_progress)
            if persist:
                for b, adata in datasets.items():
                    _save_adata(adata, input_ckpts[b], compression=compression)
            _save_state(out_dir, "load_inputs", extra=stage_extra)
            logger.info("Stage load_inputs done: %s", ", ".join(f"{b}={a.n_obs}" for b, a in datasets.items()))
        except Exception:
            logger.exception("Stage load_inputs failed")
            raise
    else:
        datasets = cached_inputs
        logger.info("Resume: skipping load_inputs (checkpoint available)")

    # ==== Harmonize (recomputed every run) ====
    _notify("Harmonizing features")
    try:
        harmonized = harmonize(datasets)
    except Exception:
        logger.exception("Harmonization failed")
        raise
    n_cells = {b: int(harmonized[b].n_obs) for b in batches}

    # ==== Stage 2: Variance modelling ====
    per_batch_ckpt = _checkpoint_path(out_dir, cfg, "per_batch_variance.parquet")
    combined_ckpt = _checkpoint_path(out_dir, cfg, "combined_variance.parquet")
    var_cache = None
    if STAGE_ORDER.index("model_variance") < start_idx and os.path.exists(per_batch_ckpt) and os.path.exists(combined_ckpt):
        var_cache = (_split_per_batch(load_checkpoint(per_batch_ckpt), batches), load_checkpoint(combined_ckpt))
    if _should_run("model_variance", var_cache is not None):
        _notify("Modelling per-batch variance")
        try:
            per_batch = estimate_variance_per_batch(
                harmonized,
                layer=layer,
                frac=float(get_param(cfg, 'variance.lowess_frac', 0.3)),
                min_mean=float(get_param(cfg, 'variance.min_mean', 0.0)),
                n_jobs=_preferred_n_jobs(cfg),
                backend=_joblib_backend(cfg),
            )
            combined = combine([per_batch[b] for b in batches], [n_cells[b] for b in batches])
            if persist:
                save_checkpoint(_per_batch_table(per_batch), per_batch_ckpt)
                save_checkpoint(combined, combined_ckpt)
            from .plotting import plot_mean_variance
            for b, dec in per_batch.items():
                _save_fig(plot_mean_variance(dec, title=f"{b} (n={n_cells[b]})"), out_dir, cfg, f"mean_variance_{b}")
            _save_state(out_dir, "model_variance", extra=stage_extra)
            logger.info("Stage model_variance done: %d features, %d with positive combined biological variance",
                        len(combined), int((combined["biological_variance"] > 0).sum()))
        except Exception:
            logger.exception("Stage model_variance failed")
            raise
    else:
        per_batch, combined = var_cache
        logger.info("Resume: skipping model_variance (checkpoint available)")

    # ==== Stage 3: Feature selection ====
    selected_ckpt = _checkpoint_path(out_dir, cfg, "selected_features.txt")
    blacklist_ckpt = _checkpoint_path(out_dir, cfg, "blacklist.txt")
    sel_cache = None
    if STAGE_ORDER.index("select_features") < start_idx and os.path.exists(selected_ckpt) and os.path.exists(blacklist_ckpt):
        sel_cache = (read_feature_list(selected_ckpt), set(read_feature_list(blacklist_ckpt)))
    if _should_run("select_features", sel_cache is not None):
        _notify("Selecting features")
        try:
            extra = read_blacklist(blacklist_path) if blacklist_path else set()
            blacklist = build_blacklist(combined.index, get_param(cfg, 'features.blacklist_patterns', []) or [], extra)
            n_top = get_param(cfg, 'features.n_top')
            selected = select_features(
                combined,
                blacklist=blacklist,
                bio_threshold=float(get_param(cfg, 'features.bio_threshold', 0.0)),
                fdr_threshold=float(get_param(cfg, 'features.fdr_threshold', 0.05)),
                n_top=int(n_top) if n_top else None,
            )
            if persist:
                write_feature_list(selected, selected_ckpt)
                write_feature_list(sorted(blacklist), blacklist_ckpt)
            from .plotting import plot_mean_variance
            _save_fig(plot_mean_variance(combined, title="combined", selected=selected), out_dir, cfg, "mean_variance_combined")
            if not selected:
                raise EmptyFeatureSetError(n_candidates=int((~combined.index.isin(list(blacklist))).sum()))
            _save_state(out_dir, "select_features", extra=stage_extra)
            logger.info("Stage select_features done: %d selected, %d blacklisted present",
                        len(selected), int(combined.index.isin(list(blacklist)).sum()))
        except Exception:
            logger.exception("Stage select_features failed")
            raise
    else:
        selected, blacklist = sel_cache
        logger.info("Resume: skipping select_features (checkpoint available)")

    # ==== Merge order (computed once, before correction) ====
    table = read_priority_table(priority_path) if priority_path else None
    ref_sizes = {b: n_cells[b] for b in batches if b != query_name}
    priority = priority_from_table(table, ref_sizes, stage_order=get_param(cfg, 'correct.stage_order', []) or None)
    order = compute_merge_order(priority, query=query_name)
    logger.info("Merge order: %s", " -> ".join(order))

    # ==== Stage 4: Ordered batch correction ====
    corrected_ckpt = _checkpoint_path(out_dir, cfg, "corrected.h5ad")
    corr_cache = None
    if STAGE_ORDER.index("correct") < start_idx:
        cached = _load_adata_checkpoint(corrected_ckpt)
        if cached is not None and list(cached.uns.get("merge_order", [])) == order:
            lost = pd.DataFrame(cached.uns["lost_variance"])
            corr_cache = CorrectedDataset(adata=cached, lost_variance=lost, merge_order=order)
    if _should_run("correct", corr_cache is not None):
        _notify("Correcting batches")
        try:
            backend = backend or make_backend(
                str(get_param(cfg, 'correct.backend', 'sklearn')),
                k=int(get_param(cfg, 'correct.k', 20)),
                sigma=float(get_param(cfg, 'correct.sigma', 1.0)),
                n_pcs=get_param(cfg, 'correct.n_pcs', 50),
                cos_norm=bool(get_param(cfg, 'correct.cos_norm', True)),
                seed=int(get_param(cfg, 'correct.seed', 0)),
            )
            result = correct(harmonized, order, selected, backend=backend, layer=layer,
                             batch_key=batch_key, progress_callback=progress_callback)
            tbl = feature_table(combined, blacklist, selected)
            var = result.adata.var
            result.adata.var = var.drop(columns=[c for c in tbl.columns if c in var.columns]).join(tbl)
            if persist:
                _save_adata(result.adata, corrected_ckpt, compression=compression)
            from .plotting import plot_lost_variance
            _save_fig(plot_lost_variance(result.lost_variance), out_dir, cfg, "lost_variance")
            _save_state(out_dir, "correct", extra=dict(stage_extra, merge_order=order))
            logger.info("Stage correct done: cells=%d steps=%d", result.adata.n_obs, len(result.lost_variance))
        except Exception:
            logger.exception("Stage correct failed")
            raise
    else:
        result = corr_cache
        logger.info("Resume: skipping correct (checkpoint available)")
    adata = result.adata

    # ==== Stage 5: Downstream embedding/clustering (optional) ====
    downstream_ckpt = _checkpoint_path(out_dir, cfg, "downstream.h5ad")
    run_downstream = bool(get_param(cfg, 'downstream.enable', True))
    ds_cache = None
    if run_downstream and STAGE_ORDER.index("downstream") < start_idx:
        ds_cache = _load_adata_checkpoint(downstream_ckpt)
    if run_downstream and _should_run("downstream", ds_cache is not None):
        _notify("Embedding + clustering")
        try:
            adata = embed_and_cluster(
                adata,
                selected,
                n_pcs=int(get_param(cfg, 'downstream.n_pcs', 30)),
                n_neighbors=int(get_param(cfg, 'downstream.n_neighbors', 15)),
                leiden_resolution=float(get_param(cfg, 'downstream.leiden_resolution', 1.0)),
                compute_umap=bool(get_param(cfg, 'downstream.compute_umap', True)),
                seed=int(get_param(cfg, 'downstream.seed', 0)),
            )
            if persist:
                _save_adata(adata, downstream_ckpt, compression=compression)
            if "X_umap" in adata.obsm:
                import scanpy as sc
                fig = sc.pl.umap(adata, color=[batch_key, "cluster"], return_fig=True, wspace=0.4, show=False)
                _save_fig(fig, out_dir, cfg, "umap_batch_cluster")
            _save_state(out_dir, "downstream", extra=dict(stage_extra, merge_order=order))
        except Exception as e:
            logger.warning("Downstream skipped: %s", e, exc_info=True)
    elif run_downstream and ds_cache is not None:
        adata = ds_cache
        logger.info("Resume: skipping downstream (checkpoint available)")

    # ==== Stage 6: Write outputs ====
    _notify("Writing outputs")
    outputs = {
        "corrected": os.path.join(out_dir, "corrected.h5ad"),
        "lost_variance": os.path.join(out_dir, "lost_variance.csv"),
        "selected_features": os.path.join(out_dir, "selected_features.txt"),
        "combined_variance": os.path.join(out_dir, "combined_variance.csv"),
        "merge_order": os.path.join(out_dir, "merge_order.txt"),
    }
    try:
        adata.write_h5ad(outputs["corrected"], compression=compression)
        lost = result.lost_variance.reindex(columns=LOST_VARIANCE_COLUMNS)
        lost.to_csv(outputs["lost_variance"], index=False)
        write_feature_list(list(selected), outputs["selected_features"])
        write_feature_list(order, outputs["merge_order"])
        if bool(get_param(cfg, 'io.write_csv_copy', True)):
            combined.to_csv(outputs["combined_variance"], index_label="feature")
        else:
            outputs["combined_variance"] = None
        _save_state(out_dir, "write_outputs", extra=dict(stage_extra, merge_order=order))
        logger.info("Stage write_outputs done")
    except Exception:
        logger.exception("Stage write_outputs failed")
        raise

    logger.info("Pipeline finished successfully")
    outputs["n_cells"] = int(adata.n_obs)
    outputs["n_selected"] = len(selected)
    outputs["order"] = list(order)
    return outputs
