import os
import copy
import yaml
import json
import hashlib
from typing import Any, Dict, Iterable, List, Optional, Tuple


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    env = os.environ.get("ATLASSCOPE_PARAMS", "").strip()
    if env:
        return env
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load params YAML from `path`, `$ATLASSCOPE_PARAMS` or `config/params.yaml`.

    A missing default file yields an empty dict; every consumer has code
    defaults. An explicit path that does not exist is an error.
    """
    p = path or _params_path()
    if not os.path.isfile(p):
        if path:
            raise FileNotFoundError(f"Config file not found: {p}")
        return {}
    with open(p, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {p} must contain a mapping at top level")
    return data


def deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    """Merge `upd` into a copy of `base`; nested dicts are merged key by key."""
    out = copy.deepcopy(base)
    for k, v in (upd or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_update(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def _get_by_path(cfg: Dict[str, Any], dotted: str) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def get_param(cfg: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    val = _get_by_path(cfg or {}, dotted)
    return default if val is None else val


# Map config keys to pipeline stages for minimal re-run decisions.
# Only names that appear in `pipeline.STAGE_ORDER` are relevant here.
STAGE_PARAM_MAP: Dict[str, Tuple[str, ...]] = {
    'load_inputs': (
        'io.batch_key',
        'qc.enable', 'qc.min_genes', 'qc.min_cells', 'qc.max_pct_mito', 'qc.mito_prefix',
        'normalize.target_sum',
    ),
    'model_variance': (
        'variance.lowess_frac', 'variance.min_mean', 'variance.layer',
    ),
    'select_features': (
        'features.bio_threshold', 'features.fdr_threshold', 'features.n_top', 'features.blacklist_patterns',
    ),
    'correct': (
        'correct.backend', 'correct.k', 'correct.sigma', 'correct.n_pcs', 'correct.cos_norm', 'correct.seed',
        'correct.stage_order',
    ),
    'downstream': (
        'downstream.enable', 'downstream.n_pcs', 'downstream.n_neighbors',
        'downstream.leiden_resolution', 'downstream.compute_umap', 'downstream.seed',
    ),
    'write_outputs': (
        'io.h5ad_compression', 'io.write_csv_copy',
    ),
}


def stage_config_subset(cfg: Dict[str, Any], stage: str) -> Dict[str, Any]:
    keys = STAGE_PARAM_MAP.get(stage, ())
    sub: Dict[str, Any] = {}
    for k in keys:
        sub[k] = _get_by_path(cfg, k)
    return sub


def fingerprint_stage(cfg: Dict[str, Any], stage: str) -> str:
    sub = stage_config_subset(cfg, stage)
    payload = json.dumps(sub, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def fingerprint_stages(cfg: Dict[str, Any], stages) -> Dict[str, str]:
    return {s: fingerprint_stage(cfg, s) for s in stages}


def _file_signature(path: str) -> List[Any]:
    """`[relative name, size, mtime_ns]` for a file, or for every file under a directory."""
    if os.path.isdir(path):
        sig: List[Any] = []
        for root, _dirs, files in sorted(os.walk(path)):
            for name in sorted(files):
                p = os.path.join(root, name)
                st = os.stat(p)
                sig.append([os.path.relpath(p, path), st.st_size, st.st_mtime_ns])
        return sig
    if os.path.exists(path):
        st = os.stat(path)
        return [os.path.basename(path), st.st_size, st.st_mtime_ns]
    return []


def fingerprint_inputs(inputs: Dict[str, Any], files: Iterable[Optional[str]] = ()) -> str:
    """Hash of the input description plus size/mtime of each path in `files`.

    Rewriting an input file in place changes the hash, which forces a rerun
    from the first stage.
    """
    desc = dict(inputs)
    desc["_files"] = {str(p): _file_signature(str(p)) for p in files if p}
    payload = json.dumps(desc, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
