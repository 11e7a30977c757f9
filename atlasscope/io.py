import os
import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse
from typing import Dict, List, Mapping, Set


def _read_table(path: str) -> pd.DataFrame:
    sep = "\t" if path.endswith((".tsv", ".tsv.gz", ".txt")) else ","
    return pd.read_csv(path, sep=sep)


def read_dataset(path: str) -> ad.AnnData:
    """Read one batch as cells x features AnnData.

    Accepts `.h5ad`, a 10x matrix directory, or a features x cells CSV/TSV with
    feature ids in the first column.
    """
    if os.path.isdir(path):
        import scanpy as sc
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", cache=False)
    elif path.endswith(".h5ad"):
        adata = ad.read_h5ad(path)
    elif path.endswith((".csv", ".tsv", ".csv.gz", ".tsv.gz")):
        sep = "\t" if ".tsv" in path else ","
        df = pd.read_csv(path, sep=sep, index_col=0)
        adata = ad.AnnData(
            X=sparse.csr_matrix(df.T.to_numpy(dtype=np.float32)),
            obs=pd.DataFrame(index=df.columns.astype(str)),
            var=pd.DataFrame(index=df.index.astype(str)),
        )
    else:
        raise ValueError(f"Unsupported dataset format: {path}")
    if adata.n_vars == 0 or adata.n_obs == 0:
        raise ValueError(f"Dataset {path} is empty (cells={adata.n_obs}, features={adata.n_vars})")
    if not adata.var_names.is_unique:
        dups = adata.var_names[adata.var_names.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate feature ids in {path}: {dups[:10]}")
    return adata


def read_datasets(paths: Mapping[str, str], batch_key: str = "batch") -> Dict[str, ad.AnnData]:
    datasets: Dict[str, ad.AnnData] = {}
    for batch, p in paths.items():
        adata = read_dataset(p)
        adata.obs[batch_key] = pd.Categorical([str(batch)] * adata.n_obs)
        datasets[str(batch)] = adata
    return datasets


def read_priority_table(path: str) -> pd.DataFrame:
    df = _read_table(path)
    cols = set(df.columns)
    missing = []
    if "batch" not in cols:
        missing.append("batch")
    if not ({"rank", "stage"} & cols):
        missing.append("rank|stage")
    if missing:
        raise ValueError(f"Missing columns in priority file {path}: {missing}")
    df["batch"] = df["batch"].astype(str)
    if df["batch"].duplicated().any():
        raise ValueError(f"Duplicate batch ids in priority file {path}: {df.loc[df['batch'].duplicated(), 'batch'].tolist()}")
    return df


def read_blacklist(path: str) -> Set[str]:
    if path.endswith((".csv", ".tsv", ".csv.gz", ".tsv.gz")):
        df = _read_table(path)
        if "feature" not in df.columns:
            raise ValueError(f"Missing columns in blacklist file {path}: ['feature']")
        return set(df["feature"].dropna().astype(str))
    out: Set[str] = set()
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            s = line.split("#", 1)[0].strip()
            if s:
                out.add(s)
    return out


def write_feature_list(features: List[str], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for feat in features:
            f.write(f"{feat}\n")


def read_feature_list(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def save_checkpoint(df: pd.DataFrame, path: str) -> None:
    # parquet keeps the feature index and attrs-free columns
    df2 = df.copy()
    df2.index = df2.index.astype(str)
    df2.to_parquet(path, index=True)


def load_checkpoint(path: str) -> pd.DataFrame:
    return pd.read_parquet(path)
