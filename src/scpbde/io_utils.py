from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Mapping, Optional

import anndata as ad
import numpy as np
import pandas as pd

from .errors import InputValidationError
from .pseudobulk import PseudobulkMatrix

LOGGER = logging.getLogger(__name__)

DE_TABLE_COLUMNS = ["Symbol", "baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


# =====================================================================
# Input
# =====================================================================
def load_dataset(path: Path) -> ad.AnnData:
    """
    Load a clustered single-cell object.

    Supports .h5ad files and .zarr stores; both are read fully into memory.
    """
    path = Path(path)
    if not path.exists():
        raise InputValidationError(f"Input object not found: {path}")

    if path.suffix == ".zarr" or path.is_dir():
        LOGGER.info(f"Loading Zarr store → {path}")
        adata = ad.read_zarr(str(path))
    elif path.suffix == ".h5ad":
        LOGGER.info(f"Loading H5AD → {path}")
        adata = ad.read_h5ad(str(path))
    else:
        raise InputValidationError(f"Unsupported input format for {path} (expected .h5ad or .zarr)")

    adata.obs_names = adata.obs_names.astype(str)
    adata.var_names = adata.var_names.astype(str)
    if not adata.var_names.is_unique:
        LOGGER.warning("var_names are not unique; making them unique.")
        adata.var_names_make_unique()

    LOGGER.info("Loaded %d cells x %d genes", adata.n_obs, adata.n_vars)
    return adata


def read_sample_table(path: Optional[Path], sample_key: str = "sample") -> Optional[pd.DataFrame]:
    """
    Read the tab-separated sample table, indexed by sample name.

    The sample column is `sample_key` when present, otherwise the first column.
    """
    if path is None:
        return None
    path = Path(path)
    if not path.exists():
        raise InputValidationError(f"Sample table not found: {path}")

    df = pd.read_csv(path, sep="\t", dtype=str)
    if df.empty:
        raise InputValidationError(f"Sample table {path} has no rows")

    key = sample_key if sample_key in df.columns else df.columns[0]
    df[key] = df[key].str.strip()
    if (df[key].isna() | (df[key] == "")).any():
        raise InputValidationError(f"Sample table {path}: empty sample names in column {key!r}")
    if df[key].duplicated().any():
        dups = sorted(df.loc[df[key].duplicated(), key].unique())
        raise InputValidationError(f"Sample table {path}: duplicated samples {dups}")

    df = df.set_index(key)
    df.index.name = sample_key
    LOGGER.info("Read sample table %s (%d samples, columns=%s)", path, df.shape[0], list(df.columns))
    return df


def read_pseudobulk(counts_path: Path, metadata_path: Path, *, sample_key: str, group_key: str) -> PseudobulkMatrix:
    """Reload a matrix written by write_pseudobulk_counts / write_pseudobulk_metadata."""
    for p in (counts_path, metadata_path):
        if not Path(p).exists():
            raise InputValidationError(f"Pseudobulk table not found: {p}")

    counts = pd.read_csv(counts_path, sep="\t", index_col=0)
    counts.index = counts.index.astype(str)
    counts.index.name = "Symbol"
    counts = counts.astype(np.int64)

    metadata = pd.read_csv(metadata_path, sep="\t", index_col=0, dtype=str)
    metadata.index = metadata.index.astype(str)
    metadata.index.name = "library"

    missing = [c for c in (sample_key, group_key, "n_cells") if c not in metadata.columns]
    if missing:
        raise InputValidationError(f"Pseudobulk metadata {metadata_path} lacks column(s) {missing}")
    metadata["n_cells"] = pd.to_numeric(metadata["n_cells"]).astype(np.int64)
    if not counts.columns.equals(metadata.index):
        raise InputValidationError(
            f"Pseudobulk counts columns and metadata rows differ ({counts_path}, {metadata_path})"
        )
    return PseudobulkMatrix(counts=counts, metadata=metadata, sample_key=sample_key, group_key=group_key)


# =====================================================================
# Output
# =====================================================================
def _write_tsv(df: pd.DataFrame, out_path: Path, *, index: bool = True) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, sep="\t", index=index, na_rep="NA")
    LOGGER.info("Wrote %s", out_path)


def write_pseudobulk_counts(pb: PseudobulkMatrix, out_path: Path) -> None:
    counts = pb.counts.copy()
    counts.index.name = "Symbol"
    _write_tsv(counts, out_path)


def write_pseudobulk_metadata(pb: PseudobulkMatrix, out_path: Path) -> None:
    meta = pb.metadata.copy()
    meta.index.name = "library"
    _write_tsv(meta, out_path)


def de_table(res: pd.DataFrame) -> pd.DataFrame:
    """DE result in export layout: Symbol first, fixed column order."""
    df = res.copy()
    df.index.name = "Symbol"
    df = df.reset_index()
    for col in DE_TABLE_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
    return df[DE_TABLE_COLUMNS]


def export_de_tables(results: Mapping[str, pd.DataFrame], out_dir: Path) -> Dict[str, Path]:
    out: Dict[str, Path] = {}
    for name, res in results.items():
        path = Path(out_dir) / f"{name}.tsv"
        _write_tsv(de_table(res), path, index=False)
        out[name] = path
    return out


def export_overlap_tables(tables: Mapping[str, pd.DataFrame], out_dir: Path) -> Dict[str, Path]:
    out: Dict[str, Path] = {}
    for direction, table in tables.items():
        df = table.copy()
        df.index.name = "Symbol"
        path = Path(out_dir) / f"{direction}.tsv"
        _write_tsv(df, path)
        out[direction] = path
    return out


def export_summary(summary: pd.DataFrame, out_path: Path) -> None:
    df = summary.copy()
    df.index.name = "contrast"
    _write_tsv(df, out_path)


def export_run_status(status: pd.DataFrame, out_path: Path) -> None:
    _write_tsv(status, out_path, index=False)


def export_size_factors(size_factors: pd.Series, out_path: Path) -> None:
    df = size_factors.rename("size_factor").to_frame()
    df.index.name = "library"
    _write_tsv(df, out_path)
