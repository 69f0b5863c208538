# src/scpbde/pseudobulk.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import InputValidationError

LOGGER = logging.getLogger(__name__)

LIBRARY_SEP = "|"


@dataclass(frozen=True)
class PseudobulkMatrix:
    """
    Summed counts per (sample, cluster) library.

    counts:   genes x libraries, int64
    metadata: libraries x attributes; always has sample_key, group_key, n_cells
    """
    counts: pd.DataFrame
    metadata: pd.DataFrame
    sample_key: str
    group_key: str

    @property
    def libraries(self) -> pd.Index:
        return self.counts.columns

    @property
    def genes(self) -> pd.Index:
        return self.counts.index

    def clusters(self) -> list[str]:
        return sorted(pd.unique(self.metadata[self.group_key].astype(str)))

    def samples(self) -> list[str]:
        return sorted(pd.unique(self.metadata[self.sample_key].astype(str)))

    def to_anndata(self) -> ad.AnnData:
        """Libraries as observations, e.g. for re-aggregation or scanpy plotting."""
        return ad.AnnData(
            X=sp.csr_matrix(self.counts.T.to_numpy(dtype=np.int64)),
            obs=self.metadata.copy(),
            var=pd.DataFrame(index=self.counts.index.copy()),
        )


def library_id(sample: str, cluster: str) -> str:
    return f"{sample}{LIBRARY_SEP}{cluster}"


# -----------------------------------------------------------------------------
# Counts access
# -----------------------------------------------------------------------------
def _get_counts_matrix(
    adata: ad.AnnData,
    *,
    counts_layer: Optional[str],
) -> sp.csr_matrix:
    """
    Return counts matrix as CSR (cells x genes).
    Never densifies.
    """
    if counts_layer:
        if counts_layer not in adata.layers:
            raise InputValidationError(
                f"counts_layer={counts_layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        X = adata.layers[counts_layer]
    else:
        X = adata.X

    if X is None:
        raise InputValidationError("Counts matrix is None (no .X and no counts layer).")

    if sp.issparse(X):
        return X.tocsr()
    LOGGER.warning("Counts matrix is dense; converting to CSR (may use a lot of RAM).")
    return sp.csr_matrix(np.asarray(X))


def _missing_label_mask(values: pd.Series) -> np.ndarray:
    s = values.astype(object)
    missing = s.isna().to_numpy()
    as_str = s.astype(str).str.strip().to_numpy()
    return missing | (as_str == "") | (as_str == "nan")


def validate_cell_metadata(adata: ad.AnnData, *, sample_key: str, group_key: str) -> None:
    """Every cell needs a sample and a cluster label; nothing is silently dropped."""
    for key in (sample_key, group_key):
        if key not in adata.obs:
            raise InputValidationError(
                f"Required metadata column {key!r} not in adata.obs. "
                f"Available: {list(adata.obs.columns)}"
            )

    bad = _missing_label_mask(adata.obs[sample_key]) | _missing_label_mask(adata.obs[group_key])
    n_bad = int(bad.sum())
    if n_bad:
        examples = adata.obs_names[bad][:5].tolist()
        raise InputValidationError(
            f"{n_bad} cell(s) lack a ({sample_key}, {group_key}) assignment, e.g. {examples}"
        )


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
def pseudobulk_aggregate(
    adata: ad.AnnData,
    *,
    sample_key: str,
    group_key: str,
    counts_layer: Optional[str] = None,
    min_cells_per_library: int = 1,
) -> PseudobulkMatrix:
    """
    Sum raw counts into one library per (sample, cluster).

    Uses a sparse cells x libraries indicator matrix G so that
    PB = G.T @ X never materializes a dense per-cell matrix.

    Libraries are ordered by (sample, cluster), compared as strings.
    If `adata` already holds libraries (one observation per key, with an
    n_cells column), aggregation returns the same counts and cell totals.
    """
    validate_cell_metadata(adata, sample_key=sample_key, group_key=group_key)

    X = _get_counts_matrix(adata, counts_layer=counts_layer)
    obs = adata.obs

    s = obs[sample_key].astype(str).str.strip().to_numpy()
    g = obs[group_key].astype(str).str.strip().to_numpy()

    keys = pd.MultiIndex.from_arrays([s, g], names=["sample", "cluster"])
    uniques = keys.unique().sort_values()
    lib_codes = uniques.get_indexer(keys)
    n_libs = int(len(uniques))

    rows = np.arange(obs.shape[0], dtype=np.int64)
    G = sp.csr_matrix(
        (np.ones(rows.shape[0], dtype=np.int64), (rows, lib_codes.astype(np.int64))),
        shape=(obs.shape[0], n_libs),
    )

    PB = (G.T @ X).tocsr()

    # Already-aggregated input carries its own cell counts
    if "n_cells" in obs.columns:
        weights = pd.to_numeric(obs["n_cells"], errors="coerce").fillna(1).to_numpy(dtype=np.int64)
        n_cells_lib = np.asarray(G.T @ weights).ravel().astype(np.int64)
    else:
        n_cells_lib = np.asarray(G.sum(axis=0)).ravel().astype(np.int64)

    lib_sample = uniques.get_level_values("sample").astype(str)
    lib_group = uniques.get_level_values("cluster").astype(str)
    pb_id = pd.Index([library_id(a, b) for a, b in zip(lib_sample, lib_group)], name="library")

    metadata = pd.DataFrame(
        {
            sample_key: np.asarray(lib_sample, dtype=object),
            group_key: np.asarray(lib_group, dtype=object),
            "n_cells": n_cells_lib,
        },
        index=pb_id,
    )

    keep = metadata["n_cells"].to_numpy() >= int(min_cells_per_library)
    if not keep.all():
        LOGGER.info(
            "Dropping %d pseudobulk libraries with < %d cells: %s",
            int((~keep).sum()),
            int(min_cells_per_library),
            metadata.index[~keep].tolist(),
        )
    metadata = metadata.loc[keep].copy()
    PB = PB[np.where(keep)[0], :]

    dense = np.rint(PB.toarray()).astype(np.int64, copy=False)
    counts = pd.DataFrame(
        dense.T,
        index=pd.Index(adata.var_names.astype(str), name="Symbol"),
        columns=metadata.index,
    )

    LOGGER.info(
        "Pseudobulk: %d cells -> %d libraries (%d samples x %d clusters), %d genes",
        int(adata.n_obs),
        int(counts.shape[1]),
        int(metadata[sample_key].nunique()),
        int(metadata[group_key].nunique()),
        int(counts.shape[0]),
    )
    return PseudobulkMatrix(counts=counts, metadata=metadata, sample_key=sample_key, group_key=group_key)


def attach_sample_table(
    pb: PseudobulkMatrix,
    sample_table: Optional[pd.DataFrame],
) -> PseudobulkMatrix:
    """
    Merge per-sample attributes into the library metadata.

    sample_table is indexed by sample name. Every sample present in the
    matrix must be covered.
    """
    if sample_table is None:
        return pb

    idx = sample_table.index.astype(str)
    present = set(pb.metadata[pb.sample_key].astype(str))
    missing = sorted(present - set(idx))
    if missing:
        raise InputValidationError(
            f"Sample table does not cover {len(missing)} sample(s) present in the object: {missing}"
        )

    table = sample_table.copy()
    table.index = idx
    clash = [c for c in table.columns if c in (pb.sample_key, pb.group_key, "n_cells")]
    table = table.drop(columns=clash)

    # sample table wins over attributes already taken from obs
    replaced = [c for c in table.columns if c in pb.metadata.columns]
    if replaced:
        LOGGER.info("Sample table replaces library attributes %s", replaced)
    merged = pb.metadata.drop(columns=replaced).join(table, on=pb.sample_key, how="left")
    return PseudobulkMatrix(
        counts=pb.counts,
        metadata=merged,
        sample_key=pb.sample_key,
        group_key=pb.group_key,
    )


def sample_table_from_obs(
    adata: ad.AnnData,
    *,
    sample_key: str,
    columns: list[str],
) -> Optional[pd.DataFrame]:
    """
    Per-sample attributes already stored on the cells.

    Only columns with a single value per sample are returned; others are
    logged and skipped.
    """
    cols = [c for c in columns if c and c in adata.obs.columns and c != sample_key]
    if not cols:
        return None

    obs = adata.obs[[sample_key, *cols]].copy()
    obs[sample_key] = obs[sample_key].astype(str).str.strip()

    keep = []
    for c in cols:
        n_vals = obs.groupby(sample_key, observed=True)[c].nunique(dropna=False)
        if (n_vals > 1).any():
            LOGGER.warning(
                "obs column %r varies within sample(s) %s; not attached to libraries.",
                c, n_vals.index[n_vals > 1].tolist()[:5],
            )
            continue
        keep.append(c)
    if not keep:
        return None

    table = obs.groupby(sample_key, observed=True)[keep].first()
    for c in keep:
        table[c] = table[c].astype(str)
    table.index = table.index.astype(str)
    return table
