# src/scpbde/de_plot_utils.py
from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

import matplotlib.pyplot as plt
from matplotlib.figure import Figure


# -----------------------------------------------------------------------------
# Small helpers
# -----------------------------------------------------------------------------
def _safe_series(df: pd.DataFrame, col: str) -> pd.Series:
    if col not in df.columns:
        raise KeyError(f"Required column {col!r} not found. Available: {list(df.columns)}")
    return df[col]


def _clip_padj(p: np.ndarray) -> np.ndarray:
    # Avoid inf/-inf in -log10; keep NaN as NaN
    out = p.astype(float, copy=True)
    finite = np.isfinite(out)
    out[finite] = np.clip(out[finite], 1e-300, 1.0)
    return out


def _empty_figure(text: str, figsize: tuple[float, float]) -> Figure:
    fig, ax = plt.subplots(figsize=figsize)
    ax.text(0.5, 0.5, text, ha="center", va="center")
    ax.set_axis_off()
    return fig


def _select_top_genes(
    df: pd.DataFrame,
    *,
    gene_col: str = "Symbol",
    padj_col: str = "padj",
    lfc_col: str = "log2FoldChange",
    padj_thresh: float = 0.1,
    top_n: int = 10,
    require_sig: bool = True,
) -> list[str]:
    """
    Rank genes by:
      1) padj ascending
      2) |logFC| descending
    """
    if df is None or df.empty:
        return []

    g = _safe_series(df, gene_col).astype(str)
    padj = pd.to_numeric(_safe_series(df, padj_col), errors="coerce")
    lfc = pd.to_numeric(_safe_series(df, lfc_col), errors="coerce")

    tmp = pd.DataFrame(
        {gene_col: g, padj_col: padj, lfc_col: lfc, "__abs_lfc": np.abs(lfc.to_numpy())}
    ).dropna(subset=[gene_col, padj_col, lfc_col])

    if require_sig:
        tmp = tmp[tmp[padj_col] < float(padj_thresh)]

    if tmp.empty:
        return []

    tmp = tmp.sort_values([padj_col, "__abs_lfc"], ascending=[True, False])
    return list(dict.fromkeys(tmp[gene_col].head(int(top_n)).astype(str)))


# -----------------------------------------------------------------------------
# Volcano plot
# -----------------------------------------------------------------------------
def volcano(
    df_de: pd.DataFrame,
    *,
    gene_col: str = "Symbol",
    padj_col: str = "padj",
    lfc_col: str = "log2FoldChange",
    padj_thresh: float = 0.1,
    lfc_thresh: float = 0.0,
    top_label_n: int = 15,
    title: Optional[str] = None,
    figsize: tuple[float, float] = (7.5, 6.0),
    alpha: float = 0.65,
    s: float = 10.0,
) -> Figure:
    """
    Volcano plot from an exported DE table.

    Up genes are red, down genes blue. Labels are chosen among significant
    genes by (padj asc, |lfc| desc), up to top_label_n.
    """
    if df_de is None or df_de.empty:
        return _empty_figure("No DE results", figsize)

    g = _safe_series(df_de, gene_col).astype(str)
    padj = pd.to_numeric(_safe_series(df_de, padj_col), errors="coerce")
    lfc = pd.to_numeric(_safe_series(df_de, lfc_col), errors="coerce")

    tmp = pd.DataFrame({gene_col: g, padj_col: padj, lfc_col: lfc}).dropna(
        subset=[gene_col, padj_col, lfc_col]
    )
    if tmp.empty:
        return _empty_figure("No valid rows (NaNs after parsing)", figsize)

    padj_np = _clip_padj(tmp[padj_col].to_numpy(dtype=float))
    y = -np.log10(padj_np)
    x = tmp[lfc_col].to_numpy(dtype=float)

    sig = tmp[padj_col].to_numpy(dtype=float) < float(padj_thresh)
    up = sig & (x > float(lfc_thresh))
    down = sig & (x < -float(lfc_thresh))
    rest = ~(up | down)

    fig, ax = plt.subplots(figsize=figsize)

    ax.scatter(x[rest], y[rest], c="#9aa0a6", s=s, alpha=alpha, linewidths=0.0, rasterized=True)
    ax.scatter(x[up], y[up], c="#d93025", s=s, alpha=min(1.0, alpha + 0.1), linewidths=0.0,
               rasterized=True, label=f"up ({int(up.sum())})")
    ax.scatter(x[down], y[down], c="#1a73e8", s=s, alpha=min(1.0, alpha + 0.1), linewidths=0.0,
               rasterized=True, label=f"down ({int(down.sum())})")

    # threshold lines
    ax.axhline(-np.log10(max(float(padj_thresh), 1e-300)), color="black", linestyle="--", lw=1)
    if float(lfc_thresh) > 0:
        ax.axvline(float(lfc_thresh), color="black", linestyle="--", lw=1)
        ax.axvline(-float(lfc_thresh), color="black", linestyle="--", lw=1)

    ax.set_xlabel("log2 fold change")
    ax.set_ylabel("-log10 adjusted p-value")
    ax.legend(frameon=False, loc="upper left")

    if title:
        ax.set_title(str(title))

    if int(top_label_n) > 0:
        label_genes = _select_top_genes(
            tmp,
            gene_col=gene_col,
            padj_col=padj_col,
            lfc_col=lfc_col,
            padj_thresh=padj_thresh,
            top_n=int(top_label_n),
            require_sig=True,
        )
        tmp_idx = tmp.drop_duplicates(subset=[gene_col]).set_index(gene_col)
        for gg in label_genes:
            xv = float(tmp_idx.loc[gg, lfc_col])
            ax.text(
                xv,
                float(-np.log10(max(float(tmp_idx.loc[gg, padj_col]), 1e-300))),
                gg,
                fontsize=8,
                ha="left" if xv >= 0 else "right",
                va="bottom",
            )

    ax.grid(True, linestyle=":", linewidth=0.8, alpha=0.6)
    fig.tight_layout()
    return fig


# -----------------------------------------------------------------------------
# MA plot + p-value histogram
# -----------------------------------------------------------------------------
def ma_plot(
    df_de: pd.DataFrame,
    *,
    padj_thresh: float = 0.1,
    lfc_thresh: float = 0.0,
    title: Optional[str] = None,
    figsize: tuple[float, float] = (7.0, 5.0),
    s: float = 6.0,
) -> Figure:
    """log2 fold change against mean of normalized counts; significant genes in red."""
    if df_de is None or df_de.empty:
        return _empty_figure("No DE results", figsize)

    mean = pd.to_numeric(_safe_series(df_de, "baseMean"), errors="coerce")
    lfc = pd.to_numeric(_safe_series(df_de, "log2FoldChange"), errors="coerce")
    padj = pd.to_numeric(_safe_series(df_de, "padj"), errors="coerce")

    keep = (mean > 0) & lfc.notna()
    if not keep.any():
        return _empty_figure("No expressed genes", figsize)

    x = mean[keep].to_numpy(dtype=float)
    y = lfc[keep].to_numpy(dtype=float)
    p = padj[keep].to_numpy(dtype=float)
    sig = np.isfinite(p) & (p < float(padj_thresh)) & (np.abs(y) > float(lfc_thresh))

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(x[~sig], y[~sig], c="#9aa0a6", s=s, alpha=0.5, linewidths=0.0, rasterized=True)
    ax.scatter(x[sig], y[sig], c="#d93025", s=s, alpha=0.8, linewidths=0.0, rasterized=True,
               label=f"padj < {padj_thresh:g} ({int(sig.sum())})")
    ax.axhline(0.0, color="black", lw=0.8)

    ax.set_xscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel("log2 fold change")
    ax.legend(frameon=False, loc="upper right")
    if title:
        ax.set_title(str(title))
    fig.tight_layout()
    return fig


def pvalue_histogram(
    df_de: pd.DataFrame,
    *,
    title: Optional[str] = None,
    bins: int = 50,
    figsize: tuple[float, float] = (6.0, 4.0),
) -> Figure:
    """Raw p-values of genes with baseMean > 1."""
    if df_de is None or df_de.empty:
        return _empty_figure("No DE results", figsize)

    mean = pd.to_numeric(_safe_series(df_de, "baseMean"), errors="coerce")
    pval = pd.to_numeric(_safe_series(df_de, "pvalue"), errors="coerce")
    vals = pval[(mean > 1) & pval.notna()].to_numpy(dtype=float)
    if vals.size == 0:
        return _empty_figure("No defined p-values", figsize)

    fig, ax = plt.subplots(figsize=figsize)
    ax.hist(vals, bins=int(bins), range=(0, 1), color="steelblue", edgecolor="white", alpha=0.9)
    ax.set_xlabel("p-value")
    ax.set_ylabel("genes")
    if title:
        ax.set_title(str(title))
    fig.tight_layout()
    return fig


# -----------------------------------------------------------------------------
# Across contrasts
# -----------------------------------------------------------------------------
def de_count_bars(summary: pd.DataFrame, *, figsize: Optional[tuple[float, float]] = None) -> Figure:
    """Up / down counts per contrast from the summary table."""
    if summary is None or summary.empty:
        return _empty_figure("No contrasts", (6.0, 3.0))

    up = pd.to_numeric(summary["up"], errors="coerce").fillna(0).to_numpy()
    down = pd.to_numeric(summary["down"], errors="coerce").fillna(0).to_numpy()
    names = summary.index.astype(str).tolist()

    if figsize is None:
        figsize = (max(6.0, 0.7 * len(names) + 2.0), 4.5)
    fig, ax = plt.subplots(figsize=figsize)
    x = np.arange(len(names))
    ax.bar(x, up, color="#d93025", label="up")
    ax.bar(x, -down, color="#1a73e8", label="down")
    for i in range(len(names)):
        ax.text(x[i], up[i], f"{int(up[i])}", ha="center", va="bottom", fontsize=8)
        ax.text(x[i], -down[i], f"{int(down[i])}", ha="center", va="top", fontsize=8)

    ax.axhline(0.0, color="black", lw=0.8)
    ax.set_xticks(x)
    ax.set_xticklabels(names, rotation=45, ha="right")
    ax.set_ylabel("genes (down shown negative)")
    ax.set_title("Differentially expressed genes per contrast")
    ax.legend(frameon=False)
    fig.tight_layout()
    return fig


def upset_plot(table: pd.DataFrame, *, title: Optional[str] = None) -> Optional[Figure]:
    """
    UpSet plot from a 0/1 overlap table (genes x contrasts).

    Returns None when fewer than two contrasts or no genes are present.
    """
    from upsetplot import UpSet, from_memberships

    if table is None or table.shape[1] < 2 or table.shape[0] == 0:
        return None

    cols = [str(c) for c in table.columns]
    values = table.to_numpy(dtype=bool)
    memberships = [[c for c, hit in zip(cols, row) if hit] for row in values]

    data = from_memberships(memberships)
    width = max(9.0, 3.2 + len(cols) * 1.4)
    height = max(6.0, 4.0 + len(cols) * 0.35)
    fig = plt.figure(figsize=(width, height))
    UpSet(data, show_counts=True, subset_size="count", sort_by="cardinality").plot(fig=fig)
    if title:
        fig.suptitle(str(title))
    return fig
