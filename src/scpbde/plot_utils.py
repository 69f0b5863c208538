from __future__ import annotations

from pathlib import Path
from typing import Sequence

import logging

import matplotlib as mpl
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from matplotlib.figure import Figure
from matplotlib.patches import Patch

LOGGER = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Global styling
# -------------------------------------------------------------------------
mpl.rcParams["axes.spines.top"] = False
mpl.rcParams["axes.spines.right"] = False
mpl.rcParams["axes.spines.left"] = True
mpl.rcParams["axes.spines.bottom"] = True
mpl.rcParams["axes.linewidth"] = 0.6
mpl.rcParams["axes.edgecolor"] = "#555555"

mpl.rcParams["xtick.color"] = "#333333"
mpl.rcParams["ytick.color"] = "#333333"

mpl.rcParams["figure.autolayout"] = False
mpl.rcParams["figure.constrained_layout.use"] = False

FIGURE_FORMATS = ["png", "pdf"]
ROOT_FIGDIR: Path | None = None

QC_FIGDIR = Path("QC_plots")


# -------------------------------------------------------------------------
# Setup + saving
# -------------------------------------------------------------------------
def set_figure_formats(formats: Sequence[str]) -> None:
    global FIGURE_FORMATS
    FIGURE_FORMATS = list(formats)


def setup_scanpy_figs(figdir: Path, formats: Sequence[str] | None = None) -> None:
    """
    Configure Scanpy and global figure settings for scPBDE.
    """
    global ROOT_FIGDIR
    ROOT_FIGDIR = Path(figdir).resolve()

    if formats is not None:
        set_figure_formats(formats)

    sc.settings.figdir = ROOT_FIGDIR

    sc.settings.autoshow = False
    sc.settings.autosave = False

    sc.settings.set_figure_params(
        dpi=100,
        dpi_save=300,
        facecolor="white",
        frameon=False,
        vector_friendly=False,
        fontsize=10,
        figsize=(6, 5),
        format=FIGURE_FORMATS[0],
    )

    ROOT_FIGDIR.mkdir(parents=True, exist_ok=True)


def save_multi(stem: str, figdir: Path, fig=None) -> list[Path]:
    """
    Save the current matplotlib figure (or a provided figure) to every
    configured format under <ROOT_FIGDIR>/<ext>/<figdir>/<stem>.<ext>.

    Returns the written paths.
    """
    if ROOT_FIGDIR is None:
        raise RuntimeError("ROOT_FIGDIR is not set. Call setup_scanpy_figs() first.")

    if fig is None:
        fig = plt.gcf()

    figdir = Path(figdir)
    written: list[Path] = []
    for ext in FIGURE_FORMATS:
        outdir = ROOT_FIGDIR / ext / figdir
        outdir.mkdir(parents=True, exist_ok=True)
        outfile = outdir / f"{stem}.{ext}"
        LOGGER.info("Saving figure: %s", outfile)
        fig.savefig(outfile, dpi=300, bbox_inches="tight")
        written.append(outfile)

    plt.close(fig)
    return written


# -------------------------------------------------------------------------
# Internal helpers
# -------------------------------------------------------------------------
def _clean_axes(ax):
    ax.grid(False)
    for spine in ["left", "bottom"]:
        ax.spines[spine].set_visible(True)
        ax.spines[spine].set_alpha(0.5)
    ax.spines["right"].set_visible(False)
    ax.spines["top"].set_visible(False)
    return ax


def _placeholder(text: str, figsize=(6.0, 3.0)) -> Figure:
    fig, ax = plt.subplots(figsize=figsize)
    ax.text(0.5, 0.5, text, ha="center", va="center")
    ax.set_axis_off()
    return fig


def _cluster_colors(labels: Sequence[str]) -> dict[str, tuple]:
    cmap = plt.get_cmap("tab20")
    levels = sorted(pd.unique(pd.Series(labels, dtype=str)))
    return {lv: cmap(i % cmap.N) for i, lv in enumerate(levels)}


# -------------------------------------------------------------------------
# Library-level QC
# -------------------------------------------------------------------------
def plot_library_sizes(counts: pd.DataFrame, metadata: pd.DataFrame, *, group_key: str) -> Figure:
    """Total counts per pseudobulk library, coloured by cluster."""
    totals = counts.sum(axis=0).reindex(metadata.index)
    labels = metadata[group_key].astype(str)
    colors = _cluster_colors(labels)

    fig, ax = plt.subplots(figsize=(max(6, 0.35 * len(totals)), 4))
    _clean_axes(ax)
    x = np.arange(len(totals))
    ax.bar(x, totals.to_numpy(dtype=float), color=[colors[c] for c in labels], edgecolor="black", linewidth=0.3)
    ax.axhline(float(totals.mean()), linestyle="--", color="#1f4e79", linewidth=1.0)

    ax.set_xticks(x)
    ax.set_xticklabels(totals.index.astype(str), rotation=90, fontsize=7)
    ax.set_ylabel("Total counts")
    ax.set_title("Pseudobulk library sizes")

    handles = [Patch(color=col, label=lv) for lv, col in colors.items()]
    ax.legend(handles=handles, title=group_key, frameon=False, bbox_to_anchor=(1.01, 1), loc="upper left")
    fig.tight_layout()
    return fig


def plot_cells_per_library(metadata: pd.DataFrame, *, group_key: str) -> Figure:
    n_cells = pd.to_numeric(metadata["n_cells"], errors="coerce")
    labels = metadata[group_key].astype(str)
    colors = _cluster_colors(labels)

    fig, ax = plt.subplots(figsize=(max(6, 0.35 * len(n_cells)), 4))
    _clean_axes(ax)
    x = np.arange(len(n_cells))
    ax.bar(x, n_cells.to_numpy(dtype=float), color=[colors[c] for c in labels], edgecolor="black", linewidth=0.3)

    ax.set_xticks(x)
    ax.set_xticklabels(metadata.index.astype(str), rotation=90, fontsize=7)
    ax.set_ylabel("Cells")
    ax.set_title("Cells per pseudobulk library")

    summary_text = f"Total cells: {int(n_cells.sum()):,}\nMedian per library: {n_cells.median():,.0f}"
    ax.text(
        0.02,
        0.98,
        summary_text,
        transform=ax.transAxes,
        fontsize=9,
        va="top",
        bbox=dict(boxstyle="round,pad=0.3", fc="white", ec="gray"),
    )
    fig.tight_layout()
    return fig


# -------------------------------------------------------------------------
# VST-based exploration
# -------------------------------------------------------------------------
def plot_sample_distance_heatmap(vst: pd.DataFrame, metadata: pd.DataFrame, *, group_key: str) -> Figure:
    """Euclidean distances between libraries on variance-stabilized counts."""
    import seaborn as sns
    from scipy.spatial.distance import pdist, squareform

    if vst is None or vst.shape[0] < 2:
        return _placeholder("Fewer than two libraries")

    dist = pd.DataFrame(squareform(pdist(vst.to_numpy(dtype=float))), index=vst.index, columns=vst.index)
    colors = _cluster_colors(metadata[group_key].astype(str))
    row_colors = metadata.loc[vst.index, group_key].astype(str).map(colors)

    n = dist.shape[0]
    size = max(6.0, 0.3 * n + 3.0)
    grid = sns.clustermap(
        dist,
        cmap="Blues_r",
        row_colors=row_colors,
        col_colors=row_colors,
        xticklabels=True,
        yticklabels=True,
        figsize=(size, size),
    )
    grid.ax_heatmap.tick_params(axis="both", labelsize=7)
    grid.figure.suptitle("Sample-to-sample distances (VST)", y=1.02)
    return grid.figure


def plot_top_variance_heatmap(
    vst: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    group_key: str,
    top_n: int = 50,
) -> Figure:
    """Row-centered VST values of the most variable genes."""
    import seaborn as sns

    if vst is None or vst.shape[0] < 2 or vst.shape[1] == 0:
        return _placeholder("Not enough data for a gene heatmap")

    var = vst.var(axis=0).sort_values(ascending=False)
    genes = var.index[: int(top_n)]
    mat = vst.loc[:, genes].T
    mat = mat.sub(mat.mean(axis=1), axis=0)

    colors = _cluster_colors(metadata[group_key].astype(str))
    col_colors = metadata.loc[vst.index, group_key].astype(str).map(colors)

    grid = sns.clustermap(
        mat,
        cmap="RdBu_r",
        center=0,
        col_colors=col_colors,
        xticklabels=True,
        yticklabels=True,
        figsize=(max(6.0, 0.3 * mat.shape[1] + 4.0), max(6.0, 0.18 * mat.shape[0] + 3.0)),
    )
    grid.ax_heatmap.tick_params(axis="both", labelsize=6)
    grid.figure.suptitle(f"Top {len(genes)} variable genes (VST, row-centered)", y=1.02)
    return grid.figure


def vst_anndata(vst: pd.DataFrame, metadata: pd.DataFrame) -> ad.AnnData:
    obs = metadata.loc[vst.index].copy()
    for col in obs.columns:
        if obs[col].dtype == object:
            obs[col] = obs[col].astype(str).astype("category")
    return ad.AnnData(X=vst.to_numpy(dtype=np.float32), obs=obs, var=pd.DataFrame(index=vst.columns))


def plot_pca(vst: pd.DataFrame, metadata: pd.DataFrame, *, color: str, n_top: int = 500) -> Figure:
    """PCA of the most variable VST genes, via scanpy."""
    if vst is None or vst.shape[0] < 3:
        return _placeholder("Fewer than three libraries; PCA skipped")

    top = vst.var(axis=0).sort_values(ascending=False).index[: int(n_top)]
    adata = vst_anndata(vst.loc[:, top], metadata)
    n_comps = int(min(10, adata.n_obs - 1, adata.n_vars - 1))
    if n_comps < 2:
        return _placeholder("Not enough libraries or genes for PCA")
    sc.pp.pca(adata, n_comps=n_comps)

    fig, ax = plt.subplots(figsize=(6, 5))
    sc.pl.pca(adata, color=color, ax=ax, show=False, size=120, annotate_var_explained=True)
    ax.set_title(f"PCA of VST counts by {color}")
    fig.tight_layout()
    return fig


def plot_dispersions(disp: pd.DataFrame, *, title: str = "Dispersion estimates") -> Figure:
    """Gene-wise, fitted and final (MAP) dispersions against mean normalized counts."""
    if disp is None or disp.empty or "baseMean" not in disp.columns:
        return _placeholder("No dispersion estimates")

    df = disp.copy()
    df = df[pd.to_numeric(df["baseMean"], errors="coerce") > 0]
    mean = df["baseMean"].to_numpy(dtype=float)

    fig, ax = plt.subplots(figsize=(6, 5))
    _clean_axes(ax)
    if "genewise_dispersions" in df:
        ax.scatter(mean, df["genewise_dispersions"], s=3, c="black", alpha=0.5, label="gene-est", rasterized=True)
    if "dispersions" in df:
        ax.scatter(mean, df["dispersions"], s=3, c="#1f77b4", alpha=0.5, label="final", rasterized=True)
    if "fitted_dispersions" in df:
        order = np.argsort(mean)
        ax.plot(mean[order], df["fitted_dispersions"].to_numpy(dtype=float)[order], c="#d93025", lw=1.2, label="fitted")

    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel("dispersion")
    ax.set_title(title)
    ax.legend(frameon=False, markerscale=3)
    fig.tight_layout()
    return fig
