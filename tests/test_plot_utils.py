# tests/test_plot_utils.py

import numpy as np
import pandas as pd
import pytest

import matplotlib as mpl
mpl.use("Agg")  # headless backend for tests
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

import scpbde.plot_utils as pu
import scpbde.de_plot_utils as dpu
from scpbde.overlap import build_overlap_table


# ---------------------------------------------------------------------
# Small pseudobulk helpers
# ---------------------------------------------------------------------
def synthetic_libraries(samples=("S1", "S2", "S3"), clusters=("0", "3"), g=60, seed=0):
    rng = np.random.default_rng(seed)
    libs = [f"{s}|{c}" for s in samples for c in clusters]
    counts = pd.DataFrame(
        rng.poisson(20.0, (g, len(libs))),
        index=[f"gene{i}" for i in range(g)],
        columns=libs,
    )
    metadata = pd.DataFrame(
        {
            "sample": [lib.split("|")[0] for lib in libs],
            "cluster": [lib.split("|")[1] for lib in libs],
            "n_cells": rng.integers(5, 50, len(libs)),
        },
        index=libs,
    )
    vst = np.log2(counts.T + 1.0)
    return counts, metadata, vst


def synthetic_de_table(n=100, seed=1):
    rng = np.random.default_rng(seed)
    padj = rng.uniform(0, 1, n)
    padj[:10] = 1e-6
    lfc = rng.normal(0, 1, n)
    lfc[:5] = 3.0
    lfc[5:10] = -3.0
    return pd.DataFrame(
        {
            "Symbol": [f"gene{i}" for i in range(n)],
            "baseMean": rng.gamma(2.0, 50.0, n),
            "log2FoldChange": lfc,
            "lfcSE": 0.3,
            "stat": lfc / 0.3,
            "pvalue": padj / 2,
            "padj": padj,
        }
    )


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def reset_root_figdir(monkeypatch):
    # reset ROOT_FIGDIR between tests
    monkeypatch.setattr(pu, "ROOT_FIGDIR", None, raising=False)
    monkeypatch.setattr(pu, "FIGURE_FORMATS", ["png", "pdf"], raising=False)
    yield
    monkeypatch.setattr(pu, "ROOT_FIGDIR", None, raising=False)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


# ---------------------------------------------------------------------
# Basic configuration / save_multi
# ---------------------------------------------------------------------
def test_setup_scanpy_figs_and_save_multi(tmp_path, reset_root_figdir):
    figdir = tmp_path / "figs"
    pu.setup_scanpy_figs(figdir, formats=["png"])

    fig = plt.figure()
    written = pu.save_multi("test_plot", "contrasts/0_vs_3", fig=fig)

    out = figdir / "png" / "contrasts" / "0_vs_3" / "test_plot.png"
    assert out.exists()
    assert written == [out.resolve()]


def test_save_multi_writes_every_format(tmp_path, reset_root_figdir):
    figdir = tmp_path / "figs"
    pu.setup_scanpy_figs(figdir, formats=["png", "pdf"])

    pu.save_multi("x", pu.QC_FIGDIR / "libraries", fig=plt.figure())

    assert (figdir / "png" / "QC_plots" / "libraries" / "x.png").exists()
    assert (figdir / "pdf" / "QC_plots" / "libraries" / "x.pdf").exists()


def test_save_multi_without_setup_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(pu, "ROOT_FIGDIR", None, raising=False)
    fig = plt.figure()
    with pytest.raises(RuntimeError):
        pu.save_multi("x", tmp_path, fig=fig)


# ---------------------------------------------------------------------
# Library QC
# ---------------------------------------------------------------------
def test_cluster_colors_are_stable():
    colors = pu._cluster_colors(["3", "0", "3"])
    assert list(colors) == ["0", "3"]


def test_plot_library_sizes_and_cells():
    counts, metadata, _ = synthetic_libraries()
    assert isinstance(pu.plot_library_sizes(counts, metadata, group_key="cluster"), Figure)
    assert isinstance(pu.plot_cells_per_library(metadata, group_key="cluster"), Figure)


# ---------------------------------------------------------------------
# VST exploration
# ---------------------------------------------------------------------
def test_vst_heatmaps():
    _, metadata, vst = synthetic_libraries()
    fig = pu.plot_sample_distance_heatmap(vst, metadata, group_key="cluster")
    assert isinstance(fig, Figure)

    fig = pu.plot_top_variance_heatmap(vst, metadata, group_key="cluster", top_n=20)
    assert isinstance(fig, Figure)


def test_vst_heatmap_single_library_placeholder():
    _, metadata, vst = synthetic_libraries(samples=("S1",), clusters=("0",))
    fig = pu.plot_sample_distance_heatmap(vst, metadata, group_key="cluster")
    assert isinstance(fig, Figure)


def test_vst_anndata_categorical_obs():
    _, metadata, vst = synthetic_libraries()
    adata = pu.vst_anndata(vst, metadata)
    assert adata.shape == vst.shape
    assert str(adata.obs["cluster"].dtype) == "category"


def test_plot_pca():
    _, metadata, vst = synthetic_libraries()
    fig = pu.plot_pca(vst, metadata, color="cluster", n_top=40)
    assert isinstance(fig, Figure)


def test_plot_pca_too_few_libraries():
    _, metadata, vst = synthetic_libraries(samples=("S1",))
    fig = pu.plot_pca(vst, metadata, color="cluster")
    assert isinstance(fig, Figure)


def test_plot_dispersions():
    rng = np.random.default_rng(0)
    disp = pd.DataFrame(
        {
            "baseMean": rng.gamma(2.0, 50.0, 50),
            "genewise_dispersions": rng.uniform(0.01, 1.0, 50),
            "fitted_dispersions": rng.uniform(0.01, 1.0, 50),
            "dispersions": rng.uniform(0.01, 1.0, 50),
        }
    )
    assert isinstance(pu.plot_dispersions(disp, title="x"), Figure)
    assert isinstance(pu.plot_dispersions(pd.DataFrame()), Figure)


# ---------------------------------------------------------------------
# DE plots
# ---------------------------------------------------------------------
def test_select_top_genes_orders_by_padj_then_abs_lfc():
    df = pd.DataFrame(
        {
            "Symbol": ["a", "b", "c", "d"],
            "padj": [0.01, 0.01, 0.001, 0.5],
            "log2FoldChange": [0.5, -2.0, 0.1, 5.0],
        }
    )
    assert dpu._select_top_genes(df, padj_thresh=0.1, top_n=3) == ["c", "b", "a"]


def test_clip_padj_keeps_nan():
    out = dpu._clip_padj(np.array([0.0, 0.5, np.nan]))
    assert out[0] == 1e-300
    assert np.isnan(out[2])


def test_volcano_ma_and_pvalue_histogram():
    df = synthetic_de_table()
    assert isinstance(dpu.volcano(df, padj_thresh=0.1, lfc_thresh=1.0, title="0_vs_3"), Figure)
    assert isinstance(dpu.ma_plot(df, padj_thresh=0.1), Figure)
    assert isinstance(dpu.pvalue_histogram(df), Figure)


def test_volcano_missing_column_raises():
    df = synthetic_de_table().drop(columns=["padj"])
    with pytest.raises(KeyError):
        dpu.volcano(df)


def test_de_plots_empty_table():
    empty = pd.DataFrame(columns=["Symbol", "baseMean", "log2FoldChange", "pvalue", "padj"])
    assert isinstance(dpu.volcano(empty), Figure)
    assert isinstance(dpu.ma_plot(empty), Figure)
    assert isinstance(dpu.pvalue_histogram(empty), Figure)


def test_de_count_bars():
    summary = pd.DataFrame({"up": [6, 0], "down": [7, 2]}, index=pd.Index(["0_vs_3", "0_vs_61"], name="contrast"))
    assert isinstance(dpu.de_count_bars(summary), Figure)


def test_upset_plot():
    table = build_overlap_table({"0_vs_3": ["a", "b"], "0_vs_61": ["b", "c"], "3_vs_61": ["c"]})
    fig = dpu.upset_plot(table, title="up genes")
    assert isinstance(fig, Figure)


def test_upset_plot_needs_two_contrasts_and_genes():
    assert dpu.upset_plot(build_overlap_table({"0_vs_3": ["a"]})) is None
    assert dpu.upset_plot(build_overlap_table({"0_vs_3": [], "0_vs_61": []})) is None
