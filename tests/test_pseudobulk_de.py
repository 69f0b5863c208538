# tests/test_pseudobulk_de.py

import functools

import numpy as np
import pandas as pd
import pytest
import anndata as ad
import scipy.sparse as sp

import scpbde.pseudobulk_de as pde
from scpbde.config import PseudobulkDEConfig
from scpbde.de_utils import run_contrasts


def write_clustered(path, samples=("S1", "S2", "S3"), clusters=("0", "3", "61"), cells=6, g=30, seed=0):
    rng = np.random.default_rng(seed)
    s, c = [], []
    for sample in samples:
        for cl in clusters:
            s.extend([sample] * cells)
            c.extend([cl] * cells)
    X = sp.csr_matrix(rng.poisson(3.0, (len(s), g)).astype(np.float32))
    adata = ad.AnnData(X)
    adata.obs_names = [f"cell{i}" for i in range(len(s))]
    adata.var_names = [f"gene{i}" for i in range(g)]
    adata.obs["sample"] = s
    adata.obs["cluster"] = pd.Categorical(c)
    adata.obs["condition"] = ["ctrl" if x == "S1" else "treated" for x in s]
    adata.write_h5ad(path)
    return path


def fake_worker(payload):
    """0_vs_3 finds gene0-4 up and gene5 down; 3_vs_61 fails."""
    name = payload["contrast"]
    if name == "3_vs_61":
        return name, "failed", None, None, None, {"reason": "RuntimeError: boom"}

    genes = payload["genes"]
    res = pd.DataFrame(
        {
            "baseMean": 20.0,
            "log2FoldChange": 0.1,
            "lfcSE": 0.3,
            "stat": 0.3,
            "pvalue": 0.8,
            "padj": 0.9,
        },
        index=pd.Index(genes, name="Symbol"),
    )
    if name == "0_vs_3":
        res.loc[genes[:5], ["log2FoldChange", "padj"]] = [2.0, 0.001]
        res.loc[genes[5], ["log2FoldChange", "padj"]] = [-2.0, 0.001]
    else:
        res.loc[genes[:2], ["log2FoldChange", "padj"]] = [1.5, 0.01]
    disp = pd.DataFrame({"dispersions": 0.1, "baseMean": 20.0}, index=res.index)
    return name, "ok", res, res.copy(), disp, {"shrunk": True, "filter_threshold": 0.0}


@pytest.fixture
def cfg(tmp_path):
    return PseudobulkDEConfig(
        input_path=write_clustered(tmp_path / "clustered.h5ad"),
        output_dir=tmp_path / "out",
        n_jobs=1,
        make_figures=False,
    )


@pytest.fixture
def fake_de(monkeypatch):
    monkeypatch.setattr(pde, "run_contrasts", functools.partial(run_contrasts, worker=fake_worker))


# -----------------------------------------------------------------------------
# Aggregation only
# -----------------------------------------------------------------------------
def test_build_pseudobulk_attaches_condition(cfg):
    pb = pde.build_pseudobulk(cfg)
    assert pb.counts.shape == (30, 9)
    assert pb.libraries[0] == "S1|0"
    assert pb.metadata.loc["S2|61", "condition"] == "treated"
    assert (pb.metadata["n_cells"] == 6).all()


def test_build_pseudobulk_sample_table_adds_columns(cfg, tmp_path):
    table = tmp_path / "samples.tsv"
    table.write_text("sample\tdonor_age\nS1\t40\nS2\t52\nS3\t61\n")
    pb = pde.build_pseudobulk(cfg.model_copy(update={"sample_table": table}))
    assert pb.metadata.loc["S3|0", "donor_age"] == "61"


def test_run_aggregate_writes_tables(cfg):
    pde.run_aggregate(cfg)
    assert (cfg.tables_dir / "pseudobulk_counts.tsv").exists()
    meta = pd.read_csv(cfg.tables_dir / "pseudobulk_metadata.tsv", sep="\t", index_col=0)
    assert meta.shape[0] == 9


# -----------------------------------------------------------------------------
# Full pipeline with a fake fitter
# -----------------------------------------------------------------------------
def test_run_pseudobulk_de_outputs(cfg, fake_de):
    result = pde.run_pseudobulk_de(cfg)
    tables = cfg.tables_dir

    assert set(result.records) == {"0_vs_3", "0_vs_61"}
    assert (tables / "de" / "0_vs_3.tsv").exists()
    assert (tables / "de" / "0_vs_61.tsv").exists()
    assert not (tables / "de" / "3_vs_61.tsv").exists()

    status = pd.read_csv(tables / "de_run_status.tsv", sep="\t").set_index("contrast")
    assert status.loc["3_vs_61", "status"] == "failed"
    assert status.loc["0_vs_3", "status"] == "ok"

    summary = pd.read_csv(tables / "de_summary.tsv", sep="\t", index_col=0)
    assert summary.loc["0_vs_3", "up"] == 5
    assert summary.loc["0_vs_3", "down"] == 1
    assert summary.loc["0_vs_61", "up"] == 2

    up = pd.read_csv(tables / "overlap" / "up.tsv", sep="\t", index_col=0)
    assert list(up.columns) == ["0_vs_3", "0_vs_61"]
    assert up.loc["gene0"].tolist() == [1, 1]
    assert up.loc["gene4"].tolist() == [1, 0]
    changed = pd.read_csv(tables / "overlap" / "changed.tsv", sep="\t", index_col=0)
    assert "gene5" in changed.index

    settings = (tables / "de_settings.txt").read_text()
    assert "design_formula=~0 + cluster" in settings
    assert "contrasts=['all', '0_vs_3', '0_vs_61', '3_vs_61']" in settings

    assert not cfg.figdir.exists()


def test_run_pseudobulk_de_outlier_and_subset(cfg, fake_de):
    cfg = cfg.model_copy(update={"clusters": ["0", "3"], "outlier_sample": "S3"})
    result = pde.run_pseudobulk_de(cfg)

    assert list(result.records) == ["0_vs_3"]
    assert "S3|0" not in result.records["0_vs_3"].contrast.libraries
    assert result.status.shape[0] == 1


def test_run_pseudobulk_de_with_figures(cfg, fake_de, monkeypatch):
    import matplotlib as mpl
    mpl.use("Agg")

    def no_full_fit(*args, **kwargs):
        raise RuntimeError("no fitter in tests")

    monkeypatch.setattr(pde, "full_design_qc", no_full_fit)
    cfg = cfg.model_copy(update={"make_figures": True, "figure_formats": ["png"]})
    pde.run_pseudobulk_de(cfg)

    png = cfg.figdir / "png"
    assert (png / "QC_plots" / "libraries" / "library_sizes.png").exists()
    assert (png / "contrasts" / "0_vs_3" / "volcano.png").exists()
    assert (png / "contrasts" / "0_vs_3" / "pvalue_histogram.png").exists()
    assert (cfg.figdir / "report.html").exists()


def test_failing_plot_does_not_abort_run(cfg, fake_de, monkeypatch):
    import matplotlib as mpl
    mpl.use("Agg")
    import scpbde.de_plot_utils as de_plot_utils

    def broken_histogram(*args, **kwargs):
        raise TypeError("cannot draw")

    def no_full_fit(*args, **kwargs):
        raise RuntimeError("no fitter in tests")

    monkeypatch.setattr(de_plot_utils, "pvalue_histogram", broken_histogram)
    monkeypatch.setattr(pde, "full_design_qc", no_full_fit)
    cfg = cfg.model_copy(update={"make_figures": True, "figure_formats": ["png"]})
    result = pde.run_pseudobulk_de(cfg)

    png = cfg.figdir / "png" / "contrasts" / "0_vs_3"
    assert set(result.records) == {"0_vs_3", "0_vs_61"}
    assert (png / "volcano.png").exists()
    assert not (png / "pvalue_histogram.png").exists()
    assert (cfg.figdir / "report.html").exists()
    assert (cfg.tables_dir / "de_summary.tsv").exists()


# -----------------------------------------------------------------------------
# Reusing an aggregated matrix
# -----------------------------------------------------------------------------
def test_run_from_aggregated_tables(cfg, fake_de, tmp_path):
    aggregated = pde.run_aggregate(cfg)

    reuse = PseudobulkDEConfig(
        pseudobulk_dir=cfg.tables_dir,
        output_dir=tmp_path / "out2",
        n_jobs=1,
        make_figures=False,
    )
    pb = pde.build_pseudobulk(reuse)
    pd.testing.assert_frame_equal(pb.counts, aggregated.counts)
    assert pb.metadata["n_cells"].tolist() == aggregated.metadata["n_cells"].tolist()
    assert pb.metadata.loc["S2|61", "condition"] == "treated"

    result = pde.run_pseudobulk_de(reuse)
    assert set(result.records) == {"0_vs_3", "0_vs_61"}
    assert (reuse.tables_dir / "de" / "0_vs_3.tsv").exists()
    assert "pseudobulk_dir=" in (reuse.tables_dir / "de_settings.txt").read_text()


# -----------------------------------------------------------------------------
# Full pipeline with PyDESeq2
# -----------------------------------------------------------------------------
def test_run_pseudobulk_de_real_fit(cfg):
    pytest.importorskip("pydeseq2")
    cfg = cfg.model_copy(update={"clusters": ["0", "3"]})
    result = pde.run_pseudobulk_de(cfg)

    assert result.status.set_index("contrast").loc["0_vs_3", "status"] == "ok"
    de = pd.read_csv(cfg.tables_dir / "de" / "0_vs_3.tsv", sep="\t")
    assert de.shape[0] == 30
    assert list(de.columns)[:2] == ["Symbol", "baseMean"]
