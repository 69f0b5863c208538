# src/scpbde/pseudobulk_de.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

import matplotlib.pyplot as plt
import pandas as pd
from matplotlib.figure import Figure

from . import __version__
from . import io_utils
from .classify import GeneSets, classify, summarize, summary_table
from .config import PseudobulkDEConfig
from .contrasts import FULL_DESIGN_NAME, Contrast, build_contrasts, drop_full_design, remove_outlier
from .de_utils import ContrastRecord, DEOptions, full_design_qc, run_contrasts
from .logging_utils import init_logging
from .overlap import overlap_tables
from .pseudobulk import PseudobulkMatrix, attach_sample_table, pseudobulk_aggregate, sample_table_from_obs

LOGGER = logging.getLogger(__name__)


@dataclass
class PseudobulkDEResult:
    pb: PseudobulkMatrix
    records: Dict[str, ContrastRecord]
    summary: pd.DataFrame
    status: pd.DataFrame
    overlap: Dict[str, pd.DataFrame] = field(default_factory=dict)


def _write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


def _settings_lines(cfg: PseudobulkDEConfig, contrasts: Dict[str, Contrast]) -> list[str]:
    return [
        f"version={__version__}",
        f"input_path={cfg.input_path}",
        f"pseudobulk_dir={cfg.pseudobulk_dir}",
        f"sample_table={cfg.sample_table}",
        f"sample_key={cfg.sample_key}",
        f"group_key={cfg.group_key}",
        f"condition_key={cfg.condition_key}",
        f"counts_layer={cfg.counts_layer}",
        f"clusters={cfg.clusters}",
        f"outlier_sample={cfg.outlier_sample or 'none'}",
        f"min_cells_per_library={cfg.min_cells_per_library}",
        f"alpha={cfg.alpha}",
        f"lfc_threshold={cfg.lfc_threshold}",
        f"fit_type={cfg.fit_type}",
        f"design_formula={cfg.design_formula}",
        f"shrink_lfc={cfg.shrink_lfc}",
        f"n_jobs={cfg.n_jobs}",
        f"contrast_timeout_s={cfg.contrast_timeout_s}",
        "test=Wald (cooks_filter=True, independent_filter=True)",
        f"contrasts={list(contrasts.keys())}",
    ]


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
COUNTS_TABLE = "pseudobulk_counts.tsv"
METADATA_TABLE = "pseudobulk_metadata.tsv"


def _load_pseudobulk_dir(cfg: PseudobulkDEConfig) -> PseudobulkMatrix:
    """Matrix written by a previous `aggregate` run; labels and min-cells are re-checked."""
    pb_dir = Path(cfg.pseudobulk_dir)
    LOGGER.info("Reusing pseudobulk tables from %s", pb_dir)
    pb = io_utils.read_pseudobulk(
        pb_dir / COUNTS_TABLE,
        pb_dir / METADATA_TABLE,
        sample_key=cfg.sample_key,
        group_key=cfg.group_key,
    )
    reloaded = pseudobulk_aggregate(
        pb.to_anndata(),
        sample_key=cfg.sample_key,
        group_key=cfg.group_key,
        min_cells_per_library=cfg.min_cells_per_library,
    )
    attrs = pb.metadata.drop(columns=[cfg.sample_key, cfg.group_key, "n_cells"])
    metadata = reloaded.metadata.join(attrs, how="left")
    return PseudobulkMatrix(
        counts=reloaded.counts,
        metadata=metadata,
        sample_key=cfg.sample_key,
        group_key=cfg.group_key,
    )


def build_pseudobulk(cfg: PseudobulkDEConfig) -> PseudobulkMatrix:
    if cfg.pseudobulk_dir is not None:
        pb = _load_pseudobulk_dir(cfg)
    else:
        adata = io_utils.load_dataset(cfg.input_path)

        pb = pseudobulk_aggregate(
            adata,
            sample_key=cfg.sample_key,
            group_key=cfg.group_key,
            counts_layer=cfg.counts_layer,
            min_cells_per_library=cfg.min_cells_per_library,
        )

        obs_table = sample_table_from_obs(
            adata,
            sample_key=cfg.sample_key,
            columns=[c for c in (cfg.condition_key, "sex", "age") if c],
        )
        pb = attach_sample_table(pb, obs_table)

    sample_table = io_utils.read_sample_table(cfg.sample_table, cfg.sample_key)
    pb = attach_sample_table(pb, sample_table)

    if cfg.condition_key and cfg.condition_key not in pb.metadata.columns:
        LOGGER.warning(
            "condition_key=%r not found in obs or sample table; libraries carry no condition.",
            cfg.condition_key,
        )
    return pb


def _write_pseudobulk(pb: PseudobulkMatrix, tables: Path) -> None:
    io_utils.write_pseudobulk_counts(pb, tables / COUNTS_TABLE)
    io_utils.write_pseudobulk_metadata(pb, tables / METADATA_TABLE)


def run_aggregate(cfg: PseudobulkDEConfig) -> PseudobulkMatrix:
    """Aggregate and write the pseudobulk matrix only."""
    init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk aggregation (scPBDE %s)", __version__)

    pb = build_pseudobulk(cfg)
    _write_pseudobulk(pb, cfg.tables_dir)

    LOGGER.info("Finished pseudobulk aggregation.")
    return pb


# -----------------------------------------------------------------------------
# Figures
# -----------------------------------------------------------------------------
def _save_figure(stem: str, figdir: Path, build: Callable[[], Optional[Figure]]) -> None:
    """Build and save one figure; a failing plot is logged and skipped."""
    from . import plot_utils

    try:
        fig = build()
        if fig is None:
            LOGGER.info("Figure %s/%s: nothing to plot; skipped.", figdir, stem)
            return
        plot_utils.save_multi(stem, figdir, fig)
    except Exception as e:
        LOGGER.warning("Figure %s/%s failed: %s", figdir, stem, e)
        plt.close("all")


def _make_figures(
    cfg: PseudobulkDEConfig,
    full: Contrast,
    records: Dict[str, ContrastRecord],
    summary: pd.DataFrame,
    overlap: Dict[str, pd.DataFrame],
) -> None:
    from . import plot_utils, de_plot_utils

    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)
    qc = plot_utils.QC_FIGDIR
    gk = full.group_key

    _save_figure(
        "library_sizes", qc / "libraries",
        lambda: plot_utils.plot_library_sizes(full.counts, full.metadata, group_key=gk),
    )
    _save_figure(
        "cells_per_library", qc / "libraries",
        lambda: plot_utils.plot_cells_per_library(full.metadata, group_key=gk),
    )

    try:
        design_qc = full_design_qc(full, DEOptions.from_config(cfg), n_cpus=cfg.n_jobs)
    except Exception as e:
        LOGGER.warning("Full-design fit for QC plots failed (%s); skipping VST and dispersion plots.", e)
        design_qc = None

    if design_qc is not None:
        io_utils.export_size_factors(design_qc.size_factors, cfg.tables_dir / "pseudobulk_size_factors.tsv")
        _save_figure(
            "dispersion_full_design", qc / "dispersion",
            lambda: plot_utils.plot_dispersions(
                design_qc.dispersions, title=f"Dispersion estimates ({FULL_DESIGN_NAME})"
            ),
        )
        if design_qc.vst is not None:
            vst, meta = design_qc.vst, design_qc.metadata
            _save_figure(
                "sample_distances", qc / "vst",
                lambda: plot_utils.plot_sample_distance_heatmap(vst, meta, group_key=gk),
            )
            _save_figure(
                f"top{cfg.heatmap_top_n_genes}_variable_genes", qc / "vst",
                lambda: plot_utils.plot_top_variance_heatmap(vst, meta, group_key=gk, top_n=cfg.heatmap_top_n_genes),
            )
            for color in (gk, full.sample_key):
                _save_figure(
                    f"pca_by_{color}", qc / "vst",
                    lambda: plot_utils.plot_pca(vst, meta, color=color),
                )

    for name, rec in records.items():
        figdir = Path("contrasts") / name
        table = io_utils.de_table(rec.result)
        _save_figure(
            "ma_plot", figdir,
            lambda: de_plot_utils.ma_plot(table, padj_thresh=cfg.alpha, lfc_thresh=cfg.lfc_threshold, title=name),
        )
        _save_figure(
            "volcano", figdir,
            lambda: de_plot_utils.volcano(
                table,
                padj_thresh=cfg.alpha,
                lfc_thresh=cfg.lfc_threshold,
                top_label_n=cfg.volcano_top_label_n,
                title=name,
            ),
        )
        _save_figure(
            "pvalue_histogram", figdir,
            lambda: de_plot_utils.pvalue_histogram(table, title=name),
        )
        _save_figure(
            "dispersion", figdir,
            lambda: plot_utils.plot_dispersions(rec.dispersions, title=f"Dispersion estimates ({name})"),
        )

    if not summary.empty:
        _save_figure("de_counts", Path("overlap"), lambda: de_plot_utils.de_count_bars(summary))

    # UpSet needs >= 2 contrasts and >= 1 gene; upset_plot returns None otherwise
    for direction, table in overlap.items():
        _save_figure(
            f"upset_{direction}", Path("overlap"),
            lambda: de_plot_utils.upset_plot(table, title=f"{direction} genes"),
        )


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------
def run_pseudobulk_de(cfg: PseudobulkDEConfig) -> PseudobulkDEResult:
    """
    Full pipeline:
      load -> aggregate -> contrasts -> outlier removal -> pairwise DE ->
      classification -> overlap -> tables, figures, report.

    Input validation errors abort before any contrast is built. Contrasts that
    fail to fit are logged and listed in de_run_status.tsv; the rest proceed.
    """
    init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk DE (scPBDE %s)", __version__)

    tables = cfg.tables_dir

    pb = build_pseudobulk(cfg)
    _write_pseudobulk(pb, tables)

    contrasts = build_contrasts(pb, cfg.clusters)
    contrasts = remove_outlier(contrasts, cfg.outlier_sample)
    full = contrasts[FULL_DESIGN_NAME]
    pairwise = drop_full_design(contrasts)

    opts = DEOptions.from_config(cfg)
    records, status = run_contrasts(pairwise, opts)

    classified: Dict[str, GeneSets] = {}
    rows: Dict[str, dict] = {}
    for name in pairwise:
        rec = records.get(name)
        if rec is None:
            continue
        rec.gene_sets = classify(rec.result, alpha=cfg.alpha, lfc_threshold=cfg.lfc_threshold)
        rec.summary = summarize(
            rec.result,
            alpha=cfg.alpha,
            lfc_threshold=cfg.lfc_threshold,
            design=opts.design,
            test=opts.test_name,
        )
        classified[name] = rec.gene_sets
        rows[name] = rec.summary
        LOGGER.info(
            "Contrast %s: up=%d down=%d low.counts=%d outliers=%d",
            name, rec.summary["up"], rec.summary["down"], rec.summary["low.counts"], rec.summary["outliers"],
        )

    summary = summary_table(rows)
    overlap = overlap_tables(classified)

    io_utils.export_de_tables({n: r.result for n, r in records.items()}, tables / "de")
    io_utils.export_overlap_tables(overlap, tables / "overlap")
    io_utils.export_summary(summary, tables / "de_summary.tsv")
    io_utils.export_run_status(status, tables / "de_run_status.tsv")
    _write_settings(tables, "de_settings.txt", _settings_lines(cfg, contrasts))

    if cfg.make_figures:
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=UserWarning, module="matplotlib")
            _make_figures(cfg, full, records, summary, overlap)

        try:
            from .reporting import generate_de_report

            generate_de_report(
                fig_root=cfg.figdir,
                cfg=cfg,
                version=__version__,
                pb=pb,
                summary=summary,
                status=status,
            )
            LOGGER.info("Wrote HTML report → %s", cfg.figdir / "report.html")
        except Exception as e:
            LOGGER.warning("Failed to generate report: %s", e)
    else:
        LOGGER.info("make_figures=False; skipping figures and report.")

    n_failed = int((status["status"] != "ok").sum()) if not status.empty else 0
    if n_failed:
        LOGGER.warning("%d contrast(s) did not finish; see %s", n_failed, tables / "de_run_status.tsv")
    LOGGER.info("Finished pseudobulk DE. Outputs in %s", cfg.output_dir)

    return PseudobulkDEResult(pb=pb, records=records, summary=summary, status=status, overlap=overlap)
