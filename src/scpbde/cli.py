from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .pseudobulk_de import run_aggregate, run_pseudobulk_de
from .config import PseudobulkDEConfig
import logging
from .logging_utils import init_logging


app = typer.Typer(help="scPBDE CLI: pseudobulk differential expression between clusters.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*not compatible with tight_layout.*", category=UserWarning)
warnings.filterwarnings("ignore", message="pkg_resources is deprecated as an API", category=UserWarning)
warnings.filterwarnings("ignore", message=r".*Tight layout not applied.*", category=UserWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _normalize_clusters(clusters: Optional[List[str]]) -> Optional[List[str]]:
    """
    Supports e.g. --clusters 0,3 --clusters 61 --clusters 62.
    """
    if not clusters:
        return None

    expanded = []
    for c in clusters:
        expanded.extend([x.strip() for x in c.split(",") if x.strip()])
    return expanded


def _build_config(**kwargs) -> PseudobulkDEConfig:
    try:
        return PseudobulkDEConfig(**kwargs)
    except ValidationError as e:
        raise typer.BadParameter(str(e))


# ======================================================================
#  aggregate
# ======================================================================
@app.command("aggregate", help="Aggregate cells into (sample, cluster) pseudobulk libraries and write them.")
def aggregate(
    input_path: Path = typer.Option(
        ..., "--input-path", "-i", exists=True,
        help="[I/O] Clustered dataset (.h5ad or .zarr).",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for tables/.",
    ),
    sample_table: Optional[Path] = typer.Option(
        None, "--sample-table", "-s", exists=True,
        help="[I/O] TSV mapping sample name to attributes (condition, sex, age, ...).",
    ),
    sample_key: str = typer.Option("sample", "--sample-key", help="[Keys] obs column with sample names."),
    group_key: str = typer.Option("cluster", "--group-key", "-g", help="[Keys] obs column with cluster labels."),
    condition_key: Optional[str] = typer.Option("condition", "--condition-key", help="[Keys] Condition column."),
    counts_layer: Optional[str] = typer.Option(
        None, "--counts-layer",
        help="[Keys] Layer with raw counts (default: .X).",
    ),
    min_cells_per_library: int = typer.Option(
        1, "--min-cells-per-library",
        help="[Pseudobulk] Drop libraries with fewer cells.",
    ),
):
    logfile = output_dir / "pseudobulk-aggregate.log"
    init_logging(logfile)

    cfg = _build_config(
        input_path=input_path,
        output_dir=output_dir,
        sample_table=sample_table,
        sample_key=sample_key,
        group_key=group_key,
        condition_key=condition_key,
        counts_layer=counts_layer,
        min_cells_per_library=min_cells_per_library,
        make_figures=False,
        logfile=logfile,
    )

    run_aggregate(cfg)


# ======================================================================
#  run
# ======================================================================
@app.command("run", help="Full pipeline: aggregation, pairwise DE, classification, overlap, figures.")
def run(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    input_path: Optional[Path] = typer.Option(
        None, "--input-path", "-i", exists=True,
        help="[I/O] Clustered dataset (.h5ad or .zarr).",
    ),
    pseudobulk_dir: Optional[Path] = typer.Option(
        None, "--pseudobulk-dir", exists=True, file_okay=False,
        help="[I/O] tables/ directory of a previous `aggregate` run; skips loading and aggregation.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for tables/ and figures/.",
    ),
    sample_table: Optional[Path] = typer.Option(
        None, "--sample-table", "-s", exists=True,
        help="[I/O] TSV mapping sample name to attributes (condition, sex, age, ...).",
    ),

    # -------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------
    sample_key: str = typer.Option("sample", "--sample-key", help="[Keys] obs column with sample names."),
    group_key: str = typer.Option("cluster", "--group-key", "-g", help="[Keys] obs column with cluster labels."),
    condition_key: Optional[str] = typer.Option("condition", "--condition-key", help="[Keys] Condition column."),
    counts_layer: Optional[str] = typer.Option(
        None, "--counts-layer",
        help="[Keys] Layer with raw counts (default: .X).",
    ),

    # -------------------------------------------------------------
    # Contrasts
    # -------------------------------------------------------------
    clusters: Optional[List[str]] = typer.Option(
        None, "--clusters", "-c",
        help="[Contrasts] Clusters of interest (repeat or comma-separate). Default: all clusters.",
    ),
    outlier_sample: str = typer.Option(
        "", "--outlier-sample",
        help="[Contrasts] Library id '<sample>|<cluster>' or sample name to drop before testing.",
    ),
    min_cells_per_library: int = typer.Option(
        1, "--min-cells-per-library",
        help="[Pseudobulk] Drop libraries with fewer cells.",
    ),

    # -------------------------------------------------------------
    # DE
    # -------------------------------------------------------------
    alpha: float = typer.Option(0.1, "--alpha", help="[DE] FDR cutoff on adjusted p-values."),
    lfc_threshold: float = typer.Option(0.0, "--lfc-threshold", help="[DE] |log2FC| threshold."),
    fit_type: str = typer.Option("parametric", "--fit-type", help="[DE] Dispersion fit: parametric | mean."),
    design_intercept: bool = typer.Option(
        False, "--design-intercept/--no-design-intercept",
        help="[DE] Fit '~cluster' instead of '~0 + cluster'.",
    ),
    shrink_lfc: bool = typer.Option(True, "--shrink-lfc/--no-shrink-lfc", help="[DE] Shrink exported LFCs."),

    # -------------------------------------------------------------
    # Compute
    # -------------------------------------------------------------
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", help="Number of CPU cores to use."),
    contrast_timeout: Optional[float] = typer.Option(
        None, "--contrast-timeout",
        help="Per-contrast time limit in seconds (parallel mode).",
    ),

    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots and the HTML report."),
    figdir_name: str = typer.Option("figures", "--figdir-name", help="[Figures] Name of figure directory."),
    figure_formats: List[str] = typer.Option(
        ["png", "pdf"], "--figure-formats", "-F",
        help="[Figures] Formats to save.",
    ),
):
    logfile = output_dir / "pseudobulk-de.log"
    init_logging(logfile)
    logging.getLogger(__name__).info("Logging initialized")

    kwargs = dict(
        input_path=input_path,
        pseudobulk_dir=pseudobulk_dir,
        output_dir=output_dir,
        sample_table=sample_table,
        sample_key=sample_key,
        group_key=group_key,
        condition_key=condition_key,
        counts_layer=counts_layer,
        clusters=_normalize_clusters(clusters),
        outlier_sample=outlier_sample,
        min_cells_per_library=min_cells_per_library,
        alpha=alpha,
        lfc_threshold=lfc_threshold,
        fit_type=fit_type,
        design_intercept=design_intercept,
        shrink_lfc=shrink_lfc,
        contrast_timeout_s=contrast_timeout,
        make_figures=make_figures,
        figdir_name=figdir_name,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    if n_jobs is not None:
        kwargs["n_jobs"] = n_jobs

    cfg = _build_config(**kwargs)
    run_pseudobulk_de(cfg)


if __name__ == "__main__":
    app()
