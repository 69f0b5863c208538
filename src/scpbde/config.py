from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pathlib import Path
from typing import Optional, List, Literal
from matplotlib.figure import Figure
import multiprocessing


class PseudobulkDEConfig(BaseModel):
    """Run parameters for the pseudobulk DE pipeline. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    # ---- Input ----
    input_path: Optional[Path] = Field(None, description="Clustered single-cell object (.h5ad or .zarr)")
    pseudobulk_dir: Optional[Path] = Field(
        None,
        description="Directory with pseudobulk_counts.tsv and pseudobulk_metadata.tsv from a previous aggregation",
    )
    sample_table: Optional[Path] = Field(
        None,
        description="TSV mapping sample name to experimental attributes (condition, sex, age, ...)",
    )

    # ---- Output ----
    output_dir: Path

    # ---- Keys ----
    sample_key: str = "sample"
    group_key: str = Field("cluster", description="obs column holding the cluster labels")
    condition_key: Optional[str] = "condition"
    counts_layer: Optional[str] = Field(
        None,
        description="Layer with raw counts. None uses .X (must hold raw counts).",
    )

    # ---- Contrasts ----
    clusters: Optional[List[str]] = Field(
        None,
        description="Cluster labels of interest. None uses every cluster in the object.",
    )
    outlier_sample: str = Field(
        "",
        description="Library id ('<sample>|<cluster>') or sample name to drop. Empty = none.",
    )
    min_cells_per_library: int = Field(1, ge=1)

    # ---- DE ----
    alpha: float = Field(0.1, gt=0.0, lt=1.0, description="FDR cutoff on adjusted p-values")
    lfc_threshold: float = Field(0.0, ge=0.0, description="log2 fold-change threshold")
    fit_type: Literal["parametric", "mean"] = "parametric"
    design_intercept: bool = Field(
        False,
        description="Fit '~cluster' instead of the default '~0 + cluster'.",
    )
    shrink_lfc: bool = True

    # ---- Compute ----
    n_jobs: int = Field(
        default_factory=lambda: max(1, multiprocessing.cpu_count() - 1),
        ge=1,
        description="Total CPU budget shared across contrasts.",
    )
    contrast_timeout_s: Optional[float] = Field(None, gt=0.0)
    heartbeat_s: float = Field(60.0, gt=0.0)

    # ---- Figures ----
    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])
    heatmap_top_n_genes: int = Field(50, ge=2)
    volcano_top_label_n: int = Field(15, ge=0)

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @property
    def tables_dir(self) -> Path:
        return self.output_dir / "tables"

    @property
    def design_formula(self) -> str:
        return "~cluster" if self.design_intercept else "~0 + cluster"

    @field_validator("clusters")
    def normalize_clusters(cls, v):
        if v is None:
            return None
        out = [str(c).strip() for c in v if str(c).strip()]
        if len(set(out)) != len(out):
            raise ValueError(f"clusters contain duplicates: {out}")
        if len(out) < 2:
            raise ValueError("at least two clusters of interest are required")
        return out

    @field_validator("outlier_sample", mode="before")
    def normalize_outlier(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("figure_formats")
    def validate_formats(cls, v: List[str]):
        supported = Figure().canvas.get_supported_filetypes()
        out = []
        for fmt in v:
            fmt = fmt.lower()
            if fmt not in supported:
                raise ValueError(
                    f"Unsupported figure format '{fmt}'. "
                    f"Supported formats include: {', '.join(sorted(supported))}"
                )
            out.append(fmt)
        return out

    @model_validator(mode="after")
    def check_input(self):
        if (self.input_path is None) == (self.pseudobulk_dir is None):
            raise ValueError("exactly one of input_path or pseudobulk_dir is required")
        return self

    @model_validator(mode="after")
    def check_keys(self):
        if self.sample_key == self.group_key:
            raise ValueError("sample_key and group_key must be different obs columns")
        return self
