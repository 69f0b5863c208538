from pathlib import Path
from datetime import datetime
import html
import json

from collections import defaultdict
from typing import Dict, List, Optional

import pandas as pd


# ======================================================================
# Public API
# ======================================================================

def generate_de_report(
    *,
    fig_root: Path,
    cfg,
    version: str,
    pb,
    summary: Optional[pd.DataFrame] = None,
    status: Optional[pd.DataFrame] = None,
) -> Path:
    """
    Generate a self-contained HTML report embedding all PNG plots.

    Output:
      <fig_root>/report.html
    """

    fig_root = Path(fig_root).resolve()
    png_root = fig_root / "png"
    out_html = fig_root / "report.html"

    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    # ------------------------------------------------------------------
    # Collect images (PNG only)
    # ------------------------------------------------------------------
    images = sorted(png_root.rglob("*.png")) if png_root.exists() else []
    rel_images = [img.relative_to(fig_root) for img in images]

    # ------------------------------------------------------------------
    # High-level section classification
    # ------------------------------------------------------------------
    sections: Dict[str, List[Path]] = {
        "Libraries": [],
        "Exploration (VST)": [],
        "Dispersion": [],
        "Contrasts": [],
        "Overlap": [],
        "Other": [],
    }

    for p in rel_images:
        s = p.as_posix()
        if "/libraries/" in s:
            sections["Libraries"].append(p)
        elif "/vst/" in s:
            sections["Exploration (VST)"].append(p)
        elif "/dispersion/" in s:
            sections["Dispersion"].append(p)
        elif "/contrasts/" in s:
            sections["Contrasts"].append(p)
        elif "/overlap/" in s:
            sections["Overlap"].append(p)
        else:
            sections["Other"].append(p)

    # ------------------------------------------------------------------
    # CSS
    # ------------------------------------------------------------------
    css = """
    body {
      font-family: system-ui, -apple-system, sans-serif;
      margin: 2rem;
      max-width: 1400px;
    }

    h1, h2, h3, h4 {
      margin-top: 1.5rem;
    }

    details > summary {
      cursor: pointer;
      font-weight: 600;
      margin: 0.5rem 0;
    }

    .meta {
      background: #f6f8fa;
      border: 1px solid #ddd;
      padding: 1rem;
      border-radius: 6px;
      font-family: monospace;
      white-space: pre-wrap;
    }

    figure {
      margin: 0.5rem;
    }

    figure img {
      max-width: 100%;
      border: 1px solid #ddd;
      border-radius: 4px;
    }

    figcaption {
      font-size: 0.85rem;
      color: #444;
      margin-top: 0.25rem;
    }

    .grid {
      display: grid;
      grid-template-columns: repeat(auto-fill, minmax(420px, 1fr));
      gap: 1rem;
    }

    table.summary {
      border-collapse: collapse;
      margin-top: 1rem;
      margin-bottom: 2rem;
    }

    table.summary th,
    table.summary td {
      border: 1px solid #ccc;
      padding: 0.4rem 0.6rem;
      text-align: left;
    }

    table.summary th {
      background: #f0f0f0;
    }

    tr.failed td {
      color: #b00020;
    }
    """

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------
    cfg_json = json.dumps(cfg.model_dump(mode="json"), indent=2, default=str)

    header = f"""
    <h1>scPBDE pseudobulk DE report</h1>

    <div class="meta">
    Version:   {html.escape(str(version))}
    Timestamp: {timestamp}

    Parameters:
    {html.escape(cfg_json)}
    </div>
    """

    # ------------------------------------------------------------------
    # Summary statistics
    # ------------------------------------------------------------------
    body = [header, _overview_table(pb)]

    if summary is not None and not summary.empty:
        body.append("<h2>DE summary</h2>")
        body.append(render_table(summary, index_label="contrast"))

    if status is not None and not status.empty:
        body.append("<h2>Run status</h2>")
        body.append(render_table(status, highlight_col="status", ok_value="ok"))

    # ------------------------------------------------------------------
    # Render body
    # ------------------------------------------------------------------
    for title, imgs in sections.items():
        if not imgs:
            continue

        body.append(f"<details open><summary><h2>{title}</h2></summary>")

        if title == "Contrasts":
            for contrast, c_imgs in sorted(group_by_contrast(imgs).items()):
                body.append(f"<h3>{html.escape(contrast)}</h3>")
                body.append('<div class="grid">')
                for p in c_imgs:
                    body.append(render_image_block(p))
                body.append("</div>")
        else:
            body.append('<div class="grid">')
            for p in imgs:
                body.append(render_image_block(p))
            body.append("</div>")

        body.append("</details>")

    # ------------------------------------------------------------------
    # Final HTML
    # ------------------------------------------------------------------
    html_doc = f"""
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="utf-8">
      <title>scPBDE pseudobulk DE report</title>
      <style>{css}</style>
    </head>
    <body>
      {''.join(body)}
    </body>
    </html>
    """

    out_html.parent.mkdir(parents=True, exist_ok=True)
    out_html.write_text(html_doc, encoding="utf-8")
    return out_html


# ======================================================================
# Helpers
# ======================================================================

def _caption_from_filename(fname: str) -> str:
    name = Path(fname).stem
    name = name.replace("_", " ")
    return name[:1].upper() + name[1:]


def render_image_block(img_path: Path) -> str:
    caption = _caption_from_filename(img_path.name)
    return f"""
    <figure>
      <img src="{html.escape(img_path.as_posix())}">
      <figcaption>{html.escape(caption)}</figcaption>
    </figure>
    """


def group_by_contrast(files: List[Path]) -> Dict[str, List[Path]]:
    """png/contrasts/<name>/<plot>.png -> {name: [...]}"""
    groups = defaultdict(list)
    for f in files:
        groups[f.parent.name].append(f)
    return groups


def render_table(
    df: pd.DataFrame,
    *,
    index_label: Optional[str] = None,
    highlight_col: Optional[str] = None,
    ok_value: str = "ok",
) -> str:
    frame = df.reset_index() if index_label else df
    if index_label and frame.columns[0] != index_label:
        frame = frame.rename(columns={frame.columns[0]: index_label})

    head = "".join(f"<th>{html.escape(str(c))}</th>" for c in frame.columns)
    rows = []
    for _, r in frame.iterrows():
        cls = ""
        if highlight_col and highlight_col in frame.columns and str(r[highlight_col]) != ok_value:
            cls = ' class="failed"'
        cells = "".join(f"<td>{html.escape(_fmt(v))}</td>" for v in r.tolist())
        rows.append(f"<tr{cls}>{cells}</tr>")

    return f"""
    <table class="summary">
      <thead><tr>{head}</tr></thead>
      <tbody>
        {''.join(rows)}
      </tbody>
    </table>
    """


def _fmt(v) -> str:
    if v is None:
        return "NA"
    if isinstance(v, float):
        return "NA" if v != v else f"{v:.4g}"
    return str(v)


def _overview_table(pb) -> str:
    meta = pb.metadata
    overview = {
        "n_libraries": int(pb.counts.shape[1]),
        "n_genes": int(pb.counts.shape[0]),
        "n_samples": int(meta[pb.sample_key].nunique()),
        "n_clusters": int(meta[pb.group_key].nunique()),
        "n_cells": int(pd.to_numeric(meta["n_cells"], errors="coerce").sum()),
        "median_cells_per_library": float(pd.to_numeric(meta["n_cells"], errors="coerce").median()),
    }

    rows = []
    for k, v in overview.items():
        rows.append(f"<tr><td>{k}</td><td>{html.escape(_fmt(v))}</td></tr>")

    return f"""
    <h2>Pseudobulk overview</h2>
    <table class="summary">
      <thead>
        <tr><th>Metric</th><th>Value</th></tr>
      </thead>
      <tbody>
        {''.join(rows)}
      </tbody>
    </table>
    """
