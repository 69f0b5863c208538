# src/scpbde/de_utils.py
from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple
import multiprocessing as mp
from multiprocessing.connection import wait as mp_wait

import numpy as np
import pandas as pd

from .contrasts import Contrast
from .errors import FittingFailure

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]
DISPERSION_COLUMNS = ["genewise_dispersions", "fitted_dispersions", "MAP_dispersions", "dispersions"]
DESIGN_FACTOR = "cluster"


# -----------------------------------------------------------------------------
# Options + per-contrast record
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DEOptions:
    alpha: float = 0.1
    lfc_threshold: float = 0.0
    fit_type: str = "parametric"
    design_intercept: bool = False
    shrink_lfc: bool = True
    n_jobs: int = 1
    contrast_timeout_s: Optional[float] = None
    heartbeat_s: float = 60.0

    @classmethod
    def from_config(cls, cfg) -> "DEOptions":
        return cls(
            alpha=float(cfg.alpha),
            lfc_threshold=float(cfg.lfc_threshold),
            fit_type=str(cfg.fit_type),
            design_intercept=bool(cfg.design_intercept),
            shrink_lfc=bool(cfg.shrink_lfc),
            n_jobs=int(cfg.n_jobs),
            contrast_timeout_s=cfg.contrast_timeout_s,
            heartbeat_s=float(cfg.heartbeat_s),
        )

    @property
    def design(self) -> str:
        return f"~{DESIGN_FACTOR}" if self.design_intercept else f"~0 + {DESIGN_FACTOR}"

    @property
    def test_name(self) -> str:
        return "Wald"


@dataclass
class ContrastRecord:
    """Everything produced for one contrast."""
    contrast: Contrast
    result: pd.DataFrame                 # exported table (shrunk LFC when available)
    unshrunk: pd.DataFrame
    dispersions: pd.DataFrame
    meta: Dict[str, Any] = field(default_factory=dict)
    gene_sets: Any = None
    summary: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        return self.contrast.name


# -----------------------------------------------------------------------------
# PyDESeq2 boundary
# -----------------------------------------------------------------------------
def _require_pydeseq2():
    try:
        import pydeseq2  # noqa: F401
    except Exception as e:
        raise ImportError(
            "PyDESeq2 is required for pseudobulk DE in scpbde. "
            "Install it (and its deps) in your environment."
        ) from e


def _design_metadata(labels: Sequence[str], index: Sequence[str], levels: Sequence[str]) -> pd.DataFrame:
    return pd.DataFrame(
        {DESIGN_FACTOR: pd.Categorical([str(x) for x in labels], categories=[str(v) for v in levels])},
        index=pd.Index([str(i) for i in index], name="library"),
    )


def fit_model(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    design: str,
    fit_type: str = "parametric",
    n_cpus: int = 1,
):
    """
    Fit per-gene dispersions and coefficients.

    counts:   libraries x genes (integer)
    metadata: libraries x [cluster] with a categorical cluster column
    """
    _require_pydeseq2()
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference

    counts = counts.loc[metadata.index]
    counts_i = counts.round().astype(np.int64)

    dds = DeseqDataSet(
        counts=counts_i,
        metadata=metadata.copy(),
        design=design,
        fit_type=fit_type,
        refit_cooks=True,
        inference=DefaultInference(n_cpus=int(n_cpus)),
        quiet=True,
    )
    dds.deseq2()
    return dds


def fit_contrast(contrast: Contrast, opts: DEOptions, *, n_cpus: int = 1):
    """Fit the cluster-only design on one contrast's libraries."""
    levels = list(contrast.clusters)
    if contrast.is_pairwise:
        levels = [contrast.reference_level, contrast.test_level]
    metadata = _design_metadata(
        contrast.metadata[contrast.group_key].astype(str).tolist(),
        contrast.counts.columns.astype(str).tolist(),
        levels,
    )
    counts = pd.DataFrame(
        contrast.counts.T.to_numpy(dtype=np.int64),
        index=metadata.index,
        columns=contrast.counts.index.astype(str),
    )
    return fit_model(counts, metadata, design=opts.design, fit_type=opts.fit_type, n_cpus=n_cpus)


@dataclass
class DesignQC:
    """Full-design fit reused for exploratory plots."""
    vst: Optional[pd.DataFrame]          # libraries x genes
    dispersions: pd.DataFrame
    size_factors: pd.Series
    metadata: pd.DataFrame


def full_design_qc(contrast: Contrast, opts: DEOptions, *, n_cpus: int = 1) -> DesignQC:
    """
    Fit the full multi-cluster design once and derive variance-stabilized
    counts, dispersion estimates and size factors from it.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        dds = fit_contrast(contrast, opts, n_cpus=n_cpus)

        vst = None
        try:
            dds.vst(use_design=False)
            vst = pd.DataFrame(
                np.asarray(dds.layers["vst_counts"]),
                index=dds.obs_names.astype(str),
                columns=dds.var_names.astype(str),
            )
        except Exception as e:
            LOGGER.warning("VST on the full design failed (%s); skipping VST-based plots.", e)

    disp = dispersion_table(dds)
    metadata = contrast.metadata.copy()
    metadata.index = metadata.index.astype(str)
    return DesignQC(vst=vst, dispersions=disp, size_factors=size_factors(dds), metadata=metadata)


def wald_test(
    dds,
    *,
    test: str,
    reference: str,
    alpha: float,
    lfc_threshold: float = 0.0,
    n_cpus: int = 1,
):
    """
    Wald test of `test` vs `reference`.

    Returns (DeseqStats, results_df). Genes flagged by Cook's distance get a
    NaN p-value; genes removed by independent filtering get a NaN padj.
    """
    from pydeseq2.ds import DeseqStats
    from pydeseq2.default_inference import DefaultInference

    kwargs: Dict[str, Any] = {}
    if float(lfc_threshold) > 0:
        kwargs.update(lfc_null=float(lfc_threshold), alt_hypothesis="greaterAbs")

    stat = DeseqStats(
        dds,
        contrast=[DESIGN_FACTOR, str(test), str(reference)],
        alpha=float(alpha),
        cooks_filter=True,
        independent_filter=True,
        inference=DefaultInference(n_cpus=int(n_cpus)),
        quiet=True,
        **kwargs,
    )
    stat.summary()
    res = stat.results_df.copy()
    res.index = res.index.astype(str)
    res.index.name = "Symbol"
    return stat, res[[c for c in RESULT_COLUMNS if c in res.columns]]


def estimate_filter_threshold(res: pd.DataFrame) -> float:
    """Mean count below which tests were suppressed by independent filtering."""
    if res is None or res.empty:
        return 0.0
    pval = pd.to_numeric(res["pvalue"], errors="coerce")
    padj = pd.to_numeric(res["padj"], errors="coerce")
    filtered = pval.notna() & padj.isna()
    if not filtered.any():
        return 0.0
    return float(pd.to_numeric(res.loc[filtered, "baseMean"], errors="coerce").max())


def _shrink_coeff(stat, test: str) -> str:
    lfc = getattr(stat, "LFC", None)
    if lfc is None:
        lfc = stat.dds.varm["LFC"]
    wanted = f"{DESIGN_FACTOR}[T.{test}]"
    cols = [str(c) for c in getattr(lfc, "columns", [])]
    if wanted in cols:
        return wanted
    hits = [c for c in cols if c.endswith(f"[T.{test}]")]
    if len(hits) == 1:
        return hits[0]
    raise KeyError(f"No single coefficient for level {test!r} among {cols}")


def shrink_result(
    dds,
    stat,
    res: pd.DataFrame,
    *,
    test: str,
    reference: str,
    opts: DEOptions,
    n_cpus: int = 1,
    method: str = "apeglm",
) -> pd.DataFrame:
    """
    Empirical-Bayes shrinkage of log2FoldChange / lfcSE.

    Shrinkage works on a single coefficient. Without an intercept the
    two-level model is refit as '~cluster' with `reference` as baseline,
    which has the same fitted means.
    """
    if method != "apeglm":
        raise ValueError(f"Unsupported shrinkage method {method!r} (PyDESeq2 provides 'apeglm').")

    if not opts.design_intercept:
        meta = dds.obs[[DESIGN_FACTOR]].copy()
        meta[DESIGN_FACTOR] = pd.Categorical(
            meta[DESIGN_FACTOR].astype(str), categories=[str(reference), str(test)]
        )
        counts = pd.DataFrame(dds.X, index=dds.obs_names, columns=dds.var_names)
        dds = fit_model(counts, meta, design=f"~{DESIGN_FACTOR}", fit_type=opts.fit_type, n_cpus=n_cpus)
        stat, _ = wald_test(
            dds,
            test=test,
            reference=reference,
            alpha=opts.alpha,
            lfc_threshold=opts.lfc_threshold,
            n_cpus=n_cpus,
        )

    stat.lfc_shrink(coeff=_shrink_coeff(stat, test))
    shrunk = stat.results_df
    shrunk.index = shrunk.index.astype(str)

    out = res.copy()
    out["log2FoldChange"] = shrunk["log2FoldChange"].reindex(out.index)
    out["lfcSE"] = shrunk["lfcSE"].reindex(out.index)
    return out


def dispersion_table(dds, res: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    var = dds.var
    out = pd.DataFrame(index=pd.Index(dds.var_names.astype(str), name="Symbol"))
    for col in DISPERSION_COLUMNS:
        if col in var.columns:
            out[col] = pd.to_numeric(var[col], errors="coerce").to_numpy()
    if res is not None and "baseMean" in res.columns:
        out["baseMean"] = res["baseMean"].reindex(out.index).to_numpy()
    elif "_normed_means" in var.columns:
        out["baseMean"] = pd.to_numeric(var["_normed_means"], errors="coerce").to_numpy()
    return out


def size_factors(dds) -> pd.Series:
    if "size_factors" in getattr(dds, "obsm", {}):
        sf = np.asarray(dds.obsm["size_factors"]).ravel()
    else:
        sf = dds.obs["size_factors"].to_numpy()
    return pd.Series(sf, index=dds.obs_names.astype(str), name="size_factor")


# -----------------------------------------------------------------------------
# Work units
# -----------------------------------------------------------------------------
def check_design(contrast: Contrast) -> None:
    """Every cluster level of the contrast needs at least one library."""
    present = contrast.levels_present()
    absent = [c for c in contrast.clusters if int(present.get(c, 0)) == 0]
    if absent:
        raise FittingFailure(contrast.name, f"no libraries for cluster level(s) {absent}")
    if contrast.counts.shape[1] <= len(contrast.clusters):
        raise FittingFailure(
            contrast.name,
            f"{contrast.counts.shape[1]} libraries for {len(contrast.clusters)} levels leaves no residual df",
        )


def _payload(contrast: Contrast, opts: DEOptions, n_cpus: int) -> dict:
    return {
        "contrast": contrast.name,
        "counts_np": contrast.counts.T.to_numpy(dtype=np.int64, copy=True),  # libs x genes
        "libraries": contrast.counts.columns.astype(str).tolist(),
        "genes": contrast.counts.index.astype(str).tolist(),
        "labels": contrast.metadata[contrast.group_key].astype(str).tolist(),
        "test": contrast.test_level,
        "reference": contrast.reference_level,
        # reference first so treatment coding uses it as baseline
        "levels": [contrast.reference_level, contrast.test_level],
        "opts": opts,
        "n_cpus": int(n_cpus),
    }


def _contrast_worker(payload: dict) -> tuple:
    """
    Worker: fit, test and shrink one pairwise contrast.
    Returns (name, status, result_df, unshrunk_df, dispersion_df, meta)
    """
    name = payload["contrast"]
    opts: DEOptions = payload["opts"]
    n_cpus = int(payload["n_cpus"])
    test, ref = payload["test"], payload["reference"]

    meta: Dict[str, Any] = {
        "design": opts.design,
        "test": opts.test_name,
        "shrunk": False,
        "warn_iterative_size_factors": False,
        "warn_low_df_dispersion": False,
        "warnings": [],
    }

    metadata = _design_metadata(payload["labels"], payload["libraries"], payload["levels"])
    counts = pd.DataFrame(payload["counts_np"], index=metadata.index, columns=pd.Index(payload["genes"]))

    try:
        with warnings.catch_warnings(record=True) as wrec:
            warnings.simplefilter("always")

            dds = fit_model(counts, metadata, design=opts.design, fit_type=opts.fit_type, n_cpus=n_cpus)
            stat, res = wald_test(
                dds,
                test=test,
                reference=ref,
                alpha=opts.alpha,
                lfc_threshold=opts.lfc_threshold,
                n_cpus=n_cpus,
            )
            unshrunk = res.copy()
            disp = dispersion_table(dds, res)

            if opts.shrink_lfc:
                try:
                    res = shrink_result(dds, stat, res, test=test, reference=ref, opts=opts, n_cpus=n_cpus)
                    meta["shrunk"] = True
                except Exception as e:
                    meta["shrink_error"] = f"{type(e).__name__}: {e}"

        for ww in wrec:
            msg = str(getattr(ww, "message", ww))
            meta["warnings"].append(msg)
            if "Iterative size factor fitting did not converge" in msg or "Every gene contains at least one zero" in msg:
                meta["warn_iterative_size_factors"] = True
            if "residual degrees of freedom is less than 3" in msg:
                meta["warn_low_df_dispersion"] = True

    except Exception as e:
        meta["reason"] = f"{type(e).__name__}: {e}"
        return name, "failed", None, None, None, meta

    meta["filter_threshold"] = estimate_filter_threshold(unshrunk)
    return name, "ok", res, unshrunk, disp, meta


def _compute_contrast_parallelism(
    *,
    n_contrasts: int,
    total_cpus: int,
) -> tuple[int, int]:
    """
    Decide (n_jobs, n_cpus_per_fit).

    If total_cpus <= n_contrasts every worker gets one core; otherwise the
    spare cores are spread evenly over the contrasts.
    """
    total_cpus = int(max(1, total_cpus))
    n_contrasts = int(max(1, n_contrasts))

    if total_cpus <= n_contrasts:
        return total_cpus, 1

    extra = total_cpus - n_contrasts
    return n_contrasts, 1 + (extra // n_contrasts)


# -----------------------------------------------------------------------------
# Driver
# -----------------------------------------------------------------------------
def _status_row(contrast: Contrast, status: str, **extra) -> dict:
    return {
        "contrast": contrast.name,
        "status": status,
        "n_libraries": int(contrast.counts.shape[1]),
        "n_genes": int(contrast.counts.shape[0]),
        "levels": f"{contrast.test_level} vs {contrast.reference_level}",
        **extra,
    }


def run_contrasts(
    contrasts: Mapping[str, Contrast],
    opts: DEOptions,
    *,
    worker: Optional[Callable[[dict], tuple]] = None,
) -> Tuple[Dict[str, ContrastRecord], pd.DataFrame]:
    """
    Run every pairwise contrast independently.

    Returns (records, status). Records only hold contrasts that finished;
    failures and timeouts are logged and listed in the status table.

    `worker` must be a module-level function when running in parallel
    (spawned processes import it by name).
    """
    worker = worker or _contrast_worker
    records: Dict[str, ContrastRecord] = {}
    status_rows: Dict[str, dict] = {}

    n_jobs_eff, n_cpus_eff = _compute_contrast_parallelism(
        n_contrasts=len(contrasts),
        total_cpus=int(opts.n_jobs),
    )
    LOGGER.info(
        "Pseudobulk DE parallelism: n_contrasts=%d, total_cpus=%d -> n_jobs=%d, n_cpus_per_fit=%d",
        len(contrasts), int(opts.n_jobs), n_jobs_eff, n_cpus_eff,
    )

    payloads: list[dict] = []
    for name, c in contrasts.items():
        if not c.is_pairwise:
            raise ValueError(f"run_contrasts expects pairwise contrasts; {name!r} has levels {c.clusters}")
        try:
            check_design(c)
        except FittingFailure as e:
            LOGGER.warning("PB DE skipped contrast=%s: %s", name, e.reason)
            status_rows[name] = _status_row(c, "failed", reason=e.reason)
            continue
        payloads.append(_payload(c, opts, n_cpus_eff))
        status_rows[name] = _status_row(c, "queued")

    def _collect(out: tuple, dt: float) -> None:
        name, status, res, unshrunk, disp, meta = out
        c = contrasts[name]
        row = status_rows[name]
        row.update(
            status=status,
            runtime_s=float(dt),
            reason=meta.get("reason"),
            shrunk=meta.get("shrunk"),
            filter_threshold=meta.get("filter_threshold"),
            warn_iterative_size_factors=meta.get("warn_iterative_size_factors"),
            warn_low_df_dispersion=meta.get("warn_low_df_dispersion"),
        )
        if status != "ok":
            LOGGER.error("PB DE failed contrast=%s: %s", name, meta.get("reason"))
            return
        if meta.get("shrink_error"):
            LOGGER.warning("PB DE contrast=%s: LFC shrinkage failed (%s); exporting unshrunk LFC.", name, meta["shrink_error"])
        for w in meta.get("warnings", []):
            LOGGER.debug("PB DE contrast=%s warning: %s", name, w)
        records[name] = ContrastRecord(contrast=c, result=res, unshrunk=unshrunk, dispersions=disp, meta=meta)

    t0 = time.perf_counter()
    total = len(payloads)

    if total == 0:
        LOGGER.info("Pseudobulk DE: no payloads queued (all contrasts skipped earlier).")
    elif int(opts.n_jobs) <= 1 or total <= 1:
        LOGGER.info("Pseudobulk DE: running serially (payloads=%d).", total)
        if opts.contrast_timeout_s is not None:
            LOGGER.info("Pseudobulk DE: per-contrast timeout is only enforced in parallel mode.")

        for i, p in enumerate(payloads, start=1):
            name = p["contrast"]
            LOGGER.info(
                "PB DE [%d/%d] start contrast=%s (libs=%d, genes=%d, n_cpus=%d)",
                i, total, name, len(p["libraries"]), len(p["genes"]), p["n_cpus"],
            )
            t_c0 = time.perf_counter()
            out = worker(p)
            dt = time.perf_counter() - t_c0
            _collect(out, dt)

            elapsed = time.perf_counter() - t0
            eta_s = (elapsed / i) * (total - i)
            LOGGER.info(
                "PB DE [%d/%d] done  contrast=%s status=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
                i, total, name, out[1], dt, elapsed, eta_s,
            )
    else:
        _run_parallel(payloads, n_jobs_eff, opts, status_rows, _collect, t0, worker)

    status = pd.DataFrame(list(status_rows.values()))
    n_ok = int((status["status"] == "ok").sum()) if not status.empty else 0
    LOGGER.info("Pseudobulk DE finished: %d/%d contrasts ok.", n_ok, len(contrasts))
    return records, status


def _child_main(worker, payload: dict, conn) -> None:
    """Entry point of a worker process; reports start and result over its own pipe."""
    name = payload["contrast"]
    conn.send(("started", None))
    try:
        out = worker(payload)
    except Exception as e:
        out = (name, "failed", None, None, None, {"reason": f"{type(e).__name__}: {e}"})
    conn.send(("done", out))
    conn.close()


@dataclass
class _Running:
    name: str
    proc: Any
    conn: Any
    launched: float
    started: Optional[float] = None


def _run_parallel(payloads, max_workers, opts: DEOptions, status_rows, collect, t0, worker) -> None:
    """
    One spawned process per contrast, at most `max_workers` alive at once.

    A contrast's timeout clock starts when its process reports that the
    worker began. A timed-out process is terminated on its own; queued and
    running contrasts are unaffected.
    """
    total = len(payloads)
    timeout_s = opts.contrast_timeout_s
    heartbeat_s = float(opts.heartbeat_s)
    poll_s = min(1.0, heartbeat_s)

    LOGGER.info(
        "Pseudobulk DE: running in parallel (payloads=%d, max_workers=%d, n_cpus_per_fit=%d, heartbeat=%.0fs).",
        total, max_workers, int(payloads[0]["n_cpus"]), heartbeat_s,
    )

    ctx = mp.get_context("spawn")
    waiting = list(payloads)
    running: Dict[Any, _Running] = {}
    done = 0
    last_beat = time.perf_counter()

    def _launch(p: dict) -> None:
        parent_conn, child_conn = ctx.Pipe(duplex=False)
        proc = ctx.Process(target=_child_main, args=(worker, p, child_conn), name=f"pbde-{p['contrast']}")
        proc.start()
        child_conn.close()
        running[parent_conn] = _Running(p["contrast"], proc, parent_conn, time.perf_counter())

    def _release(r: _Running, *, kill: bool = False) -> None:
        running.pop(r.conn, None)
        if kill and r.proc.is_alive():
            r.proc.terminate()
        r.proc.join()
        r.conn.close()

    try:
        while waiting or running:
            while waiting and len(running) < int(max_workers):
                _launch(waiting.pop(0))

            for conn in mp_wait(list(running), timeout=poll_s):
                r = running[conn]
                try:
                    kind, out = conn.recv()
                except EOFError:
                    r.proc.join()
                    kind, out = "done", (
                        r.name, "failed", None, None, None,
                        {"reason": f"worker process exited with code {r.proc.exitcode}"},
                    )
                if kind == "started":
                    r.started = time.perf_counter()
                    continue

                _release(r)
                dt = time.perf_counter() - (r.started if r.started is not None else r.launched)
                collect(out, dt)
                done += 1
                elapsed = time.perf_counter() - t0
                LOGGER.info(
                    "PB DE [%d/%d] done  contrast=%s status=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
                    done, total, r.name, out[1], dt, elapsed, (elapsed / done) * (total - done),
                )

            now = time.perf_counter()
            if timeout_s is not None:
                for r in list(running.values()):
                    if r.started is None or now - r.started <= float(timeout_s):
                        continue
                    if r.conn.poll():
                        continue  # result already waiting
                    _release(r, kill=True)
                    done += 1
                    status_rows[r.name].update(
                        status="timeout",
                        runtime_s=float(now - r.started),
                        reason=f"exceeded contrast timeout of {float(timeout_s):.0f}s",
                    )
                    LOGGER.error(
                        "PB DE timeout contrast=%s after %.0fs; worker terminated, continuing with remaining contrasts.",
                        r.name, now - r.started,
                    )

            if now - last_beat >= heartbeat_s and running:
                last_beat = now
                active = sorted(running.values(), key=lambda r: r.launched)
                LOGGER.info(
                    "PB DE heartbeat: done=%d/%d running=%d queued=%d elapsed=%.1fs longest=%s",
                    done, total, len(running), len(waiting), now - t0,
                    ", ".join(f"{r.name}:{now - (r.started or r.launched):.0f}s" for r in active[:3]),
                )
    finally:
        for r in list(running.values()):
            _release(r, kill=True)
