# src/scpbde/classify.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping

import pandas as pd

DIRECTIONS = ("up", "down", "changed")

SUMMARY_COLUMNS = [
    "up",
    "down",
    "nonzero.vs.total",
    "alpha",
    "lfcThreshold",
    "outliers",
    "low.counts",
    "design",
    "test",
]


@dataclass(frozen=True)
class GeneSets:
    up: frozenset
    down: frozenset

    @property
    def changed(self) -> frozenset:
        return self.up | self.down

    def get(self, direction: str) -> frozenset:
        if direction not in DIRECTIONS:
            raise KeyError(f"Unknown direction {direction!r}; expected one of {DIRECTIONS}")
        return getattr(self, direction)


def _num(res: pd.DataFrame, col: str) -> pd.Series:
    return pd.to_numeric(res[col], errors="coerce")


def _significant(res: pd.DataFrame, alpha: float) -> pd.Series:
    padj = _num(res, "padj")
    return padj.notna() & (padj < float(alpha))


def classify(res: pd.DataFrame, *, alpha: float, lfc_threshold: float = 0.0) -> GeneSets:
    """
    Split genes of one DE result into up / down.

    Genes without an adjusted p-value are in neither set.
    """
    tau = float(lfc_threshold)
    if tau < 0:
        raise ValueError(f"lfc_threshold must be >= 0, got {lfc_threshold}")
    lfc = _num(res, "log2FoldChange")
    sig = _significant(res, alpha)

    up = res.index[(sig & (lfc > tau)).to_numpy()]
    down = res.index[(sig & (lfc < -tau)).to_numpy()]
    return GeneSets(up=frozenset(map(str, up)), down=frozenset(map(str, down)))


def low_count_mask(res: pd.DataFrame) -> pd.Series:
    """Tested, but removed by independent filtering."""
    return _num(res, "pvalue").notna() & _num(res, "padj").isna()


def outlier_mask(res: pd.DataFrame) -> pd.Series:
    """Expressed, but no p-value (Cook's distance outlier)."""
    return (_num(res, "baseMean") > 0) & _num(res, "pvalue").isna()


def summarize(
    res: pd.DataFrame,
    *,
    alpha: float,
    lfc_threshold: float = 0.0,
    design: str = "",
    test: str = "Wald",
) -> Dict[str, object]:
    sets = classify(res, alpha=alpha, lfc_threshold=lfc_threshold)
    nonzero = int((_num(res, "baseMean") > 0).sum())
    return {
        "up": len(sets.up),
        "down": len(sets.down),
        "nonzero.vs.total": f"{nonzero}/{int(res.shape[0])}",
        "alpha": float(alpha),
        "lfcThreshold": float(lfc_threshold),
        "outliers": int(outlier_mask(res).sum()),
        "low.counts": int(low_count_mask(res).sum()),
        "design": design,
        "test": test,
    }


def summary_table(rows: Mapping[str, Mapping[str, object]]) -> pd.DataFrame:
    """One summary row per contrast, contrast name as index."""
    df = pd.DataFrame.from_dict(dict(rows), orient="index")
    df = df.reindex(columns=SUMMARY_COLUMNS)
    df.index.name = "contrast"
    return df
