# src/scpbde/contrasts.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, Optional, Sequence, Tuple

import pandas as pd

from .errors import EmptyContrastError, InputValidationError
from .pseudobulk import PseudobulkMatrix

LOGGER = logging.getLogger(__name__)

FULL_DESIGN_NAME = "all"


@dataclass(frozen=True)
class Contrast:
    """
    One comparison between cluster levels.

    For pairwise contrasts clusters == (test, reference); the full design
    lists every cluster of interest.
    """
    name: str
    clusters: Tuple[str, ...]
    counts: pd.DataFrame    # genes x libraries
    metadata: pd.DataFrame  # libraries x attributes
    group_key: str
    sample_key: str

    @property
    def libraries(self) -> pd.Index:
        return self.counts.columns

    @property
    def is_pairwise(self) -> bool:
        return len(self.clusters) == 2

    @property
    def test_level(self) -> str:
        return self.clusters[0]

    @property
    def reference_level(self) -> str:
        return self.clusters[-1]

    def levels_present(self) -> pd.Series:
        return self.metadata[self.group_key].astype(str).value_counts()


def pair_name(test: str, reference: str) -> str:
    return f"{test}_vs_{reference}"


def _subset(pb: PseudobulkMatrix, name: str, clusters: Sequence[str]) -> Contrast:
    labels = pb.metadata[pb.group_key].astype(str)
    cols = pb.metadata.index[labels.isin([str(c) for c in clusters]).to_numpy()]
    contrast = Contrast(
        name=name,
        clusters=tuple(str(c) for c in clusters),
        counts=pb.counts.loc[:, cols].copy(),
        metadata=pb.metadata.loc[cols].copy(),
        group_key=pb.group_key,
        sample_key=pb.sample_key,
    )
    validate_contrast(contrast)
    return contrast


def validate_contrast(contrast: Contrast) -> None:
    if contrast.counts.shape[1] == 0:
        raise EmptyContrastError(contrast.name)

    cols = pd.Index(contrast.counts.columns.astype(str))
    rows = pd.Index(contrast.metadata.index.astype(str))
    if cols.has_duplicates or rows.has_duplicates or not cols.equals(rows):
        raise InputValidationError(
            f"Contrast {contrast.name!r}: count columns and metadata rows do not correspond 1:1 "
            f"(columns={cols.tolist()}, metadata={rows.tolist()})"
        )


def build_contrasts(
    pb: PseudobulkMatrix,
    clusters: Optional[Sequence[str]] = None,
) -> Dict[str, Contrast]:
    """
    Full design over all clusters of interest first, then one contrast per
    unordered pair in the order the clusters were given.
    """
    available = pb.clusters()
    if clusters is None:
        clusters = available
    clusters = [str(c) for c in clusters]

    missing = [c for c in clusters if c not in available]
    if missing:
        raise InputValidationError(
            f"Cluster(s) {missing} not present in {pb.group_key!r}. Available: {available}"
        )
    if len(clusters) < 2:
        raise InputValidationError("At least two clusters are needed to build contrasts.")

    out: Dict[str, Contrast] = {FULL_DESIGN_NAME: _subset(pb, FULL_DESIGN_NAME, clusters)}
    for a, b in combinations(clusters, 2):
        name = pair_name(a, b)
        out[name] = _subset(pb, name, (a, b))

    LOGGER.info(
        "Built %d contrasts (1 full design + %d pairwise) over clusters %s",
        len(out), len(out) - 1, clusters,
    )
    return out


def _matches_outlier(contrast: Contrast, outlier: str) -> pd.Index:
    ids = contrast.metadata.index.astype(str)
    samples = contrast.metadata[contrast.sample_key].astype(str).to_numpy()
    hit = (ids == outlier) | (samples == outlier)
    return contrast.metadata.index[hit]


def remove_outlier(
    contrasts: Dict[str, Contrast],
    outlier: Optional[str],
) -> Dict[str, Contrast]:
    """Drop the outlier library (or every library of an outlier sample) everywhere."""
    outlier = "" if outlier is None else str(outlier).strip()
    if not outlier:
        return dict(contrasts)

    out: Dict[str, Contrast] = {}
    n_hits = 0
    for name, c in contrasts.items():
        drop = _matches_outlier(c, outlier)
        if len(drop) == 0:
            out[name] = c
            continue
        n_hits += 1
        keep = c.metadata.index.difference(drop, sort=False)
        reduced = Contrast(
            name=c.name,
            clusters=c.clusters,
            counts=c.counts.loc[:, keep].copy(),
            metadata=c.metadata.loc[keep].copy(),
            group_key=c.group_key,
            sample_key=c.sample_key,
        )
        if reduced.counts.shape[1] == 0:
            raise EmptyContrastError(name, f"no libraries left after removing outlier {outlier!r}")
        validate_contrast(reduced)
        LOGGER.info("Contrast %s: removed outlier %s (%d -> %d libraries)",
                    name, drop.tolist(), c.counts.shape[1], reduced.counts.shape[1])
        out[name] = reduced

    if n_hits == 0:
        LOGGER.warning("Outlier %r does not match any library or sample; contrasts unchanged.", outlier)
    return out


def drop_full_design(contrasts: Dict[str, Contrast]) -> Dict[str, Contrast]:
    """The full design is for QC only; pairwise tests start at the second entry."""
    items = list(contrasts.items())
    return dict(items[1:])
