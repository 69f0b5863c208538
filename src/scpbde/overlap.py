# src/scpbde/overlap.py
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from .classify import DIRECTIONS, GeneSets

LOGGER = logging.getLogger(__name__)


def build_overlap_table(sets_by_contrast: Mapping[str, Iterable[str]]) -> pd.DataFrame:
    """
    Gene x contrast membership (0/1) for one direction.

    Rows are the union of all sets, sorted by symbol, so every row has
    at least one 1. Columns keep the input contrast order.
    """
    names = list(sets_by_contrast.keys())
    members = {name: {str(g) for g in genes} for name, genes in sets_by_contrast.items()}

    universe = sorted(set().union(*members.values())) if members else []
    index = pd.Index(universe, name="Symbol", dtype=object)

    data = {
        name: np.fromiter((g in members[name] for g in universe), dtype=np.int64, count=len(universe))
        for name in names
    }
    return pd.DataFrame(data, index=index, columns=names)


def overlap_tables(
    classified: Mapping[str, GeneSets],
    directions: Sequence[str] = DIRECTIONS,
) -> Dict[str, pd.DataFrame]:
    out: Dict[str, pd.DataFrame] = {}
    for direction in directions:
        table = build_overlap_table({name: gs.get(direction) for name, gs in classified.items()})
        LOGGER.info("Overlap [%s]: %d genes across %d contrasts", direction, table.shape[0], table.shape[1])
        out[direction] = table
    return out
