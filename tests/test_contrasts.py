# tests/test_contrasts.py

import numpy as np
import pandas as pd
import pytest

from scpbde.contrasts import (
    FULL_DESIGN_NAME,
    Contrast,
    build_contrasts,
    drop_full_design,
    remove_outlier,
    validate_contrast,
)
from scpbde.errors import EmptyContrastError, InputValidationError
from scpbde.pseudobulk import PseudobulkMatrix, library_id

CLUSTERS = ["0", "3", "61", "62"]


def synthetic_pb(samples=("S1", "S2"), clusters=CLUSTERS, n_genes=8):
    libs = [library_id(s, c) for s in samples for c in clusters]
    rng = np.random.default_rng(1)
    counts = pd.DataFrame(
        rng.poisson(20, (n_genes, len(libs))).astype(np.int64),
        index=pd.Index([f"gene{i}" for i in range(n_genes)], name="Symbol"),
        columns=pd.Index(libs, name="library"),
    )
    metadata = pd.DataFrame(
        {
            "sample": [l.split("|")[0] for l in libs],
            "cluster": [l.split("|")[1] for l in libs],
            "n_cells": 10,
        },
        index=counts.columns,
    )
    return PseudobulkMatrix(counts=counts, metadata=metadata, sample_key="sample", group_key="cluster")


def test_four_clusters_give_seven_then_six_contrasts():
    contrasts = build_contrasts(synthetic_pb(), CLUSTERS)

    assert len(contrasts) == 7
    assert list(contrasts)[0] == FULL_DESIGN_NAME
    assert list(contrasts)[1:] == [
        "0_vs_3", "0_vs_61", "0_vs_62", "3_vs_61", "3_vs_62", "61_vs_62",
    ]

    pairwise = drop_full_design(remove_outlier(contrasts, ""))
    assert len(pairwise) == 6
    assert FULL_DESIGN_NAME not in pairwise


def test_contrast_columns_match_cluster_subset():
    pb = synthetic_pb()
    contrasts = build_contrasts(pb, CLUSTERS)

    full = contrasts[FULL_DESIGN_NAME]
    assert full.libraries.tolist() == pb.libraries.tolist()

    c = contrasts["3_vs_61"]
    assert c.clusters == ("3", "61")
    assert c.test_level == "3"
    assert c.reference_level == "61"
    assert set(c.metadata["cluster"]) == {"3", "61"}
    assert c.libraries.tolist() == ["S1|3", "S1|61", "S2|3", "S2|61"]
    assert set(c.libraries) <= set(pb.libraries)
    assert c.metadata.index.equals(c.counts.columns)


def test_subset_of_clusters_keeps_given_order():
    contrasts = build_contrasts(synthetic_pb(), ["62", "0", "3"])
    assert list(contrasts) == [FULL_DESIGN_NAME, "62_vs_0", "62_vs_3", "0_vs_3"]
    assert set(contrasts[FULL_DESIGN_NAME].metadata["cluster"]) == {"62", "0", "3"}


def test_default_clusters_are_all_clusters():
    contrasts = build_contrasts(synthetic_pb())
    assert len(contrasts) == 7


def test_unknown_cluster_rejected():
    with pytest.raises(InputValidationError, match="99"):
        build_contrasts(synthetic_pb(), ["0", "99"])


def test_single_cluster_rejected():
    with pytest.raises(InputValidationError):
        build_contrasts(synthetic_pb(clusters=["0"]))


def test_empty_marker_leaves_contrasts_unchanged():
    contrasts = build_contrasts(synthetic_pb(), CLUSTERS)
    for marker in ("", None, "   "):
        out = remove_outlier(contrasts, marker)
        assert list(out) == list(contrasts)
        for name in out:
            assert out[name] is contrasts[name]


def test_remove_outlier_library():
    contrasts = build_contrasts(synthetic_pb(), CLUSTERS)
    out = remove_outlier(contrasts, "S2|61")

    for name, c in out.items():
        before = contrasts[name].counts.shape[1]
        after = c.counts.shape[1]
        if "61" in c.clusters:
            assert after == before - 1
            assert "S2|61" not in c.libraries
        else:
            assert after == before
        assert c.metadata.index.equals(c.counts.columns)


def test_remove_outlier_sample_drops_all_its_libraries():
    contrasts = build_contrasts(synthetic_pb(samples=("S1", "S2", "S3")), CLUSTERS)
    out = remove_outlier(contrasts, "S3")

    assert out[FULL_DESIGN_NAME].counts.shape[1] == 8
    assert not out["0_vs_3"].metadata["sample"].eq("S3").any()


def test_unmatched_outlier_is_noop():
    contrasts = build_contrasts(synthetic_pb(), CLUSTERS)
    out = remove_outlier(contrasts, "S9")
    for name in contrasts:
        assert out[name].counts.shape == contrasts[name].counts.shape


def test_outlier_emptying_a_contrast_raises():
    pb = synthetic_pb(samples=("S1",))
    contrasts = build_contrasts(pb, CLUSTERS)
    with pytest.raises(EmptyContrastError) as exc:
        remove_outlier(contrasts, "S1")
    assert exc.value.contrast == FULL_DESIGN_NAME


def test_validate_contrast_rejects_empty_and_mismatched():
    pb = synthetic_pb()
    contrasts = build_contrasts(pb, CLUSTERS)
    c = contrasts["0_vs_3"]

    empty = Contrast(
        name="empty",
        clusters=c.clusters,
        counts=c.counts.iloc[:, :0],
        metadata=c.metadata.iloc[:0],
        group_key="cluster",
        sample_key="sample",
    )
    with pytest.raises(EmptyContrastError):
        validate_contrast(empty)

    shifted = Contrast(
        name="shifted",
        clusters=c.clusters,
        counts=c.counts,
        metadata=c.metadata.iloc[::-1],
        group_key="cluster",
        sample_key="sample",
    )
    with pytest.raises(InputValidationError):
        validate_contrast(shifted)
