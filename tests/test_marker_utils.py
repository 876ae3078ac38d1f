# tests/test_marker_utils.py

import warnings

import numpy as np
import pandas as pd
import pytest
import scanpy as sc

import clusterref.de_utils as de
from clusterref.config import ContrastConfig
from clusterref.de_utils import contrast_each_group_to_the_rest
from clusterref.errors import ConfigurationError, ModelFitError, NoMarkersWarning, UnknownGroupError, UnknownPolicyError
from clusterref.marker_utils import (
    MARKER_POLICIES,
    get_the_up_genes_for_all_possible_groups,
    get_the_up_genes_for_group,
    resolve_policy,
    select_marker_ids,
)


# -----------------------------------------------------------------------------
# Hand-built DE tables
# -----------------------------------------------------------------------------
def de_table(group, ci_inner, sig=None, dataset="query", prefix="g"):
    n = len(ci_inner)
    order = np.argsort(-np.asarray(ci_inner, dtype=float), kind="mergesort")
    ci = np.asarray(ci_inner, dtype=float)[order]
    return pd.DataFrame({
        "ID": [f"{prefix}{i}" for i in order],
        "pval": 0.001,
        "log2FC": ci + 0.5,
        "ci_inner": ci,
        "ci_outer": ci + 1.0,
        "fdr": 0.001,
        "group": group,
        "sig": np.asarray(sig, dtype=bool)[order] if sig is not None else True,
        "sig_up": True,
        "gene_count": n,
        "rank": np.arange(1, n + 1),
        "rescaled_rank": np.arange(1, n + 1) / n,
        "dataset": dataset,
    })


def stack(*tables):
    out = pd.concat(tables, ignore_index=True)
    groups = list(pd.unique(out["group"]))
    out["group"] = pd.Categorical(out["group"], categories=groups)
    return out


@pytest.fixture
def query():
    return stack(
        de_table("A", [3.0, 2.0, 1.5, 0.5, -0.2, -1.5, -2.0]),
        de_table("B", [0.8, 0.3, 0.0, 0.0, -0.1, -0.3, -0.4]),
    )


@pytest.fixture
def reference():
    return stack(
        de_table("X", [2.0, 1.0, 0.0, -1.0, -2.0, 0.1, 0.2], dataset="ref"),
        de_table("Y", [0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6], dataset="ref"),
    )


# -----------------------------------------------------------------------------
# Policies
# -----------------------------------------------------------------------------
def test_top_n_by_inner_ci(query):
    ids = select_marker_ids("A", query, rankmetric="top-N-by-inner-CI", n=100)
    assert set(ids) == {"g0", "g1", "g2"}

    ids = select_marker_ids("A", query, rankmetric="top-N-by-inner-CI", n=2)
    assert set(ids) == {"g0", "g1"}


def test_top_n_significant():
    table = de_table("A", [3.0, 2.0, 0.5, 0.1, -1.0], sig=[True, False, True, True, True])
    ids = select_marker_ids("A", table, rankmetric="top-N-significant", n=4)
    assert set(ids) == {"g0", "g2", "g3"}


def test_bottom_n_by_inner_ci(query):
    ids = select_marker_ids("A", query, rankmetric="bottom-N-by-inner-CI", n=3)
    # last three ranks: ci_inner -0.2, -1.5, -2.0
    assert set(ids) == {"g5", "g6"}


def test_policy_aliases():
    assert resolve_policy("TOP100_LOWER_CI_GTE1") is MARKER_POLICIES["top-N-by-inner-CI"]
    assert resolve_policy("TOP100_SIG") is MARKER_POLICIES["top-N-significant"]
    assert resolve_policy("BOTTOM100_LOWER_CI_LTE1") is MARKER_POLICIES["bottom-N-by-inner-CI"]


def test_unknown_policy(query, reference):
    with pytest.raises(UnknownPolicyError, match="top-5"):
        get_the_up_genes_for_group("A", query, reference, rankmetric="top-5")

    with pytest.raises(UnknownPolicyError):
        get_the_up_genes_for_all_possible_groups(query, reference, rankmetric="nope")


# -----------------------------------------------------------------------------
# Single group
# -----------------------------------------------------------------------------
def test_marked_rows_span_all_reference_groups(query, reference):
    marked = get_the_up_genes_for_group("A", query, reference)

    assert set(marked["ID"]) == {"g0", "g1", "g2"}
    # every reference group contributes a row per marker
    assert len(marked) == 6
    assert set(marked["group"]) == {"X", "Y"}
    assert (marked["test_group"] == "A").all()
    # reference values are untouched
    ref_row = reference.loc[(reference["group"] == "Y") & (reference["ID"] == "g0")]
    got = marked.loc[(marked["group"] == "Y") & (marked["ID"] == "g0")]
    assert got["rank"].item() == ref_row["rank"].item()


def test_inputs_not_mutated(query, reference):
    q0, r0 = query.copy(), reference.copy()
    get_the_up_genes_for_group("A", query, reference)
    pd.testing.assert_frame_equal(query, q0)
    pd.testing.assert_frame_equal(reference, r0)


def test_no_markers_is_warning_and_none(query, reference):
    with pytest.warns(NoMarkersWarning, match="B"):
        assert get_the_up_genes_for_group("B", query, reference) is None


def test_markers_missing_from_reference(query, reference):
    other_ref = reference.assign(ID=reference["ID"].str.replace("g", "h"))
    with pytest.warns(NoMarkersWarning, match="reference"):
        assert get_the_up_genes_for_group("A", query, other_ref) is None


def test_unknown_query_group(query, reference):
    with pytest.raises(UnknownGroupError, match="Q"):
        get_the_up_genes_for_group("Q", query, reference)


# -----------------------------------------------------------------------------
# Batch
# -----------------------------------------------------------------------------
def test_batch_skips_empty_groups_and_stamps_dataset(query, reference):
    with pytest.warns(NoMarkersWarning):
        marked = get_the_up_genes_for_all_possible_groups(query, reference)

    assert set(marked["test_group"]) == {"A"}
    assert (marked["test_dataset"] == "query").all()
    assert len(marked) == 6


def test_batch_all_empty_returns_typed_empty_frame(reference):
    flat = stack(
        de_table("A", [0.1, 0.0, -0.1]),
        de_table("B", [0.2, 0.0, -0.2]),
    )
    with pytest.warns(NoMarkersWarning, match="any of the 2 group"):
        marked = get_the_up_genes_for_all_possible_groups(flat, reference)

    assert marked.empty
    assert {"ID", "rank", "group", "test_group", "test_dataset"} <= set(marked.columns)


def test_batch_requires_single_dataset(query, reference):
    mixed = query.copy()
    mixed.loc[mixed.index[0], "dataset"] = "other"
    with pytest.raises(ConfigurationError, match="exactly one dataset"):
        get_the_up_genes_for_all_possible_groups(mixed, reference)


def _always_fails(payload):
    raise ModelFitError("did not converge", group=payload["group"])


def test_batch_on_query_with_every_group_skipped(monkeypatch, reference):
    monkeypatch.setattr(de, "_contrast_group_worker", _always_fails)
    de_query = contrast_each_group_to_the_rest(
        synthetic_dataset(["A", "B"], 0), "query", cfg=ContrastConfig(on_error="skip"),
    )
    assert de_query.empty

    with pytest.warns(NoMarkersWarning, match="any of the 2 group"):
        marked = get_the_up_genes_for_all_possible_groups(de_query, reference)

    assert marked.empty
    assert {"ID", "group", "test_group", "test_dataset"} <= set(marked.columns)


def test_batch_on_bare_empty_query(reference):
    empty = de_table("A", [1.0]).iloc[0:0]
    with pytest.warns(NoMarkersWarning):
        marked = get_the_up_genes_for_all_possible_groups(empty, reference)
    assert marked.empty
    assert "test_dataset" in marked.columns


# -----------------------------------------------------------------------------
# End to end: query A markers found under reference group X
# -----------------------------------------------------------------------------
def synthetic_dataset(groups, seed):
    rng = np.random.default_rng(seed)
    labels = np.repeat(groups, 10)
    n_genes = 50

    X = rng.poisson(3.0, size=(labels.size, n_genes)).astype(np.float64)
    X[:, :15] = 0
    for k, g in enumerate(groups):
        X[np.ix_(labels == g, np.arange(5 * k, 5 * k + 5))] = rng.poisson(1000.0, size=(10, 5))

    adata = sc.AnnData(X)
    adata.obs_names = [f"cell{i}" for i in range(labels.size)]
    adata.var_names = [f"gene{j + 1}" for j in range(n_genes)]
    adata.obs["group"] = pd.Categorical(labels, categories=groups)
    adata.var["ID"] = adata.var_names.to_numpy()
    return adata


def test_query_markers_found_in_reference_group():
    de_query = contrast_each_group_to_the_rest(synthetic_dataset(["A", "B", "C"], 0), "query")
    de_ref = contrast_each_group_to_the_rest(synthetic_dataset(["X", "Y", "Z"], 1), "ref")

    marked = get_the_up_genes_for_group("A", de_query, de_ref, rankmetric="top-N-by-inner-CI", n=5)

    a_genes = {f"gene{j}" for j in range(1, 6)}
    assert set(marked["ID"]) == a_genes
    assert (marked["test_group"] == "A").all()
    in_x = marked.loc[marked["group"] == "X"]
    assert len(in_x) == 5
    assert (in_x["rank"] <= 5).all()


def test_flat_group_warns_but_batch_continues():
    de_query = contrast_each_group_to_the_rest(synthetic_dataset(["A", "B", "C"], 0), "query")
    de_ref = contrast_each_group_to_the_rest(synthetic_dataset(["X", "Y", "Z"], 1), "ref")

    # a group whose rows carry no effect at all
    flat = de_query.loc[de_query["group"] == "C"].copy()
    flat["ci_inner"] = 0.0
    flat["log2FC"] = 0.0
    flat["sig"] = False
    de_query = pd.concat([de_query.loc[de_query["group"] != "C"], flat], ignore_index=True)

    with warnings.catch_warnings(record=True) as rec:
        warnings.simplefilter("always")
        marked = get_the_up_genes_for_all_possible_groups(de_query, de_ref, n=5)

    assert any(issubclass(w.category, NoMarkersWarning) and "'C'" in str(w.message) for w in rec)
    assert set(marked["test_group"]) == {"A", "B"}
