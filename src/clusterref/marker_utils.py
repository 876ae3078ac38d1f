# src/clusterref/marker_utils.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from .dataset_utils import GROUP_KEY, ID_KEY
from .de_utils import DATASET_KEY
from .errors import ConfigurationError, MissingColumnError, NoMarkersWarning, UnknownGroupError, UnknownPolicyError

LOGGER = logging.getLogger(__name__)

TEST_GROUP_KEY = "test_group"
TEST_DATASET_KEY = "test_dataset"

DEFAULT_RANKMETRIC = "top-N-by-inner-CI"
DEFAULT_N = 100


# -----------------------------------------------------------------------------
# Marker selection policies
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MarkerPolicy:
    name: str
    description: str
    select: Callable[[pd.DataFrame, int], pd.Series]


def _top_n_by_inner_ci(de: pd.DataFrame, n: int) -> pd.Series:
    return (de["rank"] <= n) & (de["ci_inner"] >= 1)


def _top_n_significant(de: pd.DataFrame, n: int) -> pd.Series:
    return (de["rank"] <= n) & de["sig"].astype(bool) & (de["ci_inner"] >= 0)


def _bottom_n_by_inner_ci(de: pd.DataFrame, n: int) -> pd.Series:
    # Not recommended: tends to pick up noise. Kept for diagnostics.
    if de.empty:
        return pd.Series(False, index=de.index)
    last = int(de["rank"].max())
    return (de["rank"] >= last - n + 1) & (de["ci_inner"] <= -1)


MARKER_POLICIES: Dict[str, MarkerPolicy] = {
    "top-N-by-inner-CI": MarkerPolicy(
        "top-N-by-inner-CI",
        "rank <= N and ci_inner >= 1 (conservative log2FC floor)",
        _top_n_by_inner_ci,
    ),
    "top-N-significant": MarkerPolicy(
        "top-N-significant",
        "rank <= N, sig and ci_inner >= 0",
        _top_n_significant,
    ),
    "bottom-N-by-inner-CI": MarkerPolicy(
        "bottom-N-by-inner-CI",
        "rank among the last N and ci_inner <= -1 (experimental)",
        _bottom_n_by_inner_ci,
    ),
}

# Legacy identifiers (N fixed at 100 in their names, but `n` still applies)
POLICY_ALIASES = {
    "TOP100_LOWER_CI_GTE1": "top-N-by-inner-CI",
    "TOP100_SIG": "top-N-significant",
    "BOTTOM100_LOWER_CI_LTE1": "bottom-N-by-inner-CI",
}


def resolve_policy(rankmetric: str) -> MarkerPolicy:
    name = POLICY_ALIASES.get(str(rankmetric), str(rankmetric))
    if name not in MARKER_POLICIES:
        raise UnknownPolicyError(rankmetric, list(MARKER_POLICIES) + list(POLICY_ALIASES))
    return MARKER_POLICIES[name]


def _require_columns(df: pd.DataFrame, columns, where: str) -> None:
    for col in columns:
        if col not in df.columns:
            raise MissingColumnError(col, where, list(df.columns))


def _group_names(de_table: pd.DataFrame) -> List[str]:
    col = de_table[GROUP_KEY]
    if isinstance(col.dtype, pd.CategoricalDtype):
        return [str(c) for c in col.cat.categories]
    return [str(g) for g in pd.unique(col.astype(str))]


def select_marker_ids(
    the_group: str,
    de_table_test: pd.DataFrame,
    *,
    rankmetric: str = DEFAULT_RANKMETRIC,
    n: int = DEFAULT_N,
) -> np.ndarray:
    """Gene IDs chosen by `rankmetric` for one group of a DE table (may be empty)."""
    policy = resolve_policy(rankmetric)
    if int(n) < 1:
        raise ConfigurationError(f"n must be >= 1, got {n}")
    _require_columns(de_table_test, [ID_KEY, GROUP_KEY, "rank", "ci_inner", "sig"], "query DE table")

    available = _group_names(de_table_test)
    if str(the_group) not in available:
        raise UnknownGroupError([the_group], available)

    de = de_table_test.loc[de_table_test[GROUP_KEY].astype(str) == str(the_group)]
    mask = policy.select(de, int(n))
    return de.loc[mask.to_numpy(dtype=bool), ID_KEY].astype(str).unique()


# -----------------------------------------------------------------------------
# Cross-dataset marker lookup
# -----------------------------------------------------------------------------
def get_the_up_genes_for_group(
    the_group: str,
    de_table_test: pd.DataFrame,
    de_table_ref: pd.DataFrame,
    *,
    rankmetric: str = DEFAULT_RANKMETRIC,
    n: int = DEFAULT_N,
) -> Optional[pd.DataFrame]:
    """
    Find the markers of `the_group` in a query DE table and return every
    reference DE row (all reference groups) for those genes, with a
    'test_group' column.

    Returns None when there are no markers: nothing passed the policy, or
    none of the selected genes exist in the reference. A NoMarkersWarning is
    issued in that case. An empty DataFrame is never returned.
    """
    _require_columns(de_table_ref, [ID_KEY], "reference DE table")
    markers = select_marker_ids(the_group, de_table_test, rankmetric=rankmetric, n=n)

    if markers.size == 0:
        warnings.warn(
            f"Can't find any marker genes for group {the_group!r} (policy {rankmetric!r}, n={n}).",
            NoMarkersWarning,
            stacklevel=2,
        )
        return None

    ref_ids = de_table_ref[ID_KEY].astype(str)
    hit = ref_ids.isin(set(markers))
    if not hit.any():
        warnings.warn(
            f"None of the {markers.size} marker gene(s) for group {the_group!r} are in the reference.",
            NoMarkersWarning,
            stacklevel=2,
        )
        return None

    n_found = int(ref_ids[hit].nunique())
    LOGGER.debug(
        "Group %s: %d marker(s) selected, %d present in the reference.", the_group, markers.size, n_found,
    )
    marked = de_table_ref.loc[hit].copy()
    marked[TEST_GROUP_KEY] = str(the_group)
    return marked


def get_the_up_genes_for_all_possible_groups(
    de_table_test: pd.DataFrame,
    de_table_ref: pd.DataFrame,
    *,
    rankmetric: str = DEFAULT_RANKMETRIC,
    n: int = DEFAULT_N,
) -> pd.DataFrame:
    """
    Run get_the_up_genes_for_group for every group of a single-dataset query
    table and stack the non-empty results, adding 'test_dataset'.

    Always returns a DataFrame (possibly with zero rows).
    """
    resolve_policy(rankmetric)
    _require_columns(de_table_test, [GROUP_KEY, DATASET_KEY], "query DE table")
    _require_columns(de_table_ref, [ID_KEY], "reference DE table")

    datasets = pd.unique(de_table_test[DATASET_KEY].astype(str))
    if de_table_test.empty:
        # every group may have been skipped upstream; the name survives in attrs
        test_dataset = str(de_table_test.attrs.get(DATASET_KEY, ""))
    elif len(datasets) != 1:
        raise ConfigurationError(
            f"Query DE table must hold exactly one dataset, found {len(datasets)}: {list(datasets)}"
        )
    else:
        test_dataset = str(datasets[0])

    parts = []
    empty_groups = []
    groups = _group_names(de_table_test)
    for g in groups:
        marked = get_the_up_genes_for_group(g, de_table_test, de_table_ref, rankmetric=rankmetric, n=n)
        if marked is None:
            empty_groups.append(g)
            continue
        parts.append(marked)

    if parts:
        out = pd.concat(parts, axis=0, ignore_index=True)
    else:
        warnings.warn(
            f"No marker genes found for any of the {len(groups)} group(s) of {test_dataset!r} "
            f"(policy {rankmetric!r}, n={n}).",
            NoMarkersWarning,
            stacklevel=2,
        )
        out = de_table_ref.iloc[0:0].copy().reset_index(drop=True)
        out[TEST_GROUP_KEY] = pd.Series(dtype=object)

    out[TEST_DATASET_KEY] = test_dataset
    LOGGER.info(
        "Marked %d reference row(s) for %d/%d group(s) of %s.",
        len(out), len(groups) - len(empty_groups), len(groups), test_dataset,
    )
    return out
