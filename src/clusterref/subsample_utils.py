# src/clusterref/subsample_utils.py
from __future__ import annotations

import logging
import math
import zlib
from dataclasses import dataclass

import anndata as ad
import numpy as np
import pandas as pd

from .dataset_utils import group_labels, group_levels

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubsampleContext:
    """
    Carries the caller's random seed.

    Each group gets its own generator derived from (seed, group name), so a
    group's subsample is the same whether it runs alone, sequentially with
    others, or in a worker process.
    """
    seed: int

    def rng_for(self, key: str) -> np.random.Generator:
        return np.random.default_rng([int(self.seed), zlib.crc32(str(key).encode("utf-8"))])


def _sample_sorted(rng: np.random.Generator, idx: np.ndarray, cap: float) -> np.ndarray:
    if not math.isfinite(cap) or idx.size <= cap:
        return idx
    keep = rng.choice(idx, size=int(cap), replace=False)
    return np.sort(keep)


# -----------------------------------------------------------------------------
# Policy 1: per-group cap + proportional rest (one group-vs-rest test)
# -----------------------------------------------------------------------------
def subsample_indices_for_group_test(
    labels: np.ndarray,
    the_group: str,
    *,
    n_group: float = math.inf,
    n_other: float | None = None,
    ctx: SubsampleContext,
) -> np.ndarray:
    """
    Cell indices to keep for testing `the_group` vs the rest.

    Keeps up to n_group cells of the group and up to n_other of everything
    else (sampled jointly, so "other" groups keep their proportions).
    Indices are returned in original cell order.
    """
    labels = np.asarray(labels).astype(str)
    n_other = n_group * 5 if n_other is None else n_other

    in_group = labels == str(the_group)
    idx_test = np.flatnonzero(in_group)
    idx_rest = np.flatnonzero(~in_group)

    if idx_test.size <= n_group and idx_rest.size <= n_other:
        return np.arange(labels.size)

    LOGGER.info(
        "Randomly sub sampling cells for %s contrast (group: %d -> %d, rest: %d -> %d).",
        the_group,
        idx_test.size, int(min(idx_test.size, n_group)),
        idx_rest.size, int(min(idx_rest.size, n_other)),
    )
    rng = ctx.rng_for(the_group)
    keep_test = _sample_sorted(rng, idx_test, n_group)
    keep_rest = _sample_sorted(rng, idx_rest, n_other)
    return np.sort(np.concatenate([keep_test, keep_rest]))


def subsample_for_group_test(
    adata: ad.AnnData,
    the_group: str,
    *,
    n_group: float = math.inf,
    n_other: float | None = None,
    ctx: SubsampleContext,
) -> ad.AnnData:
    """AnnData wrapper; returns `adata` itself when nothing needs dropping."""
    idx = subsample_indices_for_group_test(
        group_labels(adata), the_group, n_group=n_group, n_other=n_other, ctx=ctx
    )
    if idx.size == adata.n_obs:
        return adata
    return adata[idx]


# -----------------------------------------------------------------------------
# Policy 2: global per-group cap (upfront dataset reduction)
# -----------------------------------------------------------------------------
def subsample_indices_by_group(
    labels: np.ndarray,
    *,
    n_group: float = 1000,
    ctx: SubsampleContext,
) -> np.ndarray:
    labels = np.asarray(labels).astype(str)
    keep = []
    for lab in pd.unique(labels):
        idx = np.flatnonzero(labels == lab)
        keep.append(_sample_sorted(ctx.rng_for(lab), idx, n_group))
    if not keep:
        return np.zeros(0, dtype=np.int64)
    return np.sort(np.concatenate(keep))


def subset_cells_by_group(
    adata: ad.AnnData,
    *,
    n_group: float = 1000,
    seed: int,
) -> ad.AnnData:
    """
    Randomly keep at most n_group cells of every group.

    Intended for datasets too big to handle otherwise, or where group
    proportions don't matter (e.g. sorted populations): it discards them.
    The per-test n_group/n_other caps of the contrast keep proportions instead.
    The result is a view; call .copy() to materialise it.
    """
    labels = group_labels(adata)
    idx = subsample_indices_by_group(labels, n_group=n_group, ctx=SubsampleContext(seed))
    if idx.size == adata.n_obs:
        return adata
    LOGGER.info(
        "Randomly sub sampling %s cells per group (%d groups): %d -> %d cells.",
        n_group, len(group_levels(adata)), adata.n_obs, idx.size,
    )
    return adata[idx]
