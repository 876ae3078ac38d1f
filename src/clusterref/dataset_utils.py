# src/clusterref/dataset_utils.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Literal, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import ConfigurationError, MissingColumnError, NoCountsLayerError

LOGGER = logging.getLogger(__name__)

GROUP_KEY = "group"
ID_KEY = "ID"
COUNTS_LAYER = "counts"
UNS_KEY = "clusterref"

# log2(x + LOG_OFFSET); keeps zeros finite (and sparse)
LOG_OFFSET = 1.0

# Warn before materialising a split larger than this (8 bytes per value, ignores sparsity)
_LARGE_MATRIX_BYTES = 1e9

DatasetKind = Literal["counts", "microarray"]


# -----------------------------------------------------------------------------
# Group labels & validation
# -----------------------------------------------------------------------------
def group_labels(adata: ad.AnnData) -> np.ndarray:
    """Per-cell group labels as a str array, in cell order."""
    if GROUP_KEY not in adata.obs:
        raise MissingColumnError(GROUP_KEY, "adata.obs", list(adata.obs.columns))
    return adata.obs[GROUP_KEY].astype(str).to_numpy()


def group_levels(adata: ad.AnnData) -> List[str]:
    """
    Group levels present in the dataset.

    Categorical columns keep their category order (unused categories are
    dropped); anything else uses sorted unique labels.
    """
    if GROUP_KEY not in adata.obs:
        raise MissingColumnError(GROUP_KEY, "adata.obs", list(adata.obs.columns))
    col = adata.obs[GROUP_KEY]
    present = set(col.dropna().astype(str).unique())
    if isinstance(col.dtype, pd.CategoricalDtype):
        levels = [str(c) for c in col.cat.categories if str(c) in present]
        unused = [str(c) for c in col.cat.categories if str(c) not in present]
        if unused:
            LOGGER.debug("Ignoring unused group categories: %s", unused)
        return levels
    LOGGER.debug("obs[%r] is not categorical; using sorted unique labels as levels.", GROUP_KEY)
    return sorted(present)


def validate_dataset(adata: ad.AnnData) -> None:
    """
    Check the minimum schema: obs['group'] set for every cell, var['ID']
    present and unique. Raises before any expensive work.
    """
    if GROUP_KEY not in adata.obs:
        raise MissingColumnError(GROUP_KEY, "adata.obs", list(adata.obs.columns))
    if ID_KEY not in adata.var:
        raise MissingColumnError(ID_KEY, "adata.var", list(adata.var.columns))

    n_unlabelled = int(adata.obs[GROUP_KEY].isna().sum())
    if n_unlabelled:
        raise ConfigurationError(
            f"{n_unlabelled} cell(s) have no {GROUP_KEY!r} label; every cell needs exactly one group."
        )

    ids = adata.var[ID_KEY].astype(str)
    dup = ids[ids.duplicated()].unique().tolist()
    if dup:
        raise ConfigurationError(
            f"var[{ID_KEY!r}] must be unique (it is the join key); duplicated: {dup[:10]}"
            + (" ..." if len(dup) > 10 else "")
        )


def declared_dataset_kind(adata: ad.AnnData) -> DatasetKind:
    block = adata.uns.get(UNS_KEY, {})
    kind = block.get("dataset_kind", "counts") if isinstance(block, dict) else "counts"
    if kind not in ("counts", "microarray"):
        raise ConfigurationError(f"Unknown declared dataset_kind {kind!r} in adata.uns[{UNS_KEY!r}]")
    return kind


# -----------------------------------------------------------------------------
# Counts layer resolution
# -----------------------------------------------------------------------------
def resolve_counts_layer(adata: ad.AnnData) -> Optional[str]:
    """
    Decide which matrix holds the counts.

    Returns the layer name, or None for the unnamed adata.X.

    Rules:
      1) exactly one matrix (adata.X or a single layer) -> use it
         (warn when it is the unnamed X);
      2) else a layer named 'counts';
      3) else NoCountsLayerError listing everything available.
    """
    has_x = adata.X is not None
    layer_names = [str(k) for k in adata.layers.keys()]
    n_matrices = len(layer_names) + int(has_x)

    if n_matrices == 1:
        if has_x:
            LOGGER.warning(
                "Found one, unnamed, matrix (adata.X). Assuming this is counts data ('%s').",
                COUNTS_LAYER,
            )
            return None
        return layer_names[0]

    if COUNTS_LAYER in layer_names:
        return COUNTS_LAYER

    available = (["X (unnamed)"] if has_x else []) + layer_names
    raise NoCountsLayerError(available)


def get_counts_matrix(adata: ad.AnnData) -> Any:
    layer = resolve_counts_layer(adata)
    return adata.X if layer is None else adata.layers[layer]


# -----------------------------------------------------------------------------
# Counts views (storage backends)
# -----------------------------------------------------------------------------
def _log2p_in_memory(X: Union[np.ndarray, sp.spmatrix]) -> Union[np.ndarray, sp.csr_matrix]:
    import scanpy as sc

    if sp.issparse(X):
        X = sp.csr_matrix(X, dtype=np.float64, copy=True)
    else:
        X = np.array(X, dtype=np.float64, copy=True)
    # log1p == log(x + LOG_OFFSET) with LOG_OFFSET = 1
    return sc.pp.log1p(X, base=2, copy=False)


class CountsView(ABC):
    """
    Storage-agnostic access to a cells x genes counts matrix.

    Core code only ever calls these methods; it never inspects the concrete
    storage (numpy, scipy sparse, or on-disk backed).
    """

    def __init__(self, matrix: Any):
        self._matrix = matrix

    @property
    def shape(self) -> tuple[int, int]:
        return tuple(int(s) for s in self._matrix.shape)

    @abstractmethod
    def n_detected_per_cell(self) -> np.ndarray:
        """Number of genes with a value > 0, per cell."""

    @abstractmethod
    def log2p(self) -> Union[np.ndarray, sp.csr_matrix]:
        """log2(x + 1), materialised in memory (dense stays dense, sparse -> CSR)."""

    @abstractmethod
    def to_memory(self) -> Union[np.ndarray, sp.csr_matrix]:
        pass

    @abstractmethod
    def take_rows(self, idx: np.ndarray) -> "CountsView":
        """In-memory view of the given (sorted) rows."""


class DenseCountsView(CountsView):
    def n_detected_per_cell(self) -> np.ndarray:
        return (np.asarray(self._matrix) > 0).sum(axis=1).astype(np.int64)

    def log2p(self) -> np.ndarray:
        return _log2p_in_memory(np.asarray(self._matrix))

    def to_memory(self) -> np.ndarray:
        return np.asarray(self._matrix)

    def take_rows(self, idx: np.ndarray) -> "DenseCountsView":
        return DenseCountsView(np.asarray(self._matrix)[np.asarray(idx, dtype=np.int64)])


class SparseCountsView(CountsView):
    def n_detected_per_cell(self) -> np.ndarray:
        return np.asarray((self._matrix > 0).sum(axis=1)).ravel().astype(np.int64)

    def log2p(self) -> sp.csr_matrix:
        return _log2p_in_memory(self._matrix)

    def to_memory(self) -> sp.csr_matrix:
        return sp.csr_matrix(self._matrix)

    def take_rows(self, idx: np.ndarray) -> "SparseCountsView":
        return SparseCountsView(sp.csr_matrix(self._matrix)[np.asarray(idx, dtype=np.int64)])


class BackedCountsView(CountsView):
    """
    On-disk matrix (h5py dataset or anndata sparse dataset), read in row chunks.
    """

    def __init__(self, matrix: Any, chunk_size: int = 10_000):
        super().__init__(matrix)
        self.chunk_size = int(max(1, chunk_size))

    def _chunks(self):
        n = self.shape[0]
        for start in range(0, n, self.chunk_size):
            stop = min(n, start + self.chunk_size)
            yield counts_view(self._matrix[start:stop])

    def n_detected_per_cell(self) -> np.ndarray:
        parts = [v.n_detected_per_cell() for v in self._chunks()]
        if not parts:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(parts)

    def log2p(self) -> sp.csr_matrix:
        # Whatever the on-disk format, the logged copy is sparse in memory
        blocks = [sp.csr_matrix(v.log2p()) for v in self._chunks()]
        if not blocks:
            return sp.csr_matrix(self.shape, dtype=np.float64)
        return sp.vstack(blocks, format="csr")

    def to_memory(self) -> sp.csr_matrix:
        blocks = [sp.csr_matrix(v.to_memory()) for v in self._chunks()]
        if not blocks:
            return sp.csr_matrix(self.shape)
        return sp.vstack(blocks, format="csr")

    def take_rows(self, idx: np.ndarray) -> "SparseCountsView":
        # one pass over the file; only the requested rows are kept
        idx = np.asarray(idx, dtype=np.int64)
        blocks = []
        for i, v in enumerate(self._chunks()):
            start = i * self.chunk_size
            sel = idx[(idx >= start) & (idx < start + self.chunk_size)] - start
            if sel.size:
                blocks.append(sp.csr_matrix(v.to_memory())[sel])
        if not blocks:
            return SparseCountsView(sp.csr_matrix((0, self.shape[1])))
        return SparseCountsView(sp.vstack(blocks, format="csr"))


def counts_view(matrix: Any) -> CountsView:
    """Wrap a matrix in the CountsView backend matching its storage."""
    if matrix is None:
        raise ConfigurationError("Counts matrix is None.")
    if sp.issparse(matrix):
        return SparseCountsView(matrix)
    if isinstance(matrix, np.ndarray):
        return DenseCountsView(matrix)
    if hasattr(matrix, "shape") and hasattr(matrix, "__getitem__"):
        return BackedCountsView(matrix)
    return DenseCountsView(np.asarray(matrix))


def dataset_counts_view(adata: ad.AnnData) -> CountsView:
    return counts_view(get_counts_matrix(adata))


def warn_if_large(n_cells: int, n_genes: int, what: str = "split") -> bool:
    size_bytes = float(n_cells) * float(n_genes) * 8
    if size_bytes > _LARGE_MATRIX_BYTES:
        LOGGER.warning(
            "Converting a possibly large %dx%d %s into an in-memory matrix (~%.1f GB dense). "
            "This may take a while. If running out of memory, consider subsampling cells.",
            n_cells, n_genes, what, size_bytes / 1e9,
        )
        return True
    return False


# -----------------------------------------------------------------------------
# Detection-rate covariate
# -----------------------------------------------------------------------------
def detection_rate(adata: ad.AnnData, view: Optional[CountsView] = None) -> np.ndarray:
    """
    Per-cell number of detected genes (> 0), centred and scaled.

    Computed on the full dataset so the covariate reflects the whole
    population rather than any later subsample. Constant detection gives zeros.
    Pass `view` when the counts matrix of `adata` is already resolved.
    """
    view = dataset_counts_view(adata) if view is None else view
    n_detected = view.n_detected_per_cell().astype(np.float64)
    if n_detected.size < 2:
        return np.zeros_like(n_detected)
    sd = float(np.std(n_detected, ddof=1))
    if not np.isfinite(sd) or sd == 0.0:
        LOGGER.debug("Detection rate is constant across cells; covariate set to 0.")
        return np.zeros_like(n_detected)
    return (n_detected - n_detected.mean()) / sd


# -----------------------------------------------------------------------------
# Microarray (purified population) datasets
# -----------------------------------------------------------------------------
def dataset_from_microarray(
    norm_expression_table: pd.DataFrame,
    sample_sheet_table: pd.DataFrame,
    *,
    sample_name: str,
    group_name: str = GROUP_KEY,
    gene_annotation: Optional[pd.DataFrame] = None,
    dataset_kind: DatasetKind = "microarray",
) -> ad.AnnData:
    """
    Assemble an ExpressionDataset from logged, normalised microarray values.

    norm_expression_table is genes x samples (index = gene/probe IDs); the
    sample sheet needs a `sample_name` column matching its columns and a
    `group_name` column with each sample's cell type. Samples are ordered as
    in the sample sheet. Optional gene_annotation (indexed by gene ID) is
    passed through to var.
    """
    for col in (sample_name, group_name):
        if col not in sample_sheet_table.columns:
            raise MissingColumnError(col, "sample_sheet_table", list(sample_sheet_table.columns))

    samples = sample_sheet_table[sample_name].astype(str).tolist()
    expr = norm_expression_table.copy()
    expr.columns = expr.columns.astype(str)
    missing = [s for s in samples if s not in expr.columns]
    if missing:
        raise ConfigurationError(
            f"Samples listed in sample sheet column {sample_name!r} are missing from the "
            f"expression table: {missing}"
        )
    expr = expr.loc[:, samples]

    obs = sample_sheet_table.copy()
    obs.index = pd.Index(samples, name=None)
    group = obs[group_name]
    if not isinstance(group.dtype, pd.CategoricalDtype):
        group = pd.Categorical(group.astype(str))
    obs[GROUP_KEY] = group

    ids = expr.index.astype(str)
    var = pd.DataFrame({ID_KEY: ids.to_numpy()}, index=pd.Index(ids, name=None))
    if gene_annotation is not None:
        ann = gene_annotation.copy()
        ann.index = ann.index.astype(str)
        ann = ann.drop(columns=[ID_KEY], errors="ignore")
        var = var.join(ann, how="left")

    adata = ad.AnnData(
        obs=obs,
        var=var,
        layers={COUNTS_LAYER: expr.to_numpy(dtype=np.float64).T},
    )
    adata.uns[UNS_KEY] = {"dataset_kind": str(dataset_kind)}

    LOGGER.info(
        "Assembled %s dataset: %d samples x %d genes, %d groups.",
        dataset_kind, adata.n_obs, adata.n_vars, len(group_levels(adata)),
    )
    return adata


def require_obs_columns(adata: ad.AnnData, columns: Sequence[str]) -> None:
    for col in columns:
        if col not in adata.obs:
            raise MissingColumnError(col, "adata.obs", list(adata.obs.columns))
