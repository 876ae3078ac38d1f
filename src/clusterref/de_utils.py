# src/clusterref/de_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
import warnings
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from . import capabilities
from .config import ContrastConfig
from .contrast_models import (
    DETECTION_RATE_KEY,
    ContrastInput,
    get_contrast_model,
)
from .dataset_utils import (
    GROUP_KEY,
    ID_KEY,
    CountsView,
    DatasetKind,
    counts_view,
    dataset_counts_view,
    declared_dataset_kind,
    detection_rate,
    group_labels,
    group_levels,
    require_obs_columns,
    validate_dataset,
)
from .errors import ConfigurationError, ModelFitError, ParallelUnavailableWarning, UnknownGroupError
from .subsample_utils import SubsampleContext, subsample_indices_for_group_test

LOGGER = logging.getLogger(__name__)

# Public DE table columns after the pass-through gene annotation
DE_COLUMNS = [
    "pval",
    "log2FC",
    "ci_inner",
    "ci_outer",
    "fdr",
    GROUP_KEY,
    "sig",
    "sig_up",
    "gene_count",
    "rank",
    "rescaled_rank",
]
DATASET_KEY = "dataset"


# -----------------------------------------------------------------------------
# Shared helpers
# -----------------------------------------------------------------------------
def get_inner_or_outer_ci(fold_change: float, ci_hi: float, ci_lo: float, get_inner: bool = True) -> float:
    """
    Pick the confidence bound closest to zero ("inner") or furthest ("outer")
    in the direction of the fold change. Undefined fold change gives 0.
    """
    if fold_change is None or pd.isna(fold_change):
        return 0.0
    if fold_change > 0:
        return float(ci_lo if get_inner else ci_hi)
    return float(ci_hi if get_inner else ci_lo)


def inner_outer_ci(
    fold_change: np.ndarray,
    ci_hi: np.ndarray,
    ci_lo: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorised get_inner_or_outer_ci; returns (ci_inner, ci_outer)."""
    fc = np.asarray(fold_change, dtype=np.float64)
    hi = np.asarray(ci_hi, dtype=np.float64)
    lo = np.asarray(ci_lo, dtype=np.float64)
    up = fc > 0
    inner = np.where(up, lo, hi)
    outer = np.where(up, hi, lo)
    undefined = np.isnan(fc)
    inner[undefined] = 0.0
    outer[undefined] = 0.0
    return inner, outer


def bh_fdr(pvals: Sequence[float]) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values; NaN in, NaN out (not counted as tests)."""
    from statsmodels.stats.multitest import multipletests

    p = np.asarray(pvals, dtype=np.float64)
    out = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return out


def _resolve_kind(adata: ad.AnnData, cfg: ContrastConfig) -> DatasetKind:
    kind = cfg.dataset_kind or declared_dataset_kind(adata)
    if kind != "microarray" and cfg.extra_factor_key is not None:
        raise ConfigurationError("extra_factor_key is only supported by the microarray model")
    return kind


def _check_groups(requested: Sequence[str], levels: Sequence[str]) -> List[str]:
    requested = [str(g) for g in requested]
    unknown = [g for g in requested if g not in set(levels)]
    if unknown:
        raise UnknownGroupError(unknown, levels)
    return requested


def _annotation_table(adata: ad.AnnData) -> pd.DataFrame:
    var = adata.var.copy()
    var[ID_KEY] = var[ID_KEY].astype(str)
    clash = [c for c in var.columns if c in DE_COLUMNS or c == DATASET_KEY]
    if clash:
        LOGGER.warning("Dropping gene annotation column(s) that clash with DE table columns: %s", clash)
        var = var.drop(columns=clash)
    var = var.reset_index(drop=True)
    return var[[ID_KEY] + [c for c in var.columns if c != ID_KEY]]


def empty_de_table(annotation_columns: Sequence[str] = ()) -> pd.DataFrame:
    cols = [ID_KEY] + [c for c in annotation_columns if c != ID_KEY] + DE_COLUMNS + [DATASET_KEY]
    return pd.DataFrame({c: pd.Series(dtype=object) for c in cols})


# -----------------------------------------------------------------------------
# GroupContrastEngine
# -----------------------------------------------------------------------------
def _build_group_payload(
    view: CountsView,
    the_group: str,
    *,
    cfg: ContrastConfig,
    kind: DatasetKind,
    labels: np.ndarray,
    detection: Optional[np.ndarray],
    extra_factor: Optional[np.ndarray],
    annotation: pd.DataFrame,
    materialise: bool,
) -> Dict[str, Any]:
    """
    `view` is the counts view of the full dataset, resolved once per run.
    With materialise=True it must already be in memory: whole-dataset splits
    then share its matrix instead of copying it per group.
    """
    if cfg.subsampling:
        idx = subsample_indices_for_group_test(
            labels,
            the_group,
            n_group=cfg.n_group,
            n_other=cfg.n_other_effective,
            ctx=SubsampleContext(int(cfg.seed)),
        )
    else:
        idx = np.arange(labels.size)

    part = view if idx.size == labels.size else view.take_rows(idx)

    covariates = pd.DataFrame(index=pd.RangeIndex(idx.size))
    if detection is not None:
        covariates[DETECTION_RATE_KEY] = np.asarray(detection, dtype=np.float64)[idx]
    if extra_factor is not None:
        covariates[cfg.extra_factor_key] = extra_factor[idx]

    return {
        "group": str(the_group),
        # workers get plain in-memory matrices; backed files stay in this process
        "values": part.to_memory() if materialise else part,
        "gene_ids": annotation[ID_KEY].to_numpy(),
        "is_test": labels[idx] == str(the_group),
        "covariates": covariates,
        "annotation": annotation,
        "kind": kind,
        "ci_level": float(cfg.ci_level),
        "pval_component": cfg.pval_component,
        "extra_factor_key": cfg.extra_factor_key,
        "pvalue_threshold": float(cfg.pvalue_threshold),
    }


def _finalise_group_table(
    fit: pd.DataFrame,
    annotation: pd.DataFrame,
    the_group: str,
    pvalue_threshold: float,
) -> pd.DataFrame:
    df = annotation.merge(fit, on=ID_KEY, how="right", validate="one_to_one")

    df["ci_inner"], df["ci_outer"] = inner_outer_ci(df["log2FC"], df["ci_hi"], df["ci_lo"])
    df = df.drop(columns=["ci_hi", "ci_lo"])

    # stable: ties keep gene order
    df = df.sort_values("ci_inner", ascending=False, kind="mergesort", na_position="last")
    df = df.reset_index(drop=True)

    df["fdr"] = bh_fdr(df["pval"].to_numpy())
    n_genes = int(len(df))
    df[GROUP_KEY] = str(the_group)
    df["sig"] = (df["fdr"] <= pvalue_threshold).fillna(False).astype(bool)
    df["sig_up"] = df["sig"] & (df["log2FC"] > 0)
    df["gene_count"] = n_genes
    df["rank"] = np.arange(1, n_genes + 1, dtype=np.int64)
    df["rescaled_rank"] = df["rank"] / n_genes if n_genes else df["rank"].astype(np.float64)

    ann_cols = [c for c in annotation.columns if c != ID_KEY]
    return df[[ID_KEY] + ann_cols + DE_COLUMNS]


def _contrast_group_worker(payload: dict) -> Tuple[str, pd.DataFrame]:
    """
    Worker: fit one group-vs-rest split and build its DE rows.
    Returns (group, table). ModelFitError propagates to the caller.
    """
    group = payload["group"]
    values = payload["values"]
    if not hasattr(values, "log2p"):
        values = counts_view(values)

    model = get_contrast_model(
        payload["kind"],
        ci_level=payload["ci_level"],
        pval_component=payload["pval_component"],
        extra_factor_key=payload["extra_factor_key"],
    )
    data = ContrastInput(
        values=values,
        gene_ids=payload["gene_ids"],
        is_test=np.asarray(payload["is_test"], dtype=bool),
        covariates=payload["covariates"],
        group=group,
    )
    n_test = int(data.is_test.sum())
    if n_test == 0 or n_test == data.n_cells:
        raise ModelFitError("split has no cells on one side of the contrast", group=group)

    fit = model.fit_contrast(data)
    table = _finalise_group_table(fit, payload["annotation"], group, payload["pvalue_threshold"])
    return group, table


def _extra_factor(adata: ad.AnnData, cfg: ContrastConfig) -> Optional[np.ndarray]:
    if cfg.extra_factor_key is None:
        return None
    return adata.obs[cfg.extra_factor_key].astype(str).to_numpy()


def contrast_the_group_to_the_rest(
    adata: ad.AnnData,
    the_group: str,
    *,
    cfg: Optional[ContrastConfig] = None,
    detection: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    DE table for one group against all other cells.

    Rows are sorted by ci_inner (descending); rank, rescaled_rank, fdr, sig and
    sig_up refer to this group only. `detection` is the detection-rate
    covariate of the *full* dataset (computed here when not given); it is only
    used by the counts model. The input AnnData is never modified.
    """
    cfg = cfg or ContrastConfig()
    validate_dataset(adata)
    levels = group_levels(adata)
    the_group = _check_groups([the_group], levels)[0]

    kind = _resolve_kind(adata, cfg)
    if cfg.extra_factor_key is not None:
        require_obs_columns(adata, [cfg.extra_factor_key])
    get_contrast_model(
        kind,
        ci_level=cfg.ci_level,
        pval_component=cfg.pval_component,
        extra_factor_key=cfg.extra_factor_key,
    )

    view = dataset_counts_view(adata)
    if kind == "counts":
        if detection is None:
            detection = detection_rate(adata, view=view)
        detection = np.asarray(detection, dtype=np.float64)
        if detection.shape != (adata.n_obs,):
            raise ConfigurationError(
                f"detection covariate has shape {detection.shape}, expected ({adata.n_obs},)"
            )
    else:
        detection = None

    payload = _build_group_payload(
        view,
        the_group,
        cfg=cfg,
        kind=kind,
        labels=group_labels(adata),
        detection=detection,
        extra_factor=_extra_factor(adata, cfg),
        annotation=_annotation_table(adata),
        materialise=False,
    )
    t0 = time.perf_counter()
    _, table = _contrast_group_worker(payload)
    LOGGER.info("Contrast %s vs rest done (%s model, %.1fs).", the_group, kind, time.perf_counter() - t0)
    return table


# -----------------------------------------------------------------------------
# DatasetContrastOrchestrator
# -----------------------------------------------------------------------------
def _effective_n_jobs(n_jobs: int, n_groups: int) -> int:
    n_jobs = int(n_jobs)
    if n_jobs > 1 and not capabilities.CAPABILITIES.parallel:
        warnings.warn(
            f"Parallel execution requested (n_jobs={n_jobs}) but multiprocessing is not "
            "supported on this host; running groups sequentially.",
            ParallelUnavailableWarning,
            stacklevel=3,
        )
        return 1
    n_cpus = max(1, int(capabilities.CAPABILITIES.n_cpus))
    if n_jobs > n_cpus:
        LOGGER.info("n_jobs=%d exceeds the %d available CPU(s); capping.", n_jobs, n_cpus)
        n_jobs = n_cpus
    return max(1, min(n_jobs, n_groups))


def contrast_each_group_to_the_rest(
    adata: ad.AnnData,
    dataset_name: str,
    *,
    cfg: Optional[ContrastConfig] = None,
) -> pd.DataFrame:
    """
    Run the group-vs-rest contrast for every requested group and stack the
    results into one DE table, stamped with `dataset_name`.

    Groups default to every level present in obs['group']; an explicit
    cfg.groups2test is checked against those levels before any fitting.
    With cfg.n_jobs > 1 groups run in worker processes, at most n_jobs
    splits in flight at a time. The dataset name is also kept in
    out.attrs['dataset'] so it survives a table with no rows.
    """
    cfg = cfg or ContrastConfig()
    validate_dataset(adata)
    levels = group_levels(adata)
    requested = set(_check_groups(cfg.groups2test if cfg.groups2test is not None else levels, levels))
    groups = [g for g in levels if g in requested]

    kind = _resolve_kind(adata, cfg)
    if cfg.extra_factor_key is not None:
        require_obs_columns(adata, [cfg.extra_factor_key])
    get_contrast_model(
        kind,
        ci_level=cfg.ci_level,
        pval_component=cfg.pval_component,
        extra_factor_key=cfg.extra_factor_key,
    )

    view = dataset_counts_view(adata)
    detection = detection_rate(adata, view=view) if kind == "counts" else None
    labels = group_labels(adata)
    extra_factor = _extra_factor(adata, cfg)
    annotation = _annotation_table(adata)
    n_jobs = _effective_n_jobs(cfg.n_jobs, len(groups))

    results: Dict[str, pd.DataFrame] = {}
    failed: List[str] = []

    def _record_failure(group: str, err: ModelFitError) -> None:
        if cfg.on_error == "raise":
            raise err
        LOGGER.warning("Skipping group %s: %s", group, err)
        failed.append(group)

    t0 = time.perf_counter()
    total = len(groups)
    if n_jobs <= 1:
        LOGGER.info("Contrasting %d group(s) of %s sequentially (%s model).", total, dataset_name, kind)
        for i, g in enumerate(groups, start=1):
            t_g0 = time.perf_counter()
            LOGGER.info("DE [%d/%d] start group=%s", i, total, g)
            payload = _build_group_payload(
                view, g,
                cfg=cfg, kind=kind, labels=labels, detection=detection,
                extra_factor=extra_factor, annotation=annotation, materialise=False,
            )
            try:
                _, results[g] = _contrast_group_worker(payload)
            except ModelFitError as e:
                _record_failure(g, e)
                continue
            LOGGER.info("DE [%d/%d] done  group=%s time=%.1fs", i, total, g, time.perf_counter() - t_g0)
    else:
        ctx = mp.get_context("spawn")
        LOGGER.info(
            "Contrasting %d group(s) of %s in parallel (max_workers=%d, %s model).",
            total, dataset_name, n_jobs, kind,
        )
        # read once; whole-dataset splits all reference this one matrix
        shared = counts_view(view.to_memory())
        todo = iter(groups)
        with ProcessPoolExecutor(max_workers=n_jobs, mp_context=ctx) as ex:
            running: Dict[Any, str] = {}

            def _submit_next() -> None:
                g = next(todo, None)
                if g is None:
                    return
                payload = _build_group_payload(
                    shared, g,
                    cfg=cfg, kind=kind, labels=labels, detection=detection,
                    extra_factor=extra_factor, annotation=annotation, materialise=True,
                )
                running[ex.submit(_contrast_group_worker, payload)] = g

            for _ in range(n_jobs):
                _submit_next()

            done = 0
            while running:
                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in finished:
                    g = running.pop(fut)
                    done += 1
                    try:
                        _, results[g] = fut.result()
                    except ModelFitError as e:
                        _record_failure(g, e)
                    else:
                        LOGGER.info(
                            "DE [%d/%d] done  group=%s elapsed=%.1fs", done, total, g, time.perf_counter() - t0,
                        )
                    _submit_next()

    ann_cols = [c for c in annotation.columns if c != ID_KEY]
    tables = [results[g] for g in groups if g in results]
    if tables:
        out = pd.concat(tables, axis=0, ignore_index=True)
    else:
        out = empty_de_table(ann_cols).drop(columns=[DATASET_KEY])
    out[GROUP_KEY] = pd.Categorical(out[GROUP_KEY].astype(str), categories=groups)
    out[DATASET_KEY] = str(dataset_name)
    out.attrs[DATASET_KEY] = str(dataset_name)
    if failed:
        out.attrs["failed_groups"] = list(failed)

    LOGGER.info(
        "Finished %s: %d group(s), %d row(s), %d failed, %.1fs.",
        dataset_name, len(tables), len(out), len(failed), time.perf_counter() - t0,
    )
    return out
