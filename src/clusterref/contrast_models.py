# src/clusterref/contrast_models.py
from __future__ import annotations

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, List, Optional, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy import special, stats

from . import capabilities
from .dataset_utils import LOG_OFFSET, CountsView, DatasetKind, ID_KEY, warn_if_large
from .errors import ConfigurationError, MissingColumnError, ModelFitError

LOGGER = logging.getLogger(__name__)

DETECTION_RATE_KEY = "pofgenes"

# Columns every ContrastModel returns, one row per gene
MODEL_COLUMNS = [ID_KEY, "pval", "log2FC", "ci_hi", "ci_lo"]


@dataclass
class ContrastInput:
    """One group-vs-rest split, positional per cell."""
    values: CountsView
    gene_ids: np.ndarray
    is_test: np.ndarray
    covariates: pd.DataFrame
    group: str

    @property
    def n_cells(self) -> int:
        return int(self.is_test.size)


class ContrastModel(ABC):
    kind: ClassVar[str]
    capability: ClassVar[str]

    def __init__(self, ci_level: float = 0.95):
        self.ci_level = float(ci_level)

    def required_covariates(self) -> List[str]:
        return []

    def check_covariates(self, covariates: pd.DataFrame) -> None:
        for col in self.required_covariates():
            if col not in covariates.columns:
                raise MissingColumnError(col, f"{self.kind} contrast covariates", list(covariates.columns))

    @abstractmethod
    def fit_contrast(self, data: ContrastInput) -> pd.DataFrame:
        """Return a DataFrame with MODEL_COLUMNS, one row per gene, ci_hi >= ci_lo."""


# -----------------------------------------------------------------------------
# Count-based hurdle model (discrete "expressed?" + continuous "how much")
# -----------------------------------------------------------------------------
def _discrete_lrt(z: np.ndarray, X_full: np.ndarray, X_red: np.ndarray) -> float:
    import statsmodels.api as sm

    if z.min() == z.max():
        # everything expressed (or nothing): no information on group membership
        return 0.0
    fam = sm.families.Binomial()
    full = sm.GLM(z, X_full, family=fam).fit()
    red = sm.GLM(z, X_red, family=fam).fit()
    stat = float(red.deviance - full.deviance)
    if not np.isfinite(stat):
        return np.nan
    return max(0.0, stat)


def _continuous_fit(
    y: np.ndarray,
    X_full: np.ndarray,
    X_red: np.ndarray,
    ci_level: float,
) -> Tuple[float, float, float, float]:
    """(coef, ci_lo, ci_hi, lrt_stat) for the group term; NaNs when not estimable."""
    import statsmodels.api as sm

    nan4 = (np.nan, np.nan, np.nan, np.nan)
    n, p = X_full.shape
    if n <= p or np.linalg.matrix_rank(X_full) < p:
        return nan4

    full = sm.OLS(y, X_full).fit()
    coef = float(full.params[1])
    lo, hi = (float(v) for v in full.conf_int(alpha=1.0 - ci_level)[1])
    if not (np.isfinite(coef) and np.isfinite(lo) and np.isfinite(hi)):
        return nan4

    stat = np.nan
    if full.ssr > 0:
        red = sm.OLS(y, X_red).fit()
        stat = max(0.0, float(2.0 * (full.llf - red.llf)))
    return coef, min(lo, hi), max(lo, hi), stat


class HurdleContrastModel(ContrastModel):
    """
    Two-part model per gene on log2(counts + 1), formula ~ TvsR + pofgenes.

    Discrete part: logistic GLM on "expressed" (> 0); its likelihood-ratio test
    on TvsR gives the p-value. Continuous part: OLS over expressed cells only;
    the TvsR coefficient and its confidence interval are the log2 fold change.
    With pval_component="hurdle" the two LRT statistics are summed (2 df).

    Two pseudo-cells (one per arm, every gene at LOG_OFFSET, pofgenes 0) are
    added so each gene has an expressed observation in both arms.
    """

    kind = "counts"
    capability = "hurdle_model"

    def __init__(self, ci_level: float = 0.95, pval_component: str = "discrete"):
        super().__init__(ci_level)
        if pval_component not in ("discrete", "hurdle"):
            raise ConfigurationError(f"pval_component must be 'discrete' or 'hurdle', got {pval_component!r}")
        self.pval_component = pval_component

    def required_covariates(self) -> List[str]:
        return [DETECTION_RATE_KEY]

    def _design(self, data: ContrastInput) -> Tuple[np.ndarray, np.ndarray]:
        tvsr = np.r_[1.0, 0.0, data.is_test.astype(np.float64)]
        pof = np.r_[0.0, 0.0, data.covariates[DETECTION_RATE_KEY].to_numpy(dtype=np.float64)]
        const = np.ones_like(tvsr)

        cols_full = [const, tvsr]
        cols_red = [const]
        if np.ptp(pof) > 0:
            cols_full.append(pof)
            cols_red.append(pof)
        else:
            LOGGER.debug("[%s] detection-rate covariate is constant in this split; dropped.", data.group)
        return np.column_stack(cols_full), np.column_stack(cols_red)

    def _logged_with_pseudocells(self, data: ContrastInput):
        n_cells, n_genes = data.values.shape
        warn_if_large(n_cells, n_genes, what=f"{data.group} vs rest split")
        logged = data.values.log2p()
        pseudo = np.full((2, n_genes), LOG_OFFSET, dtype=np.float64)
        if sp.issparse(logged):
            return sp.vstack([sp.csr_matrix(pseudo), logged], format="csc")
        return np.vstack([pseudo, np.asarray(logged)])

    def fit_contrast(self, data: ContrastInput) -> pd.DataFrame:
        capabilities.require(self.capability)
        self.check_covariates(data.covariates)
        from statsmodels.tools.sm_exceptions import PerfectSeparationError

        fit_errors = (ValueError, np.linalg.LinAlgError, FloatingPointError, PerfectSeparationError)
        Y = self._logged_with_pseudocells(data)
        X_full, X_red = self._design(data)
        n_genes = Y.shape[1]

        pval = np.full(n_genes, np.nan)
        log2fc = np.zeros(n_genes)
        ci_hi = np.zeros(n_genes)
        ci_lo = np.zeros(n_genes)
        n_failed_disc = 0
        n_undefined_fc = 0

        with warnings.catch_warnings(record=True) as wrec:
            warnings.simplefilter("always")
            for j in range(n_genes):
                if sp.issparse(Y):
                    y = Y[:, j].toarray().ravel()
                else:
                    y = Y[:, j]
                expressed = y > 0
                z = expressed.astype(np.float64)

                try:
                    stat_d = _discrete_lrt(z, X_full, X_red)
                except fit_errors as e:
                    LOGGER.debug("[%s] discrete fit failed for %s: %s", data.group, data.gene_ids[j], e)
                    stat_d = np.nan

                try:
                    coef, lo, hi, stat_c = _continuous_fit(
                        y[expressed], X_full[expressed], X_red[expressed], self.ci_level
                    )
                except fit_errors as e:
                    LOGGER.debug("[%s] continuous fit failed for %s: %s", data.group, data.gene_ids[j], e)
                    coef, lo, hi, stat_c = np.nan, np.nan, np.nan, np.nan

                if np.isnan(stat_d):
                    n_failed_disc += 1
                elif self.pval_component == "hurdle" and np.isfinite(stat_c):
                    pval[j] = stats.chi2.sf(stat_d + stat_c, df=2)
                else:
                    pval[j] = stats.chi2.sf(stat_d, df=1)

                if np.isnan(coef):
                    n_undefined_fc += 1
                else:
                    log2fc[j], ci_lo[j], ci_hi[j] = coef, lo, hi

        if wrec:
            LOGGER.debug("[%s] hurdle fits raised %d warning(s) (e.g. %s)", data.group, len(wrec), wrec[0].message)

        if n_genes > 0 and n_failed_disc == n_genes and n_undefined_fc == n_genes:
            raise ModelFitError(
                f"hurdle model could not be fitted for any of {n_genes} genes", group=data.group
            )
        if n_failed_disc or n_undefined_fc:
            LOGGER.info(
                "[%s] hurdle model: %d gene(s) without discrete test, %d with undefined fold change (set to 0).",
                data.group, n_failed_disc, n_undefined_fc,
            )

        return pd.DataFrame(
            {
                ID_KEY: np.asarray(data.gene_ids).astype(str),
                "pval": pval,
                "log2FC": log2fc,
                "ci_hi": ci_hi,
                "ci_lo": ci_lo,
            },
            columns=MODEL_COLUMNS,
        )


# -----------------------------------------------------------------------------
# Microarray moderated linear model (limma-style empirical Bayes)
# -----------------------------------------------------------------------------
def _trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y (Newton iteration, as in limma)."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1.0 - tri / x) / special.polygamma(2, y)
        y = y + dif
        if -dif / y < 1e-8:
            break
    else:
        LOGGER.warning("trigamma inverse: iteration limit exceeded")
    return float(y)


def fit_f_dist(s2: np.ndarray, df1: float) -> Tuple[float, float]:
    """
    Moment estimate of the scaled F (inverse chi-square) prior on gene variances.

    Returns (df_prior, s2_prior); df_prior may be inf when the observed
    variances are no more dispersed than sampling alone explains.
    """
    x = np.asarray(s2, dtype=np.float64)
    x = x[np.isfinite(x)]
    if x.size == 0 or df1 <= 0:
        return 0.0, np.nan
    x = np.maximum(x, 0.0)
    m = float(np.median(x))
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - special.digamma(df1 / 2.0) + np.log(df1 / 2.0)
    emean = float(e.mean())
    if e.size < 2:
        return np.inf, float(np.exp(emean))
    evar = float(np.sum((e - emean) ** 2) / (e.size - 1))
    evar -= float(special.polygamma(1, df1 / 2.0))

    if evar > 0:
        df2 = 2.0 * _trigamma_inverse(evar)
        s20 = float(np.exp(emean + special.digamma(df2 / 2.0) - np.log(df2 / 2.0)))
    else:
        df2 = np.inf
        s20 = float(np.exp(emean))
    return float(df2), s20


def squeeze_var(s2: np.ndarray, df: float, df_prior: float, s2_prior: float) -> np.ndarray:
    if not np.isfinite(df_prior):
        return np.full_like(np.asarray(s2, dtype=np.float64), s2_prior)
    return (df * s2 + df_prior * s2_prior) / (df + df_prior)


class LinearContrastModel(ContrastModel):
    """
    Per-gene linear model ~ 0 + TvsR (+ one extra factor) on logged,
    normalised values, contrast test - rest, with empirical-Bayes moderated
    variances. Confidence intervals use the moderated standard error and
    df_residual + df_prior degrees of freedom.
    """

    kind = "microarray"
    capability = "linear_model"

    def __init__(self, ci_level: float = 0.95, extra_factor_key: Optional[str] = None):
        super().__init__(ci_level)
        self.extra_factor_key = extra_factor_key

    def required_covariates(self) -> List[str]:
        return [self.extra_factor_key] if self.extra_factor_key else []

    def design_matrix(self, data: ContrastInput) -> np.ndarray:
        is_test = data.is_test.astype(np.float64)
        cols = [1.0 - is_test, is_test]
        X = np.column_stack(cols)
        if self.extra_factor_key:
            extra = pd.get_dummies(
                data.covariates[self.extra_factor_key].astype(str),
                drop_first=True,
                dtype=np.float64,
            )
            if extra.shape[1] > 0:
                X = np.column_stack([X, extra.to_numpy()])
        return X

    def fit_contrast(self, data: ContrastInput) -> pd.DataFrame:
        capabilities.require(self.capability)
        self.check_covariates(data.covariates)

        E = data.values.to_memory()
        E = E.toarray() if sp.issparse(E) else np.asarray(E, dtype=np.float64)
        E = E.astype(np.float64, copy=False)

        X = self.design_matrix(data)
        n, p = X.shape
        if np.linalg.matrix_rank(X) < p:
            raise ModelFitError(
                "design matrix is not of full rank "
                "(is the extra factor confounded with the group?)",
                group=data.group,
            )
        df_resid = n - p
        if df_resid <= 0:
            raise ModelFitError(
                f"no residual degrees of freedom ({n} samples, {p} coefficients)",
                group=data.group,
            )

        xtx_inv = np.linalg.inv(X.T @ X)
        B = xtx_inv @ X.T @ E
        resid = E - X @ B
        s2 = np.sum(resid ** 2, axis=0) / df_resid

        c = np.zeros(p)
        c[0], c[1] = -1.0, 1.0
        coef = c @ B
        stdev_unscaled = float(np.sqrt(c @ xtx_inv @ c))

        df_prior, s2_prior = fit_f_dist(s2, float(df_resid))
        s2_post = squeeze_var(s2, float(df_resid), df_prior, s2_prior)
        df_total = min(df_resid + df_prior, float(df_resid) * E.shape[1])
        LOGGER.debug(
            "[%s] eBayes: df_residual=%d, df_prior=%.3g, s2_prior=%.3g, df_total=%.3g",
            data.group, df_resid, df_prior, s2_prior, df_total,
        )

        se = stdev_unscaled * np.sqrt(s2_post)
        with np.errstate(divide="ignore", invalid="ignore"):
            t = coef / se
        pval = 2.0 * stats.t.sf(np.abs(t), df_total)
        margin = stats.t.ppf(0.5 + self.ci_level / 2.0, df_total) * se

        return pd.DataFrame(
            {
                ID_KEY: np.asarray(data.gene_ids).astype(str),
                "pval": pval,
                "log2FC": coef,
                "ci_hi": coef + margin,
                "ci_lo": coef - margin,
            },
            columns=MODEL_COLUMNS,
        )


# -----------------------------------------------------------------------------
# Model selection by declared dataset kind
# -----------------------------------------------------------------------------
_MODELS = {
    "counts": HurdleContrastModel,
    "microarray": LinearContrastModel,
}


def get_contrast_model(
    kind: DatasetKind,
    *,
    ci_level: float = 0.95,
    pval_component: str = "discrete",
    extra_factor_key: Optional[str] = None,
) -> ContrastModel:
    if kind not in _MODELS:
        raise ConfigurationError(f"Unknown dataset kind {kind!r}. Valid: {sorted(_MODELS)}")
    cls = _MODELS[kind]
    capabilities.require(cls.capability)
    if kind == "counts":
        if extra_factor_key is not None:
            raise ConfigurationError("extra_factor_key is only supported by the microarray model")
        return HurdleContrastModel(ci_level=ci_level, pval_component=pval_component)
    return LinearContrastModel(ci_level=ci_level, extra_factor_key=extra_factor_key)
