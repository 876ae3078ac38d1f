from __future__ import annotations

import math
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------
# GROUP-VS-REST CONTRAST CONFIG
# ---------------------------------------------------------------------
class ContrastConfig(BaseModel):
    # ---- Groups ----
    groups2test: Optional[List[str]] = Field(
        None,
        description="Subset of group levels to test. Default: every level in the dataset.",
    )

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1, description="Worker processes for per-group jobs (1 = sequential)")
    on_error: Literal["raise", "skip"] = Field(
        "raise",
        description="On a per-group ModelFitError: stop the batch, or log and omit the group",
    )

    # ---- Subsampling ----
    n_group: float = Field(math.inf, gt=0, description="Max cells kept from the tested group")
    n_other: Optional[float] = Field(
        None,
        gt=0,
        description="Max cells kept from all other groups. Default: 5 * n_group",
    )
    seed: Optional[int] = Field(
        None,
        description="Random seed for subsampling. Required when n_group/n_other is finite.",
    )

    # ---- Statistics ----
    pvalue_threshold: float = Field(0.01, gt=0, le=1)
    ci_level: float = Field(0.95, gt=0, lt=1)
    dataset_kind: Optional[Literal["counts", "microarray"]] = Field(
        None,
        description="Contrast model family. Default: kind declared on the dataset (counts if none)",
    )
    pval_component: Literal["discrete", "hurdle"] = Field(
        "discrete",
        description="Hurdle model p-value: discrete-component LRT or combined hurdle LRT",
    )
    extra_factor_key: Optional[str] = Field(
        None,
        description="obs column with one extra cross-group factor (microarray model only)",
    )

    @property
    def n_other_effective(self) -> float:
        if self.n_other is None:
            return self.n_group * 5
        return self.n_other

    @property
    def subsampling(self) -> bool:
        return math.isfinite(self.n_group) or math.isfinite(self.n_other_effective)

    # ---- Validators ----
    @field_validator("groups2test")
    @classmethod
    def normalize_groups(cls, v):
        if v is None:
            return None
        if len(v) == 0:
            raise ValueError("groups2test must not be empty (use None for all groups)")
        return [str(g) for g in v]

    @model_validator(mode="after")
    def check_seed(self):
        if self.subsampling and self.seed is None:
            raise ValueError(
                "seed is required when subsampling (n_group/n_other finite) "
                "so results are reproducible"
            )
        return self

    @model_validator(mode="after")
    def check_extra_factor(self):
        if self.extra_factor_key is not None and self.dataset_kind == "counts":
            raise ValueError("extra_factor_key is only supported by the microarray model")
        return self
