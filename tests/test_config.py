import math
import pytest
from pydantic import ValidationError

from clusterref.config import ContrastConfig


# -------------------------------------------------------------------------
# Defaults
# -------------------------------------------------------------------------
def test_defaults():
    cfg = ContrastConfig()

    assert cfg.groups2test is None
    assert cfg.n_jobs == 1
    assert cfg.on_error == "raise"
    assert math.isinf(cfg.n_group)
    assert math.isinf(cfg.n_other_effective)
    assert cfg.subsampling is False
    assert cfg.pvalue_threshold == 0.01
    assert cfg.ci_level == 0.95
    assert cfg.dataset_kind is None
    assert cfg.pval_component == "discrete"


# -------------------------------------------------------------------------
# Subsampling caps & seed
# -------------------------------------------------------------------------
def test_n_other_defaults_to_five_times_n_group():
    cfg = ContrastConfig(n_group=20, seed=1)
    assert cfg.n_other_effective == 100
    assert cfg.subsampling is True


def test_explicit_n_other_kept():
    cfg = ContrastConfig(n_group=20, n_other=7, seed=1)
    assert cfg.n_other_effective == 7


def test_finite_cap_requires_seed():
    with pytest.raises(ValidationError, match="seed"):
        ContrastConfig(n_group=50)

    with pytest.raises(ValidationError, match="seed"):
        ContrastConfig(n_other=50)


@pytest.mark.parametrize("field, value", [
    ("n_jobs", 0),
    ("n_group", 0),
    ("pvalue_threshold", 0.0),
    ("pvalue_threshold", 1.5),
    ("ci_level", 1.0),
    ("on_error", "ignore"),
    ("dataset_kind", "rnaseq"),
    ("pval_component", "continuous"),
])
def test_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        ContrastConfig(**{field: value})


# -------------------------------------------------------------------------
# Groups / model options
# -------------------------------------------------------------------------
def test_groups2test_coerced_to_str():
    cfg = ContrastConfig(groups2test=["A", "B"])
    assert cfg.groups2test == ["A", "B"]


def test_groups2test_must_not_be_empty():
    with pytest.raises(ValidationError):
        ContrastConfig(groups2test=[])


def test_extra_factor_rejected_for_counts_model():
    with pytest.raises(ValidationError, match="microarray"):
        ContrastConfig(dataset_kind="counts", extra_factor_key="donor")

    cfg = ContrastConfig(dataset_kind="microarray", extra_factor_key="donor")
    assert cfg.extra_factor_key == "donor"
