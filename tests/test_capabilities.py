# tests/test_capabilities.py

import pytest

import clusterref.capabilities as capabilities
from clusterref.errors import (
    ConfigurationError,
    MissingCapabilityError,
    MissingColumnError,
    NoCountsLayerError,
    UnknownGroupError,
)


def test_capabilities_detected_once():
    caps = capabilities.CAPABILITIES
    assert caps.hurdle_model is True
    assert caps.linear_model is True
    assert caps.n_cpus >= 1


def test_require_passes_when_available():
    capabilities.require("hurdle_model")
    capabilities.require("linear_model")


def test_require_names_package(monkeypatch):
    monkeypatch.setattr(
        capabilities,
        "CAPABILITIES",
        capabilities.Capabilities(parallel=True, hurdle_model=True, linear_model=False),
    )
    with pytest.raises(MissingCapabilityError, match="pip install scipy"):
        capabilities.require("linear_model")


# -----------------------------------------------------------------------------
# Error taxonomy
# -----------------------------------------------------------------------------
def test_configuration_errors_are_value_errors():
    assert issubclass(UnknownGroupError, ConfigurationError)
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(MissingColumnError, KeyError)
    assert issubclass(NoCountsLayerError, KeyError)


def test_key_errors_keep_readable_message():
    err = MissingColumnError("group", "adata.obs", ["cluster"])
    assert str(err) == "Required column 'group' not found in adata.obs. Available: ['cluster']"


def test_unknown_group_lists_everything():
    err = UnknownGroupError(["Q", "R"], ["A", "B"])
    assert err.groups == ["Q", "R"]
    assert "['Q', 'R']" in str(err)
    assert "['A', 'B']" in str(err)
