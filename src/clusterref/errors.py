# src/clusterref/errors.py
from __future__ import annotations

from typing import Iterable, Optional, Sequence


class ClusterRefError(Exception):
    """Root of every error raised by clusterref."""


# -----------------------------------------------------------------------------
# Configuration errors (raised before any model fitting)
# -----------------------------------------------------------------------------
class ConfigurationError(ClusterRefError, ValueError):
    pass


class UnknownGroupError(ConfigurationError):
    def __init__(self, groups: Iterable[str], available: Sequence[str]):
        self.groups = [str(g) for g in groups]
        self.available = [str(a) for a in available]
        super().__init__(
            f"Can't find test group(s) {self.groups} in dataset. "
            f"Available groups: {self.available}"
        )


class MissingColumnError(ConfigurationError, KeyError):
    def __init__(self, column: str, where: str, available: Optional[Sequence[str]] = None):
        self.column = str(column)
        self.where = str(where)
        self.available = list(available) if available is not None else None
        msg = f"Required column {self.column!r} not found in {self.where}."
        if self.available is not None:
            msg += f" Available: {self.available}"
        super().__init__(msg)

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class NoCountsLayerError(ConfigurationError, KeyError):
    def __init__(self, available: Sequence[str]):
        self.available = list(available)
        super().__init__(
            "Couldn't find a counts matrix. Expected a layer named 'counts' "
            "or exactly one matrix (named or the unnamed .X). "
            f"Instead found {len(self.available)} matrices: {self.available}. "
            "Include counts, or rename one of those layers."
        )

    def __str__(self) -> str:
        return str(self.args[0])


class UnknownPolicyError(ConfigurationError):
    def __init__(self, policy: str, valid: Sequence[str]):
        self.policy = str(policy)
        self.valid = list(valid)
        super().__init__(f"Unknown marker selection policy {self.policy!r}. Valid: {self.valid}")


class MissingCapabilityError(ConfigurationError):
    def __init__(self, capability: str, package: str):
        self.capability = str(capability)
        self.package = str(package)
        super().__init__(
            f"{self.capability} requires {self.package!r}, which is not installed. "
            f"Install with: pip install {self.package}"
        )


# -----------------------------------------------------------------------------
# Model errors
# -----------------------------------------------------------------------------
class ModelFitError(ClusterRefError, RuntimeError):
    def __init__(self, message: str, group: Optional[str] = None):
        self.group = group
        self._message = message
        if group is not None:
            message = f"[group={group}] {message}"
        super().__init__(message)

    def __reduce__(self):
        # keep .group when crossing process boundaries
        return (self.__class__, (self._message, self.group))


# -----------------------------------------------------------------------------
# Warnings (recoverable conditions)
# -----------------------------------------------------------------------------
class ClusterRefWarning(UserWarning):
    pass


class NoMarkersWarning(ClusterRefWarning):
    """No marker genes passed the selection policy (or none are in the reference)."""


class ParallelUnavailableWarning(ClusterRefWarning):
    """Parallel execution was requested but is unsupported; running sequentially."""
