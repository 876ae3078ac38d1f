# src/clusterref/capabilities.py
from __future__ import annotations

import importlib.util
import logging
import os
from dataclasses import dataclass

from .errors import MissingCapabilityError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    """Optional features available on this host. Resolved once at import."""
    parallel: bool
    hurdle_model: bool
    linear_model: bool
    n_cpus: int = 1


def _parallel_supported() -> bool:
    # ProcessPoolExecutor needs working semaphores (sem_open); some hosts lack it.
    try:
        import multiprocessing.synchronize  # noqa: F401
    except ImportError:
        return False
    return True


def _has_module(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


def detect_capabilities() -> Capabilities:
    caps = Capabilities(
        parallel=_parallel_supported(),
        hurdle_model=_has_module("statsmodels"),
        linear_model=_has_module("scipy"),
        n_cpus=int(os.cpu_count() or 1),
    )
    LOGGER.debug("Detected capabilities: %s", caps)
    return caps


CAPABILITIES = detect_capabilities()


_PACKAGE_FOR = {
    "hurdle_model": "statsmodels",
    "linear_model": "scipy",
}


def require(capability: str) -> None:
    """Raise MissingCapabilityError unless `capability` is available."""
    if not getattr(CAPABILITIES, capability):
        raise MissingCapabilityError(capability, _PACKAGE_FOR.get(capability, capability))
