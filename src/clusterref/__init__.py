"""Group-vs-rest differential expression and cross-dataset marker lookup."""

__version__ = "0.1.0"

from .config import ContrastConfig
from .dataset_utils import dataset_from_microarray, detection_rate, validate_dataset
from .de_utils import (
    contrast_each_group_to_the_rest,
    contrast_the_group_to_the_rest,
    get_inner_or_outer_ci,
)
from .errors import (
    ClusterRefError,
    ConfigurationError,
    MissingCapabilityError,
    MissingColumnError,
    ModelFitError,
    NoCountsLayerError,
    NoMarkersWarning,
    ParallelUnavailableWarning,
    UnknownGroupError,
    UnknownPolicyError,
)
from .logging_utils import init_logging
from .marker_utils import get_the_up_genes_for_all_possible_groups, get_the_up_genes_for_group
from .subsample_utils import SubsampleContext, subset_cells_by_group

__all__ = [
    "ContrastConfig",
    "SubsampleContext",
    "ClusterRefError",
    "ConfigurationError",
    "MissingCapabilityError",
    "MissingColumnError",
    "ModelFitError",
    "NoCountsLayerError",
    "NoMarkersWarning",
    "ParallelUnavailableWarning",
    "UnknownGroupError",
    "UnknownPolicyError",
    "contrast_each_group_to_the_rest",
    "contrast_the_group_to_the_rest",
    "dataset_from_microarray",
    "detection_rate",
    "get_inner_or_outer_ci",
    "get_the_up_genes_for_all_possible_groups",
    "get_the_up_genes_for_group",
    "init_logging",
    "subset_cells_by_group",
    "validate_dataset",
]
