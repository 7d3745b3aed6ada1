"""
Single-cell RNA-seq workflow on the scanpy/AnnData stack

QC, normalization, variable features, scaling, PCA, integration of conditions,
graph clustering, UMAP, marker discovery and annotation as checkpointed stages.
"""

__version__ = "0.1.0"

from scworkflow.config import PipelineConfig, QCBounds, from_preset, load_config  # noqa: E402
from scworkflow.data_loader import create_container, read_counts  # noqa: E402
from scworkflow.errors import (  # noqa: E402
    ConfigurationError,
    EmptyCellError,
    InsufficientAnchorsError,
    MalformedInputError,
    ScWorkflowError,
)
from scworkflow.pipeline import PipelineResult, run_pipeline  # noqa: E402

__all__ = [
    "ConfigurationError",
    "EmptyCellError",
    "InsufficientAnchorsError",
    "MalformedInputError",
    "PipelineConfig",
    "PipelineResult",
    "QCBounds",
    "ScWorkflowError",
    "create_container",
    "from_preset",
    "load_config",
    "read_counts",
    "run_pipeline",
]
