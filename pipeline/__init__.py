"""
The asset pipeline and its runtime wiring.
"""

from pipeline.pipeline import (
    AssetPipeline,
    BatchResult,
    PipelineConfig,
    id_filter,
)
from pipeline.runtime import PipelineRuntime, build_runtime

__all__ = [
    "AssetPipeline",
    "BatchResult",
    "PipelineConfig",
    "id_filter",
    "PipelineRuntime",
    "build_runtime",
]
