"""
Core processing modules for PresetForge.

Contains the operation pipeline, offload pool, smart crop, batch orchestration
and output packaging.
"""

from .errors import ProcessingError
from .pipeline import ImageAsset, ImagePipeline, PipelineRequest, PipelineResult
from .batch import BatchOrchestrator, BatchReport

__all__ = [
    'ProcessingError',
    'ImageAsset',
    'ImagePipeline',
    'PipelineRequest',
    'PipelineResult',
    'BatchOrchestrator',
    'BatchReport',
]
