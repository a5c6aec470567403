from .cache_manager import CacheManager
from .extractors import DEFAULT_EXTRACTORS, extract_data
from .transformers import apply_transform
from .transform_builder import TransformBuilder, create_transform_builder
from .factory import create_conversion_pipeline, create_cohort_pipeline, validate_pipeline
from .manager import DataPipelineManager

__all__ = [
    "CacheManager",
    "DEFAULT_EXTRACTORS",
    "extract_data",
    "apply_transform",
    "TransformBuilder",
    "create_transform_builder",
    "create_conversion_pipeline",
    "create_cohort_pipeline",
    "validate_pipeline",
    "DataPipelineManager",
]
