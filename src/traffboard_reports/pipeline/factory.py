"""
Pipeline Factory

Default pipeline definitions and multi-part pipeline validation. Validation
accumulates every violation instead of failing on the first one.
"""

from __future__ import annotations
from typing import List, Optional

from traffboard_reports.config import get_settings
from traffboard_reports.pipeline.transform_builder import create_transform_builder
from traffboard_reports.types import (
    CacheConfig, DataPipeline, DataSourceConfig, DataTransformStep, OutputConfig,
    SourceType, TransformType, ValidationResult,
)

VALID_SOURCE_TYPES = {t.value for t in SourceType}
VALID_TRANSFORM_TYPES = {t.value for t in TransformType}


# =============================================================================
# PIPELINE FACTORIES
# =============================================================================

def create_conversion_pipeline(pipeline_id: str, ttl: Optional[int] = None) -> DataPipeline:
    source = DataSourceConfig(
        id=f"source_{pipeline_id}",
        type=SourceType.DATABASE,
        query="traffic_reports",
        timeout=30_000,
    )

    # Request filters are pushed down to the query; this step re-applies any
    # that name a row field.
    transforms = create_transform_builder().filter({}).build()

    cache = CacheConfig(
        enabled=True,
        ttl=ttl if ttl is not None else get_settings().conversion_cache_ttl_seconds,
        strategy="memory",
    )

    return DataPipeline(id=pipeline_id, source=source, transforms=transforms,
                        cache=cache, output=OutputConfig(format="json"))


def create_cohort_pipeline(pipeline_id: str, ttl: Optional[int] = None) -> DataPipeline:
    source = DataSourceConfig(
        id=f"source_{pipeline_id}",
        type=SourceType.DATABASE,
        query="player_data",
        timeout=60_000,  # cohort aggregation scans more history
    )

    transforms = (
        create_transform_builder()
        .cohort({
            "timeframe": "monthly",
            "cohort_field": "first_deposit_date",
            "date_field": "date",
        })
        .aggregate(["cohort_month", "period"], {
            "users": "count",
            "deposits_sum": "sum",
            "casino_real_ngr": "sum",
        })
        .build()
    )

    # Cohort source aggregation is expensive, so results live longer
    cache = CacheConfig(
        enabled=True,
        ttl=ttl if ttl is not None else get_settings().cohort_cache_ttl_seconds,
        strategy="memory",
    )

    return DataPipeline(id=pipeline_id, source=source, transforms=transforms,
                        cache=cache, output=OutputConfig(format="json"))


# =============================================================================
# PIPELINE VALIDATION
# =============================================================================

def _validate_basic_fields(pipeline: DataPipeline) -> List[str]:
    errors = []
    if not pipeline.id or not str(pipeline.id).strip():
        errors.append("Pipeline ID is required")
    if pipeline.source is None:
        errors.append("Pipeline source configuration is required")
    return errors


def _validate_source_config(source: DataSourceConfig) -> List[str]:
    errors = []
    source_type = getattr(source.type, "value", source.type)
    if not source_type:
        errors.append("Source type is required")
    elif source_type not in VALID_SOURCE_TYPES:
        errors.append(f"Source type '{source_type}' is not supported")

    if source_type == SourceType.API.value and not source.connection_string:
        errors.append("Connection string is required for API sources")

    if source.timeout is not None and source.timeout < 0:
        errors.append("Source timeout must be positive")
    return errors


def _validate_transforms(transforms: List[DataTransformStep]) -> List[str]:
    if not isinstance(transforms, list):
        return ["Transforms must be a list"]

    errors = []
    for index, transform in enumerate(transforms):
        if not transform.id:
            errors.append(f"Transform {index}: ID is required")
        transform_type = getattr(transform.type, "value", transform.type)
        if not transform_type:
            errors.append(f"Transform {index}: Type is required")
        elif transform_type not in VALID_TRANSFORM_TYPES:
            errors.append(f"Transform {index}: Type '{transform_type}' is not supported")
        if not isinstance(transform.order, int) or isinstance(transform.order, bool):
            errors.append(f"Transform {index}: Order must be a number")
        if not isinstance(transform.config, dict):
            errors.append(f"Transform {index}: Config must be an object")

    ids = [t.id for t in transforms]
    if len(ids) != len(set(ids)):
        errors.append("Transform IDs must be unique")

    orders = [t.order for t in transforms]
    if len(orders) != len(set(orders)):
        errors.append("Transform orders must be unique")
    return errors


def _validate_cache_config(cache: CacheConfig) -> List[str]:
    errors = []
    if not isinstance(cache.enabled, bool):
        errors.append("Cache enabled must be a boolean")
    if cache.enabled and (not cache.ttl or cache.ttl <= 0):
        errors.append("Cache TTL must be positive when caching is enabled")
    return errors


def validate_pipeline(pipeline: DataPipeline) -> ValidationResult:
    errors: List[str] = []
    errors.extend(_validate_basic_fields(pipeline))
    if pipeline.source is not None:
        errors.extend(_validate_source_config(pipeline.source))
    errors.extend(_validate_transforms(pipeline.transforms))
    if pipeline.cache is not None:
        errors.extend(_validate_cache_config(pipeline.cache))
    return ValidationResult(valid=not errors, errors=errors)
