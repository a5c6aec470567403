"""
Data Pipeline Manager

Registers pipelines and executes them end-to-end: cache lookup, extraction,
ordered transforms, result caching. Retries with exponential backoff live
here too.
"""

from __future__ import annotations
import asyncio
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from prometheus_client import Counter, Histogram

from traffboard_reports.config import Settings, get_settings
from traffboard_reports.exceptions import (
    PipelineExecutionError, PipelineNotFoundError, PipelineRetryError,
    PipelineValidationError,
)
from traffboard_reports.pipeline.cache_manager import CacheManager
from traffboard_reports.pipeline.extractors import DEFAULT_EXTRACTORS, Extractor, extract_data, source_type_key
from traffboard_reports.pipeline.factory import (
    create_cohort_pipeline, create_conversion_pipeline, validate_pipeline,
)
from traffboard_reports.pipeline.transformers import CustomTransform, apply_transform
from traffboard_reports.types import (
    AppliedFilter, CacheStatus, DataPipeline, PipelineExecutionOptions, ReportData, ReportMetadata,
)

logger = logging.getLogger(__name__)

DATA_VERSION = "1.0.0"

PIPELINE_EXECUTIONS = Counter('report_pipeline_executions_total', 'Pipeline executions', ['pipeline', 'cache_status'])
PIPELINE_FAILURES = Counter('report_pipeline_failures_total', 'Failed pipeline executions', ['pipeline'])
PIPELINE_RETRIES = Counter('report_pipeline_retries_total', 'Pipeline retry attempts', ['pipeline'])
PIPELINE_LATENCY = Histogram('report_pipeline_execution_seconds', 'Pipeline execution latency', ['pipeline'],
                             buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60))


class DataPipelineManager:
    """Owns the registered pipelines, the cache they write to, and the
    extractors and custom transforms they may reference."""

    def __init__(self, cache_manager: Optional[CacheManager] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 settings: Optional[Settings] = None):
        self._pipelines: Dict[str, DataPipeline] = {}
        self._extractors: Dict[str, Extractor] = dict(DEFAULT_EXTRACTORS)
        self._custom_transforms: Dict[str, CustomTransform] = {}
        self._lock = threading.RLock()
        self.settings = settings or get_settings()
        self.cache_manager = cache_manager or CacheManager()
        self._sleep = sleep

    def register_extractor(self, source_type: Any, extractor: Extractor) -> None:
        with self._lock:
            self._extractors[source_type_key(source_type)] = extractor

    def register_custom_transform(self, name: str, func: CustomTransform) -> None:
        with self._lock:
            self._custom_transforms[name] = func

    def unregister_custom_transform(self, name: str) -> bool:
        with self._lock:
            return self._custom_transforms.pop(name, None) is not None

    def register_pipeline(self, pipeline: DataPipeline) -> None:
        validation = validate_pipeline(pipeline)
        if not validation.valid:
            raise PipelineValidationError(validation.errors)
        with self._lock:
            replaced = pipeline.id in self._pipelines
            self._pipelines[pipeline.id] = pipeline
        logger.info(f"{'Replaced' if replaced else 'Registered'} pipeline {pipeline.id}")

    async def execute_pipeline(self, pipeline_id: str,
                               filters: Optional[List[AppliedFilter]] = None,
                               options: Optional[PipelineExecutionOptions] = None) -> ReportData:
        filters = filters or []
        options = options or PipelineExecutionOptions()

        pipeline = self.get_pipeline(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)

        start_time = time.time()

        cache_key = self.cache_manager.generate_cache_key(pipeline_id, filters)
        cached = self.cache_manager.get_cached_data(cache_key, pipeline.cache)

        if cached is not None and not options.skip_cache:
            PIPELINE_EXECUTIONS.labels(pipeline=pipeline_id, cache_status=CacheStatus.HIT.value).inc()
            hit = replace(cached, metadata=replace(
                cached.metadata,
                cache_status=CacheStatus.HIT,
                execution_time=(time.time() - start_time) * 1000,
            ))
            return _limit_rows(hit, options.max_rows)

        with self._lock:
            extractors = dict(self._extractors)
            custom_transforms = dict(self._custom_transforms)

        try:
            extraction = extract_data(pipeline.source, filters, extractors)
            if options.timeout:
                raw_rows = await asyncio.wait_for(extraction, timeout=options.timeout / 1000)
            else:
                raw_rows = await extraction

            rows = raw_rows
            for step in sorted(pipeline.transforms, key=lambda t: t.order):
                rows = apply_transform(rows, step, filters, custom_transforms)
        except asyncio.TimeoutError:
            PIPELINE_FAILURES.labels(pipeline=pipeline_id).inc()
            raise PipelineExecutionError(pipeline_id, f"timed out after {options.timeout}ms")
        except Exception as e:
            PIPELINE_FAILURES.labels(pipeline=pipeline_id).inc()
            logger.error(f"Pipeline {pipeline_id} failed: {e}")
            raise PipelineExecutionError(pipeline_id, str(e)) from e

        total_count = len(rows)
        execution_time = (time.time() - start_time) * 1000
        # ``cached`` was looked up before the skip_cache check, so a forced
        # refresh over a live entry reports "partial".
        cache_status = CacheStatus.PARTIAL if cached is not None else CacheStatus.MISS

        result = ReportData(
            rows=rows,
            total_count=total_count,
            metadata=ReportMetadata(
                execution_time=execution_time,
                data_version=DATA_VERSION,
                cache_status=cache_status,
                last_refresh=datetime.now(),
                query_hash=cache_key,
                filters=[f.value for f in filters],
            ),
        )

        # the cache holds the full row set; max_rows only shapes this response
        if pipeline.cache.enabled and not options.skip_cache:
            self.cache_manager.set_cached_data(cache_key, result, pipeline.cache)

        PIPELINE_EXECUTIONS.labels(pipeline=pipeline_id, cache_status=cache_status.value).inc()
        PIPELINE_LATENCY.labels(pipeline=pipeline_id).observe(execution_time / 1000)
        logger.info(f"Pipeline {pipeline_id} produced {total_count} rows in {execution_time:.1f}ms ({cache_status.value})")
        return _limit_rows(result, options.max_rows)

    async def execute_pipeline_with_retry(self, pipeline_id: str,
                                          filters: Optional[List[AppliedFilter]] = None,
                                          max_retries: Optional[int] = None,
                                          base_delay: Optional[float] = None) -> ReportData:
        """Execute with exponential backoff: ``base_delay * 2**(attempt-1)`` seconds between attempts."""
        max_retries = max_retries if max_retries is not None else self.settings.pipeline_max_retries
        base_delay = base_delay if base_delay is not None else self.settings.pipeline_retry_base_delay_seconds

        last_error: Optional[BaseException] = None
        for attempt in range(1, max_retries + 1):
            try:
                return await self.execute_pipeline(pipeline_id, filters)
            except Exception as e:
                last_error = e
                if attempt == max_retries:
                    break
                delay = base_delay * 2 ** (attempt - 1)
                PIPELINE_RETRIES.labels(pipeline=pipeline_id).inc()
                logger.warning(f"Pipeline {pipeline_id} attempt {attempt}/{max_retries} failed: {e}; retrying in {delay:.1f}s")
                await self._sleep(delay)

        raise PipelineRetryError(pipeline_id, max_retries, last_error)

    def get_pipeline(self, pipeline_id: str) -> Optional[DataPipeline]:
        with self._lock:
            return self._pipelines.get(pipeline_id)

    def list_pipelines(self) -> List[DataPipeline]:
        with self._lock:
            return list(self._pipelines.values())

    def remove_pipeline(self, pipeline_id: str) -> bool:
        with self._lock:
            return self._pipelines.pop(pipeline_id, None) is not None

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        return self.cache_manager.clear_cache(pattern)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache_manager.get_cache_stats()

    def register_default_pipelines(self) -> None:
        self.register_pipeline(create_conversion_pipeline(
            "conversion_default", ttl=self.settings.conversion_cache_ttl_seconds))
        self.register_pipeline(create_cohort_pipeline(
            "cohort_default", ttl=self.settings.cohort_cache_ttl_seconds))


def _limit_rows(result: ReportData, max_rows: Optional[int]) -> ReportData:
    if max_rows is None:
        return result
    return replace(result, rows=result.rows[:max_rows])
