"""Composition root: one cache, one pipeline manager, one plugin registry."""
from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from traffboard_reports.cohort.batching import BaseDataFetcher
from traffboard_reports.cohort.processor import create_cohort_processor
from traffboard_reports.cohort.sql import get_cohort_base_data
from traffboard_reports.config import Settings, get_settings
from traffboard_reports.exceptions import ConfigurationError
from traffboard_reports.pipeline.cache_manager import CacheManager
from traffboard_reports.pipeline.manager import DataPipelineManager
from traffboard_reports.plugins.builtin import CohortReportConfig, register_builtin_plugins
from traffboard_reports.plugins.registry import PluginRegistry
from traffboard_reports.types import (
    AppliedFilter, BaseReportConfig, PipelineExecutionOptions, ReportData, ReportType,
)

logger = logging.getLogger(__name__)


@dataclass
class ReportEngine:
    settings: Settings
    cache_manager: CacheManager
    pipeline_manager: DataPipelineManager
    plugin_registry: PluginRegistry
    fetch_cohort_base_data: BaseDataFetcher = get_cohort_base_data

    async def generate_report(self, config: BaseReportConfig, filters: Optional[List[AppliedFilter]] = None,
                              pipeline_id: Optional[str] = None,
                              options: Optional[PipelineExecutionOptions] = None) -> ReportData:
        """Fetch rows for ``config.type`` and hand them to the registered data processor.

        Cohort reports run the cohort processor over ``config.date_range``; every other
        type executes ``pipeline_id`` (default ``"<type>_default"``).
        """
        filters = filters or []
        report_type = ReportType(config.type)

        if report_type is ReportType.COHORT:
            return await self._generate_cohort_report(config, filters)

        pipeline_id = pipeline_id or f"{report_type.value}_default"
        data = await self.pipeline_manager.execute_pipeline(pipeline_id, filters, options)
        report = await self.plugin_registry.process_report(report_type, data.rows, config, filters)
        return replace(report, total_count=data.total_count, metadata=data.metadata)

    async def _generate_cohort_report(self, config: BaseReportConfig,
                                      filters: List[AppliedFilter]) -> ReportData:
        if not isinstance(config, CohortReportConfig) or config.date_range is None:
            raise ConfigurationError("Cohort reports require a CohortReportConfig with a date_range")

        processor = create_cohort_processor(config.mode, config.metric, config.date_range,
                                            fetch_base_data=self.fetch_cohort_base_data, settings=self.settings)
        result = await processor.process_cohorts(filters)
        report = await self.plugin_registry.process_report(ReportType.COHORT, result.data, config, filters)
        return replace(report, metadata=replace(
            report.metadata,
            execution_time=result.metadata.processing_time,
            query_hash=result.metadata.query_hash,
        ))


def create_report_engine(settings: Optional[Settings] = None,
                         fetch_cohort_base_data: BaseDataFetcher = get_cohort_base_data) -> ReportEngine:
    settings = settings or get_settings()
    cache_manager = CacheManager()
    pipeline_manager = DataPipelineManager(cache_manager, settings=settings)
    pipeline_manager.register_default_pipelines()

    plugin_registry = PluginRegistry()
    register_builtin_plugins(plugin_registry)

    logger.info(
        f"Report engine ready: {len(pipeline_manager.list_pipelines())} pipelines, "
        f"{plugin_registry.get_stats()['total_plugins']} plugins ({settings.environment})"
    )
    return ReportEngine(
        settings=settings,
        cache_manager=cache_manager,
        pipeline_manager=pipeline_manager,
        plugin_registry=plugin_registry,
        fetch_cohort_base_data=fetch_cohort_base_data,
    )
