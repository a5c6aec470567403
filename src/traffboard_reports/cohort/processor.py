"""
Cohort Data Processor

Two-stage cohort analysis: the data store aggregates millions of player rows
into per-cohort-date breakpoint sums, then pandas rolls those up by cohort
date and the metric layer maps them onto the configured breakpoints.

Standard mode runs one base query. Pipelined mode (long date ranges, or on
request) fans the base query out over date windows through
``CohortPipelineProcessor``.
"""

import base64
import json
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd
from prometheus_client import Counter, Histogram

from traffboard_reports.cohort.batching import BaseDataFetcher, CohortPipelineProcessor, create_pipeline_processor
from traffboard_reports.cohort.formatting import breakpoint_labels, format_cohort_results
from traffboard_reports.cohort.metrics import calculate_cohort_metrics
from traffboard_reports.cohort.sql import get_cohort_base_data
from traffboard_reports.config import Settings, get_settings
from traffboard_reports.exceptions import CohortProcessingError
from traffboard_reports.types import (
    COHORT_BREAKPOINTS, AppliedFilter, CohortConfig, CohortData, CohortMetric, CohortMode, DateRange,
    FilterValue, MetricCalculationInput,
)

logger = logging.getLogger(__name__)

cohort_runs = Counter('report_cohort_runs_total', 'Cohort processing runs', ['mode', 'result'])
cohort_duration = Histogram('report_cohort_processing_seconds', 'Cohort processing duration', ['mode'],
                            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120))

BREAKPOINT_AGGREGATES = ("active_players", "deposit_sum", "ngr_sum", "cost_sum")


@dataclass
class CohortProcessingOptions:
    """Processing knobs; ``None`` falls back to settings."""
    max_cohorts: Optional[int] = None
    cache_ttl: int = 300
    parallel_processing: bool = True
    use_pipeline_mode: Optional[bool] = None  # None lets the date range decide
    pipeline_threshold_days: Optional[int] = None
    batch_size: Optional[int] = None
    max_concurrency: Optional[int] = None


@dataclass
class CohortResultMetadata:
    total_cohorts: int
    processing_time: float  # milliseconds
    breakpoints_used: List[int]
    query_hash: str
    breakpoint_labels: Dict[int, str] = field(default_factory=dict)
    pipeline_metrics: Optional[Dict[str, Any]] = None


@dataclass
class CohortProcessingResult:
    data: List[CohortData]
    metadata: CohortResultMetadata


class CohortProcessor:
    """Turns a ``CohortConfig`` plus applied filters into formatted cohort rows."""

    def __init__(self, config: CohortConfig, options: Optional[CohortProcessingOptions] = None,
                 fetch_base_data: BaseDataFetcher = get_cohort_base_data,
                 clock: Callable[[], float] = time.time,
                 settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.config = config
        # resolved on a copy; the caller's options stay reusable
        self.options = replace(options or CohortProcessingOptions())
        if self.options.max_cohorts is None:
            self.options.max_cohorts = settings.cohort_max_cohorts
        if self.options.batch_size is None:
            self.options.batch_size = settings.cohort_batch_size
        if self.options.max_concurrency is None:
            self.options.max_concurrency = settings.cohort_max_concurrency
        if self.options.use_pipeline_mode is None:
            self.options.use_pipeline_mode = False
        self._fetch = fetch_base_data
        self._clock = clock
        self._hash_bucket_seconds = settings.query_hash_bucket_seconds

        self.pipeline_processor: Optional[CohortPipelineProcessor] = None
        if self.options.use_pipeline_mode:
            self.pipeline_processor = create_pipeline_processor(
                batch_size=self.options.batch_size,
                max_concurrency=self.options.max_concurrency,
                enable_pipelining=self.options.parallel_processing,
                fetch_base_data=fetch_base_data,
            )

    @property
    def mode(self) -> str:
        return "pipelined" if self.pipeline_processor is not None else "standard"

    async def process_cohorts(self, filters: Optional[List[AppliedFilter]] = None) -> CohortProcessingResult:
        filters = filters or []
        start_time = time.time()
        try:
            if self.pipeline_processor is not None:
                result = await self._process_cohorts_pipelined(filters)
            else:
                base_data = await self._fetch(self.config, filters)
                processed = self.process_base_data(base_data)
                formatted = format_cohort_results(processed, self.config.breakpoints, self.options.max_cohorts)
                result = CohortProcessingResult(
                    data=formatted,
                    metadata=self._metadata(formatted, (time.time() - start_time) * 1000, filters),
                )
        except Exception as e:
            cohort_runs.labels(mode=self.mode, result='error').inc()
            logger.error(f"Cohort processing ({self.mode}) failed: {e}")
            raise CohortProcessingError(f"Cohort processing failed: {e}") from e

        cohort_runs.labels(mode=self.mode, result='success').inc()
        cohort_duration.labels(mode=self.mode).observe(time.time() - start_time)
        logger.info(
            f"Processed {result.metadata.total_cohorts} {self.config.mode.value} cohorts "
            f"({self.config.metric.value}) in {result.metadata.processing_time:.1f}ms [{self.mode}]"
        )
        return result

    async def _process_cohorts_pipelined(self, filters: List[AppliedFilter]) -> CohortProcessingResult:
        batch_result = await self.pipeline_processor.process_cohort_batches(
            [self.config], filters,
            batch_size=self.options.batch_size,
            max_concurrency=self.options.max_concurrency,
        )
        processed = self.process_base_data(batch_result.data)
        formatted = format_cohort_results(processed, self.config.breakpoints, self.options.max_cohorts)
        metadata = self._metadata(formatted, batch_result.metadata["processing_time_ms"], filters)
        metadata.pipeline_metrics = batch_result.metadata
        return CohortProcessingResult(data=formatted, metadata=metadata)

    def _metadata(self, data: List[CohortData], processing_time: float,
                  filters: List[AppliedFilter]) -> CohortResultMetadata:
        return CohortResultMetadata(
            total_cohorts=len(data),
            processing_time=processing_time,
            breakpoints_used=list(self.config.breakpoints),
            query_hash=self.generate_query_hash(filters),
            breakpoint_labels=breakpoint_labels(self.config.breakpoints, self.config.mode),
        )

    # ------------------------------------------------------------------
    # In-process rollup
    # ------------------------------------------------------------------

    def rollup(self, base_data: List[Dict[str, Any]]) -> pd.DataFrame:
        """Group base rows by cohort date and sum cohort size and breakpoint aggregates."""
        df = pd.DataFrame(base_data)
        grouped = df.groupby("cohortDate", sort=True)

        table = pd.DataFrame(index=grouped.size().index)
        table["totalCohortSize"] = grouped["cohortSize"].sum() if "cohortSize" in df.columns else 0
        if "ftdCount" in df.columns:
            table["ftdCount"] = grouped["ftdCount"].sum()
        else:
            # base rows carry no separate FTD count; every cohort member made a first deposit
            table["ftdCount"] = table["totalCohortSize"]

        for breakpoint in self.config.breakpoints:
            for aggregate in BREAKPOINT_AGGREGATES:
                column = f"day{breakpoint}_{aggregate}"
                if column in df.columns:
                    table[column] = pd.to_numeric(grouped[column].sum(), errors="coerce").fillna(0)
                else:
                    table[column] = 0

        return table.reset_index()

    def process_base_data(self, base_data: List[Dict[str, Any]]) -> List[CohortData]:
        if not base_data:
            return []

        rows = []
        for row in self.rollup(base_data).to_dict(orient="records"):
            values = self.calculate_breakpoint_values(row)
            rows.append(CohortData(
                cohort_date=str(row["cohortDate"]),
                ftd_count=int(row["ftdCount"]),
                breakpoint_values=values,
                weighted_average=self.calculate_weighted_average(values),
            ))
        return rows

    def calculate_breakpoint_values(self, row: Dict[str, Any]) -> Dict[int, Optional[float]]:
        cohort_size = float(row.get("totalCohortSize") or 0)
        values: Dict[int, Optional[float]] = {}
        for breakpoint in self.config.breakpoints:
            prefix = f"day{breakpoint}"
            values[breakpoint] = calculate_cohort_metrics(MetricCalculationInput(
                metric=self.config.metric,
                active_players=float(row.get(f"{prefix}_active_players") or 0),
                deposit_sum=float(row.get(f"{prefix}_deposit_sum") or 0),
                ngr_sum=float(row.get(f"{prefix}_ngr_sum") or 0),
                cost_sum=float(row.get(f"{prefix}_cost_sum") or 0),
                cohort_size=cohort_size,
            ))
        return values

    @staticmethod
    def calculate_weighted_average(values: Dict[int, Optional[float]]) -> Optional[float]:
        # Despite the name this is the plain mean of the defined breakpoint values.
        defined = [v for v in values.values() if v is not None]
        if not defined:
            return None
        return sum(defined) / len(defined)

    def generate_query_hash(self, filters: List[AppliedFilter]) -> str:
        """Base64 fingerprint of config + filters, bucketed into fixed time windows."""
        hash_input = {
            "config": asdict(self.config),
            "filters": [{"id": f.id, "value": f.value} for f in filters],
            "timestamp": int(self._clock() // self._hash_bucket_seconds),
        }
        payload = json.dumps(hash_input, separators=(",", ":"), default=str)
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def _as_date_range(date_range: Union[DateRange, Tuple[date, date]]) -> DateRange:
    if isinstance(date_range, DateRange):
        return date_range
    start, end = date_range
    return DateRange(start=start, end=end)


def create_cohort_processor(mode: Union[CohortMode, str], metric: Union[CohortMetric, str],
                            date_range: Union[DateRange, Tuple[date, date]],
                            filters: Optional[Dict[str, FilterValue]] = None,
                            options: Optional[CohortProcessingOptions] = None,
                            fetch_base_data: BaseDataFetcher = get_cohort_base_data,
                            settings: Optional[Settings] = None) -> CohortProcessor:
    mode = CohortMode(mode)
    metric = CohortMetric(metric)
    date_range = _as_date_range(date_range)

    config = CohortConfig(
        mode=mode,
        metric=metric,
        breakpoints=list(COHORT_BREAKPOINTS[mode]),
        date_range=date_range,
        filters=dict(filters or {}),
    )

    settings = settings or get_settings()
    options = replace(options or CohortProcessingOptions())
    if options.use_pipeline_mode is None:
        threshold = options.pipeline_threshold_days
        if threshold is None:
            threshold = settings.cohort_pipeline_threshold_days
        options.use_pipeline_mode = date_range.days > threshold
        if options.use_pipeline_mode:
            logger.info(f"Date range spans {date_range.days} days (> {threshold}); using pipelined cohort mode")

    return CohortProcessor(config, options, fetch_base_data=fetch_base_data, settings=settings)


async def process_cohort_analysis(mode: Union[CohortMode, str], metric: Union[CohortMetric, str],
                                  date_range: Union[DateRange, Tuple[date, date]],
                                  filters: Optional[List[AppliedFilter]] = None,
                                  settings: Optional[Settings] = None) -> CohortProcessingResult:
    processor = create_cohort_processor(mode, metric, date_range, settings=settings)
    return await processor.process_cohorts(filters)
